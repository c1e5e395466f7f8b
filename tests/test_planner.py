from __future__ import annotations

import json

import pytest

from conftest import FakeLLM
from deepresearch.agents import planner
from deepresearch.agents.planner import ResearchPlanner
from deepresearch.config import ResearchConfig
from deepresearch.models.research import (
    ClassificationResult,
    Priority,
    QueryComplexity,
    ResearchPlan,
    SearchModel,
    SubQuestion,
    SubQuestionStatus,
)
from deepresearch.services.errors import CyclicDependencyError


def _plan(*sub_questions: SubQuestion) -> ResearchPlan:
    return ResearchPlan(
        id="plan-s1",
        session_id="s1",
        original_query="query",
        sub_questions=list(sub_questions),
    )


def _classification(complexity: QueryComplexity) -> ClassificationResult:
    return ClassificationResult(
        complexity=complexity,
        confidence=0.9,
        reasoning="test",
        estimated_time=60,
        suggested_model=SearchModel.SONAR_PRO,
    )


def test_parallel_batch_waits_for_dependencies():
    plan = _plan(
        SubQuestion(id="A", question="Question A"),
        SubQuestion(id="B", question="Question B", depends_on=["A"]),
        SubQuestion(id="C", question="Question C"),
    )

    first = planner.get_parallel_batch(plan, set())
    assert [sq.id for sq in first] == ["A", "C"]

    planner.update_sub_question_status(plan, "A", SubQuestionStatus.COMPLETE)
    planner.update_sub_question_status(plan, "C", SubQuestionStatus.COMPLETE)
    second = planner.get_parallel_batch(plan, {"A", "C"})
    assert [sq.id for sq in second] == ["B"]


def test_parallel_batch_skips_non_pending():
    plan = _plan(
        SubQuestion(id="A", question="Question A", status=SubQuestionStatus.IN_PROGRESS),
        SubQuestion(id="C", question="Question C"),
    )

    assert [sq.id for sq in planner.get_parallel_batch(plan, set())] == ["C"]


def test_parallel_batch_never_releases_failed_dependency():
    plan = _plan(
        SubQuestion(id="A", question="Question A", status=SubQuestionStatus.FAILED),
        SubQuestion(id="B", question="Question B", depends_on=["A"]),
    )

    assert planner.get_parallel_batch(plan, set()) == []


def test_sort_by_dependency_orders_prerequisites_first():
    ordered = planner.sort_by_dependency(
        [
            SubQuestion(id="B", question="Question B", depends_on=["A"]),
            SubQuestion(id="C", question="Question C"),
            SubQuestion(id="A", question="Question A"),
        ]
    )

    assert [sq.id for sq in ordered] == ["C", "A", "B"]


def test_sort_by_dependency_rejects_cycles():
    with pytest.raises(CyclicDependencyError) as exc_info:
        planner.sort_by_dependency(
            [
                SubQuestion(id="A", question="Question A", depends_on=["B"]),
                SubQuestion(id="B", question="Question B", depends_on=["A"]),
                SubQuestion(id="C", question="Question C"),
            ]
        )

    assert exc_info.value.unresolved == ["A", "B"]


def test_update_sub_question_status_rejects_unknown_id():
    with pytest.raises(KeyError):
        planner.update_sub_question_status(_plan(), "missing", SubQuestionStatus.COMPLETE)


def test_extend_plan_appends_and_bumps_version():
    plan = _plan(SubQuestion(id="sq-1", question="Question one"))
    extra = SubQuestion(id="sq-r2-1", question="Follow-up question", round=2)

    planner.extend_plan(plan, [extra])

    assert [sq.id for sq in plan.sub_questions] == ["sq-1", "sq-r2-1"]
    assert plan.version == 2
    assert plan.total_estimated_time == planner.estimate_plan_time(plan.sub_questions)

    with pytest.raises(ValueError):
        planner.extend_plan(plan, [SubQuestion(id="sq-1", question="Duplicate question")])


def test_estimate_plan_time_weights_priority():
    high = [SubQuestion(id="a", question="q", priority=Priority.HIGH)]
    low = [SubQuestion(id="a", question="q", priority=Priority.LOW)]

    assert planner.estimate_plan_time(high) > planner.estimate_plan_time(low)
    assert planner.estimate_plan_time([]) == 5


def test_validate_sub_questions_filters_and_maps_dependencies():
    raw = [
        {"question": "What are lithium battery chemistries?", "priority": "HIGH"},
        {"question": "short"},
        {"question": "How do they degrade over time?", "priority": "urgent", "dependsOn": [1, "sq-9"]},
        "not a dict",
    ]

    sub_questions = planner.validate_sub_questions(raw, QueryComplexity.MODERATE, ResearchConfig())

    assert [sq.id for sq in sub_questions] == ["sq-1", "sq-2"]
    assert sub_questions[0].priority == Priority.HIGH
    assert sub_questions[1].priority == Priority.MEDIUM
    assert sub_questions[1].depends_on == ["sq-1"]


def test_validate_sub_questions_caps_count():
    raw = [{"question": f"Searchable question number {i}"} for i in range(8)]

    sub_questions = planner.validate_sub_questions(raw, QueryComplexity.COMPLEX, ResearchConfig())

    assert len(sub_questions) == 5


@pytest.mark.asyncio
async def test_create_research_plan_from_llm():
    reply = json.dumps(
        {
            "subQuestions": [
                {"question": "What is the current state of solid-state batteries?", "priority": "high"},
                {"question": "Which companies lead solid-state battery research?", "priority": "medium"},
                {
                    "question": "When will solid-state batteries reach mass production?",
                    "priority": "low",
                    "dependsOn": [1, 2],
                },
            ]
        }
    )
    llm = FakeLLM([reply])

    plan = await ResearchPlanner(ResearchConfig(), llm).create_research_plan(
        "Research solid-state batteries", _classification(QueryComplexity.COMPLEX), "s1"
    )

    assert plan.id == "plan-s1"
    assert plan.session_id == "s1"
    assert [sq.id for sq in plan.sub_questions] == ["sq-1", "sq-2", "sq-3"]
    assert plan.sub_questions[2].depends_on == ["sq-1", "sq-2"]
    assert "complex" in llm.complete_calls[0]["user_text"]


@pytest.mark.asyncio
async def test_create_research_plan_falls_back_on_cycle():
    reply = json.dumps(
        {
            "subQuestions": [
                {"question": "First searchable question here", "dependsOn": [2]},
                {"question": "Second searchable question here", "dependsOn": [1]},
            ]
        }
    )

    plan = await ResearchPlanner(ResearchConfig(), FakeLLM([reply])).create_research_plan(
        "Compare React and Vue", _classification(QueryComplexity.MODERATE), "s1"
    )

    assert [sq.question for sq in plan.sub_questions][0] == "Compare React and Vue"
    assert len(plan.sub_questions) == 2


@pytest.mark.asyncio
async def test_fallback_plan_for_simple_query_has_one_question():
    plan = await ResearchPlanner(ResearchConfig(), FakeLLM(["not json"])).create_research_plan(
        "Who founded Apple?", _classification(QueryComplexity.SIMPLE), "s1"
    )

    assert len(plan.sub_questions) == 1
    assert plan.sub_questions[0].priority == Priority.HIGH
