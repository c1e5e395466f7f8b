"""Decomposes a research query into a dependency graph of sub-questions."""
from __future__ import annotations

import math
from typing import Any, Iterable

from loguru import logger

from deepresearch.config import ResearchConfig
from deepresearch.llm_client import LLMProvider
from deepresearch.models.research import (
    ClassificationResult,
    Priority,
    QueryComplexity,
    ResearchPlan,
    SubQuestion,
    SubQuestionStatus,
)
from deepresearch.services.errors import CyclicDependencyError
from deepresearch.services.fallback import with_fallback
from deepresearch.services.llm_json import extract_json_object
from deepresearch.services.prompt_store import render_prompt

MIN_QUESTION_LENGTH = 10
BASE_SECONDS_PER_SEARCH = 5
PRIORITY_TIME_WEIGHTS: dict[Priority, float] = {
    Priority.HIGH: 1.5,
    Priority.MEDIUM: 1.0,
    Priority.LOW: 0.8,
}


def estimate_plan_time(sub_questions: Iterable[SubQuestion]) -> int:
    """Rough seconds to search and synthesize the given sub-questions."""
    items = list(sub_questions)
    search_time = sum(BASE_SECONDS_PER_SEARCH * PRIORITY_TIME_WEIGHTS[sq.priority] for sq in items)
    synthesis_time = 5 + len(items) * 2
    return math.ceil(search_time + synthesis_time)


def sort_by_dependency(sub_questions: list[SubQuestion]) -> list[SubQuestion]:
    """Topologically order sub-questions.

    Among ready sub-questions declaration order is kept. Dependencies on
    ids outside the list are treated as unsatisfiable.

    Raises:
        CyclicDependencyError: if some sub-questions can never become ready.
    """
    remaining = list(sub_questions)
    ordered: list[SubQuestion] = []
    done: set[str] = set()

    while remaining:
        ready_index = next(
            (i for i, sq in enumerate(remaining) if all(dep in done for dep in sq.depends_on)),
            None,
        )
        if ready_index is None:
            raise CyclicDependencyError([sq.id for sq in remaining])
        ready = remaining.pop(ready_index)
        ordered.append(ready)
        done.add(ready.id)
    return ordered


def get_parallel_batch(plan: ResearchPlan, completed_ids: set[str]) -> list[SubQuestion]:
    """Pending sub-questions whose prerequisites are all in `completed_ids`."""
    return [
        sq
        for sq in plan.sub_questions
        if sq.status == SubQuestionStatus.PENDING
        and all(dep in completed_ids for dep in sq.depends_on)
    ]


def update_sub_question_status(
    plan: ResearchPlan, sub_question_id: str, status: SubQuestionStatus
) -> SubQuestion:
    """Set the status of one sub-question. The only way statuses change."""
    for sq in plan.sub_questions:
        if sq.id == sub_question_id:
            sq.status = status
            return sq
    raise KeyError(f"Unknown sub-question: {sub_question_id}")


def extend_plan(plan: ResearchPlan, sub_questions: list[SubQuestion]) -> ResearchPlan:
    """Append sub-questions (e.g. gap follow-ups) without touching existing ones."""
    if not sub_questions:
        return plan
    existing = plan.index()
    for sq in sub_questions:
        if sq.id in existing:
            raise ValueError(f"Duplicate sub-question id: {sq.id}")
    sort_by_dependency([*plan.sub_questions, *sub_questions])
    plan.sub_questions.extend(sub_questions)
    plan.version += 1
    plan.total_estimated_time = estimate_plan_time(plan.sub_questions)
    return plan


def _normalize_dependency(raw: Any) -> str:
    text = str(raw).strip()
    if text.isdigit():
        return f"sq-{int(text)}"
    return text


def validate_sub_questions(
    raw_questions: Any, complexity: QueryComplexity, config: ResearchConfig
) -> list[SubQuestion]:
    """Turn planner JSON into ordered SubQuestions.

    Raises:
        ValueError: if no usable sub-question is present.
        CyclicDependencyError: if the declared dependencies form a cycle.
    """
    if not isinstance(raw_questions, list):
        raise ValueError("subQuestions must be a list")

    valid = [
        q
        for q in raw_questions
        if isinstance(q, dict)
        and isinstance(q.get("question"), str)
        and len(q["question"].strip()) > MIN_QUESTION_LENGTH
    ][: config.max_sub_questions]
    if not valid:
        raise ValueError("Planner returned no usable sub-questions")

    minimum = config.min_sub_questions_complex if complexity == QueryComplexity.COMPLEX else 1
    if len(valid) < minimum:
        logger.warning(f"Only {len(valid)} valid sub-questions, minimum is {minimum}")

    ids = [f"sq-{i + 1}" for i in range(len(valid))]
    known = set(ids)
    sub_questions: list[SubQuestion] = []
    for sq_id, raw in zip(ids, valid):
        deps: list[str] = []
        for dep in raw.get("dependsOn") or []:
            dep_id = _normalize_dependency(dep)
            if dep_id in known and dep_id != sq_id and dep_id not in deps:
                deps.append(dep_id)
        sub_questions.append(
            SubQuestion(
                id=sq_id,
                question=raw["question"].strip(),
                reasoning=str(raw.get("reasoning") or "Addresses a key aspect of the research query"),
                priority=Priority.parse(raw.get("priority")),
                depends_on=deps,
            )
        )
    return sort_by_dependency(sub_questions)


class ResearchPlanner:
    def __init__(self, config: ResearchConfig, llm: LLMProvider | None = None):
        self.config = config
        self.llm = llm

    def _build_plan(
        self, query: str, session_id: str, sub_questions: list[SubQuestion], estimated_time: int
    ) -> ResearchPlan:
        return ResearchPlan(
            id=f"plan-{session_id}",
            session_id=session_id,
            original_query=query,
            sub_questions=sub_questions,
            total_estimated_time=estimated_time,
        )

    def fallback_plan(self, query: str, complexity: QueryComplexity, session_id: str) -> ResearchPlan:
        """Deterministic plan used when LLM planning is unavailable or unusable."""
        logger.info("Using fallback research plan")
        sub_questions = [
            SubQuestion(
                id="sq-1",
                question=query,
                reasoning="Direct search for the research query",
                priority=Priority.HIGH,
            )
        ]
        if complexity != QueryComplexity.SIMPLE:
            sub_questions.append(
                SubQuestion(
                    id="sq-2",
                    question=render_prompt("planner.fallback_follow_up", query=query),
                    reasoning="Exploring implications and considerations",
                    priority=Priority.MEDIUM,
                )
            )
        return self._build_plan(query, session_id, sub_questions, estimate_plan_time(sub_questions))

    async def _plan_with_llm(
        self, query: str, complexity: QueryComplexity, session_id: str
    ) -> ResearchPlan:
        if self.llm is None:
            raise RuntimeError("No LLM provider configured for planning")
        reply = await self.llm.complete(
            model=self.config.planner_model,
            system=render_prompt("planner.system"),
            user_text=render_prompt(
                "planner.user",
                query=query,
                complexity=complexity.value,
                guidance=render_prompt(f"planner.guidance.{complexity.value}"),
            ),
            max_tokens=1000,
        )
        parsed = extract_json_object(reply)
        sub_questions = validate_sub_questions(parsed.get("subQuestions"), complexity, self.config)
        return self._build_plan(query, session_id, sub_questions, estimate_plan_time(sub_questions))

    async def create_research_plan(
        self, query: str, classification: ClassificationResult, session_id: str
    ) -> ResearchPlan:
        """Build the sub-question graph for a query, sized to its complexity."""
        complexity = classification.complexity
        plan = await with_fallback(
            "planning",
            lambda: self._plan_with_llm(query, complexity, session_id),
            lambda: self.fallback_plan(query, complexity, session_id),
        )
        logger.info(f"Research plan {plan.id} has {len(plan.sub_questions)} sub-questions")
        return plan
