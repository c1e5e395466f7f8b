from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from conftest import DEFAULT_CONTENT, FakeLLM, FakeSearchProvider
from deepresearch.agents.orchestrator import ResearchOptions, ResearchOrchestrator, SessionBudget
from deepresearch.config import ResearchConfig
from deepresearch.models.research import (
    QueryComplexity,
    ResearchSession,
    SessionStatus,
    SubQuestionStatus,
)
from deepresearch.services.errors import InvalidTransitionError
from deepresearch.services.streaming import CollectingEventSink

PLAN_TWO = json.dumps(
    {
        "subQuestions": [
            {"question": "What are solid-state batteries made of?", "priority": "high"},
            {"question": "Which carmakers plan solid-state batteries?", "priority": "medium"},
        ]
    }
)
PLAN_WITH_DEPENDENCY = json.dumps(
    {
        "subQuestions": [
            {"question": "What are solid-state batteries made of?", "priority": "high"},
            {"question": "Which carmakers plan solid-state batteries?", "priority": "medium"},
            {"question": "How will those materials affect battery cost?", "priority": "low", "dependsOn": [1]},
        ]
    }
)
FOLLOW_UP = "What do solid-state batteries cost today?"


def _synthesis(answer: str, confidence: float, gaps: list[dict] | None = None) -> str:
    return f"{answer}\n\n```json\n{json.dumps({'gaps': gaps or [], 'confidence': confidence})}\n```"


def _orchestrator(provider, llm, **config) -> ResearchOrchestrator:
    config.setdefault("max_retries", 0)
    return ResearchOrchestrator(ResearchConfig(**config), search_provider=provider, llm=llm)


def _phases(sink: CollectingEventSink) -> list[str]:
    return [e.data["status"] for e in sink.events if e.event.value == "phase"]


def _errors(sink: CollectingEventSink) -> list[dict]:
    return [e.data for e in sink.events if e.event.value == "error"]


@pytest.mark.asyncio
async def test_simple_query_takes_fast_path():
    provider = FakeSearchProvider()
    llm = FakeLLM()
    sink = CollectingEventSink()

    session = await _orchestrator(provider, llm).run("What is photosynthesis?", sink)

    assert session.status == SessionStatus.COMPLETE
    assert sink.types() == [
        "research_start",
        "phase",
        "classify",
        "phase",
        "search_start",
        "search_progress",
        "search_complete",
        "phase",
        "research_complete",
    ]
    assert _phases(sink) == ["planning", "searching", "complete"]
    assert provider.calls == ["What is photosynthesis?"]
    assert llm.complete_calls == []
    assert llm.stream_calls == []
    assert session.final_answer == DEFAULT_CONTENT
    assert [c.display_number for c in session.citations] == [1, 2]
    assert session.metrics.total_queries == 1
    assert session.metrics.estimated_cost_usd == pytest.approx(0.005)


@pytest.mark.asyncio
async def test_full_pipeline_respects_dependencies():
    provider = FakeSearchProvider()
    llm = FakeLLM([PLAN_WITH_DEPENDENCY], [_synthesis("Batteries use solid electrolytes [1][2].", 0.9)])
    sink = CollectingEventSink()

    session = await _orchestrator(provider, llm).run(
        "Research solid-state batteries",
        sink,
        ResearchOptions(force_complexity=QueryComplexity.COMPLEX),
    )

    assert session.status == SessionStatus.COMPLETE
    assert _phases(sink) == ["planning", "searching", "synthesizing", "complete"]
    assert provider.calls == [
        "What are solid-state batteries made of?",
        "Which carmakers plan solid-state batteries?",
        "How will those materials affect battery cost?",
    ]
    # The dependent search sees what its prerequisite found.
    assert DEFAULT_CONTENT in provider.messages[2][0]["content"]
    assert all(sq.status == SubQuestionStatus.COMPLETE for sq in session.plan.sub_questions)
    assert {n.sub_question_id for n in session.notes} == {"sq-1", "sq-2", "sq-3"}
    assert "round_start" not in sink.types()
    assert sink.types()[-1] == "research_complete"
    assert session.final_answer == "Batteries use solid electrolytes [1][2]."
    assert session.metrics.total_queries == 3
    assert session.metrics.estimated_cost_usd == pytest.approx(0.06)
    assert 0.0 <= session.metrics.parallelization_efficiency <= 1.0


@pytest.mark.asyncio
async def test_high_priority_gap_triggers_second_round():
    provider = FakeSearchProvider()
    gap = {"description": "Missing costs", "suggestedQuery": FOLLOW_UP, "priority": "high"}
    llm = FakeLLM(
        [PLAN_TWO],
        [
            _synthesis("Round one answer [1].", 0.5, [gap]),
            _synthesis("Round two answer [1] [2].", 0.9),
        ],
    )
    sink = CollectingEventSink()

    session = await _orchestrator(provider, llm).run(
        "Compare solid-state battery makers",
        sink,
        ResearchOptions(force_complexity=QueryComplexity.MODERATE),
    )

    assert session.status == SessionStatus.COMPLETE
    assert _phases(sink) == [
        "planning",
        "searching",
        "synthesizing",
        "gap_analysis",
        "searching",
        "synthesizing",
        "complete",
    ]
    assert session.current_round == 2
    assert session.final_answer == "Round two answer [1] [2]."
    assert provider.calls[-1] == FOLLOW_UP
    assert "Round one answer" in provider.messages[-1][0]["content"]
    assert session.plan.version == 2
    assert session.plan.sub_questions[-1].gap_id == session.gaps[0].id
    assert session.gaps[0].resolved
    assert session.metrics.gaps_resolved == 1
    assert session.metrics.total_queries == 3
    assert session.metrics.round2_duration_ms is not None

    round_start = next(e for e in sink.events if e.event.value == "round_start")
    assert round_start.data["round"] == 2
    assert round_start.data["newQueries"] == [FOLLOW_UP]
    gap_events = [e for e in sink.events if e.event.value == "gap_found"]
    assert gap_events[0].data["willStartRound2"] is True
    assert sink.types().count("synthesize_complete") == 2


@pytest.mark.asyncio
async def test_max_rounds_option_stops_after_first_round():
    gap = {"description": "Missing costs", "suggestedQuery": FOLLOW_UP, "priority": "high"}
    llm = FakeLLM([PLAN_TWO], [_synthesis("Round one answer [1].", 0.5, [gap])])
    sink = CollectingEventSink()

    session = await _orchestrator(FakeSearchProvider(), llm).run(
        "Compare solid-state battery makers",
        sink,
        ResearchOptions(force_complexity=QueryComplexity.MODERATE, max_rounds=1),
    )

    assert session.status == SessionStatus.COMPLETE
    assert session.current_round == 1
    gap_events = [e for e in sink.events if e.event.value == "gap_found"]
    assert gap_events[0].data["willStartRound2"] is False


@pytest.mark.asyncio
async def test_round_two_synthesis_failure_keeps_previous_answer():
    gap = {"description": "Missing costs", "suggestedQuery": FOLLOW_UP, "priority": "high"}
    llm = FakeLLM(
        [PLAN_TWO],
        [_synthesis("Round one answer [1].", 0.5, [gap]), RuntimeError("upstream 500")],
    )
    sink = CollectingEventSink()

    session = await _orchestrator(FakeSearchProvider(), llm).run(
        "Compare solid-state battery makers",
        sink,
        ResearchOptions(force_complexity=QueryComplexity.MODERATE),
    )

    assert session.status == SessionStatus.COMPLETE
    assert session.final_answer == "Round one answer [1]."
    assert _errors(sink) == [
        {
            "message": "Synthesis failed: upstream 500",
            "code": "SYNTHESIS_FAILED",
            "recoverable": True,
        }
    ]
    assert sink.types()[-1] == "research_complete"


@pytest.mark.asyncio
async def test_all_searches_failing_fails_the_session():
    provider = FakeSearchProvider(default=RuntimeError("503 Service Unavailable"))
    llm = FakeLLM(["not json at all"])
    sink = CollectingEventSink()

    session = await _orchestrator(provider, llm).run(
        "Compare solid-state battery makers",
        sink,
        ResearchOptions(force_complexity=QueryComplexity.MODERATE),
    )

    assert session.status == SessionStatus.FAILED
    assert session.notes == []
    assert all(sq.status == SubQuestionStatus.FAILED for sq in session.plan.sub_questions)
    assert sink.types().count("search_error") == 2
    assert _errors(sink)[-1]["code"] == "SEARCH_FAILED"
    assert _errors(sink)[-1]["recoverable"] is False
    assert "research_complete" not in sink.types()
    assert llm.stream_calls == []


@pytest.mark.asyncio
async def test_missing_search_credentials_fail_immediately():
    provider = FakeSearchProvider(configured=False)
    sink = CollectingEventSink()

    session = await _orchestrator(provider, FakeLLM()).run("What is photosynthesis?", sink)

    assert session.status == SessionStatus.FAILED
    assert sink.types() == ["research_start", "phase", "phase", "error"]
    assert _errors(sink)[0]["code"] == "CONFIGURATION_ERROR"
    assert provider.calls == []
    assert session.completed_at is not None


@pytest.mark.asyncio
async def test_missing_llm_credentials_fail_full_pipeline():
    provider = FakeSearchProvider()
    sink = CollectingEventSink()

    session = await _orchestrator(provider, FakeLLM(configured=False)).run(
        "Research solid-state batteries",
        sink,
        ResearchOptions(force_complexity=QueryComplexity.COMPLEX),
    )

    assert session.status == SessionStatus.FAILED
    assert session.error == "OPENROUTER_API_KEY is not configured"
    assert _errors(sink)[0]["code"] == "CONFIGURATION_ERROR"
    assert provider.calls == []


@pytest.mark.asyncio
async def test_cancel_discards_in_flight_results():
    class CancellingSink(CollectingEventSink):
        orchestrator: ResearchOrchestrator | None = None

        def emit(self, event):
            super().emit(event)
            if event.event.value == "search_start":
                self.orchestrator.cancel()

    provider = FakeSearchProvider(delay=0.01)
    orchestrator = _orchestrator(provider, FakeLLM([PLAN_TWO]))
    sink = CancellingSink()
    sink.orchestrator = orchestrator

    session = await orchestrator.run(
        "Compare solid-state battery makers",
        sink,
        ResearchOptions(force_complexity=QueryComplexity.MODERATE),
    )

    assert session.status == SessionStatus.CANCELLED
    assert session.notes == []
    assert provider.calls == ["What are solid-state batteries made of?"]
    assert "search_complete" not in sink.types()
    assert "synthesize_start" not in sink.types()
    assert _phases(sink)[-1] == "cancelled"
    assert _errors(sink)[-1]["code"] == "CANCELLED"


@pytest.mark.asyncio
async def test_cost_budget_limits_searches():
    llm = FakeLLM([PLAN_TWO], [_synthesis("Partial answer [1].", 0.9)])
    sink = CollectingEventSink()

    session = await _orchestrator(FakeSearchProvider(), llm, max_total_cost=0.005).run(
        "Compare solid-state battery makers",
        sink,
        ResearchOptions(force_complexity=QueryComplexity.MODERATE),
    )

    assert session.status == SessionStatus.COMPLETE
    assert session.metrics.total_queries == 1
    statuses = [sq.status for sq in session.plan.sub_questions]
    assert statuses == [SubQuestionStatus.COMPLETE, SubQuestionStatus.FAILED]
    assert {"message": "Research cost limit reached. Returning available results.",
            "code": "COST_LIMIT_EXCEEDED", "recoverable": True} in _errors(sink)


@pytest.mark.asyncio
async def test_timeout_stops_searching():
    sink = CollectingEventSink()

    with patch.object(SessionBudget, "timed_out", return_value=True):
        session = await _orchestrator(FakeSearchProvider(), FakeLLM([PLAN_TWO])).run(
            "Compare solid-state battery makers",
            sink,
            ResearchOptions(force_complexity=QueryComplexity.MODERATE),
        )

    assert session.status == SessionStatus.FAILED
    assert [e["code"] for e in _errors(sink)] == ["TIMEOUT", "SEARCH_FAILED"]
    assert _errors(sink)[0]["recoverable"] is True


@pytest.mark.asyncio
async def test_research_streams_events_until_complete():
    orchestrator = _orchestrator(FakeSearchProvider(), FakeLLM())

    events = [event async for event in orchestrator.research("What is photosynthesis?")]

    assert events[0].event.value == "research_start"
    assert events[-1].event.value == "research_complete"
    assert events[-1].data["answer"] == DEFAULT_CONTENT
    assert len({e.session_id for e in events}) == 1


def test_terminal_sessions_reject_transitions():
    orchestrator = _orchestrator(FakeSearchProvider(), FakeLLM())
    session = ResearchSession(id="s1", query="q", status=SessionStatus.COMPLETE)

    with pytest.raises(InvalidTransitionError):
        orchestrator._transition(session, SessionStatus.SEARCHING, CollectingEventSink())


def test_planning_cannot_jump_to_synthesizing():
    orchestrator = _orchestrator(FakeSearchProvider(), FakeLLM())
    session = ResearchSession(id="s1", query="q")

    with pytest.raises(InvalidTransitionError):
        orchestrator._transition(session, SessionStatus.SYNTHESIZING, CollectingEventSink())


@pytest.mark.asyncio
async def test_fast_path_survives_malformed_citation_port():
    provider = FakeSearchProvider(
        default=(DEFAULT_CONTENT, ["https://example.com:99999/a-b", "https://biology.org/leaves"])
    )

    session = await _orchestrator(provider, FakeLLM()).run("What is photosynthesis?", CollectingEventSink())

    assert session.status == SessionStatus.COMPLETE
    assert [c.url for c in session.citations] == ["https://biology.org/leaves"]


@pytest.mark.asyncio
async def test_orchestrator_can_run_again_after_cancel():
    class CancelOnSearch(CollectingEventSink):
        def emit(self, event):
            super().emit(event)
            if event.event.value == "search_start":
                orchestrator.cancel()

    orchestrator = _orchestrator(FakeSearchProvider(delay=0.01), FakeLLM())

    first = await orchestrator.run("What is photosynthesis?", CancelOnSearch())
    second = await orchestrator.run("What is photosynthesis?", CollectingEventSink())

    assert first.status == SessionStatus.CANCELLED
    assert second.status == SessionStatus.COMPLETE
    assert second.final_answer == DEFAULT_CONTENT


@pytest.mark.asyncio
async def test_session_snapshot_round_trips():
    llm = FakeLLM([PLAN_TWO], [_synthesis("Batteries use solid electrolytes [1].", 0.9)])
    session = await _orchestrator(FakeSearchProvider(), llm).run(
        "Compare solid-state battery makers",
        CollectingEventSink(),
        ResearchOptions(force_complexity=QueryComplexity.MODERATE),
    )

    snapshot = session.snapshot()
    restored = ResearchSession.model_validate(snapshot)

    assert json.loads(json.dumps(snapshot)) == snapshot
    assert restored.status == SessionStatus.COMPLETE
    assert restored.final_answer == session.final_answer
    assert [sq.id for sq in restored.plan.sub_questions] == [sq.id for sq in session.plan.sub_questions]
    assert [c.url for c in restored.citations] == [c.url for c in session.citations]
    assert restored.snapshot() == snapshot
