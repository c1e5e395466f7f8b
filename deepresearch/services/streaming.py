from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Protocol

from deepresearch.models.events import EventType, ResearchEvent
from deepresearch.models.research import (
    Citation,
    ClassificationResult,
    ResearchGap,
    ResearchNote,
    ResearchPlan,
    SessionMetrics,
    SessionStatus,
)
from deepresearch.services.errors import ERROR_MESSAGES, ErrorCode, is_rate_limited


class EventSink(Protocol):
    """One-way receiver for session events."""

    def emit(self, event: ResearchEvent) -> None: ...


class CollectingEventSink:
    """Keeps every event in memory. Used for headless runs and tests."""

    def __init__(self) -> None:
        self.events: list[ResearchEvent] = []

    def emit(self, event: ResearchEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.event.value for e in self.events]


class QueueEventSink:
    """Bridges the orchestrator to an async consumer such as an SSE response."""

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()

    def emit(self, event: ResearchEvent) -> None:
        self._queue.put_nowait(event)

    def close(self) -> None:
        self._queue.put_nowait(self._CLOSED)

    async def __aiter__(self) -> AsyncIterator[ResearchEvent]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item


def research_start(session_id: str, query: str, estimated_time: int) -> ResearchEvent:
    return ResearchEvent(
        event=EventType.RESEARCH_START,
        session_id=session_id,
        data={"query": query, "estimatedTime": estimated_time},
    )


def classify(session_id: str, result: ClassificationResult) -> ResearchEvent:
    return ResearchEvent(
        event=EventType.CLASSIFY,
        session_id=session_id,
        data={
            "complexity": result.complexity.value,
            "confidence": result.confidence,
            "estimatedTime": result.estimated_time,
            "suggestedModel": result.suggested_model.value,
        },
    )


def phase(
    session_id: str, status: SessionStatus, previous: SessionStatus | None, round: int
) -> ResearchEvent:
    return ResearchEvent(
        event=EventType.PHASE,
        session_id=session_id,
        data={
            "status": status.value,
            "previous": previous.value if previous else None,
            "round": round,
        },
    )


def plan(session_id: str, research_plan: ResearchPlan) -> ResearchEvent:
    return ResearchEvent(
        event=EventType.PLAN,
        session_id=session_id,
        data={
            "planId": research_plan.id,
            "version": research_plan.version,
            "subQuestions": [
                sq.model_dump(mode="json") for sq in research_plan.sub_questions
            ],
            "totalEstimatedTime": research_plan.total_estimated_time,
        },
    )


def search_start(session_id: str, sub_question_id: str, question: str) -> ResearchEvent:
    return ResearchEvent(
        event=EventType.SEARCH_START,
        session_id=session_id,
        data={"subQuestionId": sub_question_id, "question": question},
    )


def search_progress(session_id: str, sub_question_id: str, sources_found: int) -> ResearchEvent:
    return ResearchEvent(
        event=EventType.SEARCH_PROGRESS,
        session_id=session_id,
        data={"subQuestionId": sub_question_id, "sourcesFound": sources_found},
    )


def search_complete(session_id: str, sub_question_id: str, note: ResearchNote) -> ResearchEvent:
    return ResearchEvent(
        event=EventType.SEARCH_COMPLETE,
        session_id=session_id,
        data={
            "subQuestionId": sub_question_id,
            "note": note.model_dump(mode="json"),
            "citationsCount": len(note.citations),
        },
    )


def search_error(session_id: str, sub_question_id: str, error: str) -> ResearchEvent:
    code = ErrorCode.RATE_LIMITED if is_rate_limited(error) else ErrorCode.SEARCH_FAILED
    return ResearchEvent(
        event=EventType.SEARCH_ERROR,
        session_id=session_id,
        data={
            "subQuestionId": sub_question_id,
            "error": error,
            "code": code.value,
        },
    )


def synthesize_start(session_id: str, notes_count: int, citations_count: int, round: int) -> ResearchEvent:
    return ResearchEvent(
        event=EventType.SYNTHESIZE_START,
        session_id=session_id,
        data={"notesCount": notes_count, "citationsCount": citations_count, "round": round},
    )


def synthesize_progress(session_id: str, progress: float, partial_answer: str | None = None) -> ResearchEvent:
    data: dict[str, Any] = {"progress": round(progress, 1)}
    if partial_answer is not None:
        data["partialAnswer"] = partial_answer
    return ResearchEvent(event=EventType.SYNTHESIZE_PROGRESS, session_id=session_id, data=data)


def synthesize_complete(
    session_id: str, round: int, confidence: float, citations_count: int, gaps_count: int
) -> ResearchEvent:
    return ResearchEvent(
        event=EventType.SYNTHESIZE_COMPLETE,
        session_id=session_id,
        data={
            "round": round,
            "confidence": confidence,
            "citationsCount": citations_count,
            "gapsCount": gaps_count,
        },
    )


def gap_found(session_id: str, gap: ResearchGap, will_start_round: bool) -> ResearchEvent:
    return ResearchEvent(
        event=EventType.GAP_FOUND,
        session_id=session_id,
        data={"gap": gap.model_dump(mode="json"), "willStartRound2": will_start_round},
    )


def round_start(session_id: str, round: int, gaps: list[ResearchGap], new_queries: list[str]) -> ResearchEvent:
    return ResearchEvent(
        event=EventType.ROUND_START,
        session_id=session_id,
        data={
            "round": round,
            "gaps": [g.model_dump(mode="json") for g in gaps],
            "newQueries": new_queries,
        },
    )


def research_complete(
    session_id: str,
    answer: str,
    citations: list[Citation],
    total_time_ms: int,
    metrics: SessionMetrics,
) -> ResearchEvent:
    return ResearchEvent(
        event=EventType.RESEARCH_COMPLETE,
        session_id=session_id,
        data={
            "answer": answer,
            "citations": [c.model_dump(mode="json") for c in citations],
            "totalTime": total_time_ms,
            "metrics": metrics.model_dump(mode="json"),
        },
    )


def error(
    session_id: str,
    code: ErrorCode,
    *,
    recoverable: bool,
    message: str | None = None,
) -> ResearchEvent:
    return ResearchEvent(
        event=EventType.ERROR,
        session_id=session_id,
        data={
            "message": message or ERROR_MESSAGES[code],
            "code": code.value,
            "recoverable": recoverable,
        },
    )
