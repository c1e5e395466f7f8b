from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import AsyncGenerator

from loguru import logger

from deepresearch.agents.classifier import QueryClassifier
from deepresearch.agents.planner import (
    ResearchPlanner,
    extend_plan,
    get_parallel_batch,
    update_sub_question_status,
)
from deepresearch.agents.search_workers import SearchProgressCallback, SearchWorkerPool
from deepresearch.agents.synthesizer import (
    SynthesisOutput,
    Synthesizer,
    merge_citations,
    renumber_answer_citations,
    renumber_citations,
    should_proceed_to_round2,
)
from deepresearch.config import ResearchConfig
from deepresearch.llm_client import LLMProvider
from deepresearch.models.events import ResearchEvent
from deepresearch.models.research import (
    ClassificationResult,
    Priority,
    QueryComplexity,
    ResearchGap,
    ResearchNote,
    ResearchPlan,
    ResearchSession,
    SearchModel,
    SessionStatus,
    SubQuestion,
    SubQuestionStatus,
    utc_now,
)
from deepresearch.services import logger as log_service
from deepresearch.services import streaming
from deepresearch.services.cost import search_cost
from deepresearch.services.errors import (
    ConfigurationError,
    ErrorCode,
    InvalidTransitionError,
    ResearchError,
    SearchFailedError,
    SynthesisError,
)
from deepresearch.services.streaming import EventSink, QueueEventSink
from deepresearch.tools.search_provider import SearchProvider

# Terminal states have no outgoing edges.
ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PLANNING: frozenset(
        {SessionStatus.SEARCHING, SessionStatus.FAILED, SessionStatus.CANCELLED}
    ),
    SessionStatus.SEARCHING: frozenset(
        {
            SessionStatus.SYNTHESIZING,
            SessionStatus.COMPLETE,
            SessionStatus.FAILED,
            SessionStatus.CANCELLED,
        }
    ),
    SessionStatus.SYNTHESIZING: frozenset(
        {
            SessionStatus.GAP_ANALYSIS,
            SessionStatus.COMPLETE,
            SessionStatus.FAILED,
            SessionStatus.CANCELLED,
        }
    ),
    SessionStatus.GAP_ANALYSIS: frozenset(
        {
            SessionStatus.SEARCHING,
            SessionStatus.COMPLETE,
            SessionStatus.FAILED,
            SessionStatus.CANCELLED,
        }
    ),
}

DEFAULT_ESTIMATED_TIME_S = 30
CONTEXT_CHARS_PER_NOTE = 600
CONTEXT_CHARS_PRIOR_ANSWER = 1500


@dataclass
class ResearchOptions:
    use_llm_classification: bool = False
    force_complexity: QueryComplexity | None = None
    max_rounds: int | None = None
    max_cost: float | None = None
    timeout_ms: int | None = None
    session_id: str | None = None


class SessionBudget:
    """Wall-clock and spend limits for one session."""

    def __init__(self, timeout_ms: int, max_cost: float, cost_table: dict[str, float]):
        self.started = time.monotonic()
        self.timeout_ms = timeout_ms
        self.max_cost = max_cost
        self.cost_table = cost_table
        self.spent = 0.0
        self.queries = 0

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    def timed_out(self) -> bool:
        return self.elapsed_ms >= self.timeout_ms

    def affordable(self, count: int, model: SearchModel) -> int:
        """How many of `count` searches fit in the remaining spend."""
        unit = search_cost(1, model, self.cost_table)
        if unit <= 0:
            return count
        remaining = self.max_cost - self.spent
        # Small epsilon so exact multiples of the unit price still fit.
        return max(0, min(count, int((remaining + 1e-9) // unit)))

    def record(self, count: int, model: SearchModel) -> None:
        self.queries += count
        self.spent += search_cost(count, model, self.cost_table)


class EventForwarder(SearchProgressCallback):
    """Turns worker pool notifications into session events."""

    def __init__(self, sink: EventSink, session_id: str):
        self.sink = sink
        self.session_id = session_id

    def on_search_start(self, sub_question_id: str, question: str) -> None:
        self.sink.emit(streaming.search_start(self.session_id, sub_question_id, question))

    def on_search_progress(self, sub_question_id: str, sources_found: int) -> None:
        self.sink.emit(streaming.search_progress(self.session_id, sub_question_id, sources_found))

    def on_search_complete(self, sub_question_id: str, note: ResearchNote) -> None:
        self.sink.emit(streaming.search_complete(self.session_id, sub_question_id, note))

    def on_search_error(self, sub_question_id: str, error: str) -> None:
        self.sink.emit(streaming.search_error(self.session_id, sub_question_id, error))


class ResearchOrchestrator:
    """Runs one research session end to end.

    Flow:
      1. Classify the query; simple, confident queries take the fast path
         (one search, the note is the answer)
      2. Plan sub-questions once
      3. Search dependency-ready batches until the plan or a budget runs out
      4. Synthesize a cited answer
      5. While high-priority gaps remain and rounds are left, search the gaps
         and synthesize again

    Every phase change and sub-step is emitted to the sink.
    """

    def __init__(
        self,
        config: ResearchConfig | None = None,
        *,
        classifier: QueryClassifier | None = None,
        planner: ResearchPlanner | None = None,
        search_pool: SearchWorkerPool | None = None,
        synthesizer: Synthesizer | None = None,
        search_provider: SearchProvider | None = None,
        llm: LLMProvider | None = None,
    ):
        self.config = config or ResearchConfig.from_settings()
        if llm is None:
            from deepresearch.llm_client import client as llm_client

            llm = llm_client()
        if search_provider is None:
            from deepresearch.tools.search_provider import get_search_provider

            search_provider = get_search_provider()
        self.llm = llm
        self.search_provider = search_provider
        self.classifier = classifier or QueryClassifier(self.config, llm)
        self.planner = planner or ResearchPlanner(self.config, llm)
        self.search_pool = search_pool or SearchWorkerPool(self.config, search_provider)
        self.synthesizer = synthesizer or Synthesizer(self.config, llm)
        self._cancelled = False
        self._busy_ms = 0
        self._capacity_ms = 0

    # ------------------------------------------------------------------
    # Control

    def cancel(self) -> None:
        """Stop at the next phase or batch boundary. Late results are dropped."""
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _transition(self, session: ResearchSession, status: SessionStatus, sink: EventSink) -> None:
        allowed = ALLOWED_TRANSITIONS.get(session.status, frozenset())
        if status not in allowed:
            raise InvalidTransitionError(f"Illegal session transition {session.status} -> {status}")
        previous = session.status
        session.status = status
        if session.is_terminal:
            session.completed_at = utc_now()
        log_service.log_research_step(
            session.id, "phase", status.value, {"previous": previous.value, "round": session.current_round}
        )
        sink.emit(streaming.phase(session.id, status, previous, session.current_round))

    def _fail(
        self, session: ResearchSession, sink: EventSink, code: ErrorCode, message: str | None = None
    ) -> None:
        session.error = message or code.value
        if not session.is_terminal:
            self._transition(session, SessionStatus.FAILED, sink)
        sink.emit(streaming.error(session.id, code, recoverable=False, message=message))

    def _finish_cancelled(self, session: ResearchSession, sink: EventSink) -> None:
        logger.info(f"Research session {session.id} cancelled")
        session.error = ErrorCode.CANCELLED.value
        if not session.is_terminal:
            self._transition(session, SessionStatus.CANCELLED, sink)
        sink.emit(streaming.error(session.id, ErrorCode.CANCELLED, recoverable=False))

    # ------------------------------------------------------------------
    # Searching

    def _search_context(self, session: ResearchSession, batch: list[SubQuestion]) -> str | None:
        if session.current_round > 1 and session.final_answer:
            return session.final_answer[:CONTEXT_CHARS_PRIOR_ANSWER]
        needed = {dep for sq in batch for dep in sq.depends_on}
        if not needed:
            return None
        parts = [
            note.content[:CONTEXT_CHARS_PER_NOTE]
            for note in session.notes
            if note.sub_question_id in needed
        ]
        return "\n\n".join(parts) or None

    async def _search_round(
        self,
        session: ResearchSession,
        plan: ResearchPlan,
        model: SearchModel,
        budget: SessionBudget,
        sink: EventSink,
    ) -> None:
        """Search dependency-ready batches of the current round until none remain."""
        round_number = session.current_round
        issued = 0
        forwarder = EventForwarder(sink, session.id)

        while not self._cancelled:
            completed = {sq.id for sq in plan.sub_questions if sq.status == SubQuestionStatus.COMPLETE}
            batch = [sq for sq in get_parallel_batch(plan, completed) if sq.round == round_number]
            if not batch:
                break

            if budget.timed_out():
                logger.warning(f"Session {session.id} hit its time budget")
                sink.emit(streaming.error(session.id, ErrorCode.TIMEOUT, recoverable=True))
                break

            room = self.config.max_queries_per_round - issued
            affordable = budget.affordable(len(batch), model)
            if room <= 0:
                logger.info(f"Round {round_number} query budget exhausted")
                break
            if affordable <= 0:
                logger.warning(f"Session {session.id} hit its cost budget")
                sink.emit(streaming.error(session.id, ErrorCode.COST_LIMIT_EXCEEDED, recoverable=True))
                break
            batch = batch[: min(room, affordable)]

            for sq in batch:
                update_sub_question_status(plan, sq.id, SubQuestionStatus.IN_PROGRESS)

            result = await self.search_pool.execute_parallel_searches(
                batch,
                session.id,
                model,
                callbacks=forwarder,
                context=self._search_context(session, batch),
                is_cancelled=lambda: self._cancelled,
            )
            issued += result.searches_started
            budget.record(result.searches_started, model)
            session.metrics.search_duration_ms += result.total_duration_ms
            self._busy_ms += result.busy_duration_ms
            self._capacity_ms += result.total_duration_ms * max(self.config.parallel_searches, 1)

            session.notes.extend(result.notes)
            for note in result.notes:
                update_sub_question_status(plan, note.sub_question_id, SubQuestionStatus.COMPLETE)
            for sq in result.failed_questions:
                update_sub_question_status(plan, sq.id, SubQuestionStatus.FAILED)
            for sq in result.cancelled_questions:
                update_sub_question_status(plan, sq.id, SubQuestionStatus.PENDING)

        if self._cancelled:
            return
        # Anything still pending can no longer run this round.
        for sq in plan.sub_questions:
            if sq.round == round_number and sq.status == SubQuestionStatus.PENDING:
                update_sub_question_status(plan, sq.id, SubQuestionStatus.FAILED)

    # ------------------------------------------------------------------
    # Paths

    async def _fast_path(
        self,
        session: ResearchSession,
        classification: ClassificationResult,
        budget: SessionBudget,
        sink: EventSink,
    ) -> None:
        logger.info(f"Using fast path for session {session.id}")
        sub_question = SubQuestion(
            id="sq-fast",
            question=session.query,
            reasoning="Direct search (fast path)",
            priority=Priority.HIGH,
        )
        session.plan = ResearchPlan(
            id=f"plan-{session.id}",
            session_id=session.id,
            original_query=session.query,
            sub_questions=[sub_question],
            total_estimated_time=classification.estimated_time,
        )
        self._transition(session, SessionStatus.SEARCHING, sink)

        model = SearchModel.SONAR
        result = await self.search_pool.execute_parallel_searches(
            [sub_question],
            session.id,
            model,
            callbacks=EventForwarder(sink, session.id),
            is_cancelled=lambda: self._cancelled,
        )
        budget.record(result.searches_started, model)
        session.metrics.search_duration_ms += result.total_duration_ms
        self._busy_ms += result.busy_duration_ms
        self._capacity_ms += result.total_duration_ms * max(self.config.parallel_searches, 1)

        if self._cancelled:
            return
        if not result.notes:
            update_sub_question_status(session.plan, sub_question.id, SubQuestionStatus.FAILED)
            raise SearchFailedError(result.errors.get(sub_question.id))

        note = result.notes[0]
        update_sub_question_status(session.plan, sub_question.id, SubQuestionStatus.COMPLETE)
        answer, cited = renumber_answer_citations(note.content, note.citations)
        session.notes = list(result.notes)
        session.final_answer = answer
        session.citations = renumber_citations(merge_citations(cited, note.citations))
        self._transition(session, SessionStatus.COMPLETE, sink)

    async def _synthesize(
        self,
        session: ResearchSession,
        sink: EventSink,
        *,
        prior_gaps: list[ResearchGap] | None = None,
    ) -> SynthesisOutput:
        self._transition(session, SessionStatus.SYNTHESIZING, sink)
        sink.emit(
            streaming.synthesize_start(
                session.id,
                len(session.notes),
                sum(len(n.citations) for n in session.notes),
                session.current_round,
            )
        )

        def on_progress(progress: float, partial: str) -> None:
            sink.emit(streaming.synthesize_progress(session.id, progress, partial))

        started = time.monotonic()
        try:
            return await self.synthesizer.synthesize_answer(
                session.query,
                session.notes,
                round=session.current_round,
                prior_gaps=prior_gaps,
                prior_answer=session.final_answer,
                prior_citations=session.citations or None,
                on_progress=on_progress,
                session_id=session.id,
            )
        finally:
            session.metrics.synthesis_duration_ms += int((time.monotonic() - started) * 1000)

    def _apply_synthesis(self, session: ResearchSession, output: SynthesisOutput) -> list[ResearchGap]:
        session.final_answer = output.answer
        session.citations = output.citations

        plan = session.plan
        gaps = list(output.gaps)
        if plan is not None:
            known = {g.suggested_query.strip().lower() for g in gaps}
            for gap in self.synthesizer.detect_gaps(plan, session.notes, session.current_round):
                if gap.suggested_query.strip().lower() not in known:
                    known.add(gap.suggested_query.strip().lower())
                    gaps.append(gap)
        session.gaps.extend(gaps)

        session.metrics.gaps_found = len(session.gaps)
        return gaps

    async def _full_pipeline(
        self,
        session: ResearchSession,
        classification: ClassificationResult,
        options: ResearchOptions,
        budget: SessionBudget,
        sink: EventSink,
    ) -> None:
        self.llm.ensure_configured()
        model = classification.suggested_model
        max_rounds = max(options.max_rounds or self.config.max_rounds, 1)

        started = time.monotonic()
        plan = await self.planner.create_research_plan(session.query, classification, session.id)
        session.metrics.planning_duration_ms = int((time.monotonic() - started) * 1000)
        session.plan = plan
        sink.emit(streaming.plan(session.id, plan))

        if self._cancelled:
            return
        self._transition(session, SessionStatus.SEARCHING, sink)
        await self._search_round(session, plan, model, budget, sink)
        if self._cancelled:
            return
        if not session.notes:
            raise SearchFailedError()

        output = await self._synthesize(session, sink)
        round_gaps = self._apply_synthesis(session, output)
        confidence = output.confidence

        while True:
            if self._cancelled:
                return
            proceed = (
                should_proceed_to_round2(
                    round_gaps,
                    session.notes,
                    session.current_round,
                    max_rounds,
                    confidence,
                    self.config.min_confidence_to_complete,
                )
                and not budget.timed_out()
                and budget.affordable(1, model) > 0
            )
            sink.emit(
                streaming.synthesize_complete(
                    session.id, session.current_round, confidence, len(session.citations), len(round_gaps)
                )
            )
            for gap in round_gaps:
                sink.emit(streaming.gap_found(session.id, gap, proceed))
            if not proceed:
                break

            self._transition(session, SessionStatus.GAP_ANALYSIS, sink)
            next_round = session.current_round + 1
            follow_ups = self.synthesizer.get_round2_queries(round_gaps, next_round)
            if not follow_ups:
                break

            round_started = time.monotonic()
            session.current_round = next_round
            extend_plan(plan, follow_ups)
            sink.emit(streaming.plan(session.id, plan))
            sink.emit(
                streaming.round_start(
                    session.id,
                    next_round,
                    [g for g in round_gaps if not g.resolved],
                    [sq.question for sq in follow_ups],
                )
            )

            self._transition(session, SessionStatus.SEARCHING, sink)
            notes_before = len(session.notes)
            await self._search_round(session, plan, model, budget, sink)
            by_gap = {g.id: g for g in session.gaps}
            for sq in follow_ups:
                if sq.status == SubQuestionStatus.COMPLETE and sq.gap_id in by_gap:
                    by_gap[sq.gap_id].resolved = True
            session.metrics.gaps_resolved = sum(1 for g in session.gaps if g.resolved)
            session.metrics.round2_duration_ms = (session.metrics.round2_duration_ms or 0) + int(
                (time.monotonic() - round_started) * 1000
            )

            if self._cancelled:
                return
            if len(session.notes) == notes_before:
                logger.info(f"Round {next_round} produced no new notes, keeping previous answer")
                break

            try:
                output = await self._synthesize(session, sink, prior_gaps=round_gaps)
            except SynthesisError as exc:
                logger.warning(f"Round {next_round} synthesis failed, keeping previous answer: {exc}")
                sink.emit(
                    streaming.error(session.id, ErrorCode.SYNTHESIS_FAILED, recoverable=True, message=str(exc))
                )
                break
            round_gaps = self._apply_synthesis(session, output)
            confidence = output.confidence

        self._transition(session, SessionStatus.COMPLETE, sink)

    # ------------------------------------------------------------------
    # Entry points

    def _finalize_metrics(self, session: ResearchSession, budget: SessionBudget) -> None:
        metrics = session.metrics
        metrics.total_queries = budget.queries
        metrics.estimated_cost_usd = round(budget.spent, 6)
        metrics.total_duration_ms = budget.elapsed_ms
        metrics.parallelization_efficiency = (
            min(1.0, self._busy_ms / self._capacity_ms) if self._capacity_ms > 0 else 0.0
        )
        metrics.total_citations = len(session.citations)
        metrics.gaps_found = len(session.gaps)
        metrics.gaps_resolved = sum(1 for g in session.gaps if g.resolved)

    async def run(
        self, query: str, sink: EventSink, options: ResearchOptions | None = None
    ) -> ResearchSession:
        """Run a session to a terminal status and return it.

        Failures never propagate; they end the session as `failed` and emit an
        `error` event.
        """
        options = options or ResearchOptions()
        self._cancelled = False
        self._busy_ms = 0
        self._capacity_ms = 0
        session = ResearchSession(id=options.session_id or uuid.uuid4().hex, query=query)
        budget = SessionBudget(
            timeout_ms=options.timeout_ms or self.config.timeout_ms,
            max_cost=options.max_cost if options.max_cost is not None else self.config.max_total_cost,
            cost_table=self.config.cost_per_query,
        )

        log_service.log_event(
            event_type="research_started",
            message="Research started",
            session_id=session.id,
            query=query[:100],
        )
        sink.emit(streaming.research_start(session.id, query, DEFAULT_ESTIMATED_TIME_S))
        sink.emit(streaming.phase(session.id, session.status, None, session.current_round))

        try:
            self.search_provider.ensure_configured()

            started = time.monotonic()
            classification = await self.classifier.classify(
                query,
                use_llm=options.use_llm_classification,
                force_complexity=options.force_complexity,
            )
            session.metrics.classification_duration_ms = int((time.monotonic() - started) * 1000)
            session.complexity = classification.complexity
            sink.emit(streaming.classify(session.id, classification))

            if not self._cancelled:
                if self.classifier.should_use_fast_path(classification):
                    await self._fast_path(session, classification, budget, sink)
                else:
                    await self._full_pipeline(session, classification, options, budget, sink)
        except ConfigurationError as exc:
            logger.error(f"Research session {session.id} is misconfigured: {exc}")
            self._fail(session, sink, ErrorCode.CONFIGURATION_ERROR, str(exc))
        except ResearchError as exc:
            logger.error(f"Research session {session.id} failed: {exc}")
            self._fail(session, sink, exc.code, exc.user_message)
        except Exception as exc:
            logger.exception(f"Research session {session.id} failed unexpectedly")
            self._fail(session, sink, ErrorCode.UNKNOWN, f"Research failed: {exc}")

        if self._cancelled and not session.is_terminal:
            self._finish_cancelled(session, sink)

        self._finalize_metrics(session, budget)
        if session.status == SessionStatus.COMPLETE:
            sink.emit(
                streaming.research_complete(
                    session.id,
                    session.final_answer or "",
                    session.citations,
                    session.metrics.total_duration_ms,
                    session.metrics,
                )
            )
        log_service.log_research_step(
            session.id,
            "session",
            session.status.value,
            session.metrics.model_dump(mode="json"),
        )
        logger.info(
            f"Research session {session.id} ended as {session.status} in "
            f"{session.metrics.total_duration_ms}ms with {len(session.citations)} citations"
        )
        return session

    async def research(self, query: str, **options) -> AsyncGenerator[ResearchEvent, None]:
        """Stream the events of one session as they happen."""
        sink = QueueEventSink()

        async def drive() -> ResearchSession:
            try:
                return await self.run(query, sink, ResearchOptions(**options))
            finally:
                sink.close()

        task = asyncio.create_task(drive(), name="research-session")
        try:
            async for event in sink:
                yield event
        finally:
            if not task.done():
                self.cancel()
                task.cancel()
        await task
