"""Parallel sub-question searches with bounded concurrency and retries."""
from __future__ import annotations

import asyncio
import itertools
import re
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Iterable
from urllib.parse import unquote, urlparse

from loguru import logger

from deepresearch.config import ResearchConfig
from deepresearch.models.research import (
    Citation,
    ResearchNote,
    SearchModel,
    SubQuestion,
)
from deepresearch.services import logger as log_service
from deepresearch.services.cost import search_cost
from deepresearch.services.errors import is_non_retryable
from deepresearch.services.prompt_store import render_prompt
from deepresearch.tools import web_utils
from deepresearch.tools.search_provider import SearchProvider

_DOCUMENT_EXTENSION = re.compile(r"\.(html?|php|aspx?|pdf)$", re.IGNORECASE)
_HAS_NUMBERS = re.compile(r"\d+(\.\d+)?%?")
_HAS_QUOTES = re.compile(r'"[^"]{10,}"')
_HAS_LISTS = re.compile(r"(\n[-•*]|\d+\.)")


@dataclass(slots=True)
class SearchWorkerInput:
    sub_question: SubQuestion
    session_id: str
    context: str | None = None  # Read-only context from earlier rounds


@dataclass(slots=True)
class SearchWorkerOutput:
    sub_question_id: str
    success: bool
    note: ResearchNote | None = None
    error: str | None = None
    duration_ms: int = 0
    attempts: int = 1


@dataclass(slots=True)
class ParallelSearchResult:
    notes: list[ResearchNote] = field(default_factory=list)
    failed_questions: list[SubQuestion] = field(default_factory=list)
    cancelled_questions: list[SubQuestion] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    total_duration_ms: int = 0
    busy_duration_ms: int = 0
    searches_started: int = 0
    parallelization_efficiency: float = 0.0


class SearchProgressCallback:
    """Observer for search lifecycle notifications. Override what you need."""

    def on_search_start(self, sub_question_id: str, question: str) -> None:
        pass

    def on_search_progress(self, sub_question_id: str, sources_found: int) -> None:
        pass

    def on_search_complete(self, sub_question_id: str, note: ResearchNote) -> None:
        pass

    def on_search_error(self, sub_question_id: str, error: str) -> None:
        pass


def _title_from_url(parsed_path: str) -> str:
    segments = [segment for segment in parsed_path.split("/") if segment]
    if not segments:
        return ""
    raw = unquote(segments[-1])
    raw = _DOCUMENT_EXTENSION.sub("", raw)
    words = re.sub(r"[-_]+", " ", raw).split()
    return " ".join(word[:1].upper() + word[1:] for word in words)


def transform_citations(urls: Iterable[str], *, id_prefix: str = "citation") -> list[Citation]:
    """Turn raw citation URLs into display-ready Citation records.

    Non-http(s) URLs are dropped.
    """
    citations: list[Citation] = []
    for url in urls:
        if not isinstance(url, str) or not web_utils.is_valid_url(url):
            continue
        domain = web_utils.extract_domain(url) or "unknown"
        title = _title_from_url(urlparse(url).path) or domain
        number = len(citations) + 1
        citations.append(
            Citation(
                id=f"{id_prefix}-{number}",
                url=url,
                title=title,
                domain=domain,
                favicon=web_utils.favicon_url(domain),
                display_number=number,
            )
        )
    return citations


def calculate_confidence(content: str, citations: list[Citation]) -> float:
    """Score how well a note is likely to answer its sub-question (0.5 to 0.95)."""
    score = 0.5

    length = len(content)
    if length > 500:
        score += 0.1
    if length > 1000:
        score += 0.1
    if length > 2000:
        score += 0.05

    count = len(citations)
    if count >= 2:
        score += 0.1
    if count >= 4:
        score += 0.1
    if count >= 6:
        score += 0.05

    if _HAS_NUMBERS.search(content):
        score += 0.05
    if _HAS_QUOTES.search(content):
        score += 0.05
    if _HAS_LISTS.search(content):
        score += 0.03

    return min(0.95, round(score, 4))


def estimate_batch_cost(
    question_count: int, model: SearchModel, cost_table: dict[str, float] | None = None
) -> float:
    return search_cost(question_count, model, cost_table)


class SearchWorkerPool:
    def __init__(
        self,
        config: ResearchConfig,
        provider: SearchProvider,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.provider = provider
        self._sleep = sleep

    @staticmethod
    def build_messages(worker_input: SearchWorkerInput) -> list[dict[str, str]]:
        context_block = ""
        if worker_input.context:
            context_block = render_prompt("search.context_block", context=worker_input.context)
        return [
            {"role": "system", "content": render_prompt("search.system", context_block=context_block)},
            {"role": "user", "content": worker_input.sub_question.question},
        ]

    async def execute_search(
        self,
        worker_input: SearchWorkerInput,
        model: SearchModel,
        on_progress: Callable[[int], None] | None = None,
    ) -> SearchWorkerOutput:
        """Run one streaming search. Provider errors come back as failures."""
        started = time.monotonic()
        sub_question = worker_input.sub_question

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        parts: list[str] = []
        urls: list[str] = []
        try:
            async for chunk in self.provider.stream(model, self.build_messages(worker_input)):
                if chunk.delta:
                    parts.append(chunk.delta)
                if chunk.citations:
                    urls = list(chunk.citations)
                    if on_progress is not None:
                        on_progress(len(urls))
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.error(f"Search failed for {sub_question.id}: {message}")
            return SearchWorkerOutput(
                sub_question_id=sub_question.id,
                success=False,
                error=message,
                duration_ms=elapsed_ms(),
            )

        content = "".join(parts).strip()
        if not content:
            return SearchWorkerOutput(
                sub_question_id=sub_question.id,
                success=False,
                error="Empty response from search provider",
                duration_ms=elapsed_ms(),
            )

        note_id = f"note-{worker_input.session_id}-{sub_question.id}"
        citations = transform_citations(urls, id_prefix=f"{note_id}-c")
        note = ResearchNote(
            id=note_id,
            session_id=worker_input.session_id,
            sub_question_id=sub_question.id,
            content=content,
            citations=citations,
            confidence=calculate_confidence(content, citations),
        )
        return SearchWorkerOutput(
            sub_question_id=sub_question.id,
            success=True,
            note=note,
            duration_ms=elapsed_ms(),
        )

    async def retry_search(
        self,
        worker_input: SearchWorkerInput,
        model: SearchModel,
        max_retries: int = 2,
        on_progress: Callable[[int], None] | None = None,
    ) -> SearchWorkerOutput:
        """Retry `execute_search` with exponential backoff (1s, 2s, 4s, ...).

        Authentication, API-key and rate-limit errors stop the loop at once.
        """
        started = time.monotonic()
        sq_id = worker_input.sub_question.id
        last_error = ""
        attempts = 0

        for attempt in range(max_retries + 1):
            if attempt > 0:
                delay = self.config.retry_base_delay_s * (2 ** (attempt - 1))
                logger.info(f"Retry {attempt}/{max_retries} for {sq_id} in {delay:.1f}s")
                await self._sleep(delay)

            attempts += 1
            result = await self.execute_search(worker_input, model, on_progress)
            if result.success:
                return replace(
                    result,
                    attempts=attempts,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )

            last_error = result.error or "Unknown error"
            if is_non_retryable(last_error):
                logger.warning(f"Not retrying {sq_id}: {last_error}")
                break

        return SearchWorkerOutput(
            sub_question_id=sq_id,
            success=False,
            error=f"Failed after {attempts} attempt{'s' if attempts != 1 else ''}: {last_error}",
            duration_ms=int((time.monotonic() - started) * 1000),
            attempts=attempts,
        )

    async def execute_parallel_searches(
        self,
        sub_questions: list[SubQuestion],
        session_id: str,
        model: SearchModel,
        callbacks: SearchProgressCallback | None = None,
        context: str | None = None,
        is_cancelled: Callable[[], bool] | None = None,
    ) -> ParallelSearchResult:
        """Search all sub-questions keeping at most `parallel_searches` in flight.

        New work starts as soon as any in-flight search settles. Results are
        reported in completion order. Once `is_cancelled()` is true nothing new
        starts and late results are discarded.
        """
        started = time.monotonic()
        callbacks = callbacks or SearchProgressCallback()
        cancelled = is_cancelled or (lambda: False)
        concurrency = max(self.config.parallel_searches, 1)
        by_id = {sq.id: sq for sq in sub_questions}

        pending = deque(
            SearchWorkerInput(sub_question=sq, session_id=session_id, context=context)
            for sq in sub_questions
        )
        in_flight: dict[str, asyncio.Task[tuple[int, SearchWorkerOutput]]] = {}
        finish_order = itertools.count()
        result = ParallelSearchResult()

        async def run_one(worker_input: SearchWorkerInput) -> tuple[int, SearchWorkerOutput]:
            sq_id = worker_input.sub_question.id
            output = await self.retry_search(
                worker_input,
                model,
                self.config.max_retries,
                on_progress=lambda found: callbacks.on_search_progress(sq_id, found),
            )
            return next(finish_order), output

        try:
            while pending or in_flight:
                while pending and len(in_flight) < concurrency and not cancelled():
                    worker_input = pending.popleft()
                    sq = worker_input.sub_question
                    callbacks.on_search_start(sq.id, sq.question)
                    result.searches_started += 1
                    in_flight[sq.id] = asyncio.create_task(run_one(worker_input), name=f"search-{sq.id}")

                if not in_flight:
                    break

                done, _ = await asyncio.wait(in_flight.values(), return_when=asyncio.FIRST_COMPLETED)
                settled = sorted((task.result() for task in done), key=lambda item: item[0])
                for _, output in settled:
                    sq = by_id[output.sub_question_id]
                    in_flight.pop(sq.id, None)
                    result.busy_duration_ms += output.duration_ms

                    if cancelled():
                        result.cancelled_questions.append(sq)
                    elif output.success and output.note is not None:
                        result.notes.append(output.note)
                        callbacks.on_search_complete(sq.id, output.note)
                    else:
                        error = output.error or "Unknown error"
                        result.failed_questions.append(sq)
                        result.errors[sq.id] = error
                        callbacks.on_search_error(sq.id, error)
        finally:
            for task in in_flight.values():
                task.cancel()

        result.cancelled_questions.extend(item.sub_question for item in pending)

        result.total_duration_ms = int((time.monotonic() - started) * 1000)
        capacity_ms = result.total_duration_ms * concurrency
        result.parallelization_efficiency = (
            min(1.0, result.busy_duration_ms / capacity_ms) if capacity_ms > 0 else 0.0
        )

        logger.info(
            f"Completed {len(result.notes)}/{len(sub_questions)} searches in "
            f"{result.total_duration_ms}ms ({round(result.parallelization_efficiency * 100)}% efficient)"
        )
        log_service.log_research_step(
            session_id,
            "search_batch",
            "completed",
            {
                "requested": len(sub_questions),
                "succeeded": len(result.notes),
                "failed": len(result.failed_questions),
                "cancelled": len(result.cancelled_questions),
                "duration_ms": result.total_duration_ms,
            },
        )
        return result
