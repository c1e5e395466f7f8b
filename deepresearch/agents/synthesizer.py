"""Combines research notes into a cited answer and finds what is still missing."""
from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from loguru import logger

from deepresearch.config import ResearchConfig
from deepresearch.llm_client import LLMProvider
from deepresearch.models.research import (
    PRIORITY_WEIGHTS,
    Citation,
    Priority,
    ResearchGap,
    ResearchNote,
    ResearchPlan,
    SubQuestion,
    SubQuestionStatus,
)
from deepresearch.services.errors import SynthesisError
from deepresearch.services.llm_json import split_trailing_json
from deepresearch.services.prompt_store import render_prompt
from deepresearch.tools.web_utils import normalize_url

_CITATION_MARKER = re.compile(r"\[(\d+)\]")
PROGRESS_INTERVAL_S = 0.5
EXPECTED_ANSWER_CHARS = 3000


@dataclass
class SynthesisOutput:
    answer: str
    citations: list[Citation] = field(default_factory=list)
    gaps: list[ResearchGap] = field(default_factory=list)
    confidence: float = 0.0


def _richness(citation: Citation) -> int:
    has_real_title = bool(citation.title) and citation.title != citation.domain
    return sum(
        1 for value in (has_real_title, citation.domain, citation.favicon, citation.snippet) if value
    )


def merge_citations(existing: list[Citation], incoming: list[Citation]) -> list[Citation]:
    """Union two citation lists keyed by normalized URL.

    Existing order is kept. When both sides carry the same URL the record with
    more populated fields wins; on a tie the existing one stays.
    """
    merged: list[Citation] = []
    positions: dict[str, int] = {}
    for citation in [*existing, *incoming]:
        key = normalize_url(citation.url)
        if key not in positions:
            positions[key] = len(merged)
            merged.append(citation)
        elif _richness(citation) > _richness(merged[positions[key]]):
            merged[positions[key]] = citation
    return merged


def renumber_citations(citations: list[Citation]) -> list[Citation]:
    """Assign display numbers 1..N and matching `citation-N` ids."""
    return [
        citation.model_copy(update={"id": f"citation-{number}", "display_number": number})
        for number, citation in enumerate(citations, start=1)
    ]


def renumber_answer_citations(answer: str, citations: list[Citation]) -> tuple[str, list[Citation]]:
    """Rewrite `[n]` markers to first-use order and keep only cited sources.

    `citations[n - 1]` is the source referenced by marker `[n]`. Markers
    pointing outside the list are left untouched.
    """
    old_to_new: dict[int, int] = {}
    used: list[Citation] = []
    for match in _CITATION_MARKER.finditer(answer):
        number = int(match.group(1))
        if 1 <= number <= len(citations) and number not in old_to_new:
            old_to_new[number] = len(used) + 1
            used.append(citations[number - 1])

    def _replace(match: re.Match[str]) -> str:
        new_number = old_to_new.get(int(match.group(1)))
        return f"[{new_number}]" if new_number else match.group(0)

    return _CITATION_MARKER.sub(_replace, answer), renumber_citations(used)


def collect_sources(notes: list[ResearchNote]) -> list[Citation]:
    """Number every note citation globally, once per normalized URL."""
    return renumber_citations(merge_citations([], [c for note in notes for c in note.citations]))


def estimate_answer_confidence(answer: str, citations: list[Citation], gaps: list[ResearchGap]) -> float:
    """Confidence for answers whose model reply carried no gap analysis."""
    score = 0.6
    if len(answer) > 1000:
        score += 0.1
    if len(answer) > 2000:
        score += 0.05
    if len(citations) >= 3:
        score += 0.1
    if len(citations) >= 5:
        score += 0.05
    score -= sum(PRIORITY_WEIGHTS[gap.priority] * 0.05 for gap in gaps)
    return max(0.3, min(0.95, round(score, 4)))


def should_proceed_to_round2(
    gaps: list[ResearchGap],
    notes: list[ResearchNote],
    current_round: int,
    max_rounds: int,
    confidence: float | None = None,
    min_confidence_to_complete: float = 0.8,
) -> bool:
    """Another round only for unresolved high-priority gaps within the round budget."""
    if current_round >= max_rounds or not notes:
        return False
    if confidence is not None and confidence >= min_confidence_to_complete:
        return False
    return any(gap.priority == Priority.HIGH and not gap.resolved for gap in gaps)


def get_round2_queries(
    gaps: list[ResearchGap], round: int, max_gaps: int | None = None
) -> list[SubQuestion]:
    """Turn unresolved gaps into follow-up sub-questions, most important first."""
    open_gaps = sorted(
        (gap for gap in gaps if not gap.resolved),
        key=lambda gap: PRIORITY_WEIGHTS[gap.priority],
        reverse=True,
    )
    if max_gaps is not None:
        open_gaps = open_gaps[:max_gaps]
    return [
        SubQuestion(
            id=f"sq-r{round}-{index}",
            question=gap.suggested_query,
            reasoning=f"Addresses gap: {gap.description}",
            priority=gap.priority,
            round=round,
            gap_id=gap.id,
        )
        for index, gap in enumerate(open_gaps, start=1)
    ]


def detect_gaps(
    plan: ResearchPlan, notes: list[ResearchNote], round: int, gap_threshold: float = 0.6
) -> list[ResearchGap]:
    """Gaps visible without a model: failed sub-questions and weak notes."""
    gaps: list[ResearchGap] = []
    by_id = plan.index()

    for sq in plan.sub_questions:
        if sq.round == round and sq.status == SubQuestionStatus.FAILED:
            gaps.append(
                ResearchGap(
                    id=f"gap-{plan.session_id}-r{round}-d{len(gaps) + 1}",
                    round=round,
                    description=f"No results were found for: {sq.question}",
                    suggested_query=sq.question,
                    priority=Priority.HIGH,
                )
            )

    for note in notes:
        sq = by_id.get(note.sub_question_id)
        if sq is None or sq.round != round or note.confidence >= gap_threshold:
            continue
        gaps.append(
            ResearchGap(
                id=f"gap-{plan.session_id}-r{round}-d{len(gaps) + 1}",
                round=round,
                description=f"Limited coverage for: {sq.question}",
                suggested_query=sq.question,
                priority=Priority.MEDIUM,
            )
        )
    return gaps


def _parse_gaps(raw: Any, session_id: str, round: int, limit: int) -> list[ResearchGap]:
    if not isinstance(raw, list):
        return []
    gaps: list[ResearchGap] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        query = str(item.get("suggestedQuery") or "").strip()
        if not query:
            continue
        gaps.append(
            ResearchGap(
                id=f"gap-{session_id}-r{round}-{len(gaps)}",
                round=round,
                description=str(item.get("description") or query),
                suggested_query=query,
                priority=Priority.parse(item.get("priority")),
            )
        )
        if len(gaps) >= limit:
            break
    return gaps


class Synthesizer:
    def __init__(self, config: ResearchConfig, llm: LLMProvider | None = None):
        self.config = config
        self.llm = llm

    def build_user_prompt(
        self,
        query: str,
        notes: list[ResearchNote],
        sources: list[Citation],
        *,
        prior_gaps: list[ResearchGap] | None = None,
        prior_answer: str | None = None,
        prior_round: int = 1,
    ) -> str:
        numbers = {normalize_url(c.url): c.display_number for c in sources}
        note_sections = []
        for index, note in enumerate(notes, start=1):
            refs = ", ".join(
                f"[{numbers[normalize_url(c.url)]}] {c.url}" for c in note.citations
            )
            note_sections.append(
                f"## Research Note {index}\n"
                f"Question: {note.sub_question_id}\n"
                f"Content:\n{note.content}\n"
                f"Sources: {refs or 'none'}\n"
                f"Confidence: {round(note.confidence * 100)}%"
            )

        gap_context = ""
        if prior_gaps:
            gap_context = render_prompt(
                "synthesis.gap_context",
                gaps="\n".join(f"- {g.description}" for g in prior_gaps),
            )
        previous_context = ""
        if prior_answer:
            previous_context = render_prompt(
                "synthesis.previous_context", round=prior_round, answer=prior_answer
            )

        return render_prompt(
            "synthesis.user",
            query=query,
            notes="\n\n".join(note_sections),
            sources="\n".join(f"[{c.display_number}] {c.title} - {c.url}" for c in sources),
            gap_context=gap_context,
            previous_context=previous_context,
        )

    async def _stream_answer(
        self, user_prompt: str, on_progress: Callable[[float, str], None] | None
    ) -> str:
        if self.llm is None:
            raise SynthesisError("No LLM provider configured for synthesis")
        content = ""
        last_update = 0.0
        async with self.llm.stream(
            model=self.config.synthesis_model,
            max_tokens=4000,
            system=render_prompt("synthesis.system"),
            messages=[{"role": "user", "content": user_prompt}],
        ) as stream:
            async for text in stream.text_stream:
                content += text
                now = time.monotonic()
                if on_progress is not None and now - last_update > PROGRESS_INTERVAL_S:
                    on_progress(min(90.0, len(content) / EXPECTED_ANSWER_CHARS * 100), content)
                    last_update = now
        if on_progress is not None:
            on_progress(100.0, content)
        return content

    async def synthesize_answer(
        self,
        query: str,
        notes: list[ResearchNote],
        round: int = 1,
        prior_gaps: list[ResearchGap] | None = None,
        prior_answer: str | None = None,
        prior_citations: list[Citation] | None = None,
        on_progress: Callable[[float, str], None] | None = None,
        *,
        session_id: str = "",
    ) -> SynthesisOutput:
        """Write a cited answer from the notes.

        Citations in the result are numbered to match the `[n]` markers in
        the answer; prior citations not cited again follow after them.

        Raises:
            SynthesisError: if the model call fails or returns nothing.
        """
        started = time.monotonic()
        sources = collect_sources(notes)
        user_prompt = self.build_user_prompt(
            query,
            notes,
            sources,
            prior_gaps=prior_gaps,
            prior_answer=prior_answer,
            prior_round=max(round - 1, 1),
        )

        try:
            content = await self._stream_answer(user_prompt, on_progress)
        except SynthesisError:
            raise
        except Exception as exc:
            logger.error(f"Synthesis failed: {exc}")
            raise SynthesisError(f"Synthesis failed: {exc}") from exc

        answer, analysis = split_trailing_json(content, "gaps")
        if not answer:
            raise SynthesisError("Synthesis returned an empty answer")

        gaps = _parse_gaps(
            (analysis or {}).get("gaps"),
            session_id or "session",
            round,
            self.config.max_gaps_to_address,
        )
        answer, cited = renumber_answer_citations(answer, sources)
        citations = renumber_citations(merge_citations(cited, prior_citations or []))

        confidence: float
        raw_confidence = (analysis or {}).get("confidence")
        if isinstance(raw_confidence, (int, float)) and not isinstance(raw_confidence, bool):
            confidence = max(0.0, min(1.0, float(raw_confidence)))
        else:
            confidence = estimate_answer_confidence(answer, citations, gaps)

        logger.info(
            f"Synthesized round {round} answer ({len(answer)} chars) with {len(citations)} citations "
            f"and {len(gaps)} gaps in {int((time.monotonic() - started) * 1000)}ms"
        )
        return SynthesisOutput(answer=answer, citations=citations, gaps=gaps, confidence=confidence)

    def detect_gaps(self, plan: ResearchPlan, notes: list[ResearchNote], round: int) -> list[ResearchGap]:
        return detect_gaps(plan, notes, round, self.config.gap_threshold)

    def should_proceed_to_round2(
        self,
        gaps: list[ResearchGap],
        notes: list[ResearchNote],
        current_round: int,
        confidence: float | None = None,
    ) -> bool:
        return should_proceed_to_round2(
            gaps,
            notes,
            current_round,
            self.config.max_rounds,
            confidence,
            self.config.min_confidence_to_complete,
        )

    def get_round2_queries(self, gaps: list[ResearchGap], round: int) -> list[SubQuestion]:
        return get_round2_queries(gaps, round, self.config.max_gaps_to_address)
