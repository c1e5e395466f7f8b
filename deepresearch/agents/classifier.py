"""Query complexity classification.

Heuristic scoring by default; an LLM second opinion only for low-confidence
queries when explicitly requested.
"""
from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from deepresearch.config import ResearchConfig
from deepresearch.llm_client import LLMProvider
from deepresearch.models.research import ClassificationResult, QueryComplexity, SearchModel
from deepresearch.services.fallback import with_fallback
from deepresearch.services.llm_json import extract_json_object
from deepresearch.services.prompt_store import render_prompt

COMPLEXITY_INDICATORS: dict[QueryComplexity, tuple[str, ...]] = {
    QueryComplexity.SIMPLE: (
        "what is",
        "who is",
        "define",
        "meaning of",
        "when did",
        "where is",
    ),
    QueryComplexity.MODERATE: (
        "compare",
        "difference between",
        "how does",
        "explain",
        "why does",
        "benefits of",
        "pros and cons",
    ),
    QueryComplexity.COMPLEX: (
        "analyze",
        "evaluate",
        "comprehensive",
        "in-depth",
        "deep dive",
        "research",
        "investigate",
        "thorough",
        "detailed comparison",
        "implications of",
        "impact on",
        "factors affecting",
    ),
}

# Complex indicators are weighted higher than the rest.
KEYWORD_WEIGHTS: dict[QueryComplexity, int] = {
    QueryComplexity.SIMPLE: 2,
    QueryComplexity.MODERATE: 2,
    QueryComplexity.COMPLEX: 3,
}

SIMPLE_LENGTH_THRESHOLD = 50
MODERATE_LENGTH_THRESHOLD = 150

CONJUNCTIONS = ("and", "as well as", "along with", "including")
TEMPORAL_WORDS = ("over time", "historically", "evolution", "trend")
QUANTITATIVE_WORDS = ("statistics", "data", "numbers", "metrics", "percentage")

ESTIMATED_TIME_BY_COMPLEXITY: dict[QueryComplexity, int] = {
    QueryComplexity.SIMPLE: 10,
    QueryComplexity.MODERATE: 30,
    QueryComplexity.COMPLEX: 60,
}

RESEARCH_TRIGGER_KEYWORDS = (
    "research",
    "deep dive",
    "comprehensive analysis",
    "compare thoroughly",
    "investigate",
    "detailed breakdown",
    "in-depth analysis",
    "thorough research",
    "extensive research",
    "analyze in detail",
    "full analysis",
    "complete overview",
    "detailed comparison",
    "research report",
)
MIN_RESEARCH_QUERY_LENGTH = 20


@dataclass
class HeuristicScore:
    simple: int = 0
    moderate: int = 0
    complex: int = 0

    def add(self, bucket: QueryComplexity, points: int) -> None:
        setattr(self, bucket.value, getattr(self, bucket.value) + points)

    def __add__(self, other: "HeuristicScore") -> "HeuristicScore":
        return HeuristicScore(
            simple=self.simple + other.simple,
            moderate=self.moderate + other.moderate,
            complex=self.complex + other.complex,
        )

    @property
    def total(self) -> int:
        return self.simple + self.moderate + self.complex


def get_recommended_model(complexity: QueryComplexity) -> SearchModel:
    return SearchModel.SONAR_PRO if complexity == QueryComplexity.COMPLEX else SearchModel.SONAR


def score_by_keywords(query: str) -> HeuristicScore:
    normalized = query.lower()
    scores = HeuristicScore()
    for bucket, indicators in COMPLEXITY_INDICATORS.items():
        for indicator in indicators:
            if indicator in normalized:
                scores.add(bucket, KEYWORD_WEIGHTS[bucket])
    return scores


def score_by_length(query: str) -> HeuristicScore:
    length = len(query.strip())
    scores = HeuristicScore()
    if length < SIMPLE_LENGTH_THRESHOLD:
        scores.simple += 3
    elif length < MODERATE_LENGTH_THRESHOLD:
        scores.moderate += 2
    else:
        scores.complex += 2
    return scores


def score_by_structure(query: str) -> HeuristicScore:
    normalized = query.lower()
    scores = HeuristicScore()

    if query.count("?") > 1:
        scores.complex += 2
    for conj in CONJUNCTIONS:
        if conj in normalized:
            scores.moderate += 1
    for word in TEMPORAL_WORDS:
        if word in normalized:
            scores.complex += 2
    for word in QUANTITATIVE_WORDS:
        if word in normalized:
            scores.moderate += 1
    return scores


def combine_scores(*parts: HeuristicScore) -> tuple[QueryComplexity, float]:
    totals = HeuristicScore()
    for part in parts:
        totals = totals + part

    # Ties resolve toward the more complex bucket.
    if totals.complex >= totals.moderate and totals.complex >= totals.simple:
        complexity, winning = QueryComplexity.COMPLEX, totals.complex
    elif totals.moderate >= totals.simple:
        complexity, winning = QueryComplexity.MODERATE, totals.moderate
    else:
        complexity, winning = QueryComplexity.SIMPLE, totals.simple

    if totals.total == 0:
        return complexity, 0.5
    return complexity, min(0.95, 0.5 + (winning / totals.total) * 0.45)


def classify_query_heuristic(query: str) -> ClassificationResult:
    """Fast classification without an LLM call."""
    complexity, confidence = combine_scores(
        score_by_keywords(query),
        score_by_length(query),
        score_by_structure(query),
    )
    return ClassificationResult(
        complexity=complexity,
        confidence=confidence,
        reasoning="Heuristic classification based on keywords, length, and structure",
        estimated_time=ESTIMATED_TIME_BY_COMPLEXITY[complexity],
        suggested_model=get_recommended_model(complexity),
    )


def should_use_fast_path(result: ClassificationResult, min_confidence: float = 0.7) -> bool:
    """Simple, high-confidence queries skip the multi-step pipeline."""
    return result.complexity == QueryComplexity.SIMPLE and result.confidence >= min_confidence


def should_trigger_research(query: str) -> bool:
    """Whether a chat message looks like a request for deep research."""
    normalized = query.lower().strip()
    if len(normalized) < MIN_RESEARCH_QUERY_LENGTH:
        return False
    return any(keyword in normalized for keyword in RESEARCH_TRIGGER_KEYWORDS)


class QueryClassifier:
    def __init__(self, config: ResearchConfig, llm: LLMProvider | None = None):
        self.config = config
        self.llm = llm

    def _forced(self, complexity: QueryComplexity) -> ClassificationResult:
        return ClassificationResult(
            complexity=complexity,
            confidence=1.0,
            reasoning="Forced complexity",
            estimated_time=ESTIMATED_TIME_BY_COMPLEXITY[complexity],
            suggested_model=get_recommended_model(complexity),
        )

    async def _classify_with_llm(self, query: str) -> ClassificationResult:
        if self.llm is None:
            raise RuntimeError("No LLM provider configured for classification")
        reply = await self.llm.complete(
            model=self.config.classifier_model,
            system=render_prompt("classifier.system"),
            user_text=query,
            max_tokens=200,
        )
        parsed = extract_json_object(reply)
        complexity = QueryComplexity(str(parsed["complexity"]).strip().lower())
        confidence = max(0.0, min(1.0, float(parsed.get("confidence", 0.5))))
        return ClassificationResult(
            complexity=complexity,
            confidence=confidence,
            reasoning=str(parsed.get("reasoning") or "LLM classification"),
            estimated_time=ESTIMATED_TIME_BY_COMPLEXITY[complexity],
            suggested_model=get_recommended_model(complexity),
        )

    async def classify(
        self,
        query: str,
        *,
        use_llm: bool = False,
        force_complexity: QueryComplexity | None = None,
    ) -> ClassificationResult:
        """Classify query complexity. Never raises."""
        if force_complexity is not None:
            return self._forced(QueryComplexity(force_complexity))

        heuristic = classify_query_heuristic(query)
        if not use_llm or heuristic.confidence >= self.config.llm_classification_threshold:
            logger.info(
                f"Using heuristic classification: {heuristic.complexity} ({heuristic.confidence:.2f})"
            )
            return heuristic

        logger.info("Low confidence heuristic, using LLM classification")
        return await with_fallback(
            "classification",
            lambda: self._classify_with_llm(query),
            lambda: heuristic,
        )

    def should_use_fast_path(self, result: ClassificationResult) -> bool:
        return should_use_fast_path(result, self.config.fast_path_min_confidence)
