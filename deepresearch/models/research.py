from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QueryComplexity(StrEnum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class SearchModel(StrEnum):
    SONAR = "sonar"
    SONAR_PRO = "sonar-pro"


class Priority(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def parse(cls, value: object) -> "Priority":
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.MEDIUM


PRIORITY_WEIGHTS: dict[Priority, int] = {
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.LOW: 1,
}


class SubQuestionStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


class SessionStatus(StrEnum):
    PLANNING = "planning"
    SEARCHING = "searching"
    SYNTHESIZING = "synthesizing"
    GAP_ANALYSIS = "gap_analysis"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETE, SessionStatus.FAILED, SessionStatus.CANCELLED}
)


class ClassificationResult(BaseModel):
    """Complexity verdict for a query. Produced once per query."""

    model_config = ConfigDict(frozen=True)

    complexity: QueryComplexity
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str
    estimated_time: int  # seconds
    suggested_model: SearchModel


class SubQuestion(BaseModel):
    """An independently searchable fragment of the research query."""

    id: str
    question: str
    reasoning: str = ""
    priority: Priority = Priority.MEDIUM
    depends_on: list[str] = Field(default_factory=list)  # IDs of prerequisite sub-questions
    status: SubQuestionStatus = SubQuestionStatus.PENDING
    round: int = 1
    gap_id: Optional[str] = None  # Gap this sub-question was created to resolve


class ResearchPlan(BaseModel):
    """Dependency graph of sub-questions, stored as an arena keyed by id."""

    id: str
    session_id: str
    original_query: str
    sub_questions: list[SubQuestion] = Field(default_factory=list)
    version: int = 1  # Incremented whenever sub-questions are appended
    created_at: datetime = Field(default_factory=utc_now)
    total_estimated_time: int = 0

    def index(self) -> dict[str, SubQuestion]:
        return {sq.id: sq for sq in self.sub_questions}


class Citation(BaseModel):
    id: str
    url: str
    title: str
    domain: str
    favicon: Optional[str] = None
    snippet: Optional[str] = None
    display_number: int = 0


class ResearchNote(BaseModel):
    """Cited output of one successfully completed sub-question search."""

    model_config = ConfigDict(frozen=True)

    id: str
    session_id: str
    sub_question_id: str
    content: str
    citations: list[Citation] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=0.95)
    created_at: datetime = Field(default_factory=utc_now)


class ResearchGap(BaseModel):
    id: str
    round: int = 1
    description: str
    suggested_query: str
    priority: Priority = Priority.MEDIUM
    resolved: bool = False


class SessionMetrics(BaseModel):
    total_queries: int = 0
    total_duration_ms: int = 0
    parallelization_efficiency: float = 0.0
    estimated_cost_usd: float = 0.0
    classification_duration_ms: int = 0
    planning_duration_ms: int = 0
    search_duration_ms: int = 0
    synthesis_duration_ms: int = 0
    round2_duration_ms: Optional[int] = None
    total_citations: int = 0
    gaps_found: int = 0
    gaps_resolved: int = 0


class ResearchSession(BaseModel):
    """Single-owner state of one research run. Only the orchestrator writes it."""

    id: str
    query: str
    status: SessionStatus = SessionStatus.PLANNING
    complexity: Optional[QueryComplexity] = None
    plan: Optional[ResearchPlan] = None
    notes: list[ResearchNote] = Field(default_factory=list)
    gaps: list[ResearchGap] = Field(default_factory=list)
    citations: list[Citation] = Field(default_factory=list)
    final_answer: Optional[str] = None
    current_round: int = 1
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    metrics: SessionMetrics = Field(default_factory=SessionMetrics)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot(self) -> dict[str, Any]:
        """JSON-ready copy for callers that persist sessions."""
        return self.model_dump(mode="json")
