from __future__ import annotations

import re
from enum import StrEnum


class ErrorCode(StrEnum):
    CLASSIFICATION_FAILED = "CLASSIFICATION_FAILED"
    PLANNING_FAILED = "PLANNING_FAILED"
    SEARCH_FAILED = "SEARCH_FAILED"
    SYNTHESIS_FAILED = "SYNTHESIS_FAILED"
    TIMEOUT = "TIMEOUT"
    COST_LIMIT_EXCEEDED = "COST_LIMIT_EXCEEDED"
    RATE_LIMITED = "RATE_LIMITED"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"


ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.CLASSIFICATION_FAILED: "Unable to analyze the complexity of your query. Please try again.",
    ErrorCode.PLANNING_FAILED: "Unable to plan the research approach. Please try rephrasing your question.",
    ErrorCode.SEARCH_FAILED: "All searches failed. No research results are available.",
    ErrorCode.SYNTHESIS_FAILED: "Unable to synthesize the research results. Please try again.",
    ErrorCode.TIMEOUT: "Research took too long. Returning partial results.",
    ErrorCode.COST_LIMIT_EXCEEDED: "Research cost limit reached. Returning available results.",
    ErrorCode.RATE_LIMITED: "API rate limit reached. Please try again in a moment.",
    ErrorCode.CONFIGURATION_ERROR: "The research service is not configured. Check the provider API keys.",
    ErrorCode.CANCELLED: "Research was cancelled.",
    ErrorCode.UNKNOWN: "An unexpected error occurred during research.",
}

# Provider errors that will not go away by retrying.
_NON_RETRYABLE_PATTERN = re.compile(
    r"api[ _-]?key|authenticat|unauthori[sz]ed|\b401\b|\b403\b|rate[ _-]?limit|\b429\b|too many requests",
    re.IGNORECASE,
)
_RATE_LIMIT_PATTERN = re.compile(r"rate[ _-]?limit|\b429\b|too many requests", re.IGNORECASE)


class ResearchError(Exception):
    """Base error for the research pipeline."""

    code: ErrorCode = ErrorCode.UNKNOWN
    recoverable: bool = False

    def __init__(self, message: str | None = None, *, code: ErrorCode | None = None):
        if code is not None:
            self.code = code
        super().__init__(message or ERROR_MESSAGES[self.code])

    @property
    def user_message(self) -> str:
        return ERROR_MESSAGES[self.code]


class ConfigurationError(ResearchError):
    """Missing or invalid provider credentials."""

    code = ErrorCode.CONFIGURATION_ERROR


class SearchFailedError(ResearchError):
    code = ErrorCode.SEARCH_FAILED


class SynthesisError(ResearchError):
    code = ErrorCode.SYNTHESIS_FAILED


class CyclicDependencyError(ValueError):
    """Raised when sub-question dependencies cannot be ordered."""

    def __init__(self, unresolved: list[str]):
        self.unresolved = unresolved
        super().__init__(f"Unresolvable sub-question dependencies: {', '.join(unresolved)}")


class InvalidTransitionError(RuntimeError):
    """Raised when the orchestrator attempts an illegal session status change."""


def is_non_retryable(message: str) -> bool:
    """True for authentication, API-key and rate-limit failures."""
    return bool(_NON_RETRYABLE_PATTERN.search(message or ""))


def is_rate_limited(message: str) -> bool:
    return bool(_RATE_LIMIT_PATTERN.search(message or ""))
