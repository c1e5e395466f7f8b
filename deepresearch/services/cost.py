"""Search and synthesis cost estimates in USD."""
from __future__ import annotations

from deepresearch.config import COST_PER_QUERY
from deepresearch.models.research import QueryComplexity, SearchModel

# Synthesis model pricing per 1k tokens
LLM_COST_PER_1K_TOKENS: dict[str, float] = {"input": 0.003, "output": 0.015}

SYNTHESIS_INPUT_TOKENS_PER_1K_CHARS = 300
SYNTHESIS_OUTPUT_TOKENS = 2000

QUERIES_BY_COMPLEXITY: dict[QueryComplexity, int] = {
    QueryComplexity.SIMPLE: 1,
    QueryComplexity.MODERATE: 3,
    QueryComplexity.COMPLEX: 5,
}


def search_cost(
    query_count: int, model: SearchModel, cost_table: dict[str, float] | None = None
) -> float:
    table = cost_table or COST_PER_QUERY
    return query_count * table[SearchModel(model).value]


def estimate_session_cost(
    complexity: QueryComplexity,
    model: SearchModel = SearchModel.SONAR,
    cost_table: dict[str, float] | None = None,
) -> float:
    """Upfront cost estimate for a whole session of the given complexity.

    Complex sessions are assumed to need a second round at about half the
    cost of the first.
    """
    searches = search_cost(QUERIES_BY_COMPLEXITY[complexity], model, cost_table)
    synthesis = (
        SYNTHESIS_INPUT_TOKENS_PER_1K_CHARS * 5 * LLM_COST_PER_1K_TOKENS["input"]
        + SYNTHESIS_OUTPUT_TOKENS * LLM_COST_PER_1K_TOKENS["output"]
    ) / 1000
    multiplier = 1.5 if complexity == QueryComplexity.COMPLEX else 1.0
    return round((searches + synthesis) * multiplier, 6)
