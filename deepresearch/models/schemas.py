from pydantic import BaseModel

from deepresearch.models.research import QueryComplexity

# --- Requests ---


class ResearchRequest(BaseModel):
    query: str
    use_llm_classification: bool = False
    force_complexity: QueryComplexity | None = None
    max_rounds: int | None = None


# --- Responses ---


class ResearchHealthResponse(BaseModel):
    status: str
    search_configured: bool
    llm_configured: bool
