from __future__ import annotations

import json as _json

from fastapi import APIRouter, HTTPException
from sse_starlette.sse import EventSourceResponse

from deepresearch.agents.orchestrator import ResearchOrchestrator
from deepresearch.config import settings
from deepresearch.models.schemas import ResearchHealthResponse, ResearchRequest
from deepresearch.services import logger as log_service
from deepresearch.services import streaming
from deepresearch.services.errors import ErrorCode

router = APIRouter(prefix="/api/research", tags=["research"])

MAX_QUERY_LENGTH = 2000


def create_orchestrator() -> ResearchOrchestrator:
    return ResearchOrchestrator()


def _missing_keys() -> list[str]:
    required = {
        "OPENROUTER_API_KEY": settings.openrouter_api_key,
        "PERPLEXITY_API_KEY": settings.perplexity_api_key,
    }
    return [name for name, value in required.items() if not (value or "").strip()]


@router.post("")
async def start_research(request: ResearchRequest):
    """Run a research session and stream its events over SSE."""
    query = request.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Query is required")
    if len(query) > MAX_QUERY_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Query is too long (maximum {MAX_QUERY_LENGTH} characters)",
        )

    missing = _missing_keys()
    if missing:
        raise HTTPException(
            status_code=503,
            detail=f"Research is not configured: missing {', '.join(missing)}",
        )

    orchestrator = create_orchestrator()
    options = {
        "use_llm_classification": request.use_llm_classification,
        "force_complexity": request.force_complexity,
        "max_rounds": request.max_rounds,
    }

    async def event_generator():
        try:
            async for event in orchestrator.research(query, **options):
                yield {
                    "event": event.event.value,
                    "data": _json.dumps(event.to_dict()),
                }
        except Exception as e:
            log_service.log_event(
                event_type="stream_error",
                message="Unhandled error in research stream",
                error=str(e),
            )
            error_event = streaming.error(
                "",
                ErrorCode.UNKNOWN,
                recoverable=False,
                message="Research stream failed unexpectedly.",
            )
            yield {
                "event": error_event.event.value,
                "data": _json.dumps(error_event.to_dict()),
            }

    return EventSourceResponse(event_generator())


@router.get("/health", response_model=ResearchHealthResponse)
async def research_health():
    missing = _missing_keys()
    return ResearchHealthResponse(
        status="ok" if not missing else "degraded",
        search_configured="PERPLEXITY_API_KEY" not in missing,
        llm_configured="OPENROUTER_API_KEY" not in missing,
    )
