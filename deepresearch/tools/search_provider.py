from __future__ import annotations

from dataclasses import dataclass, field
from typing import AsyncIterator, Protocol

from deepresearch.config import settings
from deepresearch.models.research import SearchModel


@dataclass
class SearchChunk:
    """One piece of a streamed search answer.

    Text arrives as `delta`; the citation URL list arrives with the last chunk.
    """

    delta: str = ""
    citations: list[str] = field(default_factory=list)


class SearchProvider(Protocol):
    def ensure_configured(self) -> None: ...

    def stream(
        self, model: SearchModel, messages: list[dict[str, str]]
    ) -> AsyncIterator[SearchChunk]: ...


_provider: SearchProvider | None = None


def get_search_provider() -> SearchProvider:
    """Get or create the configured search provider."""
    global _provider
    if _provider is None:
        from deepresearch.tools.perplexity_search import PerplexitySearchProvider

        _provider = PerplexitySearchProvider(
            api_key=settings.perplexity_api_key,
            base_url=settings.perplexity_base_url,
            timeout=settings.perplexity_timeout_s,
        )
    return _provider
