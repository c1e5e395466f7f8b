from __future__ import annotations

import json
from typing import Any, AsyncIterator

import httpx
from loguru import logger

from deepresearch.models.research import SearchModel
from deepresearch.services.errors import ConfigurationError
from deepresearch.tools.search_provider import SearchChunk

MODEL_IDS: dict[SearchModel, str] = {
    SearchModel.SONAR: "sonar",
    SearchModel.SONAR_PRO: "sonar-pro",
}


class PerplexityAPIError(RuntimeError):
    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        super().__init__(f"Perplexity API error: {status_code} - {body[:500]}")


def parse_stream_line(line: str) -> SearchChunk | None:
    """Decode one SSE line from the chat-completions stream."""
    if not line.startswith("data:"):
        return None
    data = line[5:].strip()
    if not data or data == "[DONE]":
        return None
    try:
        payload: dict[str, Any] = json.loads(data)
    except json.JSONDecodeError:
        logger.debug(f"Skipping malformed stream line: {data[:120]}")
        return None

    delta = ""
    choices = payload.get("choices") or []
    if choices:
        delta = ((choices[0] or {}).get("delta") or {}).get("content") or ""
    citations = [c for c in payload.get("citations") or [] if isinstance(c, str)]
    if not delta and not citations:
        return None
    return SearchChunk(delta=delta, citations=citations)


class PerplexitySearchProvider:
    """Streaming client for the Perplexity Sonar chat-completions API."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.perplexity.ai",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = (api_key or "").strip()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def ensure_configured(self) -> None:
        if not self.api_key:
            raise ConfigurationError("PERPLEXITY_API_KEY is not configured")

    async def stream(
        self, model: SearchModel, messages: list[dict[str, str]]
    ) -> AsyncIterator[SearchChunk]:
        self.ensure_configured()
        body = {
            "model": MODEL_IDS[SearchModel(model)],
            "messages": messages,
            "stream": True,
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            async with client.stream(
                "POST",
                f"{self.base_url}/chat/completions",
                json=body,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                    "Accept": "text/event-stream",
                },
            ) as response:
                if response.status_code >= 400:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise PerplexityAPIError(response.status_code, error_text)

                async for line in response.aiter_lines():
                    chunk = parse_stream_line(line)
                    if chunk is not None:
                        yield chunk
