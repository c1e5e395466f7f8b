"""OpenRouter LLM client used for classification, planning and synthesis."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Protocol

from deepresearch.config import settings
from deepresearch.services import logger as log_service
from deepresearch.services.errors import ConfigurationError


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class TextBlock:
    type: str
    text: str


@dataclass
class MessageResponse:
    content: list[TextBlock]
    usage: Usage

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.content if b.type == "text" and b.text).strip()


class LLMProvider(Protocol):
    """What the research components need from a chat model."""

    def ensure_configured(self) -> None: ...

    async def complete(
        self, *, model: str, system: str, user_text: str, max_tokens: int = 1000
    ) -> str: ...

    def stream(
        self, *, model: str, max_tokens: int, system: str, messages: list[dict[str, Any]]
    ) -> "OpenRouterStream": ...


class OpenRouterStream:
    def __init__(self, stream_coro: Any):
        self._stream_coro = stream_coro
        self._stream: Any | None = None
        self._usage = Usage()
        self._finished = False

    async def __aenter__(self) -> "OpenRouterStream":
        self._stream = await self._stream_coro
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._stream is not None:
            await self._stream.close()

    async def _iter_text(self) -> AsyncIterator[str]:
        if self._stream is None:
            return
        async for chunk in self._stream:
            choices = getattr(chunk, "choices", None) or []
            usage = getattr(chunk, "usage", None)
            if usage:
                self._usage = Usage(
                    input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                    output_tokens=getattr(usage, "completion_tokens", 0) or 0,
                )

            if not choices:
                continue
            delta = getattr(choices[0], "delta", None)
            if not delta:
                continue
            text = getattr(delta, "content", None)
            if text:
                yield text
        self._finished = True

    @property
    def text_stream(self) -> AsyncIterator[str]:
        return self._iter_text()

    async def get_final_message(self) -> MessageResponse:
        if not self._finished:
            async for _ in self.text_stream:
                pass
        return MessageResponse(content=[], usage=self._usage)


class OpenRouterMessagesAdapter:
    """Anthropic-style `create`/`stream` calls over the OpenAI-compatible SDK."""

    def __init__(self, openai_client: Any, api_key: str = ""):
        self._client = openai_client
        self._api_key = api_key

    @staticmethod
    def _temperature_for_model(model: str) -> int:
        # Some OpenAI GPT-5-compatible gateways reject temperature=0.
        lowered = (model or "").lower()
        if "gpt-5" in lowered:
            return 1
        return 0

    @staticmethod
    def _to_openai_messages(system: str, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        openai_messages: list[dict[str, Any]] = [{"role": "system", "content": system}]
        for message in messages:
            openai_messages.append({"role": message["role"], "content": str(message["content"])})
        return openai_messages

    @staticmethod
    def _from_openai_response(response: Any) -> MessageResponse:
        choice = response.choices[0].message
        content: list[TextBlock] = []

        text = getattr(choice, "content", None)
        if text:
            content.append(TextBlock(type="text", text=text))

        usage = getattr(response, "usage", None)
        mapped_usage = Usage(
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )
        return MessageResponse(content=content, usage=mapped_usage)

    def ensure_configured(self) -> None:
        if not self._api_key:
            raise ConfigurationError("OPENROUTER_API_KEY is not configured")

    async def create(
        self,
        *,
        model: str,
        max_tokens: int,
        system: str,
        messages: list[dict[str, Any]],
    ) -> MessageResponse:
        response = await self._client.chat.completions.create(
            model=model,
            messages=self._to_openai_messages(system, messages),
            max_tokens=max_tokens,
            temperature=self._temperature_for_model(model),
        )
        return self._from_openai_response(response)

    async def complete(
        self, *, model: str, system: str, user_text: str, max_tokens: int = 1000
    ) -> str:
        t0 = time.monotonic()
        try:
            response = await self.create(
                model=model,
                max_tokens=max_tokens,
                system=system,
                messages=[{"role": "user", "content": user_text}],
            )
        except Exception as exc:
            log_service.log_llm_call(
                model=model,
                caller="complete",
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(exc),
            )
            raise
        log_service.log_llm_call(
            model=model,
            caller="complete",
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        return response.text

    def stream(
        self,
        *,
        model: str,
        max_tokens: int,
        system: str,
        messages: list[dict[str, Any]],
    ) -> OpenRouterStream:
        stream = self._client.chat.completions.create(
            model=model,
            messages=self._to_openai_messages(system, messages),
            max_tokens=max_tokens,
            temperature=self._temperature_for_model(model),
            stream=True,
            stream_options={"include_usage": True},
        )
        return OpenRouterStream(stream)


def get_client() -> OpenRouterMessagesAdapter:
    """Get OpenRouter client via OpenAI-compatible SDK."""
    from openai import AsyncOpenAI

    base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
    openai_client = AsyncOpenAI(
        api_key=settings.openrouter_api_key or "missing",
        base_url=base_url,
    )
    return OpenRouterMessagesAdapter(openai_client, api_key=settings.openrouter_api_key)


_client: OpenRouterMessagesAdapter | None = None


def client() -> OpenRouterMessagesAdapter:
    """Get or create the LLM client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client
