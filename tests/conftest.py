from __future__ import annotations

import asyncio
from typing import Any

import pytest

from deepresearch.services.errors import ConfigurationError
from deepresearch.tools.search_provider import SearchChunk

DEFAULT_CONTENT = "Photosynthesis converts light into chemical energy [1]. About 90% of it happens in leaves [2]."
DEFAULT_URLS = ["https://www.example.com/plant-energy.html", "https://biology.org/leaves"]


class FakeSearchProvider:
    """Scripted search provider.

    `responses` maps a question to a list of outcomes consumed per call; an
    outcome is either an exception to raise or a `(content, urls)` pair.
    """

    def __init__(
        self,
        responses: dict[str, list[Any]] | None = None,
        *,
        default: Any = (DEFAULT_CONTENT, DEFAULT_URLS),
        delay: float = 0.0,
        delays: dict[str, float] | None = None,
        configured: bool = True,
    ):
        self.responses = {question: list(outcomes) for question, outcomes in (responses or {}).items()}
        self.default = default
        self.delay = delay
        self.delays = delays or {}
        self.configured = configured
        self.calls: list[str] = []
        self.messages: list[list[dict[str, str]]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def ensure_configured(self) -> None:
        if not self.configured:
            raise ConfigurationError("PERPLEXITY_API_KEY is not configured")

    async def stream(self, model, messages):
        question = messages[-1]["content"]
        self.calls.append(question)
        self.messages.append(messages)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(question, self.delay))
            queue = self.responses.get(question)
            outcome = queue.pop(0) if queue else self.default
            if isinstance(outcome, Exception):
                raise outcome
            content, urls = outcome
            yield SearchChunk(delta=content)
            yield SearchChunk(citations=list(urls))
        finally:
            self.in_flight -= 1


class FakeLLMStream:
    def __init__(self, text: str | Exception):
        self._text = text

    async def __aenter__(self):
        if isinstance(self._text, Exception):
            raise self._text
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def _iter(self):
        text = self._text
        for start in range(0, len(text), 40):
            yield text[start : start + 40]

    @property
    def text_stream(self):
        return self._iter()


class FakeLLM:
    """LLM provider returning queued replies for `complete` and `stream`."""

    def __init__(
        self,
        complete_replies: list[str | Exception] | None = None,
        stream_replies: list[str | Exception] | None = None,
        *,
        configured: bool = True,
    ):
        self.complete_replies = list(complete_replies or [])
        self.stream_replies = list(stream_replies or [])
        self.configured = configured
        self.complete_calls: list[dict[str, Any]] = []
        self.stream_calls: list[dict[str, Any]] = []

    def ensure_configured(self) -> None:
        if not self.configured:
            raise ConfigurationError("OPENROUTER_API_KEY is not configured")

    async def complete(self, *, model: str, system: str, user_text: str, max_tokens: int = 1000) -> str:
        self.complete_calls.append({"model": model, "system": system, "user_text": user_text})
        if not self.complete_replies:
            raise RuntimeError("no scripted completion")
        reply = self.complete_replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def stream(self, *, model: str, max_tokens: int, system: str, messages: list[dict[str, Any]]):
        self.stream_calls.append({"model": model, "system": system, "messages": messages})
        if not self.stream_replies:
            return FakeLLMStream(RuntimeError("no scripted stream"))
        return FakeLLMStream(self.stream_replies.pop(0))


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()
