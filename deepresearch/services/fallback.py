from __future__ import annotations

from typing import Awaitable, Callable, TypeVar

from loguru import logger

from deepresearch.services import logger as log_service

T = TypeVar("T")


async def with_fallback(
    operation: str,
    call: Callable[[], Awaitable[T]],
    fallback: Callable[[], T],
) -> T:
    """Await `call()`; on any provider or parse error return `fallback()`.

    The failure is logged and never surfaced to the caller. Cancellation is
    not an `Exception` and still propagates.
    """
    try:
        return await call()
    except Exception as exc:
        logger.warning(f"{operation} failed, using fallback: {exc}")
        log_service.log_event(
            event_type="fallback",
            message=f"{operation} fell back",
            operation=operation,
            error=str(exc),
        )
        return fallback()
