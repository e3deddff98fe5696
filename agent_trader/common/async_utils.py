from __future__ import annotations

import asyncio
import inspect
import logging
import random
from typing import Any, Awaitable, Callable, TypeVar

from .logging import log_event

T = TypeVar("T")


async def guarded_call(
    action: Callable[[], Awaitable[T] | T],
    *,
    logger: logging.Logger,
    event: str,
    message: str,
    level: str = "warning",
    default: T | None = None,
    reraise: bool = False,
    **fields: Any,
) -> T | None:
    """Run a best-effort side action; failures are logged and turned into ``default``."""
    try:
        result = action()
        if inspect.isawaitable(result):
            return await result
        return result
    except asyncio.CancelledError:
        raise
    except Exception as error:
        log_event(
            logger,
            level=level,
            event=event,
            message=message,
            error=str(error),
            error_type=type(error).__name__,
            **fields,
        )
        if reraise:
            raise
        return default


async def close_resources(
    resources: dict[str, Callable[[], Awaitable[Any]]],
    *,
    logger: logging.Logger,
    reason: str,
) -> None:
    """Close each named resource in order; one failing close does not skip the rest."""
    for name, close in resources.items():
        await guarded_call(
            close,
            logger=logger,
            event=f"{name}_close_failed",
            message=f"Failed to close {name}",
            reason=reason,
        )


def retry_delay(
    attempt: int,
    *,
    base_seconds: float,
    max_seconds: float,
    jitter_ratio: float = 0.25,
) -> float:
    # Linear growth with up to ``jitter_ratio * base`` of random spread.
    if base_seconds <= 0:
        return 0.0
    delay = base_seconds * max(1, attempt) + random.uniform(0.0, base_seconds * jitter_ratio)
    return min(max_seconds, delay)


async def wait_with_stop(stop_event: asyncio.Event, timeout_seconds: float) -> None:
    if timeout_seconds <= 0:
        return

    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        pass
