from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from ..errors import CancellationError, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

DelayFn = Callable[[int], float]


def fixed_delay(seconds: float) -> DelayFn:
    return lambda attempt: seconds


def backoff_delay(base: float, factor: float = 1.5, cap: Optional[float] = None) -> DelayFn:
    """base * factor**attempt, optionally capped. attempt counts from 0."""

    def _delay(attempt: int) -> float:
        value = base * (factor ** attempt)
        return min(value, cap) if cap is not None else value

    return _delay


async def retry_async(
    operation: Callable[[int], Awaitable[T]],
    *,
    max_attempts: int,
    delay: DelayFn = fixed_delay(0.0),
    should_retry: Callable[[BaseException], bool] = is_retryable,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    cancel: Optional[asyncio.Event] = None,
) -> T:
    """
    Run ``operation(attempt)`` until it succeeds or ``max_attempts`` is used up.

    The last error is re-raised on exhaustion. Errors rejected by ``should_retry`` are
    raised immediately. ``on_retry(attempt, exc)`` fires before each sleep, so it is
    called exactly once per extra attempt.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    attempt = 0
    while True:
        if cancel is not None and cancel.is_set():
            raise CancellationError("cancelled before attempt %d" % (attempt + 1))
        try:
            return await operation(attempt)
        except CancellationError:
            raise
        except Exception as exc:
            if not should_retry(exc) or attempt + 1 >= max_attempts:
                raise
            wait = delay(attempt)
            logger.debug("attempt %s/%s failed (%r); retrying in %.2fs", attempt + 1, max_attempts, exc, wait)
            if on_retry is not None:
                on_retry(attempt, exc)
            await _sleep(wait, cancel)
            attempt += 1


async def _sleep(seconds: float, cancel: Optional[asyncio.Event]) -> None:
    if seconds <= 0:
        await asyncio.sleep(0)
        return
    if cancel is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise CancellationError("cancelled during retry delay")


async def cancellable_sleep(seconds: float, cancel: Optional[asyncio.Event] = None) -> None:
    """Sleep that ends early with CancellationError when ``cancel`` is set."""
    await _sleep(seconds, cancel)
