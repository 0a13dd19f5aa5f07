"""
Backoff-Retry Executor

Wraps a remote call so that HTTP 429 (rate limited) responses are retried
with exponential delays of base, 2*base, 4*base ... between attempts.
Any other error is raised straight away. Waiting between attempts can be
interrupted with a stop event so that shutdown never sits in a sleep.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_STATUS = 429


class OperationCancelled(Exception):
    """Raised when the stop event fires before or between attempts."""


def is_rate_limited(exc: BaseException) -> bool:
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    return status == RATE_LIMIT_STATUS


async def _sleep(delay_seconds: float, stop_event: Optional[asyncio.Event]) -> None:
    if stop_event is None:
        await asyncio.sleep(delay_seconds)
        return
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay_seconds)
    except asyncio.TimeoutError:
        return
    raise OperationCancelled("Stopped while waiting to retry")


async def with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 5,
    base_delay_ms: int = 1000,
    *,
    stop_event: Optional[asyncio.Event] = None,
    description: str = "remote call",
) -> T:
    """
    Await operation(), retrying rate-limited failures up to max_attempts
    calls in total. The last rate-limit error is re-raised unchanged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    async def sleep(seconds: float) -> None:
        await _sleep(seconds, stop_event)

    def log_retry(state: RetryCallState) -> None:
        logger.info(
            f"{description} rate limited (attempt {state.attempt_number}/{max_attempts}), "
            f"retrying in {state.next_action.sleep * 1000:.0f}ms"
        )

    retrying = AsyncRetrying(
        retry=retry_if_exception(is_rate_limited),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay_ms / 1000),
        sleep=sleep,
        before_sleep=log_retry,
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                if stop_event is not None and stop_event.is_set():
                    raise OperationCancelled(f"Stopped before {description}")
                return await operation()
    except Exception as e:
        if is_rate_limited(e):
            logger.warning(f"{description} still rate limited after {max_attempts} attempts")
        raise
