"""
Tests for the rate-limit retry wrapper.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from adops.mcp_client import RateLimitError, TransportError
from adops.services.backoff import OperationCancelled, is_rate_limited, with_backoff


@pytest.mark.anyio
async def test_success_calls_once():
    operation = AsyncMock(return_value="ok")
    assert await with_backoff(operation, max_attempts=3, base_delay_ms=10) == "ok"
    assert operation.await_count == 1


@pytest.mark.anyio
async def test_non_rate_limit_error_is_not_retried():
    operation = AsyncMock(side_effect=TransportError("boom", status_code=500))
    with pytest.raises(TransportError):
        await with_backoff(operation, max_attempts=3, base_delay_ms=10)
    assert operation.await_count == 1


@pytest.mark.anyio
async def test_rate_limit_then_success_retries_once():
    operation = AsyncMock(side_effect=[RateLimitError("slow down"), "ok"])
    assert await with_backoff(operation, max_attempts=3, base_delay_ms=10) == "ok"
    assert operation.await_count == 2


@pytest.mark.anyio
async def test_rate_limit_exhausts_attempts():
    operation = AsyncMock(side_effect=RateLimitError("slow down"))
    with pytest.raises(RateLimitError):
        await with_backoff(operation, max_attempts=3, base_delay_ms=1)
    assert operation.await_count == 3


@pytest.mark.anyio
async def test_delays_double_each_retry():
    operation = AsyncMock(side_effect=[RateLimitError("a"), RateLimitError("b"), "ok"])
    with patch("adops.services.backoff.asyncio.sleep", new_callable=AsyncMock) as sleep:
        await with_backoff(operation, max_attempts=3, base_delay_ms=100)
    assert [c.args[0] for c in sleep.await_args_list] == [0.1, 0.2]


@pytest.mark.anyio
async def test_stop_event_cancels_pending_retry():
    stop = asyncio.Event()
    operation = AsyncMock(side_effect=RateLimitError("slow down"))

    async def stop_soon():
        await asyncio.sleep(0.01)
        stop.set()

    asyncio.get_running_loop().create_task(stop_soon())
    with pytest.raises(OperationCancelled):
        await with_backoff(operation, max_attempts=5, base_delay_ms=10_000, stop_event=stop)
    assert operation.await_count == 1


@pytest.mark.anyio
async def test_set_stop_event_prevents_the_call():
    stop = asyncio.Event()
    stop.set()
    operation = AsyncMock(return_value="ok")
    with pytest.raises(OperationCancelled):
        await with_backoff(operation, stop_event=stop)
    operation.assert_not_awaited()


def test_invalid_max_attempts():
    with pytest.raises(ValueError):
        asyncio.run(with_backoff(AsyncMock(), max_attempts=0))


def test_is_rate_limited_reads_response_status():
    response = httpx.Response(429, request=httpx.Request("GET", "https://example.com"))
    error = httpx.HTTPStatusError("throttled", request=response.request, response=response)
    assert is_rate_limited(error)
    assert is_rate_limited(RateLimitError("x"))
    assert not is_rate_limited(TransportError("x", status_code=503))
    assert not is_rate_limited(ValueError("x"))


@pytest.mark.anyio
async def test_last_rate_limit_error_is_raised_unchanged():
    errors = [RateLimitError("first"), RateLimitError("last")]
    operation = AsyncMock(side_effect=errors)
    with pytest.raises(RateLimitError) as caught:
        await with_backoff(operation, max_attempts=2, base_delay_ms=1)
    assert caught.value is errors[1]
