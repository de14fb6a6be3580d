import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from stream_resolver.services.retry import (
    OperationCancelled,
    ProviderRejected,
    RetryPolicy,
    TransientProviderError,
    is_transient,
    with_retry,
)


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://example.com")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError("boom", request=request, response=response)


def test_delay_for_is_capped_exponential():
    policy = RetryPolicy(max_attempts=30, initial_delay=2.0, max_delay=20.0, multiplier=1.5)

    assert policy.delay_for(0) == 2.0
    assert policy.delay_for(1) == 3.0
    assert policy.delay_for(2) == 4.5
    assert policy.delay_for(10) == 20.0


def test_policy_requires_an_attempt():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


def test_named_policy_prefers_configured_values():
    configured = {"search": {"max_attempts": 7, "initial_delay": 0.1}}

    assert RetryPolicy.named("search", configured).max_attempts == 7
    assert RetryPolicy.named("metadata", configured).max_attempts == 3


@pytest.mark.parametrize(
    "exc, expected",
    [
        (httpx.ConnectError("down"), True),
        (httpx.ReadTimeout("slow"), True),
        (TransientProviderError("busy"), True),
        (_status_error(429), True),
        (_status_error(503), True),
        (_status_error(404), False),
        (ProviderRejected("no"), False),
        (ValueError("bad"), False),
    ],
)
def test_is_transient(exc, expected):
    assert is_transient(exc) is expected


@pytest.mark.asyncio
async def test_with_retry_recovers_from_transient_errors(mocker):
    sleep = mocker.patch("asyncio.sleep", new_callable=AsyncMock)
    operation = AsyncMock(side_effect=[httpx.ConnectError("down"), "ok"])

    result = await with_retry(operation, RetryPolicy(max_attempts=3, initial_delay=1.0))

    assert result == "ok"
    assert operation.await_count == 2
    sleep.assert_awaited_once_with(1.0)


@pytest.mark.asyncio
async def test_with_retry_raises_last_error_after_max_attempts(mocker):
    sleep = mocker.patch("asyncio.sleep", new_callable=AsyncMock)
    errors = [TransientProviderError(f"attempt {i}") for i in range(3)]
    operation = AsyncMock(side_effect=errors)
    policy = RetryPolicy(max_attempts=3, initial_delay=1.0, max_delay=8.0, multiplier=2.0)

    with pytest.raises(TransientProviderError) as excinfo:
        await with_retry(operation, policy)

    assert excinfo.value is errors[-1]
    assert operation.await_count == 3
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]


@pytest.mark.asyncio
async def test_with_retry_does_not_retry_permanent_errors(mocker):
    sleep = mocker.patch("asyncio.sleep", new_callable=AsyncMock)
    operation = AsyncMock(side_effect=ProviderRejected("forbidden", status_code=403))

    with pytest.raises(ProviderRejected):
        await with_retry(operation, RetryPolicy(max_attempts=5))

    assert operation.await_count == 1
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_with_retry_custom_predicate():
    operation = AsyncMock(side_effect=[KeyError("x"), "ok"])

    result = await with_retry(
        operation,
        RetryPolicy(max_attempts=2, initial_delay=0.0),
        is_retryable=lambda e: isinstance(e, KeyError),
    )

    assert result == "ok"


@pytest.mark.asyncio
async def test_cancel_event_interrupts_backoff():
    cancel_event = asyncio.Event()

    async def _operation():
        cancel_event.set()
        raise TransientProviderError("busy")

    with pytest.raises(OperationCancelled):
        await with_retry(
            _operation,
            RetryPolicy(max_attempts=3, initial_delay=60.0, max_delay=60.0),
            cancel_event=cancel_event,
        )


@pytest.mark.asyncio
async def test_cancel_event_set_before_start():
    cancel_event = asyncio.Event()
    cancel_event.set()
    operation = AsyncMock(return_value="never")

    with pytest.raises(OperationCancelled):
        await with_retry(operation, RetryPolicy(), cancel_event=cancel_event)

    operation.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancel_event_wait_times_out_and_retries():
    cancel_event = asyncio.Event()
    operation = AsyncMock(side_effect=[TransientProviderError("busy"), "ok"])

    result = await with_retry(
        operation,
        RetryPolicy(max_attempts=2, initial_delay=0.01, max_delay=0.01),
        cancel_event=cancel_event,
    )

    assert result == "ok"
