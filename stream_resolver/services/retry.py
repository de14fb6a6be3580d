# stream_resolver/services/retry.py

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx

from ..config import DEFAULT_RETRY_POLICIES, logger

T = TypeVar("T")


class TransientProviderError(Exception):
    """A remote provider failed in a way that is worth trying again."""


class ProviderRejected(Exception):
    """A remote provider refused the request. Retrying will not help."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class OperationCancelled(Exception):
    """Raised when a cancellation event interrupts a retry wait."""


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 8.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")

    def delay_for(self, attempt: int) -> float:
        """Backoff to wait after the given (0-based) failed attempt."""
        return min(self.initial_delay * self.multiplier**attempt, self.max_delay)

    @classmethod
    def from_dict(cls, values: dict[str, Any]) -> "RetryPolicy":
        return cls(
            max_attempts=int(values.get("max_attempts", cls.max_attempts)),
            initial_delay=float(values.get("initial_delay", cls.initial_delay)),
            max_delay=float(values.get("max_delay", cls.max_delay)),
            multiplier=float(values.get("multiplier", cls.multiplier)),
        )

    @classmethod
    def named(
        cls, name: str, configured: dict[str, dict[str, Any]] | None = None
    ) -> "RetryPolicy":
        """Returns the configured policy for a collaborator, else its default."""
        values = (configured or {}).get(name) or DEFAULT_RETRY_POLICIES[name]
        return cls.from_dict(values)


def is_transient(exc: BaseException) -> bool:
    """Network failures, throttling and server-side errors are retryable."""
    if isinstance(exc, TransientProviderError):
        return True
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


async def wait_or_cancel(delay: float, cancel_event: asyncio.Event | None) -> None:
    """Sleeps for ``delay`` seconds, or raises OperationCancelled if the event fires first."""
    if cancel_event is None:
        await asyncio.sleep(delay)
        return
    if cancel_event.is_set():
        raise OperationCancelled()
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise OperationCancelled()


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    description: str = "operation",
    is_retryable: Callable[[BaseException], bool] = is_transient,
    cancel_event: asyncio.Event | None = None,
) -> T:
    """
    Runs ``operation`` until it succeeds or the policy gives up.

    Transient failures are retried with capped exponential backoff. Any other
    exception propagates immediately. When every attempt fails, the last
    error is raised.
    """
    last_exc: BaseException | None = None

    for attempt in range(policy.max_attempts):
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled()
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e):
                raise
            last_exc = e
            if attempt + 1 >= policy.max_attempts:
                break
            delay = policy.delay_for(attempt)
            logger.warning(
                f"[RETRY] {description} failed (attempt {attempt + 1}/"
                f"{policy.max_attempts}): {e}. Retrying in {delay:.1f}s."
            )
            await wait_or_cancel(delay, cancel_event)

    logger.error(
        f"[RETRY] {description} failed after {policy.max_attempts} attempts: {last_exc}"
    )
    assert last_exc is not None
    raise last_exc
