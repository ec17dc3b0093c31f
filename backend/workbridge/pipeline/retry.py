"""Retry executor: capped exponential backoff over tenacity.

The executor is cancellation-agnostic. Wrapped operations check
cancellation themselves at the start of each attempt.
"""

import asyncio
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

T = TypeVar("T")

RetryObserver = Callable[[int, BaseException, float], Awaitable[None]]

_STATUS_RE = re.compile(r"status[:\s]*(\d+)", re.IGNORECASE)

_RETRY_INDICATORS = (
    "rate limit",
    "too many requests",
    "temporary failure",
    "try again",
    "timeout",
    "network",
)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retry_status_codes: frozenset[int] = frozenset({408, 425, 429, 500, 502, 503, 504})
    retry_error_types: frozenset[str] = field(default_factory=lambda: frozenset({
        # httpx transport failures
        "ConnectError",
        "ConnectTimeout",
        "ReadTimeout",
        "WriteTimeout",
        "PoolTimeout",
        "ReadError",
        "WriteError",
        "RemoteProtocolError",
        "TimeoutException",
        "NetworkError",
        # stdlib
        "ConnectionResetError",
        "TimeoutError",
        "RateLimitedError",
    }))


DEFAULT_RETRY_POLICY = RetryPolicy()


def _error_tags(exc: BaseException) -> set[str]:
    tags = {cls.__name__ for cls in type(exc).__mro__}
    code = getattr(exc, "code", None)
    if isinstance(code, str):
        tags.add(code)
    return tags


def is_retryable_error(exc: BaseException, policy: RetryPolicy = DEFAULT_RETRY_POLICY) -> bool:
    """Classify an error as retryable (transient) or fatal.

    Order: an explicit ``retryable`` flag on the exception, then a type tag
    match, then a structured ``status`` attribute, then a status number in
    the message, then textual retry indicators.
    """
    pinned = getattr(exc, "retryable", None)
    if pinned is not None:
        return bool(pinned)

    if _error_tags(exc) & policy.retry_error_types:
        return True

    status = getattr(exc, "status", None)
    if isinstance(status, int):
        return status in policy.retry_status_codes

    message = str(exc)
    match = _STATUS_RE.search(message)
    if match:
        return int(match.group(1)) in policy.retry_status_codes

    lowered = message.lower()
    return any(indicator in lowered for indicator in _RETRY_INDICATORS)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    on_retry: RetryObserver | None = None,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation``, retrying retryable failures with capped backoff.

    The last allowed attempt never retries: its error propagates as-is.
    Non-retryable errors propagate immediately. ``on_retry`` is awaited
    before each backoff sleep with (attempt number, error, delay seconds).
    """

    async def before_sleep(state: RetryCallState) -> None:
        if on_retry is not None and state.outcome is not None:
            error = state.outcome.exception()
            assert error is not None
            await on_retry(state.attempt_number, error, state.next_action.sleep)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(
            multiplier=policy.initial_delay,
            exp_base=policy.backoff_multiplier,
            max=policy.max_delay,
        ),
        retry=retry_if_exception(lambda exc: is_retryable_error(exc, policy)),
        before_sleep=before_sleep,
        sleep=sleep,
        reraise=True,
    )
    return await retrying(operation)
