"""Tests for retry classification and the tenacity-backed retry executor."""

import httpx
import pytest

from tests.fixtures import FakeSleep
from workbridge.errors import (
    ImportCancelledError,
    ProviderAPIError,
    ProviderAuthError,
    RateLimitedError,
)
from workbridge.pipeline.retry import RetryPolicy, is_retryable_error, with_retry

POLICY = RetryPolicy(max_attempts=5, initial_delay=1.0, max_delay=4.0, backoff_multiplier=2.0)


class Flaky:
    """Fails with the given errors in order, then returns 'ok'."""

    def __init__(self, *errors: BaseException) -> None:
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestClassification:
    def test_retryable_status(self):
        assert is_retryable_error(ProviderAPIError("boom", status=503))

    def test_non_retryable_status(self):
        assert not is_retryable_error(ProviderAPIError("bad request", status=400))

    def test_pinned_flag_wins_over_status(self):
        assert not is_retryable_error(ProviderAuthError("nope", status=503))

    def test_rate_limited_always_retryable(self):
        assert is_retryable_error(RateLimitedError("slow down"))

    def test_cancellation_never_retryable(self):
        assert not is_retryable_error(ImportCancelledError())

    def test_httpx_transport_error_by_type(self):
        assert is_retryable_error(httpx.ConnectError("refused"))
        assert is_retryable_error(httpx.ReadTimeout("slow"))

    def test_status_embedded_in_message(self):
        assert is_retryable_error(Exception("upstream returned status: 502"))
        assert not is_retryable_error(Exception("upstream returned status 404"))

    def test_textual_indicators(self):
        assert is_retryable_error(Exception("Rate limit exceeded"))
        assert is_retryable_error(Exception("temporary failure in name resolution"))
        assert is_retryable_error(Exception("please try again later"))

    def test_plain_error_is_fatal(self):
        assert not is_retryable_error(ValueError("malformed payload"))

    def test_code_attribute_matches_error_type_tags(self):
        class SocketError(Exception):
            code = "ECONNRESET"

        policy = RetryPolicy(retry_error_types=frozenset({"ECONNRESET"}))
        assert is_retryable_error(SocketError("reset"), policy)
        assert not is_retryable_error(SocketError("reset"))


class TestWithRetry:
    async def test_success_first_try(self):
        op = Flaky()
        sleep = FakeSleep()
        assert await with_retry(op, POLICY, sleep=sleep) == "ok"
        assert op.calls == 1
        assert sleep.delays == []

    async def test_exhausts_exactly_max_attempts(self):
        raised = []

        async def always_rate_limited():
            error = RateLimitedError(f"attempt {len(raised) + 1}")
            raised.append(error)
            raise error

        with pytest.raises(RateLimitedError) as exc_info:
            await with_retry(always_rate_limited, POLICY, sleep=FakeSleep())
        assert len(raised) == 5
        assert exc_info.value is raised[-1]

    async def test_non_retryable_invoked_once(self):
        op = Flaky(ProviderAuthError("invalid_auth"), RateLimitedError("never reached"))
        with pytest.raises(ProviderAuthError):
            await with_retry(op, POLICY, sleep=FakeSleep())
        assert op.calls == 1

    async def test_delays_grow_and_are_capped(self):
        op = Flaky(*(ProviderAPIError("down", status=503) for _ in range(4)))
        sleep = FakeSleep()
        assert await with_retry(op, POLICY, sleep=sleep) == "ok"
        assert sleep.delays == [1.0, 2.0, 4.0, 4.0]
        assert all(a <= b for a, b in zip(sleep.delays, sleep.delays[1:]))
        assert max(sleep.delays) <= POLICY.max_delay

    async def test_success_resets_delay_for_next_call(self):
        sleep = FakeSleep()
        await with_retry(Flaky(RateLimitedError("1"), RateLimitedError("2")), POLICY, sleep=sleep)
        assert sleep.delays == [1.0, 2.0]

        sleep.delays.clear()
        await with_retry(Flaky(RateLimitedError("3")), POLICY, sleep=sleep)
        assert sleep.delays == [1.0]

    async def test_observer_called_before_each_retry(self):
        seen = []

        async def on_retry(attempt, error, delay):
            seen.append((attempt, str(error), delay))

        op = Flaky(RateLimitedError("first"), RateLimitedError("second"))
        await with_retry(op, POLICY, on_retry, sleep=FakeSleep())
        assert seen == [(1, "first", 1.0), (2, "second", 2.0)]

    async def test_observer_not_called_for_fatal_error(self):
        seen = []

        async def on_retry(attempt, error, delay):
            seen.append(attempt)

        with pytest.raises(ValueError):
            await with_retry(Flaky(ValueError("bad")), POLICY, on_retry, sleep=FakeSleep())
        assert seen == []

    async def test_single_attempt_policy_never_retries(self):
        op = Flaky(RateLimitedError("once"))
        with pytest.raises(RateLimitedError):
            await with_retry(op, RetryPolicy(max_attempts=1), sleep=FakeSleep())
        assert op.calls == 1
