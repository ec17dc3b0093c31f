"""Tests for the adaptive per-connection rate limiter."""

import asyncio

import pytest

from workbridge.models import RateLimitInfo
from workbridge.pipeline.rate_limit import RateLimiter


class SteppingClock:
    """Fake wall clock whose sleep advances time and records the delay."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now
        self.delays: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.delays.append(seconds)
        self.now += seconds


def make_limiter(clock: SteppingClock, **kw) -> RateLimiter:
    return RateLimiter(
        min_delay=kw.pop("min_delay", 0.1),
        max_delay=kw.pop("max_delay", 60.0),
        clock=clock,
        sleep=clock.sleep,
    )


class TestPacing:
    async def test_first_request_does_not_wait(self):
        clock = SteppingClock()
        await make_limiter(clock).wait()
        assert clock.delays == []

    async def test_back_to_back_requests_are_spaced(self):
        clock = SteppingClock()
        limiter = make_limiter(clock)
        await limiter.wait()
        await limiter.wait()
        assert clock.delays == [pytest.approx(0.1)]

    async def test_no_wait_when_enough_time_passed(self):
        clock = SteppingClock()
        limiter = make_limiter(clock)
        await limiter.wait()
        clock.now += 1.0
        await limiter.wait()
        assert clock.delays == []

    async def test_concurrent_waiters_are_serialized(self):
        clock = SteppingClock()
        limiter = make_limiter(clock)
        await asyncio.gather(limiter.wait(), limiter.wait(), limiter.wait())
        assert clock.delays == [pytest.approx(0.1), pytest.approx(0.1)]


class TestBackoff:
    def test_rate_limit_doubles_delay(self):
        limiter = make_limiter(SteppingClock())
        limiter.record_rate_limit()
        limiter.record_rate_limit()
        assert limiter.current_delay == pytest.approx(0.4)

    def test_delay_capped_at_max(self):
        limiter = make_limiter(SteppingClock(), min_delay=1.0, max_delay=5.0)
        for _ in range(10):
            limiter.record_server_error()
        assert limiter.current_delay == 5.0

    def test_server_error_leaves_quota_alone(self):
        limiter = make_limiter(SteppingClock())
        limiter.record_server_error()
        assert limiter.quota is None
        assert limiter.current_delay == pytest.approx(0.2)

    def test_success_resets_delay(self):
        limiter = make_limiter(SteppingClock())
        limiter.record_rate_limit()
        limiter.record_server_error()
        limiter.record_success()
        assert limiter.current_delay == pytest.approx(0.1)


class TestQuota:
    async def test_retry_after_blocks_next_wait(self):
        clock = SteppingClock()
        limiter = make_limiter(clock)
        await limiter.wait()
        limiter.record_rate_limit(5)
        await limiter.wait()
        assert clock.delays == [pytest.approx(5.0)]

    async def test_quota_wait_capped_by_max_delay(self):
        clock = SteppingClock()
        limiter = make_limiter(clock, max_delay=10.0)
        limiter.record_rate_limit(120)
        await limiter.wait()
        assert clock.delays[0] == pytest.approx(10.0)

    async def test_exhausted_quota_waits_until_reset(self):
        clock = SteppingClock()
        limiter = make_limiter(clock)
        limiter.record_success(RateLimitInfo(remaining=0, reset_at=clock.now + 3))
        await limiter.wait()
        assert clock.delays == [pytest.approx(3.0)]
        assert limiter.quota is None

    async def test_remaining_quota_does_not_block(self):
        clock = SteppingClock()
        limiter = make_limiter(clock)
        limiter.record_success(RateLimitInfo(remaining=10, reset_at=clock.now + 30))
        await limiter.wait()
        assert clock.delays == []

    async def test_past_reset_time_does_not_block(self):
        clock = SteppingClock()
        limiter = make_limiter(clock)
        limiter.record_success(RateLimitInfo(remaining=0, reset_at=clock.now - 5))
        await limiter.wait()
        assert clock.delays == []
