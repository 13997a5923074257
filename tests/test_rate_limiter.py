from __future__ import annotations

import allure
import pytest

from image_studio.generators.rate_limiter import (
    FALLBACK_RATE_LIMIT,
    RateLimitConfig,
    RateLimitTimeoutError,
    SlidingWindowRateLimiter,
)

pytestmark = [
    allure.epic("Generation Reliability"),
    allure.feature("Rate Limiting"),
]


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _limiter(clock: FakeClock, config: RateLimitConfig) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(limits={"fal": config}, clock=clock, sleep=clock.sleep)


def test_window_admits_up_to_max_requests() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, RateLimitConfig(max_requests=2, window_seconds=10.0))

    assert limiter.try_acquire("fal")
    assert limiter.try_acquire("fal")
    assert not limiter.try_acquire("fal")
    assert limiter.wait_time("fal") == pytest.approx(10.0)

    clock.now += 10.0
    assert limiter.try_acquire("fal")


def test_min_delay_spaces_consecutive_requests() -> None:
    clock = FakeClock()
    limiter = _limiter(
        clock,
        RateLimitConfig(max_requests=100, window_seconds=60.0, min_delay_seconds=0.5),
    )

    assert limiter.try_acquire("fal")
    assert not limiter.try_acquire("fal")
    assert limiter.wait_time("fal") == pytest.approx(0.5)

    clock.now += 0.5
    assert limiter.try_acquire("fal")


def test_acquire_sleeps_until_slot_frees() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, RateLimitConfig(max_requests=1, window_seconds=2.0))

    limiter.acquire("fal")
    limiter.acquire("fal", timeout_seconds=5.0)

    assert clock.sleeps
    assert sum(clock.sleeps) == pytest.approx(2.0)


def test_acquire_times_out_when_wait_exceeds_budget() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, RateLimitConfig(max_requests=1, window_seconds=60.0))
    limiter.acquire("fal")

    with pytest.raises(RateLimitTimeoutError, match="fal"):
        limiter.acquire("fal", timeout_seconds=5.0)


def test_providers_have_independent_windows() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(
        limits={
            "fal": RateLimitConfig(max_requests=1, window_seconds=60.0),
            "google": RateLimitConfig(max_requests=1, window_seconds=60.0),
        },
        clock=clock,
        sleep=clock.sleep,
    )

    assert limiter.try_acquire("fal")
    assert limiter.try_acquire("google")
    assert not limiter.try_acquire("fal")


def test_reset_and_reconfigure() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, RateLimitConfig(max_requests=1, window_seconds=60.0))
    assert limiter.try_acquire("fal")
    assert not limiter.try_acquire("fal")

    limiter.configure("fal", RateLimitConfig(max_requests=3, window_seconds=60.0))
    assert limiter.try_acquire("fal")

    limiter.reset("fal")
    assert limiter.wait_time("fal") == 0.0


def test_unknown_provider_uses_fallback_limits() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(limits={}, clock=clock, sleep=clock.sleep)

    for _ in range(FALLBACK_RATE_LIMIT.max_requests):
        clock.now += 1.0
        assert limiter.try_acquire("other")
    clock.now += 1.0
    assert not limiter.try_acquire("other")
