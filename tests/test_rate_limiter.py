"""
Tests for the sliding-window rate limiter.

Run with: pytest tests/test_rate_limiter.py -v
"""

import pytest

from rate_limiter import (
    HUBSPOT_RATE_LIMIT,
    LEMLIST_RATE_LIMIT,
    WAIT_BUFFER_SECONDS,
    RateLimiter,
    create_rate_limiter,
)


class FakeClock:
    """Clock whose sleep advances time instead of blocking."""

    def __init__(self, now=100.0):
        self.now = now
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def _limiter(clock, max_requests=3, window=10.0):
    return RateLimiter("hubspot", max_requests, window, clock=clock, sleep=clock.sleep)


class TestRateLimiter:

    def test_rejects_bad_limits(self):
        with pytest.raises(ValueError):
            RateLimiter("x", 0, 10.0)
        with pytest.raises(ValueError):
            RateLimiter("x", 5, 0)

    def test_slots_consumed(self, clock):
        limiter = _limiter(clock)
        assert limiter.get_available_slots() == 3
        limiter.acquire()
        limiter.acquire()
        assert limiter.get_available_slots() == 1
        assert limiter.get_wait_time() == 0.0

    def test_acquire_waits_for_oldest_slot(self, clock):
        limiter = _limiter(clock)
        for _ in range(3):
            limiter.acquire()
            clock.now += 1.0

        # Oldest call was at 100.0; now 103.0; frees at 110.0
        assert limiter.get_wait_time() == pytest.approx(7.0)
        limiter.acquire()
        assert clock.sleeps == [pytest.approx(7.0 + WAIT_BUFFER_SECONDS)]
        assert limiter.get_available_slots() == 0

    def test_window_never_exceeded(self, clock):
        limiter = _limiter(clock, max_requests=5, window=10.0)
        calls = []
        for _ in range(23):
            limiter.acquire()
            calls.append(clock.now)
            clock.now += 0.5

        for start in calls:
            in_window = [t for t in calls if start <= t < start + 10.0]
            assert len(in_window) <= 5

    def test_try_acquire_never_waits(self, clock):
        limiter = _limiter(clock, max_requests=1)
        assert limiter.try_acquire() is True
        assert limiter.try_acquire() is False
        assert clock.sleeps == []

        clock.now += 10.0
        assert limiter.try_acquire() is True

    def test_status(self, clock):
        limiter = _limiter(clock, max_requests=2)
        limiter.acquire()
        assert limiter.get_status() == {
            "name": "hubspot",
            "available_slots": 1,
            "max_slots": 2,
            "window_seconds": 10.0,
            "wait_seconds": 0.0,
        }

    def test_reset(self, clock):
        limiter = _limiter(clock, max_requests=1)
        limiter.acquire()
        limiter.reset()
        assert limiter.get_available_slots() == 1


def test_factory_and_defaults():
    limiter = create_rate_limiter("lemlist", *LEMLIST_RATE_LIMIT)
    assert limiter.name == "lemlist"
    assert limiter.max_requests == 100
    assert limiter.window_seconds == 60.0
    assert HUBSPOT_RATE_LIMIT == (100, 10.0)
