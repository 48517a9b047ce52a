"""Tests for the token bucket rate limiter."""

import pytest

from nga_crawler.throttle import TokenBucket


class FakeClock:
    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestTokenBucket:
    def test_rejects_non_positive_rate(self):
        with pytest.raises(ValueError):
            TokenBucket(0)

    def test_first_request_is_free(self):
        clock = FakeClock()
        bucket = TokenBucket(1.0, clock=clock, sleep=clock.sleep)
        assert bucket.acquire() == 0.0
        assert clock.sleeps == []

    def test_consume_reports_wait_without_taking(self):
        clock = FakeClock()
        bucket = TokenBucket(2.0, clock=clock, sleep=clock.sleep)
        assert bucket.consume() == 0.0
        assert bucket.consume() == pytest.approx(0.5)
        clock.now += 0.5
        assert bucket.consume() == 0.0

    def test_acquire_sleeps_until_token(self):
        clock = FakeClock()
        bucket = TokenBucket(1.0, clock=clock, sleep=clock.sleep)
        bucket.acquire()
        waited = bucket.acquire()
        assert waited == pytest.approx(1.0)
        assert sum(clock.sleeps) == pytest.approx(1.0)

    def test_refill_capped_at_capacity(self):
        clock = FakeClock()
        bucket = TokenBucket(1.0, capacity=2, clock=clock, sleep=clock.sleep)
        bucket.acquire()
        bucket.acquire()
        clock.now += 60
        bucket.acquire()
        bucket.acquire()
        assert clock.sleeps == []
        assert bucket.consume() == pytest.approx(1.0)
