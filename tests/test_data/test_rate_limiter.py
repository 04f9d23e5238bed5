"""
Tests for the upstream request quota.

Tests cover:
- Initialization and validation
- Token acquisition and refill
- Waiting and timeout behavior
- Thread safety across a worker pool
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from tickercache.utils.config import APIConfig
from tickercache.utils.rate_limiter import RateLimiter


class FakeTime:
    """Clock whose sleep advances it instantly."""

    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def clock(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_time():
    return FakeTime()


def limiter_with(fake_time, max_calls, period):
    return RateLimiter(max_calls, period, clock=fake_time.clock, sleep=fake_time.sleep)


class TestInit:
    """Tests for RateLimiter initialization."""

    def test_starts_with_full_bucket(self, fake_time):
        """Test that a new limiter allows a full burst."""
        limiter = limiter_with(fake_time, 10, 1.0)

        assert limiter.available == 10
        assert limiter.refill_rate == 10.0

    @pytest.mark.parametrize("max_calls,period", [(0, 1.0), (-1, 1.0), (10, 0), (10, -5.0)])
    def test_rejects_non_positive(self, max_calls, period):
        """Test that non-positive limits are rejected."""
        with pytest.raises(ValueError, match="positive"):
            RateLimiter(max_calls=max_calls, period=period)

    def test_from_config(self):
        """Test that the API config supplies the quota."""
        limiter = RateLimiter.from_config(APIConfig(rate_limit_calls=500, rate_limit_period=30.0))
        assert repr(limiter) == "RateLimiter(max_calls=500, period=30.0)"


class TestAcquisition:
    """Tests for taking tokens."""

    def test_burst_then_empty(self, fake_time):
        """Test that a full bucket allows max_calls immediate calls."""
        limiter = limiter_with(fake_time, 3, 60.0)

        assert [limiter.try_acquire() for _ in range(4)] == [True, True, True, False]
        assert limiter.calls_made == 3

    def test_refill_over_time(self, fake_time):
        """Test that tokens come back at max_calls / period per second."""
        limiter = limiter_with(fake_time, 10, 1.0)
        for _ in range(10):
            limiter.try_acquire()

        fake_time.now += 0.5

        assert limiter.available == pytest.approx(5.0)

    def test_bucket_never_overfills(self, fake_time):
        """Test that idle time does not build up more than max_calls."""
        limiter = limiter_with(fake_time, 5, 1.0)
        fake_time.now += 100

        assert limiter.available == 5

    def test_reset(self, fake_time):
        """Test that reset() refills the bucket."""
        limiter = limiter_with(fake_time, 2, 60.0)
        limiter.try_acquire()
        limiter.try_acquire()

        limiter.reset()

        assert limiter.available == 2


class TestWaiting:
    """Tests for acquire() waiting and timeouts."""

    def test_acquire_waits_for_one_token(self, fake_time):
        """Test that acquire sleeps exactly until a token refills."""
        limiter = limiter_with(fake_time, 2, 1.0)
        limiter.acquire()
        limiter.acquire()

        assert limiter.acquire() is True
        assert fake_time.sleeps == [pytest.approx(0.5)]

    def test_full_bucket_does_not_sleep(self, fake_time):
        """Test that no sleep happens while tokens remain."""
        limiter = limiter_with(fake_time, 2, 1.0)
        assert limiter.acquire() is True
        assert fake_time.sleeps == []

    def test_timeout_expires(self, fake_time):
        """Test that acquire gives up once the timeout is spent."""
        limiter = limiter_with(fake_time, 1, 10.0)
        limiter.acquire()

        assert limiter.acquire(timeout=2.0) is False
        assert sum(fake_time.sleeps) == pytest.approx(2.0)
        assert limiter.calls_made == 1


class TestThreadSafety:
    """Tests for concurrent acquisition from a worker pool."""

    def test_concurrent_acquisitions_never_overdraw(self):
        """Test that concurrent threads never take more tokens than exist."""
        limiter = RateLimiter(max_calls=20, period=1000.0)
        granted = []
        lock = threading.Lock()

        def take():
            if limiter.try_acquire():
                with lock:
                    granted.append(1)

        with ThreadPoolExecutor(max_workers=8) as pool:
            for _ in range(50):
                pool.submit(take)

        assert len(granted) == 20
        assert limiter.calls_made == 20
