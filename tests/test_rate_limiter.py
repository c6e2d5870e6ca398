from fakes import FakeClock

from marketplace_radar.services.rate_limiter import SlidingWindowRateLimiter, backoff_delay


class TestSlidingWindowRateLimiter:
    """Client-side cap on calls per window."""

    def test_rejects_after_limit_within_window(self):
        limiter = SlidingWindowRateLimiter(3, 10, clock=FakeClock())
        assert [limiter.is_allowed() for _ in range(3)] == [True, True, True]
        assert limiter.is_allowed() is False
        assert limiter.remaining() == 0

    def test_allows_again_once_window_passes(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(2, 10, clock=clock)
        limiter.is_allowed()
        limiter.is_allowed()
        clock.advance(10)
        assert limiter.is_allowed() is True

    def test_time_until_next_request_is_non_increasing(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(1, 10, clock=clock)
        assert limiter.time_until_next_request() == 0
        limiter.is_allowed()
        waits = []
        for _ in range(5):
            waits.append(limiter.time_until_next_request())
            clock.advance(1.5)
        assert waits == sorted(waits, reverse=True)
        assert waits[0] == 10

    def test_reset_clears_history(self):
        limiter = SlidingWindowRateLimiter(1, 10, clock=FakeClock())
        limiter.is_allowed()
        limiter.reset()
        assert limiter.remaining() == 1


class TestBackoffDelay:
    """Exponential backoff with jitter and a ceiling."""

    def test_non_decreasing_and_capped(self):
        delays = [backoff_delay(n, 1.0, 30.0, jitter=0) for n in range(10)]
        assert delays[:4] == [1.0, 2.0, 4.0, 8.0]
        assert delays == sorted(delays)
        assert max(delays) == 30.0

    def test_random_jitter_stays_within_ten_percent(self):
        for attempt in range(4):
            base = 2.0 * 2 ** attempt
            delay = backoff_delay(attempt, 2.0, 1000.0)
            assert base <= delay <= base * 1.1
