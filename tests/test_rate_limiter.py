"""Tests for the sliding-window rate limiter."""

from __future__ import annotations

from widgetbot.services.rate_limiter import SlidingWindowRateLimiter, rate_limit_key


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _limiter(max_requests=3, window=60):
    clock = FakeClock()
    return SlidingWindowRateLimiter(max_requests, window, clock=clock), clock


class TestSlidingWindow:
    def test_allows_up_to_budget(self):
        limiter, _ = _limiter()
        assert [limiter.check("k") for _ in range(4)] == [True, True, True, False]

    def test_window_slides(self):
        limiter, clock = _limiter()
        limiter.check("k")
        clock.advance(30)
        limiter.check("k")
        limiter.check("k")
        assert limiter.check("k") is False

        # The first call leaves the window
        clock.advance(30)
        assert limiter.check("k") is True
        assert limiter.check("k") is False

    def test_denied_calls_are_not_recorded(self):
        limiter, clock = _limiter(max_requests=1)
        limiter.check("k")
        for _ in range(5):
            clock.advance(10)
            assert limiter.check("k") is False
        clock.advance(10)
        assert limiter.check("k") is True

    def test_keys_are_independent(self):
        limiter, _ = _limiter(max_requests=1)
        assert limiter.check("a") is True
        assert limiter.check("b") is True
        assert limiter.check("a") is False

    def test_remaining_does_not_record(self):
        limiter, _ = _limiter()
        assert limiter.remaining("k") == 3
        limiter.check("k")
        assert limiter.remaining("k") == 2
        assert limiter.remaining("k") == 2

    def test_remaining_recovers_as_window_slides(self):
        limiter, clock = _limiter(max_requests=2)
        limiter.check("k")
        limiter.check("k")
        assert limiter.remaining("k") == 0
        clock.advance(60)
        assert limiter.remaining("k") == 2
        assert "k" not in limiter._hits

    def test_zero_budget_denies_without_tracking(self):
        limiter, _ = _limiter(max_requests=0)
        assert limiter.check("k") is False
        assert limiter._hits == {}

    def test_idle_callers_are_forgotten(self):
        limiter, clock = _limiter(max_requests=5, window=60)
        for n in range(10_000):
            limiter.check(f"bot-1:10.0.{n // 256}.{n % 256}")
        assert len(limiter._hits) == 10_000

        clock.advance(10_000)
        assert limiter.check("bot-1:198.51.100.2") is True
        assert len(limiter._hits) == 1

    def test_active_callers_survive_the_sweep(self):
        limiter, clock = _limiter(max_requests=5, window=60)
        limiter.check("idle")
        clock.advance(50)
        limiter.check("active")
        clock.advance(20)
        limiter.check("other")
        assert set(limiter._hits) == {"active", "other"}

    def test_reset(self):
        limiter, _ = _limiter(max_requests=1)
        limiter.check("k")
        limiter.reset()
        assert limiter.check("k") is True


class TestRateLimitKey:
    def test_bot_and_ip(self):
        assert rate_limit_key("bot-1", "203.0.113.7") == "bot-1:203.0.113.7"

    def test_missing_ip(self):
        assert rate_limit_key("bot-1", "") == "bot-1:unknown"
