"""Tests for the fixed-window rate limiter and the per-concern limiter bundle."""

import pytest

from relaychat.config import Settings
from relaychat.service.rate_limit import RateLimiter, RateLimiters, chat_key


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter("test", window_seconds=60, max_requests=3, clock=clock)


class TestFixedWindow:
    def test_allows_up_to_max_then_denies(self, limiter):
        assert [limiter.is_allowed("k") for _ in range(4)] == [True, True, True, False]

    def test_denied_requests_are_not_counted(self, limiter):
        for _ in range(10):
            limiter.is_allowed("k")

        assert limiter.get_remaining_requests("k") == 0
        assert limiter.get_request_pattern("k").total_requests == 3

    def test_window_reset_allows_again(self, limiter, clock):
        for _ in range(3):
            limiter.is_allowed("k")
        assert limiter.is_allowed("k") is False

        clock.advance(60)
        assert limiter.is_allowed("k") is False  # still inside the window edge

        clock.advance(0.001)
        assert limiter.is_allowed("k") is True
        assert limiter.get_remaining_requests("k") == 2

    def test_boundary_burst_is_possible(self, limiter, clock):
        limiter.is_allowed("k")  # opens the window
        clock.advance(59)
        assert limiter.is_allowed("k") and limiter.is_allowed("k")
        clock.advance(2)
        # Five requests inside three seconds, straddling the window edge
        assert all(limiter.is_allowed("k") for _ in range(3))

    def test_identities_are_independent(self, limiter):
        for _ in range(3):
            limiter.is_allowed("a")

        assert limiter.is_allowed("a") is False
        assert limiter.is_allowed("b") is True

    def test_remaining_for_unknown_identity(self, limiter):
        assert limiter.get_remaining_requests("nobody") == 3

    def test_reset_time_and_retry_after(self, limiter, clock):
        limiter.is_allowed("k")

        assert limiter.get_reset_time("k") == clock.now + 60
        clock.advance(10.5)
        assert limiter.retry_after("k") == 50

    def test_retry_after_is_at_least_one_second(self, limiter, clock):
        limiter.is_allowed("k")
        clock.advance(59.9999)

        assert limiter.retry_after("k") == 1

    def test_reset_clears_identity(self, limiter):
        for _ in range(3):
            limiter.is_allowed("k")
        limiter.reset("k")

        assert limiter.is_allowed("k") is True

    def test_cleanup_drops_expired_windows(self, limiter, clock):
        limiter.is_allowed("old")
        clock.advance(30)
        limiter.is_allowed("fresh")
        clock.advance(31)

        assert limiter.cleanup() == 1
        assert len(limiter) == 1
        assert limiter.get_remaining_requests("fresh") == 2

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            RateLimiter("bad", window_seconds=0, max_requests=1)
        with pytest.raises(ValueError):
            RateLimiter("bad", window_seconds=1, max_requests=0)


class TestSkipFlags:
    def test_skip_successful_requests_only_counts_failures(self, clock):
        limiter = RateLimiter(
            "login", window_seconds=900, max_requests=3, skip_successful_requests=True, clock=clock
        )

        assert limiter.is_allowed("k", success=False)
        for _ in range(10):
            assert limiter.is_allowed("k", success=True)
        assert limiter.is_allowed("k", success=False)
        assert limiter.is_allowed("k", success=False)
        assert limiter.is_allowed("k", success=False) is False

    def test_successful_request_opening_a_window_is_not_counted(self, clock):
        limiter = RateLimiter(
            "login", window_seconds=900, max_requests=3, skip_successful_requests=True, clock=clock
        )

        limiter.is_allowed("k", success=True)

        assert limiter.get_remaining_requests("k") == 3

    def test_skip_failed_requests_only_counts_successes(self, clock):
        limiter = RateLimiter(
            "uploads", window_seconds=60, max_requests=2, skip_failed_requests=True, clock=clock
        )

        limiter.is_allowed("k", success=True)
        for _ in range(5):
            assert limiter.is_allowed("k", success=False)
        assert limiter.is_allowed("k", success=True)
        assert limiter.is_allowed("k", success=True) is False


class TestRequestPattern:
    def test_pattern_counts_outcomes(self, clock):
        limiter = RateLimiter("p", window_seconds=60, max_requests=10, clock=clock)
        limiter.is_allowed("k", success=True)
        limiter.is_allowed("k", success=False)
        limiter.is_allowed("k", success=True)

        pattern = limiter.get_request_pattern("k")

        assert pattern.total_requests == 3
        assert pattern.successful_requests == 2
        assert pattern.failed_requests == 1
        assert pattern.requests_per_minute == 3.0

    def test_pattern_for_unknown_identity_is_empty(self, limiter):
        pattern = limiter.get_request_pattern("nobody")

        assert pattern.total_requests == 0
        assert pattern.requests_per_minute == 0.0


class TestRateLimiters:
    def test_default_profiles(self, clock):
        settings = Settings(
            jwt_secret="access-secret-for-unit-tests-0123456789abcdef",
            jwt_refresh_secret="refresh-secret-for-unit-tests-0123456789abcdef",
        )
        limiters = RateLimiters(settings, clock=clock)

        assert (limiters.auth.window_seconds, limiters.auth.max_requests) == (900, 5)
        assert (limiters.strict_auth.window_seconds, limiters.strict_auth.max_requests) == (900, 3)
        assert limiters.strict_auth.skip_successful_requests is True
        assert (limiters.general.window_seconds, limiters.general.max_requests) == (900, 100)
        assert (limiters.api.window_seconds, limiters.api.max_requests) == (60, 60)
        assert (limiters.chat.window_seconds, limiters.chat.max_requests) == (60, 20)
        assert (limiters.upload.window_seconds, limiters.upload.max_requests) == (3600, 10)

    def test_limiters_do_not_share_counters(self, clock):
        settings = Settings(
            jwt_secret="access-secret-for-unit-tests-0123456789abcdef",
            jwt_refresh_secret="refresh-secret-for-unit-tests-0123456789abcdef",
        )
        limiters = RateLimiters(settings, clock=clock)
        for _ in range(5):
            limiters.auth.is_allowed("1.2.3.4")

        assert limiters.auth.is_allowed("1.2.3.4") is False
        assert limiters.general.is_allowed("1.2.3.4") is True

    def test_cleanup_sweeps_every_limiter(self, clock):
        settings = Settings(
            jwt_secret="access-secret-for-unit-tests-0123456789abcdef",
            jwt_refresh_secret="refresh-secret-for-unit-tests-0123456789abcdef",
        )
        limiters = RateLimiters(settings, clock=clock)
        limiters.api.is_allowed("u")
        limiters.chat.is_allowed(chat_key("u", "room"))
        clock.advance(61)

        assert limiters.cleanup() == 2


def test_chat_key_combines_user_and_room():
    assert chat_key("user-1", "room-9") == "user-1:room-9"
