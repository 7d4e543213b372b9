"""Unit tests for rate limiting and slow-down."""

import threading

import pytest

from conftest import FakeClock, make_settings
from review_gatekeeper.core.config import RateLimitPolicy, SlowDownPolicy
from review_gatekeeper.engines.rate_limiter import (
    InMemoryRateLimiter,
    NullRateLimiter,
    RateLimiter,
    RateLimitRegistry,
    RateLimitResult,
    SlowDownGovernor,
    normalize_client_key,
)


class TestNormalizeClientKey:
    """Tests for client key canonicalization."""

    def test_ipv4_unchanged(self) -> None:
        assert normalize_client_key("203.0.113.5") == "203.0.113.5"

    def test_strips_whitespace(self) -> None:
        assert normalize_client_key("  203.0.113.5 ") == "203.0.113.5"

    def test_ipv4_mapped_ipv6_collapses(self) -> None:
        """::ffff:a.b.c.d and a.b.c.d are the same client."""
        assert normalize_client_key("::ffff:203.0.113.5") == "203.0.113.5"

    def test_equivalent_ipv6_spellings_collapse(self) -> None:
        """Different textual forms of one IPv6 address give one key."""
        a = normalize_client_key("2001:db8:0:0:0:0:0:1")
        b = normalize_client_key("2001:DB8::1")
        c = normalize_client_key("[2001:db8::1]")
        assert a == b == c

    def test_ipv6_bucketed_by_prefix(self) -> None:
        """Addresses in one /64 share a key."""
        assert normalize_client_key("2001:db8::1") == normalize_client_key("2001:db8::ffff")
        assert normalize_client_key("2001:db8::1") == "2001:db8::/64"

    def test_ipv6_full_address_when_unmasked(self) -> None:
        assert normalize_client_key("2001:db8::1", ipv6_subnet=None) == "2001:db8::1"

    def test_non_ip_lowercased(self) -> None:
        assert normalize_client_key("TestClient") == "testclient"

    def test_empty_is_unknown(self) -> None:
        assert normalize_client_key(None) == "unknown"
        assert normalize_client_key("   ") == "unknown"


class TestInMemoryRateLimiter:
    """Tests for InMemoryRateLimiter."""

    def test_allows_requests_under_limit(self) -> None:
        """Requests under limit should be allowed."""
        limiter = InMemoryRateLimiter(limit=10, window_seconds=60, warning_threshold=1.0)

        for _ in range(10):
            info = limiter.check("test-key")
            assert info.is_allowed

    def test_sixth_of_five_rejected_seventh_after_window_allowed(self) -> None:
        """max=5 in a 1s window: only the 6th is rejected; after the window a fresh one starts."""
        clock = FakeClock(start=1000.0)
        limiter = InMemoryRateLimiter(limit=5, window_seconds=1, clock=clock)

        results = [limiter.check("203.0.113.5") for _ in range(6)]
        denied = [i for i, r in enumerate(results) if not r.is_allowed]
        assert denied == [5]

        clock.advance(1.1)
        info = limiter.check("203.0.113.5")
        assert info.is_allowed
        assert info.current_count == 1
        assert info.reset_at == pytest.approx(1002.1)

    def test_denied_carries_retry_after(self) -> None:
        """retry_after is the time left in the window, rounded up in whole seconds."""
        clock = FakeClock(start=1000.0)
        limiter = InMemoryRateLimiter(limit=5, window_seconds=60, clock=clock)

        for _ in range(5):
            limiter.check("test-key")
        clock.advance(20.5)

        info = limiter.check("test-key")
        assert info.result == RateLimitResult.DENIED
        assert info.retry_after == pytest.approx(39.5)
        assert info.retry_after_seconds == 40

    def test_count_keeps_growing_while_denied(self) -> None:
        """Denied requests still count within the window."""
        limiter = InMemoryRateLimiter(limit=2, window_seconds=60)

        for _ in range(5):
            info = limiter.check("test-key")

        assert info.current_count == 5
        assert info.remaining == 0

    def test_warning_threshold(self) -> None:
        """Should return warning when approaching limit."""
        limiter = InMemoryRateLimiter(limit=10, window_seconds=60, warning_threshold=0.8)

        for _ in range(7):
            info = limiter.check("test-key")
        assert info.result == RateLimitResult.ALLOWED

        info = limiter.check("test-key")
        assert info.result == RateLimitResult.WARNING
        assert info.is_allowed

    def test_separate_keys_tracked_independently(self) -> None:
        """Different keys have separate limits."""
        limiter = InMemoryRateLimiter(limit=5, window_seconds=60)

        for _ in range(6):
            limiter.check("key1")

        assert limiter.check("key2").is_allowed

    def test_reset_clears_key(self) -> None:
        """Reset should clear rate limit for key."""
        limiter = InMemoryRateLimiter(limit=5, window_seconds=60)

        for _ in range(6):
            limiter.check("test-key")

        assert limiter.reset("test-key")
        assert limiter.check("test-key").is_allowed
        assert limiter.reset("missing") is False

    def test_get_info_without_increment(self) -> None:
        """get_info should not increment counter."""
        limiter = InMemoryRateLimiter(limit=5, window_seconds=60)

        for _ in range(3):
            limiter.check("test-key")

        assert limiter.get_info("test-key").current_count == 3
        assert limiter.get_info("test-key").current_count == 3
        assert limiter.get_info("never-seen") is None

    def test_get_info_none_after_window(self) -> None:
        clock = FakeClock(start=0.0)
        limiter = InMemoryRateLimiter(limit=5, window_seconds=10, clock=clock)
        limiter.check("test-key")

        clock.advance(10)
        assert limiter.get_info("test-key") is None

    def test_cleanup_removes_expired_windows(self) -> None:
        """Explicit cleanup drops only windows whose reset time passed."""
        clock = FakeClock(start=0.0)
        limiter = InMemoryRateLimiter(limit=100, window_seconds=60, clock=clock)

        limiter.check("old")
        clock.advance(30)
        limiter.check("recent")
        clock.advance(31)

        assert limiter.cleanup() == 1
        assert limiter.tracked_keys == 1
        assert limiter.get_info("recent") is not None

    def test_opportunistic_cleanup_on_check(self) -> None:
        """Expired entries are dropped during checks."""
        clock = FakeClock(start=0.0)
        limiter = InMemoryRateLimiter(limit=100, window_seconds=1, clock=clock)

        limiter.check("key1")
        limiter.check("key2")
        assert limiter.tracked_keys == 2

        clock.advance(1.1)
        limiter.check("key3")

        assert limiter.tracked_keys == 1

    def test_thread_safety(self) -> None:
        """Concurrent checks on one key must not lose increments."""
        limiter = InMemoryRateLimiter(limit=1000, window_seconds=60)
        errors = []

        def make_requests():
            try:
                for _ in range(100):
                    limiter.check("test-key")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=make_requests) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert limiter.get_info("test-key").current_count == 1000

    def test_from_policy(self) -> None:
        limiter = InMemoryRateLimiter.from_policy(RateLimitPolicy("strict", 5, 900, "Too many attempts"))

        assert limiter.limit == 5
        assert limiter.window_seconds == 900
        assert limiter.message == "Too many attempts"
        assert limiter.check("k").policy == "strict"

    def test_rejects_non_positive_configuration(self) -> None:
        with pytest.raises(ValueError):
            InMemoryRateLimiter(limit=0, window_seconds=60)

    def test_rate_limit_headers(self) -> None:
        clock = FakeClock(start=100.0)
        limiter = InMemoryRateLimiter(limit=10, window_seconds=60, clock=clock)
        for _ in range(3):
            info = limiter.check("k")

        clock.advance(15)
        headers = info.to_headers(clock())
        assert headers == {
            "RateLimit-Limit": "10",
            "RateLimit-Remaining": "7",
            "RateLimit-Reset": "45",
        }


class TestNullRateLimiter:
    """Tests for NullRateLimiter."""

    def test_always_allows(self) -> None:
        limiter = NullRateLimiter()

        for _ in range(1000):
            assert limiter.check("test-key").is_allowed

    def test_noop_state(self) -> None:
        limiter = NullRateLimiter()
        limiter.check("test-key")

        assert limiter.reset("test-key") is False
        assert limiter.get_info("test-key") is None
        assert limiter.cleanup() == 0


class TestSlowDownGovernor:
    """Tests for graduated delay."""

    def test_no_delay_up_to_threshold(self) -> None:
        governor = SlowDownGovernor(delay_after=3, delay_step_ms=500, max_delay_ms=2000)

        delays = [governor.hit("k") for _ in range(3)]
        assert delays == [0.0, 0.0, 0.0]

    def test_delay_grows_then_caps(self) -> None:
        """Delay rises by one step per request past the threshold, up to the cap."""
        governor = SlowDownGovernor(delay_after=2, delay_step_ms=500, max_delay_ms=1500)

        delays = [governor.hit("k") for _ in range(7)]
        assert delays == [0.0, 0.0, 0.5, 1.0, 1.5, 1.5, 1.5]
        assert delays == sorted(delays)

    def test_window_reset_clears_delay(self) -> None:
        clock = FakeClock(start=0.0)
        governor = SlowDownGovernor(delay_after=1, delay_step_ms=100, window_seconds=60, clock=clock)

        governor.hit("k")
        assert governor.hit("k") == pytest.approx(0.1)

        clock.advance(61)
        assert governor.hit("k") == 0.0

    def test_keys_independent(self) -> None:
        governor = SlowDownGovernor(delay_after=1, delay_step_ms=100)
        governor.hit("a")
        governor.hit("a")

        assert governor.hit("b") == 0.0

    def test_from_policy(self) -> None:
        governor = SlowDownGovernor.from_policy(SlowDownPolicy(delay_after=50, delay_step_ms=500, max_delay_ms=20_000))

        assert governor.delay_for(50) == 0.0
        assert governor.delay_for(51) == 0.5
        assert governor.delay_for(500) == 20.0

    def test_cleanup(self) -> None:
        clock = FakeClock(start=0.0)
        governor = SlowDownGovernor(window_seconds=10, clock=clock)
        governor.hit("k")

        clock.advance(11)
        assert governor.cleanup() == 1
        assert governor.tracked_keys == 0


class TestRateLimitRegistry:
    """Tests for named tiers."""

    def test_all_tiers_live_with_strict_rate_limit(self) -> None:
        registry = RateLimitRegistry.from_settings(make_settings(strict_rate_limit=True))

        assert set(registry) == {"global", "auth", "strict", "upload"}
        assert all(isinstance(registry[name], InMemoryRateLimiter) for name in registry)

    def test_route_tiers_disabled_without_strict_rate_limit(self) -> None:
        """The global tier always counts; the route tiers become no-ops."""
        registry = RateLimitRegistry.from_settings(make_settings(strict_rate_limit=False))

        assert isinstance(registry.global_limiter, InMemoryRateLimiter)
        assert isinstance(registry["auth"], NullRateLimiter)
        assert isinstance(registry["strict"], NullRateLimiter)

    def test_unknown_tier(self) -> None:
        registry = RateLimitRegistry.from_settings(make_settings())

        with pytest.raises(KeyError, match="Unknown rate limit tier"):
            registry["nope"]

    def test_requires_global_tier(self) -> None:
        with pytest.raises(ValueError):
            RateLimitRegistry({"auth": NullRateLimiter()})

    def test_cleanup_sums_tiers(self) -> None:
        clock = FakeClock(start=0.0)
        registry = RateLimitRegistry.from_settings(make_settings(), clock=clock)
        registry["global"].check("a")
        registry["strict"].check("a")

        clock.advance(3601)
        assert registry.cleanup() == 2


class TestRateLimiterProtocol:
    """Test that implementations satisfy the protocol."""

    def test_inmemory_satisfies_protocol(self) -> None:
        assert isinstance(InMemoryRateLimiter(), RateLimiter)

    def test_null_satisfies_protocol(self) -> None:
        assert isinstance(NullRateLimiter(), RateLimiter)
