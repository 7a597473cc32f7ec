"""Tests for the in-memory sliding window and scoped rate limiters."""

import threading

import pytest

from backend.services.rate_limiter import (
    SCOPE_ENDPOINT,
    SCOPE_IP,
    SCOPE_USER,
    InMemoryRateLimiter,
    RateLimitRule,
    ScopedRateLimiter,
)
from tests.fakes import FakeClock


@pytest.fixture
def limiter(clock):
    return InMemoryRateLimiter(max_requests=3, window_seconds=60, sweep_interval_seconds=300, clock=clock)


class TestInMemoryRateLimiter:
    """Sliding window behavior of InMemoryRateLimiter."""

    def test_allows_up_to_max_requests(self, limiter):
        """The first max_requests calls in a window are allowed."""
        results = [limiter.check("k") for _ in range(3)]
        assert all(r.allowed for r in results)
        assert all(r.retry_after_seconds is None for r in results)

    def test_denies_request_over_limit(self, limiter):
        """The call after the limit is denied with a retry hint."""
        for _ in range(3):
            limiter.check("k")
        result = limiter.check("k")
        assert result.allowed is False
        assert result.retry_after_seconds == 60

    def test_retry_after_counts_down_from_oldest_entry(self, limiter, clock):
        limiter.check("k")
        clock.advance(10)
        limiter.check("k")
        limiter.check("k")
        clock.advance(5.5)

        result = limiter.check("k")

        # Oldest entry leaves the window 60s after it was recorded
        assert result.allowed is False
        assert result.retry_after_seconds == 45

    def test_retry_after_is_at_least_one_second(self, limiter, clock):
        for _ in range(3):
            limiter.check("k")
        clock.advance(59.9)

        result = limiter.check("k")

        assert result.allowed is False
        assert result.retry_after_seconds == 1

    def test_window_slides(self, limiter, clock):
        """Entries older than the window no longer count."""
        limiter.check("k")
        clock.advance(30)
        limiter.check("k")
        limiter.check("k")
        assert limiter.check("k").allowed is False

        clock.advance(30)
        assert limiter.check("k").allowed is True
        assert limiter.check("k").allowed is False

    def test_denied_requests_are_not_recorded(self, limiter, clock):
        """Hammering while limited does not extend the block."""
        for _ in range(3):
            limiter.check("k")
        for _ in range(10):
            limiter.check("k")

        clock.advance(60)
        assert limiter.check("k").allowed is True

    def test_keys_are_independent(self, limiter):
        for _ in range(3):
            limiter.check("a")
        assert limiter.check("a").allowed is False
        assert limiter.check("b").allowed is True

    def test_is_allowed_uses_per_call_window(self, limiter, clock):
        assert limiter.is_allowed("k", window_ms=1000, max_requests=1).allowed is True
        assert limiter.is_allowed("k", window_ms=1000, max_requests=1).allowed is False
        clock.advance(1)
        assert limiter.is_allowed("k", window_ms=1000, max_requests=1).allowed is True

    def test_zero_max_requests_always_denies(self, limiter):
        result = limiter.is_allowed("k", window_ms=1000, max_requests=0)
        assert result.allowed is False

    def test_sweep_removes_idle_keys(self, limiter, clock):
        limiter.check("old")
        clock.advance(45)
        limiter.check("recent")
        clock.advance(20)

        removed = limiter.sweep()

        assert removed == 1
        assert limiter.tracked_keys() == 1

    def test_sweep_respects_each_keys_window(self, limiter, clock):
        """A long-window key survives a sweep that drops a short-window key."""
        limiter.is_allowed("short", window_ms=1000, max_requests=5)
        limiter.is_allowed("long", window_ms=3_600_000, max_requests=5)
        clock.advance(10)

        assert limiter.sweep() == 1
        assert limiter.tracked_keys() == 1

    def test_automatic_sweep_after_interval(self, limiter, clock):
        for i in range(10):
            limiter.check(f"visitor-{i}")
        assert limiter.tracked_keys() == 10

        clock.advance(301)
        limiter.check("new-visitor")

        assert limiter.tracked_keys() == 1

    def test_concurrent_checks_never_exceed_limit(self):
        """Threads racing on one key get exactly max_requests allowances."""
        limiter = InMemoryRateLimiter(max_requests=50, window_seconds=60, clock=FakeClock())
        allowed = []
        lock = threading.Lock()

        def worker():
            for _ in range(20):
                if limiter.check("shared").allowed:
                    with lock:
                        allowed.append(1)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(allowed) == 50


class TestScopedRateLimiter:
    """IP, user and endpoint scopes."""

    @pytest.fixture
    def scoped(self, limiter):
        return ScopedRateLimiter(
            limiter,
            ip_rule=RateLimitRule(max_requests=5, window_seconds=900),
            user_rule=RateLimitRule(max_requests=3, window_seconds=3600),
            endpoint_rules={
                "/api/tools": RateLimitRule(max_requests=2, window_seconds=3600),
                "/api/tools/dna": RateLimitRule(max_requests=1, window_seconds=3600),
            },
        )

    def test_allows_request_within_all_scopes(self, scoped):
        result = scoped.check("1.2.3.4", "user-1", "/api/usage/current")
        assert result.allowed is True
        assert result.scope is None

    def test_ip_scope_denies_first(self, scoped):
        """Many identities behind one IP trip the IP scope."""
        for i in range(5):
            assert scoped.check("1.2.3.4", f"anon-{i}", "/api/usage/current").allowed

        result = scoped.check("1.2.3.4", "anon-new", "/api/usage/current")

        assert result.allowed is False
        assert result.scope == SCOPE_IP
        assert result.retry_after_seconds == 900

    def test_user_scope_follows_identity_across_ips(self, scoped):
        for i in range(3):
            assert scoped.check(f"10.0.0.{i}", "user-1", "/api/usage/current").allowed

        result = scoped.check("10.0.0.99", "user-1", "/api/usage/current")

        assert result.allowed is False
        assert result.scope == SCOPE_USER

    def test_endpoint_scope_applies_to_matching_prefix(self, scoped):
        assert scoped.check("1.1.1.1", "user-1", "/api/tools/document/analyze").allowed
        assert scoped.check("1.1.1.1", "user-1", "/api/tools/photo/analyze").allowed

        result = scoped.check("1.1.1.1", "user-1", "/api/tools/document/analyze")

        assert result.allowed is False
        assert result.scope == SCOPE_ENDPOINT

    def test_longest_prefix_wins(self, scoped):
        assert scoped.match_endpoint("/api/tools/dna/analyze") == "/api/tools/dna"
        assert scoped.match_endpoint("/api/tools/tree/expand") == "/api/tools"
        assert scoped.match_endpoint("/health") is None

        assert scoped.check("1.1.1.1", "user-1", "/api/tools/dna/analyze").allowed
        result = scoped.check("1.1.1.1", "user-1", "/api/tools/dna/analyze")
        assert result.scope == SCOPE_ENDPOINT

    def test_endpoint_scope_is_per_identity(self, scoped):
        """One caller exhausting an endpoint does not block another."""
        scoped.check("1.1.1.1", "user-1", "/api/tools/document/analyze")
        scoped.check("1.1.1.1", "user-1", "/api/tools/document/analyze")
        assert not scoped.check("1.1.1.1", "user-1", "/api/tools/document/analyze").allowed

        assert scoped.check("1.1.1.1", "user-2", "/api/tools/document/analyze").allowed

    def test_scopes_use_separate_namespaces(self, scoped):
        """An IP string equal to an identity id does not share a bucket."""
        for _ in range(3):
            scoped.check("same", "same", "/x")
        # User scope is exhausted; the IP scope still has room for another identity
        assert scoped.check("same", "other", "/x").allowed is True

    def test_denial_stops_at_first_scope(self, scoped, limiter):
        """A request denied by the IP scope records nothing in later scopes."""
        for i in range(5):
            scoped.check("9.9.9.9", f"anon-{i}", "/x")
        scoped.check("9.9.9.9", "victim", "/x")

        assert scoped.check("8.8.8.8", "victim", "/x").allowed
        assert limiter.is_allowed("user:victim", 3_600_000, 3).allowed
