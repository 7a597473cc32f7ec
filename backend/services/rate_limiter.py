"""In-memory sliding window rate limiter for abuse protection.

Uses a deque of timestamps per key with a configurable window.
Thread-safe via threading.Lock. Ephemeral: state is lost on restart and is
not shared between processes, which is acceptable because the durable monthly
usage counters remain the billing-accurate limit.

ScopedRateLimiter layers three independent namespaces (IP, user, endpoint
prefix) over one limiter and stops at the first scope that denies.
"""

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    retry_after_seconds: Optional[int] = None  # whole seconds until the oldest entry leaves the window


class InMemoryRateLimiter:
    """Sliding window rate limiter backed by in-memory deques."""

    def __init__(
        self,
        max_requests: int = 20,
        window_seconds: float = 3600,
        sweep_interval_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._sweep_interval = sweep_interval_seconds
        self._clock = clock
        self._buckets: Dict[str, deque] = {}
        self._windows: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def check(self, key: str) -> RateLimitResult:
        """Check and record a request using the limiter's default window."""
        return self.is_allowed(key, int(self._window_seconds * 1000), self._max_requests)

    def is_allowed(self, key: str, window_ms: int, max_requests: int) -> RateLimitResult:
        """Check and record a request for ``key``. Returns whether it's allowed."""
        now = self._clock()
        window = window_ms / 1000.0
        cutoff = now - window

        with self._lock:
            if now - self._last_sweep >= self._sweep_interval:
                self._sweep_stale(now)
                self._last_sweep = now

            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = deque()
                self._buckets[key] = bucket
            self._windows[key] = window

            # Evict expired timestamps
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()

            if len(bucket) < max_requests:
                bucket.append(now)
                return RateLimitResult(allowed=True)

            if not bucket:
                # max_requests <= 0: nothing will ever leave the window
                return RateLimitResult(allowed=False, retry_after_seconds=max(1, math.ceil(window)))

            retry_after = math.ceil(bucket[0] + window - now)
            return RateLimitResult(allowed=False, retry_after_seconds=max(1, retry_after))

    def sweep(self) -> int:
        """Drop keys with no timestamps left in their window. Returns keys removed."""
        with self._lock:
            now = self._clock()
            self._last_sweep = now
            return self._sweep_stale(now)

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._buckets)

    def _sweep_stale(self, now: float) -> int:
        """Remove buckets with no timestamps in the current window. Must hold _lock."""
        stale_keys: List[str] = []
        for k, b in self._buckets.items():
            cutoff = now - self._windows.get(k, self._window_seconds)
            while b and b[0] <= cutoff:
                b.popleft()
            if not b:
                stale_keys.append(k)
        for k in stale_keys:
            del self._buckets[k]
            self._windows.pop(k, None)
        return len(stale_keys)


# ---------------------------------------------------------------------------
# Scoped limiter
# ---------------------------------------------------------------------------

SCOPE_IP = "ip"
SCOPE_USER = "user"
SCOPE_ENDPOINT = "endpoint"


@dataclass(frozen=True)
class RateLimitRule:
    max_requests: int
    window_seconds: float

    @property
    def window_ms(self) -> int:
        return int(self.window_seconds * 1000)


@dataclass
class ScopedRateLimitResult:
    allowed: bool
    scope: Optional[str] = None
    retry_after_seconds: Optional[int] = None


class ScopedRateLimiter:
    """IP, user and endpoint-prefix limits consulted in that order.

    Each scope has its own key namespace so an IP and an identity with the
    same string never share a bucket. A request is denied by the first scope
    that rejects it; later scopes are not consulted and record nothing.
    """

    def __init__(
        self,
        limiter: InMemoryRateLimiter,
        ip_rule: RateLimitRule,
        user_rule: RateLimitRule,
        endpoint_rules: Optional[Mapping[str, RateLimitRule]] = None,
    ):
        self._limiter = limiter
        self._ip_rule = ip_rule
        self._user_rule = user_rule
        # Longest prefix first so the most specific rule wins
        self._endpoint_rules = sorted(
            (endpoint_rules or {}).items(), key=lambda item: len(item[0]), reverse=True
        )

    @property
    def limiter(self) -> InMemoryRateLimiter:
        return self._limiter

    def match_endpoint(self, path: str) -> Optional[str]:
        """Return the longest configured prefix matching ``path``."""
        for prefix, _ in self._endpoint_rules:
            if path.startswith(prefix):
                return prefix
        return None

    def check(self, ip: str, identity_id: str, path: str) -> ScopedRateLimitResult:
        result = self._limiter.is_allowed(
            f"{SCOPE_IP}:{ip}", self._ip_rule.window_ms, self._ip_rule.max_requests
        )
        if not result.allowed:
            return ScopedRateLimitResult(False, SCOPE_IP, result.retry_after_seconds)

        result = self._limiter.is_allowed(
            f"{SCOPE_USER}:{identity_id}", self._user_rule.window_ms, self._user_rule.max_requests
        )
        if not result.allowed:
            return ScopedRateLimitResult(False, SCOPE_USER, result.retry_after_seconds)

        for prefix, rule in self._endpoint_rules:
            if path.startswith(prefix):
                result = self._limiter.is_allowed(
                    f"{SCOPE_ENDPOINT}:{prefix}|{identity_id}", rule.window_ms, rule.max_requests
                )
                if not result.allowed:
                    return ScopedRateLimitResult(False, SCOPE_ENDPOINT, result.retry_after_seconds)
                break

        return ScopedRateLimitResult(True)
