"""Retry-with-backoff and circuit breaking for persistence calls.

Every database call the service makes goes through ResilientDataAccess.
Errors are classified as retryable (the database could not be reached) or
terminal (the database answered and said no). Retryable errors are retried
with exponential backoff and feed a process-wide circuit breaker; terminal
errors are returned immediately.

with_retry() returns a RetryResult instead of raising, so callers branch on
RetryOk / RetryErr explicitly. run() is the raising convenience wrapper used
by services that want ServiceUnavailableError to propagate to the HTTP layer.

The breaker is per process. Horizontally scaled instances each keep their
own state.
"""

import asyncio
import logging
import random
import socket
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Generic, Optional, TypeVar, Union

import httpx
from postgrest.exceptions import APIError as PostgrestAPIError

from backend.observability import AccessMetrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ServiceUnavailableError(Exception):
    """Infrastructure was unreachable after retries, or the circuit is open.

    The message is for logs only. The HTTP layer replaces it with a generic
    apology.
    """

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class CircuitOpenError(ServiceUnavailableError):
    """Raised when the circuit breaker rejects a call without attempting it."""


class ErrorKind(str, Enum):
    RETRYABLE = "retryable"
    TERMINAL = "terminal"
    CIRCUIT_OPEN = "circuit_open"


# SQLSTATE values that mean "could not talk to the database"
_RETRYABLE_SQLSTATES = {"53300", "57P01", "57P02", "57P03", "40001", "40P01"}
_RETRYABLE_HTTP_CODES = {"502", "503", "504"}


def classify_error(exc: BaseException) -> ErrorKind:
    """Classify an exception raised by a persistence call.

    Retryable: connection refused/reset, timeouts, transport failures and
    PostgreSQL connection-class errors. Everything else, including constraint
    violations, not-found and validation errors, is terminal.
    """
    if isinstance(exc, CircuitOpenError):
        return ErrorKind.CIRCUIT_OPEN
    if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError, socket.gaierror)):
        return ErrorKind.RETRYABLE
    if isinstance(exc, httpx.TransportError):
        return ErrorKind.RETRYABLE
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code in (502, 503, 504):
            return ErrorKind.RETRYABLE
        return ErrorKind.TERMINAL
    if isinstance(exc, PostgrestAPIError):
        code = str(exc.code or "")
        if code.startswith("08") or code in _RETRYABLE_SQLSTATES or code in _RETRYABLE_HTTP_CODES:
            return ErrorKind.RETRYABLE
        return ErrorKind.TERMINAL
    return ErrorKind.TERMINAL


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


class CircuitState(str, Enum):
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Requests fail fast
    HALF_OPEN = "half_open"  # One probe allowed through


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5      # Consecutive retryable failures before opening
    cooldown_seconds: float = 30.0  # Seconds to stay open before probing


@dataclass(frozen=True)
class CircuitBreakerState:
    state: CircuitState
    consecutive_failures: int
    last_failure_at: Optional[float]


class CircuitBreaker:
    """Consecutive-failure circuit breaker shared by all database operations.

    CLOSED -> OPEN after ``failure_threshold`` consecutive failures.
    OPEN -> HALF_OPEN on the first call after ``cooldown_seconds``; that call
    is the single probe and concurrent callers keep failing fast.
    HALF_OPEN -> CLOSED when the probe succeeds, back to OPEN when it fails.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        name: str = "database",
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._last_failure_at: Optional[float] = None
        self._opened_at: Optional[float] = None
        self._probe_started_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        return self._state

    def snapshot(self) -> CircuitBreakerState:
        with self._lock:
            return CircuitBreakerState(
                state=self._state,
                consecutive_failures=self._consecutive_failures,
                last_failure_at=self._last_failure_at,
            )

    def retry_after_seconds(self) -> int:
        """Seconds until the next probe may be attempted (0 when not open)."""
        with self._lock:
            if self._state != CircuitState.OPEN or self._opened_at is None:
                return 0
            remaining = self.config.cooldown_seconds - (self._clock() - self._opened_at)
            return max(0, int(remaining + 0.999))

    def allow_request(self) -> bool:
        """Whether a call may go through now. Admits the half-open probe."""
        with self._lock:
            now = self._clock()
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._opened_at is not None and now - self._opened_at >= self.config.cooldown_seconds:
                    self._transition(CircuitState.HALF_OPEN)
                    self._probe_started_at = now
                    return True
                return False

            # HALF_OPEN: a probe abandoned without a result (e.g. cancelled)
            # frees the slot after another cooldown
            if (
                self._probe_started_at is not None
                and now - self._probe_started_at < self.config.cooldown_seconds
            ):
                return False
            self._probe_started_at = now
            return True

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._probe_started_at = None
            if self._state != CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)
                self._opened_at = None

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self._consecutive_failures += 1
            self._last_failure_at = now
            self._probe_started_at = None

            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
                self._opened_at = now
            elif (
                self._state == CircuitState.CLOSED
                and self._consecutive_failures >= self.config.failure_threshold
            ):
                self._transition(CircuitState.OPEN)
                self._opened_at = now

    def _transition(self, new_state: CircuitState) -> None:
        """Must hold _lock."""
        old_state = self._state
        self._state = new_state
        AccessMetrics.circuit_state_changes_total().add(1, {"state": new_state.value})
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            "Circuit breaker '%s': %s -> %s (consecutive_failures=%d)",
            self.name,
            old_state.value,
            new_state.value,
            self._consecutive_failures,
        )


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryOk(Generic[T]):
    value: T
    attempts: int

    ok = True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class RetryErr:
    kind: ErrorKind
    error: Optional[BaseException]
    attempts: int
    operation: str = "db"

    ok = False

    def unwrap(self):
        """Raise the error this result carries.

        Terminal errors are re-raised unchanged so callers see the original
        constraint or validation failure. Retryable and circuit-open results
        become ServiceUnavailableError.
        """
        if self.kind == ErrorKind.TERMINAL and self.error is not None:
            raise self.error
        if self.kind == ErrorKind.CIRCUIT_OPEN:
            raise CircuitOpenError(f"Circuit open, {self.operation} not attempted", self.operation)
        raise ServiceUnavailableError(
            f"{self.operation} failed after {self.attempts} attempts: {self.error!r}",
            self.operation,
        ) from self.error


RetryResult = Union[RetryOk[T], RetryErr]


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


HEALTHY = "healthy"
UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class HealthStatus:
    status: str
    latency_ms: Optional[float]
    circuit_state: CircuitState
    error: Optional[str] = None
    checked_at: Optional[datetime] = None

    @property
    def is_healthy(self) -> bool:
        return self.status == HEALTHY

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "latencyMs": self.latency_ms,
            "circuitState": self.circuit_state.value,
            "error": self.error,
            "checkedAt": self.checked_at.isoformat() if self.checked_at else None,
        }


# ---------------------------------------------------------------------------
# Resilient data access
# ---------------------------------------------------------------------------


class ResilientDataAccess:
    """Wraps persistence calls with retry, backoff and the circuit breaker."""

    def __init__(
        self,
        breaker: CircuitBreaker,
        probe: Callable[[], Awaitable[None]],
        max_attempts: int = 3,
        base_delay_ms: int = 1500,
        jitter: bool = False,
        health_cache_ttl_seconds: float = 30.0,
        probe_timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._breaker = breaker
        self._probe = probe
        self._max_attempts = max_attempts
        self._base_delay_ms = base_delay_ms
        self._jitter = jitter
        self._health_ttl = health_cache_ttl_seconds
        self._probe_timeout = probe_timeout_seconds
        self._clock = clock
        self._sleep = sleep
        self._health_cache: Optional[HealthStatus] = None
        self._health_cached_at: Optional[float] = None

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def _delay_seconds(self, attempt: int, base_delay_ms: int) -> float:
        delay_ms = base_delay_ms * (2 ** attempt)
        if self._jitter:
            delay_ms += random.uniform(0, delay_ms * 0.1)
        return delay_ms / 1000.0

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: Optional[int] = None,
        base_delay_ms: Optional[int] = None,
        operation_name: str = "db",
    ) -> "RetryResult[T]":
        """Run ``operation`` until it succeeds, fails terminally, or attempts run out.

        Args:
            operation: Zero-argument coroutine factory. Called once per attempt.
            max_attempts: Attempts before giving up (default from settings).
            base_delay_ms: Backoff base; attempt n waits base * 2**n.
            operation_name: Label for logs and errors.

        Returns:
            RetryOk with the value, or RetryErr tagged RETRYABLE (exhausted),
            TERMINAL (first non-retryable error) or CIRCUIT_OPEN.
        """
        max_attempts = max_attempts or self._max_attempts
        base_delay_ms = self._base_delay_ms if base_delay_ms is None else base_delay_ms
        last_error: Optional[BaseException] = None

        for attempt in range(max_attempts):
            if not self._breaker.allow_request():
                AccessMetrics.db_retry_attempts_total().add(1, {"outcome": "circuit_open"})
                logger.warning("%s rejected: circuit open", operation_name)
                return RetryErr(ErrorKind.CIRCUIT_OPEN, last_error, attempt, operation_name)

            try:
                value = await operation()
            except Exception as e:
                kind = classify_error(e)
                if kind != ErrorKind.RETRYABLE:
                    # The database answered, so the connection is fine
                    self._breaker.record_success()
                    AccessMetrics.db_retry_attempts_total().add(1, {"outcome": "terminal"})
                    logger.info("%s failed with non-retryable error: %s", operation_name, e)
                    return RetryErr(ErrorKind.TERMINAL, e, attempt + 1, operation_name)

                self._breaker.record_failure()
                last_error = e
                logger.warning(
                    "%s attempt %d/%d failed: %s", operation_name, attempt + 1, max_attempts, e
                )

                if attempt + 1 >= max_attempts:
                    break
                if self._breaker.state == CircuitState.OPEN:
                    AccessMetrics.db_retry_attempts_total().add(1, {"outcome": "circuit_open"})
                    return RetryErr(ErrorKind.CIRCUIT_OPEN, e, attempt + 1, operation_name)

                AccessMetrics.db_retry_attempts_total().add(1, {"outcome": "retry"})
                await self._sleep(self._delay_seconds(attempt, base_delay_ms))
                continue

            self._breaker.record_success()
            return RetryOk(value, attempt + 1)

        AccessMetrics.db_retry_attempts_total().add(1, {"outcome": "exhausted"})
        logger.error("%s failed after %d attempts: %s", operation_name, max_attempts, last_error)
        return RetryErr(ErrorKind.RETRYABLE, last_error, max_attempts, operation_name)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: Optional[int] = None,
        base_delay_ms: Optional[int] = None,
        operation_name: str = "db",
    ) -> T:
        """with_retry() that raises instead of returning RetryErr."""
        result = await self.with_retry(operation, max_attempts, base_delay_ms, operation_name)
        return result.unwrap()

    async def check_health(self, force: bool = False) -> HealthStatus:
        """Round-trip the database and report latency plus live circuit state.

        The probe result is cached for ``health_cache_ttl_seconds``. While the
        circuit is open the database is not touched at all.
        """
        now = self._clock()
        circuit_state = self._breaker.state

        if circuit_state == CircuitState.OPEN:
            return HealthStatus(
                status=UNHEALTHY,
                latency_ms=None,
                circuit_state=circuit_state,
                error="Circuit breaker is open",
                checked_at=datetime.now(timezone.utc),
            )

        if (
            not force
            and self._health_cache is not None
            and self._health_cached_at is not None
            and now - self._health_cached_at < self._health_ttl
        ):
            return replace(self._health_cache, circuit_state=circuit_state)

        start = time.perf_counter()
        try:
            await asyncio.wait_for(self._probe(), timeout=self._probe_timeout)
            status = HealthStatus(
                status=HEALTHY,
                latency_ms=round((time.perf_counter() - start) * 1000, 2),
                circuit_state=circuit_state,
                checked_at=datetime.now(timezone.utc),
            )
        except Exception as e:
            logger.warning("Database health check failed: %s", e)
            status = HealthStatus(
                status=UNHEALTHY,
                latency_ms=round((time.perf_counter() - start) * 1000, 2),
                circuit_state=circuit_state,
                error=type(e).__name__,
                checked_at=datetime.now(timezone.utc),
            )

        self._health_cache = status
        self._health_cached_at = now
        return replace(status, circuit_state=self._breaker.state)

    async def initialize(self, strict: bool = False) -> HealthStatus:
        """Startup connectivity check.

        Logs the result. With ``strict`` an unreachable database raises
        ServiceUnavailableError, otherwise the service starts degraded.
        """
        health = await self.check_health(force=True)
        if health.is_healthy:
            logger.info("Database reachable (latency=%.1fms)", health.latency_ms or 0.0)
            return health

        logger.error("Database unreachable at startup: %s", health.error)
        if strict:
            raise ServiceUnavailableError("Database unreachable at startup", "initialize")
        return health
