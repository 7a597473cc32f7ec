"""
Metrics definitions for the access API.

Defines all metrics using OpenTelemetry Meter API.
"""

import logging
from typing import Optional

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "genealogy-access-api"


def _get_meter() -> metrics.Meter:
    """Get the metrics meter instance."""
    return metrics.get_meter(_METER_NAME)


class AccessMetrics:
    """
    Centralized metrics for access control, usage and resilience.

    All metrics are lazily initialized on first access.
    """

    _access_decisions_total: Optional[metrics.Counter] = None
    _rate_limit_hits_total: Optional[metrics.Counter] = None
    _usage_committed_total: Optional[metrics.Counter] = None
    _db_retry_attempts_total: Optional[metrics.Counter] = None
    _circuit_state_changes_total: Optional[metrics.Counter] = None
    _ai_request_seconds: Optional[metrics.Histogram] = None
    _ai_parse_fallbacks_total: Optional[metrics.Counter] = None

    @classmethod
    def access_decisions_total(cls) -> metrics.Counter:
        """Counter for gate decisions by outcome and analysis type."""
        if cls._access_decisions_total is None:
            cls._access_decisions_total = _get_meter().create_counter(
                name="access_decisions_total",
                description="Total access gate decisions",
                unit="1",
            )
        return cls._access_decisions_total

    @classmethod
    def rate_limit_hits_total(cls) -> metrics.Counter:
        """Counter for rate limit denials by scope."""
        if cls._rate_limit_hits_total is None:
            cls._rate_limit_hits_total = _get_meter().create_counter(
                name="rate_limit_hits_total",
                description="Total rate limit denials",
                unit="1",
            )
        return cls._rate_limit_hits_total

    @classmethod
    def usage_committed_total(cls) -> metrics.Counter:
        if cls._usage_committed_total is None:
            cls._usage_committed_total = _get_meter().create_counter(
                name="usage_committed_total",
                description="Gated operations that completed and were committed",
                unit="1",
            )
        return cls._usage_committed_total

    @classmethod
    def db_retry_attempts_total(cls) -> metrics.Counter:
        """Counter for database attempts by outcome (retry, exhausted, terminal)."""
        if cls._db_retry_attempts_total is None:
            cls._db_retry_attempts_total = _get_meter().create_counter(
                name="db_retry_attempts_total",
                description="Database operation attempts that did not succeed",
                unit="1",
            )
        return cls._db_retry_attempts_total

    @classmethod
    def circuit_state_changes_total(cls) -> metrics.Counter:
        if cls._circuit_state_changes_total is None:
            cls._circuit_state_changes_total = _get_meter().create_counter(
                name="circuit_state_changes_total",
                description="Circuit breaker transitions by target state",
                unit="1",
            )
        return cls._circuit_state_changes_total

    @classmethod
    def ai_request_seconds(cls) -> metrics.Histogram:
        """Histogram for Anthropic request duration."""
        if cls._ai_request_seconds is None:
            cls._ai_request_seconds = _get_meter().create_histogram(
                name="ai_request_seconds",
                description="Duration of Anthropic API requests",
                unit="s",
            )
        return cls._ai_request_seconds

    @classmethod
    def ai_parse_fallbacks_total(cls) -> metrics.Counter:
        if cls._ai_parse_fallbacks_total is None:
            cls._ai_parse_fallbacks_total = _get_meter().create_counter(
                name="ai_parse_fallbacks_total",
                description="AI responses replaced by a fallback structure",
                unit="1",
            )
        return cls._ai_parse_fallbacks_total

    @classmethod
    def reset(cls) -> None:
        """Drop cached instruments so the next access binds to the current provider."""
        cls._access_decisions_total = None
        cls._rate_limit_hits_total = None
        cls._usage_committed_total = None
        cls._db_retry_attempts_total = None
        cls._circuit_state_changes_total = None
        cls._ai_request_seconds = None
        cls._ai_parse_fallbacks_total = None
