"""Port interface for monthly usage counters."""

from datetime import datetime
from typing import Dict, Protocol, Tuple


class UsageRepository(Protocol):
    """Repository protocol for per-identity, per-analysis-type monthly counters.

    Counters are keyed by (identity_id, analysis_type, period_start), created
    lazily on first increment and never deleted.
    """

    async def check_and_increment(
        self,
        identity_id: str,
        analysis_type: str,
        period_start: datetime,
        limit: int,
    ) -> Tuple[bool, int]:
        """Atomically increment the counter if it is below ``limit``.

        Returns:
            (allowed, count). When allowed, count is the value after the
            increment. When denied, count is the unchanged current value.
        """
        ...

    async def increment(
        self,
        identity_id: str,
        analysis_type: str,
        period_start: datetime,
    ) -> int:
        """Unconditionally increment the counter. Returns the new count."""
        ...

    async def get_counts(self, identity_id: str, period_start: datetime) -> Dict[str, int]:
        """Get all counters for an identity in a period, keyed by analysis type."""
        ...

    async def merge_identities(self, source_identity_id: str, target_identity_id: str) -> int:
        """Add every counter of ``source`` into ``target`` for the same periods.

        Returns:
            Number of counter rows merged.
        """
        ...

    async def ping(self) -> None:
        """Trivial round trip used by health checks. Raises on failure."""
        ...
