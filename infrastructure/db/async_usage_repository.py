"""Async Supabase implementation of UsageRepository."""

import logging
from datetime import datetime
from typing import Dict, Tuple

from supabase import AsyncClient

logger = logging.getLogger(__name__)


class AsyncSupabaseUsageRepository:
    """Async Supabase-backed monthly usage counters.

    Each row is one (identity, analysis type, month) with a count. Writes go
    through RPCs so the limit check and the increment happen in one statement.
    """

    TABLE = "usage_counters"

    def __init__(self, client: AsyncClient) -> None:
        self._client = client

    async def check_and_increment(
        self,
        identity_id: str,
        analysis_type: str,
        period_start: datetime,
        limit: int,
    ) -> Tuple[bool, int]:
        """Increment the counter only if it is below ``limit``.

        Uses an atomic RPC so concurrent requests cannot both take the last
        slot.

        Returns:
            Tuple of (allowed: bool, usage_count: int).
        """
        result = await self._client.rpc(
            "check_and_increment_usage",
            {
                "p_identity_id": identity_id,
                "p_analysis_type": analysis_type,
                "p_period_start": period_start.isoformat(),
                "p_limit": limit,
            },
        ).execute()

        if result.data and len(result.data) > 0:
            row = result.data[0]
            return (row["allowed"], row["usage_count"])

        # Fallback if RPC returns empty (shouldn't happen)
        logger.error("check_and_increment_usage returned no rows for %s", identity_id)
        return (False, 0)

    async def increment(
        self,
        identity_id: str,
        analysis_type: str,
        period_start: datetime,
    ) -> int:
        """Unconditional upsert-increment. Returns the new count."""
        result = await self._client.rpc(
            "increment_usage",
            {
                "p_identity_id": identity_id,
                "p_analysis_type": analysis_type,
                "p_period_start": period_start.isoformat(),
            },
        ).execute()

        if isinstance(result.data, int):
            return result.data
        if result.data:
            return result.data[0]["usage_count"]
        return 0

    async def get_counts(self, identity_id: str, period_start: datetime) -> Dict[str, int]:
        result = await (
            self._client.table(self.TABLE)
            .select("analysis_type, count")
            .eq("identity_id", identity_id)
            .eq("period_start", period_start.isoformat())
            .execute()
        )
        return {row["analysis_type"]: row["count"] for row in (result.data or [])}

    async def merge_identities(self, source_identity_id: str, target_identity_id: str) -> int:
        """Add the source's counters into the target's, period by period.

        Returns:
            Number of source rows merged.
        """
        result = await self._client.rpc(
            "merge_usage_counters",
            {
                "p_source_identity_id": source_identity_id,
                "p_target_identity_id": target_identity_id,
            },
        ).execute()

        if isinstance(result.data, int):
            return result.data
        return 0

    async def ping(self) -> None:
        """Lightweight query to verify connectivity."""
        await self._client.table(self.TABLE).select("identity_id").limit(1).execute()
