"""Async Supabase implementations of IdentityRepository and SubscriptionRepository."""

from datetime import datetime, timezone

from supabase import AsyncClient

from application.models import SubscriptionTier


class AsyncSupabaseIdentityRepository:
    """Anonymous identity records (first/last seen, merge status)."""

    TABLE = "anonymous_identities"

    def __init__(self, client: AsyncClient) -> None:
        self._client = client

    async def touch_anonymous(self, identity_id: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await (
            self._client.table(self.TABLE)
            .upsert(
                {"identity_id": identity_id, "last_seen_at": now},
                on_conflict="identity_id",
            )
            .execute()
        )

    async def retire(self, identity_id: str) -> None:
        await (
            self._client.table(self.TABLE)
            .update({"retired_at": datetime.now(timezone.utc).isoformat()})
            .eq("identity_id", identity_id)
            .execute()
        )

    async def cleanup_expired(self, before: datetime) -> int:
        result = await (
            self._client.table(self.TABLE)
            .update({"retired_at": datetime.now(timezone.utc).isoformat()})
            .lt("last_seen_at", before.isoformat())
            .is_("retired_at", "null")
            .execute()
        )
        return len(result.data or [])


class AsyncSupabaseSubscriptionRepository:
    """Reads the active subscription tier for an account."""

    TABLE = "subscriptions"
    ACTIVE_STATUSES = ("active", "trialing")

    def __init__(self, client: AsyncClient) -> None:
        self._client = client

    async def get_tier(self, user_id: str) -> SubscriptionTier:
        result = await (
            self._client.table(self.TABLE)
            .select("tier, status")
            .eq("user_id", user_id)
            .in_("status", list(self.ACTIVE_STATUSES))
            .limit(1)
            .execute()
        )
        if not result.data:
            return SubscriptionTier.FREE
        try:
            return SubscriptionTier(str(result.data[0]["tier"]).upper())
        except ValueError:
            return SubscriptionTier.FREE
