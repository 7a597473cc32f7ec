"""In-memory IdentityRepository and SubscriptionRepository."""

from datetime import datetime, timezone
from typing import Dict, Optional

from application.models import SubscriptionTier


class FakeIdentityRepository:
    def __init__(self) -> None:
        self.last_seen: Dict[str, datetime] = {}
        self.retired: Dict[str, datetime] = {}
        self.error: Optional[BaseException] = None

    async def touch_anonymous(self, identity_id: str) -> None:
        if self.error is not None:
            raise self.error
        self.last_seen[identity_id] = datetime.now(timezone.utc)

    async def retire(self, identity_id: str) -> None:
        self.retired[identity_id] = datetime.now(timezone.utc)

    async def cleanup_expired(self, before: datetime) -> int:
        expired = [
            ident for ident, seen in self.last_seen.items()
            if seen < before and ident not in self.retired
        ]
        for ident in expired:
            self.retired[ident] = datetime.now(timezone.utc)
        return len(expired)

    def reset(self) -> None:
        self.last_seen.clear()
        self.retired.clear()
        self.error = None


class FakeSubscriptionRepository:
    def __init__(self) -> None:
        self.tiers: Dict[str, SubscriptionTier] = {}

    async def get_tier(self, user_id: str) -> SubscriptionTier:
        return self.tiers.get(user_id, SubscriptionTier.FREE)

    def set_tier(self, user_id: str, tier: SubscriptionTier) -> None:
        self.tiers[user_id] = tier

    def reset(self) -> None:
        self.tiers.clear()
