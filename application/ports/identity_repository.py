"""Port interfaces for identity records and subscription lookup."""

from datetime import datetime
from typing import Protocol

from application.models import SubscriptionTier


class IdentityRepository(Protocol):
    """Repository protocol for anonymous identity records."""

    async def touch_anonymous(self, identity_id: str) -> None:
        """Create the record on first sight, otherwise bump last_seen_at."""
        ...

    async def retire(self, identity_id: str) -> None:
        """Mark an anonymous identity as merged into an account."""
        ...

    async def cleanup_expired(self, before: datetime) -> int:
        """Retire anonymous identities last seen before ``before``.

        Returns:
            Number of identities retired.
        """
        ...


class SubscriptionRepository(Protocol):
    """Repository protocol for account subscription tiers."""

    async def get_tier(self, user_id: str) -> SubscriptionTier:
        """Get the active tier for a user. FREE when no active subscription exists."""
        ...
