"""Monthly usage counters and tier-based entitlement.

Reservations are pessimistic: check_and_reserve() increments the counter in
the same atomic statement that checks the limit, so two concurrent requests
cannot both take the last slot. A gated operation that later fails still
consumes its slot; quota is never refunded.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from application.models import (
    UNLIMITED,
    AnalysisType,
    ErrorCode,
    Identity,
    SubscriptionTier,
    UsageCheck,
    current_period_start,
    get_limit,
)
from application.ports import IdentityRepository, SubscriptionRepository, UsageRepository
from backend.observability import AccessMetrics, traced
from backend.services.resilience import ResilientDataAccess

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UsageLedger:
    def __init__(
        self,
        usage_repository: UsageRepository,
        data_access: ResilientDataAccess,
        subscription_repository: Optional[SubscriptionRepository] = None,
        identity_repository: Optional[IdentityRepository] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._usage = usage_repository
        self._data_access = data_access
        self._subscriptions = subscription_repository
        self._identities = identity_repository
        self._clock = clock

    async def get_tier(self, identity: Identity) -> SubscriptionTier:
        """Anonymous visitors are always FREE; accounts use their stored tier."""
        if identity.is_anonymous or self._subscriptions is None:
            return SubscriptionTier.FREE
        return await self._data_access.run(
            lambda: self._subscriptions.get_tier(identity.user_id),
            operation_name="subscription.get_tier",
        )

    @traced(name="usage.check_and_reserve")
    async def check_and_reserve(self, identity: Identity, analysis_type: AnalysisType) -> UsageCheck:
        """Check the monthly limit and reserve one use if there is room.

        Raises:
            ValueError: Unknown analysis type.
            ServiceUnavailableError: Database unreachable or circuit open.
        """
        analysis_type = AnalysisType(analysis_type)
        tier = await self.get_tier(identity)
        limit = get_limit(tier, analysis_type)
        period_start = current_period_start(self._clock())

        if limit == 0:
            return UsageCheck(
                has_access=False,
                current_usage=0,
                limit=0,
                remaining=0,
                is_at_limit=True,
                analysis_type=analysis_type,
                identity_id=identity.identity_id,
                tier=tier,
                error_message=(
                    f"{analysis_type.display_name} is not available in your {tier.value} plan. "
                    "Please upgrade to access this feature."
                ),
                reason=ErrorCode.FEATURE_UNAVAILABLE,
            )

        if limit == UNLIMITED:
            # Still recorded so history and analytics stay complete
            count = await self._data_access.run(
                lambda: self._usage.increment(identity.identity_id, analysis_type.value, period_start),
                operation_name="usage.increment",
            )
            return UsageCheck(
                has_access=True,
                current_usage=max(0, count - 1),
                limit=UNLIMITED,
                remaining=UNLIMITED,
                is_at_limit=False,
                analysis_type=analysis_type,
                identity_id=identity.identity_id,
                tier=tier,
                reserved=True,
            )

        allowed, count = await self._data_access.run(
            lambda: self._usage.check_and_increment(
                identity.identity_id, analysis_type.value, period_start, limit
            ),
            operation_name="usage.check_and_increment",
        )

        if not allowed:
            logger.info(
                "Usage limit reached for %s (%s: %d/%d)",
                identity.identity_id,
                analysis_type.value,
                count,
                limit,
            )
            return UsageCheck(
                has_access=False,
                current_usage=count,
                limit=limit,
                remaining=max(0, limit - count),
                is_at_limit=True,
                analysis_type=analysis_type,
                identity_id=identity.identity_id,
                tier=tier,
                error_message=(
                    f"You've reached your monthly limit of {limit} for {analysis_type.display_name}."
                ),
            )

        return UsageCheck(
            has_access=True,
            current_usage=count - 1,
            limit=limit,
            remaining=max(0, limit - count),
            is_at_limit=count >= limit,
            analysis_type=analysis_type,
            identity_id=identity.identity_id,
            tier=tier,
            reserved=True,
        )

    def commit(self, usage: UsageCheck) -> UsageCheck:
        """Mark a reservation as used by a completed operation.

        The counter was already incremented by check_and_reserve(), so this
        never touches the database. Repeated calls are no-ops.

        Raises:
            ValueError: The usage check did not grant access.
        """
        if not usage.has_access or not usage.reserved:
            raise ValueError("Cannot commit usage that was not reserved")
        if usage.committed:
            logger.debug("Usage for %s already committed", usage.identity_id)
            return usage

        usage.committed = True
        AccessMetrics.usage_committed_total().add(1, {"analysis_type": usage.analysis_type.value})
        logger.info(
            "Committed %s usage for %s (%d/%s)",
            usage.analysis_type.value,
            usage.identity_id,
            usage.current_usage + 1,
            "unlimited" if usage.is_unlimited else usage.limit,
        )
        return usage

    async def get_usage_summary(self, identity: Identity) -> Dict[str, Any]:
        """Current-month usage for every analysis type."""
        tier = await self.get_tier(identity)
        period_start = current_period_start(self._clock())
        counts = await self._data_access.run(
            lambda: self._usage.get_counts(identity.identity_id, period_start),
            operation_name="usage.get_counts",
        )

        usage: Dict[str, Dict[str, Any]] = {}
        for analysis_type in AnalysisType:
            limit = get_limit(tier, analysis_type)
            current = counts.get(analysis_type.value, 0)
            if limit == UNLIMITED:
                remaining = UNLIMITED
            else:
                remaining = max(0, limit - current)
            usage[analysis_type.value] = {
                "current": current,
                "limit": limit,
                "remaining": remaining,
                "isAtLimit": limit != UNLIMITED and current >= limit,
                "available": limit != 0,
            }

        return {
            "tier": tier.value,
            "periodStart": period_start.isoformat(),
            "identity": identity.to_payload(),
            "usage": usage,
        }

    async def merge_anonymous(self, anon_identity: Identity, user_identity: Identity) -> int:
        """Fold an anonymous visitor's counters into an account and retire the visitor.

        Returns:
            Number of counter rows merged.
        """
        if not anon_identity.is_anonymous or user_identity.is_anonymous:
            raise ValueError("merge requires an anonymous source and an account target")

        merged = await self._data_access.run(
            lambda: self._usage.merge_identities(anon_identity.identity_id, user_identity.identity_id),
            operation_name="usage.merge_identities",
        )
        if self._identities is not None:
            await self._data_access.run(
                lambda: self._identities.retire(anon_identity.identity_id),
                operation_name="identity.retire",
            )
        logger.info(
            "Merged %d usage rows from %s into %s",
            merged,
            anon_identity.identity_id,
            user_identity.identity_id,
        )
        return merged
