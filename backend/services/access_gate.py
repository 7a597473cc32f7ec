"""Single allow/deny decision for every gated tool call.

Order matters: the in-memory rate limiter runs before the usage ledger so
abusive traffic is turned away without a database round trip, and that
includes recording the anonymous visitor.

Abuse and entitlement failures come back as AccessDecision values. Only
infrastructure failures (ServiceUnavailableError) propagate as exceptions.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from application.models import (
    AccessDecision,
    AnalysisType,
    ErrorCode,
    Identity,
    SubscriptionTier,
)
from backend.observability import AccessMetrics, add_span_attributes, traced
from backend.services.identity_resolver import IdentityResolver
from backend.services.rate_limiter import ScopedRateLimiter
from backend.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)

SIGNUP_MESSAGE = "Sign up for free to continue using this feature with the same limits."
UPGRADE_MESSAGE = "Upgrade your subscription for higher monthly limits."
RATE_LIMIT_SIGNUP_MESSAGE = "Sign up for free to get the same limits with better stability."
RATE_LIMIT_UPGRADE_MESSAGE = "Upgrade your plan for higher limits and priority processing."


@dataclass(frozen=True)
class GateRequest:
    """The parts of an HTTP request the gate needs."""

    ip: str
    path: str
    anon_cookie: Optional[str] = None
    user_id: Optional[str] = None
    user_agent: Optional[str] = None


class AccessGate:
    def __init__(
        self,
        identity_resolver: IdentityResolver,
        rate_limiter: ScopedRateLimiter,
        usage_ledger: UsageLedger,
    ):
        self._identities = identity_resolver
        self._rate_limiter = rate_limiter
        self._ledger = usage_ledger

    @property
    def usage_ledger(self) -> UsageLedger:
        return self._ledger

    @traced(name="access_gate.evaluate")
    async def evaluate(self, request: GateRequest, analysis_type: AnalysisType) -> AccessDecision:
        analysis_type = AnalysisType(analysis_type)
        resolution = self._identities.resolve(request.anon_cookie, request.user_id)
        identity = resolution.identity
        add_span_attributes({
            "access.identity_kind": identity.kind.value,
            "access.analysis_type": analysis_type.value,
        })

        limited = self._rate_limiter.check(request.ip, identity.identity_id, request.path)
        if not limited.allowed:
            AccessMetrics.rate_limit_hits_total().add(1, {"scope": limited.scope})
            self._record(analysis_type, ErrorCode.RATE_LIMITED.value)
            logger.info(
                "Rate limited %s (scope=%s, ip=%s, retry_after=%ss)",
                identity.identity_id,
                limited.scope,
                request.ip,
                limited.retry_after_seconds,
            )
            return AccessDecision(
                allowed=False,
                identity=identity,
                error_code=ErrorCode.RATE_LIMITED,
                error=(
                    f"Rate limit exceeded. Please try again in "
                    f"{limited.retry_after_seconds} seconds."
                ),
                upgrade_message=(
                    RATE_LIMIT_SIGNUP_MESSAGE if identity.is_anonymous else RATE_LIMIT_UPGRADE_MESSAGE
                ),
                retry_after_seconds=limited.retry_after_seconds,
                rate_limit_scope=limited.scope,
                anon_cookie=resolution.set_cookie,
                is_free_tier=identity.is_anonymous,
            )

        await self._identities.record_visit(identity)
        usage = await self._ledger.check_and_reserve(identity, analysis_type)
        is_free_tier = usage.tier == SubscriptionTier.FREE

        if not usage.has_access:
            error_code = self._entitlement_code(identity)
            self._record(analysis_type, error_code.value)
            return AccessDecision(
                allowed=False,
                identity=identity,
                usage=usage,
                error_code=error_code,
                error=usage.error_message,
                upgrade_message=SIGNUP_MESSAGE if identity.is_anonymous else UPGRADE_MESSAGE,
                anon_cookie=resolution.set_cookie,
                is_free_tier=is_free_tier,
            )

        self._record(analysis_type, "allowed")
        return AccessDecision(
            allowed=True,
            identity=identity,
            usage=usage,
            anon_cookie=resolution.set_cookie,
            is_free_tier=is_free_tier,
        )

    @staticmethod
    def _entitlement_code(identity: Identity) -> ErrorCode:
        return ErrorCode.SIGNUP_REQUIRED if identity.is_anonymous else ErrorCode.UPGRADE_REQUIRED

    @staticmethod
    def _record(analysis_type: AnalysisType, outcome: str) -> None:
        AccessMetrics.access_decisions_total().add(
            1, {"outcome": outcome, "analysis_type": analysis_type.value}
        )
