"""Domain types for identity, entitlement and access decisions."""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


class AnalysisType(str, Enum):
    """Gated tool categories. Each has its own monthly counter."""

    DOCUMENT = "DOCUMENT"
    DNA = "DNA"
    FAMILY_TREE = "FAMILY_TREE"
    PHOTO = "PHOTO"
    RESEARCH = "RESEARCH"

    @property
    def display_name(self) -> str:
        return ANALYSIS_DISPLAY_NAMES[self]


ANALYSIS_DISPLAY_NAMES: Dict[AnalysisType, str] = {
    AnalysisType.DOCUMENT: "Document Analysis",
    AnalysisType.DNA: "DNA Analysis",
    AnalysisType.FAMILY_TREE: "Tree Building",
    AnalysisType.PHOTO: "Photo Analysis",
    AnalysisType.RESEARCH: "Research Chat",
}


class SubscriptionTier(str, Enum):
    FREE = "FREE"
    EXPLORER = "EXPLORER"
    RESEARCHER = "RESEARCHER"
    PROFESSIONAL = "PROFESSIONAL"
    ADMIN = "ADMIN"


class IdentityKind(str, Enum):
    USER = "USER"
    ANONYMOUS = "ANONYMOUS"


class ErrorCode(str, Enum):
    """Machine-readable reasons attached to denied requests."""

    SIGNUP_REQUIRED = "SIGNUP_REQUIRED"
    UPGRADE_REQUIRED = "UPGRADE_REQUIRED"
    RATE_LIMITED = "RATE_LIMITED"
    FEATURE_UNAVAILABLE = "FEATURE_UNAVAILABLE"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


UNLIMITED = -1
DISABLED = 0

# Monthly limits per tier. -1 is unlimited, 0 means the feature is not in the plan.
TIER_LIMITS: Dict[SubscriptionTier, Dict[AnalysisType, int]] = {
    SubscriptionTier.FREE: {
        AnalysisType.DOCUMENT: 5,
        AnalysisType.PHOTO: 2,
        AnalysisType.FAMILY_TREE: 3,
        AnalysisType.RESEARCH: 10,
        AnalysisType.DNA: 0,
    },
    SubscriptionTier.EXPLORER: {
        AnalysisType.DOCUMENT: 50,
        AnalysisType.PHOTO: 25,
        AnalysisType.FAMILY_TREE: UNLIMITED,
        AnalysisType.RESEARCH: 100,
        AnalysisType.DNA: 3,
    },
    SubscriptionTier.RESEARCHER: {
        AnalysisType.DOCUMENT: 200,
        AnalysisType.PHOTO: 100,
        AnalysisType.FAMILY_TREE: UNLIMITED,
        AnalysisType.RESEARCH: UNLIMITED,
        AnalysisType.DNA: 10,
    },
    SubscriptionTier.PROFESSIONAL: {t: UNLIMITED for t in AnalysisType},
    SubscriptionTier.ADMIN: {t: UNLIMITED for t in AnalysisType},
}


def get_limit(tier: SubscriptionTier, analysis_type: AnalysisType) -> int:
    """Look up the monthly limit for a tier and analysis type."""
    return TIER_LIMITS[tier][analysis_type]


def current_period_start(now: Optional[datetime] = None) -> datetime:
    """First instant of the current UTC month."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


@dataclass(frozen=True)
class Identity:
    """Unit of quota attribution: an account or an anonymous visitor."""

    identity_id: str
    kind: IdentityKind
    user_id: Optional[str] = None
    anon_key: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return self.kind == IdentityKind.ANONYMOUS

    @classmethod
    def for_user(cls, user_id: str) -> "Identity":
        return cls(identity_id=f"user-{user_id}", kind=IdentityKind.USER, user_id=user_id)

    @classmethod
    def for_anonymous(cls, anon_key: str) -> "Identity":
        return cls(identity_id=f"anon-{anon_key}", kind=IdentityKind.ANONYMOUS, anon_key=anon_key)

    def to_payload(self) -> Dict[str, object]:
        return {"type": self.kind.value, "isAnonymous": self.is_anonymous}


@dataclass
class UsageCheck:
    """Result of a usage reservation.

    ``current_usage`` is the count before this request. On an allowed,
    limited reservation ``remaining`` already reflects the reserved slot.
    ``remaining`` is -1 for unlimited plans.
    """

    has_access: bool
    current_usage: int
    limit: int
    remaining: int
    is_at_limit: bool
    analysis_type: AnalysisType
    identity_id: str
    tier: SubscriptionTier = SubscriptionTier.FREE
    error_message: Optional[str] = None
    reason: Optional[ErrorCode] = None
    reserved: bool = False
    committed: bool = False

    @property
    def is_unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def warning_threshold(self) -> int:
        """Usage level at which the client should start warning (80% of the limit)."""
        if self.limit <= 0:
            return 0
        return math.floor(self.limit * 0.8)

    def to_payload(self) -> Dict[str, object]:
        return {
            "current": self.current_usage,
            "limit": self.limit,
            "remaining": self.remaining,
            "isAtLimit": self.is_at_limit,
        }


@dataclass(frozen=True)
class CookieInstruction:
    """Tells the HTTP layer to set the anonymous identity cookie."""

    name: str
    value: str
    max_age: int
    secure: bool
    http_only: bool = True
    same_site: str = "lax"
    path: str = "/"


@dataclass
class AccessDecision:
    """Outcome of the access gate for one request."""

    allowed: bool
    identity: Identity
    usage: Optional[UsageCheck] = None
    error_code: Optional[ErrorCode] = None
    error: Optional[str] = None
    upgrade_message: Optional[str] = None
    retry_after_seconds: Optional[int] = None
    rate_limit_scope: Optional[str] = None
    anon_cookie: Optional[CookieInstruction] = None
    is_free_tier: bool = True
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
