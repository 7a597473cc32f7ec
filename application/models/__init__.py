"""Application domain models for access control and usage metering."""

from .access import (
    ANALYSIS_DISPLAY_NAMES,
    DISABLED,
    TIER_LIMITS,
    UNLIMITED,
    AccessDecision,
    AnalysisType,
    CookieInstruction,
    ErrorCode,
    Identity,
    IdentityKind,
    SubscriptionTier,
    UsageCheck,
    current_period_start,
    get_limit,
)

__all__ = [
    "ANALYSIS_DISPLAY_NAMES",
    "DISABLED",
    "TIER_LIMITS",
    "UNLIMITED",
    "AccessDecision",
    "AnalysisType",
    "CookieInstruction",
    "ErrorCode",
    "Identity",
    "IdentityKind",
    "SubscriptionTier",
    "UsageCheck",
    "current_period_start",
    "get_limit",
]
