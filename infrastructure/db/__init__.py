"""Supabase-backed repository implementations."""

from infrastructure.db.async_identity_repository import (
    AsyncSupabaseIdentityRepository,
    AsyncSupabaseSubscriptionRepository,
)
from infrastructure.db.async_usage_repository import AsyncSupabaseUsageRepository

__all__ = [
    "AsyncSupabaseIdentityRepository",
    "AsyncSupabaseSubscriptionRepository",
    "AsyncSupabaseUsageRepository",
]
