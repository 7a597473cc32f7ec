"""Port interfaces (Protocols) implemented by infrastructure adapters."""

from application.ports.identity_repository import IdentityRepository, SubscriptionRepository
from application.ports.usage_repository import UsageRepository

__all__ = [
    "IdentityRepository",
    "SubscriptionRepository",
    "UsageRepository",
]
