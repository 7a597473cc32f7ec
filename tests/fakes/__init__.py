"""
Fake implementations for testing.

In-memory fakes of the repository ports, the AI client and the clocks, for
fast, isolated tests without Supabase or Anthropic.
"""

from tests.fakes.ai_client import FakeAIClient
from tests.fakes.clock import FakeClock
from tests.fakes.identity_repository import FakeIdentityRepository, FakeSubscriptionRepository
from tests.fakes.usage_repository import FakeUsageRepository

__all__ = [
    "FakeAIClient",
    "FakeClock",
    "FakeIdentityRepository",
    "FakeSubscriptionRepository",
    "FakeUsageRepository",
]
