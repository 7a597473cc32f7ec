"""
Shared fixtures for the access API tests.

The service graph is built with in-memory fakes (tests/fakes) and a fake
clock, so rate limit windows, backoff sleeps and circuit cooldowns are all
driven by the test instead of wall time.
"""

import os
import time
from typing import Dict

# ---------------------------------------------------------------------------
# Environment setup (must precede backend imports)
# ---------------------------------------------------------------------------
os.environ.setdefault("ENVIRONMENT", "test")

import jwt as pyjwt
import pytest
from fastapi.testclient import TestClient

from backend.container import ServiceContainer, build_container, build_rate_limiter
from backend.main import create_app
from backend.services.resilience import CircuitBreaker, CircuitBreakerConfig, ResilientDataAccess
from backend.settings import Settings
from tests.fakes import (
    FakeAIClient,
    FakeClock,
    FakeIdentityRepository,
    FakeSubscriptionRepository,
    FakeUsageRepository,
)


# ============================================================================
# Constants
# ============================================================================

TEST_USER_ID = "user_test_12345"
TEST_JWT_SECRET = "test-jwt-secret-for-hs256-tokens-0123456789"
INTERNAL_API_KEY = "test-internal-key-secure-random"
ANON_TOKEN_SECRET = "test-anon-token-secret"


def make_settings(**overrides) -> Settings:
    values = dict(
        environment="test",
        supabase_url="https://test.supabase.co",
        supabase_service_role_key="test-key",
        auth_jwt_secret=TEST_JWT_SECRET,
        anon_token_secret=ANON_TOKEN_SECRET,
        internal_api_key=INTERNAL_API_KEY,
        _env_file=None,
    )
    values.update(overrides)
    return Settings(**values)


def make_token(user_id: str = TEST_USER_ID, secret: str = TEST_JWT_SECRET, expires_in: int = 3600) -> str:
    """Mint an HS256 bearer token the way the auth service does."""
    payload = {"sub": user_id, "exp": int(time.time()) + expires_in}
    return pyjwt.encode(payload, secret, algorithm="HS256")


def auth_headers(user_id: str = TEST_USER_ID) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


# ============================================================================
# Fakes
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def identity_repo() -> FakeIdentityRepository:
    return FakeIdentityRepository()


@pytest.fixture
def usage_repo(identity_repo) -> FakeUsageRepository:
    return FakeUsageRepository(identity_repo)


@pytest.fixture
def subscription_repo() -> FakeSubscriptionRepository:
    return FakeSubscriptionRepository()


@pytest.fixture
def ai_client() -> FakeAIClient:
    return FakeAIClient()


# ============================================================================
# Service graph
# ============================================================================


@pytest.fixture
def breaker(settings, clock) -> CircuitBreaker:
    return CircuitBreaker(
        CircuitBreakerConfig(
            failure_threshold=settings.circuit_failure_threshold,
            cooldown_seconds=settings.circuit_cooldown_seconds,
        ),
        clock=clock,
    )


@pytest.fixture
def data_access(settings, clock, breaker, usage_repo) -> ResilientDataAccess:
    return ResilientDataAccess(
        breaker,
        probe=usage_repo.ping,
        max_attempts=settings.db_max_attempts,
        base_delay_ms=settings.db_base_delay_ms,
        health_cache_ttl_seconds=settings.health_cache_ttl_seconds,
        clock=clock,
        sleep=clock.sleep,
    )


@pytest.fixture
def container(
    settings,
    clock,
    usage_repo,
    identity_repo,
    subscription_repo,
    ai_client,
    data_access,
) -> ServiceContainer:
    return build_container(
        settings,
        usage_repository=usage_repo,
        identity_repository=identity_repo,
        subscription_repository=subscription_repo,
        ai_client=ai_client,
        rate_limiter=build_rate_limiter(settings, clock=clock),
        data_access=data_access,
    )


@pytest.fixture
def app(settings, container):
    """FastAPI app wired to the in-memory container."""
    return create_app(settings=settings, container=container)


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)
