"""Process-wide service graph.

Everything with shared state (rate limiter windows, circuit breaker, health
cache) is built exactly once here and hung off ``app.state.container``.
None of it is shared between processes or deployed instances.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from supabase import AsyncClient, create_async_client

from application.ports import IdentityRepository, SubscriptionRepository, UsageRepository
from application.use_cases.run_analysis import CompletionClient, RunAnalysisUseCase
from backend.crypto_utils import AnonymousTokenCodec
from backend.services.access_gate import AccessGate
from backend.services.ai_client import AsyncAIClient
from backend.services.identity_resolver import IdentityResolver
from backend.services.rate_limiter import InMemoryRateLimiter, RateLimitRule, ScopedRateLimiter
from backend.services.resilience import CircuitBreaker, CircuitBreakerConfig, ResilientDataAccess
from backend.services.usage_ledger import UsageLedger
from backend.settings import Settings
from infrastructure.db import (
    AsyncSupabaseIdentityRepository,
    AsyncSupabaseSubscriptionRepository,
    AsyncSupabaseUsageRepository,
)

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    rate_limiter: ScopedRateLimiter
    data_access: ResilientDataAccess
    identity_resolver: IdentityResolver
    usage_ledger: UsageLedger
    access_gate: AccessGate
    analysis: Optional[RunAnalysisUseCase] = None


def build_rate_limiter(settings: Settings, clock: Callable[[], float] = time.monotonic) -> ScopedRateLimiter:
    limiter = InMemoryRateLimiter(
        max_requests=settings.rate_limit_user_max_requests,
        window_seconds=settings.rate_limit_user_window_seconds,
        sweep_interval_seconds=settings.rate_limit_sweep_interval_seconds,
        clock=clock,
    )
    return ScopedRateLimiter(
        limiter,
        ip_rule=RateLimitRule(settings.rate_limit_ip_max_requests, settings.rate_limit_ip_window_seconds),
        user_rule=RateLimitRule(settings.rate_limit_user_max_requests, settings.rate_limit_user_window_seconds),
        endpoint_rules={
            prefix: RateLimitRule(rule[0], rule[1])
            for prefix, rule in settings.rate_limit_endpoints.items()
        },
    )


def build_container(
    settings: Settings,
    usage_repository: UsageRepository,
    identity_repository: Optional[IdentityRepository] = None,
    subscription_repository: Optional[SubscriptionRepository] = None,
    ai_client: Optional[CompletionClient] = None,
    rate_limiter: Optional[ScopedRateLimiter] = None,
    data_access: Optional[ResilientDataAccess] = None,
) -> ServiceContainer:
    """Wire the service graph around the given repositories and AI client."""
    if data_access is None:
        breaker = CircuitBreaker(CircuitBreakerConfig(
            failure_threshold=settings.circuit_failure_threshold,
            cooldown_seconds=settings.circuit_cooldown_seconds,
        ))
        data_access = ResilientDataAccess(
            breaker,
            probe=usage_repository.ping,
            max_attempts=settings.db_max_attempts,
            base_delay_ms=settings.db_base_delay_ms,
            jitter=settings.db_retry_jitter,
            health_cache_ttl_seconds=settings.health_cache_ttl_seconds,
        )

    identity_resolver = IdentityResolver(
        codec=AnonymousTokenCodec(settings.anon_token_secret, settings.anon_cookie_max_age_seconds),
        cookie_name=settings.anon_cookie_name,
        cookie_max_age_seconds=settings.anon_cookie_max_age_seconds,
        secure_cookie=settings.is_production,
        identity_repository=identity_repository,
        data_access=data_access,
    )
    usage_ledger = UsageLedger(
        usage_repository,
        data_access,
        subscription_repository=subscription_repository,
        identity_repository=identity_repository,
    )
    rate_limiter = rate_limiter or build_rate_limiter(settings)

    return ServiceContainer(
        settings=settings,
        rate_limiter=rate_limiter,
        data_access=data_access,
        identity_resolver=identity_resolver,
        usage_ledger=usage_ledger,
        access_gate=AccessGate(identity_resolver, rate_limiter, usage_ledger),
        analysis=RunAnalysisUseCase(ai_client, usage_ledger) if ai_client is not None else None,
    )


async def create_container(settings: Settings) -> ServiceContainer:
    """Build the production container backed by Supabase and Anthropic.

    Raises:
        RuntimeError: Supabase credentials are not configured.
    """
    if not settings.supabase_url or not settings.supabase_key:
        raise RuntimeError("Supabase credentials not configured")

    client: AsyncClient = await create_async_client(settings.supabase_url, settings.supabase_key)

    ai_client = None
    if settings.anthropic_api_key:
        ai_client = AsyncAIClient(
            api_key=settings.anthropic_api_key,
            helicone_api_key=settings.helicone_api_key,
            helicone_enabled=settings.helicone_enabled,
            default_model=settings.default_model,
            max_retries=settings.ai_max_retries,
            timeout=settings.ai_timeout_seconds,
        )
    else:
        logger.warning("ANTHROPIC_API_KEY not set; analysis tools will return 503")

    return build_container(
        settings,
        usage_repository=AsyncSupabaseUsageRepository(client),
        identity_repository=AsyncSupabaseIdentityRepository(client),
        subscription_repository=AsyncSupabaseSubscriptionRepository(client),
        ai_client=ai_client,
    )
