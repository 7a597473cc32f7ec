"""
Settings for the genealogy access API, read from the environment (and .env).

Covers everything around the quotas: Supabase credentials, bearer token
verification, the anonymous cookie, rate limit windows, database retry and
circuit breaker tuning, the Anthropic client and telemetry. Tier limits
live in application.models.

Usage:
    from backend.settings import get_settings

    settings = get_settings()
    if settings.is_production:
        ...

Routes read the instance the app was built with via api.deps.get_settings.
"""

import json
from functools import lru_cache
from typing import Dict, List, Optional, Union

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Core Environment
    # -------------------------------------------------------------------------
    environment: str = Field(
        default="development",
        description="Runtime environment: development, staging, production, test",
    )
    service_name: str = Field(
        default="genealogy-access-api",
        description="Service name reported by health checks and telemetry",
    )

    # -------------------------------------------------------------------------
    # Supabase Database
    # -------------------------------------------------------------------------
    supabase_url: Optional[str] = Field(
        default=None,
        description="Supabase project URL",
    )
    supabase_service_role_key: Optional[str] = Field(
        default=None,
        description="Supabase service role key (full access)",
    )

    @property
    def supabase_key(self) -> Optional[str]:
        """Get the Supabase key.

        Usage counters are written through security-definer RPCs, which need
        service role access.
        """
        return self.supabase_service_role_key

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------
    auth_jwt_secret: Optional[str] = Field(
        default=None,
        description="HS256 secret used to verify bearer tokens issued by the auth service",
    )
    auth_jwt_audience: Optional[str] = Field(
        default=None,
        description="Expected JWT audience claim (skipped when unset)",
    )

    # -------------------------------------------------------------------------
    # Anonymous Identity
    # -------------------------------------------------------------------------
    anon_cookie_name: str = Field(
        default="genealogy_anon_id",
        description="Cookie carrying the signed anonymous identity token",
    )
    anon_cookie_max_age_days: int = Field(
        default=30,
        description="Lifetime of the anonymous identity cookie and token",
    )
    anon_token_secret: str = Field(
        default="dev-anon-token-secret-change-me",
        description="Secret used to sign and encrypt anonymous identity tokens",
    )

    # -------------------------------------------------------------------------
    # Rate Limits (in-memory, per process)
    # -------------------------------------------------------------------------
    rate_limit_ip_max_requests: int = Field(
        default=100,
        description="Requests allowed per IP address in the IP window",
    )
    rate_limit_ip_window_seconds: int = Field(
        default=15 * 60,
        description="Sliding window length for the IP scope",
    )
    rate_limit_user_max_requests: int = Field(
        default=20,
        description="Requests allowed per identity in the user window",
    )
    rate_limit_user_window_seconds: int = Field(
        default=60 * 60,
        description="Sliding window length for the user scope",
    )
    rate_limit_endpoints: Dict[str, List[int]] = Field(
        default_factory=lambda: {"/api/tools": [50, 60 * 60]},
        description="Endpoint prefix -> [max_requests, window_seconds]",
    )
    rate_limit_sweep_interval_seconds: int = Field(
        default=5 * 60,
        description="Seconds between sweeps that drop idle rate limit keys",
    )
    trusted_proxy_hops: Optional[int] = Field(
        default=None,
        ge=0,
        description=(
            "Reverse proxies in front of the API that append to X-Forwarded-For. "
            "Unset: first X-Forwarded-For hop. 0: socket peer only. "
            "N: the N-th address from the right"
        ),
    )

    # -------------------------------------------------------------------------
    # Database Resilience
    # -------------------------------------------------------------------------
    db_max_attempts: int = Field(
        default=3,
        description="Attempts per database operation before giving up",
    )
    db_base_delay_ms: int = Field(
        default=1500,
        description="Base backoff delay; attempt n waits base * 2**n",
    )
    db_retry_jitter: bool = Field(
        default=False,
        description="Add up to 10% random jitter to retry delays",
    )
    circuit_failure_threshold: int = Field(
        default=5,
        description="Consecutive connection failures that open the circuit",
    )
    circuit_cooldown_seconds: float = Field(
        default=30.0,
        description="Seconds the circuit stays open before a probe is allowed",
    )
    health_cache_ttl_seconds: float = Field(
        default=30.0,
        description="How long a database health probe result is reused",
    )

    # -------------------------------------------------------------------------
    # AI Services
    # -------------------------------------------------------------------------
    anthropic_api_key: Optional[str] = Field(
        default=None,
        description="Anthropic API key for Claude",
    )
    default_model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Default Anthropic model for analysis tools",
    )
    ai_max_retries: int = Field(
        default=2,
        description="SDK-level retries for transient Anthropic failures",
    )
    ai_timeout_seconds: float = Field(
        default=60.0,
        description="Timeout for a single Anthropic request",
    )

    # -------------------------------------------------------------------------
    # Helicone Observability
    # -------------------------------------------------------------------------
    helicone_api_key: Optional[str] = Field(
        default=None,
        description="Helicone API key for LLM observability",
    )
    helicone_enabled: bool = Field(
        default=False,
        description="Enable Helicone LLM request logging",
    )

    # -------------------------------------------------------------------------
    # CORS
    # -------------------------------------------------------------------------
    allowed_origins: List[str] = Field(
        default_factory=list,
        description="Allowed CORS origins. If empty, defaults to localhost:3000.",
    )

    # -------------------------------------------------------------------------
    # Observability - Sentry
    # -------------------------------------------------------------------------
    sentry_dsn: Optional[str] = Field(
        default=None,
        description="Sentry DSN for error tracking",
    )
    git_commit: Optional[str] = Field(
        default=None,
        description="Git commit SHA used as the Sentry release",
    )

    # -------------------------------------------------------------------------
    # Observability - OpenTelemetry
    # -------------------------------------------------------------------------
    otel_enabled: bool = Field(
        default=False,
        description="Enable OpenTelemetry tracing and metrics",
    )
    otel_service_name: str = Field(
        default="genealogy-access-api",
        description="service.name resource attribute",
    )
    otel_exporter_otlp_endpoint: Optional[str] = Field(
        default=None,
        description="OTLP collector endpoint; console exporter when unset",
    )
    otel_exporter_otlp_protocol: str = Field(
        default="http/protobuf",
        description="OTLP protocol: grpc or http/protobuf",
    )
    otel_traces_sample_rate: float = Field(
        default=1.0,
        description="Trace sampling ratio between 0 and 1",
    )
    otel_metrics_export_interval_ms: int = Field(
        default=60000,
        description="Metric export interval in milliseconds",
    )
    otel_log_correlation: bool = Field(
        default=True,
        description="Inject trace ids into log records",
    )

    # -------------------------------------------------------------------------
    # Internal API
    # -------------------------------------------------------------------------
    internal_api_key: Optional[str] = Field(
        default=None,
        description="Shared secret for internal maintenance endpoints",
    )

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, v: Union[str, List[str], None]) -> List[str]:
        """Accept JSON array, comma-separated string, or list."""
        if v is None:
            return []
        if isinstance(v, list):
            return v
        v = v.strip()
        if not v:
            return []
        if v.startswith("["):
            return json.loads(v)
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is a valid value."""
        valid_environments = {"development", "staging", "production", "test"}
        if v.lower() not in valid_environments:
            raise ValueError(
                f"Invalid environment '{v}'. Must be one of: {valid_environments}"
            )
        return v.lower()

    @field_validator("rate_limit_endpoints")
    @classmethod
    def validate_rate_limit_endpoints(cls, v: Dict[str, List[int]]) -> Dict[str, List[int]]:
        """Each endpoint rule must be [max_requests, window_seconds], both positive."""
        for prefix, rule in v.items():
            if len(rule) != 2 or rule[0] <= 0 or rule[1] <= 0:
                raise ValueError(
                    f"Invalid rate limit for '{prefix}': expected [max_requests, window_seconds]"
                )
        return v

    # -------------------------------------------------------------------------
    # Helper Properties
    # -------------------------------------------------------------------------
    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def is_test(self) -> bool:
        """Check if running in test environment."""
        return self.environment == "test"

    @property
    def allowed_origins_list(self) -> List[str]:
        return self.allowed_origins or ["http://localhost:3000"]

    @property
    def anon_cookie_max_age_seconds(self) -> int:
        return self.anon_cookie_max_age_days * 24 * 60 * 60


@lru_cache
def get_settings() -> Settings:
    """
    Settings built from the process environment, cached for the process lifetime.

    Tests build Settings directly instead (see tests/conftest.py).

    Returns:
        Settings: Application settings instance
    """
    return Settings()
