"""
FastAPI dependency providers.

Services live on the ServiceContainer built once at startup
(``app.state.container``); these functions hand them to route handlers.
"""

from typing import Optional

from fastapi import Depends, HTTPException, Request

from application.use_cases.run_analysis import RunAnalysisUseCase
from backend.auth import get_optional_user
from backend.container import ServiceContainer
from backend.services.access_gate import AccessGate, GateRequest
from backend.services.ai_client import AIServiceError
from backend.services.identity_resolver import IdentityResolver
from backend.services.resilience import ResilientDataAccess
from backend.services.usage_ledger import UsageLedger
from backend.settings import Settings


# =============================================================================
# Settings / Container
# =============================================================================


def get_settings(request: Request) -> Settings:
    """Settings the app was created with."""
    return request.app.state.settings


def get_container(request: Request) -> ServiceContainer:
    """
    Get the service container.

    Raises:
        HTTPException: 503 if startup has not built the container
    """
    container: Optional[ServiceContainer] = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return container


# =============================================================================
# Service Providers
# =============================================================================


def get_access_gate(container: ServiceContainer = Depends(get_container)) -> AccessGate:
    return container.access_gate


def get_usage_ledger(container: ServiceContainer = Depends(get_container)) -> UsageLedger:
    return container.usage_ledger


def get_identity_resolver(container: ServiceContainer = Depends(get_container)) -> IdentityResolver:
    return container.identity_resolver


def get_data_access(container: ServiceContainer = Depends(get_container)) -> ResilientDataAccess:
    return container.data_access


def get_analysis_use_case(container: ServiceContainer = Depends(get_container)) -> RunAnalysisUseCase:
    """
    Raises:
        AIServiceError: No AI provider is configured
    """
    if container.analysis is None:
        raise AIServiceError("AI service not configured", "not_configured")
    return container.analysis


# =============================================================================
# Request Context
# =============================================================================


def client_ip(request: Request, trusted_proxy_hops: Optional[int] = None) -> str:
    """Client address used as the IP rate limit key.

    With ``trusted_proxy_hops`` unset the first X-Forwarded-For hop wins, then
    X-Real-IP, then the socket peer. Each trusted proxy appends the address it
    saw, so with N proxies the client is the N-th entry from the right and
    anything to its left is client-supplied. 0 ignores forwarding headers.
    """
    peer = request.client.host if request.client and request.client.host else "unknown"
    if trusted_proxy_hops == 0:
        return peer

    forwarded = request.headers.get("x-forwarded-for")
    hops = [hop.strip() for hop in forwarded.split(",")] if forwarded else []
    hops = [hop for hop in hops if hop]
    if hops:
        if trusted_proxy_hops is None or len(hops) < trusted_proxy_hops:
            return hops[0]
        return hops[-trusted_proxy_hops]

    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return peer


def get_gate_request(
    request: Request,
    user_id: Optional[str] = Depends(get_optional_user),
    settings: Settings = Depends(get_settings),
) -> GateRequest:
    return GateRequest(
        ip=client_ip(request, settings.trusted_proxy_hops),
        path=request.url.path,
        anon_cookie=request.cookies.get(settings.anon_cookie_name),
        user_id=user_id,
        user_agent=request.headers.get("user-agent"),
    )
