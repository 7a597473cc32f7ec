"""HTTP side of the access gate.

Every tool endpoint takes an AccessGuard and calls ``require()`` as its
first statement. Route dependencies run before FastAPI validates the body,
so the gate is evaluated inside the handler and a malformed request never
reserves quota. Denials are raised as AccessDeniedError and rendered by the
exception handler registered in backend.main.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import Depends
from fastapi.responses import JSONResponse, Response

from api.deps import get_access_gate, get_gate_request
from application.models import AccessDecision, AnalysisType, CookieInstruction, ErrorCode, UsageCheck
from backend.services.access_gate import AccessGate, GateRequest

logger = logging.getLogger(__name__)

SERVICE_UNAVAILABLE_MESSAGE = "Service temporarily unavailable. Please try again in a moment."

STATUS_BY_ERROR_CODE = {
    ErrorCode.SIGNUP_REQUIRED: 401,
    ErrorCode.UPGRADE_REQUIRED: 402,
    ErrorCode.RATE_LIMITED: 429,
}


class AccessDeniedError(Exception):
    """Carries a denied AccessDecision out of a route."""

    def __init__(self, decision: AccessDecision):
        super().__init__(decision.error or "Access denied")
        self.decision = decision


class AccessGuard:
    """The access gate bound to the current request.

    Usage:
        @router.post("/document/analyze")
        async def analyze(body: DocumentAnalyzeRequest, guard: AccessGuard = Depends(get_access_guard)):
            decision = await guard.require(AnalysisType.DOCUMENT)
            ...
    """

    def __init__(self, gate: AccessGate, request: GateRequest):
        self._gate = gate
        self._request = request

    async def require(self, analysis_type: AnalysisType) -> AccessDecision:
        """Evaluate the gate, raising AccessDeniedError on denial."""
        decision = await self._gate.evaluate(self._request, analysis_type)
        if not decision.allowed:
            raise AccessDeniedError(decision)
        return decision


def get_access_guard(
    gate_request: GateRequest = Depends(get_gate_request),
    gate: AccessGate = Depends(get_access_gate),
) -> AccessGuard:
    return AccessGuard(gate, gate_request)


# =============================================================================
# Response builders
# =============================================================================


def apply_cookie(response: Response, instruction: Optional[CookieInstruction]) -> None:
    if instruction is None:
        return
    response.set_cookie(
        key=instruction.name,
        value=instruction.value,
        max_age=instruction.max_age,
        path=instruction.path,
        secure=instruction.secure,
        httponly=instruction.http_only,
        samesite=instruction.same_site,
    )


def apply_usage_headers(response: Response, usage: Optional[UsageCheck]) -> None:
    if usage is None:
        return
    response.headers["X-Usage-Current"] = str(usage.current_usage)
    response.headers["X-Usage-Limit"] = str(usage.limit)
    response.headers["X-Usage-Remaining"] = str(usage.remaining)


def _usage_payload(decision: AccessDecision) -> Optional[Dict[str, Any]]:
    return decision.usage.to_payload() if decision.usage is not None else None


def success_response(decision: AccessDecision, body: Dict[str, Any]) -> JSONResponse:
    """Tool payload plus usage, identity and tier metadata."""
    content = {
        **body,
        "usage": _usage_payload(decision),
        "identity": decision.identity.to_payload(),
        "isFreeTier": decision.is_free_tier,
    }
    if decision.usage is not None:
        content["warningThreshold"] = decision.usage.warning_threshold
    response = JSONResponse(status_code=200, content=content)
    apply_usage_headers(response, decision.usage)
    apply_cookie(response, decision.anon_cookie)
    return response


def denial_response(decision: AccessDecision) -> JSONResponse:
    """401 signup / 402 upgrade / 429 rate limited."""
    status_code = STATUS_BY_ERROR_CODE.get(decision.error_code, 403)
    content: Dict[str, Any] = {
        "error": decision.error,
        "errorCode": decision.error_code.value if decision.error_code else None,
        "usage": _usage_payload(decision),
        "identity": decision.identity.to_payload(),
        "isFreeTier": decision.is_free_tier,
        "upgradeMessage": decision.upgrade_message,
    }
    headers: Dict[str, str] = {}
    if decision.error_code == ErrorCode.RATE_LIMITED and decision.retry_after_seconds is not None:
        content["retryAfter"] = decision.retry_after_seconds
        content["scope"] = decision.rate_limit_scope
        headers["Retry-After"] = str(decision.retry_after_seconds)

    response = JSONResponse(status_code=status_code, content=content, headers=headers)
    apply_usage_headers(response, decision.usage)
    apply_cookie(response, decision.anon_cookie)
    return response


def service_unavailable_response(retry_after_seconds: Optional[int] = None) -> JSONResponse:
    """Generic 503. Internal detail stays in the logs."""
    headers = {"Retry-After": str(retry_after_seconds)} if retry_after_seconds else None
    return JSONResponse(
        status_code=503,
        content={
            "error": SERVICE_UNAVAILABLE_MESSAGE,
            "errorCode": ErrorCode.SERVICE_UNAVAILABLE.value,
            "retry": True,
        },
        headers=headers,
    )
