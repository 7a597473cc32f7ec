"""Usage summary for the calling identity.

GET /api/usage/current - tier and current-month usage per analysis type
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from api.access import apply_cookie
from api.deps import get_gate_request, get_identity_resolver, get_usage_ledger
from backend.services.access_gate import GateRequest
from backend.services.identity_resolver import IdentityResolver
from backend.services.usage_ledger import UsageLedger

router = APIRouter(prefix="/api/usage", tags=["Usage"])


@router.get("/current")
async def current_usage(
    gate_request: GateRequest = Depends(get_gate_request),
    resolver: IdentityResolver = Depends(get_identity_resolver),
    ledger: UsageLedger = Depends(get_usage_ledger),
):
    """Not rate limited. Never reserves quota or records a new visitor."""
    resolution = resolver.resolve(gate_request.anon_cookie, gate_request.user_id)
    summary = await ledger.get_usage_summary(resolution.identity)
    response = JSONResponse(content=summary)
    apply_cookie(response, resolution.set_cookie)
    return response
