"""Anonymous identity lifecycle.

POST /api/identity/merge             - fold the anonymous cookie's usage into the signed-in account
POST /internal/identities/cleanup    - retire anonymous identities idle for 30+ days
"""

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from api.access import apply_cookie
from api.deps import get_identity_resolver, get_settings, get_usage_ledger
from application.models import Identity
from backend.auth import get_current_user
from backend.services.identity_resolver import IdentityResolver
from backend.services.resilience import ServiceUnavailableError
from backend.services.usage_ledger import UsageLedger
from backend.settings import Settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Identity"])


@router.post("/api/identity/merge")
async def merge_anonymous_identity(
    request: Request,
    user_id: str = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    resolver: IdentityResolver = Depends(get_identity_resolver),
    ledger: UsageLedger = Depends(get_usage_ledger),
):
    """Called right after login or signup.

    Never fails the login flow: a merge error is logged and reported as
    ``merged: false``. The anonymous cookie is only cleared after a
    successful merge, so the client can retry a failed one.
    """
    anon_identity = resolver.decode_cookie(request.cookies.get(settings.anon_cookie_name))
    if anon_identity is None:
        return {"merged": False, "rowsMerged": 0}

    merged, rows = False, 0
    try:
        rows = await ledger.merge_anonymous(anon_identity, Identity.for_user(user_id))
        merged = True
    except (ServiceUnavailableError, ValueError) as e:
        logger.error("Failed to merge %s into user-%s: %s", anon_identity.identity_id, user_id, e)
    except Exception as e:
        logger.exception("Unexpected error merging %s into user-%s: %s", anon_identity.identity_id, user_id, e)

    response = JSONResponse(content={"merged": merged, "rowsMerged": rows})
    if merged:
        apply_cookie(response, resolver.clear_cookie())
    return response


@router.post("/internal/identities/cleanup")
async def cleanup_expired_identities(
    older_than_days: int = 30,
    x_internal_key: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
    resolver: IdentityResolver = Depends(get_identity_resolver),
):
    """Internal maintenance endpoint, guarded by the shared internal API key."""
    if not settings.internal_api_key or not x_internal_key or not secrets.compare_digest(
        x_internal_key, settings.internal_api_key
    ):
        raise HTTPException(status_code=401, detail="Invalid internal API key")
    if older_than_days < 1:
        raise HTTPException(status_code=422, detail="older_than_days must be at least 1")

    retired = await resolver.cleanup_expired_identities(older_than_days)
    return {"retired": retired, "olderThanDays": older_than_days}
