"""Bearer token authentication.

Tokens are HS256 JWTs issued by the account service; the ``sub`` claim is the
user id. Tool routes use get_optional_user, so a missing or invalid token
means "anonymous", never an error.
"""

import logging
from typing import Optional

import jwt
from fastapi import Header, HTTPException, Request

from backend.settings import Settings

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """The bearer token is missing, malformed, expired or has a bad signature."""


def decode_user_id(token: str, settings: Settings) -> str:
    """Verify a JWT and return its subject.

    Raises:
        AuthenticationError: Verification failed or auth is not configured.
    """
    if not settings.auth_jwt_secret:
        raise AuthenticationError("JWT secret not configured")

    options = {"require": ["sub", "exp"]}
    try:
        claims = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=["HS256"],
            audience=settings.auth_jwt_audience,
            options={**options, "verify_aud": settings.auth_jwt_audience is not None},
        )
    except jwt.PyJWTError as e:
        raise AuthenticationError(str(e)) from e

    user_id = str(claims.get("sub") or "")
    if not user_id:
        raise AuthenticationError("Token has no subject")
    return user_id


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_optional_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Optional[str]:
    """User id from a valid bearer token, otherwise None."""
    token = _bearer_token(authorization)
    if token is None:
        return None
    try:
        return decode_user_id(token, request.app.state.settings)
    except AuthenticationError as e:
        logger.info("Ignoring invalid bearer token: %s", e)
        return None


async def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> str:
    """User id from a valid bearer token. 401 otherwise."""
    token = _bearer_token(authorization)
    if token is None:
        raise HTTPException(status_code=401, detail="Missing authorization header")
    try:
        return decode_user_id(token, request.app.state.settings)
    except AuthenticationError as e:
        logger.info("Rejected bearer token: %s", e)
        raise HTTPException(status_code=401, detail="Invalid or expired token")
