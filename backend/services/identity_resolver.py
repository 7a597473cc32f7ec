"""Resolve an inbound request to a stable quota identity.

Authenticated callers map to ``user-<id>``. Everyone else is tracked by an
anonymous key carried in a signed cookie; a new key is minted when the
cookie is absent or fails verification, and the resolution tells the HTTP
layer to set it.

resolve() does no I/O. Recording a visitor is a separate, best-effort step
(record_visit) that the access gate takes only for requests it lets through.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from application.models import CookieInstruction, Identity
from application.ports import IdentityRepository
from backend.crypto_utils import AnonymousTokenCodec
from backend.services.resilience import ResilientDataAccess

logger = logging.getLogger(__name__)

ANON_KEY_BYTES = 16


@dataclass(frozen=True)
class IdentityResolution:
    identity: Identity
    set_cookie: Optional[CookieInstruction] = None

    @property
    def is_new_anonymous(self) -> bool:
        return self.set_cookie is not None


def generate_anon_key() -> str:
    """16 random bytes, URL-safe base64 without padding."""
    return secrets.token_urlsafe(ANON_KEY_BYTES)


class IdentityResolver:
    def __init__(
        self,
        codec: AnonymousTokenCodec,
        cookie_name: str,
        cookie_max_age_seconds: int,
        secure_cookie: bool,
        identity_repository: Optional[IdentityRepository] = None,
        data_access: Optional[ResilientDataAccess] = None,
    ):
        self._codec = codec
        self._cookie_name = cookie_name
        self._cookie_max_age = cookie_max_age_seconds
        self._secure_cookie = secure_cookie
        self._repo = identity_repository
        self._data_access = data_access

    @property
    def cookie_name(self) -> str:
        return self._cookie_name

    def decode_cookie(self, cookie_value: Optional[str]) -> Optional[Identity]:
        """Anonymous identity carried by a cookie value, or None if invalid."""
        anon_key = self._codec.decode(cookie_value)
        if anon_key is None:
            return None
        return Identity.for_anonymous(anon_key)

    def resolve(
        self,
        anon_cookie_value: Optional[str],
        authenticated_user_id: Optional[str] = None,
    ) -> IdentityResolution:
        if authenticated_user_id:
            return IdentityResolution(Identity.for_user(authenticated_user_id))

        identity = self.decode_cookie(anon_cookie_value)
        set_cookie = None
        if identity is None:
            if anon_cookie_value:
                logger.info("Discarding invalid anonymous identity cookie")
            identity = Identity.for_anonymous(generate_anon_key())
            set_cookie = CookieInstruction(
                name=self._cookie_name,
                value=self._codec.encode(identity.anon_key),
                max_age=self._cookie_max_age,
                secure=self._secure_cookie,
            )

        return IdentityResolution(identity, set_cookie)

    def clear_cookie(self) -> CookieInstruction:
        """Instruction that expires the anonymous cookie immediately."""
        return CookieInstruction(
            name=self._cookie_name,
            value="",
            max_age=0,
            secure=self._secure_cookie,
        )

    async def cleanup_expired_identities(self, older_than_days: int = 30) -> int:
        """Retire anonymous identities not seen for ``older_than_days``.

        Returns:
            Number of identities retired (0 when no repository is configured).
        """
        if self._repo is None:
            return 0
        before = datetime.now(timezone.utc) - timedelta(days=older_than_days)
        if self._data_access is None:
            retired = await self._repo.cleanup_expired(before)
        else:
            retired = await self._data_access.run(
                lambda: self._repo.cleanup_expired(before),
                operation_name="identity.cleanup_expired",
            )
        logger.info("Retired %d anonymous identities idle since %s", retired, before.isoformat())
        return retired

    async def record_visit(self, identity: Identity) -> None:
        """Create or refresh the anonymous identity record. Failures are logged, never raised."""
        if self._repo is None or not identity.is_anonymous:
            return
        if self._data_access is None:
            try:
                await self._repo.touch_anonymous(identity.identity_id)
            except Exception as e:
                logger.warning("Failed to record anonymous identity %s: %s", identity.identity_id, e)
            return

        result = await self._data_access.with_retry(
            lambda: self._repo.touch_anonymous(identity.identity_id),
            max_attempts=1,
            operation_name="identity.touch_anonymous",
        )
        if not result.ok:
            logger.warning(
                "Continuing without persisted anonymous identity %s (%s)",
                identity.identity_id,
                result.kind.value,
            )
