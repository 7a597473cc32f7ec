"""Signed, encrypted tokens for the anonymous identity cookie."""

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

ANON_TOKEN_PREFIX = "anon:"


class AnonymousTokenCodec:
    """Encodes anonymous keys into opaque Fernet tokens and back.

    Fernet authenticates and timestamps every token, so a tampered or
    expired cookie simply fails to decode.
    """

    def __init__(self, secret: str, max_age_seconds: int):
        """
        Args:
            secret: Either a base64 encoded 32-byte Fernet key or any passphrase.
            max_age_seconds: Tokens older than this are rejected.
        """
        key_bytes = secret.encode() if isinstance(secret, str) else secret
        try:
            self.cipher = Fernet(key_bytes)
        except ValueError:
            # Not a Fernet key: derive one from the passphrase
            self.cipher = Fernet(base64.urlsafe_b64encode(hashlib.sha256(key_bytes).digest()))
        self._max_age = max_age_seconds

    def encode(self, anon_key: str) -> str:
        """Wrap an anonymous key into a cookie-safe token."""
        return self.cipher.encrypt(f"{ANON_TOKEN_PREFIX}{anon_key}".encode()).decode()

    def decode(self, token: Optional[str]) -> Optional[str]:
        """Return the anonymous key, or None if the token is missing, forged or expired."""
        if not token:
            return None
        try:
            plaintext = self.cipher.decrypt(token.encode(), ttl=self._max_age).decode()
        except (InvalidToken, UnicodeError, ValueError):
            return None
        if not plaintext.startswith(ANON_TOKEN_PREFIX):
            return None
        anon_key = plaintext[len(ANON_TOKEN_PREFIX):]
        return anon_key or None
