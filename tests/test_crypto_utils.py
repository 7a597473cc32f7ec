"""Tests for the anonymous identity cookie codec."""

import time

from cryptography.fernet import Fernet

from backend.crypto_utils import AnonymousTokenCodec


class TestAnonymousTokenCodec:
    def test_round_trip(self):
        codec = AnonymousTokenCodec("passphrase", max_age_seconds=3600)
        token = codec.encode("abc123")
        assert token != "abc123"
        assert codec.decode(token) == "abc123"

    def test_accepts_real_fernet_key(self):
        key = Fernet.generate_key().decode()
        codec = AnonymousTokenCodec(key, max_age_seconds=3600)
        assert codec.decode(codec.encode("k")) == "k"

    def test_token_from_other_secret_is_rejected(self):
        token = AnonymousTokenCodec("secret-a", 3600).encode("abc")
        assert AnonymousTokenCodec("secret-b", 3600).decode(token) is None

    def test_tampered_token_is_rejected(self):
        codec = AnonymousTokenCodec("passphrase", 3600)
        token = codec.encode("abc")
        tampered = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")
        assert codec.decode(tampered) is None

    def test_garbage_is_rejected(self):
        codec = AnonymousTokenCodec("passphrase", 3600)
        assert codec.decode("not-a-token") is None
        assert codec.decode("") is None
        assert codec.decode(None) is None

    def test_expired_token_is_rejected(self):
        codec = AnonymousTokenCodec("passphrase", max_age_seconds=60)
        token = codec.cipher.encrypt_at_time(b"anon:abc", int(time.time()) - 120).decode()
        assert codec.decode(token) is None

    def test_token_without_prefix_is_rejected(self):
        """A valid Fernet token that wasn't minted by encode() is not an identity."""
        codec = AnonymousTokenCodec("passphrase", 3600)
        foreign = codec.cipher.encrypt(b"user:123").decode()
        assert codec.decode(foreign) is None
