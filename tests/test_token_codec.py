"""
Tests for the Token Codec.

Tests signing, audience pinning, expiry and failure reasons.
"""

from datetime import UTC, datetime, timedelta

import jwt
import pytest

from toolgate.exceptions import TokenVerificationError
from toolgate.services.token_codec import TokenCodec, TokenFailure, hash_token

SECRET = "unit-test-secret-that-is-at-least-32-chars"
ISSUER = "https://gateway.example"


@pytest.fixture
def codec() -> TokenCodec:
    return TokenCodec(secret=SECRET, issuer=ISSUER, audience="mcp")


class TestSignAndVerify:
    """Tests for the happy path."""

    def test_round_trip_claims(self, codec):
        """verify returns the claims that were signed."""
        token = codec.sign("user-1", ["mcp:tools", "mcp:resources"], "client-1", 3600)
        claims = codec.verify(token)

        assert claims.subject == "user-1"
        assert claims.scopes == ("mcp:tools", "mcp:resources")
        assert claims.client_id == "client-1"
        assert claims.issuer == ISSUER
        assert claims.audience == "mcp"
        assert claims.token_type == "access"
        assert claims.expires_at - claims.issued_at == timedelta(seconds=3600)

    def test_token_is_hs256(self, codec):
        token = codec.sign("user-1", [], None, 60)
        assert jwt.get_unverified_header(token)["alg"] == "HS256"

    def test_empty_scope(self, codec):
        token = codec.sign("user-1", [], None, 60)
        assert codec.verify(token).scopes == ()


class TestRejections:
    """Tests for each failure reason."""

    def _reason(self, codec: TokenCodec, token: str, **kwargs) -> str:
        with pytest.raises(TokenVerificationError) as exc_info:
            codec.verify(token, **kwargs)
        return exc_info.value.reason

    def test_expired(self):
        """Tokens past exp are rejected as expired."""
        past = datetime.now(UTC) - timedelta(hours=2)
        old_codec = TokenCodec(SECRET, ISSUER, "mcp", clock=lambda: past)
        token = old_codec.sign("user-1", ["mcp:tools"], None, 60)

        fresh_codec = TokenCodec(SECRET, ISSUER, "mcp")
        assert self._reason(fresh_codec, token) == TokenFailure.EXPIRED.value

    def test_wrong_audience_rejected_even_when_otherwise_valid(self, codec):
        """Audience pinning: a console token never passes as a resource token."""
        token = codec.sign("user-1", ["mcp:tools"], None, 60, audience="console")
        assert self._reason(codec, token) == TokenFailure.BAD_AUDIENCE.value

    def test_bad_signature(self, codec):
        other = TokenCodec("another-secret-that-is-at-least-32-chars", ISSUER, "mcp")
        token = other.sign("user-1", ["mcp:tools"], None, 60)
        assert self._reason(codec, token) == TokenFailure.BAD_SIGNATURE.value

    def test_foreign_issuer_reported_as_bad_signature(self, codec):
        other = TokenCodec(SECRET, "https://elsewhere.example", "mcp")
        token = other.sign("user-1", ["mcp:tools"], None, 60)
        assert self._reason(codec, token) == TokenFailure.BAD_SIGNATURE.value

    def test_wrong_type(self, codec):
        token = codec.sign("user-1", [], None, 60, token_type="session")
        assert self._reason(codec, token) == TokenFailure.WRONG_TYPE.value

    def test_session_token_verifies_with_session_type(self, codec):
        token = codec.sign("user-1", [], None, 60, audience="console", token_type="session")
        claims = codec.verify(token, audience="console", token_type="session")
        assert claims.subject == "user-1"

    def test_garbage_is_malformed(self, codec):
        assert self._reason(codec, "not-a-jwt") == TokenFailure.MALFORMED.value

    def test_missing_required_claim_is_malformed(self, codec):
        now = int(datetime.now(UTC).timestamp())
        token = jwt.encode(
            {"sub": "user-1", "aud": "mcp", "iss": ISSUER, "exp": now + 60, "iat": now},
            SECRET,
            algorithm="HS256",
        )
        assert self._reason(codec, token) == TokenFailure.MALFORMED.value

    def test_none_algorithm_rejected(self, codec):
        now = int(datetime.now(UTC).timestamp())
        token = jwt.encode(
            {
                "sub": "user-1",
                "aud": "mcp",
                "iss": ISSUER,
                "exp": now + 60,
                "iat": now,
                "type": "access",
            },
            None,
            algorithm="none",
        )
        with pytest.raises(TokenVerificationError):
            codec.verify(token)


class TestHashToken:
    """Tests for the storage hash of opaque secrets."""

    def test_sha256_hex(self):
        digest = hash_token("abc")
        assert len(digest) == 64
        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    def test_distinct_inputs(self):
        assert hash_token("a") != hash_token("b")
