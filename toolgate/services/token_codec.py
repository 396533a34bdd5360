"""
Token Codec - signs and verifies compact bearer tokens (HS256 JWT).

Claims: {sub, scope, client_id, iss, aud, exp, iat, type}. Verification
pins issuer and audience: a token minted for another audience (for
example a console session token) never passes as a resource access token.
"""

import hashlib
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import Enum

import jwt

from toolgate.exceptions import TokenVerificationError
from toolgate.models.domain import TokenClaims
from toolgate.observability.logging import get_logger

logger = get_logger(__name__)

REQUIRED_CLAIMS = ["sub", "aud", "iss", "exp", "iat", "type"]


class TokenFailure(str, Enum):
    """Why a token was rejected."""

    EXPIRED = "expired"
    BAD_SIGNATURE = "bad_signature"
    BAD_AUDIENCE = "bad_audience"
    WRONG_TYPE = "wrong_type"
    MALFORMED = "malformed"


def hash_token(token: str) -> str:
    """SHA-256 hex digest used as the storage key for opaque secrets."""
    return hashlib.sha256(token.encode()).hexdigest()


class TokenCodec:
    """HS256 signer/verifier bound to one issuer and one default audience."""

    def __init__(
        self,
        secret: str,
        issuer: str,
        audience: str,
        algorithm: str = "HS256",
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._secret = secret
        self.issuer = issuer
        self.audience = audience
        self._algorithm = algorithm
        self._clock = clock

    def sign(
        self,
        subject: str,
        scopes: list[str] | tuple[str, ...],
        client_id: str | None,
        ttl_seconds: int,
        audience: str | None = None,
        token_type: str = "access",
    ) -> str:
        """Mint a token valid for ttl_seconds from now."""
        now = self._clock()
        payload: dict[str, str | int | None] = {
            "sub": subject,
            "scope": " ".join(scopes),
            "client_id": client_id,
            "iss": self.issuer,
            "aud": audience or self.audience,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
            "type": token_type,
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def verify(
        self, token: str, audience: str | None = None, token_type: str = "access"
    ) -> TokenClaims:
        """
        Verify signature, issuer, audience, expiry and token type.

        Raises:
            TokenVerificationError: reason is a TokenFailure value
        """
        expected_audience = audience or self.audience
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                audience=expected_audience,
                issuer=self.issuer,
                options={"require": REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenVerificationError(TokenFailure.EXPIRED.value) from e
        except jwt.InvalidAudienceError as e:
            raise TokenVerificationError(TokenFailure.BAD_AUDIENCE.value) from e
        except (jwt.InvalidSignatureError, jwt.InvalidIssuerError) as e:
            # A foreign issuer means the token was not minted here.
            raise TokenVerificationError(TokenFailure.BAD_SIGNATURE.value) from e
        except jwt.InvalidTokenError as e:
            logger.debug("token_malformed", error=str(e))
            raise TokenVerificationError(TokenFailure.MALFORMED.value) from e

        if payload.get("type") != token_type:
            raise TokenVerificationError(TokenFailure.WRONG_TYPE.value)

        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise TokenVerificationError(TokenFailure.MALFORMED.value)

        scope = payload.get("scope") or ""
        return TokenClaims(
            subject=subject,
            scopes=tuple(scope.split()),
            client_id=payload.get("client_id"),
            issuer=payload["iss"],
            audience=expected_audience,
            token_type=payload["type"],
            issued_at=datetime.fromtimestamp(payload["iat"], UTC),
            expires_at=datetime.fromtimestamp(payload["exp"], UTC),
        )
