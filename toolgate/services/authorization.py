"""
Authorization Flow - OAuth 2.1 authorization-code grant with PKCE.

States: REQUESTED -> PENDING_DECISION -> APPROVED -> CODE_ISSUED -> CONSUMED,
or DENIED / EXPIRED. Every transition that must happen at most once is an
atomic store primitive:
- a pending authorization handle is consumed with pop()
- an authorization code is consumed with compare_and_set() on its flag
- a rotated refresh token is retired with compare_and_set()

SECURITY: codes and refresh tokens are stored under their SHA-256 hash;
client secrets are argon2 hashes (see ClientRegistry).
"""

import base64
import hashlib
import hmac
import secrets
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from toolgate.exceptions import (
    InvalidGrantError,
    InvalidRequestError,
    InvalidScopeError,
    UnauthorizedClientError,
    UnsupportedResponseTypeError,
)
from toolgate.models.domain import TokenGrant
from toolgate.models.records import (
    AuthorizationCodeRecord,
    ClientRecord,
    PendingAuthorization,
    RefreshTokenRecord,
)
from toolgate.observability.logging import get_logger, redact
from toolgate.observability.metrics import metrics
from toolgate.services.client_registry import ClientRegistry
from toolgate.services.token_codec import TokenCodec, hash_token
from toolgate.stores.kv import KeyValueStore

logger = get_logger(__name__)

PENDING_PREFIX = "pending:"
CODE_PREFIX = "code:"
REFRESH_PREFIX = "refresh:"
MAX_CAS_ATTEMPTS = 16


def compute_code_challenge(code_verifier: str) -> str:
    """S256 transform: base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def verify_pkce(code_verifier: str, code_challenge: str) -> bool:
    """Constant-time check that the verifier hashes to the stored challenge."""
    expected = compute_code_challenge(code_verifier).encode("utf-8")
    return hmac.compare_digest(expected, code_challenge.encode("utf-8"))


def append_query(url: str, **params: str | None) -> str:
    """Add query parameters to a redirect URI, keeping any it already has."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((name, value) for name, value in params.items() if value is not None)
    return urlunsplit(parts._replace(query=urlencode(query)))


class AuthorizationService:
    """Issues and redeems authorization codes and refresh tokens."""

    def __init__(
        self,
        store: KeyValueStore,
        clients: ClientRegistry,
        codec: TokenCodec,
        access_token_ttl_seconds: int = 3600,
        refresh_token_ttl_days: int = 30,
        authorization_code_ttl_seconds: int = 600,
        pending_authorization_ttl_seconds: int = 600,
        rotate_refresh_tokens: bool = False,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.store = store
        self.clients = clients
        self.codec = codec
        self.access_token_ttl_seconds = access_token_ttl_seconds
        self.refresh_token_ttl = timedelta(days=refresh_token_ttl_days)
        self.code_ttl = timedelta(seconds=authorization_code_ttl_seconds)
        self.pending_ttl = timedelta(seconds=pending_authorization_ttl_seconds)
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self._clock = clock

    # ========================================================================
    # Authorization request and user decision
    # ========================================================================

    async def begin(
        self,
        response_type: str | None,
        client_id: str | None,
        redirect_uri: str | None,
        code_challenge: str | None,
        code_challenge_method: str | None = "S256",
        scope: str | None = None,
        state: str | None = None,
    ) -> PendingAuthorization:
        """
        Validate an authorization request and park it for the user's decision.

        Raises:
            UnsupportedResponseTypeError: response_type is not "code"
            InvalidRequestError: missing parameter, non-S256 challenge method,
                unknown client or unregistered redirect_uri
        """
        if response_type != "code":
            raise UnsupportedResponseTypeError("Only response_type=code is supported")

        missing = [
            name
            for name, value in (
                ("client_id", client_id),
                ("redirect_uri", redirect_uri),
                ("code_challenge", code_challenge),
            )
            if not value
        ]
        if missing:
            raise InvalidRequestError(f"Missing required parameter(s): {', '.join(missing)}")

        method = code_challenge_method or "S256"
        if method != "S256":
            raise InvalidRequestError("Only S256 code_challenge_method is supported")

        await self._registered_client(client_id, redirect_uri)  # type: ignore[arg-type]

        now = self._clock()
        pending = PendingAuthorization(
            handle=secrets.token_hex(16),
            client_id=client_id,  # type: ignore[arg-type]
            redirect_uri=redirect_uri,  # type: ignore[arg-type]
            state=state,
            code_challenge=code_challenge,  # type: ignore[arg-type]
            code_challenge_method=method,
            scopes=scope.split() if scope else self.clients.default_scopes,
            created_at=now,
            expires_at=now + self.pending_ttl,
        )
        await self.store.set(
            f"{PENDING_PREFIX}{pending.handle}",
            pending.model_dump_json(),
            ttl_seconds=self.pending_ttl.total_seconds(),
        )
        logger.info(
            "authorization_pending",
            client_id=client_id,
            handle=redact(pending.handle),
            scopes=pending.scopes,
        )
        return pending

    async def _registered_client(self, client_id: str, redirect_uri: str) -> ClientRecord:
        """
        Resolve the client and match redirect_uri exactly against its registration.

        These failures are reported to the user agent, never redirected: an
        unmatched redirect_uri is not trusted with even an error response.
        """
        client = await self.clients.get(client_id)
        if client is None or client.revoked:
            raise InvalidRequestError("Unknown or revoked client_id")
        if redirect_uri not in client.redirect_uris:
            raise InvalidRequestError("redirect_uri is not registered for this client")
        return client

    async def get_pending(self, handle: str) -> PendingAuthorization | None:
        raw = await self.store.get(f"{PENDING_PREFIX}{handle}")
        return PendingAuthorization.model_validate_json(raw) if raw else None

    async def decide(self, handle: str, principal: str, approved: bool) -> str:
        """
        Record the user's decision and return the client redirect URL.

        The handle is consumed whatever the outcome; a second decision on
        the same handle fails as expired.

        Raises:
            InvalidRequestError: unknown/expired handle, unknown or revoked client,
                unregistered redirect_uri
            UnauthorizedClientError: client owned by someone else
            InvalidScopeError: nothing requested is grantable to this client
        """
        raw = await self.store.pop(f"{PENDING_PREFIX}{handle}")
        if raw is None:
            raise InvalidRequestError(
                "Authorization request is unknown or has expired; restart the flow"
            )
        pending = PendingAuthorization.model_validate_json(raw)
        # Checked again: the client may have been revoked or edited since begin().
        client = await self._registered_client(pending.client_id, pending.redirect_uri)

        if not approved:
            metrics.authorization_decisions_total.labels(outcome="denied").inc()
            logger.info("authorization_denied", client_id=pending.client_id, principal=principal)
            return append_query(pending.redirect_uri, error="access_denied", state=pending.state)

        if client.dynamic and client.owner is None:
            await self.clients.assign_owner_if_unset(client.client_id, principal)
            client = await self.clients.get(pending.client_id)

        if client is None or client.owner != principal:
            metrics.authorization_decisions_total.labels(outcome="owner_mismatch").inc()
            logger.warning(
                "authorization_owner_mismatch", client_id=pending.client_id, principal=principal
            )
            raise UnauthorizedClientError("Client is registered to a different user")

        granted = [s for s in pending.scopes if s in client.scopes]
        if not granted:
            raise InvalidScopeError("None of the requested scopes are allowed for this client")

        code = secrets.token_urlsafe(32)
        now = self._clock()
        record = AuthorizationCodeRecord(
            principal=principal,
            client_id=client.client_id,
            redirect_uri=pending.redirect_uri,
            code_challenge=pending.code_challenge,
            code_challenge_method=pending.code_challenge_method,
            scopes=granted,
            created_at=now,
            expires_at=now + self.code_ttl,
        )
        await self.store.set(
            f"{CODE_PREFIX}{hash_token(code)}",
            record.model_dump_json(),
            ttl_seconds=self.code_ttl.total_seconds(),
        )
        metrics.authorization_decisions_total.labels(outcome="approved").inc()
        logger.info(
            "authorization_code_issued",
            client_id=client.client_id,
            principal=principal,
            scopes=granted,
        )
        return append_query(pending.redirect_uri, code=code, state=pending.state)

    # ========================================================================
    # Token endpoint grants
    # ========================================================================

    async def exchange_code(
        self,
        code: str | None,
        redirect_uri: str | None,
        client_id: str | None,
        client_secret: str | None,
        code_verifier: str | None,
    ) -> TokenGrant:
        """
        Redeem an authorization code for an access token and refresh token.

        Check order: client credentials, code consumption, client binding,
        ownership, redirect_uri, PKCE. The code is burned by the consumption
        step even if a later check fails.
        """
        missing = [
            name
            for name, value in (
                ("code", code),
                ("redirect_uri", redirect_uri),
                ("client_id", client_id),
                ("code_verifier", code_verifier),
            )
            if not value
        ]
        if missing:
            raise InvalidRequestError(f"Missing required parameter(s): {', '.join(missing)}")

        client = await self.clients.verify(client_id, client_secret)
        record = await self._consume_code(code)  # type: ignore[arg-type]

        if record.client_id != client.client_id:
            raise InvalidGrantError("Authorization code was issued to another client")
        if client.owner != record.principal:
            raise UnauthorizedClientError("Client is registered to a different user")
        if record.redirect_uri != redirect_uri:
            raise InvalidGrantError("redirect_uri does not match the authorization request")
        if not verify_pkce(code_verifier, record.code_challenge):  # type: ignore[arg-type]
            logger.warning("pkce_verification_failed", client_id=client.client_id)
            raise InvalidGrantError("PKCE verification failed")

        await self.clients.touch(client.client_id)
        refresh_token = await self._store_refresh_token(
            record.principal, client.client_id, record.scopes
        )
        grant = self._grant(record.principal, client.client_id, record.scopes, refresh_token)
        logger.info(
            "tokens_issued",
            grant_type="authorization_code",
            client_id=client.client_id,
            principal=record.principal,
        )
        return grant

    async def _consume_code(self, code: str) -> AuthorizationCodeRecord:
        key = f"{CODE_PREFIX}{hash_token(code)}"
        raw = await self.store.get(key)
        if raw is None:
            raise InvalidGrantError("Invalid or expired authorization code")

        record = AuthorizationCodeRecord.model_validate_json(raw)
        if record.consumed:
            logger.warning("authorization_code_replay", client_id=record.client_id)
            raise InvalidGrantError("Authorization code has already been used")
        if record.expires_at <= self._clock():
            raise InvalidGrantError("Authorization code has expired")

        consumed = record.model_copy(update={"consumed": True})
        if not await self.store.compare_and_set(key, raw, consumed.model_dump_json()):
            logger.warning("authorization_code_race_lost", client_id=record.client_id)
            raise InvalidGrantError("Authorization code has already been used")
        return record

    async def exchange_refresh(
        self, refresh_token: str | None, client_id: str | None, client_secret: str | None
    ) -> TokenGrant:
        """
        Issue a new access token from a refresh token.

        The refresh token is kept (not rotated) unless rotation is enabled,
        in which case the presented token is retired atomically and a new
        one is returned.
        """
        if not refresh_token:
            raise InvalidRequestError("Missing required parameter(s): refresh_token")

        client = await self.clients.verify(client_id, client_secret)

        key = f"{REFRESH_PREFIX}{hash_token(refresh_token)}"
        raw = await self.store.get(key)
        if raw is None:
            raise InvalidGrantError("Invalid refresh token")

        record = RefreshTokenRecord.model_validate_json(raw)
        now = self._clock()
        if record.revoked:
            logger.warning("revoked_refresh_token_rejected", client_id=client.client_id)
            raise InvalidGrantError("Refresh token has been revoked")
        if record.expires_at <= now:
            raise InvalidGrantError("Refresh token has expired")
        if record.client_id != client.client_id:
            raise InvalidGrantError("Refresh token was issued to another client")
        if client.owner != record.principal:
            raise UnauthorizedClientError("Client is registered to a different user")

        new_refresh_token: str | None = None
        if self.rotate_refresh_tokens:
            retired = record.model_copy(update={"revoked": True, "last_used_at": now})
            if not await self.store.compare_and_set(key, raw, retired.model_dump_json()):
                raise InvalidGrantError("Refresh token has already been used")
            new_refresh_token = await self._store_refresh_token(
                record.principal, client.client_id, record.scopes
            )
        else:
            touched = record.model_copy(update={"last_used_at": now})
            await self.store.compare_and_set(key, raw, touched.model_dump_json())

        logger.info(
            "tokens_issued",
            grant_type="refresh_token",
            client_id=client.client_id,
            principal=record.principal,
            rotated=new_refresh_token is not None,
        )
        return self._grant(record.principal, client.client_id, record.scopes, new_refresh_token)

    def _grant(
        self, principal: str, client_id: str, scopes: list[str], refresh_token: str | None
    ) -> TokenGrant:
        access_token = self.codec.sign(
            subject=principal,
            scopes=scopes,
            client_id=client_id,
            ttl_seconds=self.access_token_ttl_seconds,
        )
        return TokenGrant(
            access_token=access_token,
            expires_in=self.access_token_ttl_seconds,
            scopes=tuple(scopes),
            refresh_token=refresh_token,
        )

    async def _store_refresh_token(self, principal: str, client_id: str, scopes: list[str]) -> str:
        token = secrets.token_urlsafe(32)
        now = self._clock()
        record = RefreshTokenRecord(
            token_hash=hash_token(token),
            principal=principal,
            client_id=client_id,
            scopes=scopes,
            created_at=now,
            expires_at=now + self.refresh_token_ttl,
        )
        await self.store.set(
            f"{REFRESH_PREFIX}{record.token_hash}",
            record.model_dump_json(),
            ttl_seconds=self.refresh_token_ttl.total_seconds(),
        )
        return token

    # ========================================================================
    # Revocation
    # ========================================================================

    async def revoke_refresh_token(
        self, token: str | None, client_id: str | None, client_secret: str | None
    ) -> None:
        """
        RFC 7009 revocation. Succeeds silently for unknown tokens and for
        tokens that belong to another client.
        """
        client = await self.clients.verify(client_id, client_secret)
        if not token:
            raise InvalidRequestError("Missing required parameter(s): token")
        revoked = await self._revoke_refresh_key(
            f"{REFRESH_PREFIX}{hash_token(token)}", client.client_id
        )
        if revoked:
            logger.info("refresh_token_revoked", client_id=client.client_id)

    async def revoke_client(self, owner: str, client_id: str) -> bool:
        """Revoke a client and every refresh token issued to it."""
        if not await self.clients.revoke(owner, client_id):
            return False
        revoked_count = 0
        for key, raw in await self.store.scan(REFRESH_PREFIX):
            if RefreshTokenRecord.model_validate_json(raw).client_id != client_id:
                continue
            if await self._revoke_refresh_key(key, client_id):
                revoked_count += 1
        logger.info("client_tokens_revoked", client_id=client_id, refresh_tokens=revoked_count)
        return True

    async def _revoke_refresh_key(self, key: str, client_id: str) -> bool:
        for _ in range(MAX_CAS_ATTEMPTS):
            raw = await self.store.get(key)
            if raw is None:
                return False
            record = RefreshTokenRecord.model_validate_json(raw)
            if record.client_id != client_id or record.revoked:
                return False
            revoked = record.model_copy(update={"revoked": True})
            if await self.store.compare_and_set(key, raw, revoked.model_dump_json()):
                return True
        return False
