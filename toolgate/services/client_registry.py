"""
Client Registry - OAuth client records and credential verification.

Static clients are provisioned by a signed-in developer and owned from
birth. Dynamically registered clients start unowned and are claimed by
the first principal to authorize them; the claim is a single
compare-and-set so two concurrent first authorizations cannot both win.
"""

import secrets
from collections.abc import Callable
from datetime import UTC, datetime

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

from toolgate.exceptions import ConcurrencyError, InvalidClientError
from toolgate.models.domain import IssuedClient
from toolgate.models.records import ClientRecord
from toolgate.observability.logging import get_logger
from toolgate.observability.metrics import metrics
from toolgate.stores.kv import KeyValueStore

logger = get_logger(__name__)

CLIENT_PREFIX = "client:"
DYNAMIC_CLIENT_NAME = "Dynamic MCP Client"
MAX_CAS_ATTEMPTS = 16


class ClientRegistry:
    """Service for OAuth client management."""

    def __init__(
        self,
        store: KeyValueStore,
        supported_scopes: list[str],
        default_scopes: list[str],
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.store = store
        self.supported_scopes = supported_scopes
        self.default_scopes = default_scopes
        self._clock = clock
        self.password_hasher = PasswordHasher()
        # Unknown client ids still pay for one hash verification.
        self._decoy_hash = self.password_hasher.hash(secrets.token_urlsafe(32))

    @staticmethod
    def _key(client_id: str) -> str:
        return f"{CLIENT_PREFIX}{client_id}"

    def narrow_scopes(self, requested: list[str] | None) -> list[str]:
        """Keep supported scopes in request order, falling back to the defaults."""
        scopes = requested or self.default_scopes
        return [s for s in dict.fromkeys(scopes) if s in self.supported_scopes]

    async def _create(
        self, make_id: Callable[[], str], build: Callable[[str, str], ClientRecord]
    ) -> tuple[IssuedClient, ClientRecord]:
        secret = secrets.token_urlsafe(32)
        secret_hash = self.password_hasher.hash(secret)
        for _ in range(MAX_CAS_ATTEMPTS):
            client_id = make_id()
            record = build(client_id, secret_hash)
            if await self.store.set_if_absent(self._key(client_id), record.model_dump_json()):
                issued = IssuedClient(
                    client_id=client_id, client_secret=secret, issued_at=record.created_at
                )
                return issued, record
        raise ConcurrencyError("client id allocation")

    async def register_static(
        self,
        owner: str,
        name: str,
        scopes: list[str] | None = None,
        redirect_uris: list[str] | None = None,
    ) -> tuple[IssuedClient, ClientRecord]:
        """
        Provision a client owned by `owner`.

        Returns the plaintext secret exactly once; only its argon2 hash is stored.
        """
        now = self._clock()
        granted = self.narrow_scopes(scopes)

        def build(client_id: str, secret_hash: str) -> ClientRecord:
            return ClientRecord(
                client_id=client_id,
                secret_hash=secret_hash,
                owner=owner,
                name=name,
                scopes=granted,
                redirect_uris=redirect_uris or [],
                created_at=now,
            )

        issued, record = await self._create(
            lambda: f"mcp_{owner[:8]}_{secrets.token_hex(8)}", build
        )
        metrics.clients_registered_total.labels(kind="static").inc()
        logger.info("client_registered", client_id=record.client_id, owner=owner, dynamic=False)
        return issued, record

    async def register_dynamic(
        self,
        name: str | None = None,
        redirect_uris: list[str] | None = None,
        grant_types: list[str] | None = None,
        scopes: list[str] | None = None,
    ) -> tuple[IssuedClient, ClientRecord]:
        """Self-service registration (RFC 7591). The client starts without an owner."""
        now = self._clock()
        granted = self.narrow_scopes(scopes)

        def build(client_id: str, secret_hash: str) -> ClientRecord:
            record = ClientRecord(
                client_id=client_id,
                secret_hash=secret_hash,
                owner=None,
                name=name or DYNAMIC_CLIENT_NAME,
                scopes=granted,
                redirect_uris=redirect_uris or [],
                dynamic=True,
                created_at=now,
            )
            if grant_types:
                record.grant_types = list(grant_types)
            return record

        issued, record = await self._create(lambda: f"dcr_{secrets.token_hex(8)}", build)
        metrics.clients_registered_total.labels(kind="dynamic").inc()
        logger.info(
            "client_registered",
            client_id=record.client_id,
            dynamic=True,
            redirect_uri_count=len(record.redirect_uris),
        )
        return issued, record

    async def get(self, client_id: str) -> ClientRecord | None:
        raw = await self.store.get(self._key(client_id))
        return ClientRecord.model_validate_json(raw) if raw else None

    async def verify(self, client_id: str | None, client_secret: str | None) -> ClientRecord:
        """
        Authenticate a client by id and secret.

        Raises:
            InvalidClientError: unknown id, wrong secret, or revoked client
        """
        record = await self.get(client_id) if client_id else None
        secret_hash = record.secret_hash if record else self._decoy_hash

        try:
            self.password_hasher.verify(secret_hash, client_secret or "")
            secret_ok = True
        except (VerificationError, InvalidHashError):
            secret_ok = False

        if record is None or not secret_ok:
            logger.warning("client_authentication_failed", client_id=client_id)
            raise InvalidClientError("Invalid client credentials")
        if record.revoked:
            logger.warning("revoked_client_rejected", client_id=client_id)
            raise InvalidClientError("Client has been revoked")
        return record

    async def assign_owner_if_unset(self, client_id: str, principal: str) -> None:
        """
        Claim an unowned client for `principal`.

        A no-op when the client is already owned, by anyone. Callers must
        re-read the client and compare owners afterward.
        """
        key = self._key(client_id)
        for _ in range(MAX_CAS_ATTEMPTS):
            raw = await self.store.get(key)
            if raw is None:
                return
            record = ClientRecord.model_validate_json(raw)
            if record.owner is not None:
                return
            claimed = record.model_copy(update={"owner": principal})
            if await self.store.compare_and_set(key, raw, claimed.model_dump_json()):
                logger.info("client_owner_assigned", client_id=client_id, owner=principal)
                return
        raise ConcurrencyError(f"client {client_id}")

    async def touch(self, client_id: str) -> None:
        """Best-effort last_used_at update; losing a race just skips it."""
        key = self._key(client_id)
        raw = await self.store.get(key)
        if raw is None:
            return
        record = ClientRecord.model_validate_json(raw)
        touched = record.model_copy(update={"last_used_at": self._clock()})
        await self.store.compare_and_set(key, raw, touched.model_dump_json())

    async def list_for_owner(self, owner: str) -> list[ClientRecord]:
        """Active clients owned by `owner`, oldest first."""
        records = [
            ClientRecord.model_validate_json(raw)
            for _, raw in await self.store.scan(CLIENT_PREFIX)
        ]
        owned = [r for r in records if r.owner == owner and not r.revoked]
        return sorted(owned, key=lambda r: r.created_at)

    async def revoke(self, owner: str, client_id: str) -> bool:
        """
        Revoke a client owned by `owner`.

        Returns False if the client does not exist or belongs to someone else.
        Revocation is terminal and idempotent.
        """
        key = self._key(client_id)
        for _ in range(MAX_CAS_ATTEMPTS):
            raw = await self.store.get(key)
            if raw is None:
                return False
            record = ClientRecord.model_validate_json(raw)
            if record.owner != owner:
                return False
            if record.revoked:
                return True
            revoked = record.model_copy(update={"revoked": True})
            if await self.store.compare_and_set(key, raw, revoked.model_dump_json()):
                logger.info("client_revoked", client_id=client_id, owner=owner)
                return True
        raise ConcurrencyError(f"client {client_id}")
