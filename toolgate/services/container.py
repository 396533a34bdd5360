"""
Service Container - wires the gateway's services from settings.

One GatewayServices instance lives for the lifetime of the process. The
collaborators that differ between deployments and tests (state store,
ledger, outbound HTTP client) can be injected.
"""

from dataclasses import dataclass

import httpx

from toolgate.config import Settings
from toolgate.db.session import get_session_factory
from toolgate.observability.logging import get_logger
from toolgate.services.authorization import AuthorizationService
from toolgate.services.cleanup import ExpiredStateSweeper
from toolgate.services.client_registry import ClientRegistry
from toolgate.services.invocation import InvocationExecutor
from toolgate.services.ledger import HttpLedgerClient, InMemoryLedger, LedgerClient
from toolgate.services.payment_gate import BalanceCache, PaymentGate
from toolgate.services.token_codec import TokenCodec
from toolgate.services.tool_registry import ToolRegistry
from toolgate.stores.database import DatabaseKeyValueStore
from toolgate.stores.kv import InMemoryKeyValueStore, KeyValueStore

logger = get_logger(__name__)


@dataclass
class GatewayServices:
    """Everything a request handler needs."""

    settings: Settings
    store: KeyValueStore
    ledger: LedgerClient
    http_client: httpx.AsyncClient
    codec: TokenCodec
    clients: ClientRegistry
    authorization: AuthorizationService
    balances: BalanceCache
    payments: PaymentGate
    executor: InvocationExecutor
    tools: ToolRegistry
    sweeper: ExpiredStateSweeper

    async def close(self) -> None:
        """Release network resources owned by the services."""
        close_ledger = getattr(self.ledger, "close", None)
        if close_ledger is not None:
            await close_ledger()
        await self.http_client.aclose()


def build_store(settings: Settings) -> KeyValueStore:
    if settings.store_backend == "memory":
        logger.warning("using_in_memory_store", reason="state is lost on restart")
        return InMemoryKeyValueStore()
    return DatabaseKeyValueStore(get_session_factory())


def build_ledger(settings: Settings) -> LedgerClient:
    if settings.ledger_backend == "memory":
        logger.warning("using_in_memory_ledger", reason="balances are not real funds")
        return InMemoryLedger()
    return HttpLedgerClient(
        base_url=settings.ledger_url,
        api_key=settings.ledger_api_key,
        timeout_seconds=settings.ledger_timeout_seconds,
    )


def build_services(
    settings: Settings,
    store: KeyValueStore | None = None,
    ledger: LedgerClient | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> GatewayServices:
    """Create the service graph. Omitted collaborators are built from settings."""
    store = store or build_store(settings)
    ledger = ledger or build_ledger(settings)
    http_client = http_client or httpx.AsyncClient(follow_redirects=False)

    codec = TokenCodec(
        secret=settings.token_signing_secret,
        issuer=settings.issuer,
        audience=settings.resource_audience,
    )
    clients = ClientRegistry(
        store,
        supported_scopes=settings.supported_scope_list,
        default_scopes=settings.default_scope_list,
    )
    authorization = AuthorizationService(
        store,
        clients,
        codec,
        access_token_ttl_seconds=settings.access_token_ttl_seconds,
        refresh_token_ttl_days=settings.refresh_token_ttl_days,
        authorization_code_ttl_seconds=settings.authorization_code_ttl_seconds,
        pending_authorization_ttl_seconds=settings.pending_authorization_ttl_seconds,
        rotate_refresh_tokens=settings.refresh_token_rotation,
    )
    balances = BalanceCache(
        store,
        ledger,
        ttl_seconds=settings.balance_cache_ttl_seconds,
        ledger_timeout_seconds=settings.ledger_timeout_seconds,
    )
    payments = PaymentGate(
        store, ledger, balances, ledger_timeout_seconds=settings.ledger_timeout_seconds
    )
    executor = InvocationExecutor(
        http_client,
        default_timeout_seconds=settings.default_tool_timeout_seconds,
        max_timeout_seconds=settings.max_tool_timeout_seconds,
    )
    tools = ToolRegistry(store, payments, executor)

    return GatewayServices(
        settings=settings,
        store=store,
        ledger=ledger,
        http_client=http_client,
        codec=codec,
        clients=clients,
        authorization=authorization,
        balances=balances,
        payments=payments,
        executor=executor,
        tools=tools,
        sweeper=ExpiredStateSweeper(store, payments),
    )
