"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- In-memory key-value store and ledger
- Fully wired services with a stubbed upstream HTTP API
- Registered clients and published tools
- Session and access tokens
- API test client with the service container overridden
"""

import os
from collections.abc import AsyncGenerator, Callable, Generator
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

# Set required environment variables BEFORE importing toolgate modules
os.environ.setdefault("TOKEN_SIGNING_SECRET", "test-signing-secret-for-hs256-min-32-chars")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("LEDGER_BACKEND", "memory")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("BASE_URL", "http://testserver")

from toolgate.config import Settings, get_settings
from toolgate.models.domain import CallerContext, IssuedClient
from toolgate.models.records import (
    ClientRecord,
    HttpMethod,
    ParameterLocation,
    ToolParameter,
    ToolRecord,
    ToolSpec,
)
from toolgate.services.authorization import compute_code_challenge
from toolgate.services.container import GatewayServices, build_services
from toolgate.services.ledger import InMemoryLedger
from toolgate.stores.kv import InMemoryKeyValueStore

PAYER = "user-payer"
DEVELOPER = "dev-owner"
REDIRECT_URI = "https://client.example/callback"
CODE_VERIFIER = "verifier-" + "x" * 48
WALLET = "wallet-dev-owner"


class ManualClock:
    """A clock tests can move forward by hand."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 18, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


class UpstreamStub:
    """Stands in for the HTTP APIs behind published tools."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responder: Callable[[httpx.Request], httpx.Response] = lambda request: (
            httpx.Response(200, json={"ok": True})
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)


# ============================================================================
# Collaborator Fixtures
# ============================================================================


@pytest.fixture
def test_settings() -> Settings:
    return get_settings()


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def upstream() -> UpstreamStub:
    return UpstreamStub()


@pytest.fixture
async def services(
    test_settings: Settings,
    store: InMemoryKeyValueStore,
    ledger: InMemoryLedger,
    upstream: UpstreamStub,
) -> AsyncGenerator[GatewayServices, None]:
    """Fully wired services over in-memory state and a stubbed upstream."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    gateway = build_services(test_settings, store=store, ledger=ledger, http_client=http_client)
    yield gateway
    await gateway.close()


@pytest.fixture
def payer() -> CallerContext:
    return CallerContext(principal=PAYER, scopes=("mcp:tools",), client_id="dcr_test")


# ============================================================================
# Client and Tool Fixtures
# ============================================================================


@pytest.fixture
async def dynamic_client(services: GatewayServices) -> tuple[IssuedClient, ClientRecord]:
    """An unowned dynamically registered client."""
    return await services.clients.register_dynamic(
        name="Test MCP Client", redirect_uris=[REDIRECT_URI]
    )


@pytest.fixture
async def static_client(services: GatewayServices) -> tuple[IssuedClient, ClientRecord]:
    """A client provisioned by the payer for themselves."""
    return await services.clients.register_static(
        owner=PAYER, name="Payer Server", redirect_uris=[REDIRECT_URI]
    )


def make_tool_spec(
    name: str = "weather",
    price_minor: int = 0,
    method: HttpMethod = HttpMethod.GET,
    url: str = "https://api.example/weather/{city}",
    parameters: list[ToolParameter] | None = None,
    timeout_seconds: float | None = None,
) -> ToolSpec:
    """Factory function to create tool specs."""
    if parameters is None:
        parameters = [
            ToolParameter(name="city", location=ParameterLocation.PATH),
            ToolParameter(name="units", required=False, default="metric"),
        ]
    return ToolSpec(
        name=name,
        description=f"{name} lookup",
        url=url,
        method=method,
        parameters=parameters,
        timeout_seconds=timeout_seconds,
        price_minor=price_minor,
        recipient_wallet=WALLET if price_minor > 0 else None,
    )


@pytest.fixture
async def free_tool(services: GatewayServices) -> ToolRecord:
    return await services.tools.add(DEVELOPER, make_tool_spec("weather"))


@pytest.fixture
async def paid_tool(services: GatewayServices) -> ToolRecord:
    return await services.tools.add(DEVELOPER, make_tool_spec("forecast", price_minor=2))


# ============================================================================
# Token Fixtures
# ============================================================================


def session_token(services: GatewayServices, principal: str, ttl_seconds: int = 600) -> str:
    """Console session token as minted by the identity provider."""
    return services.codec.sign(
        subject=principal,
        scopes=[],
        client_id=None,
        ttl_seconds=ttl_seconds,
        audience=services.settings.session_audience,
        token_type="session",
    )


def access_token(
    services: GatewayServices,
    principal: str,
    scopes: tuple[str, ...] = ("mcp:tools",),
    ttl_seconds: int = 600,
) -> str:
    return services.codec.sign(
        subject=principal, scopes=scopes, client_id="dcr_test", ttl_seconds=ttl_seconds
    )


def auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def code_challenge() -> str:
    return compute_code_challenge(CODE_VERIFIER)


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
def app(services: GatewayServices) -> Generator[FastAPI, None, None]:
    """FastAPI app wired to the test services."""
    from toolgate.api.dependencies import get_services
    from toolgate.main import app as main_app

    main_app.dependency_overrides[get_services] = lambda: services
    yield main_app
    main_app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Async test client for async tests."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
    ) as client:
        yield client
