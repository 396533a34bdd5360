"""
OAuth 2.1 routes - discovery, authorization, token, revocation, registration.

Protocol errors are raised as OAuthError subclasses and rendered as
`{error, error_description}` by the application exception handler.
"""

import html
import json
from datetime import datetime
from string import Template
from typing import Any
from urllib.parse import parse_qsl

from fastapi import APIRouter, Request, Response, status
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, Field

from toolgate.api.dependencies import ServicesDep, SessionPrincipalDep
from toolgate.exceptions import (
    InvalidClientMetadataError,
    InvalidRequestError,
    NotFoundError,
    OAuthError,
    UnsupportedGrantTypeError,
)
from toolgate.models.domain import TokenGrant
from toolgate.models.records import ClientRecord
from toolgate.observability.logging import get_logger
from toolgate.observability.metrics import metrics

logger = get_logger(__name__)
router = APIRouter(tags=["oauth"])

SUPPORTED_GRANT_TYPES = ["authorization_code", "refresh_token"]
NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}

SCOPE_DESCRIPTIONS = {
    "mcp:tools": "Call tools on your behalf, including paid tools",
    "mcp:resources": "Read your MCP resources",
}


# =============================================================================
# Request/Response Models
# =============================================================================


class DecisionRequest(BaseModel):
    """The signed-in user's answer to a pending authorization."""

    handle: str = Field(..., min_length=1, description="Handle from the approval page")
    approved: bool = Field(..., description="Whether the user approved the request")


class DecisionResponse(BaseModel):
    redirect_url: str


class RegistrationRequest(BaseModel):
    """RFC 7591 client metadata."""

    client_name: str | None = Field(None, max_length=200)
    redirect_uris: list[str] = Field(default_factory=list)
    grant_types: list[str] | None = None
    response_types: list[str] | None = None
    scope: str | None = None
    token_endpoint_auth_method: str | None = None


class RegistrationResponse(BaseModel):
    client_id: str
    client_secret: str
    client_id_issued_at: int
    client_secret_expires_at: int = 0
    client_name: str
    redirect_uris: list[str]
    grant_types: list[str]
    response_types: list[str]
    token_endpoint_auth_method: str
    scope: str


class CreateClientRequest(BaseModel):
    """A developer provisioning credentials for their own MCP server."""

    name: str = Field("My MCP Server", min_length=1, max_length=200)
    scope: str | None = Field(None, description="Space-separated scopes")
    redirect_uris: list[str] = Field(
        default_factory=list, description="Exact callback URLs allowed in the code flow"
    )


class ClientCredentialsResponse(BaseModel):
    """Returned once at creation; the secret is not retrievable later."""

    client_id: str
    client_secret: str
    name: str
    scope: str
    redirect_uris: list[str]
    created_at: datetime
    mcp_url: str


class ClientSummary(BaseModel):
    client_id: str
    name: str
    scope: str
    dynamic: bool
    created_at: datetime
    last_used_at: datetime | None


class ClientListResponse(BaseModel):
    clients: list[ClientSummary]


# =============================================================================
# Helpers
# =============================================================================


async def read_params(request: Request) -> dict[str, str]:
    """Token/revocation parameters from a form-encoded or JSON body."""
    body = await request.body()
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = json.loads(body or b"{}")
        except ValueError as e:
            raise InvalidRequestError("Request body is not valid JSON") from e
        if not isinstance(data, dict):
            raise InvalidRequestError("Request body must be a JSON object")
        return {str(k): str(v) for k, v in data.items() if v is not None}
    return dict(parse_qsl(body.decode("utf-8", errors="replace")))


def token_response_body(grant: TokenGrant) -> dict[str, Any]:
    body: dict[str, Any] = {
        "access_token": grant.access_token,
        "token_type": grant.token_type,
        "expires_in": grant.expires_in,
        "scope": " ".join(grant.scopes),
    }
    if grant.refresh_token:
        body["refresh_token"] = grant.refresh_token
    return body


def client_summary(record: ClientRecord) -> ClientSummary:
    return ClientSummary(
        client_id=record.client_id,
        name=record.name,
        scope=" ".join(record.scopes),
        dynamic=record.dynamic,
        created_at=record.created_at,
        last_used_at=record.last_used_at,
    )


def check_redirect_uris(redirect_uris: list[str]) -> None:
    for uri in redirect_uris:
        if not uri.startswith(("https://", "http://")):
            raise InvalidClientMetadataError(f"Unsupported redirect_uri: {uri}")


APPROVAL_PAGE = Template(
    """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Authorize MCP Access</title>
    <style>
        body { font-family: system-ui, sans-serif; background: #f4f5f7; margin: 0; }
        .container { max-width: 440px; margin: 64px auto; background: #fff;
                     border-radius: 12px; padding: 32px; box-shadow: 0 4px 24px #0001; }
        .label { font-size: 12px; text-transform: uppercase; color: #666; }
        .value { font-family: monospace; margin-bottom: 16px; word-break: break-all; }
        ul { padding-left: 20px; }
        .buttons { display: flex; gap: 12px; margin-top: 24px; }
        button { flex: 1; padding: 12px; border: 0; border-radius: 8px; cursor: pointer; }
        .approve { background: #2563eb; color: #fff; }
        .deny { background: #e5e7eb; }
        .error { color: #b91c1c; display: none; margin-top: 16px; }
    </style>
</head>
<body>
    <div class="container">
        <h1>Authorize Access</h1>
        <p>An application is requesting access to your MCP server.</p>
        <div class="label">Client</div>
        <div class="value">$client_name ($client_id)</div>
        <div class="label">Requested permissions</div>
        <ul>$scope_items</ul>
        <div id="error" class="error"></div>
        <div class="buttons">
            <button class="approve" onclick="decide(true)">Approve</button>
            <button class="deny" onclick="decide(false)">Deny</button>
        </div>
    </div>
    <script>
        const handle = $handle_json;
        const decisionUrl = $decision_url_json;

        async function decide(approved) {
            const token = window.localStorage.getItem("toolgate_session_token");
            if (!token) {
                showError("Sign in to the console first, then reload this page.");
                return;
            }
            const res = await fetch(decisionUrl, {
                method: "POST",
                headers: {
                    "Content-Type": "application/json",
                    "Authorization": "Bearer " + token
                },
                body: JSON.stringify({handle: handle, approved: approved})
            });
            const data = await res.json();
            if (data.redirect_url) {
                window.location.href = data.redirect_url;
            } else {
                showError(data.error_description || "Authorization failed");
            }
        }

        function showError(message) {
            const el = document.getElementById("error");
            el.textContent = message;
            el.style.display = "block";
        }
    </script>
</body>
</html>
"""
)


# =============================================================================
# Discovery
# =============================================================================


@router.get("/.well-known/oauth-protected-resource")
async def protected_resource_metadata(services: ServicesDep) -> dict[str, Any]:
    """RFC 9728 protected resource metadata."""
    cfg = services.settings
    return {
        "resource": cfg.resource_url,
        "authorization_servers": [cfg.issuer],
        "scopes_supported": cfg.supported_scope_list,
        "bearer_methods_supported": ["header"],
    }


@router.get("/.well-known/oauth-authorization-server")
async def authorization_server_metadata(services: ServicesDep) -> dict[str, Any]:
    """RFC 8414 authorization server metadata."""
    cfg = services.settings
    return {
        "issuer": cfg.issuer,
        "authorization_endpoint": f"{cfg.issuer}/oauth/authorize",
        "token_endpoint": f"{cfg.issuer}/oauth/token",
        "registration_endpoint": f"{cfg.issuer}/oauth/register",
        "revocation_endpoint": f"{cfg.issuer}/oauth/revoke",
        "scopes_supported": cfg.supported_scope_list,
        "grant_types_supported": SUPPORTED_GRANT_TYPES,
        "response_types_supported": ["code"],
        "code_challenge_methods_supported": ["S256"],
        "token_endpoint_auth_methods_supported": ["client_secret_post"],
    }


# =============================================================================
# Authorization
# =============================================================================


@router.get("/oauth/authorize", response_class=HTMLResponse)
async def authorize(
    services: ServicesDep,
    response_type: str | None = None,
    client_id: str | None = None,
    redirect_uri: str | None = None,
    code_challenge: str | None = None,
    code_challenge_method: str | None = "S256",
    scope: str | None = None,
    state: str | None = None,
) -> HTMLResponse:
    """Validate the request and render the approval page."""
    pending = await services.authorization.begin(
        response_type=response_type,
        client_id=client_id,
        redirect_uri=redirect_uri,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        scope=scope,
        state=state,
    )
    client = await services.clients.get(pending.client_id)
    if client is None or client.revoked:
        # The parked request is left for the sweeper.
        raise InvalidRequestError("Unknown or revoked client_id")
    scope_items = "".join(
        f"<li>{html.escape(SCOPE_DESCRIPTIONS.get(s, s))}</li>" for s in pending.scopes
    )
    page = APPROVAL_PAGE.substitute(
        client_name=html.escape(client.name),
        client_id=html.escape(pending.client_id),
        scope_items=scope_items,
        handle_json=json.dumps(pending.handle),
        decision_url_json=json.dumps(f"{services.settings.issuer}/oauth/authorize/decision"),
    )
    return HTMLResponse(page, headers={"Cache-Control": "no-store"})


@router.post("/oauth/authorize/decision", response_model=DecisionResponse)
async def authorize_decision(
    body: DecisionRequest, principal: SessionPrincipalDep, services: ServicesDep
) -> DecisionResponse:
    """Record the signed-in user's decision and return where to send the browser."""
    redirect_url = await services.authorization.decide(body.handle, principal, body.approved)
    return DecisionResponse(redirect_url=redirect_url)


# =============================================================================
# Token and revocation
# =============================================================================


@router.post("/oauth/token")
async def token(request: Request, services: ServicesDep) -> JSONResponse:
    """Exchange an authorization code or refresh token for an access token."""
    params = await read_params(request)
    grant_type = params.get("grant_type") or ""

    try:
        if grant_type == "authorization_code":
            grant = await services.authorization.exchange_code(
                code=params.get("code"),
                redirect_uri=params.get("redirect_uri"),
                client_id=params.get("client_id"),
                client_secret=params.get("client_secret"),
                code_verifier=params.get("code_verifier"),
            )
        elif grant_type == "refresh_token":
            grant = await services.authorization.exchange_refresh(
                refresh_token=params.get("refresh_token"),
                client_id=params.get("client_id"),
                client_secret=params.get("client_secret"),
            )
        else:
            raise UnsupportedGrantTypeError(
                f"grant_type must be one of: {', '.join(SUPPORTED_GRANT_TYPES)}"
            )
    except OAuthError as e:
        metrics.record_token_issued(grant_type or "missing", e.error_code)
        logger.warning(
            "token_request_rejected",
            grant_type=grant_type,
            client_id=params.get("client_id"),
            error=e.error_code,
        )
        raise

    metrics.record_token_issued(grant_type, "success")
    return JSONResponse(content=token_response_body(grant), headers=NO_STORE_HEADERS)


@router.post("/oauth/revoke")
async def revoke(request: Request, services: ServicesDep) -> Response:
    """RFC 7009 token revocation for refresh tokens."""
    params = await read_params(request)
    await services.authorization.revoke_refresh_token(
        token=params.get("token"),
        client_id=params.get("client_id"),
        client_secret=params.get("client_secret"),
    )
    return Response(status_code=status.HTTP_200_OK, headers=NO_STORE_HEADERS)


# =============================================================================
# Dynamic client registration (RFC 7591)
# =============================================================================


@router.post(
    "/oauth/register",
    response_model=RegistrationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_client(
    body: RegistrationRequest, services: ServicesDep, response: Response
) -> RegistrationResponse:
    """Self-service registration. The client is claimed by its first approver."""
    check_redirect_uris(body.redirect_uris)
    if body.grant_types and not set(body.grant_types) <= set(SUPPORTED_GRANT_TYPES):
        raise InvalidClientMetadataError(
            f"grant_types must be a subset of: {', '.join(SUPPORTED_GRANT_TYPES)}"
        )
    if body.response_types and body.response_types != ["code"]:
        raise InvalidClientMetadataError("Only the 'code' response type is supported")
    if body.token_endpoint_auth_method not in (None, "client_secret_post"):
        raise InvalidClientMetadataError("Only client_secret_post is supported")

    issued, record = await services.clients.register_dynamic(
        name=body.client_name,
        redirect_uris=body.redirect_uris,
        grant_types=body.grant_types,
        scopes=body.scope.split() if body.scope else None,
    )
    response.headers.update(NO_STORE_HEADERS)
    return RegistrationResponse(
        client_id=issued.client_id,
        client_secret=issued.client_secret,
        client_id_issued_at=int(issued.issued_at.timestamp()),
        client_name=record.name,
        redirect_uris=record.redirect_uris,
        grant_types=record.grant_types,
        response_types=record.response_types,
        token_endpoint_auth_method=record.token_endpoint_auth_method,
        scope=" ".join(record.scopes),
    )


# =============================================================================
# Client management for signed-in developers
# =============================================================================


@router.post(
    "/v1/oauth/clients",
    response_model=ClientCredentialsResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_client(
    body: CreateClientRequest, principal: SessionPrincipalDep, services: ServicesDep
) -> ClientCredentialsResponse:
    """Provision OAuth credentials owned by the caller."""
    check_redirect_uris(body.redirect_uris)
    issued, record = await services.clients.register_static(
        owner=principal,
        name=body.name,
        scopes=body.scope.split() if body.scope else None,
        redirect_uris=body.redirect_uris,
    )
    return ClientCredentialsResponse(
        client_id=issued.client_id,
        client_secret=issued.client_secret,
        name=record.name,
        scope=" ".join(record.scopes),
        redirect_uris=record.redirect_uris,
        created_at=record.created_at,
        mcp_url=f"{services.settings.issuer}/mcp/{principal}",
    )


@router.get("/v1/oauth/clients", response_model=ClientListResponse)
async def list_clients(
    principal: SessionPrincipalDep, services: ServicesDep
) -> ClientListResponse:
    records = await services.clients.list_for_owner(principal)
    return ClientListResponse(clients=[client_summary(r) for r in records])


@router.delete("/v1/oauth/clients/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_client(
    client_id: str, principal: SessionPrincipalDep, services: ServicesDep
) -> Response:
    """Revoke one of the caller's clients and every refresh token issued to it."""
    if not await services.authorization.revoke_client(principal, client_id):
        raise NotFoundError(f"client {client_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)

