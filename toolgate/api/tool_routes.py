"""
Tool API routes - publishing tools and invoking them over REST.

Management endpoints authenticate the developer with a console session
token. The invoke endpoint sits behind the Auth Gate and reports payment
outcomes as 402 (unpaid) or 500 with `refunded: true` (settlement failed).
"""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from toolgate.api.dependencies import CallerDep, ServicesDep, SessionPrincipalDep
from toolgate.exceptions import ToolNotFoundError
from toolgate.models.domain import InvocationOutcome
from toolgate.models.records import HttpMethod, ToolParameter, ToolRecord, ToolSpec
from toolgate.observability.logging import get_logger
from toolgate.services.invocation import PAYMENT_ARGUMENT

logger = get_logger(__name__)
router = APIRouter(tags=["tools"])


# =============================================================================
# Request/Response Models
# =============================================================================


class ToolResponse(BaseModel):
    """A published tool as shown to its owner."""

    name: str
    description: str
    url: str
    method: HttpMethod
    parameters: list[ToolParameter]
    timeout_seconds: float | None
    price_minor: int = Field(..., description="Price per call in ledger minor units")
    recipient_wallet: str | None
    active: bool
    call_count: int
    created_at: datetime
    updated_at: datetime


class ToolListResponse(BaseModel):
    tools: list[ToolResponse]


class ToolActivationRequest(BaseModel):
    active: bool


class InvokeRequest(BaseModel):
    """Arguments for one tool call."""

    arguments: dict[str, Any] = Field(default_factory=dict)
    payment_id: str | None = Field(
        None, description="Completed payment to use instead of paying again"
    )


class ConnectionInfoResponse(BaseModel):
    """How an MCP client connects to this developer's tools."""

    mcp_url: str
    transport: str = "streamable-http"
    oauth_required: bool = True
    authorization_server: str
    protected_resource_metadata: str
    tools_count: int


def tool_response(record: ToolRecord) -> ToolResponse:
    return ToolResponse(
        name=record.name,
        description=record.description,
        url=record.url,
        method=record.method,
        parameters=record.parameters,
        timeout_seconds=record.timeout_seconds,
        price_minor=record.price_minor,
        recipient_wallet=record.recipient_wallet,
        active=record.active,
        call_count=record.call_count,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def invocation_body(outcome: InvocationOutcome) -> dict[str, Any]:
    """Envelope returned to REST and MCP callers."""
    result = outcome.result
    body: dict[str, Any] = {
        "success": result.success,
        "status_code": result.status_code,
        "data": result.data,
        "message": result.message,
    }
    if result.failure_reason:
        body["failure_reason"] = result.failure_reason
    if outcome.receipt is not None:
        body["payment"] = {
            "payment_id": outcome.receipt.payment_id,
            "amount_minor": outcome.receipt.amount_minor,
            "tx_reference": outcome.receipt.tx_reference,
            "reused": outcome.receipt.reused,
        }
    return body


# =============================================================================
# Tool management
# =============================================================================


@router.post("/v1/tools", response_model=ToolResponse, status_code=status.HTTP_201_CREATED)
async def add_tool(
    spec: ToolSpec, principal: SessionPrincipalDep, services: ServicesDep
) -> ToolResponse:
    """Publish a tool under the caller's MCP server."""
    record = await services.tools.add(principal, spec)
    return tool_response(record)


@router.get("/v1/tools", response_model=ToolListResponse)
async def list_tools(principal: SessionPrincipalDep, services: ServicesDep) -> ToolListResponse:
    records = await services.tools.list_for_owner(principal)
    return ToolListResponse(tools=[tool_response(r) for r in records])


@router.patch("/v1/tools/{name}", response_model=ToolResponse)
async def set_tool_active(
    name: str,
    body: ToolActivationRequest,
    principal: SessionPrincipalDep,
    services: ServicesDep,
) -> ToolResponse:
    """Enable or disable a tool without deleting it."""
    record = await services.tools.set_active(principal, name, body.active)
    return tool_response(record)


@router.delete("/v1/tools/{name}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_tool(name: str, principal: SessionPrincipalDep, services: ServicesDep) -> Response:
    if not await services.tools.remove(principal, name):
        raise ToolNotFoundError(principal, name)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/v1/mcp/connection", response_model=ConnectionInfoResponse)
async def connection_info(
    principal: SessionPrincipalDep, services: ServicesDep
) -> ConnectionInfoResponse:
    """Where AI clients should point to use the caller's tools."""
    cfg = services.settings
    records = await services.tools.list_for_owner(principal)
    return ConnectionInfoResponse(
        mcp_url=f"{cfg.issuer}/mcp/{principal}",
        authorization_server=cfg.issuer,
        protected_resource_metadata=cfg.resource_metadata_url,
        tools_count=sum(1 for r in records if r.active),
    )


# =============================================================================
# Invocation
# =============================================================================


@router.post("/v1/tools/{owner}/{name}/invoke")
async def invoke_tool(
    owner: str, name: str, body: InvokeRequest, caller: CallerDep, services: ServicesDep
) -> JSONResponse:
    """
    Invoke one of `owner`'s tools as the authenticated caller.

    Paid tools settle before the upstream call unless `payment_id` names a
    completed payment for this tool.
    """
    arguments = dict(body.arguments)
    if body.payment_id:
        arguments[PAYMENT_ARGUMENT] = body.payment_id

    outcome = await services.tools.invoke(owner, name, arguments, caller)
    return JSONResponse(status_code=outcome.result.status_code, content=invocation_body(outcome))
