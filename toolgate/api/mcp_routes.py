"""
MCP routes - JSON-RPC 2.0 tool protocol at /mcp/{owner}.

The URL names the developer whose tools are used; the bearer token names
the caller who pays. Payment outcomes come back as tool results with
isError set and the machine-readable payload in structuredContent, so an
AI client can act on `action_required` without parsing HTTP errors.
"""

import json
from typing import Any

from fastapi import APIRouter, Request, Response, status
from fastapi.responses import JSONResponse

from toolgate.api.dependencies import CallerDep, ServicesDep
from toolgate.api.errors import describe_error
from toolgate.api.tool_routes import invocation_body
from toolgate.exceptions import GatewayError
from toolgate.models.domain import CallerContext
from toolgate.observability.logging import get_logger, log_context
from toolgate.services.container import GatewayServices

logger = get_logger(__name__)
router = APIRouter(tags=["mcp"])

JSONRPC_VERSION = "2.0"
DEFAULT_PROTOCOL_VERSION = "2025-03-26"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class JsonRpcError(Exception):
    """A JSON-RPC error object to send back instead of a result."""

    def __init__(self, code: int, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(message)


def rpc_result(request_id: Any, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def rpc_error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": {"code": code, "message": message},
    }


def tool_call_result(body: dict[str, Any], is_error: bool) -> dict[str, Any]:
    return {
        "content": [{"type": "text", "text": json.dumps(body, default=str)}],
        "structuredContent": body,
        "isError": is_error,
    }


async def call_tool(
    services: GatewayServices, owner: str, params: dict[str, Any], caller: CallerContext
) -> dict[str, Any]:
    name = params.get("name")
    if not isinstance(name, str) or not name:
        raise JsonRpcError(INVALID_PARAMS, "tools/call requires a tool name")
    arguments = params.get("arguments") or {}
    if not isinstance(arguments, dict):
        raise JsonRpcError(INVALID_PARAMS, "tools/call arguments must be an object")

    try:
        outcome = await services.tools.invoke(owner, name, arguments, caller)
    except GatewayError as e:
        status_code, body = describe_error(e)
        body.setdefault("status_code", status_code)
        logger.info("mcp_tool_call_refused", tool=name, owner=owner, status=status_code)
        return tool_call_result(body, is_error=True)

    return tool_call_result(invocation_body(outcome), is_error=not outcome.result.success)


async def dispatch(
    services: GatewayServices, owner: str, message: dict[str, Any], caller: CallerContext
) -> dict[str, Any]:
    method = message.get("method")
    params = message.get("params") or {}
    if not isinstance(params, dict):
        raise JsonRpcError(INVALID_PARAMS, "params must be an object")

    if method == "initialize":
        return {
            "protocolVersion": params.get("protocolVersion") or DEFAULT_PROTOCOL_VERSION,
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {
                "name": services.settings.service_name,
                "version": services.settings.api_version,
            },
        }
    if method in ("ping", "notifications/initialized"):
        return {}
    if method == "tools/list":
        return {"tools": await services.tools.list_tools(owner)}
    if method == "tools/call":
        return await call_tool(services, owner, params, caller)
    raise JsonRpcError(METHOD_NOT_FOUND, f"Method not found: {method}")


async def handle_message(
    services: GatewayServices, owner: str, message: Any, caller: CallerContext
) -> dict[str, Any] | None:
    """Process one JSON-RPC message. Notifications produce no response."""
    if not isinstance(message, dict) or message.get("jsonrpc") != JSONRPC_VERSION:
        return rpc_error(None, INVALID_REQUEST, "Invalid JSON-RPC request")

    request_id = message.get("id")
    is_notification = "id" not in message
    try:
        with log_context(mcp_method=message.get("method"), mcp_owner=owner):
            result = await dispatch(services, owner, message, caller)
    except JsonRpcError as e:
        return None if is_notification else rpc_error(request_id, e.code, e.message)
    except Exception as e:
        logger.error(
            "mcp_request_failed", method=message.get("method"), error=str(e), exc_info=True
        )
        return None if is_notification else rpc_error(request_id, INTERNAL_ERROR, "Internal error")

    return None if is_notification else rpc_result(request_id, result)


@router.post("/mcp/{owner}")
async def mcp_endpoint(
    owner: str, request: Request, caller: CallerDep, services: ServicesDep
) -> Response:
    """Streamable HTTP transport, JSON responses only."""
    try:
        payload = json.loads(await request.body())
    except ValueError:
        return JSONResponse(content=rpc_error(None, PARSE_ERROR, "Parse error"))

    if isinstance(payload, list):
        if not payload:
            return JSONResponse(content=rpc_error(None, INVALID_REQUEST, "Empty batch"))
        responses = [await handle_message(services, owner, m, caller) for m in payload]
        replies = [r for r in responses if r is not None]
        if not replies:
            return Response(status_code=status.HTTP_202_ACCEPTED)
        return JSONResponse(content=replies)

    reply = await handle_message(services, owner, payload, caller)
    if reply is None:
        return Response(status_code=status.HTTP_202_ACCEPTED)
    return JSONResponse(content=reply)
