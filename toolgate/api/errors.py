"""
Error Responses - maps the GatewayError hierarchy to HTTP status and body.

Used by the application-wide exception handler and by the MCP endpoint,
which reports the same payloads inside tool results instead of as HTTP
errors.
"""

from typing import Any

from fastapi.responses import JSONResponse

from toolgate.config import settings
from toolgate.exceptions import (
    ConcurrencyError,
    GatewayError,
    InsufficientBalanceError,
    InsufficientScopeError,
    LedgerError,
    MissingParameterError,
    NoLedgerAccountError,
    NotFoundError,
    OAuthError,
    PaymentNotSettledError,
    PaymentReferenceError,
    PaymentRequiredError,
    PaymentStateError,
    ReservedToolNameError,
    SettlementFailureError,
    ToolAlreadyExistsError,
    TokenVerificationError,
)

MISSING_TOKEN = "missing_token"

DEPOSIT_INSTRUCTIONS = [
    "Deposit funds into your ledger account with the ledger service",
    "Call get_balance to confirm the deposit is visible",
    "Call this tool again",
]


def bearer_challenge(
    error: str | None = None, description: str | None = None, scope: str | None = None
) -> str:
    """WWW-Authenticate value pointing clients at the protected resource metadata."""
    parts = ['realm="mcp"', f'resource_metadata="{settings.resource_metadata_url}"']
    if error:
        parts.append(f'error="{error}"')
    if description:
        parts.append(f'error_description="{description}"')
    if scope:
        parts.append(f'scope="{scope}"')
    return "Bearer " + ", ".join(parts)


def payment_required_body(exc: PaymentRequiredError) -> dict[str, Any]:
    body: dict[str, Any] = {
        "error": "payment_required",
        "action_required": exc.action_required,
        "message": exc.message,
    }
    if isinstance(exc, NoLedgerAccountError):
        body["required_minor"] = exc.required_minor
        body["instructions"] = DEPOSIT_INSTRUCTIONS
    elif isinstance(exc, InsufficientBalanceError):
        body["available_minor"] = exc.available_minor
        body["required_minor"] = exc.required_minor
        body["shortfall_minor"] = exc.shortfall_minor
        body["instructions"] = [
            f"Deposit at least {exc.shortfall_minor} more into your ledger account",
            "Call this tool again",
        ]
    elif isinstance(exc, PaymentNotSettledError):
        body["payment_id"] = exc.payment_id
        body["status"] = exc.status
        body["can_retry"] = exc.status in ("pending", "processing")
        if exc.status == "pending":
            body["instructions"] = [f'Call approve_payment with payment_id "{exc.payment_id}"']
        elif exc.status == "processing":
            body["instructions"] = [
                "Settlement is in progress",
                f'Call this tool again shortly with payment_id "{exc.payment_id}"',
            ]
        else:
            body["instructions"] = ["Call this tool again without _payment_id to pay again"]
    elif isinstance(exc, PaymentReferenceError):
        body["payment_id"] = exc.payment_id
    return body


def describe_error(exc: GatewayError) -> tuple[int, dict[str, Any]]:
    """HTTP status and JSON body for a gateway error."""
    if isinstance(exc, OAuthError):
        return exc.status_code, {"error": exc.error_code, "error_description": exc.description}
    if isinstance(exc, TokenVerificationError):
        if exc.reason == MISSING_TOKEN:
            return 401, {"error": "unauthorized", "error_description": "Bearer token required"}
        return 401, {
            "error": "invalid_token",
            "error_description": f"Token verification failed: {exc.reason}",
        }
    if isinstance(exc, InsufficientScopeError):
        return 403, {"error": "insufficient_scope", "error_description": str(exc)}
    if isinstance(exc, PaymentRequiredError):
        return 402, payment_required_body(exc)
    if isinstance(exc, SettlementFailureError):
        return 500, {
            "error": "settlement_failed",
            "message": f"Payment execution failed: {exc.reason}",
            "payment_id": exc.payment_id,
            "refunded": True,
            "refunded_minor": exc.refunded_minor,
        }
    if isinstance(exc, NotFoundError):
        return 404, {"error": "not_found", "error_description": str(exc)}
    if isinstance(exc, MissingParameterError):
        return 400, {
            "error": "missing_parameter",
            "error_description": str(exc),
            "parameter": exc.parameter,
        }
    if isinstance(exc, ReservedToolNameError):
        return 400, {"error": "reserved_tool_name", "error_description": str(exc)}
    if isinstance(exc, ToolAlreadyExistsError):
        return 409, {"error": "tool_exists", "error_description": str(exc)}
    if isinstance(exc, PaymentStateError):
        return 409, {
            "error": "invalid_payment_state",
            "error_description": str(exc),
            "payment_id": exc.payment_id,
            "status": exc.current,
        }
    if isinstance(exc, ConcurrencyError):
        return 409, {"error": "conflict", "error_description": str(exc)}
    if isinstance(exc, LedgerError):
        return 502, {"error": "ledger_unavailable", "error_description": exc.message}
    return 500, {"error": "server_error", "error_description": "Internal server error"}


def error_response(exc: GatewayError) -> JSONResponse:
    status_code, body = describe_error(exc)
    headers: dict[str, str] = {}
    if isinstance(exc, TokenVerificationError):
        if exc.reason == MISSING_TOKEN:
            headers["WWW-Authenticate"] = bearer_challenge()
        else:
            headers["WWW-Authenticate"] = bearer_challenge("invalid_token", exc.reason)
    elif isinstance(exc, InsufficientScopeError):
        headers["WWW-Authenticate"] = bearer_challenge(
            "insufficient_scope", scope=exc.required_scope
        )
    elif isinstance(exc, OAuthError):
        headers["Cache-Control"] = "no-store"
    return JSONResponse(status_code=status_code, content=body, headers=headers)
