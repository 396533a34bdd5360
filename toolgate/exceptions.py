"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from typing import ClassVar


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    pass


# ============================================================================
# OAuth protocol errors (RFC 6749 section 5.2 error codes)
# ============================================================================


class OAuthError(GatewayError):
    """Base for errors reported as an OAuth `error`/`error_description` pair."""

    error_code: ClassVar[str] = "server_error"
    status_code: ClassVar[int] = 400

    def __init__(self, description: str) -> None:
        self.description = description
        super().__init__(f"{self.error_code}: {description}")


class InvalidRequestError(OAuthError):
    """Raised when a required parameter is missing or malformed."""

    error_code = "invalid_request"


class UnsupportedResponseTypeError(OAuthError):
    """Raised when response_type is anything other than `code`."""

    error_code = "unsupported_response_type"


class UnsupportedGrantTypeError(OAuthError):
    """Raised when the token endpoint receives an unknown grant_type."""

    error_code = "unsupported_grant_type"


class InvalidScopeError(OAuthError):
    """Raised when no requested scope can be granted."""

    error_code = "invalid_scope"


class InvalidClientError(OAuthError):
    """Raised when client authentication fails."""

    error_code = "invalid_client"
    status_code = 401


class InvalidGrantError(OAuthError):
    """Raised for expired, consumed or mismatched codes and refresh tokens."""

    error_code = "invalid_grant"


class InvalidClientMetadataError(OAuthError):
    """Raised when a client registration request carries unusable metadata."""

    error_code = "invalid_client_metadata"


class UnauthorizedClientError(OAuthError):
    """Raised when a client is not owned by the principal it acts for."""

    error_code = "unauthorized_client"
    status_code = 403


class ServerError(OAuthError):
    """Raised when the authorization server fails unexpectedly."""

    error_code = "server_error"
    status_code = 500


# ============================================================================
# Bearer token errors (Auth Gate)
# ============================================================================


class TokenVerificationError(GatewayError):
    """Raised when a bearer token fails verification."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Token verification failed: {reason}")


class InsufficientScopeError(GatewayError):
    """Raised when a valid token lacks the scope an operation needs."""

    def __init__(self, required_scope: str, granted_scopes: list[str]) -> None:
        self.required_scope = required_scope
        self.granted_scopes = granted_scopes
        super().__init__(
            f"Insufficient scope. Required: {required_scope}, "
            f"granted: {' '.join(granted_scopes) or '(none)'}"
        )


# ============================================================================
# Payment errors
# ============================================================================


class PaymentRequiredError(GatewayError):
    """Base for outcomes that surface as HTTP 402 with an action to take."""

    action_required: ClassVar[str] = "payment_required"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NoLedgerAccountError(PaymentRequiredError):
    """Raised when the payer has never deposited into the ledger."""

    action_required = "deposit_required"

    def __init__(self, principal: str, required_minor: int) -> None:
        self.principal = principal
        self.required_minor = required_minor
        super().__init__(
            f"No ledger account for {principal}. Deposit at least {required_minor} "
            "units to use paid tools"
        )


class InsufficientBalanceError(PaymentRequiredError):
    """Raised when the payer's available balance is below the tool price."""

    action_required = "insufficient_balance"

    def __init__(self, available_minor: int, required_minor: int) -> None:
        self.available_minor = available_minor
        self.required_minor = required_minor
        self.shortfall_minor = max(required_minor - available_minor, 0)
        super().__init__(
            f"Insufficient balance. Available: {available_minor}, "
            f"Required: {required_minor}, Shortfall: {self.shortfall_minor}"
        )


class PaymentReferenceError(PaymentRequiredError):
    """Raised when a supplied payment_id cannot authorize this call."""

    def __init__(self, payment_id: str, action_required: str, message: str) -> None:
        self.payment_id = payment_id
        self.action_required = action_required  # type: ignore[misc]
        super().__init__(message)


class PaymentNotSettledError(PaymentRequiredError):
    """Raised when a referenced payment exists but has not completed."""

    action_required = "payment_not_completed"

    def __init__(self, payment_id: str, status: str) -> None:
        self.payment_id = payment_id
        self.status = status
        super().__init__(f"Payment {payment_id} is {status}, not completed")


class SettlementPendingError(PaymentNotSettledError):
    """
    Raised when the ledger did not say whether a transfer went through.

    The payment stays `processing` until a replay of the same idempotency
    key settles it one way or the other.
    """

    def __init__(self, payment_id: str, reason: str) -> None:
        self.reason = reason
        super().__init__(payment_id, "processing")


class SettlementFailureError(GatewayError):
    """Raised when the ledger confirmed no funds moved and the local hold was reversed."""

    def __init__(self, payment_id: str, refunded_minor: int, reason: str) -> None:
        self.payment_id = payment_id
        self.refunded_minor = refunded_minor
        self.reason = reason
        super().__init__(f"Settlement failed for {payment_id}: {reason}")


class PaymentStateError(GatewayError):
    """Raised when a payment record cannot make the requested transition."""

    def __init__(self, payment_id: str, current: str, target: str) -> None:
        self.payment_id = payment_id
        self.current = current
        self.target = target
        super().__init__(f"Payment {payment_id} cannot move from {current} to {target}")


# ============================================================================
# Ledger collaborator errors
# ============================================================================


class LedgerError(GatewayError):
    """
    Raised when the ledger service rejects or fails a request.

    outcome_known is False when the request may have been applied anyway
    (deadline missed, connection dropped after sending, 5xx reply).
    """

    def __init__(self, message: str, outcome_known: bool = True) -> None:
        self.message = message
        self.outcome_known = outcome_known
        super().__init__(f"Ledger error: {message}")


class LedgerInsufficientFundsError(LedgerError):
    """Raised when the ledger's own balance check refuses a transfer."""

    def __init__(self, payer: str, amount_minor: int) -> None:
        self.payer = payer
        self.amount_minor = amount_minor
        super().__init__(f"insufficient funds for {payer} to transfer {amount_minor}")


class LedgerTimeoutError(LedgerError):
    """Raised when a ledger call exceeds its deadline."""

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"{operation} timed out after {timeout_seconds} seconds", outcome_known=False
        )


# ============================================================================
# Registry errors
# ============================================================================


class NotFoundError(GatewayError):
    """Raised when a requested resource does not exist."""

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Not found: {resource}")


class ToolNotFoundError(NotFoundError):
    """Raised when an owner has no active tool with the given name."""

    def __init__(self, owner: str, name: str) -> None:
        self.owner = owner
        self.name = name
        super().__init__(f"tool {owner}/{name}")


class PaymentNotFoundError(NotFoundError):
    """Raised when no payment record exists for a payment_id."""

    def __init__(self, payment_id: str) -> None:
        self.payment_id = payment_id
        super().__init__(f"payment {payment_id}")


class ToolAlreadyExistsError(GatewayError):
    """Raised when an owner registers a tool name twice."""

    def __init__(self, owner: str, name: str) -> None:
        self.owner = owner
        self.name = name
        super().__init__(f"Tool {name!r} already exists for {owner}")


class ReservedToolNameError(GatewayError):
    """Raised when a tool would shadow one of the built-in payment tools."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool name {name!r} is reserved")


class MissingParameterError(GatewayError):
    """Raised when a required tool parameter is absent from the arguments."""

    def __init__(self, tool_name: str, parameter: str) -> None:
        self.tool_name = tool_name
        self.parameter = parameter
        super().__init__(f"Missing required parameter {parameter!r} for tool {tool_name!r}")


class ConcurrencyError(GatewayError):
    """Raised when a compare-and-set loop keeps losing to concurrent writers."""

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Concurrent modification detected for {resource}")
