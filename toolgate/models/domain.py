"""
Domain Models - Internal values passed between services.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class TokenClaims:
    """Verified claims of a bearer token."""

    subject: str
    scopes: tuple[str, ...]
    client_id: str | None
    issuer: str
    audience: str
    token_type: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class CallerContext:
    """Who is calling a tool, as established by the auth gate."""

    principal: str
    scopes: tuple[str, ...]
    client_id: str | None

    def __post_init__(self) -> None:
        if not self.principal:
            raise ValueError("principal cannot be empty")


@dataclass(frozen=True)
class IssuedClient:
    """Credentials returned once at registration. The secret is never stored."""

    client_id: str
    client_secret: str
    issued_at: datetime


@dataclass(frozen=True)
class TokenGrant:
    """Result of a successful token endpoint exchange."""

    access_token: str
    expires_in: int
    scopes: tuple[str, ...]
    refresh_token: str | None = None
    token_type: str = "Bearer"


@dataclass(frozen=True)
class ToolResult:
    """Envelope for the outcome of an outbound tool call."""

    success: bool
    status_code: int
    data: Any
    message: str
    failure_reason: str | None = None


@dataclass(frozen=True)
class SettlementReceipt:
    """Proof that a paid invocation is covered by a completed payment."""

    payment_id: str
    amount_minor: int
    tx_reference: str
    reused: bool = False


@dataclass(frozen=True)
class InvocationOutcome:
    """A tool result together with the payment that covered it, if any."""

    result: ToolResult
    receipt: SettlementReceipt | None = None
