"""
Stored Records - Pydantic models persisted as JSON in the key-value store.

NO DICTIONARIES - every stored document has a schema. Serialization is
`model_dump_json()` / `model_validate_json()`; the exact stored string is
what compare-and-set compares against.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

TOOL_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")
PATH_PLACEHOLDER = re.compile(r"\{([A-Za-z0-9_]+)\}")


# ============================================================================
# OAuth records
# ============================================================================


class ClientRecord(BaseModel):
    """OAuth client. `owner` is set once and never changes afterward."""

    client_id: str
    secret_hash: str
    owner: str | None = None
    name: str
    scopes: list[str]
    redirect_uris: list[str] = Field(default_factory=list)
    grant_types: list[str] = Field(default_factory=lambda: ["authorization_code", "refresh_token"])
    response_types: list[str] = Field(default_factory=lambda: ["code"])
    token_endpoint_auth_method: str = "client_secret_post"
    dynamic: bool = False
    revoked: bool = False
    created_at: datetime
    last_used_at: datetime | None = None


class PendingAuthorization(BaseModel):
    """Authorization request parked while the user decides."""

    handle: str
    client_id: str
    redirect_uri: str
    state: str | None = None
    code_challenge: str
    code_challenge_method: str = "S256"
    scopes: list[str]
    created_at: datetime
    expires_at: datetime


class AuthorizationCodeRecord(BaseModel):
    """Single-use authorization code, stored under the hash of the code."""

    principal: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str = "S256"
    scopes: list[str]
    created_at: datetime
    expires_at: datetime
    consumed: bool = False


class RefreshTokenRecord(BaseModel):
    """Refresh token, stored under the hash of the token (never plaintext)."""

    token_hash: str
    principal: str
    client_id: str
    scopes: list[str]
    created_at: datetime
    expires_at: datetime
    revoked: bool = False
    last_used_at: datetime | None = None


# ============================================================================
# Tool records
# ============================================================================


class HttpMethod(str, Enum):
    """Outbound HTTP methods a tool may use."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    PATCH = "PATCH"

    @property
    def has_body(self) -> bool:
        return self in (HttpMethod.POST, HttpMethod.PUT, HttpMethod.PATCH)


class ParameterLocation(str, Enum):
    """Where a declared parameter is placed on the outbound request."""

    PATH = "path"
    QUERY = "query"
    BODY = "body"
    HEADER = "header"


class ToolParameter(BaseModel):
    """A declared tool argument."""

    name: str = Field(..., min_length=1, max_length=64)
    type: str = Field("string", description="JSON schema type")
    description: str = ""
    location: ParameterLocation = ParameterLocation.QUERY
    required: bool = True
    default: Any | None = None


class ToolSpec(BaseModel):
    """What a developer submits to publish a tool."""

    name: str
    description: str = Field("", max_length=2000)
    url: str = Field(..., min_length=1, description="URL template with {param} placeholders")
    method: HttpMethod = HttpMethod.GET
    parameters: list[ToolParameter] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float | None = Field(None, gt=0)
    price_minor: int = Field(0, ge=0)
    recipient_wallet: str | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Tool names are identifiers AI clients type; keep them plain."""
        if not TOOL_NAME_PATTERN.match(v):
            raise ValueError("name must be 1-64 characters of letters, digits, '_' or '-'")
        return v

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("url must be an absolute http(s) URL")
        return v

    @model_validator(mode="after")
    def validate_payment_target(self) -> "ToolSpec":
        """A priced tool must say where the money goes."""
        if self.price_minor > 0 and not self.recipient_wallet:
            raise ValueError("recipient_wallet is required when price_minor > 0")
        return self

    @model_validator(mode="after")
    def validate_path_placeholders(self) -> "ToolSpec":
        """Every URL placeholder is filled by a path parameter that always has a value."""
        declared = {p.name: p for p in self.parameters}
        for name in sorted(self.path_parameters()):
            param = declared.get(name)
            if param is None or param.location != ParameterLocation.PATH:
                raise ValueError(f"url placeholder {{{name}}} has no matching path parameter")
            if not param.required and param.default is None:
                raise ValueError(f"path parameter {name!r} must be required or have a default")
        return self

    def path_parameters(self) -> set[str]:
        """Names consumed by `{param}` placeholders in the URL template."""
        return set(PATH_PLACEHOLDER.findall(self.url))


class ToolRecord(ToolSpec):
    """A published tool as stored."""

    owner: str
    active: bool = True
    call_count: int = 0
    created_at: datetime
    updated_at: datetime

    @property
    def tool_id(self) -> str:
        return f"{self.owner}/{self.name}"


# ============================================================================
# Payment records
# ============================================================================


class PaymentStatus(str, Enum):
    """Settlement lifecycle. Transitions only move forward."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PROCESSING, PaymentStatus.FAILED}),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
}


class PaymentRecord(BaseModel):
    """One settlement attempt for one paid invocation."""

    payment_id: str
    payer: str
    tool_owner: str
    tool_name: str
    recipient_wallet: str
    amount_minor: int = Field(..., gt=0)
    status: PaymentStatus
    tx_reference: str | None = None
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None

    @model_validator(mode="after")
    def validate_completion(self) -> "PaymentRecord":
        if self.status == PaymentStatus.COMPLETED and not self.tx_reference:
            raise ValueError("a completed payment must carry a ledger transaction reference")
        return self

    @property
    def tool_id(self) -> str:
        return f"{self.tool_owner}/{self.tool_name}"


class BalanceSnapshot(BaseModel):
    """Local mirror of a payer's ledger balance. A hint, never the authority."""

    principal: str
    deposited_minor: int
    spent_minor: int
    fetched_at: datetime

    @property
    def available_minor(self) -> int:
        return self.deposited_minor - self.spent_minor
