"""
FastAPI Dependencies - service access and bearer authentication.

NO DICTIONARIES - All dependencies return typed objects.
"""

from typing import Annotated

import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from toolgate.api.errors import MISSING_TOKEN
from toolgate.config import settings
from toolgate.exceptions import InsufficientScopeError, TokenVerificationError
from toolgate.models.domain import CallerContext
from toolgate.observability.logging import get_logger
from toolgate.observability.metrics import metrics
from toolgate.services.container import GatewayServices, build_services
from toolgate.services.token_codec import TokenFailure

logger = get_logger(__name__)

# Bearer token scheme; errors are raised by the dependencies themselves
bearer_scheme = HTTPBearer(auto_error=False)

_services: GatewayServices | None = None


def get_services() -> GatewayServices:
    """Get or create the process-wide service container."""
    global _services
    if _services is None:
        _services = build_services(settings)
    return _services


async def close_services() -> None:
    """Release the service container (for graceful shutdown)."""
    global _services
    if _services is not None:
        await _services.close()
        _services = None


ServicesDep = Annotated[GatewayServices, Depends(get_services)]


def _bearer_token(request: Request, credentials: HTTPAuthorizationCredentials | None) -> str:
    if credentials is None:
        # HTTPBearer yields None for a non-Bearer scheme too.
        if request.headers.get("Authorization"):
            raise TokenVerificationError(TokenFailure.MALFORMED.value)
        raise TokenVerificationError(MISSING_TOKEN)
    if credentials.scheme.lower() != "bearer" or not credentials.credentials:
        raise TokenVerificationError(TokenFailure.MALFORMED.value)
    return credentials.credentials


async def require_tool_caller(
    request: Request,
    services: ServicesDep,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CallerContext:
    """
    Auth Gate for tool invocation (REST and MCP).

    Raises:
        TokenVerificationError: missing, malformed or invalid token (401)
        InsufficientScopeError: token lacks the tools scope (403)
    """
    token = _bearer_token(request, credentials)
    try:
        claims = services.codec.verify(token, audience=services.settings.resource_audience)
    except TokenVerificationError as e:
        metrics.token_verifications_total.labels(outcome=e.reason).inc()
        logger.warning("access_token_rejected", reason=e.reason)
        raise

    if services.settings.tools_scope not in claims.scopes:
        metrics.token_verifications_total.labels(outcome="insufficient_scope").inc()
        raise InsufficientScopeError(services.settings.tools_scope, list(claims.scopes))

    metrics.token_verifications_total.labels(outcome="valid").inc()
    caller = CallerContext(
        principal=claims.subject, scopes=claims.scopes, client_id=claims.client_id
    )
    structlog.contextvars.bind_contextvars(principal=caller.principal, client_id=caller.client_id)
    return caller


async def get_session_principal(
    request: Request,
    services: ServicesDep,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    """
    Authenticate a signed-in user by their console session token.

    Resource access tokens are rejected here: wrong audience and wrong type.
    """
    token = _bearer_token(request, credentials)
    try:
        claims = services.codec.verify(
            token, audience=services.settings.session_audience, token_type="session"
        )
    except TokenVerificationError as e:
        logger.warning("session_token_rejected", reason=e.reason)
        raise
    structlog.contextvars.bind_contextvars(principal=claims.subject)
    return claims.subject


CallerDep = Annotated[CallerContext, Depends(require_tool_caller)]
SessionPrincipalDep = Annotated[str, Depends(get_session_principal)]
