"""
Main Application - FastAPI application setup.
"""

import asyncio
import contextlib
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from starlette.middleware.base import BaseHTTPMiddleware

from toolgate.api.dependencies import ServicesDep, close_services, get_services
from toolgate.api.errors import error_response
from toolgate.api.mcp_routes import router as mcp_router
from toolgate.api.oauth_routes import router as oauth_router
from toolgate.api.tool_routes import router as tool_router
from toolgate.config import settings
from toolgate.db.migration_runner import run_migrations
from toolgate.db.session import close_engines
from toolgate.exceptions import GatewayError
from toolgate.observability import get_logger, metrics, setup_logging, setup_tracing
from toolgate.observability.tracing import instrument_fastapi

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        store_backend=settings.store_backend,
        ledger_backend=settings.ledger_backend,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    if settings.run_migrations and settings.store_backend == "database":
        await asyncio.to_thread(run_migrations)

    services = get_services()
    sweeper_task = asyncio.create_task(
        services.sweeper.run_forever(settings.cleanup_interval_seconds)
    )

    yield

    # Shutdown
    logger.info("application_shutting_down")
    sweeper_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper_task
    await close_services()
    await close_engines()
    logger.info("resources_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(GatewayError)
async def gateway_exception_handler(request: Request, exc: GatewayError) -> JSONResponse:
    """Render gateway errors as protocol-appropriate JSON."""
    response = error_response(exc)
    if response.status_code >= 500:
        metrics.record_error(type(exc).__name__, request.url.path)
        logger.error(
            "request_error",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
    else:
        logger.info(
            "request_refused",
            path=request.url.path,
            status_code=response.status_code,
            error_type=type(exc).__name__,
        )
    return response


# Add validation error logging handler
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Log detailed validation errors for debugging."""
    sanitized_errors = []
    for error in exc.errors():
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        # ctx may contain non-serializable objects
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(
        status_code=422,
        content={
            "error": "invalid_request",
            "error_description": "Request validation failed",
            "detail": sanitized_errors,
        },
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content={"error": "server_error", "error_description": "Internal server error"},
    )


# Setup tracing
setup_tracing()
instrument_fastapi(app)


# Proxy headers middleware - trust X-Forwarded-* headers from the load balancer
class ProxyHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to handle X-Forwarded-* headers from reverse proxy."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        forwarded_proto = request.headers.get("X-Forwarded-Proto")
        if forwarded_proto:
            request.scope["scheme"] = forwarded_proto
        return await call_next(request)


app.add_middleware(ProxyHeadersMiddleware)

# CORS middleware - MCP clients and the approval page call from browsers
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["WWW-Authenticate"],
)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")

    logger.info(
        "request_started",
        method=request.method,
        path=request.url.path,
        request_id=request_id,
    )

    # Label by route template so per-owner paths do not explode cardinality
    endpoint = request.url.path
    method = request.method
    metrics.http_requests_in_progress.labels(endpoint="all", method=method).inc()

    try:
        response = await call_next(request)
        duration = time.time() - start_time
        route = request.scope.get("route")
        endpoint = getattr(route, "path", endpoint)

        metrics.record_http_request(endpoint, method, response.status_code, duration)

        logger.info(
            "request_completed",
            method=method,
            path=request.url.path,
            status_code=response.status_code,
            duration_seconds=duration,
            request_id=request_id,
        )

        return response
    except Exception as e:
        duration = time.time() - start_time
        metrics.record_http_request(endpoint, method, 500, duration)
        metrics.record_error(type(e).__name__, "http_request")

        logger.error(
            "request_failed",
            method=method,
            path=endpoint,
            error=str(e),
            duration_seconds=duration,
            request_id=request_id,
            exc_info=True,
        )
        raise
    finally:
        metrics.http_requests_in_progress.labels(endpoint="all", method=method).dec()


# Register routes
app.include_router(oauth_router)  # Discovery, OAuth endpoints, client management
app.include_router(tool_router)  # Tool management and REST invocation
app.include_router(mcp_router)  # MCP JSON-RPC endpoint


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/health")
async def health(services: ServicesDep) -> JSONResponse:
    """Liveness plus a check of the state store."""
    try:
        await services.store.ping()
    except Exception as e:
        logger.warning("health_check_failed", error=str(e))
        return JSONResponse(status_code=503, content={"status": "unhealthy", "store": "down"})
    return JSONResponse(content={"status": "healthy", "store": "up"})


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    if not settings.metrics_enabled:
        return Response(status_code=404)
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "toolgate.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
