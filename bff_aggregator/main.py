"""
BFF Aggregator Application

Main FastAPI application entry point.
"""

import traceback
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bff_aggregator import __version__
from bff_aggregator.bff.router import operations_router, router as bff_router
from bff_aggregator.config import Settings, settings as default_settings
from bff_aggregator.core.exceptions import AppException
from bff_aggregator.core.logging import configure_logging
from bff_aggregator.core.runtime import AggregationRuntime
from bff_aggregator.schemas.catalog import Catalog
from bff_aggregator.services.catalog_service import load_catalog

logger = structlog.get_logger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# LIFESPAN MANAGEMENT
# ═══════════════════════════════════════════════════════════════════════════════


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Load the catalog on startup and close upstream clients on shutdown.

    A runtime attached by ``create_application`` is used as is.
    """
    settings: Settings = app.state.settings

    # ─────────────────────────────────────────────────────────────────────────
    # STARTUP
    # ─────────────────────────────────────────────────────────────────────────
    if getattr(app.state, "runtime", None) is None:
        catalog = load_catalog(settings.catalog_path)
        app.state.runtime = AggregationRuntime.build(catalog, settings)

    runtime: AggregationRuntime = app.state.runtime
    logger.info(
        "application_started",
        app=settings.app_name,
        environment=settings.app_env,
        debug=settings.debug,
        bff_prefix=settings.bff_prefix,
        profiles=[profile.id for profile in runtime.catalog.profiles],
        services=[service.id for service in runtime.catalog.services],
    )

    yield

    # ─────────────────────────────────────────────────────────────────────────
    # SHUTDOWN
    # ─────────────────────────────────────────────────────────────────────────
    await runtime.aclose()
    logger.info("application_stopped", app=settings.app_name)


# ═══════════════════════════════════════════════════════════════════════════════
# EXCEPTION HANDLERS
# ═══════════════════════════════════════════════════════════════════════════════


def _request_id_headers(request: Request) -> dict[str, str]:
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        return {}
    return {request.app.state.settings.request_id_header: request_id}


def register_exception_handlers(app: FastAPI) -> None:
    """Register custom exception handlers."""

    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException):
        """Handle application exceptions (routing, aggregation, budget)."""
        headers = {**(exc.headers or {}), **_request_id_headers(request)}
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "detail": exc.detail,
                "status_code": exc.status_code,
                "error_code": exc.error_code,
                **exc.extra(),
            },
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        """Malformed path, query or body (e.g. a non-object JSON body)."""
        problems = [
            {"location": list(error["loc"]), "message": error["msg"], "type": error["type"]}
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=422,
            content={
                "success": False,
                "detail": "Request could not be parsed",
                "status_code": 422,
                "error_code": "invalid_request",
                "errors": problems,
            },
            headers=_request_id_headers(request),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.exception("unhandled_exception", error_type=type(exc).__name__)

        content = {
            "success": False,
            "detail": "An unexpected error occurred. Please try again later.",
            "status_code": status.HTTP_500_INTERNAL_SERVER_ERROR,
            "error_code": "internal_error",
        }
        if app.state.settings.debug:
            content.update({
                "detail": str(exc),
                "type": type(exc).__name__,
                "traceback": traceback.format_exc(),
            })
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=content,
            headers=_request_id_headers(request),
        )


# ═══════════════════════════════════════════════════════════════════════════════
# ROUTER REGISTRATION
# ═══════════════════════════════════════════════════════════════════════════════


def register_routers(app: FastAPI, settings: Settings) -> None:
    """Register all API routers."""

    # ─────────────────────────────────────────────────────────────────────────
    # Health Check Endpoints
    # ─────────────────────────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], summary="Liveness probe")
    async def health_check() -> dict:
        """The process is up; says nothing about upstream services."""
        return {
            "status": "healthy",
            "service": settings.app_name,
            "environment": settings.app_env,
            "version": __version__,
        }

    @app.get(
        "/ready",
        tags=["Health"],
        summary="Readiness probe",
        description="Ready once the catalog is loaded; lists services whose circuit is not closed.",
    )
    async def readiness_check(request: Request) -> JSONResponse:
        """Services with an open circuit are listed but do not affect readiness."""
        runtime = getattr(request.app.state, "runtime", None)
        if runtime is None:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "checks": {"catalog": "not_loaded"}},
            )

        open_circuits = [
            snapshot["service_id"]
            for snapshot in runtime.controller.snapshots()
            if snapshot["state"] != "closed"
        ]
        return JSONResponse(
            content={
                "status": "ready",
                "checks": {
                    "catalog": "loaded",
                    "degraded_services": open_circuits,
                },
            },
        )

    @app.get("/", tags=["Root"], summary="Service index")
    async def root() -> dict:
        return {
            "service": settings.app_name,
            "docs": "/docs" if settings.debug else None,
            "health": "/health",
            "ready": "/ready",
            "bff": settings.bff_prefix,
            "ops": settings.ops_prefix,
        }

    # ─────────────────────────────────────────────────────────────────────────
    # BFF Routers
    # ─────────────────────────────────────────────────────────────────────────

    app.include_router(
        operations_router,
        prefix=settings.ops_prefix,
    )

    app.include_router(
        bff_router,
        prefix=settings.bff_prefix,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# APPLICATION FACTORY
# ═══════════════════════════════════════════════════════════════════════════════


def create_application(
    settings: Settings | None = None,
    catalog: Catalog | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    runtime: AggregationRuntime | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Without ``runtime`` or ``catalog`` the lifespan loads the catalog from
    ``settings.catalog_path`` on startup.

    Args:
        settings: Settings to use instead of the environment-derived ones
        catalog: Catalog to use instead of reading ``settings.catalog_path``
        transport: httpx transport for upstream clients (used with ``catalog``)
        runtime: Fully built runtime; takes precedence over ``catalog``

    Returns:
        FastAPI application with handlers and routers registered
    """
    settings = settings or default_settings
    configure_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        description="""
## Backend for Frontend Aggregator

Fans out one client request to several upstream services, merges the
results and shapes them for the calling client profile.

### API Structure

- **`/bff/{operation}`** - Aggregate for the profile in `X-Client-Profile`
- **`/bff/profiles/{profile}/{operation}`** - Aggregate for a path-named profile
- **`/ops/circuits`** - Upstream circuit breakers
- **`/ops/catalog`** - Loaded profiles and operations
- **`/health`** - Health check
- **`/ready`** - Readiness check
        """,
        version=__version__,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    if runtime is None and catalog is not None:
        runtime = AggregationRuntime.build(catalog, settings, transport=transport)
    app.state.runtime = runtime

    # ─────────────────────────────────────────────────────────────────────────
    # CORS Middleware
    # ─────────────────────────────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[settings.request_id_header],
    )

    register_exception_handlers(app)
    register_routers(app, settings)

    return app


# ═══════════════════════════════════════════════════════════════════════════════
# APPLICATION INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

app = create_application()


# ═══════════════════════════════════════════════════════════════════════════════
# DEVELOPMENT SERVER
# ═══════════════════════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "bff_aggregator.main:app",
        host="0.0.0.0",
        port=8000,
        reload=default_settings.debug,
        log_level="debug" if default_settings.debug else "info",
        access_log=True,
    )
