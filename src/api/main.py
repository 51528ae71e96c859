"""HRSM licensing FastAPI application — entry point for the API server."""

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import get_settings
from src.api.deps import LicensingServices, build_configured_services
from src.api.guards import LicenseDenied
from src.api.middleware import TenantMiddleware
from src.core.exceptions import InvalidModuleError, LicenseNotFoundError, LicenseStoreError
from src.core.logging import get_logger, setup_logging
from src.data.db import close_engine

log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup/shutdown lifecycle — wire services, run the rate-limit sweeper."""
    settings = get_settings()
    setup_logging(settings.log_level)
    log.info("api_starting", env=settings.hrsm_env, backend=settings.storage_backend)

    services: LicensingServices | None = getattr(app.state, "licensing", None)
    if services is None:
        services = await build_configured_services(settings)
        app.state.licensing = services

    sweeper = asyncio.create_task(
        services.rate_limiter.run_sweeper(settings.rate_limit_sweep_interval_seconds)
    )
    try:
        yield
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        await services.audit.drain()
        await close_engine()
        log.info("api_shutdown")


# ── Exception handlers ────────────────────────────────────────────


async def _license_denied_handler(request: Request, exc: LicenseDenied) -> JSONResponse:
    headers: dict[str, str] = {}
    if exc.verdict.retry_after_seconds is not None:
        headers["Retry-After"] = str(exc.verdict.retry_after_seconds)
    return JSONResponse(status_code=exc.status_code, content=exc.to_response(), headers=headers)


async def _store_error_handler(request: Request, exc: LicenseStoreError) -> JSONResponse:
    log.error("license_validation_failed", path=request.url.path, error=exc.message, context=exc.context)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "LICENSE_VALIDATION_FAILED",
            "message": "License validation failed. Please try again.",
        },
    )


async def _not_found_handler(request: Request, exc: LicenseNotFoundError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"error": "LICENSE_NOT_FOUND", "message": exc.message},
    )


async def _invalid_module_handler(request: Request, exc: InvalidModuleError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "INVALID_REQUEST", "message": exc.message},
    )


def create_app(services: LicensingServices | None = None) -> FastAPI:
    """Build and return the FastAPI application.

    ``services`` pre-wires the licensing components (tests, embedding);
    otherwise the lifespan builds them for the configured backend.
    """
    settings = get_settings()

    app = FastAPI(
        title="HRSM Licensing API",
        description="Module license validation and enforcement for HRSM tenants",
        version="0.1.0",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.licensing = services

    app.add_exception_handler(LicenseDenied, _license_denied_handler)
    app.add_exception_handler(LicenseStoreError, _store_error_handler)
    app.add_exception_handler(LicenseNotFoundError, _not_found_handler)
    app.add_exception_handler(InvalidModuleError, _invalid_module_handler)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url, "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(TenantMiddleware)

    # Register routers
    from src.api.routes.health import router as health_router
    from src.api.routes.licenses import router as licenses_router
    from src.api.routes.licensing import router as licensing_router
    from src.api.routes.modules import build_router as build_modules_router

    app.include_router(health_router, prefix="/api")
    app.include_router(licensing_router, prefix="/api")
    app.include_router(licenses_router, prefix="/api")
    core_module_key = services.validator.core_module_key if services is not None else settings.core_module_key
    app.include_router(build_modules_router(core_module_key), prefix="/api")

    return app


app = create_app()
