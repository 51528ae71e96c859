"""FastAPI dependency injection — shared licensing services for routes and guards."""

from __future__ import annotations

import hmac
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, Request, status

from config.settings import Settings, get_settings
from src.api.db.licenses import SqlAuditSink, SqlLicenseStore, SqlUsageStore
from src.core.interfaces import AuditSink, LicenseStore, UsageStore
from src.core.logging import get_logger
from src.data.db import get_engine
from src.licensing.admin import LicenseAdmin
from src.licensing.audit import AuditEmitter
from src.licensing.cache import CachedLicenseStore
from src.licensing.rate_limiter import SlidingWindowRateLimiter
from src.licensing.store import InMemoryAuditSink, InMemoryLicenseStore, InMemoryUsageStore
from src.licensing.validator import LicenseValidator

log = get_logger(__name__)


@dataclass
class LicensingServices:
    """Everything a request needs to make and administer licensing decisions."""

    license_store: CachedLicenseStore
    usage_store: UsageStore
    audit_sink: AuditSink
    audit: AuditEmitter
    rate_limiter: SlidingWindowRateLimiter
    validator: LicenseValidator
    admin: LicenseAdmin


def build_services(
    settings: Settings,
    license_store: LicenseStore,
    usage_store: UsageStore,
    audit_sink: AuditSink,
) -> LicensingServices:
    """Wire stores, cache, rate limiter, audit and validator together."""
    cached = CachedLicenseStore(license_store, ttl_seconds=settings.license_cache_ttl_seconds)
    audit = AuditEmitter(audit_sink)
    rate_limiter = SlidingWindowRateLimiter(
        window_seconds=settings.rate_limit_window_seconds,
        max_requests=settings.rate_limit_max_requests,
    )
    validator = LicenseValidator(
        cached,
        usage_store,
        rate_limiter,
        audit,
        core_module_key=settings.core_module_key,
        audit_success_events=settings.audit_success_events,
        timeout_seconds=settings.validation_timeout_seconds,
        warning_threshold_pct=settings.usage_warning_threshold_pct,
    )
    admin = LicenseAdmin(
        cached,
        usage_store,
        audit,
        core_module_key=settings.core_module_key,
        invalidation_hooks=[cached.invalidate],
    )
    return LicensingServices(
        license_store=cached,
        usage_store=usage_store,
        audit_sink=audit_sink,
        audit=audit,
        rate_limiter=rate_limiter,
        validator=validator,
        admin=admin,
    )


def build_memory_services(settings: Settings | None = None) -> LicensingServices:
    return build_services(
        settings or get_settings(),
        InMemoryLicenseStore(),
        InMemoryUsageStore(),
        InMemoryAuditSink(),
    )


async def build_configured_services(settings: Settings | None = None) -> LicensingServices:
    """Build services for the configured storage backend."""
    settings = settings or get_settings()
    if settings.storage_backend == "postgres":
        engine = await get_engine()
        log.info("licensing_backend_selected", backend="postgres")
        return build_services(
            settings,
            SqlLicenseStore(engine),
            SqlUsageStore(engine),
            SqlAuditSink(engine),
        )
    log.info("licensing_backend_selected", backend="memory")
    return build_memory_services(settings)


# ── Request-scoped accessors ──────────────────────────────────────


def get_services(request: Request) -> LicensingServices:
    services: LicensingServices | None = getattr(request.app.state, "licensing", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Licensing services not initialized",
        )
    return services


def get_validator(services: LicensingServices = Depends(get_services)) -> LicenseValidator:
    return services.validator


def get_admin(services: LicensingServices = Depends(get_services)) -> LicenseAdmin:
    return services.admin


# ── Admin auth ────────────────────────────────────────────────────


async def require_admin(x_admin_key: str | None = Header(default=None)) -> None:
    """Platform-admin gate for license mutations.

    With no ``ADMIN_API_KEY`` configured (dev only) the gate is open.
    """
    expected = get_settings().admin_api_key.get_secret_value()
    if not expected:
        return
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
        )
