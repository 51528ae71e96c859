"""Licensing engine observability — rate-limiter and validation counters."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from src.api.deps import LicensingServices, get_services, require_admin

router = APIRouter(prefix="/licensing", tags=["licensing"], dependencies=[Depends(require_admin)])


@router.get("/rate-limits")
async def rate_limit_stats(services: LicensingServices = Depends(get_services)) -> dict[str, Any]:
    return services.validator.get_rate_limit_stats()


@router.get("/stats")
async def processing_stats(services: LicensingServices = Depends(get_services)) -> dict[str, Any]:
    """Validation counters plus cache and audit pipeline state."""
    return {
        "processing": services.validator.get_processing_stats(),
        "cache": services.license_store.stats(),
        "audit": services.audit.stats(),
    }
