"""License administration endpoints — platform-admin only."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.api.deps import LicensingServices, get_admin, get_services, require_admin
from src.api.models.schemas import (
    AuditRecordOut,
    EnableModuleRequest,
    LicenseCreate,
    LicenseOut,
    ModuleLimitsIn,
    RenewModuleRequest,
    StatusUpdate,
    TierUpdate,
    UsageOut,
)
from src.core.constants import DEFAULT_EXPIRING_WITHIN_DAYS
from src.licensing.admin import LicenseAdmin
from src.licensing.models import AuditEventType, AuditSeverity, current_period

router = APIRouter(prefix="/licenses", tags=["licenses"], dependencies=[Depends(require_admin)])


@router.post("", response_model=LicenseOut, status_code=status.HTTP_201_CREATED)
async def provision_license(
    body: LicenseCreate,
    admin: LicenseAdmin = Depends(get_admin),
) -> LicenseOut:
    """Provision a tenant license. The core module is always included."""
    lic = await admin.provision(
        body.tenant_id,
        body.subscription_id,
        [m.to_domain() for m in body.modules],
    )
    return LicenseOut.from_license(lic)


@router.get("/expiring", response_model=list[LicenseOut])
async def list_expiring(
    within_days: int = Query(default=DEFAULT_EXPIRING_WITHIN_DAYS, ge=0, le=365),
    admin: LicenseAdmin = Depends(get_admin),
) -> list[LicenseOut]:
    """Licenses with at least one enabled grant expiring within ``within_days``."""
    return [LicenseOut.from_license(lic) for lic in await admin.find_expiring(within_days)]


@router.get("/{tenant_id}", response_model=LicenseOut)
async def get_license(
    tenant_id: str,
    services: LicensingServices = Depends(get_services),
) -> LicenseOut:
    lic = await services.license_store.get(tenant_id)
    if lic is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="License not found",
        )
    return LicenseOut.from_license(lic)


@router.put("/{tenant_id}/status", response_model=LicenseOut)
async def set_status(
    tenant_id: str,
    body: StatusUpdate,
    admin: LicenseAdmin = Depends(get_admin),
) -> LicenseOut:
    return LicenseOut.from_license(await admin.set_status(tenant_id, body.status))


# ── Module grants ─────────────────────────────────────────────────


@router.post("/{tenant_id}/modules/{module_key}/enable", response_model=LicenseOut)
async def enable_module(
    tenant_id: str,
    module_key: str,
    body: EnableModuleRequest,
    admin: LicenseAdmin = Depends(get_admin),
) -> LicenseOut:
    lic = await admin.enable_module(
        tenant_id,
        module_key,
        tier=body.tier,
        limits=body.limits.to_domain() if body.limits is not None else None,
        expires_at=body.expires_at,
    )
    return LicenseOut.from_license(lic)


@router.post("/{tenant_id}/modules/{module_key}/disable", response_model=LicenseOut)
async def disable_module(
    tenant_id: str,
    module_key: str,
    admin: LicenseAdmin = Depends(get_admin),
) -> LicenseOut:
    return LicenseOut.from_license(await admin.disable_module(tenant_id, module_key))


@router.post("/{tenant_id}/modules/{module_key}/renew", response_model=LicenseOut)
async def renew_module(
    tenant_id: str,
    module_key: str,
    body: RenewModuleRequest,
    admin: LicenseAdmin = Depends(get_admin),
) -> LicenseOut:
    lic = await admin.renew_module(
        tenant_id,
        module_key,
        expires_at=body.expires_at,
        extend_days=body.extend_days,
    )
    return LicenseOut.from_license(lic)


@router.put("/{tenant_id}/modules/{module_key}/limits", response_model=LicenseOut)
async def update_limits(
    tenant_id: str,
    module_key: str,
    body: ModuleLimitsIn,
    admin: LicenseAdmin = Depends(get_admin),
) -> LicenseOut:
    return LicenseOut.from_license(await admin.update_limits(tenant_id, module_key, body.to_domain()))


@router.put("/{tenant_id}/modules/{module_key}/tier", response_model=LicenseOut)
async def change_tier(
    tenant_id: str,
    module_key: str,
    body: TierUpdate,
    admin: LicenseAdmin = Depends(get_admin),
) -> LicenseOut:
    return LicenseOut.from_license(await admin.change_tier(tenant_id, module_key, body.tier))


# ── Usage & audit ─────────────────────────────────────────────────


@router.get("/{tenant_id}/usage", response_model=list[UsageOut])
async def get_usage(
    tenant_id: str,
    period: str | None = Query(default=None, pattern=r"^\d{4}-\d{2}$"),
    services: LicensingServices = Depends(get_services),
) -> list[UsageOut]:
    """Usage records for ``period`` (YYYY-MM), the current month by default."""
    records = await services.usage_store.list_for_tenant(tenant_id, period or current_period())
    return [UsageOut.from_tracking(rec) for rec in records]


@router.get("/{tenant_id}/audit", response_model=list[AuditRecordOut])
async def get_audit(
    tenant_id: str,
    module_key: str | None = None,
    event_type: AuditEventType | None = None,
    severity: AuditSeverity | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    services: LicensingServices = Depends(get_services),
) -> list[AuditRecordOut]:
    records = await services.audit_sink.query(
        tenant_id=tenant_id,
        module_key=module_key,
        event_type=event_type,
        severity=severity,
        limit=limit,
    )
    return [AuditRecordOut.from_record(rec) for rec in records]
