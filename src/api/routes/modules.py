"""Module-scoped routes — every path under ``/modules/<key>`` is license-gated.

The feature endpoints themselves live in the HR application; these routes
show how the guards compose and give tenants a cheap way to probe access.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from src.api.deps import get_validator
from src.api.guards import (
    attach_license_info,
    check_usage_limit,
    require_module_license,
    require_multiple_module_licenses,
    resolve_tenant_id,
)
from src.api.models.schemas import EmployeeBatchCreate, EmployeeBatchOut
from src.core.constants import (
    KNOWN_MODULES,
    LIMIT_EMPLOYEES,
    MODULE_ATTENDANCE,
    MODULE_CORE_HR,
    MODULE_PAYROLL,
    MODULE_REPORTING,
)
from src.licensing.validator import LicenseValidator
from src.licensing.verdict import Allow

_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


async def _employee_count(request: Request) -> int:
    body = await request.json()
    return len(body.get("employees", [])) if isinstance(body, dict) else 1


def _license_summary(allow: Allow | None) -> dict[str, Any]:
    if allow is None:
        return {"licensed": False}
    return {
        "licensed": True,
        "tier": allow.tier.value if allow.tier else None,
        "limits": allow.limits.to_dict() if allow.limits else None,
        "expires_at": allow.expires_at.isoformat() if allow.expires_at else None,
    }


# ── Payroll ───────────────────────────────────────────────────────

payroll_router = APIRouter(prefix=f"/modules/{MODULE_PAYROLL}", tags=[MODULE_PAYROLL])


@payroll_router.post(
    "/employees",
    response_model=EmployeeBatchOut,
    dependencies=[Depends(require_module_license(MODULE_PAYROLL))],
)
async def add_payroll_employees(
    body: EmployeeBatchCreate,
    request: Request,
    usage: Allow = Depends(check_usage_limit(MODULE_PAYROLL, LIMIT_EMPLOYEES, _employee_count)),
    validator: LicenseValidator = Depends(get_validator),
) -> EmployeeBatchOut:
    """Add employees to payroll, committing the employees quota on success."""
    tenant_id = resolve_tenant_id(request)
    assert tenant_id is not None
    added = len(body.employees)
    tracking = await validator.record_usage(tenant_id, MODULE_PAYROLL, LIMIT_EMPLOYEES, added)
    return EmployeeBatchOut(
        added=added,
        current_usage=tracking.current(LIMIT_EMPLOYEES) if tracking else added,
        limit=usage.limit,
    )


# ── Cross-module reports ──────────────────────────────────────────

reports_router = APIRouter(prefix="/reports", tags=["reports"])


@reports_router.get("/payroll-attendance")
async def payroll_attendance_report(
    licenses: dict[str, Allow] = Depends(
        require_multiple_module_licenses([MODULE_REPORTING, MODULE_PAYROLL, MODULE_ATTENDANCE])
    ),
) -> dict[str, Any]:
    return {"modules": {key: _license_summary(allow) for key, allow in licenses.items()}}


# ── Dashboard widgets ─────────────────────────────────────────────


def _widget_route(dashboard_router: APIRouter, module_key: str) -> None:
    @dashboard_router.get(f"/{module_key}", name=f"{module_key}_widget")
    async def module_widget(
        allow: Allow | None = Depends(attach_license_info(module_key)),
    ) -> dict[str, Any]:
        return {"module_key": module_key, **_license_summary(allow)}


# ── Generic module gates ──────────────────────────────────────────


def _module_router(module_key: str) -> APIRouter:
    module_router = APIRouter(
        prefix=f"/modules/{module_key}",
        tags=[module_key],
        dependencies=[Depends(require_module_license(module_key))],
    )

    @module_router.api_route("/{path:path}", methods=_METHODS, name=f"{module_key}_access")
    async def module_access(path: str, request: Request) -> dict[str, Any]:
        allow: Allow = request.state.module_license
        return {
            "module_key": module_key,
            "path": path,
            "method": request.method,
            **_license_summary(allow),
        }

    return module_router


def module_keys(core_module_key: str = MODULE_CORE_HR) -> list[str]:
    """Routable modules: the configured core key plus every non-core module."""
    return [core_module_key, *(k for k in KNOWN_MODULES if k not in (MODULE_CORE_HR, core_module_key))]


def build_router(core_module_key: str = MODULE_CORE_HR) -> APIRouter:
    router = APIRouter()
    router.include_router(payroll_router)
    router.include_router(reports_router)

    dashboard_router = APIRouter(prefix="/dashboard/widgets", tags=["dashboard"])
    keys = module_keys(core_module_key)
    for key in keys:
        _widget_route(dashboard_router, key)
    router.include_router(dashboard_router)
    for key in keys:
        router.include_router(_module_router(key))
    return router
