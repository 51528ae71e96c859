"""Pydantic V2 request/response schemas for the HRSM licensing API."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, Field, model_validator

from src.licensing.models import (
    AuditRecord,
    License,
    LicenseStatus,
    ModuleGrant,
    ModuleLimits,
    ModuleTier,
    UsageTracking,
    ensure_utc,
)

# Naive timestamps are read as UTC.
UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


# ── Licenses ─────────────────────────────────────────────────────

class ModuleLimitsIn(BaseModel):
    """Quota values. Omit or send 0 for unlimited."""

    employees: int | None = Field(default=None, ge=0)
    storage: int | None = Field(default=None, ge=0)
    api_calls: int | None = Field(default=None, ge=0)

    def to_domain(self) -> ModuleLimits:
        return ModuleLimits(employees=self.employees, storage=self.storage, api_calls=self.api_calls)


class ModuleGrantIn(BaseModel):
    key: str = Field(..., min_length=1, max_length=64)
    enabled: bool = True
    tier: ModuleTier = ModuleTier.STARTER
    limits: ModuleLimitsIn = Field(default_factory=ModuleLimitsIn)
    expires_at: UtcDatetime | None = None

    def to_domain(self) -> ModuleGrant:
        return ModuleGrant(
            key=self.key,
            enabled=self.enabled,
            tier=self.tier,
            limits=self.limits.to_domain(),
            expires_at=self.expires_at,
        )


class ModuleGrantOut(BaseModel):
    key: str
    enabled: bool
    tier: ModuleTier
    limits: dict[str, int | None]
    activated_at: datetime | None = None
    expires_at: datetime | None = None

    @classmethod
    def from_grant(cls, grant: ModuleGrant) -> ModuleGrantOut:
        return cls(
            key=grant.key,
            enabled=grant.enabled,
            tier=grant.tier,
            limits=grant.limits.to_dict(),
            activated_at=grant.activated_at,
            expires_at=grant.expires_at,
        )


class LicenseCreate(BaseModel):
    """Request body for provisioning a tenant license."""

    tenant_id: str = Field(..., min_length=1, max_length=128)
    subscription_id: str = ""
    modules: list[ModuleGrantIn] = Field(default_factory=list)


class LicenseOut(BaseModel):
    tenant_id: str
    subscription_id: str
    status: LicenseStatus
    modules: list[ModuleGrantOut]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_license(cls, lic: License) -> LicenseOut:
        return cls(
            tenant_id=lic.tenant_id,
            subscription_id=lic.subscription_id,
            status=lic.status,
            modules=[ModuleGrantOut.from_grant(g) for g in lic.modules],
            created_at=lic.created_at,
            updated_at=lic.updated_at,
        )


class EnableModuleRequest(BaseModel):
    tier: ModuleTier = ModuleTier.STARTER
    limits: ModuleLimitsIn | None = None
    expires_at: UtcDatetime | None = None


class RenewModuleRequest(BaseModel):
    """Exactly one of ``expires_at`` or ``extend_days``."""

    expires_at: UtcDatetime | None = None
    extend_days: int | None = Field(default=None, ge=1, le=3650)

    @model_validator(mode="after")
    def _exactly_one(self) -> RenewModuleRequest:
        if (self.expires_at is None) == (self.extend_days is None):
            raise ValueError("Pass exactly one of expires_at or extend_days")
        return self


class TierUpdate(BaseModel):
    tier: ModuleTier


class StatusUpdate(BaseModel):
    status: LicenseStatus


# ── Usage ─────────────────────────────────────────────────────────

class UsageOut(BaseModel):
    tenant_id: str
    module_key: str
    period: str
    usage: dict[str, int]
    limits: dict[str, int | None]
    updated_at: datetime

    @classmethod
    def from_tracking(cls, rec: UsageTracking) -> UsageOut:
        return cls(
            tenant_id=rec.tenant_id,
            module_key=rec.module_key,
            period=rec.period,
            usage=dict(rec.usage),
            limits=rec.limits.to_dict(),
            updated_at=rec.updated_at,
        )


# ── Audit ─────────────────────────────────────────────────────────

class AuditRecordOut(BaseModel):
    audit_id: str
    tenant_id: str | None
    module_key: str
    event_type: str
    severity: str
    context: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime

    @classmethod
    def from_record(cls, rec: AuditRecord) -> AuditRecordOut:
        return cls(
            audit_id=rec.audit_id,
            tenant_id=rec.tenant_id,
            module_key=rec.module_key,
            event_type=rec.event_type.value,
            severity=rec.severity.value,
            context=rec.context,
            timestamp=rec.timestamp,
        )


# ── Payroll example ───────────────────────────────────────────────

class EmployeeIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: str = ""


class EmployeeBatchCreate(BaseModel):
    """Employees to add to payroll. Each one counts against the employees quota."""

    employees: list[EmployeeIn] = Field(..., min_length=1)


class EmployeeBatchOut(BaseModel):
    added: int
    current_usage: int
    limit: int | None = None


# ── Generic ───────────────────────────────────────────────────────

class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    environment: str = "dev"
    licensing: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    detail: str
