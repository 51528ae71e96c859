"""License, usage and audit records — the persisted licensing state."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from uuid_extensions import uuid7

from src.core.constants import LIMIT_API_CALLS, LIMIT_EMPLOYEES, LIMIT_STORAGE


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC so they compare with ``utcnow()``."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def current_period(now: datetime | None = None) -> str:
    """Calendar-month usage bucket, e.g. ``"2025-01"``."""
    return (now or utcnow()).strftime("%Y-%m")


# ── Enums ────────────────────────────────────────────────────────

class LicenseStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class ModuleTier(str, Enum):
    STARTER = "starter"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"


class LimitType(str, Enum):
    EMPLOYEES = LIMIT_EMPLOYEES
    STORAGE = LIMIT_STORAGE
    API_CALLS = LIMIT_API_CALLS


class AuditEventType(str, Enum):
    VALIDATION_SUCCESS = "VALIDATION_SUCCESS"
    VALIDATION_FAILURE = "VALIDATION_FAILURE"
    RATE_LIMITED = "RATE_LIMITED"
    LIMIT_WARNING = "LIMIT_WARNING"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    LICENSE_CREATED = "LICENSE_CREATED"
    LICENSE_UPDATED = "LICENSE_UPDATED"
    MODULE_ACTIVATED = "MODULE_ACTIVATED"
    MODULE_DEACTIVATED = "MODULE_DEACTIVATED"


class AuditSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


DEFAULT_SEVERITY: dict[AuditEventType, AuditSeverity] = {
    AuditEventType.VALIDATION_SUCCESS: AuditSeverity.INFO,
    AuditEventType.VALIDATION_FAILURE: AuditSeverity.WARNING,
    AuditEventType.RATE_LIMITED: AuditSeverity.WARNING,
    AuditEventType.LIMIT_WARNING: AuditSeverity.WARNING,
    AuditEventType.LIMIT_EXCEEDED: AuditSeverity.CRITICAL,
    AuditEventType.LICENSE_CREATED: AuditSeverity.INFO,
    AuditEventType.LICENSE_UPDATED: AuditSeverity.INFO,
    AuditEventType.MODULE_ACTIVATED: AuditSeverity.INFO,
    AuditEventType.MODULE_DEACTIVATED: AuditSeverity.INFO,
}


# ── License ──────────────────────────────────────────────────────

@dataclass
class ModuleLimits:
    """Per-module quotas. ``None`` means unlimited."""

    employees: int | None = None
    storage: int | None = None  # bytes
    api_calls: int | None = None

    def get(self, limit_type: LimitType | str) -> int | None:
        return getattr(self, LimitType(limit_type).value)

    def to_dict(self) -> dict[str, int | None]:
        return {
            LIMIT_EMPLOYEES: self.employees,
            LIMIT_STORAGE: self.storage,
            LIMIT_API_CALLS: self.api_calls,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ModuleLimits:
        data = data or {}
        return cls(
            employees=data.get(LIMIT_EMPLOYEES),
            storage=data.get(LIMIT_STORAGE),
            api_calls=data.get(LIMIT_API_CALLS, data.get("apiCalls")),
        )


@dataclass
class ModuleGrant:
    """Enabled/tier/limits/expiry state of one module for one tenant."""

    key: str
    enabled: bool = True
    tier: ModuleTier = ModuleTier.STARTER
    limits: ModuleLimits = field(default_factory=ModuleLimits)
    activated_at: datetime | None = None
    expires_at: datetime | None = None

    def __post_init__(self) -> None:
        self.activated_at = ensure_utc(self.activated_at)
        self.expires_at = ensure_utc(self.expires_at)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return ensure_utc(self.expires_at) < (now or utcnow())

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "enabled": self.enabled,
            "tier": self.tier.value,
            "limits": self.limits.to_dict(),
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ModuleGrant:
        return cls(
            key=data["key"],
            enabled=bool(data.get("enabled", False)),
            tier=ModuleTier(data.get("tier") or ModuleTier.STARTER.value),
            limits=ModuleLimits.from_dict(data.get("limits")),
            activated_at=parse_datetime(data.get("activated_at")),
            expires_at=parse_datetime(data.get("expires_at")),
        )


@dataclass
class License:
    """Per-tenant entitlement record."""

    tenant_id: str
    subscription_id: str = ""
    status: LicenseStatus = LicenseStatus.ACTIVE
    modules: list[ModuleGrant] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def get_grant(self, module_key: str) -> ModuleGrant | None:
        for grant in self.modules:
            if grant.key == module_key:
                return grant
        return None

    def set_grant(self, grant: ModuleGrant) -> None:
        """Insert or replace the grant for ``grant.key`` (one grant per key)."""
        for i, existing in enumerate(self.modules):
            if existing.key == grant.key:
                self.modules[i] = grant
                return
        self.modules.append(grant)

    def copy(self) -> License:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "subscription_id": self.subscription_id,
            "status": self.status.value,
            "modules": [g.to_dict() for g in self.modules],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


# ── Usage Tracking ───────────────────────────────────────────────

@dataclass
class UsageWarning:
    limit_type: str
    percentage: int
    triggered_at: datetime = field(default_factory=utcnow)


@dataclass
class UsageTracking:
    """Per-tenant, per-module, per-month usage counters.

    ``limits`` is a snapshot taken when the record was created; it is not
    re-read from the license on every check.
    """

    tenant_id: str
    module_key: str
    period: str
    usage: dict[str, int] = field(
        default_factory=lambda: {LIMIT_EMPLOYEES: 0, LIMIT_STORAGE: 0, LIMIT_API_CALLS: 0}
    )
    limits: ModuleLimits = field(default_factory=ModuleLimits)
    warnings: list[UsageWarning] = field(default_factory=list)
    updated_at: datetime = field(default_factory=utcnow)

    def current(self, limit_type: LimitType | str) -> int:
        return self.usage.get(LimitType(limit_type).value, 0)

    def has_recent_warning(self, limit_type: str, within_seconds: float, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return any(
            w.limit_type == limit_type and (now - w.triggered_at).total_seconds() < within_seconds
            for w in self.warnings
        )


# ── Audit ────────────────────────────────────────────────────────

@dataclass
class AuditRecord:
    """Append-only audit entry for one licensing event."""

    tenant_id: str | None
    module_key: str
    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    audit_id: str = field(default_factory=lambda: str(uuid7()))


def parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value)))
