"""In-memory license, usage and audit stores.

Used for development, tests and single-process deployments. The PostgreSQL
backed equivalents live in ``src.api.db.licenses``. Records are copied on the
way in and out so callers can never mutate stored state by accident.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import timedelta

from src.core.interfaces import AuditSink, LicenseMutation, LicenseStore, UsageStore
from src.core.logging import get_logger
from src.licensing.models import (
    AuditEventType,
    AuditRecord,
    AuditSeverity,
    License,
    LicenseStatus,
    LimitType,
    ModuleLimits,
    UsageTracking,
    UsageWarning,
    utcnow,
)

log = get_logger(__name__)


class InMemoryLicenseStore(LicenseStore):
    """Dict-backed license store keyed by tenant_id."""

    def __init__(self) -> None:
        self._licenses: dict[str, License] = {}
        self._lock = asyncio.Lock()

    async def get(self, tenant_id: str) -> License | None:
        lic = self._licenses.get(tenant_id)
        return lic.copy() if lic is not None else None

    async def upsert(self, tenant_id: str, mutation: LicenseMutation) -> License:
        async with self._lock:
            current = self._licenses.get(tenant_id)
            updated = mutation(current.copy() if current is not None else None)
            if updated.tenant_id != tenant_id:
                raise ValueError(f"mutation changed tenant_id {tenant_id!r} -> {updated.tenant_id!r}")
            updated.updated_at = utcnow()
            self._licenses[tenant_id] = updated.copy()
        log.debug("license_upserted", tenant_id=tenant_id, modules=len(updated.modules))
        return updated

    async def find_expiring(self, within_days: int) -> list[License]:
        now = utcnow()
        horizon = now + timedelta(days=within_days)
        result = []
        for lic in self._licenses.values():
            if lic.status != LicenseStatus.ACTIVE:
                continue
            if any(
                g.enabled and g.expires_at is not None and now <= g.expires_at <= horizon
                for g in lic.modules
            ):
                result.append(lic.copy())
        return result

    async def find_by_module(self, module_key: str, enabled_only: bool = True) -> list[License]:
        result = []
        for lic in self._licenses.values():
            grant = lic.get_grant(module_key)
            if grant is None or (enabled_only and not grant.enabled):
                continue
            result.append(lic.copy())
        return result

    async def delete(self, tenant_id: str) -> bool:
        async with self._lock:
            return self._licenses.pop(tenant_id, None) is not None


class InMemoryUsageStore(UsageStore):
    """Dict-backed usage counters keyed by (tenant_id, module_key, period)."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str, str], UsageTracking] = {}
        self._lock = asyncio.Lock()

    async def find_by_period(
        self, tenant_id: str, module_key: str, period: str
    ) -> UsageTracking | None:
        rec = self._records.get((tenant_id, module_key, period))
        return _copy_usage(rec) if rec is not None else None

    async def get_or_create(
        self, tenant_id: str, module_key: str, period: str, limits: ModuleLimits
    ) -> UsageTracking:
        async with self._lock:
            rec = self._get_or_create_locked(tenant_id, module_key, period, limits)
            return _copy_usage(rec)

    async def increment(
        self,
        tenant_id: str,
        module_key: str,
        period: str,
        limit_type: str,
        amount: int,
        limits: ModuleLimits | None = None,
    ) -> UsageTracking:
        if amount < 0:
            raise ValueError("usage increments must be non-negative; use set_usage to correct")
        field_name = LimitType(limit_type).value
        async with self._lock:
            rec = self._get_or_create_locked(tenant_id, module_key, period, limits or ModuleLimits())
            rec.usage[field_name] = rec.usage.get(field_name, 0) + amount
            rec.updated_at = utcnow()
            return _copy_usage(rec)

    async def set_usage(
        self, tenant_id: str, module_key: str, period: str, limit_type: str, value: int
    ) -> UsageTracking:
        field_name = LimitType(limit_type).value
        async with self._lock:
            rec = self._get_or_create_locked(tenant_id, module_key, period, ModuleLimits())
            previous = rec.usage.get(field_name, 0)
            rec.usage[field_name] = max(0, value)
            rec.updated_at = utcnow()
        log.info(
            "usage_corrected",
            tenant_id=tenant_id,
            module_key=module_key,
            limit_type=field_name,
            previous=previous,
            value=value,
        )
        return _copy_usage(rec)

    async def update_limits(
        self, tenant_id: str, module_key: str, period: str, limits: ModuleLimits
    ) -> UsageTracking | None:
        async with self._lock:
            rec = self._records.get((tenant_id, module_key, period))
            if rec is None:
                return None
            rec.limits = ModuleLimits(**limits.to_dict())
            rec.updated_at = utcnow()
            return _copy_usage(rec)

    async def add_warning(
        self, tenant_id: str, module_key: str, period: str, warning: UsageWarning
    ) -> None:
        async with self._lock:
            rec = self._records.get((tenant_id, module_key, period))
            if rec is not None:
                rec.warnings.append(warning)

    async def list_for_tenant(self, tenant_id: str, period: str | None = None) -> list[UsageTracking]:
        return [
            _copy_usage(rec)
            for (tid, _, p), rec in sorted(self._records.items())
            if tid == tenant_id and (period is None or p == period)
        ]

    def _get_or_create_locked(
        self, tenant_id: str, module_key: str, period: str, limits: ModuleLimits
    ) -> UsageTracking:
        key = (tenant_id, module_key, period)
        rec = self._records.get(key)
        if rec is None:
            rec = UsageTracking(
                tenant_id=tenant_id,
                module_key=module_key,
                period=period,
                limits=ModuleLimits(**limits.to_dict()),
            )
            self._records[key] = rec
            log.debug("usage_tracking_created", tenant_id=tenant_id, module_key=module_key, period=period)
        return rec


class InMemoryAuditSink(AuditSink):
    """Bounded append-only audit list."""

    _MAX_RECORDS = 50_000  # Prevent unbounded memory growth

    def __init__(self) -> None:
        self._records: list[AuditRecord] = []

    async def write(self, record: AuditRecord) -> None:
        self._records.append(record)
        if len(self._records) > self._MAX_RECORDS:
            self._records = self._records[-self._MAX_RECORDS:]

    async def query(
        self,
        tenant_id: str | None = None,
        module_key: str | None = None,
        event_type: AuditEventType | None = None,
        severity: AuditSeverity | None = None,
        limit: int = 100,
    ) -> list[AuditRecord]:
        results = self._records
        if tenant_id:
            results = [r for r in results if r.tenant_id == tenant_id]
        if module_key:
            results = [r for r in results if r.module_key == module_key]
        if event_type:
            results = [r for r in results if r.event_type == event_type]
        if severity:
            results = [r for r in results if r.severity == severity]
        return sorted(results, key=lambda r: r.timestamp, reverse=True)[:limit]

    def statistics(self) -> dict[str, object]:
        return {
            "total": len(self._records),
            "by_event_type": dict(Counter(r.event_type.value for r in self._records)),
            "by_severity": dict(Counter(r.severity.value for r in self._records)),
        }

    @property
    def total_entries(self) -> int:
        return len(self._records)


def _copy_usage(rec: UsageTracking) -> UsageTracking:
    return UsageTracking(
        tenant_id=rec.tenant_id,
        module_key=rec.module_key,
        period=rec.period,
        usage=dict(rec.usage),
        limits=ModuleLimits(**rec.limits.to_dict()),
        warnings=list(rec.warnings),
        updated_at=rec.updated_at,
    )
