"""DB-backed license, usage and audit stores — PostgreSQL via SQLAlchemy async."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from src.core.exceptions import AuditSinkError, LicenseStoreError
from src.core.interfaces import AuditSink, LicenseMutation, LicenseStore, UsageStore
from src.core.logging import get_logger
from src.licensing.models import (
    AuditEventType,
    AuditRecord,
    AuditSeverity,
    License,
    LicenseStatus,
    LimitType,
    ModuleGrant,
    ModuleLimits,
    UsageTracking,
    UsageWarning,
    parse_datetime,
    utcnow,
)

log = get_logger(__name__)


def _json(value: object) -> Any:
    """JSONB columns come back as dicts from asyncpg but as text from some drivers."""
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


class SqlLicenseStore(LicenseStore):
    """Async PostgreSQL-backed license storage (one row per tenant)."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def get(self, tenant_id: str) -> License | None:
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text("SELECT * FROM licenses WHERE tenant_id = :tid"),
                {"tid": tenant_id},
            )
            r = row.mappings().first()
            if r is None:
                return None
            return self._row_to_license(r)

    async def upsert(self, tenant_id: str, mutation: LicenseMutation) -> License:
        """Read-modify-write under a row lock (``SELECT ... FOR UPDATE``)."""
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text("SELECT * FROM licenses WHERE tenant_id = :tid FOR UPDATE"),
                {"tid": tenant_id},
            )
            r = row.mappings().first()
            current = self._row_to_license(r) if r is not None else None

            updated = mutation(current)
            if updated.tenant_id != tenant_id:
                raise LicenseStoreError(
                    "mutation changed tenant_id",
                    {"tenant_id": tenant_id, "new_tenant_id": updated.tenant_id},
                )
            updated.updated_at = utcnow()

            await conn.execute(
                text(
                    """
                    INSERT INTO licenses
                        (tenant_id, subscription_id, status, modules, created_at, updated_at)
                    VALUES
                        (:tid, :sub, :status, CAST(:modules AS JSONB), :created, :updated)
                    ON CONFLICT (tenant_id) DO UPDATE SET
                        subscription_id = EXCLUDED.subscription_id,
                        status = EXCLUDED.status,
                        modules = EXCLUDED.modules,
                        updated_at = EXCLUDED.updated_at
                    """
                ),
                {
                    "tid": tenant_id,
                    "sub": updated.subscription_id,
                    "status": updated.status.value,
                    "modules": json.dumps([g.to_dict() for g in updated.modules]),
                    "created": updated.created_at,
                    "updated": updated.updated_at,
                },
            )

        log.info("license_upserted", tenant_id=tenant_id, status=updated.status.value)
        return updated

    async def find_expiring(self, within_days: int) -> list[License]:
        now = utcnow()
        horizon = now + timedelta(days=within_days)
        async with self._engine.begin() as conn:
            rows = await conn.execute(
                text(
                    """
                    SELECT DISTINCT l.* FROM licenses l,
                        jsonb_array_elements(l.modules) AS m
                    WHERE l.status = 'active'
                      AND (m->>'enabled')::boolean
                      AND (m->>'expires_at') IS NOT NULL
                      AND (m->>'expires_at')::timestamptz BETWEEN :now AND :horizon
                    """
                ),
                {"now": now, "horizon": horizon},
            )
            return [self._row_to_license(r) for r in rows.mappings().all()]

    async def find_by_module(self, module_key: str, enabled_only: bool = True) -> list[License]:
        probe: dict[str, object] = {"key": module_key}
        if enabled_only:
            probe["enabled"] = True
        async with self._engine.begin() as conn:
            rows = await conn.execute(
                text("SELECT * FROM licenses WHERE modules @> CAST(:probe AS JSONB)"),
                {"probe": json.dumps([probe])},
            )
            return [self._row_to_license(r) for r in rows.mappings().all()]

    async def delete(self, tenant_id: str) -> bool:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                text("DELETE FROM licenses WHERE tenant_id = :tid"),
                {"tid": tenant_id},
            )
        return bool(result.rowcount)

    @staticmethod
    def _row_to_license(r: object) -> License:
        """Convert a DB row mapping to a License dataclass."""
        modules = _json(r["modules"]) or []  # type: ignore[index]
        status_str: str = r["status"]  # type: ignore[index]
        try:
            status = LicenseStatus(status_str)
        except ValueError:
            log.warning("license_unknown_status", tenant_id=r["tenant_id"], status=status_str)  # type: ignore[index]
            status = LicenseStatus.SUSPENDED

        return License(
            tenant_id=r["tenant_id"],  # type: ignore[index]
            subscription_id=r["subscription_id"] or "",  # type: ignore[index]
            status=status,
            modules=[ModuleGrant.from_dict(m) for m in modules],
            created_at=r["created_at"],  # type: ignore[index]
            updated_at=r["updated_at"],  # type: ignore[index]
        )


class SqlUsageStore(UsageStore):
    """Async PostgreSQL-backed usage counters."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def find_by_period(
        self, tenant_id: str, module_key: str, period: str
    ) -> UsageTracking | None:
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text(
                    "SELECT * FROM usage_tracking "
                    "WHERE tenant_id = :tid AND module_key = :mk AND period = :period"
                ),
                {"tid": tenant_id, "mk": module_key, "period": period},
            )
            r = row.mappings().first()
            return self._row_to_usage(r) if r is not None else None

    async def get_or_create(
        self, tenant_id: str, module_key: str, period: str, limits: ModuleLimits
    ) -> UsageTracking:
        async with self._engine.begin() as conn:
            await conn.execute(
                text(
                    """
                    INSERT INTO usage_tracking
                        (tenant_id, module_key, period, usage, limits, warnings, updated_at)
                    VALUES
                        (:tid, :mk, :period, CAST(:usage AS JSONB),
                         CAST(:limits AS JSONB), '[]'::jsonb, :now)
                    ON CONFLICT (tenant_id, module_key, period) DO NOTHING
                    """
                ),
                {
                    "tid": tenant_id,
                    "mk": module_key,
                    "period": period,
                    "usage": json.dumps({lt.value: 0 for lt in LimitType}),
                    "limits": json.dumps(limits.to_dict()),
                    "now": utcnow(),
                },
            )
            row = await conn.execute(
                text(
                    "SELECT * FROM usage_tracking "
                    "WHERE tenant_id = :tid AND module_key = :mk AND period = :period"
                ),
                {"tid": tenant_id, "mk": module_key, "period": period},
            )
            return self._row_to_usage(row.mappings().one())

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
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text(
                    """
                    INSERT INTO usage_tracking
                        (tenant_id, module_key, period, usage, limits, warnings, updated_at)
                    VALUES
                        (:tid, :mk, :period,
                         jsonb_build_object(CAST(:field AS TEXT), CAST(:amount AS BIGINT)),
                         CAST(:limits AS JSONB), '[]'::jsonb, :now)
                    ON CONFLICT (tenant_id, module_key, period) DO UPDATE SET
                        usage = jsonb_set(
                            usage_tracking.usage,
                            ARRAY[CAST(:field AS TEXT)],
                            to_jsonb(
                                COALESCE((usage_tracking.usage->>CAST(:field AS TEXT))::bigint, 0)
                                + CAST(:amount AS BIGINT)
                            )
                        ),
                        updated_at = EXCLUDED.updated_at
                    RETURNING *
                    """
                ),
                {
                    "tid": tenant_id,
                    "mk": module_key,
                    "period": period,
                    "field": field_name,
                    "amount": amount,
                    "limits": json.dumps((limits or ModuleLimits()).to_dict()),
                    "now": utcnow(),
                },
            )
            return self._row_to_usage(row.mappings().one())

    async def set_usage(
        self, tenant_id: str, module_key: str, period: str, limit_type: str, value: int
    ) -> UsageTracking:
        field_name = LimitType(limit_type).value
        await self.get_or_create(tenant_id, module_key, period, ModuleLimits())
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text(
                    """
                    UPDATE usage_tracking SET
                        usage = jsonb_set(usage, ARRAY[CAST(:field AS TEXT)], to_jsonb(CAST(:value AS BIGINT))),
                        updated_at = :now
                    WHERE tenant_id = :tid AND module_key = :mk AND period = :period
                    RETURNING *
                    """
                ),
                {
                    "tid": tenant_id,
                    "mk": module_key,
                    "period": period,
                    "field": field_name,
                    "value": max(0, value),
                    "now": utcnow(),
                },
            )
            tracking = self._row_to_usage(row.mappings().one())
        log.info("usage_corrected", tenant_id=tenant_id, module_key=module_key, limit_type=field_name, value=value)
        return tracking

    async def update_limits(
        self, tenant_id: str, module_key: str, period: str, limits: ModuleLimits
    ) -> UsageTracking | None:
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text(
                    """
                    UPDATE usage_tracking SET limits = CAST(:limits AS JSONB), updated_at = :now
                    WHERE tenant_id = :tid AND module_key = :mk AND period = :period
                    RETURNING *
                    """
                ),
                {
                    "tid": tenant_id,
                    "mk": module_key,
                    "period": period,
                    "limits": json.dumps(limits.to_dict()),
                    "now": utcnow(),
                },
            )
            r = row.mappings().first()
            return self._row_to_usage(r) if r is not None else None

    async def add_warning(
        self, tenant_id: str, module_key: str, period: str, warning: UsageWarning
    ) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                text(
                    """
                    UPDATE usage_tracking SET warnings = warnings || CAST(:warning AS JSONB)
                    WHERE tenant_id = :tid AND module_key = :mk AND period = :period
                    """
                ),
                {
                    "tid": tenant_id,
                    "mk": module_key,
                    "period": period,
                    "warning": json.dumps([
                        {
                            "limit_type": warning.limit_type,
                            "percentage": warning.percentage,
                            "triggered_at": warning.triggered_at.isoformat(),
                        }
                    ]),
                },
            )

    async def list_for_tenant(self, tenant_id: str, period: str | None = None) -> list[UsageTracking]:
        query = "SELECT * FROM usage_tracking WHERE tenant_id = :tid"
        params: dict[str, object] = {"tid": tenant_id}
        if period is not None:
            query += " AND period = :period"
            params["period"] = period
        query += " ORDER BY module_key, period"
        async with self._engine.begin() as conn:
            rows = await conn.execute(text(query), params)
            return [self._row_to_usage(r) for r in rows.mappings().all()]

    @staticmethod
    def _row_to_usage(r: object) -> UsageTracking:
        usage = _json(r["usage"]) or {}  # type: ignore[index]
        warnings = _json(r["warnings"]) or []  # type: ignore[index]
        return UsageTracking(
            tenant_id=r["tenant_id"],  # type: ignore[index]
            module_key=r["module_key"],  # type: ignore[index]
            period=r["period"],  # type: ignore[index]
            usage={lt.value: int(usage.get(lt.value) or 0) for lt in LimitType},
            limits=ModuleLimits.from_dict(_json(r["limits"])),  # type: ignore[index]
            warnings=[
                UsageWarning(
                    limit_type=w["limit_type"],
                    percentage=int(w["percentage"]),
                    triggered_at=parse_datetime(w["triggered_at"]) or utcnow(),
                )
                for w in warnings
            ],
            updated_at=r["updated_at"],  # type: ignore[index]
        )


class SqlAuditSink(AuditSink):
    """Append-only audit table writer."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def write(self, record: AuditRecord) -> None:
        try:
            async with self._engine.begin() as conn:
                await conn.execute(
                    text(
                        """
                        INSERT INTO license_audit
                            (audit_id, tenant_id, module_key, event_type, severity, context, timestamp)
                        VALUES
                            (:aid, :tid, :mk, :event, :severity, CAST(:context AS JSONB), :ts)
                        """
                    ),
                    {
                        "aid": record.audit_id,
                        "tid": record.tenant_id,
                        "mk": record.module_key,
                        "event": record.event_type.value,
                        "severity": record.severity.value,
                        "context": json.dumps(record.context, default=str),
                        "ts": record.timestamp,
                    },
                )
        except Exception as exc:
            raise AuditSinkError(str(exc), {"audit_id": record.audit_id}) from exc

    async def query(
        self,
        tenant_id: str | None = None,
        module_key: str | None = None,
        event_type: AuditEventType | None = None,
        severity: AuditSeverity | None = None,
        limit: int = 100,
    ) -> list[AuditRecord]:
        clauses: list[str] = []
        params: dict[str, object] = {"limit": limit}
        if tenant_id:
            clauses.append("tenant_id = :tid")
            params["tid"] = tenant_id
        if module_key:
            clauses.append("module_key = :mk")
            params["mk"] = module_key
        if event_type:
            clauses.append("event_type = :event")
            params["event"] = event_type.value
        if severity:
            clauses.append("severity = :severity")
            params["severity"] = severity.value

        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        async with self._engine.begin() as conn:
            rows = await conn.execute(
                text(f"SELECT * FROM license_audit {where}ORDER BY timestamp DESC LIMIT :limit"),
                params,
            )
            return [self._row_to_record(r) for r in rows.mappings().all()]

    @staticmethod
    def _row_to_record(r: object) -> AuditRecord:
        ts: datetime = r["timestamp"]  # type: ignore[index]
        return AuditRecord(
            audit_id=r["audit_id"],  # type: ignore[index]
            tenant_id=r["tenant_id"],  # type: ignore[index]
            module_key=r["module_key"],  # type: ignore[index]
            event_type=AuditEventType(r["event_type"]),  # type: ignore[index]
            severity=AuditSeverity(r["severity"]),  # type: ignore[index]
            context=_json(r["context"]) or {},  # type: ignore[index]
            timestamp=ts,
        )
