"""Tests for the in-memory license and usage stores."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from src.licensing.models import (
    License,
    LicenseStatus,
    ModuleGrant,
    ModuleLimits,
    UsageWarning,
    utcnow,
)
from src.licensing.store import InMemoryLicenseStore, InMemoryUsageStore


def _create(tenant_id: str, *grants: ModuleGrant):  # noqa: ANN202
    def _mutation(existing: License | None) -> License:
        return License(tenant_id=tenant_id, modules=list(grants))

    return _mutation


class TestInMemoryLicenseStore:
    @pytest.mark.asyncio
    async def test_upsert_and_get(self) -> None:
        store = InMemoryLicenseStore()
        await store.upsert("t1", _create("t1", ModuleGrant(key="payroll")))
        lic = await store.get("t1")
        assert lic is not None
        assert lic.get_grant("payroll") is not None
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_get_returns_copy(self) -> None:
        store = InMemoryLicenseStore()
        await store.upsert("t1", _create("t1", ModuleGrant(key="payroll")))
        lic = await store.get("t1")
        assert lic is not None
        lic.modules.clear()
        again = await store.get("t1")
        assert again is not None and len(again.modules) == 1

    @pytest.mark.asyncio
    async def test_mutation_receives_current(self) -> None:
        store = InMemoryLicenseStore()
        await store.upsert("t1", _create("t1", ModuleGrant(key="payroll")))

        def _add_leave(existing: License | None) -> License:
            assert existing is not None
            existing.set_grant(ModuleGrant(key="leave"))
            existing.set_grant(ModuleGrant(key="payroll", enabled=False))
            return existing

        lic = await store.upsert("t1", _add_leave)
        assert [g.key for g in lic.modules] == ["payroll", "leave"]
        assert lic.modules[0].enabled is False

    @pytest.mark.asyncio
    async def test_mutation_cannot_change_tenant(self) -> None:
        store = InMemoryLicenseStore()
        with pytest.raises(ValueError):
            await store.upsert("t1", _create("t2"))

    @pytest.mark.asyncio
    async def test_find_expiring(self) -> None:
        store = InMemoryLicenseStore()
        now = utcnow()
        await store.upsert("soon", _create("soon", ModuleGrant(key="payroll", expires_at=now + timedelta(days=5))))
        await store.upsert("later", _create("later", ModuleGrant(key="payroll", expires_at=now + timedelta(days=90))))
        await store.upsert("past", _create("past", ModuleGrant(key="payroll", expires_at=now - timedelta(days=1))))
        await store.upsert(
            "off", _create("off", ModuleGrant(key="payroll", enabled=False, expires_at=now + timedelta(days=5)))
        )
        expiring = await store.find_expiring(30)
        assert [lic.tenant_id for lic in expiring] == ["soon"]

    @pytest.mark.asyncio
    async def test_find_expiring_skips_inactive(self) -> None:
        store = InMemoryLicenseStore()
        soon = utcnow() + timedelta(days=5)

        def _suspended(existing: License | None) -> License:
            return License(
                tenant_id="t1",
                status=LicenseStatus.SUSPENDED,
                modules=[ModuleGrant(key="payroll", expires_at=soon)],
            )

        await store.upsert("t1", _suspended)
        assert await store.find_expiring(30) == []

    @pytest.mark.asyncio
    async def test_find_by_module(self) -> None:
        store = InMemoryLicenseStore()
        await store.upsert("a", _create("a", ModuleGrant(key="payroll")))
        await store.upsert("b", _create("b", ModuleGrant(key="payroll", enabled=False)))
        await store.upsert("c", _create("c", ModuleGrant(key="leave")))
        assert [lic.tenant_id for lic in await store.find_by_module("payroll")] == ["a"]
        assert len(await store.find_by_module("payroll", enabled_only=False)) == 2

    @pytest.mark.asyncio
    async def test_delete(self) -> None:
        store = InMemoryLicenseStore()
        await store.upsert("t1", _create("t1"))
        assert await store.delete("t1") is True
        assert await store.delete("t1") is False


class TestInMemoryUsageStore:
    @pytest.mark.asyncio
    async def test_get_or_create_snapshots_limits(self) -> None:
        store = InMemoryUsageStore()
        limits = ModuleLimits(employees=10)
        rec = await store.get_or_create("t1", "payroll", "2025-01", limits)
        limits.employees = 999
        assert rec.limits.employees == 10
        again = await store.get_or_create("t1", "payroll", "2025-01", ModuleLimits(employees=50))
        assert again.limits.employees == 10

    @pytest.mark.asyncio
    async def test_new_period_starts_at_zero(self) -> None:
        store = InMemoryUsageStore()
        await store.increment("t1", "payroll", "2025-01", "employees", 5)
        rec = await store.get_or_create("t1", "payroll", "2025-02", ModuleLimits())
        assert rec.usage["employees"] == 0

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self) -> None:
        store = InMemoryUsageStore()
        await asyncio.gather(
            *(store.increment("t1", "payroll", "2025-01", "api_calls", 1) for _ in range(100))
        )
        rec = await store.find_by_period("t1", "payroll", "2025-01")
        assert rec is not None
        assert rec.usage["api_calls"] == 100

    @pytest.mark.asyncio
    async def test_negative_increment_rejected(self) -> None:
        store = InMemoryUsageStore()
        with pytest.raises(ValueError):
            await store.increment("t1", "payroll", "2025-01", "employees", -1)

    @pytest.mark.asyncio
    async def test_set_usage_corrects_and_floors(self) -> None:
        store = InMemoryUsageStore()
        await store.increment("t1", "payroll", "2025-01", "employees", 10)
        rec = await store.set_usage("t1", "payroll", "2025-01", "employees", 4)
        assert rec.usage["employees"] == 4
        rec = await store.set_usage("t1", "payroll", "2025-01", "employees", -3)
        assert rec.usage["employees"] == 0

    @pytest.mark.asyncio
    async def test_update_limits(self) -> None:
        store = InMemoryUsageStore()
        assert await store.update_limits("t1", "payroll", "2025-01", ModuleLimits(employees=5)) is None
        await store.get_or_create("t1", "payroll", "2025-01", ModuleLimits(employees=1))
        rec = await store.update_limits("t1", "payroll", "2025-01", ModuleLimits(employees=5))
        assert rec is not None and rec.limits.employees == 5

    @pytest.mark.asyncio
    async def test_add_warning_and_list(self) -> None:
        store = InMemoryUsageStore()
        await store.get_or_create("t1", "payroll", "2025-01", ModuleLimits())
        await store.get_or_create("t1", "leave", "2025-02", ModuleLimits())
        await store.add_warning("t1", "payroll", "2025-01", UsageWarning(limit_type="employees", percentage=85))

        rec = await store.find_by_period("t1", "payroll", "2025-01")
        assert rec is not None
        assert rec.has_recent_warning("employees", within_seconds=3600)
        assert not rec.has_recent_warning("storage", within_seconds=3600)

        assert len(await store.list_for_tenant("t1")) == 2
        assert [r.module_key for r in await store.list_for_tenant("t1", "2025-02")] == ["leave"]
        assert await store.list_for_tenant("nobody") == []
