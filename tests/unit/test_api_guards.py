"""Tests for the route guards — verdict to HTTP status/body mapping."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from typing import Any

import pytest
from fastapi.testclient import TestClient

from config.settings import Settings
from src.api.deps import LicensingServices, build_memory_services, build_services
from src.api.main import create_app
from src.api.routes.modules import module_keys
from src.core.constants import KNOWN_MODULES
from src.core.interfaces import LicenseMutation, LicenseStore
from src.licensing.models import License, utcnow
from src.licensing.store import InMemoryAuditSink, InMemoryUsageStore

NON_CORE = [m for m in KNOWN_MODULES if m != "hr-core"]


def _settings(**kwargs: Any) -> Settings:
    return Settings(_env_file=None, **kwargs)


@contextmanager
def _client(services: LicensingServices) -> Iterator[TestClient]:
    with TestClient(create_app(services)) as client:
        yield client


def _provision(client: TestClient, tenant_id: str, modules: list[dict[str, Any]] | None = None) -> None:
    response = client.post("/api/licenses", json={"tenant_id": tenant_id, "modules": modules or []})
    assert response.status_code == 201, response.text


@pytest.fixture()
def services() -> LicensingServices:
    return build_memory_services(_settings(rate_limit_max_requests=1000))


@pytest.fixture()
def client(services: LicensingServices) -> Iterator[TestClient]:
    with _client(services) as c:
        yield c


class TestModuleLicenseGuard:
    def test_randomized_unlicensed_requests_denied(self, client: TestClient) -> None:
        _provision(client, "core-only")
        _provision(client, "all-disabled", [{"key": m, "enabled": False} for m in NON_CORE])

        rng = random.Random(20240601)
        methods = ["GET", "POST", "PUT", "PATCH", "DELETE"]
        segments = ["records", "x-list", "42", "reports", "summary", "items", "abc-def", "2025"]
        for _ in range(120):
            tenant = rng.choice(["core-only", "all-disabled", "no-license"])
            module = rng.choice(NON_CORE)
            method = rng.choice(methods)
            path = "/".join(rng.choice(segments) for _ in range(rng.randint(1, 3)))

            response = client.request(method, f"/api/modules/{module}/{path}", headers={"X-Tenant-ID": tenant})

            assert response.status_code == 403, (tenant, module, method, path)
            body = response.json()
            assert body["error"] == "MODULE_NOT_LICENSED"
            assert body["module_key"] == module
            assert body["upgrade_url"] == f"/pricing?module={module}"

    def test_disabled_leave_scenario(self, client: TestClient) -> None:
        _provision(client, "T", [{"key": "leave", "enabled": False}])
        response = client.get("/api/modules/leave/requests", headers={"X-Tenant-ID": "T"})
        assert response.status_code == 403
        body = response.json()
        assert body["error"] == "MODULE_NOT_LICENSED"
        assert body["module_key"] == "leave"
        assert "/pricing" in body["upgrade_url"] and "leave" in body["upgrade_url"]

    def test_core_never_denied(self, client: TestClient) -> None:
        _provision(client, "core-only")
        for headers in ({}, {"X-Tenant-ID": "core-only"}, {"X-Tenant-ID": "ghost"}):
            response = client.get("/api/modules/hr-core/employees", headers=headers)
            assert response.status_code == 200
            assert response.json()["licensed"] is True

    def test_missing_tenant(self, client: TestClient) -> None:
        response = client.get("/api/modules/payroll/runs")
        assert response.status_code == 400
        assert response.json()["error"] == "TENANT_ID_REQUIRED"

    def test_tenant_from_query_param(self, client: TestClient) -> None:
        _provision(client, "acme", [{"key": "payroll", "tier": "business"}])
        response = client.get("/api/modules/payroll/runs", params={"tenant_id": "acme"})
        assert response.status_code == 200

    def test_licensed_request_passes(self, client: TestClient) -> None:
        _provision(client, "acme", [{"key": "payroll", "tier": "enterprise", "limits": {"employees": 10}}])
        response = client.put("/api/modules/payroll/runs/7", headers={"X-Tenant-ID": "acme"})
        assert response.status_code == 200
        body = response.json()
        assert body["module_key"] == "payroll"
        assert body["path"] == "runs/7"
        assert body["method"] == "PUT"
        assert body["tier"] == "enterprise"
        assert body["limits"]["employees"] == 10

    def test_expired_grant(self, client: TestClient) -> None:
        expired = (utcnow() - timedelta(days=1)).isoformat()
        _provision(client, "acme", [{"key": "payroll", "expires_at": expired}])
        response = client.get("/api/modules/payroll/runs", headers={"X-Tenant-ID": "acme"})
        assert response.status_code == 403
        body = response.json()
        assert body["error"] == "LICENSE_EXPIRED"
        assert "action=renew" in body["upgrade_url"]
        assert "expires_at" in body


class TestRateLimit:
    def test_rate_limited_with_retry_after(self) -> None:
        with _client(build_memory_services(_settings(rate_limit_max_requests=2))) as client:
            _provision(client, "acme", [{"key": "payroll"}])
            headers = {"X-Tenant-ID": "acme"}
            assert client.get("/api/modules/payroll/a", headers=headers).status_code == 200
            assert client.get("/api/modules/payroll/b", headers=headers).status_code == 200

            response = client.get("/api/modules/payroll/c", headers=headers)
            assert response.status_code == 429
            body = response.json()
            assert body["error"] == "RATE_LIMIT_EXCEEDED"
            assert body["retry_after_seconds"] > 0
            assert int(response.headers["Retry-After"]) == body["retry_after_seconds"]

            assert client.get("/api/modules/leave/a", headers=headers).status_code == 403


class TestUsageLimitGuard:
    def _employees(self, n: int) -> dict[str, Any]:
        return {"employees": [{"name": f"Employee {i}"} for i in range(n)]}

    def test_commits_usage_until_limit(self, client: TestClient) -> None:
        _provision(client, "acme", [{"key": "payroll", "limits": {"employees": 3}}])
        headers = {"X-Tenant-ID": "acme"}

        first = client.post("/api/modules/payroll/employees", json=self._employees(2), headers=headers)
        assert first.status_code == 200, first.text
        assert first.json() == {"added": 2, "current_usage": 2, "limit": 3}

        second = client.post("/api/modules/payroll/employees", json=self._employees(2), headers=headers)
        assert second.status_code == 429
        body = second.json()
        assert body["error"] == "LIMIT_EXCEEDED"
        assert body["current_usage"] == 2
        assert body["limit"] == 3
        assert body["limit_type"] == "employees"
        assert "Retry-After" not in second.headers

        third = client.post("/api/modules/payroll/employees", json=self._employees(1), headers=headers)
        assert third.status_code == 200
        assert third.json()["current_usage"] == 3

    def test_unlicensed_payroll_is_not_metered(self, client: TestClient, services: LicensingServices) -> None:
        _provision(client, "acme")
        response = client.post(
            "/api/modules/payroll/employees", json=self._employees(1), headers={"X-Tenant-ID": "acme"}
        )
        assert response.status_code == 403
        assert asyncio.run(services.usage_store.list_for_tenant("acme")) == []


class TestMultiModuleGuard:
    def test_all_licensed(self, client: TestClient) -> None:
        _provision(client, "acme", [{"key": "reporting"}, {"key": "payroll"}, {"key": "attendance"}])
        response = client.get("/api/reports/payroll-attendance", headers={"X-Tenant-ID": "acme"})
        assert response.status_code == 200
        assert set(response.json()["modules"]) == {"reporting", "payroll", "attendance"}

    def test_first_failure_reported(self, client: TestClient) -> None:
        _provision(client, "acme", [{"key": "reporting"}, {"key": "payroll"}])
        response = client.get("/api/reports/payroll-attendance", headers={"X-Tenant-ID": "acme"})
        assert response.status_code == 403
        body = response.json()
        assert body["failed_module"] == "attendance"
        assert body["required_modules"] == ["reporting", "payroll", "attendance"]
        assert body["upgrade_url"] == "/pricing?modules=reporting,payroll,attendance"


class TestAttachLicenseInfo:
    def test_never_denies(self, client: TestClient) -> None:
        _provision(client, "acme", [{"key": "payroll", "tier": "business"}])
        headers = {"X-Tenant-ID": "acme"}

        licensed = client.get("/api/dashboard/widgets/payroll", headers=headers)
        assert licensed.status_code == 200
        assert licensed.json()["licensed"] is True
        assert licensed.json()["tier"] == "business"

        unlicensed = client.get("/api/dashboard/widgets/leave", headers=headers)
        assert unlicensed.status_code == 200
        assert unlicensed.json() == {"module_key": "leave", "licensed": False}

        assert client.get("/api/dashboard/widgets/leave").status_code == 200


class _BrokenStore(LicenseStore):
    async def get(self, tenant_id: str) -> License | None:
        raise ConnectionError("database unreachable")

    async def upsert(self, tenant_id: str, mutation: LicenseMutation) -> License:
        raise ConnectionError("database unreachable")

    async def find_expiring(self, within_days: int) -> list[License]:
        return []

    async def find_by_module(self, module_key: str, enabled_only: bool = True) -> list[License]:
        return []

    async def delete(self, tenant_id: str) -> bool:
        return False


class _HangingStore(_BrokenStore):
    async def get(self, tenant_id: str) -> License | None:
        await asyncio.sleep(2)
        return None


class TestInfrastructureFailures:
    def test_store_error_is_500_not_403(self) -> None:
        services = build_services(_settings(), _BrokenStore(), InMemoryUsageStore(), InMemoryAuditSink())
        with _client(services) as client:
            response = client.get("/api/modules/payroll/runs", headers={"X-Tenant-ID": "acme"})
            assert response.status_code == 500
            assert response.json()["error"] == "LICENSE_VALIDATION_FAILED"

            widget = client.get("/api/dashboard/widgets/payroll", headers={"X-Tenant-ID": "acme"})
            assert widget.status_code == 200
            assert widget.json()["licensed"] is False

    def test_timeout_is_503(self) -> None:
        services = build_services(
            _settings(validation_timeout_seconds=0.05), _HangingStore(), InMemoryUsageStore(), InMemoryAuditSink()
        )
        with _client(services) as client:
            response = client.get("/api/modules/payroll/runs", headers={"X-Tenant-ID": "acme"})
            assert response.status_code == 503
            assert response.json()["error"] == "VALIDATION_TIMEOUT"


class TestConfiguredCoreModule:
    def test_routes_follow_core_module_key(self) -> None:
        services = build_memory_services(_settings(core_module_key="core"))
        with _client(services) as client:
            core = client.get("/api/modules/core/employees")
            assert core.status_code == 200
            assert core.json()["licensed"] is True
            assert client.get("/api/modules/hr-core/employees").status_code == 404

            _provision(client, "acme")
            assert client.get("/api/modules/payroll/runs", headers={"X-Tenant-ID": "acme"}).status_code == 403

    def test_module_keys(self) -> None:
        assert module_keys()[0] == "hr-core"
        keys = module_keys("core")
        assert keys[0] == "core"
        assert "hr-core" not in keys
        assert set(NON_CORE) <= set(keys)
