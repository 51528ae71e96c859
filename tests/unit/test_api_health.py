"""Tests for health check and licensing stats routes."""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from src.api.deps import build_memory_services
from src.api.main import create_app


@pytest.fixture()
def client() -> Iterator[TestClient]:
    """Create a test client wired to in-memory licensing services."""
    with TestClient(create_app(build_memory_services())) as test_client:
        yield test_client


class TestHealthEndpoint:
    def test_health_returns_ok(self, client: TestClient) -> None:
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["version"] == "0.1.0"

    def test_health_env(self, client: TestClient) -> None:
        response = client.get("/api/health")
        data = response.json()
        assert "environment" in data

    def test_health_includes_licensing_summary(self, client: TestClient) -> None:
        licensing = client.get("/api/health").json()["licensing"]
        assert licensing["status"] == "healthy"
        assert {"processing", "rate_limit", "audit"} <= set(licensing)

    def test_health_before_services_wired(self) -> None:
        response = TestClient(create_app()).get("/api/health")
        assert response.status_code == 200
        assert response.json()["licensing"] is None


class TestLicensingStats:
    def test_rate_limit_stats(self, client: TestClient) -> None:
        client.get("/api/modules/payroll/runs", headers={"X-Tenant-ID": "acme"})
        stats = client.get("/api/licensing/rate-limits").json()
        assert stats["total_entries"] == 1
        assert stats["max_requests"] == 100

    def test_processing_stats(self, client: TestClient) -> None:
        client.get("/api/modules/payroll/runs", headers={"X-Tenant-ID": "acme"})
        client.get("/api/modules/payroll/runs")
        stats = client.get("/api/licensing/stats").json()
        assert stats["processing"]["total"] == 2
        assert stats["processing"]["by_kind"] == {"MODULE_NOT_LICENSED": 1, "TENANT_ID_REQUIRED": 1}
        assert "hits" in stats["cache"]
        assert "scheduled" in stats["audit"]
