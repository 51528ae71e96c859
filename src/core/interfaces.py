"""Abstract base classes — every store backend must implement these interfaces."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable

from src.licensing.models import (
    AuditEventType,
    AuditRecord,
    AuditSeverity,
    License,
    ModuleLimits,
    UsageTracking,
    UsageWarning,
)

LicenseMutation = Callable[[License | None], License]


class LicenseStore(ABC):
    """Repository of per-tenant ``License`` records."""

    @abstractmethod
    async def get(self, tenant_id: str) -> License | None:
        """Return the tenant's license, or ``None`` if it has none."""
        ...

    @abstractmethod
    async def upsert(self, tenant_id: str, mutation: LicenseMutation) -> License:
        """Apply ``mutation`` to the current record (``None`` if absent) and persist the result."""
        ...

    @abstractmethod
    async def find_expiring(self, within_days: int) -> list[License]:
        """Active licenses with an enabled grant expiring in the next ``within_days``."""
        ...

    @abstractmethod
    async def find_by_module(self, module_key: str, enabled_only: bool = True) -> list[License]:
        ...

    @abstractmethod
    async def delete(self, tenant_id: str) -> bool:
        ...

    async def get_for_module(self, tenant_id: str, module_key: str) -> License | None:
        """Lookup used by the validator. Caching decorators key on ``module_key``."""
        return await self.get(tenant_id)


class UsageStore(ABC):
    """Repository of per-period ``UsageTracking`` counters."""

    @abstractmethod
    async def find_by_period(
        self, tenant_id: str, module_key: str, period: str
    ) -> UsageTracking | None:
        ...

    @abstractmethod
    async def get_or_create(
        self, tenant_id: str, module_key: str, period: str, limits: ModuleLimits
    ) -> UsageTracking:
        """Return the period's record, creating it with a snapshot of ``limits``."""
        ...

    @abstractmethod
    async def increment(
        self,
        tenant_id: str,
        module_key: str,
        period: str,
        limit_type: str,
        amount: int,
        limits: ModuleLimits | None = None,
    ) -> UsageTracking:
        ...

    @abstractmethod
    async def set_usage(
        self, tenant_id: str, module_key: str, period: str, limit_type: str, value: int
    ) -> UsageTracking:
        """Explicit correction — the only way a counter may go down."""
        ...

    @abstractmethod
    async def update_limits(
        self, tenant_id: str, module_key: str, period: str, limits: ModuleLimits
    ) -> UsageTracking | None:
        ...

    @abstractmethod
    async def add_warning(
        self, tenant_id: str, module_key: str, period: str, warning: UsageWarning
    ) -> None:
        ...

    @abstractmethod
    async def list_for_tenant(self, tenant_id: str, period: str | None = None) -> list[UsageTracking]:
        ...


class AuditSink(ABC):
    """Append-only destination for audit records."""

    @abstractmethod
    async def write(self, record: AuditRecord) -> None:
        ...

    @abstractmethod
    async def query(
        self,
        tenant_id: str | None = None,
        module_key: str | None = None,
        event_type: AuditEventType | None = None,
        severity: AuditSeverity | None = None,
        limit: int = 100,
    ) -> list[AuditRecord]:
        """Most recent records first."""
        ...
