"""License administration — provisioning and grant mutations.

Every mutation goes through ``LicenseStore.upsert``, then fires the
registered invalidation hooks for (tenant_id, module_key) and writes an
audit record.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from src.core.constants import MODULE_CORE_HR
from src.core.exceptions import InvalidModuleError, LicenseNotFoundError
from src.core.interfaces import LicenseStore, UsageStore
from src.core.logging import get_logger
from src.licensing.audit import AuditEmitter
from src.licensing.models import (
    AuditEventType,
    License,
    LicenseStatus,
    ModuleGrant,
    ModuleLimits,
    ModuleTier,
    current_period,
    ensure_utc,
    utcnow,
)

log = get_logger(__name__)

InvalidationHook = Callable[[str, str | None], Any]


class LicenseAdmin:
    """Administrative operations used by license CRUD collaborators."""

    def __init__(
        self,
        license_store: LicenseStore,
        usage_store: UsageStore,
        audit: AuditEmitter,
        *,
        core_module_key: str = MODULE_CORE_HR,
        invalidation_hooks: Iterable[InvalidationHook] = (),
    ) -> None:
        self._licenses = license_store
        self._usage = usage_store
        self._audit = audit
        self._core_module_key = core_module_key
        self._hooks: list[InvalidationHook] = list(invalidation_hooks)

    def add_invalidation_hook(self, hook: InvalidationHook) -> None:
        self._hooks.append(hook)

    # ── Provisioning ─────────────────────────────────────────────

    async def provision(
        self,
        tenant_id: str,
        subscription_id: str = "",
        modules: Iterable[ModuleGrant] = (),
    ) -> License:
        """Create the tenant's license. The core module is always granted."""
        if not tenant_id:
            raise InvalidModuleError("tenant_id is required to provision a license")
        now = utcnow()
        grants: dict[str, ModuleGrant] = {}
        for grant in modules:
            if grant.enabled and grant.activated_at is None:
                grant.activated_at = now
            grants[grant.key] = grant
        if self._core_module_key not in grants:
            grants[self._core_module_key] = ModuleGrant(
                key=self._core_module_key,
                enabled=True,
                tier=ModuleTier.STARTER,
                activated_at=now,
            )

        def _create(existing: License | None) -> License:
            if existing is not None:
                raise InvalidModuleError(
                    f"Tenant {tenant_id!r} already has a license",
                    {"tenant_id": tenant_id},
                )
            return License(
                tenant_id=tenant_id,
                subscription_id=subscription_id,
                status=LicenseStatus.ACTIVE,
                modules=list(grants.values()),
            )

        lic = await self._licenses.upsert(tenant_id, _create)
        self._invalidate(tenant_id, None)
        self._audit.record(
            tenant_id,
            self._core_module_key,
            AuditEventType.LICENSE_CREATED,
            {"subscription_id": subscription_id, "modules": sorted(grants)},
        )
        log.info("license_provisioned", tenant_id=tenant_id, modules=sorted(grants))
        return lic

    # ── Grant mutations ──────────────────────────────────────────

    async def enable_module(
        self,
        tenant_id: str,
        module_key: str,
        tier: ModuleTier = ModuleTier.STARTER,
        limits: ModuleLimits | None = None,
        expires_at: datetime | None = None,
    ) -> License:
        now = utcnow()

        def _enable(lic: License) -> None:
            grant = lic.get_grant(module_key)
            if grant is None:
                grant = ModuleGrant(key=module_key, tier=tier)
            grant.enabled = True
            grant.tier = tier
            if limits is not None:
                grant.limits = limits
            if expires_at is not None:
                grant.expires_at = ensure_utc(expires_at)
            grant.activated_at = now
            lic.set_grant(grant)

        lic = await self._mutate(tenant_id, module_key, _enable)
        if limits is not None:
            await self._usage.update_limits(tenant_id, module_key, current_period(), limits)
        self._audit.record(
            tenant_id, module_key, AuditEventType.MODULE_ACTIVATED, {"tier": tier.value}
        )
        return lic

    async def disable_module(self, tenant_id: str, module_key: str) -> License:
        if module_key == self._core_module_key:
            raise InvalidModuleError(
                "The core module cannot be disabled",
                {"tenant_id": tenant_id, "module_key": module_key},
            )

        def _disable(lic: License) -> None:
            grant = lic.get_grant(module_key)
            if grant is None:
                raise InvalidModuleError(
                    f"Module {module_key!r} is not part of the license",
                    {"tenant_id": tenant_id, "module_key": module_key},
                )
            grant.enabled = False

        lic = await self._mutate(tenant_id, module_key, _disable)
        self._audit.record(tenant_id, module_key, AuditEventType.MODULE_DEACTIVATED)
        return lic

    async def update_limits(self, tenant_id: str, module_key: str, limits: ModuleLimits) -> License:
        previous: dict[str, int | None] = {}

        def _limits(lic: License) -> None:
            grant = self._require_grant(lic, module_key)
            previous.update(grant.limits.to_dict())
            grant.limits = limits

        lic = await self._mutate(tenant_id, module_key, _limits)
        await self._usage.update_limits(tenant_id, module_key, current_period(), limits)
        self._audit.record(
            tenant_id,
            module_key,
            AuditEventType.LICENSE_UPDATED,
            {"change": "limits", "previous_value": previous, "new_value": limits.to_dict()},
        )
        return lic

    async def renew_module(
        self,
        tenant_id: str,
        module_key: str,
        *,
        expires_at: datetime | None = None,
        extend_days: int | None = None,
    ) -> License:
        """Push the grant's expiry to ``expires_at`` or by ``extend_days``."""
        if (expires_at is None) == (extend_days is None):
            raise InvalidModuleError("Pass exactly one of expires_at or extend_days")
        new_expiry: dict[str, datetime] = {}

        def _renew(lic: License) -> None:
            grant = self._require_grant(lic, module_key)
            if expires_at is not None:
                grant.expires_at = ensure_utc(expires_at)
            else:
                base = max(grant.expires_at or utcnow(), utcnow())
                grant.expires_at = base + timedelta(days=extend_days or 0)
            new_expiry["value"] = grant.expires_at
            if lic.status == LicenseStatus.EXPIRED:
                lic.status = LicenseStatus.ACTIVE

        lic = await self._mutate(tenant_id, module_key, _renew)
        self._audit.record(
            tenant_id,
            module_key,
            AuditEventType.LICENSE_UPDATED,
            {"change": "renew", "new_value": new_expiry["value"].isoformat()},
        )
        return lic

    async def change_tier(self, tenant_id: str, module_key: str, tier: ModuleTier) -> License:
        """Upgrade or downgrade the grant's tier."""
        previous: dict[str, str] = {}

        def _tier(lic: License) -> None:
            grant = self._require_grant(lic, module_key)
            previous["value"] = grant.tier.value
            grant.tier = tier

        lic = await self._mutate(tenant_id, module_key, _tier)
        self._audit.record(
            tenant_id,
            module_key,
            AuditEventType.LICENSE_UPDATED,
            {"change": "tier", "previous_value": previous["value"], "new_value": tier.value},
        )
        return lic

    async def set_status(self, tenant_id: str, status: LicenseStatus) -> License:
        previous: dict[str, str] = {}

        def _status(lic: License) -> None:
            previous["value"] = lic.status.value
            lic.status = status

        lic = await self._mutate(tenant_id, None, _status)
        self._audit.record(
            tenant_id,
            self._core_module_key,
            AuditEventType.LICENSE_UPDATED,
            {"change": "status", "previous_value": previous["value"], "new_value": status.value},
        )
        return lic

    async def find_expiring(self, within_days: int) -> list[License]:
        return await self._licenses.find_expiring(within_days)

    # ── Internals ────────────────────────────────────────────────

    async def _mutate(
        self,
        tenant_id: str,
        module_key: str | None,
        change: Callable[[License], None],
    ) -> License:
        def _apply(existing: License | None) -> License:
            if existing is None:
                raise LicenseNotFoundError(
                    f"No license for tenant {tenant_id!r}", {"tenant_id": tenant_id}
                )
            change(existing)
            return existing

        try:
            lic = await self._licenses.upsert(tenant_id, _apply)
        finally:
            self._invalidate(tenant_id, module_key)
        log.info("license_mutated", tenant_id=tenant_id, module_key=module_key)
        return lic

    @staticmethod
    def _require_grant(lic: License, module_key: str) -> ModuleGrant:
        grant = lic.get_grant(module_key)
        if grant is None:
            raise InvalidModuleError(
                f"Module {module_key!r} is not part of the license",
                {"tenant_id": lic.tenant_id, "module_key": module_key},
            )
        return grant

    def _invalidate(self, tenant_id: str, module_key: str | None) -> None:
        for hook in self._hooks:
            hook(tenant_id, module_key)
