"""License validation engine — allow/deny decisions for module-scoped requests.

Decision order for ``validate``:

1. core module → allow, no rate limit, no audit
2. missing tenant → TENANT_ID_REQUIRED
3. rate limit (tenant, IP, module) → RATE_LIMIT_EXCEEDED
4. missing license / grant, disabled grant, suspended or cancelled license
   → MODULE_NOT_LICENSED
5. expired grant or expired license → LICENSE_EXPIRED
6. allow

Every denial is audited through the fire-and-forget emitter. Store failures
are raised as ``LicenseStoreError`` and never reported as a denial.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime
from typing import Any, TypeVar

from src.core.constants import (
    DEFAULT_VALIDATION_TIMEOUT,
    DEFAULT_WARNING_THRESHOLD_PCT,
    LIMIT_UPGRADE_URL_TEMPLATE,
    MODULE_CORE_HR,
    RENEW_URL_TEMPLATE,
    UPGRADE_URL_TEMPLATE,
    WARNING_DEDUP_SECONDS,
)
from src.core.exceptions import InvalidModuleError, LicenseStoreError
from src.core.interfaces import LicenseStore, UsageStore
from src.core.logging import get_logger
from src.licensing.audit import AuditEmitter
from src.licensing.models import (
    AuditEventType,
    License,
    LicenseStatus,
    LimitType,
    ModuleGrant,
    UsageTracking,
    UsageWarning,
    current_period,
    utcnow,
)
from src.licensing.rate_limiter import SlidingWindowRateLimiter, rate_limit_key
from src.licensing.verdict import Allow, Deny, DenyKind, Verdict

log = get_logger(__name__)

T = TypeVar("T")

IncrementFn = Callable[[], int | None]

_DENY_EVENTS: dict[DenyKind, AuditEventType] = {
    DenyKind.TENANT_ID_REQUIRED: AuditEventType.VALIDATION_FAILURE,
    DenyKind.MODULE_NOT_LICENSED: AuditEventType.VALIDATION_FAILURE,
    DenyKind.LICENSE_EXPIRED: AuditEventType.VALIDATION_FAILURE,
    DenyKind.VALIDATION_TIMEOUT: AuditEventType.VALIDATION_FAILURE,
    DenyKind.RATE_LIMIT_EXCEEDED: AuditEventType.RATE_LIMITED,
    DenyKind.LIMIT_EXCEEDED: AuditEventType.LIMIT_EXCEEDED,
}


class LicenseValidator:
    """Per-request entitlement checks backed by the license and usage stores."""

    def __init__(
        self,
        license_store: LicenseStore,
        usage_store: UsageStore,
        rate_limiter: SlidingWindowRateLimiter,
        audit: AuditEmitter,
        *,
        core_module_key: str = MODULE_CORE_HR,
        audit_success_events: bool = False,
        timeout_seconds: float = DEFAULT_VALIDATION_TIMEOUT,
        warning_threshold_pct: int = DEFAULT_WARNING_THRESHOLD_PCT,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._licenses = license_store
        self._usage = usage_store
        self._rate_limiter = rate_limiter
        self._audit = audit
        self._core_module_key = core_module_key
        self._audit_success = audit_success_events
        self._timeout = timeout_seconds
        self._warning_pct = warning_threshold_pct
        self._clock = clock
        self._total = 0
        self._success = 0
        self._failure = 0
        self._by_kind: Counter[str] = Counter()

    @property
    def core_module_key(self) -> str:
        return self._core_module_key

    @property
    def rate_limiter(self) -> SlidingWindowRateLimiter:
        return self._rate_limiter

    def is_core(self, module_key: str) -> bool:
        return module_key == self._core_module_key

    # ── Module access ────────────────────────────────────────────

    async def validate(
        self,
        tenant_id: str | None,
        module_key: str,
        *,
        ip: str | None = None,
        request_info: dict[str, Any] | None = None,
        enforce_rate_limit: bool = True,
    ) -> Verdict:
        """Decide whether ``tenant_id`` may use ``module_key``."""
        if self.is_core(module_key):
            return Allow(module_key=module_key, bypassed=True)

        info = dict(request_info or {})
        if ip is not None:
            info.setdefault("ip", ip)
        verdict = await self._with_timeout(
            self._validate(tenant_id, module_key, ip, info, enforce_rate_limit), tenant_id, module_key, info
        )
        self._count(verdict)
        return verdict

    async def validate_many(
        self,
        tenant_id: str | None,
        module_keys: Sequence[str],
        *,
        ip: str | None = None,
        request_info: dict[str, Any] | None = None,
    ) -> list[Verdict]:
        """Validate several modules concurrently; results keep input order."""
        return list(
            await asyncio.gather(
                *(self.validate(tenant_id, key, ip=ip, request_info=request_info) for key in module_keys)
            )
        )

    async def _validate(
        self,
        tenant_id: str | None,
        module_key: str,
        ip: str | None,
        info: dict[str, Any],
        enforce_rate_limit: bool = True,
    ) -> Verdict:
        if not tenant_id:
            return self._deny(
                Deny(kind=DenyKind.TENANT_ID_REQUIRED, module_key=module_key),
                tenant_id,
                info,
            )

        if enforce_rate_limit:
            rl = self._rate_limiter.check_and_increment(rate_limit_key(tenant_id, module_key, ip))
            if not rl.allowed:
                return self._deny(
                    Deny(
                        kind=DenyKind.RATE_LIMIT_EXCEEDED,
                        module_key=module_key,
                        retry_after_seconds=rl.retry_after_seconds,
                    ),
                    tenant_id,
                    info,
                )

        lic = await self._load_license(tenant_id, module_key)
        grant, reason = self._resolve_grant(lic, module_key)
        if grant is None:
            return self._deny(self._not_licensed(module_key, reason), tenant_id, info)

        assert lic is not None
        now = self._clock()
        if lic.status == LicenseStatus.EXPIRED or grant.is_expired(now):
            return self._deny(
                Deny(
                    kind=DenyKind.LICENSE_EXPIRED,
                    module_key=module_key,
                    reason="License has expired" if lic.status == LicenseStatus.EXPIRED
                    else "Module license has expired",
                    expires_at=grant.expires_at,
                    upgrade_url=RENEW_URL_TEMPLATE.format(module_key=module_key),
                ),
                tenant_id,
                info,
            )

        verdict = Allow(
            module_key=module_key,
            tier=grant.tier,
            limits=grant.limits,
            expires_at=grant.expires_at,
            activated_at=grant.activated_at,
        )
        log.debug("license_validation_success", tenant_id=tenant_id, module_key=module_key, tier=grant.tier.value)
        if self._audit_success:
            self._audit.record(
                tenant_id,
                module_key,
                AuditEventType.VALIDATION_SUCCESS,
                {**info, "reason": "Validation successful", "tier": grant.tier.value},
            )
        return verdict

    # ── Usage limits ─────────────────────────────────────────────

    async def check_usage_limit(
        self,
        tenant_id: str | None,
        module_key: str,
        limit_type: LimitType | str,
        increment_fn: IncrementFn | None = None,
        *,
        request_info: dict[str, Any] | None = None,
    ) -> Verdict:
        """Would one more unit (or ``increment_fn()`` units) exceed the quota?

        The check never commits usage; call ``record_usage`` once the guarded
        operation has succeeded.
        """
        lt = _limit_type(limit_type)
        if self.is_core(module_key):
            return Allow(module_key=module_key, bypassed=True, limit_type=lt.value)

        info = dict(request_info or {})
        verdict = await self._with_timeout(
            self._check_usage_limit(tenant_id, module_key, lt, increment_fn, info),
            tenant_id,
            module_key,
            info,
        )
        self._count(verdict)
        return verdict

    async def _check_usage_limit(
        self,
        tenant_id: str | None,
        module_key: str,
        limit_type: LimitType,
        increment_fn: IncrementFn | None,
        info: dict[str, Any],
    ) -> Verdict:
        if not tenant_id:
            return self._deny(Deny(kind=DenyKind.TENANT_ID_REQUIRED, module_key=module_key), tenant_id, info)

        lic = await self._load_license(tenant_id, module_key)
        grant, reason = self._resolve_grant(lic, module_key)
        if grant is None:
            return self._deny(self._not_licensed(module_key, reason), tenant_id, info)

        period = current_period(self._clock())
        tracking = await self._store_call(
            self._usage.get_or_create(tenant_id, module_key, period, grant.limits),
            "usage_get_or_create",
            tenant_id,
            module_key,
        )

        current = tracking.current(limit_type)
        increment = increment_fn() if increment_fn is not None else 1
        if increment is None:
            increment = 1
        if increment < 0:
            raise InvalidModuleError(
                "Usage increment must be non-negative",
                {"module_key": module_key, "limit_type": limit_type.value, "increment": increment},
            )
        projected = current + increment
        limit = tracking.limits.get(limit_type)

        if not limit:
            return Allow(
                module_key=module_key,
                tier=grant.tier,
                limits=grant.limits,
                limit_type=limit_type.value,
                current_usage=current,
                limit=None,
            )

        percentage = round(current / limit * 100)
        if projected > limit:
            return self._deny(
                Deny(
                    kind=DenyKind.LIMIT_EXCEEDED,
                    module_key=module_key,
                    limit_type=limit_type.value,
                    current_usage=current,
                    limit=limit,
                    upgrade_url=LIMIT_UPGRADE_URL_TEMPLATE.format(module_key=module_key),
                    details={"projected_usage": projected, "requested_amount": increment},
                ),
                tenant_id,
                info,
            )

        approaching = percentage >= self._warning_pct
        if approaching:
            await self._warn_approaching(tracking, limit_type, current, limit, percentage)

        return Allow(
            module_key=module_key,
            tier=grant.tier,
            limits=grant.limits,
            limit_type=limit_type.value,
            current_usage=current,
            limit=limit,
            percentage=percentage,
            approaching_limit=approaching,
        )

    async def record_usage(
        self,
        tenant_id: str,
        module_key: str,
        limit_type: LimitType | str,
        amount: int = 1,
    ) -> UsageTracking | None:
        """Commit usage after a guarded operation succeeded. Core usage is not tracked."""
        lt = _limit_type(limit_type)
        if self.is_core(module_key):
            return None
        lic = await self._load_license(tenant_id, module_key)
        grant = lic.get_grant(module_key) if lic is not None else None
        limits = grant.limits if grant is not None else None
        tracking = await self._store_call(
            self._usage.increment(
                tenant_id, module_key, current_period(self._clock()), lt.value, amount, limits
            ),
            "usage_increment",
            tenant_id,
            module_key,
        )
        log.debug(
            "usage_recorded",
            tenant_id=tenant_id,
            module_key=module_key,
            limit_type=lt.value,
            amount=amount,
            total=tracking.current(lt),
        )
        return tracking

    async def _warn_approaching(
        self,
        tracking: UsageTracking,
        limit_type: LimitType,
        current: int,
        limit: int,
        percentage: int,
    ) -> None:
        now = self._clock()
        if tracking.has_recent_warning(limit_type.value, WARNING_DEDUP_SECONDS, now):
            return
        await self._store_call(
            self._usage.add_warning(
                tracking.tenant_id,
                tracking.module_key,
                tracking.period,
                UsageWarning(limit_type=limit_type.value, percentage=percentage, triggered_at=now),
            ),
            "usage_add_warning",
            tracking.tenant_id,
            tracking.module_key,
        )
        log.warning(
            "usage_approaching_limit",
            tenant_id=tracking.tenant_id,
            module_key=tracking.module_key,
            limit_type=limit_type.value,
            percentage=percentage,
        )
        self._audit.record(
            tracking.tenant_id,
            tracking.module_key,
            AuditEventType.LIMIT_WARNING,
            {
                "limit_type": limit_type.value,
                "current_value": current,
                "limit_value": limit,
                "percentage": percentage,
            },
        )

    # ── Observability ────────────────────────────────────────────

    def get_processing_stats(self) -> dict[str, Any]:
        return {
            "total": self._total,
            "success": self._success,
            "failure": self._failure,
            "success_ratio": self._success / self._total if self._total else 1.0,
            "by_kind": dict(self._by_kind),
        }

    def get_rate_limit_stats(self) -> dict[str, float | int]:
        return self._rate_limiter.stats()

    def health_check(self) -> dict[str, Any]:
        audit_stats = self._audit.stats()
        degraded = audit_stats["failed"] > audit_stats["written"]
        return {
            "status": "degraded" if degraded else "healthy",
            "processing": self.get_processing_stats(),
            "rate_limit": self.get_rate_limit_stats(),
            "audit": audit_stats,
        }

    def reset_stats(self) -> None:
        self._total = self._success = self._failure = 0
        self._by_kind.clear()

    # ── Internals ────────────────────────────────────────────────

    async def _with_timeout(
        self,
        coro: Awaitable[Verdict],
        tenant_id: str | None,
        module_key: str,
        info: dict[str, Any],
    ) -> Verdict:
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except asyncio.TimeoutError:
            log.error("license_validation_timeout", tenant_id=tenant_id, module_key=module_key, timeout=self._timeout)
            return self._deny(
                Deny(kind=DenyKind.VALIDATION_TIMEOUT, module_key=module_key),
                tenant_id,
                info,
            )

    async def _load_license(self, tenant_id: str, module_key: str) -> License | None:
        return await self._store_call(
            self._licenses.get_for_module(tenant_id, module_key),
            "license_lookup",
            tenant_id,
            module_key,
        )

    async def _store_call(self, coro: Awaitable[T], operation: str, tenant_id: str, module_key: str) -> T:
        try:
            return await coro
        except LicenseStoreError:
            raise
        except Exception as exc:
            log.error(
                "license_store_error",
                operation=operation,
                tenant_id=tenant_id,
                module_key=module_key,
                error=str(exc),
            )
            raise LicenseStoreError(
                f"{operation} failed: {exc}",
                {"tenant_id": tenant_id, "module_key": module_key, "operation": operation},
            ) from exc

    @staticmethod
    def _resolve_grant(lic: License | None, module_key: str) -> tuple[ModuleGrant | None, str]:
        if lic is None:
            return None, "No license found for tenant"
        grant = lic.get_grant(module_key)
        if grant is None:
            return None, "Module not included in license"
        if not grant.enabled:
            return None, "Module is disabled"
        if lic.status in (LicenseStatus.SUSPENDED, LicenseStatus.CANCELLED):
            return None, f"License is {lic.status.value}"
        return grant, ""

    @staticmethod
    def _not_licensed(module_key: str, reason: str) -> Deny:
        return Deny(
            kind=DenyKind.MODULE_NOT_LICENSED,
            module_key=module_key,
            reason=reason,
            upgrade_url=UPGRADE_URL_TEMPLATE.format(module_key=module_key),
        )

    def _deny(self, verdict: Deny, tenant_id: str | None, info: dict[str, Any]) -> Deny:
        log.info(
            "license_validation_denied",
            tenant_id=tenant_id,
            module_key=verdict.module_key,
            error=verdict.kind.value,
            reason=verdict.message,
        )
        context: dict[str, Any] = {**info, "reason": verdict.message, "error": verdict.kind.value}
        if verdict.limit_type is not None:
            context.update(
                limit_type=verdict.limit_type,
                current_value=verdict.current_usage,
                limit_value=verdict.limit,
                **verdict.details,
            )
        if verdict.expires_at is not None:
            context["expires_at"] = verdict.expires_at.isoformat()
        if verdict.retry_after_seconds is not None:
            context["retry_after_seconds"] = verdict.retry_after_seconds
        self._audit.record(tenant_id, verdict.module_key, _DENY_EVENTS[verdict.kind], context)
        return verdict

    def _count(self, verdict: Verdict) -> None:
        self._total += 1
        if isinstance(verdict, Allow):
            self._success += 1
        else:
            self._failure += 1
            self._by_kind[verdict.kind.value] += 1


def _limit_type(value: LimitType | str) -> LimitType:
    try:
        return LimitType(value)
    except ValueError as exc:
        raise InvalidModuleError(f"Unknown limit type: {value!r}", {"limit_type": value}) from exc
