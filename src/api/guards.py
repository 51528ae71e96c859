"""Route guards — FastAPI dependencies that turn licensing verdicts into HTTP.

A guard asks the validator for a verdict and either attaches the ``Allow``
to ``request.state`` or raises ``LicenseDenied``, which the app-level
exception handler renders as the deny JSON body.
"""

from __future__ import annotations

import dataclasses
import inspect
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from fastapi import Depends, Request

from src.api.deps import get_validator
from src.core.exceptions import LicenseStoreError
from src.core.logging import get_logger
from src.licensing.models import LimitType
from src.licensing.validator import LicenseValidator
from src.licensing.verdict import Allow, Deny

log = get_logger(__name__)

AmountFn = Callable[[Request], int | None | Awaitable[int | None]]


class LicenseDenied(Exception):
    """Raised by a guard to short-circuit the request with a deny response."""

    def __init__(self, verdict: Deny, extra: dict[str, Any] | None = None) -> None:
        self.verdict = verdict
        self.extra = extra or {}
        super().__init__(verdict.message)

    @property
    def status_code(self) -> int:
        return self.verdict.status_code

    def to_response(self) -> dict[str, Any]:
        return {**self.verdict.to_response(), **self.extra}


# ── Request helpers ───────────────────────────────────────────────


def resolve_tenant_id(request: Request) -> str | None:
    """Tenant from the middleware-populated state, else the ``tenant_id`` query param."""
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id:
        return str(tenant_id)
    return request.query_params.get("tenant_id") or None


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def request_info(request: Request) -> dict[str, Any]:
    return {
        "path": request.url.path,
        "method": request.method,
        "user_agent": request.headers.get("user-agent"),
        "ip": client_ip(request),
    }


# ── Guards ────────────────────────────────────────────────────────


def require_module_license(module_key: str) -> Callable[..., Awaitable[Allow]]:
    """Deny the request unless the tenant holds a valid grant for ``module_key``."""

    async def _require_module_license(
        request: Request,
        validator: LicenseValidator = Depends(get_validator),
    ) -> Allow:
        verdict = await validator.validate(
            resolve_tenant_id(request),
            module_key,
            ip=client_ip(request),
            request_info=request_info(request),
        )
        if isinstance(verdict, Deny):
            raise LicenseDenied(verdict)
        request.state.module_license = verdict
        return verdict

    return _require_module_license


def check_usage_limit(
    module_key: str,
    limit_type: LimitType | str,
    amount_fn: AmountFn | None = None,
) -> Callable[..., Awaitable[Allow]]:
    """Deny the request when it would push ``limit_type`` usage over the quota.

    ``amount_fn(request)`` returns the units the request will consume (sync or
    async); one unit when omitted. Usage is not committed here; the route
    calls ``LicenseValidator.record_usage`` once the operation succeeds.
    """

    async def _check_usage_limit(
        request: Request,
        validator: LicenseValidator = Depends(get_validator),
    ) -> Allow:
        increment_fn = None
        if amount_fn is not None:
            amount = amount_fn(request)
            if inspect.isawaitable(amount):
                amount = await amount

            def increment_fn() -> int | None:
                return amount

        verdict = await validator.check_usage_limit(
            resolve_tenant_id(request),
            module_key,
            limit_type,
            increment_fn,
            request_info=request_info(request),
        )
        if isinstance(verdict, Deny):
            raise LicenseDenied(verdict)
        request.state.usage_limit = verdict
        return verdict

    return _check_usage_limit


def require_multiple_module_licenses(module_keys: Sequence[str]) -> Callable[..., Awaitable[dict[str, Allow]]]:
    """All of ``module_keys`` must be licensed; the first denial wins."""
    keys = list(module_keys)

    async def _require_multiple_module_licenses(
        request: Request,
        validator: LicenseValidator = Depends(get_validator),
    ) -> dict[str, Allow]:
        verdicts = await validator.validate_many(
            resolve_tenant_id(request),
            keys,
            ip=client_ip(request),
            request_info=request_info(request),
        )
        for verdict in verdicts:
            if isinstance(verdict, Deny):
                if verdict.upgrade_url is not None:
                    verdict = dataclasses.replace(verdict, upgrade_url=f"/pricing?modules={','.join(keys)}")
                raise LicenseDenied(
                    verdict,
                    {"required_modules": keys, "failed_module": verdict.module_key},
                )
        licenses = {v.module_key: v for v in verdicts if isinstance(v, Allow)}
        request.state.module_licenses = licenses
        return licenses

    return _require_multiple_module_licenses


def attach_license_info(module_key: str) -> Callable[..., Awaitable[Allow | None]]:
    """Attach the module's license to ``request.state`` without ever denying.

    Used by routes that render differently for licensed tenants. Rate limits
    are not consumed and store failures degrade to "no license".
    """

    async def _attach_license_info(
        request: Request,
        validator: LicenseValidator = Depends(get_validator),
    ) -> Allow | None:
        try:
            verdict = await validator.validate(
                resolve_tenant_id(request),
                module_key,
                ip=client_ip(request),
                request_info=request_info(request),
                enforce_rate_limit=False,
            )
        except LicenseStoreError as exc:
            log.warning("license_info_unavailable", module_key=module_key, error=str(exc))
            verdict = None
        allow = verdict if isinstance(verdict, Allow) else None
        request.state.module_license = allow
        return allow

    return _attach_license_info
