"""Allow/Deny decision values returned by the validation engine.

The engine never raises for an expected outcome; callers pattern-match on
``Allow`` vs ``Deny`` and the HTTP layer maps ``Deny.kind`` to a status code.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

from src.licensing.models import ModuleLimits, ModuleTier


class DenyKind(str, Enum):
    TENANT_ID_REQUIRED = "TENANT_ID_REQUIRED"
    MODULE_NOT_LICENSED = "MODULE_NOT_LICENSED"
    LICENSE_EXPIRED = "LICENSE_EXPIRED"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    VALIDATION_TIMEOUT = "VALIDATION_TIMEOUT"


STATUS_CODES: dict[DenyKind, int] = {
    DenyKind.TENANT_ID_REQUIRED: 400,
    DenyKind.MODULE_NOT_LICENSED: 403,
    DenyKind.LICENSE_EXPIRED: 403,
    DenyKind.LIMIT_EXCEEDED: 429,
    DenyKind.RATE_LIMIT_EXCEEDED: 429,
    DenyKind.VALIDATION_TIMEOUT: 503,
}

_MESSAGES: dict[DenyKind, str] = {
    DenyKind.TENANT_ID_REQUIRED: "Tenant ID is required for license validation",
    DenyKind.MODULE_NOT_LICENSED: "Module is not included in your license",
    DenyKind.LICENSE_EXPIRED: "Module license has expired",
    DenyKind.LIMIT_EXCEEDED: "Usage limit exceeded",
    DenyKind.RATE_LIMIT_EXCEEDED: "Too many license validation requests. Please try again later.",
    DenyKind.VALIDATION_TIMEOUT: "License validation timed out",
}


@dataclass(frozen=True)
class Allow:
    """Access granted. Usage fields are populated only by usage-limit checks."""

    module_key: str
    tier: ModuleTier | None = None
    limits: ModuleLimits | None = None
    expires_at: datetime | None = None
    activated_at: datetime | None = None
    bypassed: bool = False
    limit_type: str | None = None
    current_usage: int | None = None
    limit: int | None = None
    percentage: int | None = None
    approaching_limit: bool = False

    allowed = True


@dataclass(frozen=True)
class Deny:
    """Access refused with a typed reason."""

    kind: DenyKind
    module_key: str
    reason: str = ""
    upgrade_url: str | None = None
    retry_after_seconds: int | None = None
    expires_at: datetime | None = None
    limit_type: str | None = None
    current_usage: int | None = None
    limit: int | None = None
    details: dict[str, Any] = field(default_factory=dict)

    allowed = False

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.kind]

    @property
    def message(self) -> str:
        return self.reason or _MESSAGES[self.kind]

    def to_response(self) -> dict[str, Any]:
        """Deny-response JSON body. Optional keys are omitted when unset."""
        body: dict[str, Any] = {
            "error": self.kind.value,
            "message": self.message,
            "module_key": self.module_key,
        }
        optional = {
            "upgrade_url": self.upgrade_url,
            "retry_after_seconds": self.retry_after_seconds,
            "limit_type": self.limit_type,
            "current_usage": self.current_usage,
            "limit": self.limit,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }
        body.update({k: v for k, v in optional.items() if v is not None})
        return body


Verdict = Union[Allow, Deny]
