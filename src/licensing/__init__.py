"""Module licensing layer — entitlement checks, usage quotas, rate limiting and audit."""

from src.licensing.models import (
    AuditEventType,
    AuditRecord,
    AuditSeverity,
    License,
    LicenseStatus,
    LimitType,
    ModuleGrant,
    ModuleLimits,
    ModuleTier,
    UsageTracking,
)
from src.licensing.rate_limiter import RateLimitResult, SlidingWindowRateLimiter
from src.licensing.verdict import Allow, Deny, DenyKind, Verdict

__all__ = [
    "Allow",
    "AuditEventType",
    "AuditRecord",
    "AuditSeverity",
    "Deny",
    "DenyKind",
    "License",
    "LicenseStatus",
    "LimitType",
    "ModuleGrant",
    "ModuleLimits",
    "ModuleTier",
    "RateLimitResult",
    "SlidingWindowRateLimiter",
    "UsageTracking",
    "Verdict",
]
