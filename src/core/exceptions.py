"""Custom exception hierarchy for HRSM licensing.

Denials (unlicensed module, expired grant, exhausted quota, rate limit) are
ordinary ``Verdict`` values, not exceptions. Exceptions are reserved for
infrastructure failures and invalid administrative requests.
"""

from __future__ import annotations

from typing import Any


class HRSMBaseError(Exception):
    """Base exception for all HRSM licensing errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context or {}


# ── Storage Layer ────────────────────────────────────────────────

class LicenseStoreError(HRSMBaseError):
    """License or usage store could not be reached or returned garbage."""


class AuditSinkError(HRSMBaseError):
    """Audit record could not be persisted."""


# ── Administration ───────────────────────────────────────────────

class LicenseNotFoundError(HRSMBaseError):
    """Administrative operation targeted a tenant without a license."""


class InvalidModuleError(HRSMBaseError):
    """Module key or limit type is not acceptable for the requested operation."""
