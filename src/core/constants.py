"""System-wide constants. All magic numbers and strings live here."""

from __future__ import annotations

# ── Module Keys ──────────────────────────────────────────────────
MODULE_CORE_HR = "hr-core"
MODULE_ATTENDANCE = "attendance"
MODULE_LEAVE = "leave"
MODULE_PAYROLL = "payroll"
MODULE_DOCUMENTS = "documents"
MODULE_COMMUNICATION = "communication"
MODULE_REPORTING = "reporting"
MODULE_TASKS = "tasks"
MODULE_LOGGING = "logging"
MODULE_LIFE_INSURANCE = "life-insurance"

KNOWN_MODULES: tuple[str, ...] = (
    MODULE_CORE_HR,
    MODULE_ATTENDANCE,
    MODULE_LEAVE,
    MODULE_PAYROLL,
    MODULE_DOCUMENTS,
    MODULE_COMMUNICATION,
    MODULE_REPORTING,
    MODULE_TASKS,
    MODULE_LOGGING,
    MODULE_LIFE_INSURANCE,
)

# ── Limit Types ──────────────────────────────────────────────────
LIMIT_EMPLOYEES = "employees"
LIMIT_STORAGE = "storage"
LIMIT_API_CALLS = "api_calls"

# ── Upgrade / Renewal Paths ──────────────────────────────────────
UPGRADE_URL_TEMPLATE = "/pricing?module={module_key}"
RENEW_URL_TEMPLATE = "/settings/license?action=renew&module={module_key}"
LIMIT_UPGRADE_URL_TEMPLATE = "/settings/license?action=upgrade&module={module_key}"

# ── Defaults ─────────────────────────────────────────────────────
DEFAULT_RATE_LIMIT_WINDOW = 60.0       # seconds
DEFAULT_RATE_LIMIT_MAX_REQUESTS = 100  # per window per tenant/IP/module
DEFAULT_CACHE_TTL = 300.0              # 5 minutes
DEFAULT_CACHE_MAXSIZE = 10_000
DEFAULT_WARNING_THRESHOLD_PCT = 80
WARNING_DEDUP_SECONDS = 24 * 60 * 60
DEFAULT_VALIDATION_TIMEOUT = 5.0
DEFAULT_EXPIRING_WITHIN_DAYS = 30

# ── Header Names ─────────────────────────────────────────────────
TENANT_HEADER = "x-tenant-id"
