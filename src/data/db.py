"""PostgreSQL connection and licensing schema definitions."""

from __future__ import annotations

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    MetaData,
    String,
    Table,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from config.settings import get_settings
from src.core.logging import get_logger

log = get_logger(__name__)

metadata = MetaData()

# ── Tables ───────────────────────────────────────────────────────

licenses = Table(
    "licenses",
    metadata,
    Column("tenant_id", String, primary_key=True),
    Column("subscription_id", String, nullable=False, default=""),
    Column("status", String, nullable=False, index=True),
    Column("modules", JSONB, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

usage_tracking = Table(
    "usage_tracking",
    metadata,
    Column("tenant_id", String, nullable=False),
    Column("module_key", String, nullable=False),
    Column("period", String, nullable=False),
    Column("usage", JSONB, nullable=False),
    Column("limits", JSONB, nullable=False),
    Column("warnings", JSONB, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("tenant_id", "module_key", "period", name="uq_usage_tenant_module_period"),
)

license_audit = Table(
    "license_audit",
    metadata,
    Column("audit_id", String, primary_key=True),
    Column("tenant_id", String, nullable=True, index=True),
    Column("module_key", String, nullable=False, index=True),
    Column("event_type", String, nullable=False, index=True),
    Column("severity", String, nullable=False, index=True),
    Column("context", JSONB, nullable=False),
    Column("timestamp", DateTime(timezone=True), nullable=False, index=True),
    Index("ix_license_audit_tenant_ts", "tenant_id", "timestamp"),
)


# ── Engine ───────────────────────────────────────────────────────

_engine: AsyncEngine | None = None


async def get_engine() -> AsyncEngine:
    """Get or create the async database engine (singleton)."""
    global _engine  # noqa: PLW0603
    if _engine is None:
        settings = get_settings()
        db_url = settings.database_url.get_secret_value()
        _engine = create_async_engine(
            db_url,
            echo=False,
            pool_size=10,
            max_overflow=20,
        )
        log.info("database_engine_created", host=db_url.split("@")[-1].split("?")[0])
    return _engine


async def init_schema() -> None:
    """Create all licensing tables."""
    engine = await get_engine()

    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    log.info("schema_initialized", tables=sorted(metadata.tables))


async def close_engine() -> None:
    """Dispose the database engine."""
    global _engine  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        log.info("database_engine_closed")
