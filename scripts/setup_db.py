#!/usr/bin/env python3
"""Initialize the HRSM licensing schema and optionally seed a demo tenant."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.api.db.licenses import SqlAuditSink, SqlLicenseStore, SqlUsageStore
from src.core.constants import KNOWN_MODULES
from src.core.logging import setup_logging, get_logger
from src.data.db import init_schema, close_engine, get_engine
from src.licensing.admin import LicenseAdmin
from src.licensing.audit import AuditEmitter
from src.licensing.models import ModuleGrant, ModuleLimits, ModuleTier

log = get_logger(__name__)


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(description="HRSM licensing database setup")
    parser.add_argument(
        "--seed-tenant",
        type=str,
        default=None,
        help="Provision a license for this tenant after creating the schema",
    )
    parser.add_argument(
        "--modules",
        type=str,
        nargs="+",
        default=list(KNOWN_MODULES),
        help="Modules to grant the seeded tenant (default: all known modules)",
    )
    parser.add_argument(
        "--employees",
        type=int,
        default=0,
        help="Employees limit per seeded module (0 = unlimited, default: 0)",
    )
    return parser.parse_args()


async def seed_tenant(tenant_id: str, modules: list[str], employees: int) -> None:
    engine = await get_engine()
    audit = AuditEmitter(SqlAuditSink(engine))
    admin = LicenseAdmin(SqlLicenseStore(engine), SqlUsageStore(engine), audit)
    limits = ModuleLimits(employees=employees or None)
    grants = [ModuleGrant(key=key, tier=ModuleTier.BUSINESS, limits=limits) for key in modules]
    await admin.provision(tenant_id, subscription_id="seed", modules=grants)
    await audit.drain()
    log.info("tenant_seeded", tenant_id=tenant_id, modules=modules)


async def main() -> None:
    args = parse_args()
    setup_logging()
    log.info("starting_schema_initialization")

    try:
        await init_schema()
        log.info("schema_initialization_complete")
        if args.seed_tenant:
            await seed_tenant(args.seed_tenant, args.modules, args.employees)
    except Exception as exc:
        log.error("schema_initialization_failed", error=str(exc))
        raise
    finally:
        await close_engine()


if __name__ == "__main__":
    asyncio.run(main())
