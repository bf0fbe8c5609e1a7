"""
Operator tool for tenant schemas.

Usage:
    storedesk-admin sync                      # Reconcile every tenant schema
    storedesk-admin migrate 42                # Move store 42 into its own schema
    storedesk-admin migrate --all-active      # ...every active store
    storedesk-admin validate 42               # Check store 42's schema
    storedesk-admin capacity --new-stores 5   # Can we take 5 more stores?

Reports are printed as JSON; the exit code is 1 when any report carries errors.
"""

import argparse
import asyncio
import json
import sys
from typing import List, Optional

from . import config
from .db import DatabaseManager
from .observability.context import get_principal, get_store_id, reset_principal, reset_store_id, set_principal, set_store_id
from .observability.logging import configure_logging
from .tenancy.capacity import capacity_report
from .tenancy.errors import TenancyError
from .tenancy.introspector import SchemaIntrospector
from .tenancy.migrator import TenantMigrator
from .tenancy.stores import MigrationAuditLog, TenantRepository
from .tenancy.synchronizer import SchemaSynchronizer
from .tenancy.validation import MigrationValidator

OPERATOR = "storedesk-admin"


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def run_sync(db_manager) -> int:
    report = await SchemaSynchronizer(db_manager, repository=TenantRepository(db_manager)).synchronize_all()
    _print(report.to_dict())
    return 0 if report.success else 1


async def run_migrate(db_manager, store_id: Optional[int], all_active: bool) -> int:
    repository = TenantRepository(db_manager)
    audit_log = MigrationAuditLog(db_manager)
    await audit_log.init_db()
    migrator = TenantMigrator(db_manager, repository, SchemaIntrospector(db_manager), audit_log=audit_log)
    if all_active:
        targets = [t.id for t in await repository.list_active()]
    else:
        targets = [int(store_id)]
    results = []
    ok = True
    for tid in targets:
        tok = set_store_id(tid)
        try:
            result = await migrator.migrate_tenant(tid)
        finally:
            reset_store_id(tok)
        ok = ok and result.success
        results.append(result.to_dict())
    _print(results if all_active else results[0])
    return 0 if ok else 1


async def run_validate(db_manager, store_id: Optional[int]) -> int:
    validator = MigrationValidator(TenantRepository(db_manager), SchemaIntrospector(db_manager))
    if store_id is None:
        reports = await validator.validate_all_active()
        _print(reports)
        return 0 if all(r["isValidMigration"] for r in reports) else 1
    report = await validator.validate_store(store_id)
    _print(report)
    return 0 if report["isValidMigration"] else 1


async def run_capacity(db_manager, new_stores: int) -> int:
    report = capacity_report(await TenantRepository(db_manager).count(), new_stores)
    _print(report)
    validation = report["validation"]
    return 0 if validation is None or validation["canSupport"] else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="storedesk-admin", description="Tenant schema administration")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("sync", help="Add missing tables/columns to every tenant schema")

    p_migrate = sub.add_parser("migrate", help="Move a store's rows into its own schema")
    p_migrate.add_argument("store_id", nargs="?", type=int)
    p_migrate.add_argument("--all-active", action="store_true", help="Migrate every active store")

    p_validate = sub.add_parser("validate", help="Check a store's schema (all active stores if omitted)")
    p_validate.add_argument("store_id", nargs="?", type=int)

    p_capacity = sub.add_parser("capacity", help="Show schema capacity")
    p_capacity.add_argument("--new-stores", type=int, default=0)
    return parser


async def _dispatch(args, db_manager) -> int:
    tok = set_principal(OPERATOR)
    try:
        if args.command == "sync":
            return await run_sync(db_manager)
        if args.command == "migrate":
            return await run_migrate(db_manager, args.store_id, args.all_active)
        if args.command == "validate":
            return await run_validate(db_manager, args.store_id)
        return await run_capacity(db_manager, args.new_stores)
    finally:
        reset_principal(tok)
        await db_manager.close()


def main(argv: Optional[List[str]] = None, db_manager=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "migrate" and args.store_id is None and not args.all_active:
        parser.error("migrate needs a store id or --all-active")
    configure_logging(level=config.LOG_LEVEL, store_getter=get_store_id, principal_getter=get_principal)
    try:
        return asyncio.run(_dispatch(args, db_manager or DatabaseManager()))
    except TenancyError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
