"""One-time carve-out of a store's rows from the shared schema into its own schema."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

from .. import config
from ..db import is_connectivity_error
from . import ddl
from .errors import (
    ConnectivityError,
    MigrationInProgressError,
    SchemaConflictError,
    TableMigrationError,
    TenantNotFoundError,
)
from .introspector import SchemaIntrospector
from .models import MigrationResult, Tenant
from .registry import TableRegistry, default_registry
from .stores import MigrationAuditLog, TenantRepository

log = logging.getLogger(__name__)

DescriptorHook = Callable[[int], Awaitable[None]]

COPY_POLICIES = ("copy", "structure_only")

# Namespace for pg advisory locks taken by the migrator (two-int form: namespace, store id).
ADVISORY_LOCK_NAMESPACE = 0x5D35


class TenantMigrator:
    def __init__(
        self,
        db_manager,
        repository: TenantRepository,
        introspector: Optional[SchemaIntrospector] = None,
        registry: Optional[TableRegistry] = None,
        *,
        audit_log: Optional[MigrationAuditLog] = None,
        statement_timeout: Optional[float] = None,
        shared_table_policy: Optional[str] = None,
        schema_prefix: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db_manager = db_manager
        self.repository = repository
        self.introspector = introspector or SchemaIntrospector(db_manager)
        self.registry = registry or default_registry
        self.audit_log = audit_log
        self.statement_timeout = float(
            statement_timeout if statement_timeout is not None else config.SCHEMA_STATEMENT_TIMEOUT_SECONDS
        )
        policy = (shared_table_policy or config.SHARED_TABLE_COPY_POLICY or "copy").strip().lower()
        if policy not in COPY_POLICIES:
            raise ValueError(f"Unknown shared table policy: {policy!r}")
        self.shared_table_policy = policy
        self.schema_prefix = schema_prefix if schema_prefix is not None else config.TENANT_SCHEMA_PREFIX
        self._clock = clock
        self._local_locks: Dict[int, asyncio.Lock] = {}
        self._descriptor_hooks: List[DescriptorHook] = []

    def on_descriptor_changed(self, hook: DescriptorHook) -> None:
        """Register a coroutine called with the store id after its descriptor is rewritten."""
        self._descriptor_hooks.append(hook)

    def target_schema_for(self, tenant: Tenant) -> str:
        existing = tenant.schema_name
        if existing:
            return existing
        return f"{self.schema_prefix}{tenant.id}_{int(self._clock() * 1000)}"

    async def migrate_tenant(self, tenant_id: int, *, cancel_event: Optional[asyncio.Event] = None) -> MigrationResult:
        tenant_id = int(tenant_id)
        lock = self._local_locks.setdefault(tenant_id, asyncio.Lock())
        if lock.locked():
            raise MigrationInProgressError(tenant_id)
        async with lock:
            return await self._migrate_locked(tenant_id, cancel_event)

    async def _migrate_locked(self, tenant_id: int, cancel_event: Optional[asyncio.Event]) -> MigrationResult:
        tenant = await self.repository.get(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)

        schema_name = ddl.validate_identifier(self.target_schema_for(tenant))
        owner = await self.repository.schema_owner(schema_name, exclude_id=tenant_id)
        if owner is not None:
            raise SchemaConflictError(schema_name, owner)

        tables = self.registry.tenant_tables()
        result = MigrationResult(store_id=tenant.id, store_name=tenant.name, schema_name=schema_name)
        result.summary.total_tables = len(tables)
        log.info("Migrating store %s (%s) into schema %s", tenant.id, tenant.name, schema_name)

        interrupted: Optional[BaseException] = None
        async with self.db_manager._conn() as db:
            await self._acquire_advisory_lock(db, tenant_id)
            try:
                await self._run_statement(db, ddl.create_schema_sql(schema_name), fatal=True)
                for table in tables:
                    if cancel_event is not None and cancel_event.is_set():
                        result.cancelled = True
                        log.warning("Migration of store %s cancelled before table %s", tenant_id, table)
                        break
                    # The in-flight table always runs to completion; cancellation is honored
                    # at the boundary afterwards.
                    step = asyncio.ensure_future(self._migrate_table(db, tenant, schema_name, table, result))
                    try:
                        await asyncio.shield(step)
                    except asyncio.CancelledError as exc:
                        await step
                        result.cancelled = True
                        interrupted = exc
                        break
            finally:
                await self._release_advisory_lock(db, tenant_id)

        if result.cancelled:
            result.success = False
            log.warning("Migration of store %s stopped early; descriptor left unchanged", tenant_id)
            if interrupted is not None:
                raise interrupted
            return result

        new_descriptor = tenant.descriptor.with_schema(schema_name)
        await self.repository.update_descriptor(tenant_id, new_descriptor.serialize())
        result.descriptor_updated = True
        await self._fire_descriptor_hooks(tenant_id)

        result.success = not result.errors
        log.info(
            "Migration finished for store %s: success=%s migrated=%d skipped=%d errors=%d",
            tenant_id,
            result.success,
            len(result.migrated_tables),
            len(result.skipped_tables),
            len(result.errors),
        )
        if self.audit_log is not None:
            await self.audit_log.record(result)
        return result

    async def _migrate_table(self, db, tenant: Tenant, schema_name: str, table: str, result: MigrationResult) -> None:
        reference = self.registry.reference_schema()
        try:
            if await self.introspector.table_exists(schema_name, table):
                log.info("Table %s already exists in %s, skipping", table, schema_name)
                result.skipped_tables.append(table)
                return

            discriminator = self.registry.discriminator_column
            filtered = await self.introspector.column_exists(reference, table, discriminator)
            # Structure and rows go in together: a failed copy leaves no table behind,
            # so a re-run retries it instead of skipping an empty table.
            async with db.transaction():
                await db.execute(ddl.clone_table_sql(reference, schema_name, table), timeout=self.statement_timeout)
                if filtered:
                    status = await db.execute(
                        ddl.copy_rows_sql(reference, schema_name, table, discriminator),
                        int(tenant.id),
                        timeout=self.statement_timeout,
                    )
                elif self.shared_table_policy == "copy":
                    log.warning("Table %s has no %s column; copying all rows into %s", table, discriminator, schema_name)
                    status = await db.execute(
                        ddl.copy_rows_sql(reference, schema_name, table), timeout=self.statement_timeout
                    )
                else:
                    status = "INSERT 0 0"
            rows = ddl.affected_rows(status)
            result.record_migrated(table, rows)
            log.info("Migrated %s: %d rows into %s", table, rows, schema_name)
        except ConnectivityError:
            raise
        except Exception as exc:
            if is_connectivity_error(exc):
                raise ConnectivityError(f"Lost database connection while migrating {table}: {exc}") from exc
            err = TableMigrationError(table, exc)
            log.error("%s", err)
            result.record_error(str(err))

    async def _run_statement(self, db, sql: str, *args, fatal: bool = False):
        try:
            return await db.execute(sql, *args, timeout=self.statement_timeout)
        except Exception as exc:
            if fatal or is_connectivity_error(exc):
                raise ConnectivityError(f"Could not prepare migration: {exc}") from exc
            raise

    async def _acquire_advisory_lock(self, db, tenant_id: int) -> None:
        try:
            got = await db.fetchval(
                "SELECT pg_try_advisory_lock($1, $2)", ADVISORY_LOCK_NAMESPACE, int(tenant_id)
            )
        except Exception as exc:
            raise ConnectivityError(f"Could not take migration lock: {exc}") from exc
        if not got:
            raise MigrationInProgressError(tenant_id)

    async def _release_advisory_lock(self, db, tenant_id: int) -> None:
        try:
            await db.fetchval("SELECT pg_advisory_unlock($1, $2)", ADVISORY_LOCK_NAMESPACE, int(tenant_id))
        except Exception as exc:
            # Session locks die with the connection anyway.
            log.warning("Could not release migration lock for store %s: %s", tenant_id, exc)

    async def _fire_descriptor_hooks(self, tenant_id: int) -> None:
        for hook in list(self._descriptor_hooks):
            try:
                await hook(tenant_id)
            except Exception as exc:
                log.warning("Descriptor change hook failed for store %s: %s", tenant_id, exc)
