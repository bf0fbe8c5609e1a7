"""Additive reconciliation of tenant schemas against the reference schema.

Missing tables are created and missing columns are added; nothing is ever dropped or
narrowed, and a column whose type drifted from the reference is left alone. Running it
again right after a successful run is a no-op.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from .. import config
from ..db import is_connectivity_error
from . import ddl
from .errors import ColumnSyncError, ConnectivityError, InvalidSchemaNameError, TableSyncError
from .introspector import SchemaIntrospector
from .models import ColumnInfo, SyncReport
from .registry import TableRegistry, default_registry

log = logging.getLogger(__name__)


class SchemaSynchronizer:
    def __init__(
        self,
        db_manager,
        introspector: Optional[SchemaIntrospector] = None,
        registry: Optional[TableRegistry] = None,
        *,
        repository=None,
        statement_timeout: Optional[float] = None,
    ):
        self.db_manager = db_manager
        self.introspector = introspector or SchemaIntrospector(db_manager)
        self.registry = registry or default_registry
        self.repository = repository
        self.statement_timeout = float(
            statement_timeout if statement_timeout is not None else config.SCHEMA_STATEMENT_TIMEOUT_SECONDS
        )

    async def tenant_schemas(self, report: SyncReport) -> List[str]:
        """Prefixed schemas plus any schema an active store's descriptor names."""
        schemas = list(await self.introspector.list_tenant_schemas())
        if self.repository is None:
            return schemas
        try:
            tenants = await self.repository.list_active()
        except ConnectivityError:
            raise
        except Exception as exc:
            if is_connectivity_error(exc):
                raise ConnectivityError(f"Could not list stores for schema sync: {exc}") from exc
            log.error("Could not list stores for schema sync: %s", exc)
            report.errors.append(f"Error listing stores: {exc}")
            return schemas
        reference = self.registry.reference_schema()
        for tenant in tenants:
            name = tenant.schema_name
            if not name or name == reference or name in schemas:
                continue
            try:
                schemas.append(ddl.validate_identifier(name))
            except InvalidSchemaNameError as exc:
                report.errors.append(f"Store {tenant.id} names an invalid schema: {exc}")
        return schemas

    async def synchronize_all(self, *, cancel_event: Optional[asyncio.Event] = None) -> SyncReport:
        """Reconcile every tenant schema; returns the aggregate report."""
        report = SyncReport()
        schemas = await self.tenant_schemas(report)
        log.info("Schema sync starting: %d tenant schemas", len(schemas))
        reference = await self._reference_columns()
        for schema in schemas:
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                break
            report.merge(await self._synchronize(schema, reference, cancel_event))
        log.info(
            "Schema sync finished: schemas=%d tables_created=%d columns_added=%d errors=%d",
            report.schemas_processed,
            report.tables_created,
            report.columns_added,
            len(report.errors),
        )
        return report

    async def synchronize_schema(self, schema: str) -> SyncReport:
        ddl.validate_identifier(schema)
        reference = await self._reference_columns()
        return await self._synchronize(schema, reference, None)

    async def _reference_columns(self) -> Dict[str, List[ColumnInfo]]:
        ref_schema = self.registry.reference_schema()
        out: Dict[str, List[ColumnInfo]] = {}
        for table in self.registry.tenant_tables():
            out[table] = await self.introspector.describe_table(ref_schema, table)
        return out

    async def _synchronize(
        self,
        schema: str,
        reference: Dict[str, List[ColumnInfo]],
        cancel_event: Optional[asyncio.Event],
    ) -> SyncReport:
        report = SyncReport(schemas_processed=1)
        try:
            existing = set(await self.introspector.list_tables(schema))
        except ConnectivityError:
            raise
        except Exception as exc:
            report.errors.append(f"Error inspecting schema {schema}: {exc}")
            return report

        for table, ref_columns in reference.items():
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                break
            if not ref_columns:
                report.errors.append(
                    f"Reference table {self.registry.reference_schema()}.{table} is missing; cannot sync {schema}.{table}"
                )
                continue
            if table not in existing:
                await self._create_table(schema, table, ref_columns, report)
            else:
                await self._add_missing_columns(schema, table, ref_columns, report)
        return report

    async def _create_table(self, schema: str, table: str, columns: List[ColumnInfo], report: SyncReport) -> None:
        try:
            sql = ddl.create_table_sql(schema, table, columns)
            await self._execute(sql)
        except ConnectivityError:
            raise
        except Exception as exc:
            err = TableSyncError(schema, table, exc)
            log.error("%s", err)
            report.errors.append(str(err))
            return
        report.tables_created += 1
        log.info("Created %s.%s from reference", schema, table)

    async def _add_missing_columns(self, schema: str, table: str, ref_columns: List[ColumnInfo], report: SyncReport) -> None:
        try:
            current = {c.column_name for c in await self.introspector.describe_table(schema, table)}
        except ConnectivityError:
            raise
        except Exception as exc:
            report.errors.append(str(TableSyncError(schema, table, exc)))
            return
        for column in ref_columns:
            if column.column_name in current:
                continue
            try:
                await self._execute(ddl.add_column_sql(schema, table, column))
            except ConnectivityError:
                raise
            except Exception as exc:
                err = ColumnSyncError(schema, table, column.column_name, exc)
                log.error("%s", err)
                report.errors.append(str(err))
                continue
            report.columns_added += 1
            log.info("Added column %s.%s.%s", schema, table, column.column_name)

    async def _execute(self, sql: str) -> None:
        try:
            async with self.db_manager._conn() as db:
                await db.execute(sql, timeout=self.statement_timeout)
        except ConnectivityError:
            raise
        except Exception as exc:
            if is_connectivity_error(exc):
                raise ConnectivityError(f"Lost database connection during schema sync: {exc}") from exc
            raise
