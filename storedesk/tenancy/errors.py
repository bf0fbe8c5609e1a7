"""Error taxonomy for tenant routing, schema sync and migration.

Fatal errors propagate to the caller of the top-level operation. The per-table and
per-column errors are only ever used to build the messages collected in a report's
``errors`` list; they are never raised out of ``migrate_tenant`` or ``synchronize_all``.
"""

from __future__ import annotations

import asyncio
from typing import Optional


class TenancyError(Exception):
    """Base class for every error raised by the tenancy layer."""


class ConnectivityError(TenancyError):
    """The catalog/database cannot be reached at all."""


class InvalidSchemaNameError(TenancyError):
    """A schema or table identifier failed validation."""


# ── resolution ───────────────────────────────────────────────────


class TenantResolutionError(TenancyError):
    """A request could not be bound to a tenant."""


class TenantNotFoundError(TenantResolutionError):
    def __init__(self, tenant_id, reason: str = "not found"):
        self.tenant_id = tenant_id
        self.reason = reason
        super().__init__(f"Store {tenant_id} {reason}")


class IncompleteIdentityError(TenantResolutionError):
    """A non-global principal arrived without a tenant id."""


class TenantNotMigratedError(TenantResolutionError):
    """The tenant's descriptor does not name a schema yet."""

    def __init__(self, tenant_id):
        self.tenant_id = tenant_id
        super().__init__(f"Store {tenant_id} is not configured for tenant storage")


# ── migration ────────────────────────────────────────────────────


class MigrationInProgressError(TenancyError):
    def __init__(self, tenant_id):
        self.tenant_id = tenant_id
        super().__init__(f"A schema migration for store {tenant_id} is already running")


class SchemaConflictError(TenancyError):
    def __init__(self, schema_name: str, owner_id):
        self.schema_name = schema_name
        self.owner_id = owner_id
        super().__init__(f"Schema {schema_name} is already bound to store {owner_id}")


class TableMigrationError(TenancyError):
    def __init__(self, table: str, cause: Optional[BaseException] = None):
        self.table = table
        self.cause = cause
        detail = _describe(cause)
        super().__init__(f"Error migrating {table}: {detail}")


class TableSyncError(TenancyError):
    def __init__(self, schema: str, table: str, cause: Optional[BaseException] = None):
        self.schema = schema
        self.table = table
        self.cause = cause
        super().__init__(f"Error creating {schema}.{table}: {_describe(cause)}")


class ColumnSyncError(TenancyError):
    def __init__(self, schema: str, table: str, column: str, cause: Optional[BaseException] = None):
        self.schema = schema
        self.table = table
        self.column = column
        self.cause = cause
        super().__init__(f"Error adding {schema}.{table}.{column}: {_describe(cause)}")


def _describe(cause: Optional[BaseException]) -> str:
    if cause is None:
        return "unknown error"
    if isinstance(cause, (TimeoutError, asyncio.TimeoutError)):
        return "statement timed out"
    return str(cause) or type(cause).__name__
