"""Read-only queries against information_schema."""

from __future__ import annotations

from typing import List, Optional

from .. import config
from ..db import is_connectivity_error
from .errors import ConnectivityError
from .models import ColumnInfo, SchemaSnapshot

_LIST_SCHEMAS_SQL = """
    SELECT schema_name
    FROM information_schema.schemata
    WHERE schema_name LIKE $1
    ORDER BY schema_name
"""

_LIST_TABLES_SQL = """
    SELECT table_name
    FROM information_schema.tables
    WHERE table_schema = $1 AND table_type = 'BASE TABLE'
    ORDER BY table_name
"""

_DESCRIBE_TABLE_SQL = """
    SELECT column_name, data_type, is_nullable, column_default, character_maximum_length
    FROM information_schema.columns
    WHERE table_schema = $1 AND table_name = $2
    ORDER BY ordinal_position
"""

_TABLE_EXISTS_SQL = """
    SELECT EXISTS (
        SELECT 1 FROM information_schema.tables
        WHERE table_schema = $1 AND table_name = $2
    )
"""

_COLUMN_EXISTS_SQL = """
    SELECT EXISTS (
        SELECT 1 FROM information_schema.columns
        WHERE table_schema = $1 AND table_name = $2 AND column_name = $3
    )
"""


def _like_prefix(prefix: str) -> str:
    # "_" is a LIKE wildcard; "store_" must match literally.
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped + "%"


class SchemaIntrospector:
    def __init__(self, db_manager, *, tenant_schema_prefix: Optional[str] = None):
        self.db_manager = db_manager
        self.tenant_schema_prefix = tenant_schema_prefix if tenant_schema_prefix is not None else config.TENANT_SCHEMA_PREFIX

    async def _fetch(self, query: str, *args):
        try:
            async with self.db_manager._conn() as db:
                return await db.fetch(query, *args)
        except ConnectivityError:
            raise
        except Exception as exc:
            if is_connectivity_error(exc):
                raise ConnectivityError(f"Catalog query failed: {exc}") from exc
            raise

    async def _fetchval(self, query: str, *args):
        try:
            async with self.db_manager._conn() as db:
                return await db.fetchval(query, *args)
        except ConnectivityError:
            raise
        except Exception as exc:
            if is_connectivity_error(exc):
                raise ConnectivityError(f"Catalog query failed: {exc}") from exc
            raise

    async def list_tenant_schemas(self) -> List[str]:
        rows = await self._fetch(_LIST_SCHEMAS_SQL, _like_prefix(self.tenant_schema_prefix))
        return [str(r["schema_name"]) for r in rows]

    async def list_tables(self, schema: str) -> List[str]:
        rows = await self._fetch(_LIST_TABLES_SQL, schema)
        return [str(r["table_name"]) for r in rows]

    async def describe_table(self, schema: str, table: str) -> List[ColumnInfo]:
        rows = await self._fetch(_DESCRIBE_TABLE_SQL, schema, table)
        return [ColumnInfo.from_row(r) for r in rows]

    async def table_exists(self, schema: str, table: str) -> bool:
        return bool(await self._fetchval(_TABLE_EXISTS_SQL, schema, table))

    async def column_exists(self, schema: str, table: str, column: str) -> bool:
        return bool(await self._fetchval(_COLUMN_EXISTS_SQL, schema, table, column))

    async def snapshot(self, schema: str) -> SchemaSnapshot:
        snap = SchemaSnapshot(schema_name=schema)
        for table in await self.list_tables(schema):
            snap.tables[table] = await self.describe_table(schema, table)
        return snap
