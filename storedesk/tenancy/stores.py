"""Persistence for the tenant registry (``virtual_stores``) and migration audit runs."""

from __future__ import annotations

import json
import logging
from typing import List, Optional

from .. import config
from ..db import is_connectivity_error
from .ddl import qualified
from .descriptor import ConnectionDescriptor
from .errors import ConnectivityError
from .models import MigrationResult, Tenant

log = logging.getLogger(__name__)

_STORE_COLUMNS = "id, name, slug, database_url, is_active, phone_number_id"


class TenantRepository:
    def __init__(self, db_manager, *, global_schema: Optional[str] = None):
        self.db_manager = db_manager
        self.global_schema = global_schema or config.GLOBAL_SCHEMA

    @property
    def _table(self) -> str:
        return qualified(self.global_schema, "virtual_stores")

    async def init_db(self) -> None:
        async with self.db_manager._conn() as db:
            await db.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table} (
                    id               SERIAL PRIMARY KEY,
                    name             TEXT NOT NULL,
                    slug             TEXT NOT NULL UNIQUE,
                    database_url     TEXT NOT NULL,
                    phone_number_id  TEXT,
                    is_active        BOOLEAN DEFAULT TRUE,
                    created_at       TIMESTAMP DEFAULT NOW(),
                    updated_at       TIMESTAMP DEFAULT NOW()
                )
                """
            )
            await db.execute(
                f"CREATE INDEX IF NOT EXISTS idx_virtual_stores_phone ON {self._table} (phone_number_id)"
            )

    async def get(self, tenant_id: int) -> Optional[Tenant]:
        async with self.db_manager._conn() as db:
            row = await db.fetchrow(f"SELECT {_STORE_COLUMNS} FROM {self._table} WHERE id = $1", int(tenant_id))
        return Tenant.from_row(row) if row else None

    async def find_by_phone_number_id(self, phone_number_id: str) -> Optional[Tenant]:
        pnid = str(phone_number_id or "").strip()
        if not pnid:
            return None
        async with self.db_manager._conn() as db:
            row = await db.fetchrow(
                f"SELECT {_STORE_COLUMNS} FROM {self._table} WHERE phone_number_id = $1 AND is_active = TRUE",
                pnid,
            )
        return Tenant.from_row(row) if row else None

    async def list_all(self) -> List[Tenant]:
        async with self.db_manager._conn() as db:
            rows = await db.fetch(f"SELECT {_STORE_COLUMNS} FROM {self._table} ORDER BY id")
        return [Tenant.from_row(r) for r in rows]

    async def list_active(self) -> List[Tenant]:
        return [t for t in await self.list_all() if t.is_active]

    async def count(self) -> int:
        async with self.db_manager._conn() as db:
            return int(await db.fetchval(f"SELECT COUNT(*) FROM {self._table}") or 0)

    async def schema_owner(self, schema_name: str, *, exclude_id: Optional[int] = None) -> Optional[int]:
        """Return the id of another store whose descriptor names ``schema_name``."""
        for tenant in await self.list_all():
            if exclude_id is not None and tenant.id == int(exclude_id):
                continue
            if tenant.schema_name == schema_name:
                return tenant.id
        return None

    async def create(
        self,
        name: str,
        slug: str,
        *,
        base_connection: Optional[str] = None,
        phone_number_id: Optional[str] = None,
        schema_prefix: Optional[str] = None,
    ) -> Tenant:
        """Provision a store record whose descriptor points at ``<prefix><id>``."""
        base = base_connection if base_connection is not None else config.DATABASE_URL
        prefix = schema_prefix if schema_prefix is not None else config.TENANT_SCHEMA_PREFIX
        async with self.db_manager._conn() as db:
            async with db.transaction():
                tenant_id = await db.fetchval(
                    f"INSERT INTO {self._table} (name, slug, database_url, phone_number_id, is_active) "
                    f"VALUES ($1, $2, $3, $4, TRUE) RETURNING id",
                    name,
                    slug,
                    base,
                    phone_number_id,
                )
                descriptor = ConnectionDescriptor.parse(base).with_schema(f"{prefix}{int(tenant_id)}")
                await db.execute(
                    f"UPDATE {self._table} SET database_url = $2 WHERE id = $1",
                    int(tenant_id),
                    descriptor.serialize(),
                )
        log.info("Provisioned store id=%s slug=%s", tenant_id, slug)
        return Tenant(
            id=int(tenant_id),
            name=name,
            slug=slug,
            database_url=descriptor.serialize(),
            is_active=True,
            phone_number_id=phone_number_id,
        )

    async def update_descriptor(self, tenant_id: int, database_url: str) -> None:
        try:
            async with self.db_manager._conn() as db:
                status = await db.execute(
                    f"UPDATE {self._table} SET database_url = $2, updated_at = NOW() WHERE id = $1",
                    int(tenant_id),
                    database_url,
                )
        except ConnectivityError:
            raise
        except Exception as exc:
            if is_connectivity_error(exc):
                raise ConnectivityError(f"Descriptor update failed: {exc}") from exc
            raise
        if str(status).split()[-1:] == ["0"]:
            raise LookupError(f"Store {tenant_id} disappeared before its descriptor could be updated")


class MigrationAuditLog:
    """Append-only record of migration runs (best-effort)."""

    def __init__(self, db_manager, *, global_schema: Optional[str] = None):
        self.db_manager = db_manager
        self.global_schema = global_schema or config.GLOBAL_SCHEMA

    @property
    def _table(self) -> str:
        return qualified(self.global_schema, "schema_migration_runs")

    async def init_db(self) -> None:
        async with self.db_manager._conn() as db:
            await db.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table} (
                    id           BIGSERIAL PRIMARY KEY,
                    store_id     INTEGER NOT NULL,
                    schema_name  TEXT NOT NULL,
                    success      BOOLEAN NOT NULL,
                    report       JSONB NOT NULL,
                    created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )

    async def record(self, result: MigrationResult) -> bool:
        try:
            async with self.db_manager._conn() as db:
                await db.execute(
                    f"INSERT INTO {self._table} (store_id, schema_name, success, report) VALUES ($1, $2, $3, $4::jsonb)",
                    int(result.store_id),
                    result.schema_name,
                    bool(result.success),
                    json.dumps(result.to_dict()),
                )
            return True
        except Exception as exc:
            log.warning("Could not record migration run for store %s: %s", result.store_id, exc)
            return False

    async def recent(self, store_id: int, limit: int = 10) -> List[dict]:
        async with self.db_manager._conn() as db:
            rows = await db.fetch(
                f"SELECT report FROM {self._table} WHERE store_id = $1 ORDER BY id DESC LIMIT $2",
                int(store_id),
                int(limit),
            )
        out: List[dict] = []
        for r in rows or []:
            payload = r["report"]
            if isinstance(payload, str):
                payload = json.loads(payload)
            out.append(payload)
        return out
