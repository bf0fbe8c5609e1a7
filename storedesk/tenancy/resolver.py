"""
Tenant resolution: authenticated principal -> storage handle scoped to one schema.

Route handlers never look tenants up themselves. They receive a ``TenantHandle`` from the
single FastAPI dependency in ``storedesk.main`` which is the only caller of
``TenantResolver.resolve_for_principal``.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .. import config
from .ddl import quote_ident
from .errors import IncompleteIdentityError, TenantNotFoundError, TenantNotMigratedError
from .models import Tenant

log = logging.getLogger(__name__)

GLOBAL_LEVEL = "global"
ACCESS_LEVELS = ("global", "store", "tenant")


def access_level_for_role(role: str | None) -> str:
    r = str(role or "").strip().lower()
    if r in ("super_admin", "system_admin"):
        return "global"
    if r in ("store_owner", "store_admin"):
        return "store"
    return "tenant"


@dataclass(frozen=True)
class Principal:
    level: str
    role: str = ""
    tenant_id: Optional[int] = None
    username: Optional[str] = None
    user_id: Optional[int] = None

    @property
    def is_global(self) -> bool:
        return self.level == GLOBAL_LEVEL

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "Principal":
        role = str(claims.get("role") or "")
        level = str(claims.get("level") or "").strip().lower()
        if level not in ACCESS_LEVELS:
            level = access_level_for_role(role)
        raw_tid = None
        for key in ("storeId", "store_id", "tenantId", "tenant_id"):
            if claims.get(key) not in (None, ""):
                raw_tid = claims.get(key)
                break
        tenant_id: Optional[int] = None
        if raw_tid is not None:
            try:
                tenant_id = int(raw_tid)
            except (TypeError, ValueError):
                tenant_id = None
        user_id = claims.get("id")
        return cls(
            level=level,
            role=role,
            tenant_id=tenant_id,
            username=str(claims.get("sub") or claims.get("username") or "") or None,
            user_id=int(user_id) if isinstance(user_id, int) else None,
        )


class TenantHandle:
    """Storage handle bound to exactly one schema."""

    def __init__(self, db_manager, schema_name: str, *, tenant_id: Optional[int] = None, is_global: bool = False):
        self.db_manager = db_manager
        self.schema_name = schema_name
        self.tenant_id = tenant_id
        self.is_global = is_global

    @property
    def search_path(self) -> str:
        # Only the bound schema: a table missing there must not resolve to the shared copy.
        # Global tables are read schema-qualified.
        return quote_ident(self.schema_name)

    @asynccontextmanager
    async def connection(self):
        """Pooled connection inside a transaction whose search_path is this schema."""
        async with self.db_manager._conn() as db:
            async with db.transaction():
                await db.execute(f"SET LOCAL search_path TO {self.search_path}")
                yield db

    async def fetch(self, query: str, *args):
        async with self.connection() as db:
            return await db.fetch(query, *args)

    async def fetchval(self, query: str, *args):
        async with self.connection() as db:
            return await db.fetchval(query, *args)

    async def execute(self, query: str, *args):
        async with self.connection() as db:
            return await db.execute(query, *args)

    def __repr__(self) -> str:
        return f"TenantHandle(tenant_id={self.tenant_id!r}, schema={self.schema_name!r}, global={self.is_global})"


class TenantResolver:
    def __init__(
        self,
        repository,
        databases,
        *,
        ttl_seconds: Optional[float] = None,
        global_schema: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.repository = repository
        self.databases = databases
        self.ttl_seconds = float(ttl_seconds if ttl_seconds is not None else config.TENANT_CACHE_TTL_SECONDS)
        self.global_schema = global_schema or config.GLOBAL_SCHEMA
        self._clock = clock
        # tenant_id -> (expires_at, tenant)
        self._cache: Dict[int, Tuple[float, Tenant]] = {}

    # ── cache ──
    def invalidate(self, tenant_id: Optional[int] = None) -> None:
        if tenant_id is None:
            self._cache.clear()
            return
        self._cache.pop(int(tenant_id), None)

    async def on_descriptor_changed(self, tenant_id: int) -> None:
        self.invalidate(tenant_id)
        log.info("Tenant cache invalidated for store %s", tenant_id)

    async def _load(self, tenant_id: int) -> Optional[Tenant]:
        now = self._clock()
        hit = self._cache.get(tenant_id)
        if hit and hit[0] > now:
            return hit[1]
        tenant = await self.repository.get(tenant_id)
        if tenant is None:
            self._cache.pop(tenant_id, None)
            return None
        if self.ttl_seconds > 0:
            self._cache[tenant_id] = (now + self.ttl_seconds, tenant)
        return tenant

    # ── resolution ──
    def global_handle(self) -> TenantHandle:
        return TenantHandle(self.databases.default, self.global_schema, is_global=True)

    async def resolve_for_principal(self, principal: Principal) -> TenantHandle:
        if principal.is_global:
            return self.global_handle()
        if principal.tenant_id is None:
            raise IncompleteIdentityError(f"Principal with level {principal.level!r} has no store id")
        return await self.resolve_for_store(principal.tenant_id)

    async def resolve_for_store(self, tenant_id: int) -> TenantHandle:
        tid = int(tenant_id)
        tenant = await self._load(tid)
        if tenant is None:
            raise TenantNotFoundError(tid)
        return self._handle_for(tenant)

    async def resolve_for_phone_number_id(self, phone_number_id: str) -> TenantHandle:
        """Webhook routing: WhatsApp phone_number_id -> store handle."""
        tenant = await self.repository.find_by_phone_number_id(phone_number_id)
        if tenant is None:
            raise TenantNotFoundError(phone_number_id)
        return await self.resolve_for_store(tenant.id)

    def _handle_for(self, tenant: Tenant) -> TenantHandle:
        if not tenant.is_active:
            raise TenantNotFoundError(tenant.id, "is not active")
        descriptor = tenant.descriptor
        if not descriptor.has_schema:
            raise TenantNotMigratedError(tenant.id)
        db_manager = self.databases.manager_for(descriptor.connection_string())
        return TenantHandle(db_manager, descriptor.schema_name, tenant_id=tenant.id)
