"""Canonical table registry: which tables belong to a tenant schema vs. the global schema."""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional, Tuple

from .. import config


class TableScope(str, Enum):
    TENANT = "tenant"
    GLOBAL = "global"


# Order matters: the migrator processes tables in this order and reports them in it.
TENANT_TABLES: Tuple[str, ...] = (
    "users",
    "customers",
    "products",
    "orders",
    "order_items",
    "conversations",
    "messages",
    "auto_responses",
    "store_settings",
    "whatsapp_settings",
    "notifications",
    "assignment_rules",
    "customer_history",
    "shopping_cart",
    "whatsapp_logs",
)

# These stay in the shared schema for every store.
GLOBAL_TABLES: Tuple[str, ...] = (
    "virtual_stores",
    "system_users",
    "product_categories",
    "employee_profiles",
    "system_audit_log",
    "customer_registration_flows",
    "order_history",
    "schema_migration_runs",
)

# Rows in the shared schema are tagged with the owning store through this column.
TENANT_DISCRIMINATOR_COLUMN = "store_id"


class TableRegistry:
    def __init__(
        self,
        tenant: Iterable[str] = TENANT_TABLES,
        global_: Iterable[str] = GLOBAL_TABLES,
        *,
        reference_schema: Optional[str] = None,
        discriminator_column: str = TENANT_DISCRIMINATOR_COLUMN,
    ):
        self._tenant = tuple(dict.fromkeys(tenant))
        self._global = tuple(dict.fromkeys(global_))
        overlap = set(self._tenant) & set(self._global)
        if overlap:
            raise ValueError(f"Tables cannot be both tenant and global scoped: {sorted(overlap)}")
        self._reference_schema = reference_schema or config.REFERENCE_SCHEMA
        self.discriminator_column = discriminator_column

    def tenant_tables(self) -> Tuple[str, ...]:
        return self._tenant

    def global_tables(self) -> Tuple[str, ...]:
        return self._global

    def reference_schema(self) -> str:
        return self._reference_schema

    def scope_of(self, table: str) -> Optional[TableScope]:
        if table in self._tenant:
            return TableScope.TENANT
        if table in self._global:
            return TableScope.GLOBAL
        return None


default_registry = TableRegistry()
