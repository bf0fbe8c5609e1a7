"""Checks whether a store's tables have actually landed in its own schema."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .errors import ConnectivityError
from .introspector import SchemaIntrospector
from .registry import TableRegistry, default_registry

log = logging.getLogger(__name__)


class MigrationValidator:
    def __init__(self, repository, introspector: SchemaIntrospector, registry: Optional[TableRegistry] = None):
        self.repository = repository
        self.introspector = introspector
        self.registry = registry or default_registry

    async def validate_store(self, tenant_id: int) -> Dict[str, Any]:
        expected = list(self.registry.tenant_tables())
        tenant = await self.repository.get(int(tenant_id))
        if tenant is None:
            return self._result(
                tenant_id,
                "Unknown",
                missing=expected,
                summary=f"Store {tenant_id} not found",
                recommendations=["Check the store id and its registry row"],
            )

        schema = tenant.schema_name
        if not schema:
            return self._result(
                tenant.id,
                tenant.name,
                missing=expected,
                summary=f"{tenant.name} has no separate schema configured",
                recommendations=["Run the schema migration for this store"],
            )

        try:
            present: List[str] = await self.introspector.list_tables(schema)
        except ConnectivityError:
            raise
        except Exception as exc:
            log.warning("Could not inspect schema %s for store %s: %s", schema, tenant.id, exc)
            return self._result(
                tenant.id,
                tenant.name,
                schema=schema,
                missing=expected,
                summary=f"Cannot access schema {schema} for {tenant.name}",
                recommendations=[f"Check connectivity to the store schema: {exc}"],
            )

        present_set = set(present)
        missing = [t for t in expected if t not in present_set]
        if not missing:
            status = "completed"
            summary = f"{tenant.name} has all {len(expected)} tables in schema {schema}"
            recommendations = ["Tenant schema is operational"]
        elif present:
            status = "partial"
            summary = f"{tenant.name} has {len(present)} tables migrated, {len(missing)} missing"
            recommendations = [f"Re-run the migration to create: {', '.join(missing)}"]
        else:
            status = "not_started"
            summary = f"{tenant.name} has no tables in schema {schema}"
            recommendations = ["Run the schema migration for this store"]
        return self._result(
            tenant.id,
            tenant.name,
            schema=schema,
            status=status,
            present=present,
            missing=missing,
            summary=summary,
            recommendations=recommendations,
        )

    async def validate_all_active(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for tenant in await self.repository.list_active():
            out.append(await self.validate_store(tenant.id))
        return out

    @staticmethod
    def _result(
        store_id,
        store_name: str,
        *,
        schema: Optional[str] = None,
        status: str = "not_started",
        present: Optional[List[str]] = None,
        missing: Optional[List[str]] = None,
        summary: str = "",
        recommendations: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        return {
            "storeId": store_id,
            "storeName": store_name,
            "isValidMigration": status == "completed",
            "migrationStatus": status,
            "schemaName": schema,
            "tablesInTenantSchema": list(present or []),
            "missingTables": list(missing or []),
            "summary": summary,
            "recommendations": list(recommendations or []),
        }
