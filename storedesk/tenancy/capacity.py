"""How many more stores the deployment can hold, given one schema per store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .. import config

LIMITATIONS = (
    "PostgreSQL deployments here are capped at MAX_SCHEMAS_ALLOWED schemas per database",
    "Each store uses 1 schema with ~15 tables",
    "Reserved schemas (public, information_schema, pg_catalog, ...) are not available to stores",
    "Connection limits are shared by every store schema on the same cluster",
)


@dataclass(frozen=True)
class CapacityPlan:
    max_tenants: int
    available_capacity: int


def plan(current_tenant_count: int, max_schemas_allowed: int, reserved_schemas: int) -> CapacityPlan:
    max_tenants = int(max_schemas_allowed) - int(reserved_schemas)
    return CapacityPlan(max_tenants=max_tenants, available_capacity=max_tenants - int(current_tenant_count))


def can_onboard(n: int, current_tenant_count: int, max_tenants: int) -> bool:
    return (int(current_tenant_count) + int(n)) <= int(max_tenants)


def capacity_report(
    current_tenant_count: int,
    new_stores: int = 0,
    *,
    max_schemas_allowed: Optional[int] = None,
    reserved_schemas: Optional[int] = None,
) -> Dict[str, Any]:
    max_schemas = int(max_schemas_allowed if max_schemas_allowed is not None else config.MAX_SCHEMAS_ALLOWED)
    reserved = int(reserved_schemas if reserved_schemas is not None else config.RESERVED_SCHEMAS)
    p = plan(current_tenant_count, max_schemas, reserved)
    report: Dict[str, Any] = {
        "capacity": {
            "maxSchemas": max_schemas,
            "maxStores": p.max_tenants,
            "currentStores": int(current_tenant_count),
            "availableCapacity": p.available_capacity,
            "limitations": list(LIMITATIONS),
        },
        "validation": None,
    }
    if new_stores > 0:
        ok = can_onboard(new_stores, current_tenant_count, p.max_tenants)
        if ok:
            recommendations = [
                "Capacity is sufficient with the current configuration",
                "Monitor resource usage as stores are added",
            ]
        else:
            recommendations = [
                "Move some stores to a second database (one pool per base connection is supported)",
                "Raise MAX_SCHEMAS_ALLOWED if the cluster has headroom",
                "Consider horizontal partitioning for large stores",
            ]
        report["validation"] = {
            "canSupport": ok,
            "maxPossible": max(0, p.available_capacity),
            "recommendations": recommendations,
        }
    return report
