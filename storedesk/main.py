import asyncio
import logging

import asyncpg
from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.requests import Request as StarletteRequest
from starlette.responses import Response as StarletteResponse

from . import alerts, config
from .auth import dev_principal, extract_access_token, parse_access_token
from .db import DatabaseManager, DatabaseRegistry
from .invalidation import InvalidationBus
from .observability.context import (
    get_principal as _get_principal_name,
    get_request_id as _get_request_id,
    get_store_id as _get_store_id,
    reset_request_id as _reset_request_id,
    set_principal as _set_principal_name,
    set_request_id as _set_request_id,
    set_store_id as _set_store_id,
)
from .observability.logging import configure_logging as _configure_logging
from .tenancy.capacity import can_onboard, capacity_report, plan
from .tenancy.errors import (
    ConnectivityError,
    IncompleteIdentityError,
    InvalidSchemaNameError,
    MigrationInProgressError,
    SchemaConflictError,
    TenantNotFoundError,
    TenantNotMigratedError,
    TenantResolutionError,
)
from .tenancy.introspector import SchemaIntrospector
from .tenancy.migrator import TenantMigrator
from .tenancy.resolver import Principal, TenantHandle, TenantResolver
from .tenancy.stores import MigrationAuditLog, TenantRepository
from .tenancy.synchronizer import SchemaSynchronizer
from .tenancy.validation import MigrationValidator

try:
    _configure_logging(
        level=config.LOG_LEVEL,
        store_getter=_get_store_id,
        request_id_getter=_get_request_id,
        principal_getter=_get_principal_name,
    )
except Exception:
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

log = logging.getLogger(__name__)

# ── Services ─────────────────────────────────────────────────────
db_manager: DatabaseManager
databases: DatabaseRegistry
repository: TenantRepository
audit_log: MigrationAuditLog
introspector: SchemaIntrospector
synchronizer: SchemaSynchronizer
migrator: TenantMigrator
validator: MigrationValidator
resolver: TenantResolver
invalidation_bus = InvalidationBus()


async def _descriptor_changed(tenant_id: int) -> None:
    await resolver.on_descriptor_changed(tenant_id)
    await invalidation_bus.publish(tenant_id)


def install_services(manager: DatabaseManager) -> None:
    """(Re)build every service around ``manager``."""
    global db_manager, databases, repository, audit_log, introspector
    global synchronizer, migrator, validator, resolver
    db_manager = manager
    databases = DatabaseRegistry(manager)
    repository = TenantRepository(manager)
    audit_log = MigrationAuditLog(manager)
    introspector = SchemaIntrospector(manager)
    synchronizer = SchemaSynchronizer(manager, introspector, repository=repository)
    migrator = TenantMigrator(manager, repository, introspector, audit_log=audit_log)
    migrator.on_descriptor_changed(_descriptor_changed)
    validator = MigrationValidator(repository, introspector)
    resolver = TenantResolver(repository, databases)


install_services(DatabaseManager())

app = FastAPI()


# ── Error mapping: callers never see schema names or SQL errors ──
@app.exception_handler(IncompleteIdentityError)
async def _incomplete_identity_handler(request: Request, exc: IncompleteIdentityError):
    return JSONResponse(status_code=403, content={"detail": "Access denied"})


@app.exception_handler(TenantResolutionError)
async def _resolution_handler(request: Request, exc: TenantResolutionError):
    status = 409 if isinstance(exc, TenantNotMigratedError) else 404
    log.info("Tenant resolution failed: %s", exc)
    return JSONResponse(status_code=status, content={"detail": "Tenant unavailable"})


@app.exception_handler(ConnectivityError)
async def _connectivity_handler(request: Request, exc: ConnectivityError):
    log.error("Database unavailable: %s", exc)
    return JSONResponse(status_code=503, content={"detail": "Database unavailable"})


# ── Request context: request_id (for tracing) ──────────────────────
@app.middleware("http")
async def request_id_middleware(request: StarletteRequest, call_next):
    incoming = (request.headers.get("x-request-id") or "").strip()
    rid, tok = _set_request_id(incoming or None)
    try:
        resp: StarletteResponse = await call_next(request)
        resp.headers["X-Request-Id"] = rid
        return resp
    finally:
        _reset_request_id(tok)


# Expose Prometheus metrics
Instrumentator().instrument(app).expose(app, endpoint="/metrics")


# ── Dependencies ─────────────────────────────────────────────────
async def get_principal(request: Request) -> Principal:
    token = extract_access_token(request)
    if token:
        principal = parse_access_token(token)
        if principal is None:
            raise HTTPException(status_code=401, detail="Invalid or expired token")
    elif config.DISABLE_AUTH:
        principal = dev_principal()
    else:
        raise HTTPException(status_code=401, detail="Unauthorized")
    # Request-scoped context; discarded with the request task.
    _set_principal_name(principal.username)
    return principal


async def get_tenant_handle(principal: Principal = Depends(get_principal)) -> TenantHandle:
    """The one place a request is bound to storage."""
    handle = await resolver.resolve_for_principal(principal)
    if handle.tenant_id is not None:
        _set_store_id(handle.tenant_id)
    return handle


async def require_global(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_global:
        raise HTTPException(status_code=403, detail="Super admin access required")
    return principal


def _clamp_limit(limit: int) -> int:
    return max(1, min(int(limit), 500))


# ── Tenant-scoped routes ─────────────────────────────────────────
@app.get("/orders")
async def list_orders(limit: int = 50, handle: TenantHandle = Depends(get_tenant_handle)):
    rows = await handle.fetch("SELECT * FROM orders ORDER BY id DESC LIMIT $1", _clamp_limit(limit))
    return [dict(r) for r in rows]


@app.get("/customers")
async def list_customers(limit: int = 50, handle: TenantHandle = Depends(get_tenant_handle)):
    rows = await handle.fetch("SELECT * FROM customers ORDER BY id DESC LIMIT $1", _clamp_limit(limit))
    return [dict(r) for r in rows]


@app.get("/conversations")
async def list_conversations(limit: int = 50, handle: TenantHandle = Depends(get_tenant_handle)):
    rows = await handle.fetch("SELECT * FROM conversations ORDER BY id DESC LIMIT $1", _clamp_limit(limit))
    return [dict(r) for r in rows]


@app.get("/store/schema-status")
async def store_schema_status(principal: Principal = Depends(get_principal)):
    if principal.tenant_id is None:
        if principal.is_global:
            return {"status": "ready", "scope": "global"}
        raise IncompleteIdentityError("principal has no store id")
    tenant = await repository.get(principal.tenant_id)
    if tenant is None:
        raise TenantNotFoundError(principal.tenant_id)
    report = await validator.validate_store(tenant.id)
    return {
        "storeId": tenant.id,
        "status": "ready" if report["isValidMigration"] else "needs_migration",
        "missingTables": len(report["missingTables"]),
    }


# ── Super-admin routes ───────────────────────────────────────────
@app.post("/super-admin/stores", status_code=201)
async def onboard_store(payload: dict = Body(...), _: Principal = Depends(require_global)):
    name = str(payload.get("name") or "").strip()
    slug = str(payload.get("slug") or "").strip().lower()
    if not name or not slug:
        raise HTTPException(status_code=400, detail="name and slug are required")
    phone_number_id = str(payload.get("phoneNumberId") or "").strip() or None

    current = await repository.count()
    limits = plan(current, config.MAX_SCHEMAS_ALLOWED, config.RESERVED_SCHEMAS)
    if not can_onboard(1, current, limits.max_tenants):
        raise HTTPException(
            status_code=409,
            detail={"message": "Schema capacity exhausted", **capacity_report(current, 1)},
        )
    try:
        tenant = await repository.create(
            name, slug, base_connection=db_manager.db_url or config.DATABASE_URL, phone_number_id=phone_number_id
        )
    except asyncpg.UniqueViolationError:
        raise HTTPException(status_code=409, detail=f"Store slug {slug!r} already exists")
    try:
        result = await migrator.migrate_tenant(tenant.id)
    except (MigrationInProgressError, SchemaConflictError) as exc:
        log.error("Store %s created but its schema was not provisioned: %s", tenant.id, exc)
        raise HTTPException(status_code=409, detail=str(exc))
    except InvalidSchemaNameError as exc:
        log.error("Store %s created but its schema was not provisioned: %s", tenant.id, exc)
        raise HTTPException(status_code=400, detail=str(exc))
    if not result.success:
        await alerts.notify_failure("migration", result.to_dict())
    return {
        "store": {"id": tenant.id, "name": tenant.name, "slug": tenant.slug, "isActive": tenant.is_active},
        "migration": result.to_dict(),
    }


@app.post("/super-admin/stores/{store_id}/migrate-schema")
async def migrate_store_schema(store_id: int, _: Principal = Depends(require_global)):
    try:
        result = await migrator.migrate_tenant(store_id)
    except TenantNotFoundError:
        raise HTTPException(status_code=404, detail=f"Store {store_id} not found")
    except (MigrationInProgressError, SchemaConflictError) as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except InvalidSchemaNameError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if not result.success:
        await alerts.notify_failure("migration", result.to_dict())
    return result.to_dict()


@app.get("/super-admin/stores/{store_id}/migration-status")
async def store_migration_status(store_id: int, _: Principal = Depends(require_global)):
    tenant = await repository.get(store_id)
    if tenant is None:
        raise HTTPException(status_code=404, detail=f"Store {store_id} not found")
    return {
        "validation": await validator.validate_store(tenant.id),
        "recentRuns": await audit_log.recent(tenant.id, limit=5),
    }


@app.post("/super-admin/schemas/sync")
async def sync_schemas(_: Principal = Depends(require_global)):
    report = await synchronizer.synchronize_all()
    if not report.success:
        await alerts.notify_failure("sync", report.to_dict())
    return report.to_dict()


@app.get("/super-admin/capacity")
async def get_capacity(new_stores: int = Query(0, alias="newStores", ge=0), _: Principal = Depends(require_global)):
    return capacity_report(await repository.count(), new_stores)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    db_ok = False
    try:
        db_ok = await asyncio.wait_for(db_manager.ping(), timeout=config.HEALTH_DB_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        db_ok = False
    return {
        "status": "healthy",
        "redis": "connected" if invalidation_bus.redis_client else "disconnected",
        "db": {"ok": bool(db_ok)},
    }


# ── Lifecycle ────────────────────────────────────────────────────
async def _sync_on_startup() -> None:
    try:
        report = await synchronizer.synchronize_all()
    except ConnectivityError as exc:
        log.error("Startup schema sync aborted: %s", exc)
        return
    if not report.success:
        await alerts.notify_failure("sync", report.to_dict())


@app.on_event("startup")
async def startup():
    logging.getLogger("httpx").setLevel(logging.WARNING)
    # Degraded mode: keep serving /health even when the registry DB is down.
    try:
        await asyncio.wait_for(repository.init_db(), timeout=30.0)
        await asyncio.wait_for(audit_log.init_db(), timeout=30.0)
    except (ConnectivityError, asyncio.TimeoutError) as exc:
        log.error("Registry init failed; starting degraded: %s", exc)
    else:
        if config.SYNC_SCHEMAS_ON_STARTUP:
            await _sync_on_startup()

    await invalidation_bus.connect()
    invalidation_bus.start(resolver.invalidate)


@app.on_event("shutdown")
async def shutdown():
    await invalidation_bus.close()
    await databases.close_all()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("storedesk.main:app", host="0.0.0.0", port=config.PORT, reload=False)
