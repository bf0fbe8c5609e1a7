import asyncio

import pytest

from storedesk.tenancy.errors import (
    ConnectivityError,
    MigrationInProgressError,
    SchemaConflictError,
    TenantNotFoundError,
)
from storedesk.tenancy.introspector import SchemaIntrospector
from storedesk.tenancy.migrator import ADVISORY_LOCK_NAMESPACE, TenantMigrator
from storedesk.tenancy.registry import TENANT_TABLES
from storedesk.tenancy.stores import MigrationAuditLog, TenantRepository

from .fakes import FAKE_DB_URL, FakeStatementError, seed_reference

CLOCK_MS = 1712000000000


def _orders(total=500, mine=12, store_id=5):
    rows = []
    for i in range(total):
        rows.append({"id": i + 1, "store_id": store_id if i < mine else 900 + (i % 7), "customer_id": i, "total_amount": 10})
    return rows


def _store_five(fake_db):
    # Ids 1-4 are taken by other stores so the store under test gets id 5.
    for n in range(1, 5):
        fake_db.add_store(f"Other {n}", f"other-{n}", FAKE_DB_URL)
    return fake_db.add_store("Fes Souk", "fes", FAKE_DB_URL)


def _migrator(fake_db, **kwargs):
    repo = TenantRepository(fake_db)
    return TenantMigrator(
        fake_db,
        repo,
        SchemaIntrospector(fake_db),
        audit_log=MigrationAuditLog(fake_db),
        clock=lambda: CLOCK_MS / 1000,
        **kwargs,
    )


def test_copies_only_the_stores_rows(fake_db):
    seed_reference(fake_db, rows={"orders": _orders()})
    store_id = _store_five(fake_db)
    result = asyncio.run(_migrator(fake_db).migrate_tenant(store_id))

    schema = f"store_5_{CLOCK_MS}"
    assert result.success
    assert result.schema_name == schema
    assert len(fake_db.rows(schema, "orders")) == 12
    assert all(r["store_id"] == 5 for r in fake_db.rows(schema, "orders"))
    assert "orders" in result.migrated_tables
    assert result.row_counts["orders"] == 12
    assert result.summary.migrated_successfully == len(TENANT_TABLES)
    assert result.summary.total_tables == len(TENANT_TABLES)
    # The shared schema is read-only for the migrator.
    assert len(fake_db.rows("public", "orders")) == 500
    assert fake_db.store(store_id)["database_url"] == f"{FAKE_DB_URL}?schema={schema}"
    assert result.descriptor_updated


def test_second_run_skips_everything_without_duplicating(fake_db):
    seed_reference(fake_db, rows={"orders": _orders()})
    store_id = _store_five(fake_db)
    migrator = _migrator(fake_db)
    first = asyncio.run(migrator.migrate_tenant(store_id))
    second = asyncio.run(migrator.migrate_tenant(store_id))

    assert second.schema_name == first.schema_name
    assert second.migrated_tables == []
    assert second.skipped_tables == list(TENANT_TABLES)
    assert second.success
    assert len(fake_db.rows(first.schema_name, "orders")) == 12


def test_failed_table_is_isolated(fake_db):
    store_id = _store_five(fake_db)
    fake_db.fail_on("whatsapp_logs\" SELECT", FakeStatementError("violates check constraint"), times=1)
    result = asyncio.run(_migrator(fake_db).migrate_tenant(store_id))

    assert result.success is False
    assert len(result.errors) == 1
    assert "whatsapp_logs" in result.errors[0]
    assert result.migrated_tables == [t for t in TENANT_TABLES if t != "whatsapp_logs"]
    # Structure and rows roll back together, so a re-run retries the table.
    assert "whatsapp_logs" not in fake_db.schemas[result.schema_name]
    retry = asyncio.run(_migrator(fake_db).migrate_tenant(store_id))
    assert retry.migrated_tables == ["whatsapp_logs"]
    assert retry.success


def test_failed_run_is_audited(fake_db):
    store_id = _store_five(fake_db)
    fake_db.fail_on("whatsapp_logs\" SELECT", FakeStatementError("boom"))
    asyncio.run(_migrator(fake_db).migrate_tenant(store_id))
    assert len(fake_db.audit_runs) == 1
    assert fake_db.audit_runs[0]["success"] is False


def test_table_without_discriminator_follows_policy(fake_db):
    seed_reference(
        fake_db,
        shared_tables=("auto_responses",),
        rows={"auto_responses": [{"id": 1, "name": "hi"}, {"id": 2, "name": "bye"}]},
    )
    store_id = _store_five(fake_db)

    copied = asyncio.run(_migrator(fake_db).migrate_tenant(store_id))
    assert len(fake_db.rows(copied.schema_name, "auto_responses")) == 2

    other = fake_db.add_store("Rabat", "rabat", FAKE_DB_URL)
    empty = asyncio.run(_migrator(fake_db, shared_table_policy="structure_only").migrate_tenant(other))
    assert fake_db.rows(empty.schema_name, "auto_responses") == []
    assert "auto_responses" in empty.migrated_tables


def test_reuses_schema_named_in_descriptor(fake_db):
    store_id = fake_db.add_store("Tanger", "tanger", f"{FAKE_DB_URL}?sslmode=disable&schema=store_1")
    result = asyncio.run(_migrator(fake_db).migrate_tenant(store_id))
    assert result.schema_name == "store_1"
    assert fake_db.store(store_id)["database_url"] == f"{FAKE_DB_URL}?sslmode=disable&schema=store_1"


def test_schema_owned_by_another_store_is_refused(fake_db):
    fake_db.add_store("A", "a", f"{FAKE_DB_URL}?schema=store_1")
    b = fake_db.add_store("B", "b", f"{FAKE_DB_URL}?schema=store_1")
    with pytest.raises(SchemaConflictError):
        asyncio.run(_migrator(fake_db).migrate_tenant(b))


def test_unknown_store(fake_db):
    with pytest.raises(TenantNotFoundError):
        asyncio.run(_migrator(fake_db).migrate_tenant(404))


def test_connection_loss_mid_run_is_fatal_and_descriptor_untouched(fake_db):
    store_id = _store_five(fake_db)
    fake_db.fail_on('INSERT INTO "store_5_', ConnectionResetError("server closed the connection"), times=None)
    with pytest.raises(ConnectivityError):
        asyncio.run(_migrator(fake_db).migrate_tenant(store_id))
    assert fake_db.store(store_id)["database_url"] == FAKE_DB_URL
    assert fake_db.advisory_locks == set()


def test_schema_creation_failure_is_fatal(fake_db):
    store_id = _store_five(fake_db)
    fake_db.fail_on("CREATE SCHEMA", FakeStatementError("permission denied for database"))
    with pytest.raises(ConnectivityError):
        asyncio.run(_migrator(fake_db).migrate_tenant(store_id))
    assert fake_db.store(store_id)["database_url"] == FAKE_DB_URL


def test_advisory_lock_held_elsewhere(fake_db):
    store_id = _store_five(fake_db)
    fake_db.advisory_locks.add((ADVISORY_LOCK_NAMESPACE, store_id))
    with pytest.raises(MigrationInProgressError):
        asyncio.run(_migrator(fake_db).migrate_tenant(store_id))


def test_concurrent_runs_for_same_store_are_single_flight(fake_db):
    store_id = _store_five(fake_db)
    migrator = _migrator(fake_db)

    async def scenario():
        return await asyncio.gather(
            migrator.migrate_tenant(store_id),
            migrator.migrate_tenant(store_id),
            return_exceptions=True,
        )

    first, second = asyncio.run(scenario())
    assert first.success
    assert isinstance(second, MigrationInProgressError)


def test_cancel_stops_at_table_boundary(fake_db):
    store_id = _store_five(fake_db)
    cancel = asyncio.Event()
    fake_db.after('INSERT INTO "store_5_%d"."customers"' % CLOCK_MS, cancel.set)

    async def scenario():
        return await _migrator(fake_db).migrate_tenant(store_id, cancel_event=cancel)

    result = asyncio.run(scenario())
    assert result.cancelled
    assert result.success is False
    assert result.migrated_tables == ["users", "customers"]
    assert fake_db.store(store_id)["database_url"] == FAKE_DB_URL
    assert fake_db.advisory_locks == set()


def test_descriptor_hooks_fire_after_update(fake_db):
    store_id = _store_five(fake_db)
    migrator = _migrator(fake_db)
    seen = []

    async def hook(tid):
        seen.append((tid, fake_db.store(tid)["database_url"]))

    async def broken(tid):
        raise RuntimeError("subscriber down")

    migrator.on_descriptor_changed(broken)
    migrator.on_descriptor_changed(hook)
    result = asyncio.run(migrator.migrate_tenant(store_id))
    assert seen == [(store_id, f"{FAKE_DB_URL}?schema={result.schema_name}")]


def test_statement_timeout_fails_only_that_table(fake_db):
    seed_reference(fake_db, rows={"orders": _orders()})
    store_id = _store_five(fake_db)
    schema = f"store_5_{CLOCK_MS}"
    fake_db.fail_on(f'INSERT INTO "{schema}"."orders"', asyncio.TimeoutError(), times=1)
    result = asyncio.run(_migrator(fake_db, statement_timeout=0.5).migrate_tenant(store_id))

    assert result.success is False
    assert result.errors == ["Error migrating orders: statement timed out"]
    assert result.migrated_tables == [t for t in TENANT_TABLES if t != "orders"]
    assert "orders" not in fake_db.schemas[schema]
    assert result.descriptor_updated
    assert fake_db.store(store_id)["database_url"] == f"{FAKE_DB_URL}?schema={schema}"
