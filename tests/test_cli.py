import json

import pytest

from storedesk import cli
from storedesk.tenancy.registry import TENANT_TABLES

from .fakes import FAKE_DB_URL


def _out(capsys):
    return json.loads(capsys.readouterr().out)


def test_sync_prints_report(fake_db, capsys):
    fake_db.schemas["store_1"] = {}
    assert cli.main(["sync"], db_manager=fake_db) == 0
    assert _out(capsys)["tablesCreated"] == len(TENANT_TABLES)
    assert fake_db.closed


def test_migrate_single_store(fake_db, capsys):
    store_id = fake_db.add_store("Agadir", "agadir", FAKE_DB_URL)
    assert cli.main(["migrate", str(store_id)], db_manager=fake_db) == 0
    report = _out(capsys)
    assert report["storeId"] == store_id
    assert report["success"] is True
    assert len(fake_db.audit_runs) == 1


def test_migrate_all_active_reports_failures(fake_db, capsys):
    from .fakes import FakeStatementError

    fake_db.add_store("A", "a", FAKE_DB_URL)
    fake_db.add_store("B", "b", FAKE_DB_URL)
    fake_db.add_store("C", "c", FAKE_DB_URL, is_active=False)
    fake_db.fail_on('INSERT INTO "store_2_', FakeStatementError("nope"))
    assert cli.main(["migrate", "--all-active"], db_manager=fake_db) == 1
    reports = _out(capsys)
    assert [r["storeId"] for r in reports] == [1, 2]
    assert reports[0]["success"] is True
    assert reports[1]["success"] is False


def test_migrate_needs_a_target(fake_db):
    with pytest.raises(SystemExit):
        cli.main(["migrate"], db_manager=fake_db)


def test_unknown_store_exits_with_error(fake_db, capsys):
    assert cli.main(["migrate", "77"], db_manager=fake_db) == 2
    assert "Store 77 not found" in capsys.readouterr().err


def test_validate_and_capacity(fake_db, capsys, migrated_store):
    assert cli.main(["validate", str(migrated_store)], db_manager=fake_db) == 1
    assert _out(capsys)["migrationStatus"] == "not_started"
    assert cli.main(["capacity", "--new-stores", "3"], db_manager=fake_db) == 0
    assert _out(capsys)["capacity"]["currentStores"] == 1


def test_migrate_logs_under_store_and_operator(fake_db, capsys, monkeypatch):
    from storedesk.observability import context

    seen = []
    original = cli.TenantMigrator.migrate_tenant

    async def spy(self, tenant_id, **kwargs):
        seen.append((context.get_store_id(), context.get_principal()))
        return await original(self, tenant_id, **kwargs)

    monkeypatch.setattr(cli.TenantMigrator, "migrate_tenant", spy)
    fake_db.add_store("A", "a", FAKE_DB_URL)
    fake_db.add_store("B", "b", FAKE_DB_URL)
    assert cli.main(["migrate", "--all-active"], db_manager=fake_db) == 0
    assert seen == [(1, cli.OPERATOR), (2, cli.OPERATOR)]
    assert context.get_store_id() is None
    assert context.get_principal() is None
