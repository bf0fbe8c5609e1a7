import asyncio

from storedesk.tenancy.introspector import SchemaIntrospector
from storedesk.tenancy.registry import TENANT_TABLES
from storedesk.tenancy.stores import TenantRepository
from storedesk.tenancy.validation import MigrationValidator

from .fakes import FAKE_DB_URL


def _validator(fake_db):
    return MigrationValidator(TenantRepository(fake_db), SchemaIntrospector(fake_db))


def test_completed(fake_db, migrated_store):
    for table in TENANT_TABLES:
        fake_db.add_table("store_1", table, [])
    report = asyncio.run(_validator(fake_db).validate_store(migrated_store))
    assert report["isValidMigration"] is True
    assert report["migrationStatus"] == "completed"
    assert report["missingTables"] == []
    assert report["schemaName"] == "store_1"


def test_partial(fake_db, migrated_store):
    fake_db.add_table("store_1", "orders", [])
    fake_db.add_table("store_1", "customers", [])
    report = asyncio.run(_validator(fake_db).validate_store(migrated_store))
    assert report["migrationStatus"] == "partial"
    assert report["tablesInTenantSchema"] == ["customers", "orders"]
    assert len(report["missingTables"]) == len(TENANT_TABLES) - 2
    assert report["isValidMigration"] is False


def test_not_started_and_unknown(fake_db, migrated_store):
    legacy = fake_db.add_store("Legacy", "legacy", FAKE_DB_URL)
    validator = _validator(fake_db)
    assert asyncio.run(validator.validate_store(migrated_store))["migrationStatus"] == "not_started"
    no_schema = asyncio.run(validator.validate_store(legacy))
    assert no_schema["migrationStatus"] == "not_started"
    assert no_schema["schemaName"] is None
    unknown = asyncio.run(validator.validate_store(404))
    assert unknown["storeName"] == "Unknown"
    assert unknown["isValidMigration"] is False


def test_validate_all_active_skips_inactive(fake_db, migrated_store):
    fake_db.add_store("Closed", "closed", FAKE_DB_URL, is_active=False)
    reports = asyncio.run(_validator(fake_db).validate_all_active())
    assert [r["storeId"] for r in reports] == [migrated_store]
