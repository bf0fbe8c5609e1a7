import os
import pytest

# Keep tests away from any real Postgres/Redis/alert endpoint the shell may export.
for _var in ("DATABASE_URL", "REDIS_URL", "ALERT_WEBHOOK_URL"):
    os.environ.pop(_var, None)
os.environ["DISABLE_AUTH"] = "0"
os.environ["JWT_SECRET"] = "test-secret"

from storedesk import main
from storedesk.auth import issue_access_token
from storedesk.db import DatabaseManager

from .fakes import FAKE_DB_URL, FakeDatabase, seed_reference


@pytest.fixture
def fake_db():
    return seed_reference(FakeDatabase())


@pytest.fixture
def services(fake_db):
    main.install_services(fake_db)
    yield main
    main.install_services(DatabaseManager())


@pytest.fixture
def client(services):
    from fastapi.testclient import TestClient
    with TestClient(services.app) as c:
        yield c


@pytest.fixture
def auth_header():
    def _header(**claims):
        claims.setdefault("sub", "tester")
        return {"Authorization": f"Bearer {issue_access_token(claims)}"}
    return _header


@pytest.fixture
def migrated_store(fake_db):
    """A store whose rows were already carved out into schema store_1."""
    store_id = fake_db.add_store("Casa Shop", "casa", f"{FAKE_DB_URL}?schema=store_1")
    fake_db.schemas["store_1"] = {}
    return store_id
