import os

from dotenv import load_dotenv

# Load environment variables early so defaults below can be overridden by a local `.env`.
# In managed platforms, environment variables are injected directly and this is a no-op.
load_dotenv()

# ── Database ─────────────────────────────────────────────────────
DATABASE_URL = os.getenv("DATABASE_URL", "")
REDIS_URL = os.getenv("REDIS_URL", "")
PG_POOL_MIN = int(os.getenv("PG_POOL_MIN", "1"))
PG_POOL_MAX = int(os.getenv("PG_POOL_MAX", "10"))
PG_CONNECT_TIMEOUT_SECONDS = float(os.getenv("PG_CONNECT_TIMEOUT_SECONDS", "10"))
PG_POOL_RETRY_BACKOFF_SECONDS = float(os.getenv("PG_POOL_RETRY_BACKOFF_SECONDS", "15"))
HEALTH_DB_TIMEOUT_SECONDS = float(os.getenv("HEALTH_DB_TIMEOUT_SECONDS", "2"))

# ── Tenancy ──────────────────────────────────────────────────────
# The reference schema is maintained by hand and is the structural source of truth.
REFERENCE_SCHEMA = os.getenv("REFERENCE_SCHEMA", "public")
# Global tables (virtual_stores, system_users, ...) live here.
GLOBAL_SCHEMA = os.getenv("GLOBAL_SCHEMA", "public")
TENANT_SCHEMA_PREFIX = os.getenv("TENANT_SCHEMA_PREFIX", "store_")
# Every DDL/DML statement issued by the synchronizer and migrator is bounded by this (seconds).
SCHEMA_STATEMENT_TIMEOUT_SECONDS = float(os.getenv("SCHEMA_STATEMENT_TIMEOUT_SECONDS", "30"))
TENANT_CACHE_TTL_SECONDS = float(os.getenv("TENANT_CACHE_TTL_SECONDS", "60"))
# "copy" keeps the legacy behavior (copy every row of tables without a store_id column);
# "structure_only" creates those tables empty.
SHARED_TABLE_COPY_POLICY = (os.getenv("SHARED_TABLE_COPY_POLICY", "copy") or "copy").strip().lower()
SYNC_SCHEMAS_ON_STARTUP = os.getenv("SYNC_SCHEMAS_ON_STARTUP", "0") == "1"
TENANT_INVALIDATION_CHANNEL = os.getenv("TENANT_INVALIDATION_CHANNEL", "tenant_descriptor_changed")

# ── Capacity ─────────────────────────────────────────────────────
# Conservative limit; Postgres itself allows far more schemas per database.
MAX_SCHEMAS_ALLOWED = int(os.getenv("MAX_SCHEMAS_ALLOWED", "100"))
# public, information_schema, pg_catalog, pg_toast, ...
RESERVED_SCHEMAS = int(os.getenv("RESERVED_SCHEMAS", "10"))

# ── Auth ─────────────────────────────────────────────────────────
JWT_SECRET = os.getenv("JWT_SECRET", "")
JWT_ISSUER = os.getenv("JWT_ISSUER", "storedesk")
DISABLE_AUTH = os.getenv("DISABLE_AUTH", "0") == "1"

# ── Alerts ───────────────────────────────────────────────────────
ALERT_WEBHOOK_URL = os.getenv("ALERT_WEBHOOK_URL", "")
ALERT_HTTP_TIMEOUT_SECONDS = float(os.getenv("ALERT_HTTP_TIMEOUT_SECONDS", "5"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", "8080"))
