import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Dict, Optional
from urllib.parse import urlparse

import asyncpg

from . import config
from .tenancy.errors import ConnectivityError

log = logging.getLogger(__name__)

# Errors that mean "the database is gone", as opposed to a failing statement.
# TimeoutError is deliberately absent: statement timeouts are per-statement failures.
CONNECTIVITY_ERRORS = (
    ConnectionError,
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
)


def is_connectivity_error(exc: BaseException) -> bool:
    return isinstance(exc, (ConnectivityError,) + CONNECTIVITY_ERRORS)


def normalize_db_url(raw_url: str | None) -> Optional[str]:
    """Accept SQLAlchemy-style URLs, which asyncpg does NOT accept."""
    url = (raw_url or "").strip()
    if not url:
        return None
    for prefix in ("postgresql+asyncpg://", "postgres+asyncpg://", "postgresql+psycopg://", "postgresql+psycopg2://"):
        if url.startswith(prefix):
            url = "postgresql://" + url[len(prefix):]
    scheme = (urlparse(url).scheme or "").lower()
    if scheme not in ("postgresql", "postgres"):
        return None
    return url


def db_url_summary(url: str) -> str:
    # Avoid leaking credentials in logs. Only log basic routing info.
    try:
        p = urlparse(url)
        dbname = (p.path or "").lstrip("/") or None
        has_pw = bool(p.password)
        return (
            f"{p.scheme}://{p.username or '?'}@{p.hostname or '?'}:{p.port or '?'}"
            f"{('/' + dbname) if dbname else ''} (password={'set' if has_pw else 'missing'})"
        )
    except Exception:
        return "unparseable"


class DatabaseManager:
    """asyncpg pool wrapper with lazy creation and a fail-fast backoff window."""

    def __init__(self, db_url: str | None = None):
        self.db_url = normalize_db_url(db_url if db_url is not None else config.DATABASE_URL)
        self._pool: Optional[asyncpg.pool.Pool] = None
        # Pool creation can be slow/fail on cold start. Protect with a lock and add backoff
        # so every request doesn't stampede the DB.
        self._pool_lock = asyncio.Lock()
        self._pool_failed_until: float = 0.0
        self._pool_last_error: Optional[BaseException] = None

    async def _get_pool(self) -> asyncpg.pool.Pool:
        if self._pool:
            return self._pool
        if not self.db_url:
            raise ConnectivityError("DATABASE_URL is not configured")

        # Fast-fail during backoff windows to avoid repeated slow connection attempts.
        self._raise_if_backing_off()

        async with self._pool_lock:
            if self._pool:
                return self._pool
            self._raise_if_backing_off()
            try:
                self._pool = await asyncpg.create_pool(
                    self.db_url,
                    min_size=config.PG_POOL_MIN,
                    max_size=config.PG_POOL_MAX,
                    timeout=float(config.PG_CONNECT_TIMEOUT_SECONDS),
                    # PgBouncer in transaction pooling mode and prepared statements don't mix.
                    statement_cache_size=0,
                    max_inactive_connection_lifetime=60.0,
                )
                self._pool_last_error = None
                self._pool_failed_until = 0.0
            except Exception as exc:
                self._pool_last_error = exc
                self._pool_failed_until = time.time() + float(config.PG_POOL_RETRY_BACKOFF_SECONDS)
                log.error(
                    "Postgres pool creation failed (will back off %ss). db=%s err=%s",
                    float(config.PG_POOL_RETRY_BACKOFF_SECONDS),
                    db_url_summary(self.db_url or ""),
                    exc,
                )
                raise ConnectivityError(f"Postgres pool unavailable: {type(exc).__name__}") from exc
        return self._pool

    def _raise_if_backing_off(self) -> None:
        now = time.time()
        if self._pool_failed_until and now < self._pool_failed_until:
            remaining = max(0.0, self._pool_failed_until - now)
            last = type(self._pool_last_error).__name__ if self._pool_last_error else "unknown"
            raise ConnectivityError(f"Postgres pool unavailable (retry in ~{remaining:.0f}s; last_error={last})")

    # ── basic connection helper ──
    @asynccontextmanager
    async def _conn(self):
        pool = await self._get_pool()
        try:
            conn = await pool.acquire()
        except (OSError,) + CONNECTIVITY_ERRORS as exc:
            raise ConnectivityError(f"Could not acquire a database connection: {exc}") from exc
        try:
            yield conn
        finally:
            await pool.release(conn)

    async def ping(self) -> bool:
        """Lightweight DB connectivity check (used by /health)."""
        try:
            async with self._conn() as db:
                row = await db.fetchrow("SELECT 1 AS ok")
                return bool(row[0]) if row else False
        except Exception:
            return False

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None


class DatabaseRegistry:
    """One DatabaseManager per base connection string."""

    def __init__(self, default: DatabaseManager):
        self.default = default
        self._managers: Dict[str, DatabaseManager] = {}
        if default.db_url:
            self._managers[default.db_url] = default

    def manager_for(self, connection_string: str | None) -> DatabaseManager:
        url = normalize_db_url(connection_string)
        if not url or url == self.default.db_url:
            return self.default
        mgr = self._managers.get(url)
        if mgr is None:
            mgr = DatabaseManager(url)
            self._managers[url] = mgr
            log.info("Registered tenant database %s", db_url_summary(url))
        return mgr

    async def close_all(self) -> None:
        for mgr in list(self._managers.values()):
            try:
                await mgr.close()
            except Exception as exc:
                log.warning("Error closing pool: %s", exc)
        self._managers.clear()
