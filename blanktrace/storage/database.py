"""
Persistent tracking store for BlankTrace.
Handles SQLite connection, schema, tracking counters, whitelist, append-only
event logs and retention cleanup.
"""

import asyncio
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from blanktrace.utils.errors import StorageError
from blanktrace.utils.logging import get_logger

logger = get_logger(__name__)

# Tables purged by retention cleanup. tracking_domains and whitelist are kept.
EVENT_TABLES = ("request_log", "cookie_traffic", "fingerprint_rotations")

# SQLite CURRENT_TIMESTAMP format (UTC); cleanup compares against datetime('now').
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class TrackingDomain:
    """A tracked domain row."""

    domain: str
    category: str | None
    hit_count: int
    blocked: bool


@dataclass(frozen=True)
class WhitelistEntry:
    """A whitelist row."""

    domain: str
    reason: str | None


def format_timestamp(value: datetime | None = None) -> str:
    """Format a datetime the way SQLite stores CURRENT_TIMESTAMP (UTC)."""
    if value is None:
        value = datetime.now(UTC)
    elif value.tzinfo is not None:
        value = value.astimezone(UTC)
    return value.strftime(TIMESTAMP_FORMAT)


class Database:
    """Async SQLite tracking store.

    All statements go through a single lock. Operations that must be atomic
    across several statements (increment + flag read) hold the lock for the
    whole group.
    """

    def __init__(self, db_path: str | Path):
        """Initialize database manager.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = Path(db_path)
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        """Connect to the database."""
        if self._connection is not None:
            return

        with self._translate_errors("connect"):
            if str(self.db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)

            self._connection = await aiosqlite.connect(
                self.db_path,
                isolation_level=None,  # Auto-commit mode
            )
            self._connection.row_factory = aiosqlite.Row

        logger.info("Database connected", path=str(self.db_path))

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("Database connection closed")

    async def initialize_schema(self) -> None:
        """Initialize database schema from SQL file."""
        schema_path = Path(__file__).parent / "schema.sql"

        if not schema_path.exists():
            raise FileNotFoundError(f"Schema file not found: {schema_path}")

        schema_sql = schema_path.read_text(encoding="utf-8")

        with self._translate_errors("initialize_schema"):
            async with self._lock:
                await self._conn.executescript(schema_sql)

        logger.info("Database schema initialized")

    @property
    def _conn(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise StorageError("connection", "database is not connected")
        return self._connection

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        """Re-raise sqlite/OS failures as StorageError."""
        try:
            yield
        except StorageError:
            raise
        except (sqlite3.Error, OSError, ValueError) as e:
            raise StorageError(operation, str(e), details={"path": str(self.db_path)}) from e

    # ============================================================
    # Generic statement helpers
    # ============================================================

    async def execute(
        self,
        sql: str,
        parameters: tuple | dict | None = None,
    ) -> aiosqlite.Cursor:
        """Execute a SQL statement.

        Args:
            sql: SQL statement to execute.
            parameters: Optional parameters for the statement.

        Returns:
            Cursor with results.
        """
        with self._translate_errors("execute"):
            async with self._lock:
                if parameters:
                    return await self._conn.execute(sql, parameters)
                return await self._conn.execute(sql)

    async def fetch_one(
        self,
        sql: str,
        parameters: tuple | dict | None = None,
    ) -> dict[str, Any] | None:
        """Fetch a single row as a dict, or None."""
        with self._translate_errors("fetch_one"):
            async with self._lock:
                cursor = await self._conn.execute(sql, parameters or ())
                row = await cursor.fetchone()
        return dict(row) if row else None

    async def fetch_all(
        self,
        sql: str,
        parameters: tuple | dict | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch all rows as dicts."""
        with self._translate_errors("fetch_all"):
            async with self._lock:
                cursor = await self._conn.execute(sql, parameters or ())
                rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    # ============================================================
    # Tracking domains
    # ============================================================

    async def increment_and_get_flag(
        self,
        domain: str,
        category: str | None = None,
    ) -> tuple[int, bool]:
        """Increment the hit counter for a domain and read its blocked flag.

        Creates the record on first call (hit_count becomes 1, blocked false).
        The increment and the read happen in one critical section, so
        concurrent callers each observe a distinct post-increment count.

        Args:
            domain: Tracked domain.
            category: Category recorded when the row is created.

        Returns:
            (hit_count after increment, blocked flag).

        Raises:
            StorageError: If the statement fails.
        """
        with self._translate_errors("increment_and_get_flag"):
            async with self._lock:
                await self._conn.execute(
                    """
                    INSERT INTO tracking_domains (domain, category, hit_count, blocked)
                    VALUES (?, ?, 1, 0)
                    ON CONFLICT(domain) DO UPDATE SET
                        hit_count = hit_count + 1,
                        category = COALESCE(tracking_domains.category, excluded.category)
                    """,
                    (domain, category),
                )
                cursor = await self._conn.execute(
                    "SELECT hit_count, blocked FROM tracking_domains WHERE domain = ?",
                    (domain,),
                )
                row = await cursor.fetchone()

        if row is None:
            raise StorageError("increment_and_get_flag", f"row vanished for {domain}")
        return int(row["hit_count"]), bool(row["blocked"])

    async def set_blocked(self, domain: str) -> bool:
        """Mark a tracked domain as blocked.

        One-way: there is no operation that clears the flag. Calling it on an
        already-blocked domain is a successful no-op.

        Returns:
            True if the domain is tracked (and now blocked), False if no
            tracking record exists.

        Raises:
            StorageError: If the statement fails.
        """
        cursor = await self.execute(
            "UPDATE tracking_domains SET blocked = 1 WHERE domain = ?",
            (domain,),
        )
        return cursor.rowcount > 0

    async def manual_block(self, domain: str) -> bool:
        """Administrative block of a tracked domain."""
        tracked = await self.set_blocked(domain)
        if tracked:
            logger.info("Domain manually blocked", domain=domain)
        else:
            logger.warning("Manual block ignored, domain is not tracked", domain=domain)
        return tracked

    async def get_tracking_domain(self, domain: str) -> TrackingDomain | None:
        """Get the tracking record for a domain, if any."""
        row = await self.fetch_one(
            "SELECT domain, category, hit_count, blocked FROM tracking_domains WHERE domain = ?",
            (domain,),
        )
        if row is None:
            return None
        return TrackingDomain(
            domain=row["domain"],
            category=row["category"],
            hit_count=int(row["hit_count"]),
            blocked=bool(row["blocked"]),
        )

    async def top_domains(self, limit: int = 10) -> list[tuple[str, int]]:
        """Get the most-hit tracking domains.

        Ordered by hit count descending, ties broken by domain name.
        """
        rows = await self.fetch_all(
            """
            SELECT domain, hit_count FROM tracking_domains
            ORDER BY hit_count DESC, domain ASC
            LIMIT ?
            """,
            (limit,),
        )
        return [(row["domain"], int(row["hit_count"])) for row in rows]

    # ============================================================
    # Whitelist
    # ============================================================

    async def is_whitelisted(self, domain: str) -> bool:
        """Check whether a domain is whitelisted (exact match)."""
        row = await self.fetch_one("SELECT 1 AS hit FROM whitelist WHERE domain = ?", (domain,))
        return row is not None

    async def add_whitelist(self, domain: str, reason: str | None = None) -> None:
        """Add a domain to the whitelist, replacing the reason if present."""
        await self.execute(
            "INSERT OR REPLACE INTO whitelist (domain, reason) VALUES (?, ?)",
            (domain, reason),
        )
        logger.info("Domain whitelisted", domain=domain, reason=reason)

    async def list_whitelist(self) -> list[WhitelistEntry]:
        """List whitelist entries ordered by domain."""
        rows = await self.fetch_all("SELECT domain, reason FROM whitelist ORDER BY domain")
        return [WhitelistEntry(domain=row["domain"], reason=row["reason"]) for row in rows]

    # ============================================================
    # Append-only event logs
    # ============================================================

    async def append_cookie_event(
        self,
        domain: str,
        cookie: str,
        blocked: bool,
        *,
        timestamp: datetime | None = None,
    ) -> None:
        """Record a stripped or logged cookie."""
        await self.execute(
            "INSERT INTO cookie_traffic (domain, cookie, blocked, timestamp) VALUES (?, ?, ?, ?)",
            (domain, cookie, int(blocked), format_timestamp(timestamp)),
        )

    async def append_fingerprint_event(
        self,
        user_agent: str,
        accept_language: str,
        mode: str,
        *,
        timestamp: datetime | None = None,
    ) -> None:
        """Record a fingerprint rotation."""
        await self.execute(
            """
            INSERT INTO fingerprint_rotations (user_agent, accept_language, mode, timestamp)
            VALUES (?, ?, ?, ?)
            """,
            (user_agent, accept_language, mode, format_timestamp(timestamp)),
        )

    async def append_request_event(
        self,
        domain: str,
        path: str,
        user_agent: str,
        client_ip: str,
        *,
        timestamp: datetime | None = None,
    ) -> None:
        """Record a proxied request."""
        await self.execute(
            """
            INSERT INTO request_log (domain, path, user_agent, client_ip, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (domain, path, user_agent, client_ip, format_timestamp(timestamp)),
        )

    async def count_rows(self, table: str) -> int:
        """Count rows in one of the store's tables."""
        if table not in (*EVENT_TABLES, "tracking_domains", "whitelist"):
            raise ValueError(f"Unknown table: {table}")
        row = await self.fetch_one(f"SELECT COUNT(*) AS n FROM {table}")
        return int(row["n"]) if row else 0

    # ============================================================
    # Retention cleanup
    # ============================================================

    async def cleanup(self, retention_days: int) -> int:
        """Delete event-log rows older than the retention window.

        Tracking domains and whitelist entries are never deleted.

        Args:
            retention_days: Rows with a timestamp older than now - retention_days
                are removed.

        Returns:
            Total rows deleted across the event-log tables.

        Raises:
            StorageError: If any delete fails.
        """
        modifier = f"-{int(retention_days)} days"
        total_deleted = 0

        with self._translate_errors("cleanup"):
            async with self._lock:
                for table in EVENT_TABLES:
                    cursor = await self._conn.execute(
                        f"DELETE FROM {table} WHERE timestamp < datetime('now', ?)",
                        (modifier,),
                    )
                    total_deleted += max(cursor.rowcount, 0)

        logger.debug("Retention cleanup ran", retention_days=retention_days, deleted=total_deleted)
        return total_deleted


async def open_database(db_path: str | Path) -> Database:
    """Connect to a store and make sure its schema exists."""
    db = Database(db_path)
    await db.connect()
    try:
        await db.initialize_schema()
    except Exception:
        await db.close()
        raise
    return db
