"""SQLite storage implementation for agentmem.

The memory database is one file shared by cooperating local processes
(agent sessions, hooks, maintenance jobs). Every connection therefore runs
in WAL mode with a busy timeout, and multi-statement units of work take
SQLite's writer lock up front with ``BEGIN IMMEDIATE``.
"""

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite

from agentmem.core.exceptions import (
    DatabaseConnectionError,
    DatabaseError,
    MigrationError,
)

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


class SQLiteStorage:
    """Async access to the shared memory database.

    Responsibilities:
    - Schema setup through ordered SQL migrations
    - One shared connection, or a short-lived connection per call
    - Writer-locked transactions
    - Small query helpers returning plain dicts

    Connections run in autocommit mode: a lone statement commits by itself
    and ``transaction()`` brackets several statements with ``BEGIN
    IMMEDIATE``/``COMMIT``. Coroutines sharing the connection are serialized
    by an asyncio lock that is not reentrant, so code inside
    ``transaction()`` must issue statements on the yielded connection.

    Attributes:
        db_path: Location of the database file.
        busy_timeout_ms: Milliseconds a statement waits for a competing writer.
        _conn: Shared connection, set between ``connect()`` and ``disconnect()``.
    """

    def __init__(self, db_path: str | Path, busy_timeout_ms: int = 5000):
        """Create storage for a database file (nothing is opened yet).

        Args:
            db_path: Location of the database file.
            busy_timeout_ms: SQLite busy timeout in milliseconds.
        """
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    # ========== Setup ==========

    async def initialize(self) -> None:
        """Create the database file if needed and bring the schema up to date.

        Parent directories are created, the file is switched to WAL
        journaling and pending migrations are applied.

        Raises:
            DatabaseError: If the file cannot be created or configured.
            MigrationError: If a migration cannot be applied.
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

            async with self._open() as conn:
                await conn.execute("PRAGMA journal_mode = WAL")

            await self._run_migrations()

            logger.info(f"Memory database ready at {self.db_path}")

        except MigrationError:
            raise
        except Exception as e:
            raise DatabaseError(f"Could not initialize {self.db_path}: {e}") from e

    async def _run_migrations(self) -> None:
        """Apply the SQL files in ``migrations/`` that have not run yet.

        Files run in name order and each applied name is recorded in
        ``schema_migrations``. Migrations only use ``IF NOT EXISTS`` DDL, so
        two processes initializing the same file at once both succeed.

        Raises:
            MigrationError: If the directory is missing or a file fails.
        """
        if not MIGRATIONS_DIR.exists():
            raise MigrationError(f"Migrations directory not found: {MIGRATIONS_DIR}")

        scripts = sorted(MIGRATIONS_DIR.glob("*.sql"))
        if not scripts:
            logger.warning(f"No migrations in {MIGRATIONS_DIR}")
            return

        try:
            async with self._open() as conn:
                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS schema_migrations (
                        name TEXT PRIMARY KEY,
                        applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                    )
                    """
                )
                cursor = await conn.execute("SELECT name FROM schema_migrations")
                applied = {row["name"] for row in await cursor.fetchall()}

                for script in scripts:
                    if script.name in applied:
                        logger.debug(f"Skipping applied migration {script.name}")
                        continue

                    logger.info(f"Applying migration {script.name}")
                    await conn.executescript(script.read_text())
                    await conn.execute(
                        "INSERT OR IGNORE INTO schema_migrations (name) VALUES (?)",
                        (script.name,),
                    )

        except Exception as e:
            raise MigrationError(f"Migration failed: {e}") from e

    # ========== Connections ==========

    async def _configure(self, conn: aiosqlite.Connection) -> None:
        conn.row_factory = aiosqlite.Row
        await conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        await conn.execute("PRAGMA foreign_keys = ON")

    @asynccontextmanager
    async def _open(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path, isolation_level=None) as conn:
            await self._configure(conn)
            yield conn

    async def connect(self) -> None:
        """Open the shared connection used by every later call.

        Raises:
            DatabaseConnectionError: If the file cannot be opened.
        """
        if self._conn is not None:
            logger.debug("Shared connection already open")
            return

        try:
            conn = await aiosqlite.connect(self.db_path, isolation_level=None)
            await self._configure(conn)
        except Exception as e:
            raise DatabaseConnectionError(f"Cannot open {self.db_path}: {e}") from e

        self._conn = conn
        logger.debug(f"Opened shared connection to {self.db_path}")

    async def disconnect(self) -> None:
        """Close the shared connection, if any."""
        if self._conn is None:
            return
        async with self._lock:
            await self._conn.close()
            self._conn = None
        logger.debug(f"Closed shared connection to {self.db_path}")

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield a connection for a block of statements.

        With a shared connection the block holds the lock for its whole
        duration; otherwise a private connection is opened and closed.

        Example:
            async with storage.connection() as conn:
                await conn.execute("SELECT COUNT(*) FROM memory_entries")
        """
        if self._conn is not None:
            async with self._lock:
                yield self._conn
        else:
            async with self._open() as conn:
                yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield a connection inside a writer-locked transaction.

        ``BEGIN IMMEDIATE`` takes the SQLite writer lock before the first
        statement, so rows read inside the block cannot be changed by another
        writer until the block commits. Any exception rolls the block back.

        Raises:
            DatabaseError: If a statement fails. Exceptions raised by the
                caller's own code propagate unchanged after the rollback.

        Example:
            async with storage.transaction() as conn:
                await conn.execute("INSERT INTO memory_entries ...")
                await conn.execute("DELETE FROM memory_entries ...")
        """
        async with self.connection() as conn:
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise DatabaseError(f"Failed to begin transaction: {e}") from e
            try:
                yield conn
                await conn.execute("COMMIT")
            except BaseException as e:
                if conn.in_transaction:
                    await conn.execute("ROLLBACK")
                if isinstance(e, sqlite3.Error):
                    raise DatabaseError(f"Transaction failed: {e}") from e
                raise

    # ========== Query Helpers ==========

    async def execute(self, query: str, params: tuple[Any, ...] = ()) -> int:
        """Run one write statement.

        Returns:
            Rows changed by the statement.

        Raises:
            DatabaseError: If the statement fails.
        """
        try:
            async with self.connection() as conn:
                cursor = await conn.execute(query, params)
                return cursor.rowcount
        except Exception as e:
            raise DatabaseError(f"Statement failed: {e}") from e

    async def execute_many(self, query: str, params_list: list[tuple[Any, ...]]) -> None:
        """Run one write statement per parameter tuple, all or nothing.

        Raises:
            DatabaseError: If any statement fails; none of them is kept.
        """
        try:
            async with self.transaction() as conn:
                await conn.executemany(query, params_list)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(f"Batch failed: {e}") from e

    async def fetch_one(self, query: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
        """First row of a query as a dict, or None when there is no row.

        Raises:
            DatabaseError: If the query fails.
        """
        try:
            async with self.connection() as conn:
                cursor = await conn.execute(query, params)
                row = await cursor.fetchone()
        except Exception as e:
            raise DatabaseError(f"Query failed: {e}") from e
        return dict(row) if row is not None else None

    async def fetch_all(self, query: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        """Every row of a query as dicts.

        Raises:
            DatabaseError: If the query fails.
        """
        try:
            async with self.connection() as conn:
                cursor = await conn.execute(query, params)
                rows = await cursor.fetchall()
        except Exception as e:
            raise DatabaseError(f"Query failed: {e}") from e
        return [dict(row) for row in rows]

    async def count(self, table: str, where: str = "", params: tuple[Any, ...] = ()) -> int:
        """Number of rows in ``table``, optionally restricted by ``where``.

        Args:
            table: Table name.
            where: Condition without the ``WHERE`` keyword.
            params: Parameters of the condition.
        """
        query = f"SELECT COUNT(*) AS n FROM {table}"
        if where:
            query = f"{query} WHERE {where}"
        row = await self.fetch_one(query, params)
        return int(row["n"]) if row else 0

    async def table_exists(self, table_name: str) -> bool:
        row = await self.fetch_one(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table_name,)
        )
        return row is not None

    async def size_bytes(self) -> int:
        """Size of the main database file in bytes (page_count * page_size)."""
        pages = await self.fetch_one("PRAGMA page_count")
        page_size = await self.fetch_one("PRAGMA page_size")
        if not pages or not page_size:
            return 0
        return int(next(iter(pages.values()))) * int(next(iter(page_size.values())))
