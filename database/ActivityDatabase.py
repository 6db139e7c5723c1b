import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from loggers.logger_setup import get_logger, PerformanceLogger

logger = get_logger("ActivityDatabase")


class StorageError(Exception):
    """Raised when a store operation fails. The enclosing transaction is always rolled back first."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


def _is_lock_error(error: sqlite3.Error) -> bool:
    text = str(error).lower()
    return isinstance(error, sqlite3.OperationalError) and ("locked" in text or "busy" in text)


class ActivityDatabase:
    """
    SQLite store shared by the activity counters and the snapshot tables.

    Every component receives an instance of this class explicitly. Each
    operation opens its own connection, so concurrent writers are serialized
    by SQLite's locking with a bounded busy wait instead of an application lock.

    Tables:
    - channel_activity: live counters keyed by (user_id, channel_id)
    - snapshots: one row per frozen snapshot, AUTOINCREMENT id
    - snapshot_records: frozen counter rows, cascade-deleted with their snapshot
    """

    def __init__(self, db_path: str = "data/role_monitoring.db", busy_timeout_ms: int = 5000):
        """
        Args:
            db_path: Path to the SQLite database file
            busy_timeout_ms: How long a connection waits for a lock before failing
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_ms = busy_timeout_ms
        self._initialized = False

    async def initialize(self):
        """Create the schema and indexes if they do not exist yet."""
        if self._initialized:
            return

        logger.info(
            "initializing_role_monitoring_database",
            extra={"event": "database_init_start", "db_path": str(self.db_path)}
        )

        try:
            async with self.connect() as db:
                await db.execute("PRAGMA journal_mode = WAL")
                await db.execute("PRAGMA cache_size = -10000")
                await db.execute("PRAGMA synchronous = NORMAL")
                await db.execute("PRAGMA temp_store = MEMORY")

                # =============================================================
                # SUBSECTION: Live Activity Table
                # =============================================================
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS channel_activity (
                        user_id TEXT NOT NULL,
                        username TEXT NOT NULL,
                        roles TEXT NOT NULL,
                        channel_id TEXT NOT NULL,
                        channel_name TEXT NOT NULL,
                        message_count INTEGER NOT NULL DEFAULT 0,
                        last_message TEXT NOT NULL,
                        PRIMARY KEY (user_id, channel_id)
                    )
                """)

                # =============================================================
                # SUBSECTION: Snapshot Tables
                # =============================================================
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS snapshots (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        UNIQUE (name)
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS snapshot_records (
                        snapshot_id INTEGER NOT NULL,
                        user_id TEXT NOT NULL,
                        username TEXT NOT NULL,
                        roles TEXT NOT NULL,
                        channel_id TEXT NOT NULL,
                        channel_name TEXT NOT NULL,
                        message_count INTEGER NOT NULL,
                        last_message TEXT,
                        PRIMARY KEY (snapshot_id, user_id, channel_id),
                        FOREIGN KEY (snapshot_id) REFERENCES snapshots (id) ON DELETE CASCADE
                    )
                """)

                # =============================================================
                # SUBSECTION: Indexes
                # =============================================================
                await db.execute(
                    "CREATE INDEX IF NOT EXISTS idx_channel_activity_user ON channel_activity (user_id)"
                )
                await db.execute(
                    "CREATE INDEX IF NOT EXISTS idx_channel_activity_channel ON channel_activity (channel_id)"
                )
                await db.execute(
                    "CREATE INDEX IF NOT EXISTS idx_snapshots_created_at ON snapshots (created_at)"
                )
                await db.execute(
                    "CREATE INDEX IF NOT EXISTS idx_snapshot_records_snapshot ON snapshot_records (snapshot_id)"
                )
                await db.execute(
                    "CREATE INDEX IF NOT EXISTS idx_snapshot_records_user ON snapshot_records (user_id)"
                )

            self._initialized = True
            logger.info(
                "role_monitoring_database_initialized",
                extra={"event": "database_init_success", "tables_created": 3, "indexes_created": 5}
            )

        except StorageError as e:
            logger.error(
                "database_initialization_failed",
                extra={"event": "database_init_error", "error": str(e)}
            )
            raise

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Open a connection in autocommit mode with foreign keys and the busy timeout enabled.

        Any sqlite3 error raised while the connection is in use is re-raised as StorageError.
        """
        try:
            async with aiosqlite.connect(self.db_path, isolation_level=None) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("PRAGMA foreign_keys = ON")
                await db.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
                yield db
        except sqlite3.Error as e:
            raise StorageError(f"{type(e).__name__}: {e}", retryable=_is_lock_error(e)) from e

    @asynccontextmanager
    async def transaction(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        """
        Run a block inside one write transaction.

        The transaction takes the write lock up front (BEGIN IMMEDIATE). It is
        committed when the block exits normally and still has an open
        transaction, and rolled back on any exception. A block may issue its
        own ROLLBACK to abort without raising.
        """
        async with self.connect() as db:
            with PerformanceLogger(logger, f"db_transaction_{operation}"):
                await db.execute("BEGIN IMMEDIATE")
                try:
                    yield db
                except BaseException:
                    if db.in_transaction:
                        await db.execute("ROLLBACK")
                    logger.debug(
                        "transaction_rolled_back",
                        extra={"event": "transaction_rollback", "operation": operation}
                    )
                    raise
                if db.in_transaction:
                    await db.execute("COMMIT")
