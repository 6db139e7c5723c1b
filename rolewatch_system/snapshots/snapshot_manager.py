from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from database.ActivityDatabase import ActivityDatabase, StorageError
from loggers.logger_setup import get_logger, log_performance
from rolewatch_system.helpers.helpers import snapshot_name, to_storage_time, utc_now
from rolewatch_system.snapshots.projection import SnapshotProjection

logger = get_logger("SnapshotManager")

INSERT_BATCH_SIZE = 1000


class SnapshotNotFoundError(Exception):
    """Raised when a snapshot id does not exist."""

    def __init__(self, snapshot_id: int):
        super().__init__(f"Snapshot {snapshot_id} not found")
        self.snapshot_id = snapshot_id


class SnapshotManager:
    """
    Freezes the live activity counters into named, immutable snapshots.

    Creation and deletion each run in a single transaction: either every
    snapshot row and record is written (or removed), or nothing is.

    Snapshot ids come from SQLite's AUTOINCREMENT sequence. Deleting the
    snapshot that holds the highest id moves the sequence back to the highest
    remaining id (0 when none remain), so the next snapshot reuses the freed id.
    Deleting any other snapshot leaves the sequence alone, since lowering it
    would collide with live higher ids.
    """

    def __init__(self, database: ActivityDatabase, clock: Callable[[], datetime] = utc_now,
                 batch_size: int = INSERT_BATCH_SIZE):
        self.database = database
        self.clock = clock
        self.batch_size = max(1, batch_size)
        self.projection = SnapshotProjection(database)

    @log_performance("snapshot_create")
    async def create(self) -> Optional[Dict[str, Any]]:
        """
        Materialize the current activity counters into a new snapshot.

        Returns:
            {"id", "name", "row_count"} for the new snapshot, or None when there is
            no activity to freeze (nothing is persisted in that case)

        Raises:
            StorageError: The transaction failed and was rolled back
        """
        now = self.clock()
        name = snapshot_name(now)
        logger.info(f"📸 Creating snapshot \"{name}\"...")

        try:
            async with self.database.transaction("snapshot_create") as db:
                cursor = await db.execute(
                    "INSERT INTO snapshots (name, created_at) VALUES (?, ?)",
                    (name, to_storage_time(now))
                )
                snapshot_id = cursor.lastrowid

                cursor = await db.execute("""
                    SELECT user_id, username, roles, channel_id, channel_name, message_count, last_message
                    FROM channel_activity
                    ORDER BY user_id, message_count DESC
                """)
                rows = await cursor.fetchall()

                if not rows:
                    await db.execute("ROLLBACK")
                    logger.info(
                        "📭 No activity to snapshot, skipping",
                        extra={"event": "snapshot_create_empty", "snapshot_name": name}
                    )
                    return None

                for start in range(0, len(rows), self.batch_size):
                    batch = rows[start:start + self.batch_size]
                    await db.executemany("""
                        INSERT INTO snapshot_records (
                            snapshot_id, user_id, username, roles, channel_id, channel_name,
                            message_count, last_message
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """, [
                        (snapshot_id, row["user_id"], row["username"], row["roles"], row["channel_id"],
                         row["channel_name"], row["message_count"], row["last_message"])
                        for row in batch
                    ])

        except StorageError as e:
            logger.error(
                f"❌ Snapshot \"{name}\" failed and was rolled back: {e}",
                extra={"event": "snapshot_create_error", "snapshot_name": name, "retryable": e.retryable}
            )
            raise

        logger.info(
            f"✅ Snapshot \"{name}\" created (ID: {snapshot_id}, records: {len(rows)})",
            extra={"event": "snapshot_create_success", "snapshot_id": snapshot_id, "row_count": len(rows)}
        )
        return {"id": snapshot_id, "name": name, "row_count": len(rows)}

    async def list(self) -> List[Dict[str, Any]]:
        """All snapshots, newest first, with their record counts."""
        return await self.projection.list_snapshots()

    async def get(self, snapshot_id: int) -> Optional[Dict[str, Any]]:
        """Snapshot metadata with per-user totals and channel breakdown, or None."""
        return await self.projection.get_snapshot(snapshot_id)

    @log_performance("snapshot_delete")
    async def delete(self, snapshot_id: int) -> Dict[str, Any]:
        """
        Delete a snapshot and all of its records.

        Args:
            snapshot_id: Id of the snapshot to delete

        Returns:
            {"deleted": True, "sequence_reset": bool}

        Raises:
            SnapshotNotFoundError: No snapshot with that id
            StorageError: The transaction failed and was rolled back
        """
        try:
            async with self.database.transaction("snapshot_delete") as db:
                cursor = await db.execute("SELECT id FROM snapshots WHERE id = ?", (snapshot_id,))
                if await cursor.fetchone() is None:
                    raise SnapshotNotFoundError(snapshot_id)

                cursor = await db.execute("SELECT MAX(id) AS max_id FROM snapshots")
                is_latest = (await cursor.fetchone())["max_id"] == snapshot_id

                await db.execute("DELETE FROM snapshot_records WHERE snapshot_id = ?", (snapshot_id,))
                await db.execute("DELETE FROM snapshots WHERE id = ?", (snapshot_id,))

                if is_latest:
                    cursor = await db.execute("SELECT COALESCE(MAX(id), 0) AS max_id FROM snapshots")
                    new_max = (await cursor.fetchone())["max_id"]
                    await db.execute(
                        "UPDATE sqlite_sequence SET seq = ? WHERE name = 'snapshots'", (new_max,)
                    )
                    logger.info(f"🔁 Snapshot id sequence reset to {new_max} after deleting ID {snapshot_id}")

        except SnapshotNotFoundError:
            logger.warning(f"⚠️ Snapshot {snapshot_id} not found for deletion")
            raise
        except StorageError as e:
            logger.error(
                f"❌ Deleting snapshot {snapshot_id} failed and was rolled back: {e}",
                extra={"event": "snapshot_delete_error", "snapshot_id": snapshot_id, "retryable": e.retryable}
            )
            raise

        logger.info(
            f"🗑️ Snapshot {snapshot_id} deleted",
            extra={"event": "snapshot_delete_success", "snapshot_id": snapshot_id, "sequence_reset": is_latest}
        )
        return {"deleted": True, "sequence_reset": is_latest}
