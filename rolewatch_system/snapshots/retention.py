from typing import List, Optional

from loggers.logger_setup import get_logger
from rolewatch_system.snapshots.snapshot_manager import SnapshotManager, SnapshotNotFoundError

logger = get_logger("RetentionPolicy")


class RetentionPolicy:
    """Keeps the newest ``keep_count`` snapshots and deletes the rest."""

    def __init__(self, manager: SnapshotManager, keep_count: int = 100):
        self.manager = manager
        self.keep_count = keep_count

    async def prune(self, keep_count: Optional[int] = None) -> List[int]:
        """
        Delete every snapshot older than the newest ``keep_count``.

        Each deletion goes through SnapshotManager.delete and is its own
        transaction. Pruned snapshots are never the newest one, so the id
        sequence is left untouched unless ``keep_count`` is 0.

        Args:
            keep_count: Overrides the configured keep-count for this call

        Returns:
            Ids of the deleted snapshots
        """
        keep = self.keep_count if keep_count is None else keep_count
        if keep < 0:
            raise ValueError("keep_count must be >= 0")

        snapshot_ids = await self.manager.projection.snapshot_ids_newest_first()
        if len(snapshot_ids) <= keep:
            return []

        to_delete = snapshot_ids[keep:]
        logger.info(f"🧹 Deleting {len(to_delete)} old snapshot(s), keeping {keep}")

        deleted = []
        for snapshot_id in to_delete:
            try:
                await self.manager.delete(snapshot_id)
            except SnapshotNotFoundError:
                # Already removed by a concurrent manual delete.
                continue
            deleted.append(snapshot_id)

        logger.info(
            f"✅ Deleted {len(deleted)} old snapshot(s)",
            extra={"event": "retention_prune_complete", "deleted_ids": deleted, "keep_count": keep}
        )
        return deleted
