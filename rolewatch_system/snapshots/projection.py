from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from database.ActivityDatabase import ActivityDatabase
from rolewatch_system.helpers.helpers import from_storage_time


def build_user_breakdown(records: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """
    Group frozen snapshot rows into per-user totals with a per-channel breakdown.

    username and roles come from the user's most recently active channel row.
    Users are ordered by total messages (desc), channels by message count (desc).

    Args:
        records: Rows with user_id, username, roles, channel_id, channel_name,
            message_count and optionally last_message

    Returns:
        List of {user_id, username, roles, total_messages, channels: [...]}
    """
    users: Dict[str, Dict[str, Any]] = {}
    latest: Dict[str, str] = {}

    for record in records:
        user_id = record["user_id"]
        last_message = record.get("last_message") or ""
        user = users.get(user_id)
        if user is None:
            user = users[user_id] = {
                "user_id": user_id,
                "username": record["username"],
                "roles": record["roles"],
                "total_messages": 0,
                "channels": [],
            }
            latest[user_id] = last_message
        elif last_message > latest[user_id]:
            user["username"] = record["username"]
            user["roles"] = record["roles"]
            latest[user_id] = last_message

        user["total_messages"] += record["message_count"]
        user["channels"].append({
            "channel_id": record["channel_id"],
            "channel_name": record["channel_name"],
            "message_count": record["message_count"],
        })

    for user in users.values():
        user["channels"].sort(key=lambda c: (-c["message_count"], c["channel_id"]))

    return sorted(users.values(), key=lambda u: (-u["total_messages"], u["user_id"]))


class SnapshotProjection:
    """Read-only queries over the snapshot tables."""

    def __init__(self, database: ActivityDatabase):
        self.database = database

    async def list_snapshots(self) -> List[Dict[str, Any]]:
        """All snapshots, newest first, each with its record count (one aggregate query)."""
        async with self.database.connect() as db:
            cursor = await db.execute("""
                SELECT s.id, s.name, s.created_at, COUNT(r.snapshot_id) AS record_count
                FROM snapshots s
                LEFT JOIN snapshot_records r ON r.snapshot_id = s.id
                GROUP BY s.id
                ORDER BY s.created_at DESC, s.id DESC
            """)
            return [dict(row) async for row in cursor]

    async def get_snapshot(self, snapshot_id: int) -> Optional[Dict[str, Any]]:
        """
        Snapshot metadata plus the per-user breakdown.

        Returns:
            {"snapshot": {...}, "users": [...]} or None if the id does not exist
        """
        async with self.database.connect() as db:
            cursor = await db.execute(
                "SELECT id, name, created_at FROM snapshots WHERE id = ?", (snapshot_id,)
            )
            snapshot = await cursor.fetchone()
            if snapshot is None:
                return None

            cursor = await db.execute("""
                SELECT user_id, username, roles, channel_id, channel_name, message_count, last_message
                FROM snapshot_records
                WHERE snapshot_id = ?
                ORDER BY user_id, message_count DESC
            """, (snapshot_id,))
            records = [dict(row) async for row in cursor]

        return {"snapshot": dict(snapshot), "users": build_user_breakdown(records)}

    async def snapshot_ids_newest_first(self) -> List[int]:
        async with self.database.connect() as db:
            cursor = await db.execute("SELECT id FROM snapshots ORDER BY created_at DESC, id DESC")
            return [row["id"] async for row in cursor]

    async def latest_created_at(self) -> Optional[datetime]:
        """Creation instant of the most recent snapshot as aware UTC, or None."""
        async with self.database.connect() as db:
            cursor = await db.execute("SELECT created_at FROM snapshots ORDER BY created_at DESC, id DESC LIMIT 1")
            row = await cursor.fetchone()
        return from_storage_time(row["created_at"]) if row else None
