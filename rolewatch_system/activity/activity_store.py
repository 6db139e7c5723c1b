from datetime import datetime
from typing import Any, Callable, Dict, List

from database.ActivityDatabase import ActivityDatabase, StorageError
from loggers.logger_setup import get_logger
from rolewatch_system.helpers.helpers import ctx, to_storage_time, utc_now

logger = get_logger("ActivityStore")


class ActivityStore:
    """
    Live per-user, per-channel message counters.

    Merge policy for a (user_id, channel_id) pair that already exists:
    - message_count accumulates (+1 per recorded message)
    - username, roles, channel_name and last_message are overwritten with the
      latest values supplied (last writer wins)

    The whole merge is one INSERT ... ON CONFLICT statement, so there is no
    read-then-write window between concurrent callers.
    """

    def __init__(self, database: ActivityDatabase, clock: Callable[[], datetime] = utc_now):
        self.database = database
        self.clock = clock

    async def record_message(self, user_id: str, username: str, roles: str,
                             channel_id: str, channel_name: str) -> bool:
        """
        Count one qualifying message.

        Args:
            user_id: Stable user identifier
            username: Current display name of the user
            roles: Comma-joined role names already resolved by the caller
            channel_id: Channel identifier
            channel_name: Current channel name

        Returns:
            True if the message was counted. On a storage failure the error is
            logged and the message is dropped (False); the caller is never blocked.
        """
        timestamp = to_storage_time(self.clock())
        try:
            async with self.database.connect() as db:
                await db.execute("""
                    INSERT INTO channel_activity
                        (user_id, username, roles, channel_id, channel_name, message_count, last_message)
                    VALUES (?, ?, ?, ?, ?, 1, ?)
                    ON CONFLICT (user_id, channel_id) DO UPDATE SET
                        username = excluded.username,
                        roles = excluded.roles,
                        channel_name = excluded.channel_name,
                        message_count = channel_activity.message_count + 1,
                        last_message = excluded.last_message
                """, (str(user_id), username, roles, str(channel_id), channel_name, timestamp))
        except StorageError as e:
            logger.error(
                f"❌ Dropping message, activity upsert failed: {e} {ctx(user_id=user_id, channel=channel_name)}",
                extra={"event": "record_message_error", "retryable": e.retryable}
            )
            return False

        logger.debug(f"📨 Message counted {ctx(user_id=user_id, channel=channel_name)}")
        return True

    async def get_record(self, user_id: str, channel_id: str) -> Dict[str, Any]:
        """Return the live record for one (user, channel) pair, or an empty dict."""
        async with self.database.connect() as db:
            cursor = await db.execute("""
                SELECT user_id, username, roles, channel_id, channel_name, message_count, last_message
                FROM channel_activity
                WHERE user_id = ? AND channel_id = ?
            """, (str(user_id), str(channel_id)))
            row = await cursor.fetchone()
        return dict(row) if row else {}

    async def top_users(self, limit: int = 20) -> List[Dict[str, Any]]:
        """
        Per-user totals across all channels, most active first.

        Args:
            limit: Maximum number of users to return

        Returns:
            Rows with user_id, username, roles, total_messages and last_seen
        """
        # With a single MAX() aggregate, SQLite takes the bare username/roles
        # columns from the row holding that maximum, i.e. the latest message.
        async with self.database.connect() as db:
            cursor = await db.execute("""
                SELECT
                    user_id,
                    username,
                    roles,
                    SUM(message_count) AS total_messages,
                    MAX(last_message) AS last_seen
                FROM channel_activity
                GROUP BY user_id
                ORDER BY total_messages DESC, user_id ASC
                LIMIT ?
            """, (limit,))
            return [dict(row) async for row in cursor]

    async def user_channels(self, user_id: str) -> List[Dict[str, Any]]:
        """Per-channel counters for one user, busiest channel first."""
        async with self.database.connect() as db:
            cursor = await db.execute("""
                SELECT channel_id, channel_name, message_count, last_message
                FROM channel_activity
                WHERE user_id = ?
                ORDER BY message_count DESC, channel_id ASC
            """, (str(user_id),))
            return [dict(row) async for row in cursor]
