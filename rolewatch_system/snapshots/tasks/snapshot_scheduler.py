import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from database.ActivityDatabase import StorageError
from loggers.logger_setup import get_logger
from rolewatch_system.helpers.helpers import utc_now
from rolewatch_system.snapshots.retention import RetentionPolicy
from rolewatch_system.snapshots.snapshot_manager import SnapshotManager

logger = get_logger("SnapshotScheduler")


class SnapshotScheduler:
    """
    Takes a snapshot every ``interval`` and prunes old ones after each firing.

    On start it looks at the most recent snapshot:
    - none yet: snapshot right away, next firing one interval later
    - overdue (elapsed >= interval): snapshot right away
    - otherwise: wait ``interval - elapsed`` first

    ``elapsed`` is ``now - last_created_at - skew_margin``, so a snapshot taken
    less than ``skew_margin`` ago waits longer than one interval.

    After the very first snapshot the next firing is deliberately a full
    interval away. Firing again at once would only store a duplicate of the
    snapshot just taken.

    Firings run one at a time inside a single task, so a slow snapshot delays
    the next firing rather than overlapping with it. A failed firing is logged
    and the timer carries on.
    """

    def __init__(
            self,
            manager: SnapshotManager,
            retention: RetentionPolicy,
            interval: timedelta = timedelta(hours=4),
            skew_margin: timedelta = timedelta(hours=1),
            clock: Callable[[], datetime] = utc_now,
            sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            manager: Creates the snapshots
            retention: Prunes old snapshots after each firing
            interval: Time between firings
            skew_margin: Subtracted from the elapsed time since the last snapshot
            clock: Returns the current aware UTC datetime
            sleep: Coroutine used to wait, replaceable with a virtual clock in tests
        """
        if interval <= timedelta(0):
            raise ValueError("interval must be positive")

        self.manager = manager
        self.retention = retention
        self.interval = interval
        self.skew_margin = skew_margin
        self.clock = clock
        self.sleep = sleep

        self.firings = 0
        self._task: Optional[asyncio.Task] = None
        self._is_running = False

        logger.info(
            f"⏰ Automatic snapshots every {interval}",
            extra={"event": "scheduler_init", "interval_seconds": interval.total_seconds(),
                   "skew_margin_seconds": skew_margin.total_seconds()}
        )

    async def initial_delay(self) -> float:
        """
        Decide how long to wait before the first recurring firing.

        Takes the very first snapshot itself when none exist yet and then
        returns a full interval instead of 0, so no back-to-back duplicate is
        created.

        Returns:
            Seconds to wait; 0 means fire immediately
        """
        try:
            last_created_at = await self.manager.projection.latest_created_at()
        except StorageError as e:
            logger.error(f"❌ Could not read the last snapshot time, treating as none: {e}")
            last_created_at = None

        if last_created_at is None:
            logger.info("📭 No snapshots found, creating the first one")
            await self.fire()
            return self.interval.total_seconds()

        now = self.clock()
        elapsed = now - last_created_at - self.skew_margin
        if elapsed >= self.interval:
            logger.info(f"⏩ Last snapshot is older than {self.interval}, creating a new one now")
            return 0.0

        # A timestamp from the future waits one interval.
        delay = self.interval if last_created_at > now else self.interval - elapsed
        logger.info(
            f"⏳ Last snapshot was taken at {last_created_at:%Y-%m-%d %H:%M:%S} UTC, "
            f"next one in {int(delay.total_seconds() // 60)} minutes"
        )
        return delay.total_seconds()

    async def fire(self):
        """Create a snapshot, then prune. Errors are logged and never raised."""
        self.firings += 1
        logger.info(f"📸 Scheduled snapshot #{self.firings}...")

        try:
            await self.manager.create()
        except Exception as e:
            logger.error(
                f"❌ Scheduled snapshot failed: {e}",
                extra={"event": "scheduled_snapshot_error", "error_type": type(e).__name__},
                exc_info=True
            )

        try:
            await self.retention.prune()
        except Exception as e:
            logger.error(
                f"❌ Scheduled retention prune failed: {e}",
                extra={"event": "scheduled_prune_error", "error_type": type(e).__name__},
                exc_info=True
            )

    async def run(self):
        """Run the catch-up check, then fire at every interval until cancelled."""
        self._is_running = True
        try:
            delay = await self.initial_delay()
            if delay > 0:
                await self.sleep(delay)

            while self._is_running:
                await self.fire()
                await self.sleep(self.interval.total_seconds())

        except asyncio.CancelledError:
            logger.info("🛑 Snapshot scheduler cancelled", extra={"event": "scheduler_cancelled"})
            raise

        finally:
            self._is_running = False

    def start(self) -> None:
        """Start the scheduler as a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="snapshot-scheduler")
            logger.info("✅ Snapshot scheduler started", extra={"event": "scheduler_start"})

    async def stop(self) -> None:
        """Cancel the background task and wait for it to finish."""
        self._is_running = False
        task = self._task
        self._task = None

        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        logger.info("🛑 Snapshot scheduler stopped", extra={"event": "scheduler_stop"})

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()


async def take_final_snapshot(
        scheduler: SnapshotScheduler,
        manager: SnapshotManager,
        close_ingestion: Optional[Callable[[], Awaitable[None]]] = None,
) -> Optional[dict]:
    """
    Stop the scheduler, stop ingestion and take one last snapshot.

    The final snapshot is always attempted, even if stopping the scheduler or
    closing ingestion fails, and it is not followed by a retention prune.

    Args:
        scheduler: Running scheduler to stop first
        manager: Creates the final snapshot
        close_ingestion: Optional coroutine function that stops new messages

    Returns:
        The created snapshot summary, or None if nothing was stored
    """
    try:
        await scheduler.stop()
    except Exception as e:
        logger.error(f"❌ Error stopping snapshot scheduler: {e}",
                     extra={"event": "scheduler_stop_error", "error_type": type(e).__name__})

    if close_ingestion is not None:
        try:
            await close_ingestion()
        except Exception as e:
            logger.error(f"❌ Error stopping ingestion: {e}",
                         extra={"event": "ingestion_close_error", "error_type": type(e).__name__})

    logger.info("📸 Creating final snapshot before exit...", extra={"event": "final_snapshot"})
    try:
        return await manager.create()
    except Exception as e:
        logger.error(f"❌ Final snapshot failed: {e}",
                     extra={"event": "final_snapshot_error", "error_type": type(e).__name__},
                     exc_info=True)
        return None
