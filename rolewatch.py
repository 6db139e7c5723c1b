import asyncio
import signal
import sys
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Dict, Optional

import discord
import uvicorn
from tabulate import tabulate

from core.bot import bot, TOKEN, load_cogs
from core.config import (
    API_HOST, API_KEY, API_PORT, BUSY_TIMEOUT_MS, DB_PATH, LOG_DIR, LOG_LEVEL,
    SNAPSHOT_INTERVAL_HOURS, SNAPSHOT_KEEP_COUNT, SNAPSHOT_SKEW_MARGIN_HOURS, TARGET_ROLES,
)
from database.ActivityDatabase import ActivityDatabase
from loggers.logger_setup import setup_application_logging, log_performance, log_context
from rolewatch_system.activity.activity_store import ActivityStore
from rolewatch_system.api.snapshot_api import create_app
from rolewatch_system.snapshots.retention import RetentionPolicy
from rolewatch_system.snapshots.snapshot_manager import SnapshotManager
from rolewatch_system.snapshots.tasks.snapshot_scheduler import SnapshotScheduler, take_final_snapshot

logger = setup_application_logging(
    app_name="rolewatch",
    log_level=LOG_LEVEL,
    log_dir=LOG_DIR,
    enable_performance_logging=True,
    max_file_size=20 * 1024 * 1024,  # 20 MB
    backup_count=10
)

database = ActivityDatabase(DB_PATH, busy_timeout_ms=BUSY_TIMEOUT_MS)
activity_store = ActivityStore(database)
snapshot_manager = SnapshotManager(database)
retention_policy = RetentionPolicy(snapshot_manager, keep_count=SNAPSHOT_KEEP_COUNT)
snapshot_scheduler = SnapshotScheduler(
    snapshot_manager,
    retention_policy,
    interval=timedelta(hours=SNAPSHOT_INTERVAL_HOURS),
    skew_margin=timedelta(hours=SNAPSHOT_SKEW_MARGIN_HOURS),
)

api_server: Optional[uvicorn.Server] = None

startup_metrics: Dict[str, Optional[float]] = {
    "ready_time": None,
    "total_startup_time": None,
}


@asynccontextmanager
async def startup_phase(phase_name: str):
    """Context manager to track startup phase timing."""
    start_time = time.perf_counter()
    logger.info(f"🔄 Starting phase: {phase_name}")

    try:
        yield
        duration = time.perf_counter() - start_time
        startup_metrics[f"{phase_name.lower().replace(' ', '_')}_time"] = duration
        logger.info(f"✅ Completed phase: {phase_name} in {duration:.4f}s")
    except Exception as e:
        duration = time.perf_counter() - start_time
        logger.error(f"❌ Failed phase: {phase_name} after {duration:.4f}s - {str(e)}")
        raise


async def log_live_stats(limit: int = 20):
    """Log the most active monitored users and their busiest channels as tables."""
    users = await activity_store.top_users(limit)
    if not users:
        logger.info("📊 No activity recorded yet")
        return

    user_rows = [
        [u["username"], u["total_messages"], u["last_seen"], u["roles"]]
        for u in users
    ]
    user_table = tabulate(user_rows, headers=["User", "Messages", "Last seen", "Roles"], tablefmt="fancy_grid")
    logger.info(f"📊 Top {len(users)} monitored users:\n{user_table}")

    top = users[0]
    channels = await activity_store.user_channels(top["user_id"])
    channel_rows = [[c["channel_name"], c["message_count"], c["last_message"]] for c in channels]
    channel_table = tabulate(channel_rows, headers=["Channel", "Messages", "Last message"], tablefmt="fancy_grid")
    logger.info(f"📊 Channels for {top['username']}:\n{channel_table}")


@bot.event
@log_performance("bot_ready_sequence")
async def on_ready():
    """
    Load cogs, sync commands, print live stats and start the snapshot scheduler.
    on_ready can fire again after a reconnect; every step tolerates that.
    """
    startup_metrics["ready_time"] = time.perf_counter()

    with log_context(logger, "Bot Ready Sequence", level=20):
        logger.info(f"🚀 Bot {bot.user} is ready!")
        logger.info(f"👀 Monitoring roles: {', '.join(TARGET_ROLES)}")

        try:
            async with startup_phase("Cog Loading"):
                await load_cogs()
        except Exception as cog_error:
            logger.error(f"❌ Error during cog loading: {cog_error}", exc_info=True)

        try:
            async with startup_phase("Command Sync"):
                synced = await bot.tree.sync()
                logger.info(f"🔄 Synced {len(synced)} application commands")
        except discord.HTTPException as sync_error:
            logger.error(f"❌ Error during command sync: {sync_error}", exc_info=True)

        try:
            await log_live_stats()
        except Exception as stats_error:
            logger.error(f"❌ Error printing live stats: {stats_error}")

        if not snapshot_scheduler.is_running():
            snapshot_scheduler.start()

        startup_metrics["total_startup_time"] = time.perf_counter() - startup_metrics["ready_time"]
        logger.info(f"🎉 Bot is fully online ({startup_metrics['total_startup_time']:.2f}s)")


@bot.event
async def on_error(event, *args, **kwargs):
    logger.error(f"Error in event '{event}': {args} {kwargs}", exc_info=True)


@log_performance("graceful_shutdown")
async def shutdown_handler():
    """
    Stop the scheduler, stop ingestion, take one final snapshot and stop the API.
    The final snapshot is not followed by a retention prune.
    """
    logger.info("🛑 Initiating graceful shutdown...")

    async def close_bot():
        if not bot.is_closed():
            await bot.close()
            logger.info("✅ Bot connection closed")

    await take_final_snapshot(snapshot_scheduler, snapshot_manager, close_ingestion=close_bot)

    if api_server is not None:
        api_server.should_exit = True

    logger.info("🏁 Graceful shutdown completed")


@log_performance("service_startup")
async def start_services(shutdown_event: asyncio.Event):
    """Run the bot and the HTTP API until a shutdown signal arrives."""
    global api_server

    api_server = uvicorn.Server(uvicorn.Config(
        create_app(snapshot_manager, API_KEY),
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    ))

    async def run_bot():
        try:
            await bot.start(TOKEN)
        except asyncio.CancelledError:
            logger.info("🔄 Bot task cancelled during shutdown")
            raise
        except Exception as e:
            logger.error(f"💥 Bot connection failed: {e}", exc_info=True)
            raise

    async def run_api():
        try:
            logger.info(f"🌐 API server listening on {API_HOST}:{API_PORT}")
            await api_server.serve()
        except asyncio.CancelledError:
            logger.info("🔄 API task cancelled during shutdown")
            raise

    try:
        async with asyncio.TaskGroup() as tg:
            tg.create_task(run_bot())
            tg.create_task(run_api())

            await shutdown_event.wait()
            logger.info("🛑 Shutdown signal received, stopping services...")
            await shutdown_handler()

    except* Exception as eg:
        for e in eg.exceptions:
            logger.error(f"💥 Service error: {e}", exc_info=e)
        raise


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, shutdown_event: asyncio.Event):
    """Install SIGINT/SIGTERM handlers that trigger a graceful shutdown."""

    def _signal_handler(sig_name: str):
        logger.info(f"📡 Received {sig_name} signal, creating final snapshot and shutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler, sig.name)
            logger.debug(f"📡 Signal handler registered for {sig.name}")
        except NotImplementedError:
            # Windows doesn't support signal handlers in event loops
            logger.debug(f"⚠️ Signal handlers not supported on this platform for {sig.name}")


async def _async_main(shutdown_event: asyncio.Event):
    _install_signal_handlers(asyncio.get_running_loop(), shutdown_event)

    try:
        logger.info("🔄 Initializing role monitoring database...")
        await database.initialize()
        logger.info("✅ Database initialized successfully")
    except Exception as e:
        logger.critical(f"💥 Failed to initialize database: {e}")
        raise

    bot.activity_store = activity_store
    bot.snapshot_manager = snapshot_manager

    await start_services(shutdown_event)


def main():
    logger.info("🚀 Starting Rolewatch Discord Bot...")
    logger.info(f"🐍 Python version: {sys.version}")
    logger.info(f"🤖 Discord.py version: {discord.__version__}")

    if not TOKEN:
        logger.critical("💥 DISCORD_TOKEN is not set")
        sys.exit(1)

    shutdown_event = asyncio.Event()
    try:
        asyncio.run(_async_main(shutdown_event))
    except KeyboardInterrupt:
        logger.info("⌨️ Keyboard interrupt received, shutting down...")
    except Exception as e:
        logger.critical(f"💥 Critical error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        logger.info("👋 Application shutdown complete")


if __name__ == "__main__":
    main()
