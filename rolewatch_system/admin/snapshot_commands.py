import discord
from discord import app_commands
from discord.ext import commands
from tabulate import tabulate

from database.ActivityDatabase import StorageError
from loggers.logger_setup import get_logger
from rolewatch_system.snapshots.snapshot_manager import SnapshotNotFoundError

logger = get_logger("SnapshotCommands")

MAX_LISTED_SNAPSHOTS = 15


class SnapshotCommands(commands.Cog):
    """
    Administrative commands for creating, listing and deleting snapshots.
    Restricted to users with administrator permissions.
    """

    def __init__(self, bot):
        self.bot = bot

    snapshot_group = app_commands.Group(name="snapshot", description="Manage activity snapshots.")

    @property
    def manager(self):
        return self.bot.snapshot_manager

    @snapshot_group.command(name="create", description="Take a snapshot of the current activity now.")
    @app_commands.checks.has_permissions(administrator=True)
    async def create_snapshot(self, interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True)
        try:
            result = await self.manager.create()
        except StorageError as e:
            await interaction.followup.send(f"Snapshot failed: {e}", ephemeral=True)
            return

        if result is None:
            await interaction.followup.send("No activity recorded yet, nothing to snapshot.", ephemeral=True)
            return

        await interaction.followup.send(
            f"Snapshot **{result['name']}** created (ID {result['id']}, {result['row_count']} records).",
            ephemeral=True
        )
        logger.info(f"Admin {interaction.user} created snapshot {result['id']}")

    @snapshot_group.command(name="list", description="List the most recent snapshots.")
    @app_commands.checks.has_permissions(administrator=True)
    async def list_snapshots(self, interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True)
        try:
            snapshots = await self.manager.list()
        except StorageError as e:
            await interaction.followup.send(f"Could not list snapshots: {e}", ephemeral=True)
            return

        if not snapshots:
            await interaction.followup.send("There are no snapshots yet.", ephemeral=True)
            return

        rows = [[s["id"], s["name"], s["record_count"]] for s in snapshots[:MAX_LISTED_SNAPSHOTS]]
        table = tabulate(rows, headers=["ID", "Name", "Records"], tablefmt="simple")
        footer = f"\n…and {len(snapshots) - MAX_LISTED_SNAPSHOTS} more" if len(snapshots) > MAX_LISTED_SNAPSHOTS else ""
        await interaction.followup.send(f"```\n{table}\n```{footer}", ephemeral=True)

    @snapshot_group.command(name="delete", description="Permanently delete a snapshot.")
    @app_commands.describe(snapshot_id="ID of the snapshot to delete.")
    @app_commands.checks.has_permissions(administrator=True)
    async def delete_snapshot(self, interaction: discord.Interaction, snapshot_id: int):
        await interaction.response.defer(ephemeral=True)
        try:
            result = await self.manager.delete(snapshot_id)
        except SnapshotNotFoundError:
            await interaction.followup.send(f"Snapshot {snapshot_id} does not exist.", ephemeral=True)
            return
        except StorageError as e:
            await interaction.followup.send(f"Failed to delete snapshot {snapshot_id}: {e}", ephemeral=True)
            return

        note = " The id sequence was reset." if result["sequence_reset"] else ""
        await interaction.followup.send(f"Snapshot {snapshot_id} deleted.{note}", ephemeral=True)
        logger.warning(f"Admin {interaction.user} deleted snapshot {snapshot_id}")


async def setup(bot):
    await bot.add_cog(SnapshotCommands(bot))
    logger.info("SnapshotCommands cog loaded.")
