from typing import Optional, Sequence

import discord
from discord.ext import commands

from core.config import TARGET_ROLES
from loggers.logger_setup import log_performance, get_logger
from rolewatch_system.helpers.helpers import format_member_roles, has_target_role


class MessageListener(commands.Cog):
    """
    Counts messages from members holding a monitored role.

    Bot authors, direct messages and members without any monitored role are
    ignored. Everything else is handed to the ActivityStore.
    """

    def __init__(self, bot, target_roles: Sequence[str] = TARGET_ROLES):
        self.bot = bot
        self.target_roles = list(target_roles)
        self.activity_store = None  # Will be set from bot instance
        self.logger = get_logger("MessageListener")

    async def cog_load(self):
        """Pick up the shared ActivityStore from the bot."""
        if getattr(self.bot, "activity_store", None) is None:
            self.logger.error("❌ No activity store found on bot instance")
            raise ValueError("Activity store not available on bot instance")

        self.activity_store = self.bot.activity_store
        self.logger.info(f"👀 Monitoring roles: {', '.join(self.target_roles)}")

    async def _resolve_member(self, message: discord.Message) -> Optional[discord.Member]:
        if isinstance(message.author, discord.Member):
            return message.author

        member = message.guild.get_member(message.author.id)
        if member is not None:
            return member

        try:
            return await message.guild.fetch_member(message.author.id)
        except discord.HTTPException as e:
            self.logger.debug(f"Could not fetch member {message.author.id}: {e}")
            return None

    @commands.Cog.listener()
    @log_performance("on_message")
    async def on_message(self, message: discord.Message):
        if message.author.bot or message.guild is None or self.activity_store is None:
            return

        member = await self._resolve_member(message)
        if member is None:
            return

        role_names = [role.name for role in member.roles]
        if not has_target_role(role_names, self.target_roles):
            return

        await self.activity_store.record_message(
            user_id=str(message.author.id),
            username=str(message.author),
            roles=format_member_roles(role_names),
            channel_id=str(message.channel.id),
            channel_name=getattr(message.channel, "name", str(message.channel.id)),
        )


async def setup(bot):
    await bot.add_cog(MessageListener(bot))
