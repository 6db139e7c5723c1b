import discord
from discord.ext import commands

from core.config import DISCORD_TOKEN
from loggers.logger_setup import get_logger

logger = get_logger("Bot")

TOKEN = DISCORD_TOKEN

COGS = [
    "rolewatch_system.Listeners.on_message",
    "rolewatch_system.admin.snapshot_commands",
]

intents = discord.Intents.default()
intents.guilds = True
intents.guild_messages = True
intents.members = True

bot = commands.Bot(command_prefix="!", intents=intents)


async def load_cogs():
    """Load every cog extension, logging failures without stopping the others."""
    for extension in COGS:
        try:
            await bot.load_extension(extension)
            logger.info(f"🧩 Loaded cog: {extension}")
        except commands.ExtensionAlreadyLoaded:
            logger.debug(f"Cog already loaded: {extension}")
        except commands.ExtensionError as e:
            logger.error(f"❌ Failed to load cog {extension}: {e}", exc_info=True)
