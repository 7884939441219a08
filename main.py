# Main File

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

import discord

from soundbot.config import Settings
from soundbot.constructor import ServerManagerType
from soundbot.context import Context
from soundbot.server.constructor import construct_server_manager
from soundbot.services.constructor import construct_services_manager

# Configure Python's built-in logging for server initialization
# (before AsyncLoggingService is available)
settings = Settings.from_env()

logs_dir = Path(settings.log_dir)
logs_dir.mkdir(parents=True, exist_ok=True)
timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
log_file = logs_dir / f"app_{timestamp}.log"

# Configure logging to output to both console and file
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(log_file, mode="a", encoding="utf-8"),
    ],
    force=True,
)

# -------------------------------------------------------------- #
# Discord Bot Setup
# -------------------------------------------------------------- #

# Guild ids from DEBUG_GUILD_IDS register commands instantly;
# leave it empty for global commands (takes up to 1 hour to register)
DEBUG_GUILD_IDS = settings.debug_guild_ids or None

intents = discord.Intents.default()
intents.voice_states = True
intents.members = True  # display names of speakers

bot = discord.Bot(intents=intents, debug_guilds=DEBUG_GUILD_IDS)


async def load_cogs(context: Context):
    """Load all cog extensions with context.

    Args:
        context: The application context instance
    """
    from cogs.general import setup as setup_general
    from cogs.voice import setup as setup_voice

    setup_general(context)
    await context.services_manager.logging_service.info("✓ Loaded cogs.general")

    setup_voice(context)
    await context.services_manager.logging_service.info("✓ Loaded cogs.voice")


# -------------------------------------------------------------- #
# Events
# -------------------------------------------------------------- #


@bot.event
async def on_ready():
    """Called when the bot is ready and connected to Discord."""
    logger = bot.context.services_manager.logging_service

    await logger.info(f"Logged in as {bot.user.name} (ID: {bot.user.id})")
    await logger.info(f"Connected to {len(bot.guilds)} guild(s):")
    for guild in bot.guilds:
        await logger.info(f"  ✓ {guild.name} (ID: {guild.id})")

    slash_commands = [
        cmd for cmd in bot.pending_application_commands if isinstance(cmd, discord.SlashCommand)
    ]
    await logger.info("Registered slash commands:")
    for cmd in slash_commands:
        await logger.info(f"  ✓ /{cmd.name} - {cmd.description}")

    if DEBUG_GUILD_IDS:
        await logger.info(f"⚠️  Commands registered for guilds: {DEBUG_GUILD_IDS}")
    else:
        await logger.info("⚠️  Commands registered GLOBALLY, this can take up to 1 hour")


@bot.event
async def on_application_command_error(
    ctx: discord.ApplicationContext, error: discord.DiscordException
):
    """Handle errors in application commands."""
    logger = bot.context.services_manager.logging_service
    await logger.error(f"Error in command {ctx.command.name}: {error}")

    if isinstance(error, discord.CheckFailure):
        message = "❌ You don't have permission to use this command."
    else:
        message = "There was an error executing that command."

    try:
        if ctx.response.is_done():
            await ctx.followup.send(message, ephemeral=True)
        else:
            await ctx.respond(message, ephemeral=True)
    except discord.DiscordException as e:
        await logger.error(f"Could not report command error: {e}")


# -------------------------------------------------------------- #
# Run Bot
# -------------------------------------------------------------- #


async def main():
    """Main function to load cogs and start the bot."""
    print("=" * 40)
    print("Syncing services...")

    context = Context(settings)

    # init server manager
    servers_manager = construct_server_manager(ServerManagerType.DEVELOPMENT, context)
    context.set_server_manager(servers_manager)
    await servers_manager.connect_all()
    print("[OK] Connected all servers.")

    # Use the same log file that was created for built-in logging
    services_manager = construct_services_manager(
        ServerManagerType.DEVELOPMENT,
        context=context,
        log_file=log_file.name,
    )
    context.set_services_manager(services_manager)
    await services_manager.initialize_all()

    logger = services_manager.logging_service
    await logger.info("[OK] Initialized all services.")

    context.set_bot(bot)
    bot.context = context

    # -------------------------------------------------------------- #
    # Start Discord Bot
    # -------------------------------------------------------------- #

    async with bot:
        await load_cogs(context)
        if not settings.discord_token:
            await logger.error("Error: DISCORD_API_TOKEN not found in environment variables")
            await services_manager.shutdown_all()
            return
        try:
            await bot.start(settings.discord_token)
        finally:
            if not context.is_shutting_down():
                await services_manager.shutdown_all()


if __name__ == "__main__":
    asyncio.run(main())
