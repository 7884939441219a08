import logging

import discord
from discord.ext import commands

from soundbot.context import Context
from soundbot.services.voice_session.manager import VoiceSession

logger = logging.getLogger(__name__)

SHUTTING_DOWN_REPLY = "The bot is shutting down, try again in a moment."


# -------------------------------------------------------------- #
# Cog
# -------------------------------------------------------------- #


class Voice(commands.Cog):
    """Voice based commands: joining, keyword recording and music."""

    def __init__(self, context: Context):
        self.context = context
        self.bot = context.bot
        self.server = context.server_manager
        self.services = context.services_manager

    # -------------------------------------------------------------- #
    # Utils
    # -------------------------------------------------------------- #

    def find_user_vc(self, ctx: discord.ApplicationContext) -> discord.VoiceChannel | None:
        """Find a voice channel the user is in.

        Args:
            ctx: Discord application context

        Returns:
            Voice channel if user is connected, None otherwise
        """
        voice = getattr(ctx.author, "voice", None)
        return voice.channel if voice else None

    def get_session(self, ctx: discord.ApplicationContext) -> VoiceSession:
        return self.services.voice_session_manager.get_session(ctx.guild.id)

    async def reply(self, ctx: discord.ApplicationContext, message: str) -> None:
        try:
            await ctx.followup.send(message)
        except discord.DiscordException as e:
            logger.warning(f"Could not reply in guild {ctx.guild_id}: {e}")

    async def begin(self, ctx: discord.ApplicationContext) -> bool:
        """Defer the interaction; False if the command should not run."""
        await ctx.defer()
        if ctx.guild is None:
            await self.reply(ctx, "This command can only be used in a server.")
            return False
        if self.context.is_shutting_down():
            await self.reply(ctx, SHUTTING_DOWN_REPLY)
            return False

        await self.services.logging_service.info(
            f"/{ctx.command.name} from {ctx.author.name} ({ctx.author.id}) in guild {ctx.guild.id}"
        )
        return True

    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ):
        """Tear the session down when the bot is removed from voice by someone else.

        Args:
            member: The member whose voice state has changed
            before: The previous voice state
            after: The new voice state
        """
        if self.bot is None or self.bot.user is None or member.id != self.bot.user.id:
            return
        if before.channel is None or after.channel is not None:
            return

        logger.info(f"Bot left voice channel {before.channel.id} in guild {member.guild.id}")
        await self.services.voice_session_manager.handle_forced_disconnect(
            member.guild.id, before.channel.id
        )

    # -------------------------------------------------------------- #
    # Slash Commands
    # -------------------------------------------------------------- #

    @commands.slash_command(name="join", description="Join your voice channel")
    async def join(self, ctx: discord.ApplicationContext) -> None:
        if not await self.begin(ctx):
            return
        reply = await self.get_session(ctx).join(self.find_user_vc(ctx))
        await self.reply(ctx, reply)

    @commands.slash_command(name="leave", description="Leave the voice channel")
    async def leave(self, ctx: discord.ApplicationContext) -> None:
        if not await self.begin(ctx):
            return
        session = self.services.voice_session_manager.find_session(ctx.guild.id)
        if session is None:
            await self.reply(ctx, "I am not in a voice channel!")
            return
        reply = await session.leave(ctx.channel)
        await self.reply(ctx, reply)

    @commands.slash_command(name="record", description="Listen for soundboard keywords")
    async def record(self, ctx: discord.ApplicationContext) -> None:
        """Start recording every speaker and react to recognized keywords.

        Args:
            ctx: Discord application context
        """
        if not await self.begin(ctx):
            return
        reply = await self.get_session(ctx).start_recording(self.find_user_vc(ctx), ctx.channel)
        await self.reply(ctx, reply)

    @commands.slash_command(name="stop_recording", description="Stop listening for keywords")
    async def stop_recording(self, ctx: discord.ApplicationContext) -> None:
        if not await self.begin(ctx):
            return
        reply = await self.get_session(ctx).stop_recording()
        await self.reply(ctx, reply)

    @commands.slash_command(name="play", description="Play a song from a URL or search")
    async def play(
        self,
        ctx: discord.ApplicationContext,
        song_url: str = discord.Option(description="URL or search terms"),
    ) -> None:
        """Queue a song; recording stops while music plays.

        Args:
            ctx: Discord application context
            song_url: URL or search query passed to yt-dlp
        """
        if not await self.begin(ctx):
            return
        reply = await self.get_session(ctx).start_playback(self.find_user_vc(ctx), song_url)
        await self.reply(ctx, reply)

    @commands.slash_command(name="skip", description="Skip the current song")
    async def skip(self, ctx: discord.ApplicationContext) -> None:
        if not await self.begin(ctx):
            return
        reply = await self.get_session(ctx).skip_playback()
        await self.reply(ctx, reply)

    @commands.slash_command(name="stop", description="Stop the music and clear the queue")
    async def stop(self, ctx: discord.ApplicationContext) -> None:
        if not await self.begin(ctx):
            return
        reply = await self.get_session(ctx).stop_playback()
        await self.reply(ctx, reply)

    # -------------------------------------------------------------- #
    # Debug Functions
    # -------------------------------------------------------------- #

    @commands.slash_command(
        name="voice_status", description="Debug: show this server's voice session"
    )
    async def voice_status(self, ctx: discord.ApplicationContext) -> None:
        await ctx.defer(ephemeral=True)
        session = self.services.voice_session_manager.find_session(ctx.guild_id)
        if session is None:
            await ctx.followup.send("No active voice session.", ephemeral=True)
            return

        status = session.get_session_status()
        lines = [f"{key}: {value}" for key, value in status.items()]
        await ctx.followup.send("\n".join(lines), ephemeral=True)


def setup(context: Context):
    voice = Voice(context)
    context.bot.add_cog(voice)

    # -------------------------------------------------------------- #
    # Add listeners
    # -------------------------------------------------------------- #

    context.bot.add_listener(voice.on_voice_state_update, "on_voice_state_update")
    return voice
