import contextlib

import discord
from discord.ext import commands

from soundbot.context import Context


class General(commands.Cog):
    """General purpose commands."""

    def __init__(self, context: Context):
        self.context = context
        self.bot = context.bot
        self.server = context.server_manager
        self.services = context.services_manager

    async def is_developer(self, user: discord.abc.User) -> bool:
        """True if the user owns the application or is on its team."""
        info = await self.bot.application_info()
        if info.team:
            return user.id in [member.id for member in info.team.members]
        return user.id == info.owner.id

    # -------------------------------------------------------------- #
    # Slash Commands
    # -------------------------------------------------------------- #

    @commands.slash_command(name="whoami", description="Display information about the bot")
    async def whoami(self, ctx: discord.ApplicationContext):
        """Display bot information with an embed."""
        embed = discord.Embed(
            title=self.bot.user.name,
            description="A voice channel soundboard that reacts to what you say",
            color=discord.Color.blue(),
        )

        if self.bot.user.avatar:
            embed.set_thumbnail(url=self.bot.user.avatar.url)

        embed.add_field(name="Bot ID", value=self.bot.user.id, inline=True)
        embed.add_field(
            name="Created At",
            value=discord.utils.format_dt(self.bot.user.created_at, style="D"),
            inline=True,
        )

        keywords = self.services.soundboard_service.keywords
        embed.add_field(
            name="Keywords",
            value=", ".join(sorted(keywords)) if keywords else "None configured",
            inline=False,
        )

        embed.set_footer(
            text=f"Requested by {ctx.author.name}",
            icon_url=ctx.author.avatar.url if ctx.author.avatar else None,
        )
        await ctx.respond(embed=embed)

    @commands.slash_command(name="shutdown", description="Stops the bot for real")
    async def shutdown(self, ctx: discord.ApplicationContext):
        """Stop the bot gracefully, leaving voice and letting recognition finish."""
        if not await self.is_developer(ctx.author):
            await ctx.respond("❌ You do not have permission to use this command.")
            return

        await ctx.respond(
            "Initiating graceful shutdown... Please wait for all services to complete."
        )

        try:
            logger = self.services.logging_service
            await logger.info(f"Shutdown initiated by user: {ctx.author.name} ({ctx.author.id})")

            await self.services.shutdown_all(timeout=60.0)
            await ctx.followup.send("✅ All services have been shut down. Bot stopping now...")
        except Exception as e:
            with contextlib.suppress(discord.DiscordException):
                await ctx.followup.send(f"⚠️ Shutdown completed with errors: {str(e)}")

        await self.bot.close()


def setup(context: Context):
    general = General(context)
    context.bot.add_cog(general)
    return general
