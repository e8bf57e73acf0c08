"""Global command error handling."""

import traceback

import discord
from discord import app_commands
from discord.ext import commands

from encore.utils.embeds import EmbedFactory
from encore.utils.exceptions import UserFacingError


class ErrorEvents(commands.Cog):
    """Log unexpected errors and surface friendly messages to users."""

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot

    async def _reply(self, interaction: discord.Interaction, embed: discord.Embed) -> None:
        try:
            if interaction.response.is_done():
                await interaction.followup.send(embed=embed, ephemeral=True)
            else:
                await interaction.response.send_message(embed=embed, ephemeral=True)
        except Exception as e:
            bot_logger = getattr(self.bot, "logger", None)
            if bot_logger:
                bot_logger.debug("Suppressed error sending error embed: %s", e)

    @commands.Cog.listener()
    async def on_tree_error(
        self,
        interaction: discord.Interaction,
        error: app_commands.AppCommandError
    ) -> None:
        """Global error handler for app commands (slash commands)."""
        factory = EmbedFactory(getattr(interaction.guild, "id", None))
        original = getattr(error, "original", error)
        if isinstance(original, UserFacingError):
            await self._reply(interaction, factory.error(original.message))
            return

        bot_logger = getattr(self.bot, "logger", None)
        if bot_logger:
            bot_logger.error(
                "Unhandled app command error: %s",
                "".join(traceback.format_exception(type(original), original, original.__traceback__)),
            )
        await self._reply(interaction, factory.error("Unexpected error. Please try again later."))


async def setup(bot: commands.Bot) -> None:
    """Entry point used by ``discord.ext.commands`` to register the cog."""
    await bot.add_cog(ErrorEvents(bot))
