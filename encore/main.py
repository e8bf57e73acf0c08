"""Application bootstrap for the Encore Discord bot.

This module wires together configuration, logging, Lavalink connectivity, the
playback engine services and dynamic extension loading so the bot can be
launched with a single call to ``python -m encore.main``.  Side effects stay in
the ``setup_hook`` lifecycle to keep the import safe for testing.
"""

import logging
import os
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from encore.configs.settings import CONFIG, DISCORD_TOKEN
from encore.services.idle_service import IdleTimerService
from encore.services.lavalink_service import LavalinkManager
from encore.services.lyrics_service import LyricsService, SyncedLyricsStreamer
from encore.services.playback_service import PlaybackAttemptController
from encore.services.recovery_service import ErrorRecoveryService
from encore.services.request_service import PlayRequestService
from encore.services.resolver_service import TrackResolver
from encore.services.session_service import Session, SessionRegistry
from encore.services.vote_skip_service import VoteSkipService
from encore.utils.logger import setup_logging

INTENTS = discord.Intents.default()
INTENTS.guilds = True
INTENTS.voice_states = True
INTENTS.members = CONFIG.bot.intents.members
INTENTS.message_content = CONFIG.bot.intents.message_content


class Encore(commands.Bot):
    """Main bot implementation.

    Holds the Lavalink manager and the per-guild playback engine: session
    registry, attempt controller, recovery, idle timer, vote skip and lyrics
    streaming.  Services that need the Lavalink client are built once the node
    is registered in ``setup_hook``.
    """

    def __init__(self):
        super().__init__(
            command_prefix="!",
            intents=INTENTS,
            help_command=None,
        )
        self.logger: Optional[logging.Logger] = None
        self.lavalink_manager = LavalinkManager(self, CONFIG.lavalink)
        self.sessions = SessionRegistry(default_volume=CONFIG.playback.default_volume)
        self.lyrics_service = LyricsService(cache_ttl=CONFIG.lyrics.cache_ttl_seconds)
        self.lyrics_streamer = SyncedLyricsStreamer(buffer_seconds=CONFIG.lyrics.expiry_buffer_seconds)
        self.lyrics_streamer.attach(self.sessions)
        self.vote_skip = VoteSkipService(ratio=CONFIG.vote_skip.ratio)
        self.controller = PlaybackAttemptController(settle_seconds=CONFIG.playback.settle_seconds)
        self.resolver: Optional[TrackResolver] = None
        self.recovery: Optional[ErrorRecoveryService] = None
        self.idle: Optional[IdleTimerService] = None
        self.requests: Optional[PlayRequestService] = None

    def _build_engine(self) -> None:
        self.resolver = TrackResolver(self.lavalink, search_engine=CONFIG.playback.search_engine)
        self.recovery = ErrorRecoveryService(
            self.sessions,
            self.resolver,
            self.controller,
            max_attempts=CONFIG.recovery.max_attempts,
            flag_ceiling=CONFIG.recovery.flag_ceiling_seconds,
            search_engine=CONFIG.recovery.search_engine,
        )
        self.idle = IdleTimerService(
            self.sessions,
            self.recovery,
            delay=CONFIG.idle.disconnect_seconds,
            enabled=CONFIG.idle.enabled,
        )
        self.recovery.on_exhausted = self._on_recovery_exhausted
        self.requests = PlayRequestService(
            self.sessions,
            self.resolver,
            self.controller,
            self.recovery,
            self.idle,
            max_attempts=CONFIG.playback.max_attempts,
            search_engine=CONFIG.playback.search_engine,
        )

    async def _on_recovery_exhausted(self, session: Session) -> None:
        if self.idle:
            await self.idle.on_queue_empty(session)

    async def close(self):
        """Tear down every session and gracefully stop Lavalink."""
        await self.sessions.close()

        if hasattr(self, "lavalink_manager"):
            await self.lavalink_manager.close()

        if hasattr(self, "lyrics_service"):
            await self.lyrics_service.close()

        for vc in list(self.voice_clients):
            try:
                await vc.disconnect(force=True)
            except Exception as e:
                if self.logger:
                    self.logger.error("Error disconnecting voice client: %s", e)

        await super().close()

    async def _on_app_command_error(
        self, interaction: discord.Interaction, error: app_commands.AppCommandError
    ) -> None:
        self.dispatch("tree_error", interaction, error)

    async def setup_hook(self):
        """Configure logging, initialise Lavalink, build the engine and load extensions."""
        setup_logging()

        self.logger = logging.getLogger("Encore")
        self.logger.info("Initializing Encore...")

        await self.lavalink_manager.connect()
        self._build_engine()
        self.tree.on_error = self._on_app_command_error

        # Load all cogs dynamically
        for pkg in ("events", "commands"):
            folder = os.path.join(os.path.dirname(__file__), pkg)
            for file in sorted(os.listdir(folder)):
                if file.endswith(".py") and not file.startswith("__"):
                    ext = f"encore.{pkg}.{file[:-3]}"
                    await self.load_extension(ext)
                    self.logger.info("Loaded extension: %s", ext)

        if CONFIG.bot.sync_commands_on_start:
            await self.tree.sync()
            self.logger.info("Slash commands synced.")


bot = Encore()


def run() -> None:
    bot.run(DISCORD_TOKEN)


if __name__ == "__main__":
    run()
