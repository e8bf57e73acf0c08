"""Lavalink and voice-state listeners feeding the playback engine."""

# pyright: reportMissingTypeStubs=false

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Optional, Set

import discord
import lavalink
from discord.ext import commands
from lavalink.events import (
    QueueEndEvent,
    TrackEndEvent,
    TrackExceptionEvent,
    TrackStartEvent,
    TrackStuckEvent,
)

from encore.services.recovery_service import ERROR_END_REASONS, normalise_end_reason
from encore.services.resolver_service import candidate_from_track
from encore.services.session_service import CandidateTrack, PlaybackState, Session
from encore.utils.embeds import EmbedFactory

logger = logging.getLogger(__name__)


class MusicEvents(commands.Cog):
    """React to Lavalink events and voice changes for every guild session."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self._tasks: Set[asyncio.Task] = set()
        if hasattr(bot, "lavalink"):
            bot.lavalink.add_event_hooks(self)

    def cog_unload(self) -> None:
        for task in list(self._tasks):
            task.cancel()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Run engine work off the Lavalink dispatch path."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(self._log_failure)
        return task

    @staticmethod
    def _log_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background playback task failed: %s", exc, exc_info=exc)

    def _session(self, guild_id: Optional[int]) -> Optional[Session]:
        if guild_id is None:
            return None
        return self.bot.sessions.get(guild_id)

    @staticmethod
    def _match_track(session: Session, track: Any) -> Optional[CandidateTrack]:
        """Map a Lavalink track back onto the session's candidate."""
        if track is None:
            return session.current
        current = session.current
        if current is not None and (current.handle is track or current.uri == getattr(track, "uri", None)):
            return current
        return candidate_from_track(track)

    def _requester_name(self, guild: discord.Guild | None, requester_id: Optional[int]) -> Optional[str]:
        """Resolve the display name for the requester stored on the track metadata."""
        if not requester_id:
            return None
        if guild:
            member = guild.get_member(requester_id)
            if member:
                return member.display_name
        user = self.bot.get_user(requester_id)
        if user:
            return user.display_name
        return str(requester_id)

    async def _stop_lyrics_for(self, session: Session, title: Optional[str], reason: str) -> None:
        subscription = session.state.lyrics
        if subscription is None:
            return
        if title is None or subscription.title != title:
            await self.bot.lyrics_streamer.stop(session, reason=reason)

    async def _announce(self, session: Session, track: CandidateTrack) -> None:
        guild = self.bot.get_guild(session.guild_id)
        factory = EmbedFactory(session.guild_id)
        embed = factory.track_card(
            title=track.title,
            author=track.author,
            duration=track.clock,
            url=track.uri or None,
            requester=self._requester_name(guild, track.requester),
            thumbnail=track.thumbnail,
        )
        embed.title = f"🎶 {track.title}"
        if session.pending:
            embed.add_field(name="Up Next", value=f"`{len(session.pending)}` track(s) queued", inline=True)
        await session.notify(embed=embed)

    # ------------------------------------------------------------------ lavalink events
    @lavalink.listener(TrackStartEvent)
    async def on_track_start(self, event: TrackStartEvent):
        session = self._session(event.player.guild_id)
        if not session:
            return
        track = self._match_track(session, event.track)
        session.playback_state = PlaybackState.PLAYING
        self.bot.idle.on_track_added(session)
        await self._stop_lyrics_for(session, track.title if track else None, "track changed")
        if track and not self.bot.recovery.is_recovering(session):
            self._spawn(self._announce(session, track))

    @lavalink.listener(TrackExceptionEvent)
    async def on_track_exception(self, event: TrackExceptionEvent):
        session = self._session(event.player.guild_id)
        if not session:
            return
        message = getattr(event, "message", None) or str(getattr(event, "cause", "") or "Playback failed")
        logger.warning("Track exception in guild %s: %s", session.guild_id, message)
        # An attempt walk in flight reads this when its settle window closes.
        session.state.last_failure = message
        self._spawn(self.bot.recovery.on_playback_error(session, message))

    @lavalink.listener(TrackStuckEvent)
    async def on_track_stuck(self, event: TrackStuckEvent):
        session = self._session(event.player.guild_id)
        if not session:
            return
        logger.warning("Track stuck in guild %s (threshold=%sms).", session.guild_id, getattr(event, "threshold", "?"))
        self._spawn(self.bot.recovery.on_playback_error(session, "Track got stuck"))

    @lavalink.listener(TrackEndEvent)
    async def on_track_end(self, event: TrackEndEvent):
        session = self._session(event.player.guild_id)
        if not session:
            return
        track = self._match_track(session, event.track)
        if normalise_end_reason(event.reason) in ERROR_END_REASONS:
            self._spawn(self.bot.recovery.on_track_end(session, track, event.reason))
            return
        if track and session.state.lyrics and session.state.lyrics.title == track.title:
            self._spawn(self.bot.lyrics_streamer.stop(session, reason="track finished"))

    @lavalink.listener(QueueEndEvent)
    async def on_queue_end(self, event: QueueEndEvent):
        session = self._session(event.player.guild_id)
        if not session:
            return
        self._spawn(self._advance(session))

    async def _advance(self, session: Session) -> None:
        """The player ran dry; play the session's next track or start the idle timer."""
        if session.destroyed or self.bot.recovery.is_recovering(session):
            return
        async with session.state.lock:
            if await session.advance() is not None:
                return
        await self.bot.lyrics_streamer.stop(session, reason="queue emptied")
        await self.bot.idle.on_queue_empty(session)

    # ------------------------------------------------------------------ voice events
    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ):
        session = self._session(member.guild.id)
        if not session:
            return

        if self.bot.user and member.id == self.bot.user.id:
            if after.channel is not None:
                session.voice_channel_id = after.channel.id
                return
            if before.channel is None:
                return
            # The binding is gone; a running recovery rejoins via the requester's channel.
            session.voice_channel_id = None
            if not self.bot.recovery.is_recovering(session):
                logger.info("Disconnected from voice in guild %s; destroying session.", session.guild_id)
                self._spawn(self.bot.sessions.destroy(session.guild_id, reason="disconnected"))
            return

        channel = before.channel
        if channel is None or channel.id != session.voice_channel_id:
            return
        if after.channel is not None and after.channel.id == channel.id:
            return
        listeners = [m for m in channel.members if not m.bot]
        if not listeners:
            self._spawn(self.bot.idle.on_disconnected(session))


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(MusicEvents(bot))
