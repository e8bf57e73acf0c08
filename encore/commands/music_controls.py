from __future__ import annotations

import math
from typing import List, Optional, Tuple

import discord
from discord import app_commands
from discord.ext import commands

from encore.configs.settings import CONFIG
from encore.services.lavalink_service import LavalinkTransport
from encore.services.lyrics_service import PolledLyricsSource
from encore.services.output_service import ChannelSink
from encore.services.session_service import PlaybackState, RepeatMode, Session
from encore.services.vote_skip_service import SkipOutcomeKind
from encore.utils.embeds import EmbedFactory
from encore.utils.exceptions import ConsensusRejected, UserFacingError, VoiceConnectionError
from encore.utils.tracks import ms_to_clock

VOICE_PERMISSIONS = ("connect", "speak", "view_channel")
QUEUE_PAGE_SIZE = 10


class MusicControls(commands.Cog):
    """Slash commands for managing playback, volume and queue behaviour."""

    # pyright: reportMissingTypeStubs=false

    def __init__(self, bot: commands.Bot):
        self.bot = bot

    # ------------------------------------------------------------------ helpers
    @staticmethod
    def _member(inter: discord.Interaction) -> Optional[discord.Member]:
        if not inter.guild:
            return None
        if isinstance(inter.user, discord.Member):
            return inter.user
        return inter.guild.get_member(inter.user.id)

    @staticmethod
    def _permissions_summary(me: discord.Member, channel: discord.VoiceChannel) -> Tuple[bool, str]:
        perms = channel.permissions_for(me)
        missing = [name for name in VOICE_PERMISSIONS if not getattr(perms, name, False)]
        if missing:
            return False, "\n".join(f"• `{name}`" for name in missing)
        return True, "All voice permissions granted."

    def _require_guild(self, inter: discord.Interaction) -> discord.Guild:
        if not inter.guild:
            raise UserFacingError("This command can only be used inside a guild.")
        return inter.guild

    def _require_session(self, inter: discord.Interaction, *, playing: bool = False) -> Session:
        guild = self._require_guild(inter)
        session = self.bot.sessions.get(guild.id)
        if session is None:
            raise UserFacingError("No music is being played!")
        if playing and session.current is None:
            raise UserFacingError("No music is being played!")
        return session

    def _require_listener(self, inter: discord.Interaction) -> discord.Member:
        member = self._member(inter)
        if not member or not member.voice or not member.voice.channel:
            raise UserFacingError("You need to be in a voice channel to use this command!")
        return member

    async def _session_for(self, inter: discord.Interaction) -> Session:
        """Return the guild session, joining the caller's voice channel if needed."""
        guild = self._require_guild(inter)
        member = self._require_listener(inter)
        channel = member.voice.channel  # type: ignore[union-attr]

        me = guild.me or guild.get_member(self.bot.user.id)  # type: ignore[union-attr]
        if guild.voice_client is None:
            if not me:
                raise UserFacingError("Unable to determine my guild member object.")
            ok, summary = self._permissions_summary(me, channel)  # type: ignore[arg-type]
            if not ok:
                raise UserFacingError("Missing voice permissions:\n" + summary)

        await self.bot.lavalink_manager.ensure_ready()
        session, created = self.bot.sessions.get_or_create(
            guild.id,
            LavalinkTransport(self.bot, guild.id),
            ChannelSink(inter.channel),  # type: ignore[arg-type]
            text_channel_id=getattr(inter.channel, "id", None),
            voice_channel_id=getattr(getattr(guild.voice_client, "channel", None), "id", None),
        )
        # The bot's own binding only changes on connect or voice-state updates.
        session.requester_channel_id = channel.id
        if not session.transport.is_connected():
            try:
                await session.transport.connect(channel.id)
            except VoiceConnectionError:
                if created:
                    await self.bot.sessions.destroy(guild.id, reason="connect failed")
                raise
            session.voice_channel_id = channel.id
        player = self.bot.lavalink.player_manager.get(guild.id)
        if player is not None:
            player.text_channel_id = session.text_channel_id
        if created:
            await session.set_volume(session.volume)
        return session

    def _listeners_present(self, guild: discord.Guild, session: Session) -> int:
        channel = guild.get_channel(session.voice_channel_id) if session.voice_channel_id else None
        if channel is None:
            return 0
        return len([m for m in getattr(channel, "members", []) if not m.bot])

    @staticmethod
    def _is_privileged(member: discord.Member, session: Session) -> bool:
        perms = member.guild_permissions
        if perms.administrator or perms.manage_guild or perms.manage_channels:
            return True
        return bool(session.current and session.current.requester == member.id)

    @staticmethod
    def _progress_bar(position: int, duration: int, length: int = 24) -> str:
        if duration <= 0:
            return "🔴 LIVE"
        ratio = max(0.0, min(1.0, position / duration))
        filled = int(ratio * length)
        return "▬" * filled + "🔘" + "▬" * (length - filled - 1)

    # ------------------------------------------------------------------ commands
    @app_commands.command(name="play", description="Play a song or playlist from YouTube by search or URL.")
    @app_commands.describe(query="Search query or YouTube link.")
    async def play(self, inter: discord.Interaction, query: str):
        """Start playback, or queue the result when something is already playing."""
        await inter.response.defer()
        factory = EmbedFactory(inter.guild.id if inter.guild else None)
        session = await self._session_for(inter)
        result = await self.bot.requests.play(session, query, inter.user.id)

        track = result.track
        if result.started:
            embed = factory.track_card(
                title=track.title,
                author=track.author,
                duration=track.clock,
                url=track.uri or None,
                requester=inter.user.display_name,
                thumbnail=track.thumbnail,
            )
            embed.add_field(name="Status", value="`Playing now`", inline=True)
        else:
            embed = factory.success("Queued", f"**{track.title}** - `{track.author}`")
            embed.add_field(name="Position", value=f"`#{result.position}`", inline=True)
        if result.playlist:
            embed.add_field(
                name="Playlist",
                value=f"Added **{len(result.added)}** track(s) from **{result.playlist}**.",
                inline=False,
            )
        await inter.followup.send(embed=embed)

    @app_commands.command(name="skip", description="Skip the current track, or vote to skip it.")
    async def skip(self, inter: discord.Interaction):
        """Skip right away for moderators and requesters, otherwise cast a vote."""
        factory = EmbedFactory(inter.guild.id if inter.guild else None)
        session = self._require_session(inter, playing=True)
        member = self._require_listener(inter)
        current = session.current
        present = self._listeners_present(inter.guild, session)  # type: ignore[arg-type]

        outcome = await self.bot.vote_skip.request_skip(session, member.id, self._is_privileged(member, session), present)
        if outcome.kind is SkipOutcomeKind.ALREADY_VOTED:
            raise ConsensusRejected(f"You already voted to skip this track ({outcome.tally}, {outcome.needed} needed).")
        if outcome.kind is SkipOutcomeKind.RECORDED:
            embed = factory.primary("🗳️ Vote Recorded", f"Skip votes: **{outcome.votes}/{outcome.needed}**")
            embed.add_field(name="Still needed", value=f"`{outcome.remaining}`", inline=True)
            return await inter.response.send_message(embed=embed)

        await self.bot.lyrics_streamer.stop(session, reason="skipped")
        embed = factory.success("⏭️ Song Skipped", f"Skipped **{current.title if current else 'the current song'}**.")
        if current and current.thumbnail:
            embed.set_thumbnail(url=current.thumbnail)
        embed.add_field(name="Queue", value=f"`{len(session.pending)}` remaining", inline=True)
        await inter.response.send_message(embed=embed)
        if session.is_idle:
            await self.bot.idle.on_queue_empty(session)

    @app_commands.command(name="stop", description="Stop playback, clear the queue and leave the channel.")
    async def stop(self, inter: discord.Interaction):
        """Stop playback completely and tear the session down."""
        factory = EmbedFactory(inter.guild.id if inter.guild else None)
        guild = self._require_guild(inter)
        if not await self.bot.sessions.destroy(guild.id, reason="stopped"):
            raise UserFacingError("No music is being played!")
        await inter.response.send_message(embed=factory.success("⏹️ Stopped", "Playback ended and queue cleared."))

    @app_commands.command(name="pause", description="Pause playback.")
    async def pause(self, inter: discord.Interaction):
        """Pause the player."""
        factory = EmbedFactory(inter.guild.id if inter.guild else None)
        session = self._require_session(inter, playing=True)
        if session.playback_state is PlaybackState.PAUSED:
            return await inter.response.send_message(embed=factory.warning("Already paused."), ephemeral=True)
        if not await session.pause():
            raise UserFacingError("Could not pause playback.")
        embed = factory.primary("⏸️ Paused")
        embed.add_field(name="Track", value=f"**{session.current.title}**", inline=False)  # type: ignore[union-attr]
        await inter.response.send_message(embed=embed)

    @app_commands.command(name="resume", description="Resume playback.")
    async def resume(self, inter: discord.Interaction):
        """Resume the player if it is paused."""
        factory = EmbedFactory(inter.guild.id if inter.guild else None)
        session = self._require_session(inter, playing=True)
        if session.playback_state is not PlaybackState.PAUSED:
            return await inter.response.send_message(embed=factory.warning("Playback is not paused."), ephemeral=True)
        if not await session.resume():
            raise UserFacingError("Could not resume playback.")
        embed = factory.primary("▶️ Resumed")
        embed.add_field(name="Track", value=f"**{session.current.title}**", inline=False)  # type: ignore[union-attr]
        await inter.response.send_message(embed=embed)

    @app_commands.command(name="seek", description="Jump to a position in the current track.")
    @app_commands.describe(seconds="Position in seconds from the start of the track.")
    async def seek(self, inter: discord.Interaction, seconds: app_commands.Range[int, 0]):
        factory = EmbedFactory(inter.guild.id if inter.guild else None)
        session = self._require_session(inter, playing=True)
        await session.seek(seconds * 1000)
        await inter.response.send_message(
            embed=factory.primary("⏩ Seeked", f"Jumped to `{ms_to_clock(seconds * 1000)}` / `{session.current.clock}`")  # type: ignore[union-attr]
        )

    @app_commands.command(name="volume", description="Set playback volume (0-200%).")
    @app_commands.describe(level="Volume percentage between 0 and 200.")
    async def volume(self, inter: discord.Interaction, level: app_commands.Range[int, 0, 200]):
        """Adjust the playback volume."""
        factory = EmbedFactory(inter.guild.id if inter.guild else None)
        session = self._require_session(inter)
        if not await session.set_volume(level):
            raise UserFacingError("Could not change the volume.")
        await inter.response.send_message(embed=factory.primary("🔊 Volume", f"Set to **{level}%**"))

    @app_commands.command(name="shuffle", description="Shuffle the queued tracks.")
    async def shuffle(self, inter: discord.Interaction):
        factory = EmbedFactory(inter.guild.id if inter.guild else None)
        session = self._require_session(inter)
        changed = session.shuffle(
            min_changed_ratio=CONFIG.shuffle.min_changed_ratio,
            max_attempts=CONFIG.shuffle.max_attempts,
        )
        embed = factory.success("🔀 Queue Shuffled", f"Shuffled **{len(session.pending)}** track(s).")
        embed.add_field(name="Moved", value=f"`{round(changed * 100)}%` of the queue", inline=True)
        await inter.response.send_message(embed=embed)

    @app_commands.command(name="loop", description="Set loop mode for playback.")
    @app_commands.choices(
        mode=[
            app_commands.Choice(name="Off", value=RepeatMode.OFF.value),
            app_commands.Choice(name="🔂 Track", value=RepeatMode.TRACK.value),
            app_commands.Choice(name="🔁 Queue", value=RepeatMode.QUEUE.value),
        ]
    )
    async def loop(self, inter: discord.Interaction, mode: app_commands.Choice[str]):
        """Set the repeat mode applied when a track finishes."""
        factory = EmbedFactory(inter.guild.id if inter.guild else None)
        session = self._require_session(inter)
        session.repeat = RepeatMode(mode.value)
        await inter.response.send_message(
            embed=factory.success("🔁 Loop Mode Updated", f"Loop mode set to **{mode.name}**.")
        )

    @app_commands.command(name="queue", description="Show the current queue.")
    @app_commands.describe(page="Queue page to display.")
    async def queue(self, inter: discord.Interaction, page: app_commands.Range[int, 1] = 1):
        factory = EmbedFactory(inter.guild.id if inter.guild else None)
        session = self._require_session(inter)
        pages = max(1, math.ceil(len(session.pending) / QUEUE_PAGE_SIZE))
        page = min(page, pages)
        start = (page - 1) * QUEUE_PAGE_SIZE
        items: List[str] = [
            f"`{start + idx + 1}.` **{track.title}** - `{track.clock}`"
            for idx, track in enumerate(session.pending[start : start + QUEUE_PAGE_SIZE])
        ]
        embed = factory.queue_page(items=items, page=page, pages=pages)
        if session.current:
            embed.insert_field_at(0, name="Now Playing", value=f"**{session.current.title}** - `{session.current.clock}`", inline=False)
        await inter.response.send_message(embed=embed)

    @app_commands.command(name="remove", description="Remove a track from the queue.")
    @app_commands.describe(position="1-based position of the track in the queue.")
    async def remove(self, inter: discord.Interaction, position: app_commands.Range[int, 1]):
        factory = EmbedFactory(inter.guild.id if inter.guild else None)
        session = self._require_session(inter)
        removed = session.remove(position)
        if removed is None:
            raise UserFacingError(f"Invalid position! The queue has {len(session.pending)} track(s).")
        await inter.response.send_message(embed=factory.success("🗑️ Removed", f"Removed **{removed.title}** from the queue."))

    @app_commands.command(name="nowplaying", description="Show the currently playing track.")
    async def nowplaying(self, inter: discord.Interaction):
        factory = EmbedFactory(inter.guild.id if inter.guild else None)
        session = self._require_session(inter, playing=True)
        track = session.current
        position = session.transport.position()
        embed = factory.track_card(
            title=track.title,  # type: ignore[union-attr]
            author=track.author,  # type: ignore[union-attr]
            duration=track.clock,  # type: ignore[union-attr]
            url=track.uri or None,  # type: ignore[union-attr]
            thumbnail=track.thumbnail,  # type: ignore[union-attr]
        )
        embed.add_field(
            name="Progress",
            value=f"{self._progress_bar(position, track.duration)}\n`{ms_to_clock(position)} / {track.clock}`",  # type: ignore[union-attr]
            inline=False,
        )
        embed.add_field(name="Volume", value=f"`{session.volume}%`", inline=True)
        await inter.response.send_message(embed=embed)

    @app_commands.command(name="lyrics", description="Show lyrics for the current song or a search.")
    @app_commands.describe(search="Search for a specific song instead.", synced="Stream timed lyrics as the song plays.")
    async def lyrics(self, inter: discord.Interaction, search: Optional[str] = None, synced: bool = False):
        await inter.response.defer()
        factory = EmbedFactory(inter.guild.id if inter.guild else None)
        session = self.bot.sessions.get(inter.guild.id) if inter.guild else None
        current = session.current if session else None
        if not search and current is None:
            raise UserFacingError("No music is currently playing! Please provide a search query.")

        title = search or current.title  # type: ignore[union-attr]
        artist = None if search else current.author  # type: ignore[union-attr]
        payload = await self.bot.lyrics_service.fetch(
            title=title,
            artist=artist,
            duration_ms=None if search else current.duration,  # type: ignore[union-attr]
        )
        if not payload:
            raise UserFacingError(f"No lyrics found for: **{title}**")

        if synced and payload["lines"] and session is not None and current is not None and not search:
            source = PolledLyricsSource(
                payload["lines"],
                session.transport.position,
                interval=CONFIG.lyrics.poll_interval_seconds,
            )
            embed = factory.primary(f"Synced Lyrics: {payload['track']}", "🎵 | Waiting for lyrics...")
            embed.set_author(name=payload["artist"])
            embed.set_footer(text="Lyrics will appear as the song plays")
            await inter.followup.send(embed=embed)
            await self.bot.lyrics_streamer.start(
                session,
                source,
                session.sink,
                title=current.title,
                artist=current.author,
                duration=current.duration,
            )
            return

        position = session.transport.position() if session and not search else 0
        text = self.bot.lyrics_service.snippet(payload, position, window=6) if payload["lines"] else None
        text = text or (payload["plain"] or "")[:4000] or "Lyrics unavailable."
        embed = factory.primary(f"Lyrics: {payload['track']}", text)
        embed.set_author(name=payload["artist"])
        if payload.get("provider_url"):
            embed.url = payload["provider_url"]
        await inter.followup.send(embed=embed)


async def setup(bot: commands.Bot):
    await bot.add_cog(MusicControls(bot))
