"""Per-guild playback sessions and the registry that owns them."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple

from encore.services.output_service import OutputSink
from encore.utils.exceptions import UserFacingError
from encore.utils.tracks import ms_to_clock

DestroyHook = Callable[["Session", str], Awaitable[None]]


class PlaybackState(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"


class RepeatMode(str, Enum):
    OFF = "off"
    TRACK = "track"
    QUEUE = "queue"


class RecoveryState(str, Enum):
    HEALTHY = "healthy"
    RECOVERING = "recovering"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class CandidateTrack:
    """A resolver result that can be handed to the transport."""

    title: str
    uri: str
    duration: int
    requester: Optional[int] = None
    thumbnail: Optional[str] = None
    author: str = "Unknown Artist"
    identifier: Optional[str] = None
    handle: Any = field(default=None, compare=False, repr=False)

    @property
    def identity(self) -> str:
        """Source identity used to recognise the same stream across searches."""
        return self.uri or self.identifier or self.title

    @property
    def clock(self) -> str:
        return ms_to_clock(self.duration)


class Transport(Protocol):
    """Audio primitive bound to one guild's voice endpoint."""

    async def connect(self, channel_id: int) -> None:
        ...

    async def play(self, track: CandidateTrack) -> None:
        ...

    async def stop(self) -> None:
        ...

    def is_playing(self) -> bool:
        ...

    def is_connected(self) -> bool:
        ...

    def position(self) -> int:
        ...

    async def pause(self) -> bool:
        ...

    async def resume(self) -> bool:
        ...

    async def seek(self, position_ms: int) -> None:
        ...

    async def set_volume(self, volume: int) -> bool:
        ...

    async def disconnect(self) -> None:
        ...


@dataclass
class VoteSession:
    """Skip votes collected for a single track."""

    track_identity: Optional[str]
    voters: Set[int] = field(default_factory=set)
    started_at: float = field(default_factory=time.monotonic)


@dataclass
class LyricsSubscription:
    """Live lyrics feed currently rendering into a guild channel."""

    title: str
    artist: str
    target: Any = None
    last_rendered: Optional[Tuple[int, str]] = None
    unsubscribe: Optional[Callable[[], None]] = None
    expiry_task: Optional["asyncio.Task[None]"] = None
    active: bool = True


@dataclass
class GuildState:
    """Mutable coordination state for one guild, owned by its session."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    recovery: RecoveryState = RecoveryState.HEALTHY
    fallback_active: bool = False
    fallback_generation: int = 0
    fallback_started_at: Optional[float] = None
    fallback_guard: Optional["asyncio.Task[None]"] = None
    idle_task: Optional["asyncio.Task[None]"] = None
    vote: Optional[VoteSession] = None
    lyrics: Optional[LyricsSubscription] = None
    # Tracks parked while an attempt walk owns the queue.
    deferred: List[CandidateTrack] = field(default_factory=list)
    # Failure text reported by the node for the track being started.
    last_failure: Optional[str] = None


def _cancel(task: Optional["asyncio.Task[Any]"]) -> None:
    if task and not task.done() and task is not asyncio.current_task():
        task.cancel()


class Session:
    """Queue, current track and voice binding of one guild."""

    def __init__(
        self,
        guild_id: int,
        transport: Transport,
        sink: OutputSink,
        *,
        text_channel_id: Optional[int] = None,
        voice_channel_id: Optional[int] = None,
        volume: int = 80,
    ) -> None:
        self.guild_id = guild_id
        self.transport = transport
        self.sink = sink
        self.text_channel_id = text_channel_id
        self.voice_channel_id = voice_channel_id
        self.requester_channel_id: Optional[int] = None
        self.volume = volume
        self.current: Optional[CandidateTrack] = None
        self.pending: List[CandidateTrack] = []
        self.playback_state = PlaybackState.IDLE
        self.repeat = RepeatMode.OFF
        self.state = GuildState()
        self.destroyed = False
        self.logger = logging.getLogger("Encore.Session")

    def __repr__(self) -> str:
        return f"<Session guild={self.guild_id} state={self.playback_state.value} pending={len(self.pending)}>"

    @property
    def is_idle(self) -> bool:
        return self.current is None and not self.pending

    # ------------------------------------------------------------------ queue
    def enqueue(self, *tracks: CandidateTrack) -> int:
        """Append ``tracks`` and return the 1-based position of the first one."""
        position = len(self.pending) + 1
        self.pending.extend(tracks)
        return position

    def clear_pending(self) -> None:
        self.pending.clear()

    def hold_backlog(self) -> None:
        """Park the pending list while an attempt walk reuses the queue."""
        self.state.deferred[:0] = self.pending
        self.pending.clear()

    def defer(self, *tracks: CandidateTrack) -> int:
        """Queue ``tracks`` behind the parked backlog; returns their future position."""
        position = len(self.pending) + len(self.state.deferred) + 1
        self.state.deferred.extend(tracks)
        return position

    def release_backlog(self) -> int:
        """Move parked tracks back onto the pending list."""
        held, self.state.deferred = self.state.deferred, []
        if self.destroyed:
            return 0
        self.pending.extend(held)
        return len(held)

    def remove(self, position: int) -> Optional[CandidateTrack]:
        """Remove the track at 1-based ``position`` from the pending list."""
        if position < 1 or position > len(self.pending):
            return None
        return self.pending.pop(position - 1)

    def shuffle(self, *, min_changed_ratio: float = 0.7, max_attempts: int = 3, rng: Optional[random.Random] = None) -> float:
        """Shuffle the pending list, retrying while the order barely changed.

        Returns the fraction of positions that changed in the kept order.
        """
        if len(self.pending) < 2:
            raise UserFacingError("Need at least 2 songs in the queue to shuffle!")
        rng = rng or random.Random()
        original = [track.identity for track in self.pending]
        changed = 0.0
        for attempt in range(1, max(1, max_attempts) + 1):
            rng.shuffle(self.pending)
            moved = sum(1 for before, track in zip(original, self.pending) if before != track.identity)
            changed = moved / len(original)
            if changed >= min_changed_ratio:
                break
            self.logger.debug(
                "Shuffle attempt %s for guild %s only moved %.0f%% of tracks.", attempt, self.guild_id, changed * 100
            )
        return changed

    # ------------------------------------------------------------------ transport
    async def play_next(self) -> Optional[CandidateTrack]:
        """Pop the next pending track and hand it to the transport."""
        if not self.pending:
            self.current = None
            self.playback_state = PlaybackState.IDLE
            return None
        track = self.pending.pop(0)
        self.current = track
        self.playback_state = PlaybackState.PLAYING
        await self.transport.play(track)
        return track

    async def advance(self) -> Optional[CandidateTrack]:
        """The current track finished; pick the next one honouring the repeat mode."""
        finished = self.current
        if finished is not None:
            if self.repeat is RepeatMode.TRACK:
                self.pending.insert(0, finished)
            elif self.repeat is RepeatMode.QUEUE:
                self.pending.append(finished)
        return await self.play_next()

    async def skip(self) -> Optional[CandidateTrack]:
        """Drop the current track and move on; returns the skipped track."""
        skipped = self.current
        if skipped is not None and self.repeat is RepeatMode.QUEUE:
            self.pending.append(skipped)
        if self.pending:
            await self.play_next()
        else:
            await self.transport.stop()
            self.current = None
            self.playback_state = PlaybackState.IDLE
        return skipped

    async def pause(self) -> bool:
        if self.playback_state is not PlaybackState.PLAYING:
            return False
        paused = await self.transport.pause()
        if paused:
            self.playback_state = PlaybackState.PAUSED
        return paused

    async def resume(self) -> bool:
        if self.playback_state is not PlaybackState.PAUSED:
            return False
        resumed = await self.transport.resume()
        if resumed:
            self.playback_state = PlaybackState.PLAYING
        return resumed

    async def seek(self, position_ms: int) -> None:
        if self.current is None:
            raise UserFacingError("No track is currently loaded!")
        if position_ms < 0 or position_ms > self.current.duration:
            raise UserFacingError(
                f"Cannot seek beyond the song's duration ({self.current.clock}). "
                "Please provide a time in seconds within the track."
            )
        await self.transport.seek(position_ms)

    async def set_volume(self, volume: int) -> bool:
        if volume < 0 or volume > 200:
            return False
        applied = await self.transport.set_volume(volume)
        if applied:
            self.volume = volume
        return applied

    async def notify(self, content: Optional[str] = None, *, embed: Any = None) -> Any:
        """Send a status message; sink failures are logged, never raised."""
        try:
            return await self.sink.send(content, embed=embed)
        except Exception as exc:
            self.logger.warning("Failed to send message for guild %s: %s", self.guild_id, exc)
            return None


class SessionRegistry:
    """Map guild ids to their single live session."""

    def __init__(self, *, default_volume: int = 80) -> None:
        self.default_volume = default_volume
        self._sessions: Dict[int, Session] = {}
        self._destroy_hooks: List[DestroyHook] = []
        self.logger = logging.getLogger("Encore.Sessions")

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, guild_id: int) -> bool:
        return guild_id in self._sessions

    def get(self, guild_id: int) -> Optional[Session]:
        return self._sessions.get(guild_id)

    def get_or_create(
        self,
        guild_id: int,
        transport: Transport,
        sink: OutputSink,
        *,
        text_channel_id: Optional[int] = None,
        voice_channel_id: Optional[int] = None,
    ) -> Tuple[Session, bool]:
        """Return the guild's session, creating it on first use."""
        existing = self._sessions.get(guild_id)
        if existing:
            return existing, False
        session = Session(
            guild_id,
            transport,
            sink,
            text_channel_id=text_channel_id,
            voice_channel_id=voice_channel_id,
            volume=self.default_volume,
        )
        self._sessions[guild_id] = session
        self.logger.info("Created playback session for guild %s.", guild_id)
        return session, True

    def add_destroy_hook(self, hook: DestroyHook) -> None:
        """Register a coroutine run for every session right before teardown."""
        self._destroy_hooks.append(hook)

    async def destroy(self, guild_id: int, *, reason: str = "stopped", disconnect: bool = True) -> bool:
        """Tear down the guild's session; returns ``False`` if none was live."""
        session = self._sessions.pop(guild_id, None)
        if session is None:
            return False
        session.destroyed = True
        state = session.state
        _cancel(state.idle_task)
        _cancel(state.fallback_guard)
        state.idle_task = None
        state.fallback_guard = None
        state.fallback_active = False
        state.vote = None

        for hook in self._destroy_hooks:
            try:
                await hook(session, reason)
            except Exception:
                self.logger.exception("Destroy hook failed for guild %s", guild_id)

        session.pending.clear()
        state.deferred.clear()
        session.current = None
        session.playback_state = PlaybackState.IDLE
        if disconnect:
            try:
                await session.transport.stop()
                await session.transport.disconnect()
            except Exception as exc:
                self.logger.warning("Error disconnecting transport for guild %s: %s", guild_id, exc)
        self.logger.info("Destroyed playback session for guild %s (%s).", guild_id, reason)
        return True

    async def close(self) -> None:
        for guild_id in list(self._sessions):
            await self.destroy(guild_id, reason="shutdown")
