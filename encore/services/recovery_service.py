"""Automatic fallback after playback failures that no user asked for."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional, Set, Union

from encore.services.playback_service import PlaybackAttemptController, Sleep
from encore.services.resolver_service import Resolver
from encore.services.session_service import CandidateTrack, RecoveryState, Session, SessionRegistry
from encore.utils.exceptions import (
    FORMAT_MISMATCH_PATTERN,
    FormatMismatchError,
    PlaybackStartError,
    ResolutionError,
    VoiceConnectionError,
    classify_playback_error,
)
from encore.utils.tracks import simplify_title

ERROR_END_REASONS = {"LOAD_FAILED", "LOADFAILED", "ERROR"}


class RecoveryOrigin(str, Enum):
    AMBIENT = "ambient"
    PLAY_REQUEST = "play_request"


class RecoveryOutcome(str, Enum):
    IGNORED = "ignored"
    RECOVERED = "recovered"
    # Session kept so the next manual request can reuse it.
    EXHAUSTED = "exhausted"
    # Session destroyed because the failure belonged to a fresh play request.
    ABANDONED = "abandoned"


def normalise_end_reason(reason: object) -> str:
    raw = getattr(reason, "value", reason)
    return str(raw or "").replace("-", "_").upper()


class ErrorRecoveryService:
    """Drive a session from a playback failure back to healthy playback.

    Only one recovery may run per guild. The in-flight flag is also what the
    idle timer checks before scheduling a disconnect, so it is set before the
    first await and cleared on every exit path, with a hard ceiling as a
    safety net.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        resolver: Resolver,
        controller: PlaybackAttemptController,
        *,
        max_attempts: int = 3,
        flag_ceiling: float = 120.0,
        search_engine: str = "ytsearch",
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.resolver = resolver
        self.controller = controller
        self.max_attempts = max_attempts
        self.flag_ceiling = flag_ceiling
        self.search_engine = search_engine
        self._sleep = sleep
        self._clock = clock
        self.on_exhausted: Optional[Callable[[Session], Awaitable[None]]] = None
        self.logger = logging.getLogger("Encore.Recovery")

    # ------------------------------------------------------------------ in-flight flag
    def is_recovering(self, session: Session) -> bool:
        state = session.state
        if not state.fallback_active:
            return False
        started = state.fallback_started_at
        if started is not None and self._clock() - started >= self.flag_ceiling:
            self.logger.warning("Fallback flag for guild %s exceeded %.0fs; clearing it.", session.guild_id, self.flag_ceiling)
            self._clear(session, state.fallback_generation)
            return False
        return True

    def _begin(self, session: Session) -> int:
        state = session.state
        state.fallback_generation += 1
        generation = state.fallback_generation
        state.fallback_active = True
        state.fallback_started_at = self._clock()
        if state.fallback_guard and not state.fallback_guard.done():
            state.fallback_guard.cancel()
        state.fallback_guard = asyncio.create_task(self._ceiling(session, generation))
        return generation

    def _clear(self, session: Session, generation: int) -> None:
        state = session.state
        if state.fallback_generation != generation:
            return
        state.fallback_active = False
        state.fallback_started_at = None
        guard = state.fallback_guard
        state.fallback_guard = None
        if guard and not guard.done() and guard is not asyncio.current_task():
            guard.cancel()

    async def _ceiling(self, session: Session, generation: int) -> None:
        try:
            await self._sleep(self.flag_ceiling)
        except asyncio.CancelledError:
            return
        if session.state.fallback_active and session.state.fallback_generation == generation:
            self.logger.warning("Force-clearing stuck fallback flag for guild %s.", session.guild_id)
            self._clear(session, generation)

    @contextlib.asynccontextmanager
    async def in_flight(self, session: Session) -> AsyncIterator[int]:
        """Hold the fallback flag while a user-requested attempt walk runs."""
        generation = self._begin(session)
        try:
            yield generation
        finally:
            self._clear(session, generation)

    # ------------------------------------------------------------------ triggers
    async def on_playback_error(self, session: Session, error: Union[Exception, str]) -> RecoveryOutcome:
        if isinstance(error, str):
            error = classify_playback_error(error)
        return await self.recover(session, session.current, error)

    async def on_track_end(self, session: Session, track: Optional[CandidateTrack], reason: object) -> RecoveryOutcome:
        if normalise_end_reason(reason) not in ERROR_END_REASONS:
            return RecoveryOutcome.IGNORED
        return await self.recover(session, track or session.current, PlaybackStartError("Track ended with an error"))

    async def on_resolution_error(
        self, session: Session, track: Optional[CandidateTrack], error: ResolutionError
    ) -> RecoveryOutcome:
        if not FORMAT_MISMATCH_PATTERN.search(error.message):
            return RecoveryOutcome.IGNORED
        return await self.recover(session, track, FormatMismatchError(error.message))

    # ------------------------------------------------------------------ state machine
    async def recover(
        self,
        session: Session,
        failed_track: Optional[CandidateTrack],
        error: Exception,
        *,
        origin: RecoveryOrigin = RecoveryOrigin.AMBIENT,
        known_failed: Iterable[str] = (),
    ) -> RecoveryOutcome:
        """Replace ``failed_track`` with an alternative found by title.

        The pending list is parked for the whole run, and tracks users queue
        meanwhile land behind it. Both return to the queue on every exit.
        """
        if session.destroyed:
            return RecoveryOutcome.IGNORED
        if failed_track is None:
            await session.notify(f"❌ | An error occurred: {error}")
            return RecoveryOutcome.IGNORED
        if self.is_recovering(session):
            self.logger.info("Recovery already running for guild %s; ignoring %s.", session.guild_id, type(error).__name__)
            return RecoveryOutcome.IGNORED

        generation = self._begin(session)
        session.state.recovery = RecoveryState.RECOVERING
        session.hold_backlog()
        failed = {failed_track.identity, *known_failed}
        self.logger.info("Recovery triggered for guild %s on '%s': %s", session.guild_id, failed_track.title, error)
        try:
            outcome = await self._run(session, failed_track, error, origin, failed)
        except Exception as exc:
            self.logger.exception("Recovery for guild %s crashed", session.guild_id)
            await session.notify(f"❌ | Fallback system error: {exc}")
            outcome = await self._exhaust(session, origin)
        finally:
            self._clear(session, generation)
            session.release_backlog()

        if outcome is RecoveryOutcome.EXHAUSTED:
            await self._continue_after_exhaustion(session)
        return outcome

    async def _run(
        self,
        session: Session,
        failed_track: CandidateTrack,
        error: Exception,
        origin: RecoveryOrigin,
        failed: Set[str],
    ) -> RecoveryOutcome:
        await session.notify(f"❌ | {error}. Starting fallback system...")
        try:
            await self._restore_connection(session)
        except VoiceConnectionError as exc:
            await session.notify(f"❌ | {exc.message}")
            return await self._exhaust(session, origin)
        await self._halt(session)

        if isinstance(error, FormatMismatchError):
            replacement = await self._immediate_replace(session, failed_track, failed)
            if replacement:
                return await self._recovered(session, replacement)

        try:
            results = await self.resolver.search(
                failed_track.title,
                requested_by=failed_track.requester,
                search_engine=self.search_engine,
            )
        except ResolutionError as exc:
            self.logger.info("No alternatives for '%s' in guild %s: %s", failed_track.title, session.guild_id, exc)
            await session.notify(f'❌ | Could not find any alternatives for "{failed_track.title}"')
            return await self._exhaust(session, origin)

        async def announce(attempt: int, candidate: CandidateTrack) -> None:
            await session.notify(f'🔄 | Fallback attempt {attempt}: Trying "{candidate.title}"...')

        result = await self.controller.attempt_play(
            session,
            results.tracks,
            self.max_attempts,
            failed_identities=failed,
            on_attempt=announce,
        )
        if result.succeeded and result.track_played:
            return await self._recovered(session, result.track_played)
        await session.notify(f"❌ | All fallback attempts failed after trying {result.attempts_used} alternatives.")
        return await self._exhaust(session, origin)

    async def _restore_connection(self, session: Session) -> None:
        transport = session.transport
        if transport.is_connected():
            return
        target = session.voice_channel_id or session.requester_channel_id
        if not target:
            raise VoiceConnectionError("Cannot reconnect to voice channel - no destination available")
        try:
            await transport.connect(target)
        except Exception as exc:
            raise VoiceConnectionError(f"Could not rejoin voice channel: {exc}") from exc
        session.voice_channel_id = target
        self.logger.info("Rejoined voice channel %s for guild %s.", target, session.guild_id)

    async def _halt(self, session: Session) -> None:
        try:
            if session.transport.is_playing():
                await session.transport.stop()
        except Exception as exc:
            self.logger.debug("Stopping broken playback for guild %s failed: %s", session.guild_id, exc)

    async def _immediate_replace(
        self, session: Session, failed_track: CandidateTrack, failed: Set[str]
    ) -> Optional[CandidateTrack]:
        """One-shot swap to the first simplified-title result."""
        query = simplify_title(failed_track.title) or failed_track.title
        await session.notify(f'⚠️ | Playback error - trying simplified search: "{query}"')
        try:
            results = await self.resolver.search(query, requested_by=failed_track.requester, search_engine=self.search_engine)
        except ResolutionError:
            return None
        candidate = next((track for track in results.tracks if track.identity not in failed), None)
        if candidate is None:
            return None
        try:
            session.clear_pending()
            session.enqueue(candidate)
            await session.play_next()
            if await self.controller.settled(session):
                return candidate
        except Exception as exc:
            self.logger.warning("Immediate replace failed for guild %s: %s", session.guild_id, exc)
        return None

    async def _recovered(self, session: Session, track: CandidateTrack) -> RecoveryOutcome:
        session.state.recovery = RecoveryState.HEALTHY
        await session.notify(f"✅ | Fallback succeeded! Now playing: **{track.title}**")
        return RecoveryOutcome.RECOVERED

    async def _exhaust(self, session: Session, origin: RecoveryOrigin) -> RecoveryOutcome:
        session.state.recovery = RecoveryState.EXHAUSTED
        if origin is RecoveryOrigin.PLAY_REQUEST:
            await self.registry.destroy(session.guild_id, reason="recovery exhausted")
            return RecoveryOutcome.ABANDONED
        return RecoveryOutcome.EXHAUSTED

    async def _continue_after_exhaustion(self, session: Session) -> None:
        if session.destroyed:
            return
        try:
            if session.pending:
                await session.play_next()
            elif self.on_exhausted:
                await self.on_exhausted(session)
        except Exception as exc:
            self.logger.warning("Could not resume queue after recovery for guild %s: %s", session.guild_id, exc)
