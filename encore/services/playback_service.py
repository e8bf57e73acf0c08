"""Start playback on the first candidate that actually plays."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional, Sequence

from encore.services.session_service import CandidateTrack, PlaybackState, Session
from encore.utils.exceptions import PlaybackError, PlaybackStartError, classify_playback_error

Sleep = Callable[[float], Awaitable[None]]
AttemptCallback = Callable[[int, CandidateTrack], Awaitable[None]]


@dataclass
class AttemptResult:
    """Outcome of walking a candidate list."""

    succeeded: bool
    track_played: Optional[CandidateTrack]
    attempts_used: int
    last_error: Optional[Exception] = None


class PlaybackAttemptController:
    """Walk candidates in order until one survives the settle window.

    The transport gives no synchronous success signal, so every ``play`` is
    followed by a fixed settle delay and a re-check of ``is_playing``.
    """

    def __init__(self, *, settle_seconds: float = 3.0, sleep: Sleep = asyncio.sleep) -> None:
        self.settle_seconds = settle_seconds
        self._sleep = sleep
        self.logger = logging.getLogger("Encore.Playback")

    async def attempt_play(
        self,
        session: Session,
        candidates: Sequence[CandidateTrack],
        max_attempts: int,
        *,
        failed_identities: Iterable[str] = (),
        on_attempt: Optional[AttemptCallback] = None,
    ) -> AttemptResult:
        """Try up to ``max_attempts`` of ``candidates`` on ``session``.

        ``failed_identities`` seeds the set of sources already known to be
        broken; candidates matching it are skipped without being played.
        """
        failed = set(failed_identities)
        limit = min(max(0, max_attempts), len(candidates))
        attempts = 0
        last_error: Optional[Exception] = None

        for index in range(limit):
            candidate = candidates[index]
            if candidate.identity in failed:
                self.logger.info(
                    "Skipping candidate %s for guild %s - same source as a failed track.",
                    index + 1,
                    session.guild_id,
                )
                continue
            attempts += 1
            if on_attempt:
                try:
                    await on_attempt(attempts, candidate)
                except Exception as exc:
                    self.logger.debug("Attempt callback failed: %s", exc)
            try:
                await self._start(session, candidate)
            except Exception as exc:
                last_error = exc if isinstance(exc, PlaybackError) else classify_playback_error(str(exc) or type(exc).__name__)
                failed.add(candidate.identity)
                self.logger.warning(
                    "Attempt %s for guild %s failed on '%s': %s",
                    attempts,
                    session.guild_id,
                    candidate.title,
                    last_error,
                )
                continue
            self.logger.info("Guild %s is playing '%s' after %s attempt(s).", session.guild_id, candidate.title, attempts)
            return AttemptResult(True, candidate, attempts, last_error)

        await self._reset(session)
        if last_error is None:
            last_error = PlaybackStartError("No playable candidates were found.")
        return AttemptResult(False, None, attempts, last_error)

    async def settled(self, session: Session) -> bool:
        """Wait out the settle window and report whether playback stuck."""
        await self._sleep(self.settle_seconds)
        return session.transport.is_playing()

    async def _start(self, session: Session, candidate: CandidateTrack) -> None:
        session.clear_pending()
        session.state.last_failure = None
        session.enqueue(candidate)
        await session.play_next()
        if await self.settled(session):
            return
        reason = session.state.last_failure
        if not reason:
            raise PlaybackStartError(f"'{candidate.title}' failed to start playing.")
        # Classify on the node's text only; titles often contain "format".
        kind = type(classify_playback_error(reason))
        raise kind(f"'{candidate.title}' failed to start playing: {reason}")

    async def _reset(self, session: Session) -> None:
        session.clear_pending()
        session.current = None
        session.playback_state = PlaybackState.IDLE
        try:
            if session.transport.is_playing():
                await session.transport.stop()
        except Exception as exc:
            self.logger.debug("Stopping transport after exhausted walk failed: %s", exc)
