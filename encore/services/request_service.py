"""User play requests: resolve, try candidates, queue the rest."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from encore.services.idle_service import IdleTimerService
from encore.services.playback_service import AttemptResult, PlaybackAttemptController
from encore.services.recovery_service import ErrorRecoveryService, RecoveryOrigin, RecoveryOutcome
from encore.services.resolver_service import Resolver, SearchResult
from encore.services.session_service import CandidateTrack, Session, SessionRegistry
from encore.utils.exceptions import FormatMismatchError, PlaybackStartError, ResolutionError, UserFacingError
from encore.utils.tracks import extract_video_id, is_youtube_link, unsupported_platform

YOUTUBE_WATCH_URL = "https://www.youtube.com/watch?v={}"


@dataclass
class PlayResult:
    """What a play request did to the session."""

    track: CandidateTrack
    started: bool
    position: Optional[int] = None
    added: List[CandidateTrack] = field(default_factory=list)
    playlist: Optional[str] = None
    attempts: int = 0


class PlayRequestService:
    """Turn a ``/play`` query into playback or queued tracks."""

    def __init__(
        self,
        registry: SessionRegistry,
        resolver: Resolver,
        controller: PlaybackAttemptController,
        recovery: ErrorRecoveryService,
        idle: IdleTimerService,
        *,
        max_attempts: int = 3,
        search_engine: str = "ytsearch",
    ) -> None:
        self.registry = registry
        self.resolver = resolver
        self.controller = controller
        self.recovery = recovery
        self.idle = idle
        self.max_attempts = max_attempts
        self.search_engine = search_engine
        self.logger = logging.getLogger("Encore.Requests")

    async def resolve(self, query: str, requester: Optional[int] = None) -> SearchResult:
        """Search for ``query``, enforcing the YouTube-only source policy."""
        query = (query or "").strip()
        platform = unsupported_platform(query)
        if platform:
            raise UserFacingError(
                f"{platform} links are not supported. Please use YouTube links or search terms instead."
            )
        try:
            return await self.resolver.search(query, requested_by=requester, search_engine=self.search_engine)
        except ResolutionError:
            video_id = extract_video_id(query) if is_youtube_link(query) else None
            if not video_id:
                raise
            canonical = YOUTUBE_WATCH_URL.format(video_id)
            self.logger.info("Retrying unresolved link as %s", canonical)
            return await self.resolver.search(canonical, requested_by=requester, search_engine=self.search_engine)

    async def play(self, session: Session, query: str, requester: Optional[int] = None) -> PlayResult:
        """Resolve ``query`` and start or queue it on ``session``.

        A request that cannot start any candidate destroys the session and
        raises ``PlaybackStartError``. While another walk owns the queue the
        selection is parked and joins the queue once that walk ends.
        """
        results = await self.resolve(query, requester)
        tracks = results.tracks

        walking = self.recovery.is_recovering(session)
        if walking or session.current is not None:
            selected = tracks if results.playlist else tracks[:1]
            position = session.defer(*selected) if walking else session.enqueue(*selected)
            self.idle.on_track_added(session)
            return PlayResult(track=selected[0], started=False, position=position, added=selected, playlist=results.playlist)

        self.idle.on_track_added(session)
        session.hold_backlog()
        try:
            async with self.recovery.in_flight(session):
                attempt = await self.controller.attempt_play(session, tracks, self.max_attempts)
                attempts = attempt.attempts_used
                format_failure = not attempt.succeeded and isinstance(attempt.last_error, FormatMismatchError)
                if not attempt.succeeded and not format_failure and is_youtube_link(query):
                    attempt = await self._retry_by_title(session, tracks, requester)
                    attempts += attempt.attempts_used
            if format_failure:
                attempt = await self._recover_format(session, tracks, attempt)

            if not attempt.succeeded or attempt.track_played is None:
                reason = attempt.last_error or PlaybackStartError("No playable candidates were found.")
                self.logger.warning("Play request in guild %s failed after %s attempt(s): %s", session.guild_id, attempts, reason)
                await self.registry.destroy(session.guild_id, reason="play request failed")
                raise PlaybackStartError(f"Failed to play track after {attempts} attempts: {reason}")

            played = attempt.track_played
            added = [played]
            if results.playlist:
                # Tracks before the one that played were all tried and failed.
                index = next((idx for idx, track in enumerate(tracks) if track.identity == played.identity), None)
                rest = tracks[index + 1 :] if index is not None else tracks[self.max_attempts :]
                session.enqueue(*rest)
                added.extend(rest)
        finally:
            session.release_backlog()
        return PlayResult(track=played, started=True, added=added, playlist=results.playlist, attempts=attempts)

    async def _recover_format(self, session: Session, tracks: List[CandidateTrack], attempt: AttemptResult) -> AttemptResult:
        """Hand an undecodable request to the fallback engine as a play-request failure."""
        outcome = await self.recovery.recover(
            session,
            tracks[0],
            attempt.last_error,
            origin=RecoveryOrigin.PLAY_REQUEST,
            known_failed={track.identity for track in tracks[: self.max_attempts]},
        )
        if outcome is RecoveryOutcome.RECOVERED and session.current is not None:
            return AttemptResult(True, session.current, attempt.attempts_used, attempt.last_error)
        return attempt

    async def _retry_by_title(
        self, session: Session, tried: List[CandidateTrack], requester: Optional[int]
    ) -> AttemptResult:
        title = tried[0].title
        await session.notify(f'🔄 | Link failed to play, searching for "{title}" instead...')
        failed = {track.identity for track in tried[: self.max_attempts]}
        try:
            results = await self.resolver.search(title, requested_by=requester, search_engine=self.search_engine)
        except ResolutionError as exc:
            self.logger.info("Title search after failed link returned nothing: %s", exc)
            return await self.controller.attempt_play(session, [], 0)
        return await self.controller.attempt_play(session, results.tracks, self.max_attempts, failed_identities=failed)
