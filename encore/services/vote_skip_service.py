"""Member consensus for skipping the current track."""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from encore.services.session_service import Session, VoteSession


class SkipOutcomeKind(str, Enum):
    IMMEDIATE = "immediate"
    RECORDED = "recorded"
    ALREADY_VOTED = "already_voted"


@dataclass
class SkipOutcome:
    kind: SkipOutcomeKind
    votes: int
    needed: int
    present: int

    @property
    def remaining(self) -> int:
        return max(0, self.needed - self.votes)

    @property
    def tally(self) -> str:
        return f"{self.votes}/{self.present}"


class VoteSkipService:
    """Collect skip votes per guild, keyed to the track being voted on."""

    def __init__(self, *, ratio: float = 0.5, clock: Callable[[], float] = time.monotonic) -> None:
        self.ratio = ratio
        self._clock = clock
        self.logger = logging.getLogger("Encore.VoteSkip")

    def votes_needed(self, present: int) -> int:
        # A vote always needs at least one ballot, even in an empty channel.
        return max(1, math.ceil(present * self.ratio))

    def reset(self, session: Session) -> None:
        session.state.vote = None

    def current_votes(self, session: Session) -> Optional[VoteSession]:
        vote = session.state.vote
        if vote and session.current and vote.track_identity != session.current.identity:
            return None
        return vote

    async def request_skip(
        self,
        session: Session,
        voter_id: int,
        is_privileged: bool,
        present: int,
    ) -> SkipOutcome:
        """Record ``voter_id``'s vote and skip once the threshold is met."""
        async with session.state.lock:
            if is_privileged or present <= 1:
                self.reset(session)
                await session.skip()
                return SkipOutcome(SkipOutcomeKind.IMMEDIATE, votes=1, needed=1, present=present)

            identity = session.current.identity if session.current else None
            vote = session.state.vote
            if vote is None or vote.track_identity != identity:
                if vote is not None:
                    self.logger.debug("Track changed in guild %s; resetting skip votes.", session.guild_id)
                vote = VoteSession(track_identity=identity, started_at=self._clock())
                session.state.vote = vote

            needed = self.votes_needed(present)
            if voter_id in vote.voters:
                return SkipOutcome(SkipOutcomeKind.ALREADY_VOTED, votes=len(vote.voters), needed=needed, present=present)

            vote.voters.add(voter_id)
            votes = len(vote.voters)
            if votes >= needed:
                self.reset(session)
                await session.skip()
                self.logger.info("Vote skip passed in guild %s (%s/%s).", session.guild_id, votes, present)
                return SkipOutcome(SkipOutcomeKind.IMMEDIATE, votes=votes, needed=needed, present=present)
            return SkipOutcome(SkipOutcomeKind.RECORDED, votes=votes, needed=needed, present=present)
