"""
Tests for PlaybackAttemptController (encore/services/playback_service.py).
Walks candidate lists against a fake transport with an instant settle window.
"""

import pytest

from encore.services.playback_service import PlaybackAttemptController
from encore.services.session_service import PlaybackState
from encore.utils.exceptions import FormatMismatchError, PlaybackStartError
from fakes import instant_sleep, make_track


@pytest.fixture
def controller():
    return PlaybackAttemptController(settle_seconds=3.0, sleep=instant_sleep)


# ─── Success paths ────────────────────────────────────────────────────────────

class TestAttemptSuccess:
    @pytest.mark.asyncio
    async def test_first_candidate_plays(self, controller, session, transport):
        first, second = make_track("a"), make_track("b")
        result = await controller.attempt_play(session, [first, second], 3)
        assert result.succeeded is True
        assert result.track_played == first
        assert result.attempts_used == 1
        assert transport.played == [first]
        assert session.current == first
        assert session.playback_state is PlaybackState.PLAYING

    @pytest.mark.asyncio
    async def test_silent_failure_moves_to_next_candidate(self, controller, session, transport):
        candidates = [make_track("one"), make_track("two"), make_track("three")]
        transport.silent.add(candidates[0].identity)
        result = await controller.attempt_play(session, candidates, 3)
        assert result.succeeded is True
        assert result.attempts_used == 2
        assert result.track_played == candidates[1]
        assert isinstance(result.last_error, PlaybackStartError)

    @pytest.mark.asyncio
    async def test_transport_exception_is_wrapped(self, controller, session, transport):
        candidates = [make_track("broken"), make_track("fine")]
        transport.rejected.add(candidates[0].identity)
        result = await controller.attempt_play(session, candidates, 3)
        assert result.track_played == candidates[1]
        assert isinstance(result.last_error, PlaybackStartError)
        assert "rejected" in result.last_error.message

    @pytest.mark.asyncio
    async def test_pending_list_holds_only_the_candidate(self, controller, session):
        session.enqueue(make_track("stale-1"), make_track("stale-2"))
        await controller.attempt_play(session, [make_track("fresh")], 1)
        assert session.pending == []
        assert session.current.title == "fresh"

    @pytest.mark.asyncio
    async def test_settle_delay_is_configurable(self, session):
        delays = []

        async def recording_sleep(delay):
            delays.append(delay)

        controller = PlaybackAttemptController(settle_seconds=1.5, sleep=recording_sleep)
        await controller.attempt_play(session, [make_track("a")], 1)
        assert delays == [1.5]


# ─── Exhaustion and skipping ──────────────────────────────────────────────────

class TestAttemptExhaustion:
    @pytest.mark.asyncio
    async def test_all_candidates_fail(self, controller, session, transport):
        candidates = [make_track("x"), make_track("y")]
        transport.silent.update(track.identity for track in candidates)
        result = await controller.attempt_play(session, candidates, 3)
        assert result.succeeded is False
        assert result.track_played is None
        assert result.attempts_used == 2
        assert isinstance(result.last_error, PlaybackStartError)
        assert session.current is None
        assert session.playback_state is PlaybackState.IDLE

    @pytest.mark.asyncio
    async def test_max_attempts_bounds_the_walk(self, controller, session, transport):
        candidates = [make_track(str(i)) for i in range(5)]
        transport.silent.update(track.identity for track in candidates)
        result = await controller.attempt_play(session, candidates, 3)
        assert result.attempts_used == 3
        assert len(transport.played) == 3

    @pytest.mark.asyncio
    async def test_empty_candidate_list(self, controller, session, transport):
        result = await controller.attempt_play(session, [], 3)
        assert result.succeeded is False
        assert result.attempts_used == 0
        assert transport.played == []

    @pytest.mark.asyncio
    async def test_never_replays_identity_that_failed_in_walk(self, controller, session, transport):
        bad = make_track("bad")
        duplicate = make_track("bad-mirror", uri=bad.uri)
        good = make_track("good")
        transport.silent.add(bad.identity)
        result = await controller.attempt_play(session, [bad, duplicate, good], 3)
        assert result.track_played == good
        assert duplicate not in transport.played
        assert [track.identity for track in transport.played].count(bad.identity) == 1
        assert result.attempts_used == 2

    @pytest.mark.asyncio
    async def test_seeded_failed_identities_are_skipped(self, controller, session, transport):
        known_bad = make_track("known-bad")
        other = make_track("other")
        result = await controller.attempt_play(
            session, [known_bad, other], 3, failed_identities={known_bad.identity}
        )
        assert transport.played == [other]
        assert result.attempts_used == 1

    @pytest.mark.asyncio
    async def test_attempt_callback_receives_numbering(self, controller, session, transport):
        seen = []

        async def on_attempt(number, candidate):
            seen.append((number, candidate.title))

        candidates = [make_track("first"), make_track("second")]
        transport.silent.add(candidates[0].identity)
        await controller.attempt_play(session, candidates, 3, on_attempt=on_attempt)
        assert seen == [(1, "first"), (2, "second")]


# ─── Failure classification ───────────────────────────────────────────────────

class TestFailureClassification:
    @pytest.mark.asyncio
    async def test_node_report_marks_format_failures(self, session, transport):
        async def settle_with_report(_delay):
            session.state.last_failure = "Could not find a playable format"

        controller = PlaybackAttemptController(sleep=settle_with_report)
        track = make_track("Formation")
        transport.silent.add(track.identity)

        result = await controller.attempt_play(session, [track], 1)

        assert isinstance(result.last_error, FormatMismatchError)
        assert "'Formation' failed to start playing" in result.last_error.message

    @pytest.mark.asyncio
    async def test_title_alone_never_implies_format_failure(self, controller, session, transport):
        track = make_track("Formation")
        transport.silent.add(track.identity)

        result = await controller.attempt_play(session, [track], 1)

        assert not isinstance(result.last_error, FormatMismatchError)

    @pytest.mark.asyncio
    async def test_transport_format_errors_are_classified(self, controller, session, transport):
        track = make_track("song")
        transport.errors[track.identity] = "Unsupported audio codec"

        result = await controller.attempt_play(session, [track], 1)

        assert isinstance(result.last_error, FormatMismatchError)
