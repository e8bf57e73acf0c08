"""
Tests for the MusicEvents cog (encore/events/music_events.py).
Lavalink events are plain mocks; the engine services behind them are real.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from encore.events.music_events import MusicEvents
from encore.services.idle_service import IdleTimerService
from encore.services.playback_service import PlaybackAttemptController
from encore.services.recovery_service import ErrorRecoveryService
from encore.services.session_service import RepeatMode
from fakes import FakeResolver, instant_sleep, make_track, settle

BOT_ID = 999


@pytest.fixture
def bot(registry, clock):
    controller = PlaybackAttemptController(sleep=instant_sleep)
    recovery = ErrorRecoveryService(registry, FakeResolver(), controller, sleep=clock.sleep, clock=clock)
    mock = MagicMock()
    mock.sessions = registry
    mock.recovery = recovery
    mock.idle = IdleTimerService(registry, recovery, delay=60, sleep=clock.sleep)
    mock.lyrics_streamer = AsyncMock()
    mock.user.id = BOT_ID
    return mock


@pytest.fixture
def cog(bot):
    return MusicEvents(bot)


def player_event(session, **attrs):
    event = MagicMock(**attrs)
    event.player.guild_id = session.guild_id
    return event


def voice_update(session, member_id, before_channel, after_channel):
    member = MagicMock()
    member.id = member_id
    member.guild.id = session.guild_id
    return member, MagicMock(channel=before_channel), MagicMock(channel=after_channel)


# ─── Queue end ────────────────────────────────────────────────────────────────

class TestQueueEnd:
    @pytest.mark.asyncio
    async def test_plays_next_pending_track(self, cog, bot, session, transport):
        session.current = make_track("done")
        session.enqueue(make_track("next"))

        await cog.on_queue_end(player_event(session))
        await settle()

        assert session.current.title == "next"
        assert bot.idle.has_pending(session) is False

    @pytest.mark.asyncio
    async def test_track_repeat_replays_finished_track(self, cog, session, transport):
        done = make_track("done")
        session.current = done
        session.repeat = RepeatMode.TRACK

        await cog.on_queue_end(player_event(session))
        await settle()

        assert transport.played == [done]
        assert session.current == done

    @pytest.mark.asyncio
    async def test_queue_repeat_cycles_back(self, cog, session, transport):
        session.current = make_track("a")
        session.enqueue(make_track("b"))
        session.repeat = RepeatMode.QUEUE

        await cog._advance(session)
        await cog._advance(session)

        assert [track.title for track in transport.played] == ["b", "a"]
        assert [track.title for track in session.pending] == ["b"]

    @pytest.mark.asyncio
    async def test_empty_queue_stops_lyrics_and_starts_idle_timer(self, cog, bot, session, sink):
        session.current = make_track("done")

        await cog._advance(session)

        assert session.current is None
        bot.lyrics_streamer.stop.assert_awaited_once_with(session, reason="queue emptied")
        assert bot.idle.has_pending(session) is True
        assert "Queue finished!" in sink.texts[-1]

    @pytest.mark.asyncio
    async def test_nothing_happens_while_a_walk_owns_the_queue(self, cog, bot, session, transport):
        session.current = make_track("trying")
        session.enqueue(make_track("next"))

        async with bot.recovery.in_flight(session):
            await cog._advance(session)

        assert transport.played == []
        assert bot.idle.has_pending(session) is False


# ─── Track exceptions ─────────────────────────────────────────────────────────

class TestTrackException:
    @pytest.mark.asyncio
    async def test_failure_text_is_kept_for_the_running_walk(self, cog, bot, session, sink):
        session.current = make_track("trying")

        async with bot.recovery.in_flight(session):
            await cog.on_track_exception(player_event(session, message="Could not find a playable format"))
            await settle()

        assert session.state.last_failure == "Could not find a playable format"
        assert sink.texts == []


# ─── Voice state ──────────────────────────────────────────────────────────────

class TestVoiceState:
    @pytest.mark.asyncio
    async def test_bot_move_updates_binding(self, cog, session):
        new_channel = MagicMock(id=77)
        await cog.on_voice_state_update(*voice_update(session, BOT_ID, MagicMock(id=20), new_channel))
        assert session.voice_channel_id == 77

    @pytest.mark.asyncio
    async def test_bot_disconnect_destroys_idle_session(self, cog, registry, session):
        await cog.on_voice_state_update(*voice_update(session, BOT_ID, MagicMock(id=20), None))
        await settle()
        assert registry.get(session.guild_id) is None

    @pytest.mark.asyncio
    async def test_bot_disconnect_during_recovery_keeps_requester_route(self, cog, bot, registry, session):
        session.requester_channel_id = 555

        async with bot.recovery.in_flight(session):
            await cog.on_voice_state_update(*voice_update(session, BOT_ID, MagicMock(id=20), None))
            await settle()

        assert registry.get(session.guild_id) is session
        assert session.voice_channel_id is None
        assert session.requester_channel_id == 555

    @pytest.mark.asyncio
    async def test_last_listener_leaving_tears_down(self, cog, registry, session):
        channel = MagicMock(id=20, members=[])
        await cog.on_voice_state_update(*voice_update(session, 1234, channel, None))
        await settle()
        assert registry.get(session.guild_id) is None
