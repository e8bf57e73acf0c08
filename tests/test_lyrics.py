"""
Tests for lyrics lookup and live streaming (encore/services/lyrics_service.py).
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from encore.services.lyrics_service import LyricsService, PolledLyricsSource, SyncedLyricsStreamer, line_index
from fakes import settle


class ManualSource:
    """Line source whose emissions are pushed by the test."""

    def __init__(self):
        self.listener = None
        self.unsubscribed = 0

    def subscribe(self, listener):
        self.listener = listener

        def unsubscribe():
            self.unsubscribed += 1

        return unsubscribe

    async def emit(self, timestamp, line):
        await self.listener(timestamp, line)


@pytest.fixture
def streamer(clock):
    return SyncedLyricsStreamer(buffer_seconds=5, sleep=clock.sleep)


@pytest.fixture
def source():
    return ManualSource()


async def start(streamer, session, source, sink, duration="3:00"):
    return await streamer.start(session, source, sink, title="Song", artist="Band", duration=duration)


# ─── Rendering ────────────────────────────────────────────────────────────────

class TestStreamerRendering:
    @pytest.mark.asyncio
    async def test_posts_placeholder_and_renders_lines(self, streamer, session, source, sink):
        await start(streamer, session, source, sink)
        assert sink.texts == ["🎵 | Lyrics will appear here as the song plays..."]

        await source.emit(12000, "la la")
        assert sink.edits == [("msg-1", "🎵 | [0:12.000]: la la")]

    @pytest.mark.asyncio
    async def test_duplicate_emission_is_not_rendered(self, streamer, session, source, sink):
        await start(streamer, session, source, sink)
        await source.emit(12000, "la la")
        await source.emit(12000, "la la")
        assert len(sink.edits) == 1

    @pytest.mark.asyncio
    async def test_new_line_after_duplicate_renders(self, streamer, session, source, sink):
        await start(streamer, session, source, sink)
        await source.emit(12000, "la la")
        await source.emit(12000, "la la")
        await source.emit(15250, "next line")
        assert [content for _, content in sink.edits] == [
            "🎵 | [0:12.000]: la la",
            "🎵 | [0:15.250]: next line",
        ]

    @pytest.mark.asyncio
    async def test_stale_target_is_replaced(self, streamer, session, source, sink):
        await start(streamer, session, source, sink)
        sink.stale.add("msg-1")

        await source.emit(1000, "first")
        assert sink.texts[-1] == "🎵 | [0:01.000]: first"

        await source.emit(2000, "second")
        assert sink.edits[-1] == ("msg-2", "🎵 | [0:02.000]: second")

    @pytest.mark.asyncio
    async def test_failed_replacement_is_non_fatal(self, streamer, session, source, sink):
        await start(streamer, session, source, sink)
        sink.stale.add("msg-1")
        sink.fail_sends = True
        await source.emit(1000, "first")
        assert session.state.lyrics is not None


# ─── Teardown ─────────────────────────────────────────────────────────────────

class TestStreamerTeardown:
    @pytest.mark.asyncio
    async def test_expiry_renders_complete(self, streamer, session, source, sink, clock):
        await start(streamer, session, source, sink, duration="3:00")
        await clock.advance(184)
        assert session.state.lyrics is not None

        await clock.advance(1)
        assert session.state.lyrics is None
        assert source.unsubscribed == 1
        assert sink.edits[-1] == ("msg-1", "🎵 | Lyrics complete for: **Song** by **Band**")

    @pytest.mark.asyncio
    async def test_expiry_accepts_hours_and_milliseconds(self, streamer, session, source, sink, clock):
        await start(streamer, session, source, sink, duration="1:00:00")
        await clock.advance(3604)
        assert session.state.lyrics is not None
        await clock.advance(1)
        assert session.state.lyrics is None

        await start(streamer, session, source, sink, duration=10_000)
        await clock.advance(15)
        assert session.state.lyrics is None

    @pytest.mark.asyncio
    async def test_unknown_duration_arms_no_expiry(self, streamer, session, source, sink, clock):
        await start(streamer, session, source, sink, duration="live")
        assert session.state.lyrics.expiry_task is None

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, streamer, session, source, sink):
        await start(streamer, session, source, sink)
        assert await streamer.stop(session, reason="skipped") is True
        assert await streamer.stop(session, reason="queue emptied") is False
        assert source.unsubscribed == 1
        ended = [content for _, content in sink.edits if "ended" in content]
        assert ended == ["🎵 | Lyrics ended for: **Song** by **Band**"]

    @pytest.mark.asyncio
    async def test_returned_handle_stops_feed(self, streamer, session, source, sink):
        stop = await start(streamer, session, source, sink)
        assert await stop() is True
        assert await stop() is False
        assert session.state.lyrics is None

    @pytest.mark.asyncio
    async def test_expiry_after_stop_is_noop(self, streamer, session, source, sink, clock):
        await start(streamer, session, source, sink)
        await streamer.stop(session)
        await clock.advance(200)
        assert not any("complete" in content for _, content in sink.edits)

    @pytest.mark.asyncio
    async def test_stop_swallows_render_errors(self, streamer, session, source, sink):
        await start(streamer, session, source, sink)
        sink.stale.add("msg-1")
        assert await streamer.stop(session) is True

    @pytest.mark.asyncio
    async def test_lines_after_stop_are_dropped(self, streamer, session, source, sink):
        await start(streamer, session, source, sink)
        await streamer.stop(session)
        edits = len(sink.edits)
        await source.emit(5000, "late")
        assert len(sink.edits) == edits

    @pytest.mark.asyncio
    async def test_restart_ends_previous_feed(self, streamer, session, sink):
        first, second = ManualSource(), ManualSource()
        await start(streamer, session, first, sink)
        await start(streamer, session, second, sink)
        assert first.unsubscribed == 1
        assert second.unsubscribed == 0
        assert session.state.lyrics.target == "msg-2"

    @pytest.mark.asyncio
    async def test_session_destroy_ends_feed(self, streamer, registry, session, source, sink):
        streamer.attach(registry)
        await start(streamer, session, source, sink)
        await registry.destroy(session.guild_id, reason="disconnected")
        assert source.unsubscribed == 1
        assert "ended" in sink.edits[-1][1]


# ─── Polled line source ───────────────────────────────────────────────────────

class TestPolledSource:
    LINES = [
        {"timestamp": 1000, "text": "one"},
        {"timestamp": 5000, "text": "two"},
    ]

    def test_line_index(self):
        assert line_index(self.LINES, 0) == -1
        assert line_index(self.LINES, 600) == 0
        assert line_index(self.LINES, 4999) == 1
        assert line_index(self.LINES, 99_999) == 1

    @pytest.mark.asyncio
    async def test_emits_current_line_each_tick(self, clock):
        position = {"ms": 0}
        seen = []

        async def listener(timestamp, line):
            seen.append((timestamp, line))

        source = PolledLyricsSource(self.LINES, lambda: position["ms"], interval=1.0, sleep=clock.sleep)
        unsubscribe = source.subscribe(listener)
        await settle()
        assert seen == []

        position["ms"] = 1200
        await clock.advance(1)
        position["ms"] = 2200
        await clock.advance(1)
        position["ms"] = 5100
        await clock.advance(1)
        assert seen == [(1000, "one"), (1000, "one"), (5000, "two")]

        unsubscribe()
        await settle()
        position["ms"] = 9000
        await clock.advance(1)
        assert len(seen) == 3

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_stop_polling(self, clock):
        calls = []

        async def listener(timestamp, line):
            calls.append(line)
            raise RuntimeError("render failed")

        source = PolledLyricsSource(self.LINES, lambda: 1000, interval=1.0, sleep=clock.sleep)
        unsubscribe = source.subscribe(listener)
        await settle()
        await clock.advance(1)
        assert calls == ["one", "one"]
        unsubscribe()


# ─── LRCLIB lookup ────────────────────────────────────────────────────────────

def http_returning(status, payload):
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=payload)
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)
    http = MagicMock()
    http.get = MagicMock(return_value=context)
    return http


class TestLyricsService:
    def test_parse_synced_orders_and_dedupes(self):
        content = "[00:15.50]second\n[00:12.00]first\n[00:12.00]dup\n\n[01:02]third"
        lines = LyricsService._parse_synced(content)
        assert lines == [
            {"timestamp": 12000, "text": "first"},
            {"timestamp": 15500, "text": "second"},
            {"timestamp": 62000, "text": "third"},
        ]

    def test_select_prefers_synced_then_closest_duration(self):
        service = LyricsService()
        results = [
            {"id": 1, "plainLyrics": "plain only", "duration": 200},
            {"id": 2, "syncedLyrics": "[00:01.00]a", "duration": 300},
            {"id": 3, "syncedLyrics": "[00:01.00]b", "duration": 201},
        ]
        assert service._select_candidate(results, 200_000)["id"] == 3

    def test_snippet_marks_current_line(self):
        service = LyricsService()
        payload = {
            "lines": [{"timestamp": 0, "text": "a"}, {"timestamp": 5000, "text": "b"}, {"timestamp": 9000, "text": "c"}],
            "provider_url": "https://lrclib.net/songs/3",
        }
        snippet = service.snippet(payload, 5200)
        assert snippet.splitlines()[:3] == ["• a", "▶ b", "• c"]
        assert snippet.endswith("[Full lyrics](https://lrclib.net/songs/3)")

    @pytest.mark.asyncio
    async def test_fetch_parses_and_caches(self):
        service = LyricsService()
        http = http_returning(200, [{"id": 9, "trackName": "Song", "artistName": "Band", "syncedLyrics": "[00:01.00]hi"}])
        service._client = AsyncMock(return_value=http)

        first = await service.fetch(title="Song", artist="Band")
        second = await service.fetch(title="Song", artist="Band")

        assert first["lines"] == [{"timestamp": 1000, "text": "hi"}]
        assert first["provider_url"] == "https://lrclib.net/songs/9"
        assert second is first
        assert http.get.call_count == 1

    @pytest.mark.asyncio
    async def test_fetch_falls_back_to_plain_lyrics(self):
        service = LyricsService()
        service._client = AsyncMock(return_value=http_returning(200, [{"id": 1, "plainLyrics": "words"}]))
        payload = await service.fetch(title="Song")
        assert payload["lines"] == []
        assert payload["plain"] == "words"

    @pytest.mark.asyncio
    async def test_fetch_http_error_returns_none(self):
        service = LyricsService()
        service._client = AsyncMock(return_value=http_returning(500, None))
        assert await service.fetch(title="Song") is None
