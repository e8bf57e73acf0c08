"""Lyric lookup plus the live synced-lyrics feed rendered into a channel."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

import aiohttp

from encore.services.output_service import OutputSink
from encore.services.playback_service import Sleep
from encore.services.session_service import LyricsSubscription, Session, SessionRegistry
from encore.utils.exceptions import StaleHandleError
from encore.utils.tracks import format_lyric_timestamp, parse_duration

LRC_TAG_PATTERN = re.compile(r"\[(\d+):(\d+)(?:\.(\d+))?\]")

LineListener = Callable[[int, str], Awaitable[None]]


class LyricsService:
    """Fetch synced lyrics from LRCLIB and format snippets."""

    API_URL = "https://lrclib.net/api/search"

    def __init__(self, *, logger: Optional[logging.Logger] = None, cache_ttl: int = 3600):
        self.logger = logger or logging.getLogger("Encore.Lyrics")
        self.cache_ttl = cache_ttl
        self._cache: Dict[str, tuple[float, Optional[Dict[str, Any]]]] = {}
        self._session: Optional[aiohttp.ClientSession] = None

    # ------------------------------------------------------------------ lifecycle
    async def close(self) -> None:
        """Close the underlying HTTP session when the bot shuts down."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=6)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    # ------------------------------------------------------------------ cache helpers
    @staticmethod
    def _cache_key(title: str, artist: Optional[str]) -> str:
        safe_artist = (artist or "unknown").strip().lower()
        safe_title = (title or "unknown").strip().lower()
        return f"{safe_artist}::{safe_title}"

    def _cache_get(self, key: str) -> Optional[Dict[str, Any]]:
        cached = self._cache.get(key)
        if not cached:
            return None
        timestamp, payload = cached
        if time.monotonic() - timestamp > self.cache_ttl:
            self._cache.pop(key, None)
            return None
        return payload

    def _cache_set(self, key: str, payload: Optional[Dict[str, Any]]) -> None:
        self._cache[key] = (time.monotonic(), payload)

    # ------------------------------------------------------------------ lookup + parsing
    async def fetch(
        self,
        *,
        title: str,
        artist: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        """Fetch lyrics for the supplied title/artist pair.

        The payload carries parsed ``lines`` when synced lyrics exist and the
        ``plain`` text otherwise.
        """
        if not title:
            return None

        cache_key = self._cache_key(title, artist)
        cached = self._cache_get(cache_key)
        if cached is not None:
            return cached

        query = " ".join(filter(None, (title, artist))).strip()
        session = await self._client()
        try:
            async with session.get(self.API_URL, params={"q": query}) as resp:
                if resp.status != 200:
                    self.logger.debug("Lyrics lookup failed with HTTP %s for query '%s'", resp.status, query)
                    self._cache_set(cache_key, None)
                    return None
                payload = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.logger.debug("Lyrics lookup error for '%s': %s", query, exc)
            self._cache_set(cache_key, None)
            return None

        if not isinstance(payload, list) or not payload:
            self._cache_set(cache_key, None)
            return None

        candidate = self._select_candidate(payload, duration_ms)
        if not candidate:
            self._cache_set(cache_key, None)
            return None

        lines = self._parse_synced(candidate.get("syncedLyrics") or "")
        plain = candidate.get("plainLyrics") or None
        if not lines and not plain:
            self._cache_set(cache_key, None)
            return None

        result = {
            "source": "LRCLIB",
            "provider_url": f"https://lrclib.net/songs/{candidate.get('id')}" if candidate.get("id") else None,
            "track": candidate.get("trackName") or title,
            "artist": candidate.get("artistName") or artist or "Unknown Artist",
            "lines": lines,
            "plain": plain,
        }
        self._cache_set(cache_key, result)
        return result

    def _select_candidate(self, results: List[Dict[str, Any]], duration_ms: Optional[int]) -> Optional[Dict[str, Any]]:
        best: Optional[Dict[str, Any]] = None
        best_score = float("inf")
        for item in results:
            if not item.get("syncedLyrics") and not item.get("plainLyrics"):
                continue
            duration = item.get("duration")
            track_duration = None
            if isinstance(duration, (int, float, str)):
                try:
                    track_duration = int(float(duration) * 1000)
                except ValueError:
                    track_duration = None

            score = 0.0 if item.get("syncedLyrics") else 1_000_000.0
            if duration_ms and track_duration:
                score += abs(track_duration - duration_ms)
            if score < best_score:
                best = item
                best_score = score
        return best

    @staticmethod
    def _parse_synced(content: str) -> List[Dict[str, Any]]:
        if not content:
            return []
        parsed: List[Dict[str, Any]] = []
        for raw_line in content.splitlines():
            raw_line = raw_line.strip()
            if not raw_line:
                continue
            lyric_text = LRC_TAG_PATTERN.sub("", raw_line).strip()
            lyric_text = lyric_text or "♪"
            for match in LRC_TAG_PATTERN.finditer(raw_line):
                minutes = int(match.group(1))
                seconds = int(match.group(2))
                fraction = match.group(3) or "0"
                ms = (minutes * 60 + seconds) * 1000 + int(fraction.ljust(3, "0")[:3])
                parsed.append({"timestamp": ms, "text": lyric_text})
        parsed.sort(key=lambda item: item["timestamp"])

        # Deduplicate timestamps and drop empty payloads
        cleaned: List[Dict[str, Any]] = []
        seen_ts = set()
        for item in parsed:
            ts = item["timestamp"]
            if ts in seen_ts:
                continue
            seen_ts.add(ts)
            if item["text"].strip():
                cleaned.append(item)
        return cleaned

    # ------------------------------------------------------------------ formatting
    def snippet(self, payload: Dict[str, Any], position_ms: int, window: int = 1) -> Optional[str]:
        """Render a small lyrics window around ``position_ms``."""
        lines = payload.get("lines") or []
        if not lines:
            return None

        index = max(0, line_index(lines, position_ms))
        start = max(0, index - window)
        end = min(len(lines), index + window + 1)
        block: List[str] = []
        for offset in range(start, end):
            text = lines[offset]["text"].strip()
            if not text:
                continue
            prefix = "▶" if offset == index else "•"
            block.append(f"{prefix} {text}")

        if not block:
            return None

        snippet_text = "\n".join(block)
        provider_url = payload.get("provider_url")
        if provider_url:
            snippet_text = f"{snippet_text}\n[Full lyrics]({provider_url})"
        return snippet_text[:1024]


def line_index(lines: List[Dict[str, Any]], position_ms: int) -> int:
    """Index of the line sung at ``position_ms``; ``-1`` before the first one."""
    index = -1
    for idx, line in enumerate(lines):
        if position_ms + 500 >= line["timestamp"]:
            index = idx
        else:
            break
    return index


class LyricsSource(Protocol):
    def subscribe(self, listener: LineListener) -> Callable[[], None]:
        ...


class PolledLyricsSource:
    """Emit the line matching the player position on every tick."""

    def __init__(
        self,
        lines: List[Dict[str, Any]],
        position: Callable[[], int],
        *,
        interval: float = 1.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.lines = lines
        self._position = position
        self.interval = interval
        self._sleep = sleep
        self.logger = logging.getLogger("Encore.Lyrics")

    def subscribe(self, listener: LineListener) -> Callable[[], None]:
        task = asyncio.create_task(self._run(listener))

        def unsubscribe() -> None:
            if not task.done():
                task.cancel()

        return unsubscribe

    async def _run(self, listener: LineListener) -> None:
        try:
            while True:
                index = line_index(self.lines, self._position())
                if index >= 0:
                    line = self.lines[index]
                    try:
                        await listener(line["timestamp"], line["text"])
                    except Exception as exc:
                        self.logger.debug("Lyrics listener failed: %s", exc)
                await self._sleep(self.interval)
        except asyncio.CancelledError:
            pass


class SyncedLyricsStreamer:
    """Render live lyric lines for a guild until the track goes away."""

    def __init__(self, *, buffer_seconds: float = 5.0, sleep: Sleep = asyncio.sleep) -> None:
        self.buffer_seconds = buffer_seconds
        self._sleep = sleep
        self.logger = logging.getLogger("Encore.LyricsStream")

    def attach(self, registry: SessionRegistry) -> None:
        """End any live feed when its session is destroyed."""

        async def _on_destroy(session: Session, reason: str) -> None:
            await self.stop(session, reason=reason)

        registry.add_destroy_hook(_on_destroy)

    async def start(
        self,
        session: Session,
        source: LyricsSource,
        sink: OutputSink,
        *,
        title: str,
        artist: str,
        duration: Union[str, int, None] = None,
    ) -> Callable[[], Awaitable[bool]]:
        """Subscribe to ``source`` and return a coroutine function that stops the feed."""
        await self.stop(session, reason="replaced")
        subscription = LyricsSubscription(title=title, artist=artist)
        try:
            subscription.target = await sink.send("🎵 | Lyrics will appear here as the song plays...")
        except Exception as exc:
            self.logger.debug("Could not post lyrics placeholder: %s", exc)
        session.state.lyrics = subscription

        async def on_line(timestamp: int, line: str) -> None:
            await self._render_line(subscription, sink, timestamp, line)

        subscription.unsubscribe = source.subscribe(on_line)

        duration_ms = parse_duration(duration)
        if duration_ms > 0:
            delay = duration_ms / 1000 + self.buffer_seconds
            subscription.expiry_task = asyncio.create_task(self._expire(session, subscription, sink, delay))

        async def stop() -> bool:
            return await self._teardown(session, subscription, sink, "ended")

        return stop

    async def stop(self, session: Session, *, reason: str = "ended") -> bool:
        """Idempotently end the guild's lyrics feed."""
        subscription = session.state.lyrics
        if subscription is None:
            return False
        self.logger.debug("Stopping lyrics for guild %s (%s).", session.guild_id, reason)
        return await self._teardown(session, subscription, session.sink, "ended")

    async def _render_line(self, subscription: LyricsSubscription, sink: OutputSink, timestamp: int, line: str) -> None:
        if not subscription.active or not line:
            return
        if subscription.last_rendered == (timestamp, line):
            return
        subscription.last_rendered = (timestamp, line)
        content = f"🎵 | [{format_lyric_timestamp(timestamp)}]: {line}"
        try:
            await sink.edit(subscription.target, content)
        except StaleHandleError as exc:
            self.logger.debug("Lyrics message went stale (%s); posting a new one.", exc)
            try:
                subscription.target = await sink.send(content)
            except Exception as send_exc:
                self.logger.warning("Failed to send new lyrics message: %s", send_exc)

    async def _expire(self, session: Session, subscription: LyricsSubscription, sink: OutputSink, delay: float) -> None:
        try:
            await self._sleep(delay)
        except asyncio.CancelledError:
            return
        await self._teardown(session, subscription, sink, "complete")

    async def _teardown(self, session: Session, subscription: LyricsSubscription, sink: OutputSink, state: str) -> bool:
        if not subscription.active:
            return False
        subscription.active = False
        if session.state.lyrics is subscription:
            session.state.lyrics = None
        if subscription.unsubscribe:
            try:
                subscription.unsubscribe()
            except Exception as exc:
                self.logger.debug("Lyrics unsubscribe failed: %s", exc)
        task = subscription.expiry_task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
        try:
            await sink.edit(
                subscription.target,
                f"🎵 | Lyrics {state} for: **{subscription.title}** by **{subscription.artist}**",
            )
        except Exception as exc:
            self.logger.debug("Ignoring lyrics %s render failure: %s", state, exc)
        return True
