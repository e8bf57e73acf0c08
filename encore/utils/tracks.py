"""Helpers for working with track metadata and user queries."""

from __future__ import annotations

import re
from typing import Optional, Union

URL_REGEX = re.compile(r"https?://", re.IGNORECASE)
YOUTUBE_REGEX = re.compile(r"(youtube\.com|youtu\.be)", re.IGNORECASE)
VIDEO_ID_REGEX = re.compile(r"^.*((youtu.be/)|(v/)|(/u/\w/)|(embed/)|(watch\?))\??v?=?([^#&?]*).*")
TITLE_NOISE = (
    re.compile(r"\(.*?\)"),
    re.compile(r"\[.*?\]"),
    re.compile(r"【.*?】"),
    re.compile(r"「.*?」"),
    re.compile(r"\b(official|music video|audio|lyrics|full|mv)\b", re.IGNORECASE),
)
UNSUPPORTED_PLATFORMS = (
    ("spotify.com", "Spotify"),
    ("music.apple.com", "Apple Music"),
    ("apple.com/music", "Apple Music"),
    ("soundcloud.com", "SoundCloud"),
    ("deezer.com", "Deezer"),
    ("tidal.com", "Tidal"),
)


def ms_to_clock(ms: int) -> str:
    """Convert milliseconds into a human readable duration string."""
    seconds = max(0, int(ms // 1000))
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours:d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:d}:{secs:02d}"


def parse_duration(value: Union[str, int, float, None]) -> int:
    """Return ``value`` in milliseconds.

    Accepts integer milliseconds or ``MM:SS`` / ``HH:MM:SS`` strings. Anything
    unparsable yields ``0``.
    """
    if value is None:
        return 0
    if isinstance(value, (int, float)):
        return max(0, int(value))
    parts = value.strip().split(":")
    try:
        numbers = [int(part) for part in parts]
    except ValueError:
        return 0
    if len(numbers) == 2:
        minutes, seconds = numbers
        return (minutes * 60 + seconds) * 1000
    if len(numbers) == 3:
        hours, minutes, seconds = numbers
        return (hours * 3600 + minutes * 60 + seconds) * 1000
    return 0


def format_lyric_timestamp(ms: int) -> str:
    """Render ``ms`` as ``M:SS.mmm`` for lyric lines."""
    total_seconds = int(ms) // 1000
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes}:{seconds:02d}.{int(ms) % 1000:03d}"


def is_url(query: str) -> bool:
    return bool(URL_REGEX.search(query or ""))


def is_youtube_link(query: str) -> bool:
    return bool(YOUTUBE_REGEX.search(query or ""))


def unsupported_platform(query: str) -> Optional[str]:
    """Return a platform label when ``query`` links outside of YouTube."""
    lowered = (query or "").lower()
    for needle, label in UNSUPPORTED_PLATFORMS:
        if needle in lowered:
            return label
    if is_url(lowered) and not is_youtube_link(lowered):
        return "This"
    return None


def extract_video_id(url: str) -> Optional[str]:
    """Pull the 11 character video id out of a YouTube link."""
    match = VIDEO_ID_REGEX.match(url or "")
    if match and len(match.group(7)) == 11:
        return match.group(7)
    return None


def simplify_title(title: str) -> str:
    """Strip bracketed tags and upload noise so a title searches cleanly."""
    simplified = title or ""
    for pattern in TITLE_NOISE:
        simplified = pattern.sub("", simplified)
    return " ".join(simplified.split())
