"""Search adapter turning Lavalink load results into candidate tracks."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol

import lavalink

from encore.services.session_service import CandidateTrack
from encore.utils.exceptions import ResolutionError
from encore.utils.tracks import is_url


@dataclass
class SearchResult:
    """Ordered candidates returned for a query."""

    tracks: List[CandidateTrack] = field(default_factory=list)
    playlist: Optional[str] = None


class Resolver(Protocol):
    async def search(
        self,
        query: str,
        *,
        requested_by: Optional[int] = None,
        search_engine: Optional[str] = None,
    ) -> SearchResult:
        ...


def candidate_from_track(track: Any, requester: Optional[int] = None) -> CandidateTrack:
    """Freeze a Lavalink ``AudioTrack`` into a ``CandidateTrack``."""
    return CandidateTrack(
        title=getattr(track, "title", None) or "Unknown Title",
        uri=getattr(track, "uri", None) or "",
        duration=int(getattr(track, "duration", 0) or 0),
        requester=requester if requester is not None else getattr(track, "requester", None),
        thumbnail=getattr(track, "artwork_url", None),
        author=getattr(track, "author", None) or "Unknown Artist",
        identifier=getattr(track, "identifier", None),
        handle=track,
    )


class TrackResolver:
    """Resolve free-text queries and links through the Lavalink node."""

    def __init__(self, client: lavalink.Client, *, search_engine: str = "ytsearch", timeout: float = 8.0) -> None:
        self.client = client
        self.search_engine = search_engine
        self.timeout = timeout
        self.logger = logging.getLogger("Encore.Resolver")

    def _build_query(self, query: str, search_engine: Optional[str]) -> str:
        query = query.strip()
        if is_url(query):
            return query
        return f"{search_engine or self.search_engine}:{query}"

    async def search(
        self,
        query: str,
        *,
        requested_by: Optional[int] = None,
        search_engine: Optional[str] = None,
    ) -> SearchResult:
        """Return candidates for ``query`` or raise ``ResolutionError``."""
        if not query or not query.strip():
            raise ResolutionError("Empty search query.")
        lookup = self._build_query(query, search_engine)
        try:
            result = await asyncio.wait_for(self.client.get_tracks(lookup), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise ResolutionError(f"Search timed out for `{query}`.") from exc
        except Exception as exc:
            self.logger.warning("Lavalink search failed for '%s': %s", lookup, exc)
            raise ResolutionError(f"Search backend failed: {exc}") from exc

        if result is None or result.load_type == lavalink.LoadType.ERROR:
            error = getattr(result, "error", None)
            message = getattr(error, "message", None) or "unknown error"
            raise ResolutionError(f"Search backend failed: {message}")

        tracks = [candidate_from_track(track, requested_by) for track in (result.tracks or [])]
        if not tracks:
            raise ResolutionError(f"No results found for `{query}`!")

        playlist = None
        if result.load_type == lavalink.LoadType.PLAYLIST:
            playlist = getattr(getattr(result, "playlist_info", None), "name", None) or "Playlist"
        self.logger.debug("Resolved '%s' into %s candidate(s).", lookup, len(tracks))
        return SearchResult(tracks=tracks, playlist=playlist)
