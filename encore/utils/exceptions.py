"""Custom exception types used across the bot."""

import re

FORMAT_MISMATCH_PATTERN = re.compile(
    r"(format|decod|codec|no supported|unsupported|could not find a playable|invalid data)",
    re.IGNORECASE,
)


class UserFacingError(Exception):
    """Errors that should be presented to users as embeds."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ResolutionError(UserFacingError):
    """The resolver returned no candidates or the search backend failed."""


class PlaybackError(UserFacingError):
    """Base class for failures raised while starting or sustaining playback."""


class PlaybackStartError(PlaybackError):
    """The transport rejected a track or silently failed to start it."""


class FormatMismatchError(PlaybackStartError):
    """The selected stream cannot be decoded by the audio node."""


class VoiceConnectionError(UserFacingError):
    """The voice endpoint is unreachable or the binding was lost."""


class ConsensusRejected(UserFacingError):
    """A member tried to vote twice for the same track."""


class StaleHandleError(Exception):
    """A previously sent message can no longer be edited."""


def classify_playback_error(message: str) -> PlaybackError:
    """Map raw transport error text onto the playback error taxonomy."""
    text = (message or "").strip() or "Unknown playback error"
    if FORMAT_MISMATCH_PATTERN.search(text):
        return FormatMismatchError(text)
    return PlaybackStartError(text)
