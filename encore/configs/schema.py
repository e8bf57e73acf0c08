"""Typed configuration models used throughout the project."""

from typing import List, Optional

from pydantic import BaseModel, field_validator


class LavalinkConfig(BaseModel):
    """Connection settings for the Lavalink node."""

    host: str = "127.0.0.1"
    port: int = 2333
    password: str = "youshallnotpass"
    https: bool = False
    name: str = "main"
    region: str = "us"

    @field_validator("host", "password", "name", "region", mode="before")
    @classmethod
    def _strip_strings(cls, value: str):
        """Ensure configuration strings do not accidentally contain whitespace."""
        if isinstance(value, str):
            return value.strip()
        return value


class BotIntents(BaseModel):
    """Discord gateway intent toggles."""

    members: bool = False
    message_content: bool = False


class BotConfig(BaseModel):
    """Runtime behaviour toggles for the bot."""

    intents: BotIntents = BotIntents()
    sync_commands_on_start: bool = True


class ThemeConfig(BaseModel):
    """Branding information applied to embeds."""

    color_primary: int = 0x0099FF
    color_success: int = 0x00FF00
    color_warning: int = 0xFEE75C
    color_error: int = 0xFF0000
    footer_text: str = "Encore"
    footer_icon_url: Optional[str] = None


class PlaybackConfig(BaseModel):
    """Playback attempt tuning for user requests."""

    default_volume: int = 80
    settle_seconds: float = 3.0
    max_attempts: int = 3
    search_engine: str = "ytsearch"
    allowed_hosts: List[str] = ["youtube.com", "youtu.be"]

    @field_validator("default_volume")
    @classmethod
    def _clamp_volume(cls, value: int) -> int:
        return max(0, min(200, int(value)))


class RecoveryConfig(BaseModel):
    """Automatic fallback behaviour after playback failures."""

    max_attempts: int = 3
    flag_ceiling_seconds: float = 120.0
    search_engine: str = "ytsearch"


class IdleConfig(BaseModel):
    """Idle-disconnect timer settings."""

    enabled: bool = True
    disconnect_seconds: float = 60.0


class VoteSkipConfig(BaseModel):
    """Consensus settings for member skip votes."""

    ratio: float = 0.5

    @field_validator("ratio")
    @classmethod
    def _bound_ratio(cls, value: float) -> float:
        if value <= 0 or value > 1:
            raise ValueError("vote skip ratio must be within (0, 1]")
        return value


class LyricsConfig(BaseModel):
    """Synced lyrics streaming settings."""

    expiry_buffer_seconds: float = 5.0
    poll_interval_seconds: float = 1.0
    cache_ttl_seconds: int = 3600


class ShuffleConfig(BaseModel):
    """Shuffle retry heuristic; only a tuning knob, not a guarantee."""

    min_changed_ratio: float = 0.7
    max_attempts: int = 3


class AppConfig(BaseModel):
    """Root configuration container loaded from ``config.yml`` and ``.env``."""

    bot: BotConfig = BotConfig()
    theme: ThemeConfig = ThemeConfig()
    lavalink: LavalinkConfig = LavalinkConfig()
    playback: PlaybackConfig = PlaybackConfig()
    recovery: RecoveryConfig = RecoveryConfig()
    idle: IdleConfig = IdleConfig()
    vote_skip: VoteSkipConfig = VoteSkipConfig()
    lyrics: LyricsConfig = LyricsConfig()
    shuffle: ShuffleConfig = ShuffleConfig()
