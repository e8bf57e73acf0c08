"""Configuration loader for Encore.

This module centralises configuration concerns: it loads ``config.yml``,
overrides with environment variables (``.env``) and exposes globally accessible
objects the rest of the code base can rely on.
"""

import os
from pathlib import Path
from typing import Dict

import yaml
from dotenv import find_dotenv, load_dotenv

from .schema import AppConfig, IdleConfig, LavalinkConfig, PlaybackConfig, VoteSkipConfig

# Resolve env file precedence: .env.local (dev), .env.production (prod), then .env
_base_dir = Path(__file__).resolve().parents[2]
_env_files = [".env.local", ".env.production", ".env"]
_loaded = False
for _candidate in _env_files:
    _path = _base_dir / _candidate
    if _path.exists():
        load_dotenv(_path)
        _loaded = True
        break
if not _loaded:
    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path)


def _load_yaml(path: str) -> Dict:
    """Load a YAML config file, returning an empty dict if it is missing or blank."""
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle)
        return data or {}


_raw = _load_yaml(os.getenv("CONFIG_PATH", "config.yml"))
CONFIG = AppConfig(**_raw)

# .env overrides for Lavalink (if provided)
host = os.getenv("LAVALINK_HOST")
port = os.getenv("LAVALINK_PORT")
pwd = os.getenv("LAVALINK_PASSWORD")
https = os.getenv("LAVALINK_HTTPS")
name = os.getenv("LAVALINK_NAME")
region = os.getenv("LAVALINK_REGION")
if host or port or pwd or https or name or region:
    CONFIG.lavalink = LavalinkConfig(
        host=host or CONFIG.lavalink.host,
        port=int(port) if port else CONFIG.lavalink.port,
        password=pwd or CONFIG.lavalink.password,
        https=(https.lower() == "true") if isinstance(https, str) else CONFIG.lavalink.https,
        name=name or CONFIG.lavalink.name,
        region=region or CONFIG.lavalink.region,
    )

settle = os.getenv("PLAYBACK_SETTLE_SECONDS")
default_volume = os.getenv("PLAYBACK_DEFAULT_VOLUME")
if settle or default_volume:
    CONFIG.playback = PlaybackConfig(
        **{
            **CONFIG.playback.model_dump(),
            "settle_seconds": float(settle) if settle else CONFIG.playback.settle_seconds,
            "default_volume": int(default_volume) if default_volume else CONFIG.playback.default_volume,
        }
    )

idle_enabled = os.getenv("IDLE_DISCONNECT_ENABLED")
idle_seconds = os.getenv("IDLE_DISCONNECT_SECONDS")
if idle_enabled or idle_seconds:
    CONFIG.idle = IdleConfig(
        enabled=(idle_enabled.lower() == "true") if isinstance(idle_enabled, str) else CONFIG.idle.enabled,
        disconnect_seconds=float(idle_seconds) if idle_seconds else CONFIG.idle.disconnect_seconds,
    )

vote_ratio = os.getenv("VOTE_SKIP_RATIO")
if vote_ratio:
    CONFIG.vote_skip = VoteSkipConfig(ratio=float(vote_ratio))

_discord_token = os.getenv("DISCORD_TOKEN")
if not _discord_token:
    raise RuntimeError("DISCORD_TOKEN missing in .env")
DISCORD_TOKEN: str = _discord_token
