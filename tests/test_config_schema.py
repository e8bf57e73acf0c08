"""
Tests for configuration schema validation (encore/configs/schema.py).
Ensures default values, field validators and AppConfig parsing are correct.
"""

import pytest
from pydantic import ValidationError

from encore.configs.schema import (
    AppConfig,
    BotConfig,
    BotIntents,
    IdleConfig,
    LavalinkConfig,
    PlaybackConfig,
    RecoveryConfig,
    VoteSkipConfig,
)


# ─── LavalinkConfig ───────────────────────────────────────────────────────────

class TestLavalinkConfig:
    def test_default_port(self):
        cfg = LavalinkConfig()
        assert cfg.port == 2333

    def test_string_strip_validator(self):
        cfg = LavalinkConfig(host="  127.0.0.1  ", name="  main  ")
        assert cfg.host == "127.0.0.1"
        assert cfg.name == "main"


# ─── BotConfig ────────────────────────────────────────────────────────────────

class TestBotConfig:
    def test_default_intents(self):
        cfg = BotConfig()
        assert cfg.intents.members is False
        assert cfg.intents.message_content is False

    def test_custom_intents(self):
        cfg = BotConfig(intents=BotIntents(members=True))
        assert cfg.intents.members is True


# ─── PlaybackConfig ───────────────────────────────────────────────────────────

class TestPlaybackConfig:
    def test_defaults(self):
        cfg = PlaybackConfig()
        assert cfg.settle_seconds == 3.0
        assert cfg.max_attempts == 3
        assert cfg.default_volume == 80

    def test_volume_is_clamped(self):
        assert PlaybackConfig(default_volume=500).default_volume == 200
        assert PlaybackConfig(default_volume=-5).default_volume == 0


# ─── RecoveryConfig / IdleConfig ─────────────────────────────────────────────

class TestRecoveryAndIdle:
    def test_recovery_defaults(self):
        cfg = RecoveryConfig()
        assert cfg.max_attempts == 3
        assert cfg.flag_ceiling_seconds == 120.0

    def test_idle_defaults(self):
        cfg = IdleConfig()
        assert cfg.enabled is True
        assert cfg.disconnect_seconds == 60.0


# ─── VoteSkipConfig ──────────────────────────────────────────────────────────

class TestVoteSkipConfig:
    def test_default_ratio(self):
        assert VoteSkipConfig().ratio == 0.5

    def test_full_consensus_allowed(self):
        assert VoteSkipConfig(ratio=1.0).ratio == 1.0

    @pytest.mark.parametrize("ratio", [0, -0.2, 1.5])
    def test_out_of_range_rejected(self, ratio):
        with pytest.raises(ValidationError):
            VoteSkipConfig(ratio=ratio)


# ─── AppConfig ───────────────────────────────────────────────────────────────

class TestAppConfig:
    def test_empty_dict_uses_defaults(self):
        cfg = AppConfig(**{})
        assert cfg.idle.enabled is True
        assert cfg.lyrics.expiry_buffer_seconds == 5.0
        assert cfg.shuffle.min_changed_ratio == 0.7

    def test_nested_override_from_yaml_shape(self):
        cfg = AppConfig(**{"vote_skip": {"ratio": 0.75}, "idle": {"disconnect_seconds": 30}})
        assert cfg.vote_skip.ratio == 0.75
        assert cfg.idle.disconnect_seconds == 30.0
