"""Pytest configuration helpers."""

import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]

for _path in (ROOT, ROOT / "tests"):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))

# Ensure config bootstrap has the secrets it needs during CI/unit tests.
os.environ.setdefault("DISCORD_TOKEN", "TEST_TOKEN")
os.environ.setdefault("LAVALINK_HOST", "localhost")
os.environ.setdefault("LAVALINK_PORT", "2333")
os.environ.setdefault("LAVALINK_PASSWORD", "testing-token")

from encore.services.session_service import SessionRegistry  # noqa: E402
from fakes import FakeClock, FakeSink, FakeTransport  # noqa: E402


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def registry():
    return SessionRegistry(default_volume=80)


@pytest.fixture
def session(registry, transport, sink):
    created, _ = registry.get_or_create(1, transport, sink, text_channel_id=10, voice_channel_id=20)
    return created
