"""Abstractions for managing Lavalink connectivity and Discord voice sessions."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from aiohttp import ClientConnectorError, ContentTypeError
import discord
import lavalink
from lavalink.errors import AuthenticationError

from encore.configs.schema import LavalinkConfig
from encore.services.session_service import CandidateTrack
from encore.utils.exceptions import PlaybackStartError, VoiceConnectionError


class EncorePlayer(lavalink.DefaultPlayer):
    """Lavalink player that remembers where to post status messages."""

    __slots__ = ("text_channel_id",)

    def __init__(self, guild_id: int, client: lavalink.Client) -> None:
        super().__init__(guild_id, client)
        self.text_channel_id: int | None = None


class LavalinkVoiceClient(discord.VoiceProtocol):
    """Voice protocol bridging discord.py voice state with Lavalink."""

    def __init__(self, client: discord.Client, channel: discord.abc.Connectable) -> None:
        self.client = client
        self.channel = channel
        self.guild_id = channel.guild.id
        self._destroyed = False
        self.logger = logging.getLogger("Encore.LavalinkVoice")

        if not hasattr(self.client, "lavalink"):
            raise RuntimeError("Lavalink client has not been initialised.")

        self.lavalink: lavalink.Client[EncorePlayer] = self.client.lavalink

    async def connect(
        self,
        *,
        timeout: float,
        reconnect: bool,
        self_deaf: bool = False,
        self_mute: bool = False,
    ) -> None:
        """Create or reuse a player and join the voice channel."""
        self.lavalink.player_manager.create(self.guild_id)
        await self.channel.guild.change_voice_state(
            channel=self.channel, self_deaf=self_deaf, self_mute=self_mute
        )

    async def on_voice_server_update(self, data: dict[str, Any]) -> None:
        payload = {
            "t": "VOICE_SERVER_UPDATE",
            "d": data,
        }
        await self.lavalink.voice_update_handler(payload)

    async def on_voice_state_update(self, data: dict[str, Any]) -> None:
        channel_id = data.get("channel_id")

        if not channel_id:
            await self._destroy()
            return

        self.channel = self.client.get_channel(int(channel_id))  # type: ignore[assignment]

        payload = {
            "t": "VOICE_STATE_UPDATE",
            "d": data,
        }
        await self.lavalink.voice_update_handler(payload)

    async def disconnect(self, *, force: bool = False) -> None:
        player = self.lavalink.player_manager.get(self.guild_id)

        if not force and (player is None or not player.is_connected):
            return

        await self.channel.guild.change_voice_state(channel=None)
        if player is not None:
            player.channel_id = None
        await self._destroy()

    async def _destroy(self) -> None:
        self.cleanup()

        if self._destroyed:
            return

        self._destroyed = True
        try:
            await self.lavalink.player_manager.destroy(self.guild_id)
        except lavalink.ClientError:
            pass
        except ContentTypeError as exc:
            self.logger.warning(
                "Ignoring Lavalink response while destroying player %s: %s",
                self.guild_id,
                exc,
            )


class LavalinkManager:
    """Initialises and tears down Lavalink resources for the bot."""

    def __init__(self, bot: discord.Client, config: LavalinkConfig) -> None:
        self.bot = bot
        self.config = config
        self.logger = logging.getLogger("Encore.Lavalink")

    async def connect(self) -> lavalink.Node:
        if not hasattr(self.bot, "lavalink"):
            self.bot.lavalink = lavalink.Client(
                self.bot.user.id, player=EncorePlayer  # type: ignore[arg-type]
            )

        client: lavalink.Client[EncorePlayer] = self.bot.lavalink
        config = self.config
        existing = next((node for node in client.node_manager.nodes if node.name == config.name), None)
        if existing:
            self.logger.info("Lavalink node '%s' already registered.", existing.name)
            return existing

        node = client.add_node(
            host=config.host,
            port=config.port,
            password=config.password,
            region=config.region,
            name=config.name,
            ssl=config.https,
            connect=False,
        )

        try:
            await node.connect(force=True)
            await asyncio.wait_for(node.get_version(), timeout=5)
        except AuthenticationError:
            self.logger.error(
                "Lavalink authentication failed for node '%s'. "
                "Verify the password in config.yml/.env matches the server configuration.",
                config.name,
            )
        except ClientConnectorError as exc:
            self.logger.error(
                "Could not reach Lavalink node '%s' at %s:%s (%s). Please ensure the server is running "
                "and accessible from this host.",
                config.name,
                config.host,
                config.port,
                exc.strerror or exc,
            )
        except asyncio.TimeoutError:
            self.logger.warning(
                "Timed out while verifying Lavalink node '%s'. Continuing but playback may fail.",
                config.name,
            )
        else:
            self.logger.info(
                "Authenticated Lavalink node %s (%s:%s, ssl=%s)",
                config.name,
                config.host,
                config.port,
                config.https,
            )
        return node

    async def ensure_ready(self) -> None:
        """Reconnect the node if it dropped."""
        client: lavalink.Client | None = getattr(self.bot, "lavalink", None)
        if not client:
            return

        reconnect_tasks = []
        for node in client.node_manager.nodes:
            if not node.available:
                reconnect_tasks.append(node.connect(force=True))

        if reconnect_tasks:
            await asyncio.gather(*reconnect_tasks, return_exceptions=True)

    async def close(self) -> None:
        if hasattr(self.bot, "lavalink"):
            try:
                await self.bot.lavalink.close()
            except Exception as exc:  # pragma: no cover
                self.logger.error("Error closing Lavalink: %s", exc)


class LavalinkTransport:
    """Guild-bound audio transport over the guild's Lavalink player."""

    def __init__(self, bot: discord.Client, guild_id: int, *, connect_timeout: float = 2.0) -> None:
        self.bot = bot
        self.guild_id = guild_id
        self.connect_timeout = connect_timeout
        self.logger = logging.getLogger("Encore.Transport")

    def _player(self) -> Optional[EncorePlayer]:
        client = getattr(self.bot, "lavalink", None)
        if client is None:
            return None
        return client.player_manager.get(self.guild_id)

    def _require_player(self) -> EncorePlayer:
        player = self._player()
        if player is None:
            raise VoiceConnectionError("Not connected to a voice channel.")
        return player

    async def connect(self, channel_id: int) -> None:
        guild = self.bot.get_guild(self.guild_id)
        channel = guild.get_channel(channel_id) if guild else None
        if channel is None or not isinstance(channel, discord.VoiceChannel):
            raise VoiceConnectionError(f"Voice channel {channel_id} is not available.")
        if guild.voice_client is None:
            await channel.connect(cls=LavalinkVoiceClient)  # type: ignore[arg-type]

        steps = max(1, int(self.connect_timeout / 0.1))
        for _ in range(steps):
            if self.is_connected():
                return
            await asyncio.sleep(0.1)
        if not self.is_connected():
            raise VoiceConnectionError("Timed out joining the voice channel.")

    async def play(self, track: CandidateTrack) -> None:
        player = self._require_player()
        handle = track.handle
        if handle is None:
            raise PlaybackStartError(f"'{track.title}' has no playable source.")
        if track.requester is not None:
            handle.requester = track.requester
        await player.play(handle)

    async def stop(self) -> None:
        player = self._player()
        if player is not None:
            await player.stop()

    def is_playing(self) -> bool:
        player = self._player()
        return bool(player and player.is_playing)

    def is_connected(self) -> bool:
        player = self._player()
        return bool(player and player.is_connected)

    def position(self) -> int:
        player = self._player()
        return int(player.position) if player else 0

    async def pause(self) -> bool:
        player = self._player()
        if player is None or player.paused:
            return False
        await player.set_pause(True)
        return True

    async def resume(self) -> bool:
        player = self._player()
        if player is None or not player.paused:
            return False
        await player.set_pause(False)
        return True

    async def seek(self, position_ms: int) -> None:
        await self._require_player().seek(position_ms)

    async def set_volume(self, volume: int) -> bool:
        player = self._player()
        if player is None:
            return False
        await player.set_volume(volume)
        return True

    async def disconnect(self) -> None:
        guild = self.bot.get_guild(self.guild_id)
        voice_client = guild.voice_client if guild else None
        if voice_client is not None:
            await voice_client.disconnect(force=True)
