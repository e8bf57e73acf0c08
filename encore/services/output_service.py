"""Text-channel output used by the engine to report progress to a guild."""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

import discord

from encore.utils.exceptions import StaleHandleError


class OutputSink(Protocol):
    """Anything able to post and edit status messages."""

    async def send(self, content: Optional[str] = None, *, embed: Any = None) -> Any:
        ...

    async def edit(self, handle: Any, content: str) -> Any:
        ...


class ChannelSink:
    """``OutputSink`` backed by a Discord text channel."""

    def __init__(self, channel: discord.abc.Messageable) -> None:
        self.channel = channel
        self.logger = logging.getLogger("Encore.Output")

    async def send(self, content: Optional[str] = None, *, embed: Optional[discord.Embed] = None) -> discord.Message:
        if embed is not None:
            return await self.channel.send(content=content, embed=embed, silent=True)
        return await self.channel.send(content=content, silent=True)

    async def edit(self, handle: discord.Message, content: str) -> discord.Message:
        """Edit ``handle`` in place, raising ``StaleHandleError`` once it is unusable."""
        if handle is None:
            raise StaleHandleError("No message to edit")
        try:
            return await handle.edit(content=content)
        except (discord.NotFound, discord.Forbidden) as exc:
            raise StaleHandleError(str(exc)) from exc
        except discord.HTTPException as exc:
            self.logger.debug("Editing message %s failed: %s", getattr(handle, "id", "?"), exc)
            raise StaleHandleError(str(exc)) from exc
