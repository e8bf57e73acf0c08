"""Centralised helpers for building themed Discord embeds."""

from typing import Iterable, Optional

import discord

from encore.configs.settings import CONFIG


class EmbedFactory:
    """Centralized, themed embed factory for Encore."""

    def __init__(self, guild_id: Optional[int] = None):
        self.theme = CONFIG.theme
        self.guild_id = str(guild_id) if guild_id else None

    def _base(self, title: Optional[str], description: Optional[str], color: int) -> discord.Embed:
        """Return a themed embed with the common footer decoration."""
        e = discord.Embed(title=title, description=description, color=color)
        if self.theme.footer_text:
            e.set_footer(text=self.theme.footer_text, icon_url=self.theme.footer_icon_url or None)
        e.timestamp = discord.utils.utcnow()
        return e

    # Generic
    def primary(self, title: str, description: Optional[str] = None) -> discord.Embed:
        return self._base(title, description, self.theme.color_primary)

    def success(self, title: str, description: Optional[str] = None) -> discord.Embed:
        return self._base(title, description, self.theme.color_success)

    def warning(self, title: str, description: Optional[str] = None) -> discord.Embed:
        return self._base(title, description, self.theme.color_warning)

    def error(self, description: str, title: str = "Error") -> discord.Embed:
        return self._base(title, description, self.theme.color_error)

    # Rich cards
    def track_card(
        self,
        *,
        title: str,
        author: str,
        duration: str,
        url: Optional[str] = None,
        requester: Optional[str] = None,
        thumbnail: Optional[str] = None,
        footer_extra: Optional[str] = None,
    ) -> discord.Embed:
        e = self.primary(title=title, description=f"*{author}*")
        if url:
            e.url = url
        e.add_field(name="Duration", value=f"`{duration}`", inline=True)
        if requester:
            e.add_field(name="Requested by", value=requester, inline=True)
        if thumbnail:
            e.set_thumbnail(url=thumbnail)
        if footer_extra and e.footer and e.footer.text:
            e.set_footer(
                text=f"{e.footer.text} • {footer_extra}",
                icon_url=e.footer.icon_url,
            )
        return e

    def queue_page(self, *, items: Iterable[str], page: int, pages: int) -> discord.Embed:
        e = self.primary("Queue")
        e.description = "\n".join(items) or "_empty_"
        e.set_footer(text=f"Page {page}/{pages} • {self.theme.footer_text}", icon_url=self.theme.footer_icon_url or None)
        return e
