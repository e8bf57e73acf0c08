"""Disconnect sessions that sit with nothing queued."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from encore.services.playback_service import Sleep
from encore.services.recovery_service import ErrorRecoveryService
from encore.services.session_service import Session, SessionRegistry


class IdleTimerService:
    """Own the single idle-disconnect countdown of every guild."""

    def __init__(
        self,
        registry: SessionRegistry,
        recovery: ErrorRecoveryService,
        *,
        delay: float = 60.0,
        enabled: bool = True,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.recovery = recovery
        self.delay = delay
        self.enabled = enabled
        self._sleep = sleep
        self.logger = logging.getLogger("Encore.Idle")

    def has_pending(self, session: Session) -> bool:
        task = session.state.idle_task
        return bool(task and not task.done())

    def cancel(self, session: Session) -> bool:
        task = session.state.idle_task
        session.state.idle_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            self.logger.debug("Cancelled idle timer for guild %s.", session.guild_id)
            return True
        return False

    async def on_queue_empty(self, session: Session) -> bool:
        """Start the countdown unless a recovery owns the session right now."""
        if not self.enabled or session.destroyed:
            return False
        if self.recovery.is_recovering(session):
            self.logger.debug("Guild %s queue emptied during recovery; no idle timer.", session.guild_id)
            return False
        if not session.transport.is_connected():
            return False
        self.cancel(session)
        session.state.idle_task = asyncio.create_task(self._countdown(session.guild_id))
        await session.notify(f"✅ | Queue finished! Leaving the voice channel in {int(self.delay)}s unless more tracks are added.")
        return True

    def on_track_added(self, session: Session) -> None:
        self.cancel(session)

    async def on_disconnected(self, session: Session) -> bool:
        """Everyone left the voice channel; tear down without waiting."""
        self.cancel(session)
        await session.notify("👋 | Nobody is listening anymore, so I left the voice channel.")
        return await self.registry.destroy(session.guild_id, reason="empty channel")

    async def _countdown(self, guild_id: int) -> None:
        try:
            await self._sleep(self.delay)
        except asyncio.CancelledError:
            return
        try:
            await self._expire(guild_id)
        except Exception:
            self.logger.exception("Idle timer for guild %s failed", guild_id)

    async def _expire(self, guild_id: int) -> Optional[bool]:
        session = self.registry.get(guild_id)
        if session is None:
            return None
        if not session.is_idle or self.recovery.is_recovering(session):
            self.logger.debug("Idle timer for guild %s fired but the session is busy.", guild_id)
            return False
        session.state.idle_task = None
        await session.notify(f"👋 | Left the voice channel after {int(self.delay)}s of inactivity.")
        return await self.registry.destroy(guild_id, reason="idle timeout")
