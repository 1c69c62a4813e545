"""Admin session lifecycle.

Only one admin session is live at a time: logging in revokes every other
browser. Sessions expire 7 days after creation or after 24 hours without
activity, whichever comes first. Expiry is evaluated lazily on validation;
:class:`SessionSweeper` reaps abandoned rows in the background.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from tessra.logging import get_logger
from tessra.storage.models import SESSION_ABSOLUTE_TTL, SESSION_IDLE_TTL, Session, utcnow

if TYPE_CHECKING:
    from tessra.storage.memory import MemoryStore
    from tessra.storage.postgres import PostgresStore

logger = get_logger(__name__)

DEFAULT_CLEANUP_INTERVAL_SECONDS = 60 * 60


class SessionManager:
    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        *,
        absolute_ttl: timedelta = SESSION_ABSOLUTE_TTL,
        idle_ttl: timedelta = SESSION_IDLE_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.absolute_ttl = absolute_ttl
        self.idle_ttl = idle_ttl
        self._clock = clock

    async def create(self) -> str:
        """Start a new admin session, revoking all others, and return its token."""
        now = self._clock()
        session = Session.new(now, absolute_ttl=self.absolute_ttl)
        await asyncio.to_thread(self.store.replace_sessions, session)
        logger.info("session_created", expires_at=session.expires_at.isoformat())
        return session.token

    async def validate(self, token: Optional[str]) -> bool:
        """Check a session token and bump its activity time in one write.

        A token that fails the conditional update is deleted: any row left
        under it is necessarily expired or idle. Store errors propagate.
        """
        if not token:
            return False
        now = self._clock()
        idle_cutoff = now - self.idle_ttl
        touched = await asyncio.to_thread(
            self.store.touch_session, token, now=now, idle_cutoff=idle_cutoff
        )
        if touched:
            return True
        removed = await asyncio.to_thread(self.store.delete_session, token)
        if removed:
            logger.info("session_invalidated", reason="expired_or_idle")
        return False

    async def delete(self, token: Optional[str]) -> None:
        if not token:
            return
        await asyncio.to_thread(self.store.delete_session, token)

    async def cleanup_expired(self) -> int:
        now = self._clock()
        removed = await asyncio.to_thread(
            self.store.delete_expired_sessions,
            now=now,
            idle_cutoff=now - self.idle_ttl,
        )
        if removed:
            logger.info("expired_sessions_removed", count=removed)
        return removed


class SessionSweeper:
    """Background task that runs :meth:`SessionManager.cleanup_expired` periodically.

    The first sweep happens immediately on start.
    """

    def __init__(
        self,
        sessions: SessionManager,
        *,
        interval: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        self.sessions = sessions
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("session_sweeper_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("session_sweeper_started", interval=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("session_sweeper_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.sessions.cleanup_expired()
            except Exception as exc:
                # the next sweep retries; request-path validation still expires sessions
                logger.error(
                    "session_cleanup_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            await asyncio.sleep(self.interval)
