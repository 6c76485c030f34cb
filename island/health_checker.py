"""Periodic editor connection health checks."""

import asyncio
import logging
from typing import Optional

from .editor_bridge import EditorBridge
from .models import EditorConnectionStatus, EditorStatusChanged, Session
from .session_store import SessionStore

logger = logging.getLogger(__name__)


class EditorHealthChecker:
    """
    Pings the editor of every editor-backed session on a fixed interval.

    Each session is checked in its own task, bounded by a semaphore; a
    failure or timeout in one check never affects the others. Results go
    through the session store like every other mutation.
    """

    def __init__(self, store: SessionStore, bridge: EditorBridge, config: Optional[dict] = None):
        self.store = store
        self.bridge = bridge
        self.config = config or {}

        health_config = self.config.get("health", {})
        self.check_interval_seconds = health_config.get("check_interval_seconds", 30)
        self.max_concurrent_checks = health_config.get("max_concurrent_checks", 4)

        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Start the loop. Calling it again while running is a no-op."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Editor health checker started (every {self.check_interval_seconds}s)")

    async def stop(self):
        """Stop the loop. Safe to call when not running."""
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Editor health checker stopped")

    async def _loop(self):
        while True:
            try:
                await self.perform_check()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Editor health check round failed")
            await asyncio.sleep(self.check_interval_seconds)

    async def perform_check(self) -> dict[str, EditorConnectionStatus]:
        """
        Check every editor-backed session once.

        Returns:
            Map of session_id -> resulting status
        """
        sessions = [s for s in self.store.all_sessions() if s.is_in_editor]
        if not sessions:
            return {}

        semaphore = asyncio.Semaphore(self.max_concurrent_checks)

        async def bounded(session: Session) -> EditorConnectionStatus:
            async with semaphore:
                return await self.check_session(session)

        results = await asyncio.gather(*(bounded(s) for s in sessions), return_exceptions=True)

        statuses = {}
        for session, result in zip(sessions, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.warning(f"Health check for {session.session_id[:8]} raised: {result}")
                result = EditorConnectionStatus.DISCONNECTED
                await self.store.process(EditorStatusChanged(session.session_id, result))
            statuses[session.session_id] = result
        return statuses

    async def check_session(self, session: Session) -> EditorConnectionStatus:
        """Post checking, ping, then post the outcome."""
        await self.store.process(EditorStatusChanged(session.session_id, EditorConnectionStatus.CHECKING))
        status = await self.bridge.check_connection(session)
        await self.store.process(EditorStatusChanged(session.session_id, status))
        return status
