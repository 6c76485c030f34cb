"""Periodic evaluation of abandoned editor sessions."""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from .models import EditorConnectionStatus, Session, StaleCandidateEvaluated
from .process_tree import ProcessTree, ProcessTreeBuilder
from .session_store import SessionStore

logger = logging.getLogger(__name__)


def is_stale_candidate(session: Session, tree: ProcessTree) -> bool:
    """Editor session whose editor is disconnected and whose process is gone."""
    return (
        session.is_in_editor
        and session.editor_status == EditorConnectionStatus.DISCONNECTED
        and not tree.is_alive(session.pid)
    )


class StaleSessionPruner:
    """
    Emits one StaleCandidateEvaluated per session per sweep.

    The store counts consecutive candidate results and decides when to
    delete; the pruner never removes anything itself.
    """

    def __init__(
        self,
        store: SessionStore,
        tree_builder: ProcessTreeBuilder,
        config: Optional[dict] = None,
    ):
        self.store = store
        self.tree_builder = tree_builder
        self.config = config or {}

        stale_config = self.config.get("stale", {})
        self.check_interval_seconds = stale_config.get("check_interval_seconds", 30)
        self.cleanup_minutes = stale_config.get("cleanup_minutes", 10)

        self._task: Optional[asyncio.Task] = None

    @property
    def threshold_seconds(self) -> float:
        return float(self.cleanup_minutes) * 60

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.is_running:
            return
        if self.cleanup_minutes <= 0:
            logger.info("Stale session cleanup disabled")
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(
            f"Stale session pruner started (every {self.check_interval_seconds}s, "
            f"threshold {self.cleanup_minutes}m)"
        )

    async def stop(self):
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self):
        while True:
            await asyncio.sleep(self.check_interval_seconds)
            try:
                await self.perform_sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Stale session sweep failed")

    async def perform_sweep(self) -> int:
        """
        Evaluate every session against a fresh process snapshot.

        Returns:
            Number of candidates found
        """
        sessions = self.store.all_sessions()
        if not sessions:
            return 0

        tree = await self.tree_builder.build(use_cache=False)
        if tree is None:
            logger.warning("Skipping stale sweep: no process snapshot")
            return 0

        evaluated_at = datetime.now()
        candidates = 0
        for session in sessions:
            candidate = is_stale_candidate(session, tree)
            if candidate:
                candidates += 1
                logger.debug(f"Session {session.session_id[:8]} is a stale candidate")
            await self.store.process(StaleCandidateEvaluated(
                session_id=session.session_id,
                is_candidate=candidate,
                evaluated_at=evaluated_at,
                threshold_seconds=self.threshold_seconds,
            ))
        return candidates
