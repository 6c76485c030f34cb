"""Resolve which tmux pane hosts a given Claude session."""

import logging
from typing import Optional

from .models import PaneInfo, PaneTarget
from .process_tree import ProcessTree, ProcessTreeBuilder
from .tmux_controller import TmuxController

logger = logging.getLogger(__name__)


class TmuxTargetFinder:
    """
    Maps a session identity (pane id, pid, cwd) to a pane address.

    Strategies run in a fixed order and the first match wins:
    1. exact pane id
    2. pane whose process is an ancestor of the session pid
    3. pane whose current path equals the session cwd
    4. cwd scan across every tmux session, pane by pane
    """

    def __init__(self, tmux: TmuxController, tree_builder: ProcessTreeBuilder):
        self.tmux = tmux
        self.tree_builder = tree_builder

    async def find_target(
        self,
        pane_id: Optional[str] = None,
        pid: Optional[int] = None,
        cwd: Optional[str] = None,
    ) -> Optional[PaneTarget]:
        """
        Find the pane for a session.

        Returns:
            PaneTarget, or None when every strategy misses
        """
        panes = await self.tmux.list_panes()

        if pane_id:
            target = self.match_pane_id(panes, pane_id)
            if target:
                logger.debug(f"Pane {target} matched by pane id {pane_id}")
                return target

        if pid:
            tree = await self.tree_builder.build()
            if tree is not None:
                target = self.match_pid(panes, pid, tree)
                if target:
                    logger.debug(f"Pane {target} matched by pid {pid}")
                    return target

        if cwd:
            target = self.match_cwd(panes, cwd)
            if target:
                logger.debug(f"Pane {target} matched by cwd {cwd}")
                return target

            target = await self.scan_sessions_for_cwd(cwd)
            if target:
                logger.debug(f"Pane {target} matched by session scan for cwd {cwd}")
                return target

        logger.info(f"No tmux pane found (pane_id={pane_id}, pid={pid}, cwd={cwd})")
        return None

    @staticmethod
    def match_pane_id(panes: list[PaneInfo], pane_id: str) -> Optional[PaneTarget]:
        for pane in panes:
            if pane.pane_id == pane_id:
                return pane.target
        return None

    @staticmethod
    def match_pid(panes: list[PaneInfo], pid: int, tree: ProcessTree) -> Optional[PaneTarget]:
        """First pane whose shell pid is pid itself or one of its ancestors."""
        for pane in panes:
            if pane.pane_pid is not None and tree.is_descendant(pid, pane.pane_pid):
                return pane.target
        return None

    @staticmethod
    def match_cwd(panes: list[PaneInfo], cwd: str) -> Optional[PaneTarget]:
        for pane in panes:
            if pane.current_path == cwd:
                return pane.target
        return None

    async def scan_sessions_for_cwd(self, cwd: str) -> Optional[PaneTarget]:
        """Slow path: query each tmux session separately."""
        for session_name in await self.tmux.list_sessions():
            for target, path in await self.tmux.list_session_panes(session_name):
                if path == cwd:
                    return target
        return None

    async def is_session_pane_active(
        self,
        pane_id: Optional[str] = None,
        pid: Optional[int] = None,
        cwd: Optional[str] = None,
    ) -> bool:
        """Whether the session's pane is the one currently focused."""
        target = await self.find_target(pane_id=pane_id, pid=pid, cwd=cwd)
        if target is None:
            return False
        active = await self.tmux.active_pane()
        return active == target
