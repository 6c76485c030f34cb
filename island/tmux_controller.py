"""tmux operations for locating and driving Claude Code panes."""

import asyncio
import logging
from typing import Optional

from .models import PaneInfo, PaneTarget
from .process_runner import ProcessExecutorError, ProcessResult, ProcessRunner

logger = logging.getLogger(__name__)

PANE_LIST_FORMAT = "#{pane_id} #{session_name}:#{window_index}.#{pane_index} #{pane_pid} #{pane_current_path}"


def parse_pane_line(line: str) -> Optional[PaneInfo]:
    """
    Parse one line of PANE_LIST_FORMAT output.

    The current path is the remainder of the line and may contain spaces.
    """
    parts = line.strip().split(" ", 3)
    if len(parts) < 2:
        return None
    target = PaneTarget.from_string(parts[1])
    if target is None:
        return None
    pane_pid: Optional[int] = None
    if len(parts) > 2:
        try:
            pane_pid = int(parts[2])
        except ValueError:
            pane_pid = None
    current_path = parts[3] if len(parts) > 3 else ""
    return PaneInfo(pane_id=parts[0], target=target, pane_pid=pane_pid, current_path=current_path)


class TmuxController:
    """Controls tmux panes hosting Claude Code sessions."""

    def __init__(self, runner: Optional[ProcessRunner] = None, config: Optional[dict] = None):
        self.config = config or {}

        # Load timeout configuration with fallbacks
        timeouts = self.config.get("timeouts", {})
        tmux_timeouts = timeouts.get("tmux", {})

        self.command_timeout_seconds = tmux_timeouts.get("command_timeout_seconds", 5)
        self.send_keys_settle_seconds = tmux_timeouts.get("send_keys_settle_seconds", 0.05)
        self.runner = runner or ProcessRunner(default_timeout=self.command_timeout_seconds)

    async def _run_tmux(self, *args: str) -> Optional[ProcessResult]:
        """Run a tmux command. Returns None if tmux is missing or hangs."""
        try:
            return await self.runner.run("tmux", *args, timeout=self.command_timeout_seconds)
        except ProcessExecutorError as e:
            logger.error(f"tmux {args[0]} failed: {e}")
            return None

    async def list_panes(self) -> list[PaneInfo]:
        """List every pane of every tmux session."""
        result = await self._run_tmux("list-panes", "-a", "-F", PANE_LIST_FORMAT)
        if result is None or not result.ok:
            return []
        panes = []
        for line in result.stdout.splitlines():
            info = parse_pane_line(line)
            if info is not None:
                panes.append(info)
        return panes

    async def list_sessions(self) -> list[str]:
        """List tmux session names."""
        result = await self._run_tmux("list-sessions", "-F", "#{session_name}")
        if result is None or not result.ok:
            return []
        return [name for name in result.stdout.splitlines() if name.strip()]

    async def list_session_panes(self, session_name: str) -> list[tuple[PaneTarget, str]]:
        """
        List (target, current path) for panes of a single session.

        Args:
            session_name: tmux session name

        Returns:
            List of (PaneTarget, pane_current_path) tuples
        """
        result = await self._run_tmux(
            "list-panes", "-t", session_name,
            "-F", "#{window_index}.#{pane_index} #{pane_current_path}",
        )
        if result is None or not result.ok:
            return []
        panes = []
        for line in result.stdout.splitlines():
            address, _, path = line.strip().partition(" ")
            window, dot, pane = address.partition(".")
            if not dot:
                continue
            panes.append((PaneTarget(session=session_name, window=window, pane=pane), path))
        return panes

    async def send_keys(self, target: PaneTarget, text: str, press_enter: bool = True) -> bool:
        """
        Send text to a pane literally, then Enter as a separate keystroke.

        Args:
            target: Pane to type into
            text: Text to send (-l, no key-name interpretation)
            press_enter: Send Enter after the settle delay

        Returns:
            True if both send-keys calls succeeded
        """
        address = target.target_string
        if text:
            result = await self._run_tmux("send-keys", "-t", address, "-l", text)
            if result is None or not result.ok:
                stderr = result.stderr.strip() if result else ""
                logger.error(f"Failed to send text to {address}: {stderr}")
                return False

        if not press_enter:
            return True

        # A rapid text+Enter burst is read as a paste; the gap makes Enter a submit
        await asyncio.sleep(self.send_keys_settle_seconds)

        result = await self._run_tmux("send-keys", "-t", address, "Enter")
        if result is None or not result.ok:
            stderr = result.stderr.strip() if result else ""
            logger.error(f"Failed to send Enter to {address}: {stderr}")
            return False

        logger.info(f"Sent input to {address}: {text[:50]}")
        return True

    async def switch_to_pane(self, target: PaneTarget) -> bool:
        """Select the pane's window, then the pane itself."""
        window = f"{target.session}:{target.window}"
        result = await self._run_tmux("select-window", "-t", window)
        if result is None or not result.ok:
            logger.warning(f"Failed to select window {window}")
            return False
        result = await self._run_tmux("select-pane", "-t", target.target_string)
        if result is None or not result.ok:
            logger.warning(f"Failed to select pane {target}")
            return False
        return True

    async def active_pane(self) -> Optional[PaneTarget]:
        """Pane currently focused in the attached client."""
        result = await self._run_tmux(
            "display-message", "-p", "#{session_name}:#{window_index}.#{pane_index}"
        )
        if result is None or not result.ok:
            return None
        return PaneTarget.from_string(result.stdout.strip())
