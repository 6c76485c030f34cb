"""Keystroke payloads for answering Claude permission prompts in tmux."""

import asyncio
import logging
from typing import Optional

from .models import PaneTarget
from .tmux_controller import TmuxController

logger = logging.getLogger(__name__)

APPROVE_ONCE_KEY = "1"
APPROVE_ALWAYS_KEY = "2"
REJECT_KEY = "n"


class ApprovalHandler:
    """Answers the permission prompt shown in a pane."""

    def __init__(self, tmux: TmuxController, config: Optional[dict] = None):
        self.tmux = tmux
        self.config = config or {}
        tmux_timeouts = self.config.get("timeouts", {}).get("tmux", {})
        self.reject_message_delay_seconds = tmux_timeouts.get("reject_message_delay_seconds", 0.1)

    async def approve_once(self, target: PaneTarget) -> bool:
        return await self.tmux.send_keys(target, APPROVE_ONCE_KEY)

    async def approve_always(self, target: PaneTarget) -> bool:
        return await self.tmux.send_keys(target, APPROVE_ALWAYS_KEY)

    async def reject(self, target: PaneTarget, message: Optional[str] = None) -> bool:
        """
        Reject the pending tool, optionally explaining why.

        The message is typed as a second, separate input once the prompt
        has been dismissed.
        """
        if not await self.tmux.send_keys(target, REJECT_KEY):
            return False
        if message:
            await asyncio.sleep(self.reject_message_delay_seconds)
            if not await self.tmux.send_keys(target, message):
                logger.warning(f"Rejected on {target} but failed to send reason")
                return False
        return True

    async def send_message(self, target: PaneTarget, text: str) -> bool:
        return await self.tmux.send_keys(target, text)
