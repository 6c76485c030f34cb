"""Routes user actions (approve, deny, send text) to the right terminal."""

import asyncio
import logging
from typing import Optional

from .approval_handler import APPROVE_ALWAYS_KEY, APPROVE_ONCE_KEY, REJECT_KEY, ApprovalHandler
from .editor_bridge import EditorBridge, EditorBridgeError
from .models import (
    EditorRediscoveryRequested,
    PermissionApproved,
    PermissionDenied,
    Session,
)
from .session_store import SessionStore
from .tmux_target_finder import TmuxTargetFinder

logger = logging.getLogger(__name__)

ACTION_KEYS = {
    "approve_once": APPROVE_ONCE_KEY,
    "approve_always": APPROVE_ALWAYS_KEY,
    "reject": REJECT_KEY,
}


class ActionDispatcher:
    """
    Delivers user intent to a session.

    Editor-backed sessions go through the editor RPC first; on failure the
    cached editor endpoint is dropped and the tmux route is tried. Only a
    delivered approval/denial changes the session's phase.
    """

    def __init__(
        self,
        store: SessionStore,
        finder: TmuxTargetFinder,
        approvals: ApprovalHandler,
        bridge: Optional[EditorBridge] = None,
    ):
        self.store = store
        self.finder = finder
        self.approvals = approvals
        self.bridge = bridge

    async def approve_once(self, session_id: str) -> bool:
        return await self._answer_permission(session_id, "approve_once")

    async def approve_always(self, session_id: str) -> bool:
        return await self._answer_permission(session_id, "approve_always")

    async def reject(self, session_id: str, message: Optional[str] = None) -> bool:
        return await self._answer_permission(session_id, "reject", message=message)

    async def send_message(self, session_id: str, text: str) -> bool:
        """Type a chat message into the session and submit it."""
        session = self.store.session(session_id)
        if session is None:
            logger.warning(f"Cannot send message: unknown session {session_id[:8]}")
            return False
        if not text:
            return False
        return await self._deliver(session, "message", text)

    async def _answer_permission(
        self,
        session_id: str,
        action: str,
        message: Optional[str] = None,
    ) -> bool:
        session = self.store.session(session_id)
        if session is None:
            logger.warning(f"Cannot answer permission: unknown session {session_id[:8]}")
            return False
        permission = session.permission
        if permission is None:
            logger.warning(f"Session {session_id[:8]} has no pending permission")
            return False

        if not await self._deliver(session, action, message):
            logger.error(f"Failed to deliver {action} to {session_id[:8]}")
            return False

        if action == "reject":
            await self.store.process(PermissionDenied(session_id, permission.tool_use_id, message))
        else:
            await self.store.process(PermissionApproved(session_id, permission.tool_use_id))
        logger.info(f"{action} {permission.tool_name} for session {session_id[:8]}")
        return True

    async def _deliver(self, session: Session, action: str, text: Optional[str] = None) -> bool:
        """
        Deliver one action.

        Args:
            session: Snapshot of the target session
            action: approve_once, approve_always, reject or message
            text: Message body, or the optional rejection reason
        """
        if session.is_in_editor and self.bridge is not None:
            delivered = await self._deliver_via_editor(session, action, text)
            if delivered is not None:
                return delivered
        return await self._deliver_via_tmux(session, action, text)

    async def _deliver_via_editor(self, session: Session, action: str, text: Optional[str]) -> Optional[bool]:
        """
        Deliver through the editor RPC.

        Returns:
            True if everything was delivered, None if nothing reached the
            editor (the tmux route may be tried), False if some input was
            typed before a later send failed (no fallback: the agent has
            already seen the first keystroke).
        """
        sent_any = False
        try:
            if action == "message":
                await self.bridge.send_text(session, text)
                return True
            await self.bridge.send_text(session, ACTION_KEYS[action])
            sent_any = True
            if action == "reject" and text:
                await asyncio.sleep(self.approvals.reject_message_delay_seconds)
                await self.bridge.send_text(session, text)
            return True
        except EditorBridgeError as e:
            logger.warning(f"Editor delivery failed for {session.session_id[:8]}: {e}")
            self.bridge.resolver.forget(session.session_id)
            await self.store.process(EditorRediscoveryRequested(session.session_id))
            if sent_any:
                logger.error(f"Rejection reason not delivered to {session.session_id[:8]}")
                return False
            return None

    async def _deliver_via_tmux(self, session: Session, action: str, text: Optional[str]) -> bool:
        target = await self.finder.find_target(pane_id=session.pane_id, pid=session.pid, cwd=session.cwd)
        if target is None:
            logger.warning(f"No tmux pane for session {session.session_id[:8]}")
            return False
        if action == "approve_once":
            return await self.approvals.approve_once(target)
        if action == "approve_always":
            return await self.approvals.approve_always(target)
        if action == "reject":
            return await self.approvals.reject(target, text)
        return await self.approvals.send_message(target, text)

    async def focus(self, session_id: str) -> bool:
        """Bring the session's pane (or editor terminal) to the front."""
        session = self.store.session(session_id)
        if session is None:
            return False
        if session.is_in_editor and self.bridge is not None:
            try:
                if await self.bridge.focus_terminal(session):
                    return True
            except EditorBridgeError as e:
                logger.warning(f"Editor focus failed for {session_id[:8]}: {e}")
        target = await self.finder.find_target(pane_id=session.pane_id, pid=session.pid, cwd=session.cwd)
        if target is None:
            return False
        return await self.finder.tmux.switch_to_pane(target)
