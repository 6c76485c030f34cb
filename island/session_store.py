"""
Single-writer session state.

Every mutation is an event pushed onto one asyncio queue and applied by
one worker task, in submission order. Readers never see the working
copies: after each event the touched session is cloned into a new
snapshot dict which replaces the published one wholesale.
"""

import asyncio
import dataclasses
import logging
from datetime import datetime
from typing import Callable, Optional

from .models import (
    AgentFileUpdated,
    ClearDetected,
    EditorConnectionStatus,
    EditorRediscoveryRequested,
    EditorStatusChanged,
    FileUpdated,
    HookReceived,
    InterruptDetected,
    PermissionApproved,
    PermissionDenied,
    PermissionSocketFailed,
    PhaseKind,
    Session,
    SessionEnded,
    SessionEvent,
    SessionPhase,
    StaleCandidateEvaluated,
    SubagentStarted,
    SubagentState,
    SubagentStopped,
    ToolCompleted,
)

logger = logging.getLogger(__name__)

SUBAGENT_TOOL_NAMES = ("Task", "Agent")

SnapshotCallback = Callable[[dict[str, Session]], None]


def clone_session(session: Session) -> Session:
    """Copy a session so later mutation of the original cannot leak into it."""
    return dataclasses.replace(
        session,
        completed_tool_ids=set(session.completed_tool_ids),
        tool_results=dict(session.tool_results),
        messages=list(session.messages),
        subagents={
            key: dataclasses.replace(sub, tools=dict(sub.tools))
            for key, sub in session.subagents.items()
        },
    )


class SessionStore:
    """The only writer of session state."""

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}
        stale_config = self.config.get("stale", {})
        self.min_consecutive_evaluations = max(1, stale_config.get("min_consecutive_evaluations", 2))

        self._sessions: dict[str, Session] = {}
        self._snapshot: dict[str, Session] = {}
        self._subscribers: list[SnapshotCallback] = []

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

        self._handlers = {
            HookReceived: self._on_hook,
            FileUpdated: self._on_file_updated,
            ToolCompleted: self._on_tool_completed,
            InterruptDetected: self._on_interrupt,
            ClearDetected: self._on_clear,
            EditorStatusChanged: self._on_editor_status,
            EditorRediscoveryRequested: self._on_editor_rediscovery,
            PermissionApproved: self._on_permission_approved,
            PermissionDenied: self._on_permission_denied,
            PermissionSocketFailed: self._on_permission_socket_failed,
            StaleCandidateEvaluated: self._on_stale_evaluated,
            SubagentStarted: self._on_subagent_started,
            SubagentStopped: self._on_subagent_stopped,
            AgentFileUpdated: self._on_agent_file_updated,
            SessionEnded: self._on_session_ended,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start the worker on the running loop. Idempotent."""
        loop = asyncio.get_running_loop()
        if self._worker is not None and not self._worker.done() and self._loop is loop:
            return
        self._loop = loop
        self._queue = asyncio.Queue()
        self._worker = loop.create_task(self._run())
        logger.debug("Session store worker started")

    async def stop(self):
        worker = self._worker
        self._worker = None
        if worker is None or worker.done():
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass

    async def _run(self):
        queue = self._queue
        while True:
            event, done = await queue.get()
            try:
                self._apply(event)
            except Exception:
                logger.exception(f"Session store failed on {type(event).__name__}")
            finally:
                if done is not None and not done.done():
                    done.set_result(None)
                queue.task_done()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def process(self, event: SessionEvent):
        """Submit an event and wait until it has been applied."""
        self.start()
        done = self._loop.create_future()
        self._queue.put_nowait((event, done))
        await done

    def submit(self, event: SessionEvent):
        """Submit from the loop thread without waiting."""
        self.start()
        self._queue.put_nowait((event, None))

    def submit_threadsafe(self, event: SessionEvent):
        """Submit from any thread (file watchers)."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning(f"Dropping {type(event).__name__}: session store not running")
            return
        loop.call_soon_threadsafe(self._enqueue, event)

    def _enqueue(self, event: SessionEvent):
        if self._queue is not None:
            self._queue.put_nowait((event, None))

    async def drain(self):
        """Wait until every queued event has been applied."""
        if self._queue is not None:
            await self._queue.join()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, Session]:
        return self._snapshot

    def session(self, session_id: str) -> Optional[Session]:
        return self._snapshot.get(session_id)

    def all_sessions(self) -> list[Session]:
        """Published sessions, most recently active first."""
        return sorted(self._snapshot.values(), key=lambda s: s.last_activity, reverse=True)

    def subscribe(self, callback: SnapshotCallback):
        """Call callback with the new snapshot after every applied change."""
        self._subscribers.append(callback)

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def _apply(self, event: SessionEvent):
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.warning(f"Ignoring unknown event type {type(event).__name__}")
            return
        try:
            session_id = handler(event)
        except Exception:
            logger.exception(f"Failed to apply {type(event).__name__}")
            return
        if session_id is not None:
            self._publish(session_id)

    def _publish(self, session_id: str):
        snapshot = dict(self._snapshot)
        session = self._sessions.get(session_id)
        if session is None:
            snapshot.pop(session_id, None)
        else:
            snapshot[session_id] = clone_session(session)
        self._snapshot = snapshot

        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Snapshot subscriber failed")

    def _get_or_create(self, session_id: str, cwd: Optional[str] = None) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            session = Session(session_id=session_id, cwd=cwd or "")
            self._sessions[session_id] = session
            logger.info(f"Tracking new session {session_id[:8]} (cwd={session.cwd})")
        elif cwd and not session.cwd:
            session.cwd = cwd
        return session

    def _existing(self, session_id: str, event_name: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is None:
            logger.debug(f"{event_name} for unknown session {session_id[:8]}, ignoring")
        return session

    @staticmethod
    def _reset_stale(session: Session):
        session.stale_candidate_since = None
        session.stale_candidate_count = 0

    @staticmethod
    def _pending_matches(session: Session, tool_use_id: str) -> bool:
        permission = session.phase.permission
        return permission is not None and permission.tool_use_id == tool_use_id

    # ------------------------------------------------------------------
    # Handlers. Each returns the touched session id, or None if nothing changed.
    # ------------------------------------------------------------------

    def _on_hook(self, event: HookReceived) -> Optional[str]:
        hook = event.hook
        session = self._get_or_create(hook.session_id, hook.cwd)

        if hook.cwd:
            session.cwd = hook.cwd
        if hook.pid:
            session.pid = hook.pid
        if hook.tty:
            session.tty = hook.tty
        if hook.pane_id:
            session.pane_id = hook.pane_id
        if hook.editor_pid:
            session.editor_pid = hook.editor_pid
            session.is_in_editor = True
        if hook.editor_address:
            session.editor_address = hook.editor_address
            session.is_in_editor = True

        session.last_activity = datetime.now()
        session.last_event = hook.event_name
        self._reset_stale(session)

        if not hook.carries_phase:
            return session.session_id

        new_phase = hook.determine_phase()
        if new_phase.is_waiting_for_approval:
            tool_use_id = new_phase.permission.tool_use_id
            if tool_use_id and tool_use_id in session.completed_tool_ids:
                logger.debug(f"Late permission request for completed tool {tool_use_id}, ignoring")
                return session.session_id
            if self._pending_matches(session, tool_use_id):
                # Duplicate delivery keeps the original context
                return session.session_id

        if new_phase != session.phase:
            logger.info(
                f"Session {session.session_id[:8]}: {session.phase.kind.value} -> {new_phase.kind.value}"
                f" ({hook.event_name})"
            )
        session.phase = new_phase
        return session.session_id

    def _on_file_updated(self, event: FileUpdated) -> Optional[str]:
        payload = event.payload
        session = self._get_or_create(payload.session_id, payload.cwd)

        if payload.is_incremental:
            known = {m.id for m in session.messages}
            for message in payload.messages:
                if message.id not in known:
                    session.messages.append(message)
                    known.add(message.id)
            session.completed_tool_ids |= set(payload.completed_tool_ids)
            session.tool_results.update(payload.tool_results)
        else:
            session.messages = list(payload.messages)
            session.completed_tool_ids = set(payload.completed_tool_ids)
            session.tool_results = dict(payload.tool_results)

        # Subagent (Task) tools still running according to the transcript
        for message in payload.messages:
            for use in message.tool_uses:
                if use.name in SUBAGENT_TOOL_NAMES and use.id not in session.completed_tool_ids:
                    session.subagents.setdefault(use.id, SubagentState(task_tool_id=use.id))
        for task_tool_id, agent_id in payload.agent_ids.items():
            subagent = session.subagents.get(task_tool_id)
            if subagent is not None and subagent.agent_id is None:
                subagent.agent_id = agent_id
        for task_tool_id in list(session.subagents):
            if task_tool_id in session.completed_tool_ids:
                session.subagents.pop(task_tool_id)

        permission = session.phase.permission
        if permission is not None and permission.tool_use_id in session.completed_tool_ids:
            session.phase = SessionPhase.processing()

        if payload.messages:
            session.last_activity = datetime.now()
        return session.session_id

    def _on_tool_completed(self, event: ToolCompleted) -> Optional[str]:
        session = self._get_or_create(event.session_id)
        if event.tool_use_id in session.completed_tool_ids:
            return None

        session.completed_tool_ids.add(event.tool_use_id)
        session.tool_results[event.tool_use_id] = event.result
        session.subagents.pop(event.tool_use_id, None)
        if self._pending_matches(session, event.tool_use_id):
            session.phase = SessionPhase.processing()
        session.last_activity = datetime.now()
        return session.session_id

    def _on_interrupt(self, event: InterruptDetected) -> Optional[str]:
        session = self._get_or_create(event.session_id)
        logger.info(f"Session {session.session_id[:8]} interrupted by user")
        session.phase = SessionPhase.idle()
        session.subagents.clear()
        session.last_activity = datetime.now()
        return session.session_id

    def _on_clear(self, event: ClearDetected) -> Optional[str]:
        session = self._get_or_create(event.session_id)
        session.messages = []
        session.completed_tool_ids = set()
        session.tool_results = {}
        session.subagents.clear()
        if session.phase.is_waiting_for_approval:
            session.phase = SessionPhase.idle()
        session.last_activity = datetime.now()
        return session.session_id

    def _on_editor_status(self, event: EditorStatusChanged) -> Optional[str]:
        session = self._existing(event.session_id, "Editor status")
        if session is None or session.editor_status == event.status:
            return None
        logger.debug(f"Session {session.session_id[:8]} editor: {event.status.value}")
        session.editor_status = event.status
        return session.session_id

    def _on_editor_rediscovery(self, event: EditorRediscoveryRequested) -> Optional[str]:
        session = self._existing(event.session_id, "Editor rediscovery")
        if session is None:
            return None
        session.editor_status = EditorConnectionStatus.UNKNOWN
        return session.session_id

    def _on_permission_approved(self, event: PermissionApproved) -> Optional[str]:
        session = self._existing(event.session_id, "Permission approval")
        if session is None or not self._pending_matches(session, event.tool_use_id):
            return None
        session.phase = SessionPhase.processing()
        session.last_activity = datetime.now()
        return session.session_id

    def _on_permission_denied(self, event: PermissionDenied) -> Optional[str]:
        session = self._existing(event.session_id, "Permission denial")
        if session is None or not self._pending_matches(session, event.tool_use_id):
            return None
        session.phase = SessionPhase.processing()
        session.last_activity = datetime.now()
        return session.session_id

    def _on_permission_socket_failed(self, event: PermissionSocketFailed) -> Optional[str]:
        session = self._existing(event.session_id, "Permission socket failure")
        if session is None or not self._pending_matches(session, event.tool_use_id):
            return None
        logger.warning(f"Session {session.session_id[:8]}: permission channel lost, dropping request")
        session.phase = SessionPhase.idle()
        return session.session_id

    def _on_stale_evaluated(self, event: StaleCandidateEvaluated) -> Optional[str]:
        session = self._existing(event.session_id, "Stale evaluation")
        if session is None:
            return None

        if not event.is_candidate:
            if session.stale_candidate_count == 0:
                return None
            self._reset_stale(session)
            return session.session_id

        if session.stale_candidate_since is None:
            session.stale_candidate_since = event.evaluated_at
        session.stale_candidate_count += 1

        if event.threshold_seconds <= 0:
            return session.session_id

        elapsed = (event.evaluated_at - session.stale_candidate_since).total_seconds()
        if (session.stale_candidate_count >= self.min_consecutive_evaluations
                and elapsed >= event.threshold_seconds):
            logger.info(
                f"Removing stale session {session.session_id[:8]} "
                f"({session.stale_candidate_count} evaluations over {elapsed:.0f}s)"
            )
            del self._sessions[session.session_id]
        return event.session_id

    def _on_subagent_started(self, event: SubagentStarted) -> Optional[str]:
        session = self._get_or_create(event.session_id)
        if event.task_tool_id is None:
            # SubagentStart hooks name the agent but not the Task that spawned it
            if not event.agent_id:
                return None
            known = {s.agent_id for s in session.subagents.values()}
            if event.agent_id in known:
                return None
            unbound = [s for s in session.subagents.values() if s.agent_id is None]
            if not unbound:
                logger.debug(f"No running Task to bind agent {event.agent_id[:8]} to")
                return None
            unbound[0].agent_id = event.agent_id
            return session.session_id

        if event.task_tool_id in session.completed_tool_ids:
            return None
        subagent = session.subagents.get(event.task_tool_id)
        if subagent is None:
            session.subagents[event.task_tool_id] = SubagentState(
                task_tool_id=event.task_tool_id, agent_id=event.agent_id
            )
        elif event.agent_id and subagent.agent_id is None:
            subagent.agent_id = event.agent_id
        else:
            return None
        return session.session_id

    def _on_subagent_stopped(self, event: SubagentStopped) -> Optional[str]:
        session = self._existing(event.session_id, "Subagent stop")
        if session is None or session.subagents.pop(event.task_tool_id, None) is None:
            return None
        return session.session_id

    def _on_agent_file_updated(self, event: AgentFileUpdated) -> Optional[str]:
        session = self._existing(event.session_id, "Agent file update")
        if session is None:
            return None
        subagent = session.subagents.get(event.task_tool_id)
        if subagent is None:
            return None
        for tool in event.tools:
            subagent.tools[tool.id] = tool
        return session.session_id

    def _on_session_ended(self, event: SessionEnded) -> Optional[str]:
        session = self._existing(event.session_id, "Session end")
        if session is None or session.phase.kind == PhaseKind.ENDED:
            return None
        session.phase = SessionPhase.ended()
        session.subagents.clear()
        return session.session_id
