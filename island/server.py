"""FastAPI server for lifecycle hooks and user actions."""

import dataclasses
import logging
import time
from typing import Optional

from fastapi import Body, FastAPI, HTTPException, Request
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from .models import (
    HookEvent,
    HookReceived,
    PermissionSocketFailed,
    SessionEnded,
    SubagentStarted,
    SubagentStopped,
    ToolCompleted,
    ToolResult,
)
from .session_store import SUBAGENT_TOOL_NAMES

logger = logging.getLogger(__name__)


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Log slow requests for debugging."""

    def __init__(self, app, config: Optional[dict] = None):
        super().__init__(app)
        self.config = config or {}

        server_timeouts = self.config.get("timeouts", {}).get("server", {})
        self.slow_threshold = server_timeouts.get("slow_request_threshold_seconds", 1.0)
        self.timing_threshold = server_timeouts.get("request_timing_threshold_seconds", 0.1)

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed = time.monotonic() - start

        if elapsed > self.slow_threshold:
            logger.warning(f"SLOW REQUEST: {request.method} {request.url.path} took {elapsed:.2f}s")
        elif elapsed > self.timing_threshold:
            logger.info(f"Request: {request.method} {request.url.path} took {elapsed*1000:.0f}ms")

        return response


class ApproveRequest(BaseModel):
    """Approve the pending tool."""
    always: bool = False


class DenyRequest(BaseModel):
    """Deny the pending tool, optionally telling the agent why."""
    message: Optional[str] = None


class SendInputRequest(BaseModel):
    """Chat message to type into the session."""
    text: str


class PermissionExpiredRequest(BaseModel):
    """The blocked hook that asked for permission is gone."""
    tool_use_id: Optional[str] = None


def create_app(
    store=None,
    dispatcher=None,
    resolver=None,
    tree_builder=None,
    config: Optional[dict] = None,
    lifespan=None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        store: SessionStore instance
        dispatcher: ActionDispatcher instance
        resolver: EditorResolver instance (ancestor detection, instance listing)
        tree_builder: ProcessTreeBuilder instance
        config: Configuration dictionary
        lifespan: Optional ASGI lifespan context manager

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Claude Island",
        description="Track Claude Code sessions and answer them from one place",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.config = config or {}
    app.add_middleware(RequestTimingMiddleware, config=config)

    app.state.store = store
    app.state.dispatcher = dispatcher
    app.state.resolver = resolver
    app.state.tree_builder = tree_builder

    def _require_store():
        if not app.state.store:
            raise HTTPException(status_code=503, detail="Session store not configured")
        return app.state.store

    def _require_dispatcher():
        if not app.state.dispatcher:
            raise HTTPException(status_code=503, detail="Action dispatcher not configured")
        return app.state.dispatcher

    def _require_session(session_id: str):
        session = _require_store().session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return session

    async def _with_editor_ancestor(hook: HookEvent) -> HookEvent:
        """Fill in editor_pid when the agent runs inside an editor terminal."""
        if not hook.pid or hook.editor_pid or not app.state.resolver or not app.state.tree_builder:
            return hook
        tree = await app.state.tree_builder.build()
        if tree is None:
            return hook
        editor_pid = app.state.resolver.detect_editor_ancestor(hook.pid, tree)
        if editor_pid is None:
            return hook
        logger.debug(f"Session {hook.session_id[:8]} runs inside editor pid {editor_pid}")
        return dataclasses.replace(hook, editor_pid=editor_pid)

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "ok", "service": "claude-island"}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.post("/hooks/claude")
    async def claude_hook(payload: dict = Body(...)):
        """
        Lifecycle event from a Claude Code hook.

        Malformed optional fields are dropped; only session_id is required.
        """
        store = _require_store()
        try:
            hook = HookEvent.from_payload(payload)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        logger.info(f"Hook received: {hook.event_name or 'unknown'} for {hook.session_id[:8]}")
        hook = await _with_editor_ancestor(hook)
        await store.process(HookReceived(hook))

        tool_finished = hook.event_name in ("PostToolUse", "PostToolUseFailure")
        if hook.tool_use_id and hook.tool in SUBAGENT_TOOL_NAMES:
            if hook.event_name == "PreToolUse":
                await store.process(SubagentStarted(hook.session_id, hook.tool_use_id, hook.agent_id))
            elif tool_finished:
                await store.process(SubagentStopped(hook.session_id, hook.tool_use_id))
        elif hook.event_name == "SubagentStart" and hook.agent_id:
            await store.process(SubagentStarted(hook.session_id, hook.tool_use_id, hook.agent_id))

        if tool_finished and hook.tool_use_id:
            is_error = hook.event_name == "PostToolUseFailure" or bool(payload.get("is_error"))
            await store.process(ToolCompleted(
                session_id=hook.session_id,
                tool_use_id=hook.tool_use_id,
                result=ToolResult(tool_use_id=hook.tool_use_id, is_error=is_error),
            ))
        elif hook.event_name == "SessionEnd":
            await store.process(SessionEnded(hook.session_id))

        session = store.session(hook.session_id)
        return {
            "status": "ok",
            "phase": session.phase.kind.value if session else None,
        }

    @app.get("/sessions")
    async def list_sessions():
        """List tracked sessions, most recently active first."""
        store = _require_store()
        return {"sessions": [s.to_dict() for s in store.all_sessions()]}

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str):
        session = _require_session(session_id)
        data = session.to_dict()
        data["messages"] = [m.to_dict() for m in session.messages[-50:]]
        return data

    @app.post("/sessions/{session_id}/approve")
    async def approve(session_id: str, request: Optional[ApproveRequest] = None):
        """Approve the pending tool once, or always."""
        request = request or ApproveRequest()
        _require_session(session_id)
        dispatcher = _require_dispatcher()
        if request.always:
            success = await dispatcher.approve_always(session_id)
        else:
            success = await dispatcher.approve_once(session_id)
        return {"success": success}

    @app.post("/sessions/{session_id}/deny")
    async def deny(session_id: str, request: Optional[DenyRequest] = None):
        """Reject the pending tool."""
        request = request or DenyRequest()
        _require_session(session_id)
        success = await _require_dispatcher().reject(session_id, request.message)
        return {"success": success}

    @app.post("/sessions/{session_id}/input")
    async def send_input(session_id: str, request: SendInputRequest):
        """Type a message into the session and submit it."""
        _require_session(session_id)
        if not request.text:
            raise HTTPException(status_code=400, detail="Text must not be empty")
        success = await _require_dispatcher().send_message(session_id, request.text)
        return {"success": success}

    @app.post("/sessions/{session_id}/focus")
    async def focus(session_id: str):
        """Bring the session's pane or editor terminal to the front."""
        _require_session(session_id)
        success = await _require_dispatcher().focus(session_id)
        return {"success": success}

    @app.post("/sessions/{session_id}/permission/expired")
    async def permission_expired(
        session_id: str,
        request: Optional[PermissionExpiredRequest] = None,
    ):
        """Drop a pending permission whose requesting hook has gone away."""
        request = request or PermissionExpiredRequest()
        session = _require_session(session_id)
        permission = session.permission
        if permission is None:
            return {"success": False}
        tool_use_id = request.tool_use_id or permission.tool_use_id
        await _require_store().process(PermissionSocketFailed(session_id, tool_use_id))
        updated = _require_store().session(session_id)
        return {"success": updated is not None and updated.permission is None}

    @app.get("/editor/instances")
    async def editor_instances():
        """Registry entries with liveness, plus editor processes found by scan."""
        if not app.state.resolver:
            raise HTTPException(status_code=503, detail="Editor resolver not configured")
        return await app.state.resolver.list_available_instances()

    return app
