"""Data models for Claude Island session tracking."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union


class PhaseKind(Enum):
    """Session phase discriminator."""
    IDLE = "idle"
    PROCESSING = "processing"
    WAITING_FOR_APPROVAL = "waiting_for_approval"
    WAITING_FOR_INPUT = "waiting_for_input"
    COMPACTING = "compacting"
    ENDED = "ended"


class EditorConnectionStatus(Enum):
    """Connection status between the island and a companion editor terminal."""
    UNKNOWN = "unknown"            # Not checked yet
    CHECKING = "checking"          # Health check in flight
    CONNECTED = "connected"        # Ping answered
    DISCONNECTED = "disconnected"  # Ping failed or timed out


class ToolStatus(Enum):
    """Outcome of a tool call as seen in the transcript."""
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    INTERRUPTED = "interrupted"


@dataclass(frozen=True)
class PermissionContext:
    """A tool call waiting for the user to approve or deny it."""
    tool_use_id: str
    tool_name: str
    tool_input: Optional[dict] = None
    received_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "tool_use_id": self.tool_use_id,
            "tool_name": self.tool_name,
            "tool_input": self.tool_input,
            "received_at": self.received_at.isoformat(),
        }


@dataclass(frozen=True)
class SessionPhase:
    """
    Tagged union over PhaseKind.

    Only WAITING_FOR_APPROVAL carries a payload (the permission context).
    """
    kind: PhaseKind
    permission: Optional[PermissionContext] = None

    def __post_init__(self):
        if self.kind == PhaseKind.WAITING_FOR_APPROVAL and self.permission is None:
            raise ValueError("waiting_for_approval requires a permission context")
        if self.kind != PhaseKind.WAITING_FOR_APPROVAL and self.permission is not None:
            raise ValueError(f"{self.kind.value} cannot carry a permission context")

    @classmethod
    def idle(cls) -> "SessionPhase":
        return cls(PhaseKind.IDLE)

    @classmethod
    def processing(cls) -> "SessionPhase":
        return cls(PhaseKind.PROCESSING)

    @classmethod
    def waiting_for_approval(cls, context: PermissionContext) -> "SessionPhase":
        return cls(PhaseKind.WAITING_FOR_APPROVAL, context)

    @classmethod
    def waiting_for_input(cls) -> "SessionPhase":
        return cls(PhaseKind.WAITING_FOR_INPUT)

    @classmethod
    def compacting(cls) -> "SessionPhase":
        return cls(PhaseKind.COMPACTING)

    @classmethod
    def ended(cls) -> "SessionPhase":
        return cls(PhaseKind.ENDED)

    @property
    def is_waiting_for_approval(self) -> bool:
        return self.kind == PhaseKind.WAITING_FOR_APPROVAL

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "permission": self.permission.to_dict() if self.permission else None,
        }


@dataclass(frozen=True)
class PaneTarget:
    """A tmux pane address: session:window.pane."""
    session: str
    window: str
    pane: str

    @classmethod
    def from_string(cls, target: str) -> Optional["PaneTarget"]:
        """Parse 'session:window.pane'. Returns None if malformed."""
        session, sep, rest = target.strip().rpartition(":")
        if not sep or not session:
            return None
        window, dot, pane = rest.partition(".")
        if not dot or not window or not pane:
            return None
        return cls(session=session, window=window, pane=pane)

    @property
    def target_string(self) -> str:
        return f"{self.session}:{self.window}.{self.pane}"

    def __str__(self) -> str:
        return self.target_string


@dataclass(frozen=True)
class PaneInfo:
    """One row of `tmux list-panes -a`."""
    pane_id: str
    target: PaneTarget
    pane_pid: Optional[int]
    current_path: str


@dataclass(frozen=True)
class ProcessNode:
    """A process as seen in one point-in-time snapshot."""
    pid: int
    ppid: int
    name: str


@dataclass
class EditorInstance:
    """A companion editor process and its RPC endpoint."""
    pid: int
    listen_address: str
    cwd: Optional[str] = None
    registered_at: Optional[datetime] = None
    tmux_session: Optional[str] = None
    tmux_window: Optional[str] = None
    tmux_pane: Optional[str] = None
    source: str = "registry"  # registry, pid, scan, tmux
    checked_at: Optional[datetime] = None

    @property
    def has_pane_info(self) -> bool:
        return self.tmux_session is not None or self.tmux_pane is not None

    @classmethod
    def from_registry_entry(cls, data: dict) -> "EditorInstance":
        """Build from one entry of the registry file's `instances` list."""
        registered_at = data.get("registeredAt")
        if isinstance(registered_at, str):
            try:
                registered_at = datetime.fromisoformat(registered_at.replace("Z", "+00:00"))
            except ValueError:
                registered_at = None
        elif isinstance(registered_at, (int, float)):
            registered_at = datetime.fromtimestamp(registered_at)
        else:
            registered_at = None

        address = data.get("listenAddress") or data.get("endpoint")
        if "pid" not in data or not address:
            raise ValueError("registry entry needs pid and listenAddress")

        def _opt_str(key: str) -> Optional[str]:
            value = data.get(key)
            return str(value) if value is not None else None

        return cls(
            pid=int(data["pid"]),
            listen_address=str(address),
            cwd=data.get("cwd"),
            registered_at=registered_at,
            tmux_session=_opt_str("tmuxSession"),
            tmux_window=_opt_str("tmuxWindow"),
            tmux_pane=_opt_str("tmuxPane"),
            source="registry",
        )

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "listen_address": self.listen_address,
            "cwd": self.cwd,
            "registered_at": self.registered_at.isoformat() if self.registered_at else None,
            "tmux_session": self.tmux_session,
            "tmux_window": self.tmux_window,
            "tmux_pane": self.tmux_pane,
            "source": self.source,
        }


@dataclass(frozen=True)
class ToolUse:
    """A tool_use block inside an assistant message."""
    id: str
    name: str
    input: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ChatMessage:
    """One user/assistant record from a transcript."""
    id: str
    role: str  # user, assistant
    text: str = ""
    timestamp: Optional[datetime] = None
    tool_uses: tuple[ToolUse, ...] = ()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "text": self.text,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "tool_uses": [{"id": t.id, "name": t.name, "input": t.input} for t in self.tool_uses],
        }


@dataclass(frozen=True)
class ToolResult:
    """A tool_result block, keyed by the tool_use_id it answers."""
    tool_use_id: str
    content: str = ""
    is_error: bool = False
    is_interrupted: bool = False
    structured: Optional[dict] = None  # toolUseResult payload, if any

    @property
    def status(self) -> ToolStatus:
        if self.is_interrupted:
            return ToolStatus.INTERRUPTED
        if self.is_error:
            return ToolStatus.ERROR
        return ToolStatus.SUCCESS


@dataclass(frozen=True)
class SubagentToolInfo:
    """A tool call made inside a subagent transcript."""
    id: str
    name: str
    input: dict = field(default_factory=dict)
    status: ToolStatus = ToolStatus.RUNNING


@dataclass
class SubagentState:
    """A running Task (subagent) tool and the tools it has used so far."""
    task_tool_id: str
    agent_id: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.now)
    tools: dict[str, SubagentToolInfo] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "task_tool_id": self.task_tool_id,
            "agent_id": self.agent_id,
            "started_at": self.started_at.isoformat(),
            "tools": [
                {"id": t.id, "name": t.name, "status": t.status.value}
                for t in self.tools.values()
            ],
        }


@dataclass
class Session:
    """A Claude Code session as tracked by the store."""
    session_id: str
    cwd: str = ""
    pid: Optional[int] = None
    tty: Optional[str] = None
    pane_id: Optional[str] = None  # tmux pane id, e.g. "%3"
    is_in_editor: bool = False
    editor_pid: Optional[int] = None
    editor_address: Optional[str] = None
    editor_status: EditorConnectionStatus = EditorConnectionStatus.UNKNOWN
    phase: SessionPhase = field(default_factory=SessionPhase.idle)
    created_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)
    completed_tool_ids: set[str] = field(default_factory=set)
    tool_results: dict[str, ToolResult] = field(default_factory=dict)
    messages: list[ChatMessage] = field(default_factory=list)
    subagents: dict[str, SubagentState] = field(default_factory=dict)
    last_event: Optional[str] = None

    # Stale cleanup streak (owned by the store)
    stale_candidate_since: Optional[datetime] = None
    stale_candidate_count: int = 0

    @property
    def permission(self) -> Optional[PermissionContext]:
        return self.phase.permission

    @property
    def is_in_tmux(self) -> bool:
        return bool(self.pane_id)

    def to_dict(self) -> dict:
        """Convert session to dictionary for JSON serialization."""
        return {
            "session_id": self.session_id,
            "cwd": self.cwd,
            "pid": self.pid,
            "tty": self.tty,
            "pane_id": self.pane_id,
            "is_in_editor": self.is_in_editor,
            "editor_pid": self.editor_pid,
            "editor_address": self.editor_address,
            "editor_status": self.editor_status.value,
            "phase": self.phase.to_dict(),
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "completed_tool_ids": sorted(self.completed_tool_ids),
            "message_count": len(self.messages),
            "subagents": [s.to_dict() for s in self.subagents.values()],
            "last_event": self.last_event,
        }


def _opt_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    return str(value)


@dataclass(frozen=True)
class HookEvent:
    """A lifecycle event received over the local socket."""
    session_id: str
    event_name: str = ""
    status: Optional[str] = None
    cwd: Optional[str] = None
    pid: Optional[int] = None
    tty: Optional[str] = None
    tool: Optional[str] = None
    tool_use_id: Optional[str] = None
    tool_input: Optional[dict] = None
    notification_type: Optional[str] = None
    message: Optional[str] = None
    pane_id: Optional[str] = None
    editor_pid: Optional[int] = None
    editor_address: Optional[str] = None
    agent_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "HookEvent":
        """
        Build a HookEvent from an untrusted payload.

        Malformed optional fields are dropped rather than rejected; only
        session_id is required.
        """
        session_id = _opt_str(payload.get("session_id"))
        if not session_id:
            raise ValueError("lifecycle event has no session_id")

        tool_input = payload.get("tool_input")
        if not isinstance(tool_input, dict):
            tool_input = None

        return cls(
            session_id=session_id,
            event_name=_opt_str(payload.get("event_name") or payload.get("event")) or "",
            status=_opt_str(payload.get("status")),
            cwd=_opt_str(payload.get("cwd")),
            pid=_opt_int(payload.get("pid")),
            tty=_opt_str(payload.get("tty")),
            tool=_opt_str(payload.get("tool")),
            tool_use_id=_opt_str(payload.get("tool_use_id")),
            tool_input=tool_input,
            notification_type=_opt_str(payload.get("notification_type")),
            message=_opt_str(payload.get("message")),
            pane_id=_opt_str(payload.get("pane_id")),
            editor_pid=_opt_int(payload.get("editor_pid")),
            editor_address=_opt_str(payload.get("editor_address")),
            agent_id=_opt_str(payload.get("agent_id")),
        )

    @property
    def expects_response(self) -> bool:
        """Whether the agent is blocked on a permission decision."""
        return self.event_name == "PermissionRequest" or self.status == "waiting_for_approval"

    @property
    def carries_phase(self) -> bool:
        """Whether this event says anything about the session's phase."""
        if self.event_name == "PreCompact" or self.status is not None:
            return True
        if self.expects_response and self.tool:
            return True
        return self.event_name == "Notification" and self.notification_type == "idle_prompt"

    def determine_phase(self) -> SessionPhase:
        """Phase implied by this event alone (highest-priority rule first)."""
        if self.event_name == "PreCompact":
            return SessionPhase.compacting()

        if self.expects_response and self.tool:
            return SessionPhase.waiting_for_approval(PermissionContext(
                tool_use_id=self.tool_use_id or "",
                tool_name=self.tool,
                tool_input=self.tool_input,
                received_at=datetime.now(),
            ))

        if self.event_name == "Notification" and self.notification_type == "idle_prompt":
            return SessionPhase.idle()

        if self.status == "waiting_for_input":
            return SessionPhase.waiting_for_input()
        if self.status in ("running_tool", "processing", "starting"):
            return SessionPhase.processing()
        if self.status == "compacting":
            return SessionPhase.compacting()
        if self.status == "ended":
            return SessionPhase.ended()
        return SessionPhase.idle()


@dataclass(frozen=True)
class FileUpdatePayload:
    """A structured delta read from a session transcript."""
    session_id: str
    cwd: str
    messages: tuple[ChatMessage, ...] = ()
    is_incremental: bool = True  # False: messages/tool state replace prior state
    completed_tool_ids: frozenset[str] = frozenset()
    tool_results: dict[str, ToolResult] = field(default_factory=dict)
    agent_ids: dict[str, str] = field(default_factory=dict)  # task tool_use_id -> agent id


# Store events. The store accepts exactly these types.

@dataclass(frozen=True)
class HookReceived:
    hook: HookEvent

    @property
    def session_id(self) -> str:
        return self.hook.session_id


@dataclass(frozen=True)
class FileUpdated:
    payload: FileUpdatePayload

    @property
    def session_id(self) -> str:
        return self.payload.session_id


@dataclass(frozen=True)
class ToolCompleted:
    session_id: str
    tool_use_id: str
    result: ToolResult


@dataclass(frozen=True)
class InterruptDetected:
    session_id: str


@dataclass(frozen=True)
class ClearDetected:
    session_id: str


@dataclass(frozen=True)
class EditorStatusChanged:
    session_id: str
    status: EditorConnectionStatus


@dataclass(frozen=True)
class EditorRediscoveryRequested:
    session_id: str


@dataclass(frozen=True)
class PermissionApproved:
    session_id: str
    tool_use_id: str


@dataclass(frozen=True)
class PermissionDenied:
    session_id: str
    tool_use_id: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class PermissionSocketFailed:
    session_id: str
    tool_use_id: str


@dataclass(frozen=True)
class StaleCandidateEvaluated:
    session_id: str
    is_candidate: bool
    evaluated_at: datetime
    threshold_seconds: float


@dataclass(frozen=True)
class SubagentStarted:
    session_id: str
    task_tool_id: Optional[str]  # None: bind agent_id to the oldest unbound subagent
    agent_id: Optional[str] = None


@dataclass(frozen=True)
class SubagentStopped:
    session_id: str
    task_tool_id: str


@dataclass(frozen=True)
class AgentFileUpdated:
    session_id: str
    task_tool_id: str
    tools: tuple[SubagentToolInfo, ...] = ()


@dataclass(frozen=True)
class SessionEnded:
    session_id: str


SessionEvent = Union[
    HookReceived,
    FileUpdated,
    ToolCompleted,
    InterruptDetected,
    ClearDetected,
    EditorStatusChanged,
    EditorRediscoveryRequested,
    PermissionApproved,
    PermissionDenied,
    PermissionSocketFailed,
    StaleCandidateEvaluated,
    SubagentStarted,
    SubagentStopped,
    AgentFileUpdated,
    SessionEnded,
]
