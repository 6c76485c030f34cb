"""Command implementations for the island CLI."""

import json
import os
import sys
from typing import Optional, TextIO

from .client import IslandClient

# Claude Code hook event -> lifecycle status tag
HOOK_STATUS = {
    "UserPromptSubmit": "processing",
    "PreToolUse": "running_tool",
    "PostToolUse": "processing",
    "PostToolUseFailure": "processing",
    "PermissionRequest": "waiting_for_approval",
    "Stop": "waiting_for_input",
    "SessionStart": "waiting_for_input",
    "PreCompact": "compacting",
    "SessionEnd": "ended",
}

# Notification subtype -> status tag; other subtypes leave the phase alone
NOTIFICATION_STATUS = {
    "idle_prompt": "idle",
    "elicitation_dialog": "waiting_for_input",
}


def hook_status(event_name: str, notification_type: Optional[str] = None) -> Optional[str]:
    """
    Status tag for a hook event.

    None means the event says nothing about the phase (permission_prompt
    notifications, SubagentStart/SubagentStop, unknown events); the server
    then keeps the session's current phase.
    """
    if event_name == "Notification":
        return NOTIFICATION_STATUS.get(notification_type)
    return HOOK_STATUS.get(event_name)


def build_hook_payload(raw: dict, env: Optional[dict] = None, parent_pid: Optional[int] = None) -> dict:
    """
    Translate a Claude Code hook JSON object into a lifecycle event.

    Args:
        raw: Hook input as read from stdin
        env: Environment to read TMUX_PANE / NVIM from (default os.environ)
        parent_pid: pid of the agent process (default: our parent)
    """
    env = os.environ if env is None else env
    event_name = raw.get("hook_event_name") or raw.get("event_name") or ""
    notification_type = raw.get("notification_type")

    payload = {
        "session_id": raw.get("session_id"),
        "event_name": event_name,
        "status": hook_status(event_name, notification_type),
        "cwd": raw.get("cwd") or os.getcwd(),
        "pid": parent_pid if parent_pid is not None else os.getppid(),
        "tool": raw.get("tool_name"),
        "tool_use_id": raw.get("tool_use_id"),
        "tool_input": raw.get("tool_input"),
        "notification_type": notification_type,
        "message": raw.get("message"),
        "agent_id": raw.get("agent_id"),
    }
    if env.get("TMUX_PANE"):
        payload["pane_id"] = env["TMUX_PANE"]
    if env.get("NVIM"):
        payload["editor_address"] = env["NVIM"]
    return {k: v for k, v in payload.items() if v is not None}


def cmd_hook(client: IslandClient, stdin: Optional[TextIO] = None) -> int:
    """
    Forward the hook event on stdin to the server.

    Always exits 0 so a missing server never blocks the agent.
    """
    stdin = stdin or sys.stdin
    try:
        raw = json.load(stdin)
    except json.JSONDecodeError as e:
        print(f"island hook: invalid hook JSON: {e}", file=sys.stderr)
        return 0
    if not isinstance(raw, dict) or not raw.get("session_id"):
        print("island hook: no session_id in hook input", file=sys.stderr)
        return 0

    success, unavailable = client.send_hook(build_hook_payload(raw))
    if unavailable:
        print("island hook: server unavailable", file=sys.stderr)
    elif not success:
        print("island hook: server rejected event", file=sys.stderr)
    return 0


def format_session_line(session: dict) -> str:
    phase = session.get("phase", {}).get("kind", "?")
    permission = session.get("phase", {}).get("permission")
    where = session.get("pane_id") or "-"
    if session.get("is_in_editor"):
        where = f"editor:{session.get('editor_status', 'unknown')}"
    line = f"{session['session_id'][:8]}  {phase:<20} {where:<20} {session.get('cwd', '')}"
    if permission:
        line += f"\n          awaiting approval: {permission.get('tool_name')}"
    return line


def cmd_list(client: IslandClient) -> int:
    """
    List tracked sessions.

    Exit codes:
        0: Success
        2: Server unavailable
    """
    sessions = client.list_sessions()
    if sessions is None:
        print("Error: Claude Island server unavailable", file=sys.stderr)
        return 2
    if not sessions:
        print("No sessions")
        return 0
    for session in sessions:
        print(format_session_line(session))
    return 0


def _report(success: bool, unavailable: bool, action: str, session_id: str) -> int:
    if unavailable:
        print("Error: Claude Island server unavailable", file=sys.stderr)
        return 2
    if not success:
        print(f"Error: failed to {action} for {session_id}", file=sys.stderr)
        return 1
    return 0


def cmd_approve(client: IslandClient, session_id: str, always: bool = False) -> int:
    success, unavailable = client.approve(session_id, always=always)
    code = _report(success, unavailable, "approve", session_id)
    if code == 0:
        print(f"Approved{' (always)' if always else ''}: {session_id[:8]}")
    return code


def cmd_deny(client: IslandClient, session_id: str, message: Optional[str] = None) -> int:
    success, unavailable = client.deny(session_id, message=message)
    code = _report(success, unavailable, "deny", session_id)
    if code == 0:
        print(f"Denied: {session_id[:8]}")
    return code


def cmd_send(client: IslandClient, session_id: str, text: str) -> int:
    if not text:
        print("Error: nothing to send", file=sys.stderr)
        return 1
    success, unavailable = client.send_input(session_id, text)
    code = _report(success, unavailable, "send input", session_id)
    if code == 0:
        print(f"Sent to {session_id[:8]}")
    return code
