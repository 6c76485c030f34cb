"""Unit tests for session models and lifecycle event parsing."""

from datetime import datetime

import pytest

from island.models import (
    EditorInstance,
    HookEvent,
    PaneTarget,
    PermissionContext,
    PhaseKind,
    Session,
    SessionPhase,
    ToolResult,
    ToolStatus,
)


class TestSessionPhase:
    def test_waiting_for_approval_requires_permission(self):
        with pytest.raises(ValueError):
            SessionPhase(PhaseKind.WAITING_FOR_APPROVAL)

    def test_other_phases_reject_permission(self):
        ctx = PermissionContext(tool_use_id="t1", tool_name="Bash")
        with pytest.raises(ValueError):
            SessionPhase(PhaseKind.PROCESSING, ctx)

    def test_to_dict_includes_permission(self):
        ctx = PermissionContext(tool_use_id="t1", tool_name="Bash", tool_input={"command": "ls"})
        data = SessionPhase.waiting_for_approval(ctx).to_dict()
        assert data["kind"] == "waiting_for_approval"
        assert data["permission"]["tool_name"] == "Bash"
        assert data["permission"]["tool_input"] == {"command": "ls"}

    def test_equality_is_structural(self):
        assert SessionPhase.idle() == SessionPhase.idle()
        assert SessionPhase.idle() != SessionPhase.processing()


class TestPaneTarget:
    def test_parse(self):
        target = PaneTarget.from_string("work:2.1")
        assert target == PaneTarget(session="work", window="2", pane="1")
        assert target.target_string == "work:2.1"

    def test_session_name_with_colon(self):
        target = PaneTarget.from_string("a:b:0.3")
        assert target.session == "a:b"
        assert target.pane == "3"

    @pytest.mark.parametrize("raw", ["", "work", "work:2", ":1.0", "work:.1", "work:1."])
    def test_malformed(self, raw):
        assert PaneTarget.from_string(raw) is None


class TestHookEvent:
    def test_requires_session_id(self):
        with pytest.raises(ValueError):
            HookEvent.from_payload({"event_name": "Stop"})

    def test_malformed_optional_fields_dropped(self):
        event = HookEvent.from_payload({
            "session_id": "abc",
            "pid": "not-a-pid",
            "editor_pid": True,
            "tool_input": "oops",
            "cwd": "",
        })
        assert event.pid is None
        assert event.editor_pid is None
        assert event.tool_input is None
        assert event.cwd is None

    def test_numeric_strings_accepted(self):
        event = HookEvent.from_payload({"session_id": "abc", "pid": "4242"})
        assert event.pid == 4242

    def test_precompact_wins(self):
        event = HookEvent.from_payload({
            "session_id": "abc",
            "event_name": "PreCompact",
            "status": "waiting_for_approval",
            "tool": "Bash",
        })
        assert event.determine_phase().kind == PhaseKind.COMPACTING

    def test_permission_request_with_tool(self):
        event = HookEvent.from_payload({
            "session_id": "abc",
            "event_name": "PermissionRequest",
            "tool": "Edit",
            "tool_use_id": "toolu_1",
            "tool_input": {"file_path": "/tmp/x"},
        })
        phase = event.determine_phase()
        assert phase.kind == PhaseKind.WAITING_FOR_APPROVAL
        assert phase.permission.tool_use_id == "toolu_1"
        assert phase.permission.tool_input == {"file_path": "/tmp/x"}

    def test_permission_request_without_tool_falls_through(self):
        event = HookEvent.from_payload({
            "session_id": "abc",
            "event_name": "PermissionRequest",
            "status": "processing",
        })
        assert event.determine_phase().kind == PhaseKind.PROCESSING

    def test_idle_prompt_notification(self):
        event = HookEvent.from_payload({
            "session_id": "abc",
            "event_name": "Notification",
            "notification_type": "idle_prompt",
            "status": "waiting_for_input",
        })
        assert event.determine_phase().kind == PhaseKind.IDLE

    @pytest.mark.parametrize("status,kind", [
        ("waiting_for_input", PhaseKind.WAITING_FOR_INPUT),
        ("running_tool", PhaseKind.PROCESSING),
        ("processing", PhaseKind.PROCESSING),
        ("starting", PhaseKind.PROCESSING),
        ("compacting", PhaseKind.COMPACTING),
        ("ended", PhaseKind.ENDED),
        ("something_new", PhaseKind.IDLE),
        (None, PhaseKind.IDLE),
    ])
    def test_status_mapping(self, status, kind):
        payload = {"session_id": "abc"}
        if status is not None:
            payload["status"] = status
        assert HookEvent.from_payload(payload).determine_phase().kind == kind


class TestEditorInstance:
    def test_from_registry_entry(self):
        instance = EditorInstance.from_registry_entry({
            "pid": 100,
            "listenAddress": "/tmp/nvim.100.0",
            "cwd": "/repo",
            "registeredAt": "2024-01-15T10:00:00Z",
            "tmuxSession": "work",
            "tmuxPane": 2,
        })
        assert instance.pid == 100
        assert instance.listen_address == "/tmp/nvim.100.0"
        assert instance.tmux_pane == "2"
        assert instance.has_pane_info
        assert instance.registered_at.year == 2024

    def test_endpoint_alias(self):
        instance = EditorInstance.from_registry_entry({"pid": 1, "endpoint": "127.0.0.1:6666"})
        assert instance.listen_address == "127.0.0.1:6666"
        assert not instance.has_pane_info

    def test_missing_address_rejected(self):
        with pytest.raises(ValueError):
            EditorInstance.from_registry_entry({"pid": 1})

    def test_bad_timestamp_ignored(self):
        instance = EditorInstance.from_registry_entry(
            {"pid": 1, "listenAddress": "/s", "registeredAt": "yesterday"}
        )
        assert instance.registered_at is None


def test_tool_result_status():
    assert ToolResult("t1").status == ToolStatus.SUCCESS
    assert ToolResult("t1", is_error=True).status == ToolStatus.ERROR
    assert ToolResult("t1", is_error=True, is_interrupted=True).status == ToolStatus.INTERRUPTED


def test_session_to_dict():
    session = Session(session_id="abc", cwd="/repo", pane_id="%3")
    session.completed_tool_ids = {"b", "a"}
    data = session.to_dict()
    assert data["phase"]["kind"] == "idle"
    assert data["editor_status"] == "unknown"
    assert data["completed_tool_ids"] == ["a", "b"]
    assert session.is_in_tmux
    assert datetime.fromisoformat(data["created_at"])
