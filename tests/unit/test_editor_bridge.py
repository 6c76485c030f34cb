"""Unit tests for editor discovery and the RPC bridge."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from factories import pane
from island.editor_bridge import (
    EditorBridge,
    EditorRegistryReader,
    EditorResolver,
    EmptyTextError,
    NoEditorInstanceError,
    RegistryDecodeError,
    RPCDecodeError,
    RPCFailedError,
    RPCTimeoutError,
    extract_json,
)
from island.models import EditorConnectionStatus, EditorInstance, Session
from island.process_runner import CommandTimeoutError, ProcessResult, ProcessRunner
from island.process_tree import ProcessTree

ALIVE = {100, 200, 300, 400}


@pytest.fixture(autouse=True)
def fake_liveness(monkeypatch):
    monkeypatch.setattr("island.editor_bridge.is_process_alive", lambda pid: pid in ALIVE)


def write_registry(path, instances):
    path.write_text(json.dumps({"instances": instances}))


def rpc_runner(data=None, ok=True, error=None, noise="", trace_id=None):
    """Runner whose helper echoes the envelope trace id back."""
    runner = MagicMock(spec=ProcessRunner)

    async def run(*args, **kwargs):
        envelope = json.loads(args[-1])
        response = {
            "trace_id": trace_id or envelope["trace_id"],
            "ok": ok,
            "error": error,
            "data": data,
        }
        return ProcessResult(0, noise + json.dumps(response) + noise, "")

    runner.run = AsyncMock(side_effect=run)
    return runner


def test_extract_json():
    assert extract_json('\x1b[0mnoise {"a": {"b": 1}} trailing') == '{"a": {"b": 1}}'
    assert extract_json("nothing here") == "{}"


class TestRegistryReader:
    def test_missing_file_is_empty(self, tmp_path):
        reader = EditorRegistryReader(path=str(tmp_path / "none.json"), ttl_seconds=0)
        assert reader.load() == []

    def test_skips_malformed_entries(self, tmp_path):
        path = tmp_path / "registry.json"
        write_registry(path, [
            {"pid": 100, "listenAddress": "/tmp/nvim.100.0", "cwd": "/repo"},
            {"pid": 200},
            "not-a-dict",
        ])
        instances = EditorRegistryReader(path=str(path), ttl_seconds=0).load()
        assert [i.pid for i in instances] == [100]

    def test_bad_json_raises(self, tmp_path):
        path = tmp_path / "registry.json"
        path.write_text("{not json")
        with pytest.raises(RegistryDecodeError):
            EditorRegistryReader(path=str(path), ttl_seconds=0).load()

    def test_missing_instances_list_raises(self, tmp_path):
        path = tmp_path / "registry.json"
        path.write_text(json.dumps({"version": 1}))
        with pytest.raises(RegistryDecodeError):
            EditorRegistryReader(path=str(path), ttl_seconds=0).load()

    def test_cached_within_ttl(self, tmp_path):
        path = tmp_path / "registry.json"
        write_registry(path, [{"pid": 100, "listenAddress": "/a"}])
        reader = EditorRegistryReader(path=str(path), ttl_seconds=60)
        assert len(reader.load()) == 1
        write_registry(path, [])
        assert len(reader.load()) == 1
        reader.invalidate()
        assert reader.load() == []


class TestResolver:
    @pytest.fixture
    def registry_path(self, tmp_path):
        return tmp_path / "registry.json"

    @pytest.fixture
    def make_resolver(self, registry_path, config, tree_builder_for, mock_tmux):
        def _make(tree=None, runner=None):
            registry = EditorRegistryReader(path=str(registry_path), ttl_seconds=0)
            return EditorResolver(
                registry,
                tree_builder_for(tree or ProcessTree.from_edges({})),
                tmux=mock_tmux,
                runner=runner or MagicMock(spec=ProcessRunner),
                config=config,
            )
        return _make

    def test_prefers_cwd_match_with_pane_info(self, registry_path, make_resolver):
        write_registry(registry_path, [
            {"pid": 100, "listenAddress": "/a", "cwd": "/repo"},
            {"pid": 200, "listenAddress": "/b", "cwd": "/repo", "tmuxSession": "work"},
            {"pid": 300, "listenAddress": "/c", "cwd": "/other"},
        ])
        instance = make_resolver().from_registry(Session(session_id="s", cwd="/repo"))
        assert instance.pid == 200

    def test_newest_of_several_cwd_matches(self, registry_path, make_resolver):
        write_registry(registry_path, [
            {"pid": 100, "listenAddress": "/a", "cwd": "/repo", "registeredAt": "2024-01-01T00:00:00Z"},
            {"pid": 200, "listenAddress": "/b", "cwd": "/repo", "registeredAt": "2024-06-01T00:00:00Z"},
        ])
        instance = make_resolver().from_registry(Session(session_id="s", cwd="/repo"))
        assert instance.pid == 200

    def test_sole_alive_instance(self, registry_path, make_resolver):
        write_registry(registry_path, [
            {"pid": 100, "listenAddress": "/a", "cwd": "/elsewhere"},
            {"pid": 999, "listenAddress": "/dead", "cwd": "/repo"},
        ])
        instance = make_resolver().from_registry(Session(session_id="s", cwd="/repo"))
        assert instance.pid == 100

    def test_ambiguous_without_cwd_match(self, registry_path, make_resolver):
        write_registry(registry_path, [
            {"pid": 100, "listenAddress": "/a", "cwd": "/x"},
            {"pid": 200, "listenAddress": "/b", "cwd": "/y"},
        ])
        assert make_resolver().from_registry(Session(session_id="s", cwd="/repo")) is None

    def test_corrupt_registry_is_a_miss(self, registry_path, make_resolver):
        registry_path.write_text("garbage")
        assert make_resolver().from_registry(Session(session_id="s", cwd="/repo")) is None

    def test_detect_editor_ancestor(self, make_resolver):
        tree = ProcessTree.from_edges({300: 1, 310: 300, 320: 310}, names={300: "nvim", 310: "zsh", 320: "claude"})
        assert make_resolver().detect_editor_ancestor(320, tree) == 300

    @pytest.mark.asyncio
    async def test_resolve_from_session_pid(self, make_resolver):
        tree = ProcessTree.from_edges({300: 1}, names={300: "nvim"})
        resolver = make_resolver(tree=tree)
        session = Session(session_id="s", cwd="/repo", editor_pid=300, editor_address="/tmp/nvim.300.0")
        instance = await resolver.resolve(session)
        assert instance.pid == 300
        assert instance.source == "pid"
        assert instance.checked_at is not None

    @pytest.mark.asyncio
    async def test_resolve_from_tmux_scan(self, make_resolver, mock_tmux):
        tree = ProcessTree.from_edges({400: 1, 410: 400, 420: 410}, names={400: "zsh", 420: "nvim"})
        ALIVE.add(420)
        try:
            mock_tmux.list_panes.return_value = [pane("%5", "work:3.0", 400, "/repo")]
            runner = MagicMock(spec=ProcessRunner)
            runner.run = AsyncMock(return_value=ProcessResult(0, "p420\nn/run/user/1/nvim.420.0\n", ""))
            resolver = make_resolver(tree=tree, runner=runner)
            resolver.cwd_for = AsyncMock(return_value="/nope")

            instance = await resolver.resolve(Session(session_id="s", cwd="/repo"))
            assert instance.pid == 420
            assert instance.listen_address == "/run/user/1/nvim.420.0"
            assert instance.tmux_session == "work"
            assert instance.source == "tmux"
        finally:
            ALIVE.discard(420)

    @pytest.mark.asyncio
    async def test_resolve_nothing(self, make_resolver):
        assert await make_resolver().resolve(Session(session_id="s", cwd="/repo")) is None

    @pytest.mark.asyncio
    async def test_list_available_instances(self, registry_path, make_resolver):
        write_registry(registry_path, [
            {"pid": 100, "listenAddress": "/a"},
            {"pid": 999, "listenAddress": "/b"},
        ])
        resolver = make_resolver()
        listing = await resolver.list_available_instances()
        assert [e["state"] for e in listing["registry"]] == ["RUNNING", "DEAD"]
        assert listing["processes"] == []


class TestBridge:
    INSTANCE = EditorInstance(pid=100, listen_address="/tmp/nvim.100.0")

    def make_bridge(self, runner, config, instance=INSTANCE):
        resolver = MagicMock(spec=EditorResolver)
        resolver.resolve = AsyncMock(return_value=instance)
        return EditorBridge(resolver, runner=runner, config=config)

    @pytest.mark.asyncio
    async def test_envelope_and_helper_args(self, config):
        runner = rpc_runner(data={"injected_bytes": 5})
        bridge = self.make_bridge(runner, config)
        response = await bridge.send_text(Session(session_id="sess-1"), "hello")
        assert response.data.injected_bytes == 5

        args = runner.run.await_args.args
        assert args[-3] == "/tmp/nvim.100.0"
        assert "handle_rpc" in args[-2]
        envelope = json.loads(args[-1])
        assert envelope["action"] == "send_text"
        assert envelope["source"] == "claudeisland"
        assert envelope["nvim_pid"] == 100
        assert envelope["payload"] == {"text": "hello", "mode": "append_and_enter", "ensure_terminal": True}

    @pytest.mark.asyncio
    async def test_terminal_noise_tolerated(self, config):
        bridge = self.make_bridge(rpc_runner(data={"pong": True}, noise="\x1b[?25h"), config)
        assert await bridge.ping(self.INSTANCE, "sess-1")

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self, config):
        runner = rpc_runner()
        bridge = self.make_bridge(runner, config)
        with pytest.raises(EmptyTextError):
            await bridge.send_text(Session(session_id="sess-1"), "")
        runner.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_trace_id_mismatch(self, config):
        bridge = self.make_bridge(rpc_runner(trace_id="someone-else"), config)
        with pytest.raises(RPCDecodeError):
            await bridge.call_rpc(self.INSTANCE, "sess-1", "ping")

    @pytest.mark.asyncio
    async def test_garbage_output(self, config):
        runner = MagicMock(spec=ProcessRunner)
        runner.run = AsyncMock(return_value=ProcessResult(0, "E5108: lua error", ""))
        with pytest.raises(RPCDecodeError):
            await self.make_bridge(runner, config).call_rpc(self.INSTANCE, "sess-1", "ping")

        runner.run = AsyncMock(return_value=ProcessResult(1, "", "connection refused"))
        with pytest.raises(RPCFailedError):
            await self.make_bridge(runner, config).call_rpc(self.INSTANCE, "sess-1", "ping")

    @pytest.mark.asyncio
    async def test_timeout(self, config):
        runner = MagicMock(spec=ProcessRunner)
        runner.run = AsyncMock(side_effect=CommandTimeoutError("python3", 1))
        with pytest.raises(RPCTimeoutError):
            await self.make_bridge(runner, config).call_rpc(self.INSTANCE, "sess-1", "ping")

    @pytest.mark.asyncio
    async def test_not_ok_response_raises(self, config):
        bridge = self.make_bridge(rpc_runner(ok=False, error="terminal not found"), config)
        with pytest.raises(RPCFailedError, match="terminal not found"):
            await bridge.send_text(Session(session_id="sess-1"), "hi")

    @pytest.mark.asyncio
    async def test_no_instance(self, config):
        bridge = self.make_bridge(rpc_runner(), config, instance=None)
        with pytest.raises(NoEditorInstanceError):
            await bridge.focus_terminal(Session(session_id="sess-1"))

    @pytest.mark.asyncio
    async def test_check_connection(self, config):
        bridge = self.make_bridge(rpc_runner(data={"pong": True}), config)
        assert await bridge.check_connection(Session(session_id="sess-1")) == EditorConnectionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_check_connection_failure_forgets_instance(self, config):
        runner = MagicMock(spec=ProcessRunner)
        runner.run = AsyncMock(side_effect=CommandTimeoutError("python3", 1))
        bridge = self.make_bridge(runner, config)
        status = await bridge.check_connection(Session(session_id="sess-1"))
        assert status == EditorConnectionStatus.DISCONNECTED
        bridge.resolver.forget.assert_called_once_with("sess-1")
