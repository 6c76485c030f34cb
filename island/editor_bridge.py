"""
Companion editor (Neovim) discovery and RPC bridge.

Sessions running inside an editor terminal are driven through the editor's
RPC surface instead of tmux keystrokes. Discovery tries, in order:
the shared registry file, the pid reported by the hook, a scan of editor
processes by cwd, and a scan of tmux panes whose subtree holds an editor.
"""

import json
import logging
import os
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from .models import EditorConnectionStatus, EditorInstance, Session
from .process_runner import CommandTimeoutError, ProcessExecutorError, ProcessRunner
from .process_tree import ProcessTree, ProcessTreeBuilder
from .tmux_controller import TmuxController

logger = logging.getLogger(__name__)

DEFAULT_LUA_CODE = "local params = ...\nreturn require('{module}').handle_rpc(params)"
RPC_SOURCE = "claudeisland"


class EditorBridgeError(Exception):
    """Base error for editor discovery and RPC."""


class NoEditorInstanceError(EditorBridgeError):
    def __init__(self, session_id: str):
        super().__init__(f"No editor instance found for session {session_id[:8]}")
        self.session_id = session_id


class RPCTimeoutError(EditorBridgeError):
    def __init__(self, timeout: float):
        super().__init__(f"Editor RPC timed out after {timeout}s")
        self.timeout = timeout


class RPCDecodeError(EditorBridgeError):
    pass


class RPCFailedError(EditorBridgeError):
    pass


class EmptyTextError(EditorBridgeError):
    def __init__(self):
        super().__init__("Refusing to send empty text")


class RegistryDecodeError(EditorBridgeError):
    pass


def default_runtime_dir() -> str:
    return os.environ.get("XDG_RUNTIME_DIR") or "/tmp"


def default_registry_path() -> str:
    return os.path.join(default_runtime_dir(), "claude-island-nvim-registry.json")


def extract_json(output: str) -> str:
    """Slice from the first '{' to the last '}' to drop terminal noise."""
    start = output.find("{")
    end = output.rfind("}")
    if start == -1 or end == -1 or end < start:
        return "{}"
    return output[start:end + 1]


def is_process_alive(pid: int) -> bool:
    """Signal-0 liveness probe."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    except OSError:
        return False
    return True


class RPCResponseData(BaseModel):
    nvim_pid: Optional[int] = None
    terminal_ready: Optional[bool] = None
    injected_bytes: Optional[int] = None
    pong: Optional[bool] = None
    focused: Optional[bool] = None
    bufnr: Optional[int] = None
    job_channel: Optional[int] = None
    nvim_listen_address: Optional[str] = None


class RPCResponse(BaseModel):
    trace_id: str
    ok: bool
    error: Optional[str] = None
    data: Optional[RPCResponseData] = None


class EditorRegistryReader:
    """Reads the editor registry file, caching the parsed result for ttl_seconds."""

    def __init__(self, path: Optional[str] = None, ttl_seconds: float = 5.0):
        self.path = Path(os.path.expanduser(path or default_registry_path()))
        self.ttl_seconds = ttl_seconds
        self._cache: Optional[list[EditorInstance]] = None
        self._loaded_at = 0.0

    def invalidate(self):
        self._cache = None

    def load(self) -> list[EditorInstance]:
        """
        Return registered instances.

        A missing file means no instances. Unreadable JSON raises
        RegistryDecodeError; individually malformed entries are skipped.
        """
        now = time.monotonic()
        if self._cache is not None and now - self._loaded_at < self.ttl_seconds:
            return self._cache

        if not self.path.exists():
            self._cache = []
            self._loaded_at = now
            return self._cache

        try:
            data = json.loads(self.path.read_text())
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise RegistryDecodeError(f"Cannot read registry {self.path}: {e}")

        entries = data.get("instances") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            raise RegistryDecodeError(f"Registry {self.path} has no instances list")

        instances = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            try:
                instances.append(EditorInstance.from_registry_entry(entry))
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed registry entry: {e}")

        self._cache = instances
        self._loaded_at = now
        return instances


class EditorResolver:
    """Finds the editor instance hosting a session."""

    def __init__(
        self,
        registry: EditorRegistryReader,
        tree_builder: ProcessTreeBuilder,
        tmux: Optional[TmuxController] = None,
        runner: Optional[ProcessRunner] = None,
        config: Optional[dict] = None,
    ):
        self.registry = registry
        self.tree_builder = tree_builder
        self.tmux = tmux
        self.runner = runner or ProcessRunner()
        self.config = config or {}

        editor_config = self.config.get("editor", {})
        self.executable = editor_config.get("executable", "nvim")
        self.max_search_depth = editor_config.get("max_search_depth", 10)

        timeouts = self.config.get("timeouts", {})
        self.lsof_timeout_seconds = timeouts.get("process", {}).get("lsof_timeout_seconds", 3)
        self.instance_cache_seconds = timeouts.get("editor", {}).get("instance_cache_seconds", 3.0)

        self._instance_cache: dict[str, tuple[EditorInstance, float]] = {}

    def is_editor_name(self, name: Optional[str]) -> bool:
        return bool(name) and self.executable in name

    def detect_editor_ancestor(self, pid: int, tree: ProcessTree) -> Optional[int]:
        """Nearest ancestor of pid running the editor executable."""
        return tree.find_ancestor(pid, lambda node: self.is_editor_name(node.name))

    def forget(self, session_id: str):
        """Drop the cached instance so the next call rediscovers."""
        self._instance_cache.pop(session_id, None)

    async def resolve(self, session: Session) -> Optional[EditorInstance]:
        """
        Find a live editor instance for the session.

        Returns:
            EditorInstance (liveness-probed just now), or None
        """
        cached = self._instance_cache.get(session.session_id)
        if cached is not None:
            instance, cached_at = cached
            if time.monotonic() - cached_at < self.instance_cache_seconds and is_process_alive(instance.pid):
                return instance
            self.forget(session.session_id)

        instance = self.from_registry(session)
        if instance is None:
            instance = await self.from_session_pid(session)
        if instance is None:
            instance = await self.from_process_scan(session)
        if instance is None:
            instance = await self.from_tmux_scan(session)

        if instance is None:
            logger.info(f"No editor instance for session {session.session_id[:8]} (cwd={session.cwd})")
            return None

        instance.checked_at = datetime.now()
        self._instance_cache[session.session_id] = (instance, time.monotonic())
        logger.debug(
            f"Editor for {session.session_id[:8]}: pid={instance.pid} "
            f"address={instance.listen_address} via {instance.source}"
        )
        return instance

    def from_registry(self, session: Session) -> Optional[EditorInstance]:
        """Registry match: cwd with pane info, unique cwd, then sole entry."""
        try:
            instances = self.registry.load()
        except RegistryDecodeError as e:
            logger.error(str(e))
            return None

        alive = [i for i in instances if is_process_alive(i.pid)]
        if not alive:
            return None

        cwd_matches = [i for i in alive if session.cwd and i.cwd == session.cwd]
        with_pane = [i for i in cwd_matches if i.has_pane_info]
        if with_pane:
            return with_pane[0]
        if len(cwd_matches) == 1:
            return cwd_matches[0]
        if len(cwd_matches) > 1:
            logger.warning(
                f"{len(cwd_matches)} editor instances share cwd {session.cwd}, using the newest"
            )
            return max(cwd_matches, key=lambda i: i.registered_at.timestamp() if i.registered_at else 0)
        if len(alive) == 1:
            return alive[0]
        return None

    async def from_session_pid(self, session: Session) -> Optional[EditorInstance]:
        """Use the editor pid recorded at ingestion, if it is still an editor."""
        if not session.editor_pid or not is_process_alive(session.editor_pid):
            return None
        tree = await self.tree_builder.build()
        if tree is None or not self.is_editor_name(tree.name(session.editor_pid)):
            return None

        address = session.editor_address or await self.listen_address_for(session.editor_pid)
        if not address:
            return None
        return EditorInstance(pid=session.editor_pid, listen_address=address, cwd=session.cwd, source="pid")

    async def from_process_scan(self, session: Session) -> Optional[EditorInstance]:
        """Every running editor whose cwd equals the session cwd."""
        if not session.cwd:
            return None
        tree = await self.tree_builder.build()
        if tree is None:
            return None
        for pid in tree.pids_named([self.executable]):
            if await self.cwd_for(pid) != session.cwd:
                continue
            address = await self.listen_address_for(pid)
            if address:
                return EditorInstance(pid=pid, listen_address=address, cwd=session.cwd, source="scan")
        return None

    async def from_tmux_scan(self, session: Session) -> Optional[EditorInstance]:
        """Editors running below a tmux pane whose cwd matches."""
        if self.tmux is None or not session.cwd:
            return None
        panes = [p for p in await self.tmux.list_panes() if p.current_path == session.cwd and p.pane_pid]
        if not panes:
            return None
        tree = await self.tree_builder.build()
        if tree is None:
            return None
        for pane in panes:
            pid = tree.find_in_subtree(
                pane.pane_pid,
                lambda node: self.is_editor_name(node.name),
                max_depth=self.max_search_depth,
            )
            if pid is None:
                continue
            address = await self.listen_address_for(pid)
            if address:
                return EditorInstance(
                    pid=pid,
                    listen_address=address,
                    cwd=session.cwd,
                    tmux_session=pane.target.session,
                    tmux_window=pane.target.window,
                    tmux_pane=pane.target.pane,
                    source="tmux",
                )
        return None

    async def listen_address_for(self, pid: int) -> Optional[str]:
        """
        RPC socket of an editor process.

        Open unix sockets are checked first, then the default socket
        locations editors create.
        """
        try:
            result = await self.runner.run(
                "lsof", "-p", str(pid), "-a", "-U", "-Fn", timeout=self.lsof_timeout_seconds
            )
        except ProcessExecutorError as e:
            logger.debug(f"lsof failed for pid {pid}: {e}")
            result = None

        if result is not None and result.ok:
            for line in result.stdout.splitlines():
                if not line.startswith("n"):
                    continue
                name = line[1:].split(" ")[0]
                if name.startswith("/") and ("/nvim" in name or "nvim." in name):
                    return name

        for candidate in (
            os.path.join(default_runtime_dir(), f"nvim.{pid}.0"),
            f"/tmp/nvim.{pid}.0",
            f"/tmp/nvim{pid}/0",
        ):
            if os.path.exists(candidate):
                return candidate
        return None

    async def cwd_for(self, pid: int) -> Optional[str]:
        """Working directory of pid via /proc, falling back to lsof."""
        try:
            return os.readlink(f"/proc/{pid}/cwd")
        except OSError:
            pass
        try:
            result = await self.runner.run(
                "lsof", "-p", str(pid), "-a", "-d", "cwd", "-Fn", timeout=self.lsof_timeout_seconds
            )
        except ProcessExecutorError as e:
            logger.debug(f"lsof cwd failed for pid {pid}: {e}")
            return None
        if not result.ok:
            return None
        for line in result.stdout.splitlines():
            if line.startswith("n"):
                return line[1:]
        return None

    async def list_available_instances(self) -> dict[str, list[dict]]:
        """Registry entries (with liveness) and editor processes found by scan."""
        registered = []
        try:
            for instance in self.registry.load():
                entry = instance.to_dict()
                entry["state"] = "RUNNING" if is_process_alive(instance.pid) else "DEAD"
                registered.append(entry)
        except RegistryDecodeError as e:
            logger.error(str(e))

        scanned = []
        tree = await self.tree_builder.build()
        if tree is not None:
            for pid in tree.pids_named([self.executable]):
                scanned.append({"pid": pid, "cwd": await self.cwd_for(pid)})

        return {"registry": registered, "processes": scanned}


class EditorBridge:
    """Calls the editor's RPC surface through an external helper process."""

    def __init__(
        self,
        resolver: EditorResolver,
        runner: Optional[ProcessRunner] = None,
        config: Optional[dict] = None,
    ):
        self.resolver = resolver
        self.runner = runner or ProcessRunner()
        self.config = config or {}

        editor_config = self.config.get("editor", {})
        helper = editor_config.get("rpc_helper", ["python3", "~/.local/share/claude-island/rpc_helper.py"])
        if isinstance(helper, str):
            helper = helper.split()
        self.rpc_helper = [os.path.expanduser(part) for part in helper]
        self.lua_code = DEFAULT_LUA_CODE.format(module=editor_config.get("lua_module", "claudecode.island_rpc"))
        self.rpc_timeout_seconds = (
            self.config.get("timeouts", {}).get("editor", {}).get("rpc_timeout_seconds", 5.0)
        )

    async def call_rpc(
        self,
        instance: EditorInstance,
        session_id: str,
        action: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> RPCResponse:
        """
        Run one RPC round trip.

        Raises:
            RPCTimeoutError: helper exceeded rpc_timeout_seconds (it is killed)
            RPCDecodeError: helper output is not a valid response
            RPCFailedError: helper could not be run
        """
        trace_id = str(uuid.uuid4())
        envelope = {
            "trace_id": trace_id,
            "ts_ms": int(time.time() * 1000),
            "source": RPC_SOURCE,
            "session_id": session_id,
            "nvim_pid": instance.pid,
            "action": action,
            "payload": payload or {},
        }

        try:
            result = await self.runner.run(
                *self.rpc_helper,
                instance.listen_address,
                self.lua_code,
                json.dumps(envelope),
                timeout=self.rpc_timeout_seconds,
            )
        except CommandTimeoutError:
            raise RPCTimeoutError(self.rpc_timeout_seconds)
        except ProcessExecutorError as e:
            raise RPCFailedError(str(e))

        raw = extract_json(result.stdout)
        try:
            response = RPCResponse.model_validate_json(raw)
        except ValidationError as e:
            if not result.ok:
                raise RPCFailedError(f"RPC helper exited with {result.returncode}: {result.stderr.strip()}")
            raise RPCDecodeError(f"Invalid RPC response: {e.errors()[0]['msg'] if e.errors() else e}")

        if response.trace_id != trace_id:
            raise RPCDecodeError(f"RPC trace id mismatch: sent {trace_id}, got {response.trace_id}")

        logger.debug(f"RPC {action} -> pid {instance.pid}: ok={response.ok}")
        return response

    async def _call_for_session(
        self, session: Session, action: str, payload: Optional[dict[str, Any]] = None
    ) -> RPCResponse:
        instance = await self.resolver.resolve(session)
        if instance is None:
            raise NoEditorInstanceError(session.session_id)
        response = await self.call_rpc(instance, session.session_id, action, payload)
        if not response.ok:
            raise RPCFailedError(response.error or f"{action} failed")
        return response

    async def send_text(
        self,
        session: Session,
        text: str,
        mode: str = "append_and_enter",
        ensure_terminal: bool = True,
    ) -> RPCResponse:
        """
        Type text into the editor terminal running the session.

        Args:
            session: Target session
            text: Text to inject
            mode: "append_only" or "append_and_enter"
            ensure_terminal: Open the terminal window first if hidden
        """
        if not text:
            raise EmptyTextError()
        return await self._call_for_session(
            session,
            "send_text",
            {"text": text, "mode": mode, "ensure_terminal": ensure_terminal},
        )

    async def ping(self, instance: EditorInstance, session_id: str) -> bool:
        response = await self.call_rpc(instance, session_id, "ping")
        return response.ok and bool(response.data and response.data.pong)

    async def get_status(self, session: Session) -> RPCResponse:
        return await self._call_for_session(session, "status")

    async def focus_terminal(self, session: Session) -> bool:
        response = await self._call_for_session(session, "focus_terminal")
        return bool(response.data and response.data.focused)

    async def check_connection(self, session: Session) -> EditorConnectionStatus:
        """Resolve and ping. Any failure means disconnected."""
        try:
            instance = await self.resolver.resolve(session)
            if instance is None:
                return EditorConnectionStatus.DISCONNECTED
            if await self.ping(instance, session.session_id):
                return EditorConnectionStatus.CONNECTED
        except EditorBridgeError as e:
            logger.info(f"Editor check failed for {session.session_id[:8]}: {e}")
            self.resolver.forget(session.session_id)
        return EditorConnectionStatus.DISCONNECTED
