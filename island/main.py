"""Main entry point - orchestrates all components."""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
import yaml

from .action_dispatcher import ActionDispatcher
from .approval_handler import ApprovalHandler
from .editor_bridge import EditorBridge, EditorRegistryReader, EditorResolver, default_runtime_dir
from .file_watcher import WatcherManager
from .health_checker import EditorHealthChecker
from .models import PhaseKind, Session
from .process_runner import ProcessRunner
from .process_tree import ProcessTreeBuilder
from .server import create_app
from .session_store import SessionStore
from .stale_pruner import StaleSessionPruner
from .tmux_controller import TmuxController
from .tmux_target_finder import TmuxTargetFinder
from .transcript import DEFAULT_CLAUDE_HOME, agent_file_path, session_file_path

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def default_socket_path() -> str:
    return os.path.join(default_runtime_dir(), "claude-island.sock")


def load_config(config_path: str = "config.yaml") -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


def setup_logging(config: dict):
    """Configure root logging once, with an optional file mirror."""
    logging_config = config.get("logging", {})
    level = getattr(logging, str(logging_config.get("level", "INFO")).upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)

    log_file = logging_config.get("file")
    if log_file:
        path = Path(os.path.expanduser(log_file))
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)


class IslandApp:
    """Main application orchestrator."""

    def __init__(self, config: dict):
        self.config = config

        self.socket_path = os.path.expanduser(
            config.get("server", {}).get("socket_path") or default_socket_path()
        )
        paths = config.get("paths", {})
        self.claude_home = paths.get("claude_home", DEFAULT_CLAUDE_HOME)

        # Initialize components, leaves first
        self.runner = ProcessRunner()
        self.tree_builder = ProcessTreeBuilder(runner=self.runner, config=config)
        self.tmux = TmuxController(runner=self.runner, config=config)
        self.finder = TmuxTargetFinder(self.tmux, self.tree_builder)
        self.approvals = ApprovalHandler(self.tmux, config=config)

        editor_timeouts = config.get("timeouts", {}).get("editor", {})
        self.registry = EditorRegistryReader(
            path=paths.get("editor_registry"),
            ttl_seconds=editor_timeouts.get("registry_ttl_seconds", 5.0),
        )
        self.resolver = EditorResolver(
            self.registry, self.tree_builder, tmux=self.tmux, runner=self.runner, config=config
        )
        self.bridge = EditorBridge(self.resolver, runner=self.runner, config=config)

        self.store = SessionStore(config=config)
        self.dispatcher = ActionDispatcher(self.store, self.finder, self.approvals, bridge=self.bridge)
        self.health_checker = EditorHealthChecker(self.store, self.bridge, config=config)
        self.pruner = StaleSessionPruner(self.store, self.tree_builder, config=config)
        self.watchers = WatcherManager(sink=self.store.submit_threadsafe)

        self.store.subscribe(self.reconcile_watchers)

        self.app = create_app(
            store=self.store,
            dispatcher=self.dispatcher,
            resolver=self.resolver,
            tree_builder=self.tree_builder,
            config=config,
            lifespan=self._lifespan,
        )

    @asynccontextmanager
    async def _lifespan(self, app):
        await self.start_components()
        try:
            yield
        finally:
            await self.stop_components()

    async def start_components(self):
        """Start the store, watchers and periodic sweeps."""
        self.store.start()
        self.watchers.start()
        self.health_checker.start()
        self.pruner.start()
        logger.info("Claude Island components started")

    async def stop_components(self):
        await self.health_checker.stop()
        await self.pruner.stop()
        self.watchers.stop()
        await self.store.stop()
        logger.info("Claude Island components stopped")

    def reconcile_watchers(self, snapshot: dict[str, Session]):
        """
        Watch exactly the live sessions and their active subagents.

        Called by the store after every applied change.
        """
        wanted: set[tuple] = set()
        for session in snapshot.values():
            if session.phase.kind == PhaseKind.ENDED or not session.cwd:
                continue
            sid = session.session_id
            wanted.add(("transcript", sid))
            wanted.add(("interrupt", sid))
            self.watchers.watch_session(sid, session.cwd, session_file_path(sid, session.cwd, self.claude_home))

            for task_tool_id, subagent in session.subagents.items():
                if not subagent.agent_id:
                    continue
                wanted.add(("agent", sid, task_tool_id))
                self.watchers.watch_agent(
                    sid,
                    task_tool_id,
                    subagent.agent_id,
                    agent_file_path(subagent.agent_id, session.cwd, self.claude_home),
                )

        for key in self.watchers.keys() - wanted:
            self.watchers.remove(key)

    async def serve(self):
        """Serve the API on the local socket until shutdown."""
        socket_dir = os.path.dirname(self.socket_path)
        if socket_dir:
            os.makedirs(socket_dir, exist_ok=True)
        if os.path.exists(self.socket_path):
            os.unlink(self.socket_path)

        config = uvicorn.Config(
            self.app,
            uds=self.socket_path,
            log_level="info",
        )
        server = uvicorn.Server(config)

        logger.info(f"Starting server on unix:{self.socket_path}")
        await server.serve()


async def main(config_path: Optional[str] = None):
    """Main entry point."""
    config = load_config(config_path or os.environ.get("CLAUDE_ISLAND_CONFIG", "config.yaml"))
    setup_logging(config)

    app = IslandApp(config)
    await app.serve()


def run():
    """Entry point for console script."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
