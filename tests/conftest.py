"""Shared pytest fixtures for Claude Island tests."""

from typing import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from island.process_tree import ProcessTree, ProcessTreeBuilder
from island.session_store import SessionStore
from island.tmux_controller import TmuxController


@pytest.fixture
def config() -> dict:
    """Config with every delay shrunk for fast tests."""
    return {
        "timeouts": {
            "tmux": {
                "command_timeout_seconds": 1,
                "send_keys_settle_seconds": 0,
                "reject_message_delay_seconds": 0,
            },
            "process": {"snapshot_ttl_seconds": 0},
            "editor": {"rpc_timeout_seconds": 1, "registry_ttl_seconds": 0, "instance_cache_seconds": 0},
        },
        "health": {"check_interval_seconds": 3600, "max_concurrent_checks": 2},
        "stale": {"check_interval_seconds": 3600, "cleanup_minutes": 10, "min_consecutive_evaluations": 2},
    }


@pytest.fixture
def store(config) -> SessionStore:
    return SessionStore(config=config)


@pytest.fixture
def mock_tmux() -> MagicMock:
    """
    Mock TmuxController for testing without a tmux server.

    Returns:
        MagicMock with the async tmux methods configured
    """
    mock = MagicMock(spec=TmuxController)
    mock.list_panes = AsyncMock(return_value=[])
    mock.list_sessions = AsyncMock(return_value=[])
    mock.list_session_panes = AsyncMock(return_value=[])
    mock.send_keys = AsyncMock(return_value=True)
    mock.switch_to_pane = AsyncMock(return_value=True)
    mock.active_pane = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def tree_builder_for() -> Callable[[ProcessTree], MagicMock]:
    """Factory for a ProcessTreeBuilder mock that always returns the given tree."""
    def _make(tree: ProcessTree) -> MagicMock:
        builder = MagicMock(spec=ProcessTreeBuilder)
        builder.build = AsyncMock(return_value=tree)
        return builder
    return _make
