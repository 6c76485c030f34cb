"""Unit tests for periodic editor health checks."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from factories import hook
from island.editor_bridge import EditorBridge
from island.health_checker import EditorHealthChecker
from island.models import EditorConnectionStatus


@pytest.fixture
def bridge():
    bridge = MagicMock(spec=EditorBridge)
    bridge.check_connection = AsyncMock(return_value=EditorConnectionStatus.CONNECTED)
    return bridge


@pytest.fixture
def checker(store, bridge, config):
    return EditorHealthChecker(store, bridge, config=config)


async def add_sessions(store, editor_ids, plain_ids=()):
    for sid in editor_ids:
        await store.process(hook(sid, status="processing", editor_pid=100))
    for sid in plain_ids:
        await store.process(hook(sid, status="processing", pane_id="%1"))


@pytest.mark.asyncio
async def test_only_editor_sessions_checked(store, bridge, checker):
    await add_sessions(store, ["ed-1"], plain_ids=["tmux-1"])
    statuses = await checker.perform_check()
    assert statuses == {"ed-1": EditorConnectionStatus.CONNECTED}
    assert store.session("ed-1").editor_status == EditorConnectionStatus.CONNECTED
    assert store.session("tmux-1").editor_status == EditorConnectionStatus.UNKNOWN
    bridge.check_connection.assert_awaited_once()


@pytest.mark.asyncio
async def test_no_sessions(checker, bridge):
    assert await checker.perform_check() == {}
    bridge.check_connection.assert_not_awaited()


@pytest.mark.asyncio
async def test_failure_isolated_per_session(store, bridge, checker):
    await add_sessions(store, ["ed-1", "ed-2"])

    async def check(session):
        if session.session_id == "ed-1":
            raise RuntimeError("helper crashed")
        return EditorConnectionStatus.CONNECTED

    bridge.check_connection.side_effect = check
    statuses = await checker.perform_check()
    assert statuses == {
        "ed-1": EditorConnectionStatus.DISCONNECTED,
        "ed-2": EditorConnectionStatus.CONNECTED,
    }
    assert store.session("ed-1").editor_status == EditorConnectionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_concurrency_is_bounded(store, bridge, checker):
    await add_sessions(store, [f"ed-{i}" for i in range(5)])
    in_flight = 0
    peak = 0

    async def check(session):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return EditorConnectionStatus.DISCONNECTED

    bridge.check_connection.side_effect = check
    statuses = await checker.perform_check()
    assert len(statuses) == 5
    assert peak <= checker.max_concurrent_checks


@pytest.mark.asyncio
async def test_start_stop_idempotent(store, checker):
    checker.start()
    task = checker._task
    checker.start()
    assert checker._task is task
    await checker.stop()
    await checker.stop()
    assert not checker.is_running
