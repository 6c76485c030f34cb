"""Unit tests for resolving a session to its tmux pane."""

import pytest

from factories import pane
from island.models import PaneTarget
from island.process_tree import ProcessTree
from island.tmux_target_finder import TmuxTargetFinder

PANES = [
    pane("%1", "main:0.0", 100, "/home/me"),
    pane("%2", "work:1.0", 200, "/repo"),
    pane("%3", "work:1.1", 300, "/repo"),
]

# 100 -> 110 (shell) -> 120 (claude); 300 -> 310 (claude)
TREE = ProcessTree.from_edges({100: 1, 110: 100, 120: 110, 200: 1, 300: 1, 310: 300})


@pytest.fixture
def finder(mock_tmux, tree_builder_for):
    mock_tmux.list_panes.return_value = PANES
    return TmuxTargetFinder(mock_tmux, tree_builder_for(TREE))


@pytest.mark.asyncio
async def test_pane_id_wins(finder):
    target = await finder.find_target(pane_id="%3", pid=120, cwd="/home/me")
    assert target == PaneTarget("work", "1", "1")


@pytest.mark.asyncio
async def test_pid_ancestry(finder):
    assert await finder.find_target(pid=120, cwd="/repo") == PaneTarget("main", "0", "0")
    assert await finder.find_target(pid=310) == PaneTarget("work", "1", "1")


@pytest.mark.asyncio
async def test_unknown_pane_id_falls_through(finder):
    assert await finder.find_target(pane_id="%99", pid=310) == PaneTarget("work", "1", "1")


@pytest.mark.asyncio
async def test_cwd_match_takes_first_pane(finder):
    assert await finder.find_target(pid=9999, cwd="/repo") == PaneTarget("work", "1", "0")


@pytest.mark.asyncio
async def test_session_scan_fallback(finder, mock_tmux):
    mock_tmux.list_sessions.return_value = ["other"]
    mock_tmux.list_session_panes.return_value = [(PaneTarget("other", "3", "0"), "/elsewhere")]
    assert await finder.find_target(cwd="/elsewhere") == PaneTarget("other", "3", "0")
    mock_tmux.list_session_panes.assert_awaited_once_with("other")


@pytest.mark.asyncio
async def test_no_match(finder):
    assert await finder.find_target(pane_id="%99", pid=9999, cwd="/nowhere") is None


@pytest.mark.asyncio
async def test_pid_strategy_skipped_without_tree(mock_tmux, tree_builder_for):
    mock_tmux.list_panes.return_value = PANES
    finder = TmuxTargetFinder(mock_tmux, tree_builder_for(None))
    assert await finder.find_target(pid=120, cwd="/repo") == PaneTarget("work", "1", "0")


@pytest.mark.asyncio
async def test_is_session_pane_active(finder, mock_tmux):
    mock_tmux.active_pane.return_value = PaneTarget("work", "1", "1")
    assert await finder.is_session_pane_active(pane_id="%3")
    assert not await finder.is_session_pane_active(pane_id="%2")


@pytest.mark.asyncio
async def test_pid_match_on_two_pane_listing(mock_tmux, tree_builder_for):
    mock_tmux.list_panes.return_value = [
        pane("%0", "main:0.0", 12345, "/a"),
        pane("%1", "main:0.1", 54321, "/b"),
    ]
    tree = ProcessTree.from_edges({12345: 1, 54321: 1, 12400: 12345, 777: 1})
    finder = TmuxTargetFinder(mock_tmux, tree_builder_for(tree))

    assert await finder.find_target(pid=12345) == PaneTarget("main", "0", "0")
    assert await finder.find_target(pid=12400) == PaneTarget("main", "0", "0")
    assert await finder.find_target(pid=777) is None
