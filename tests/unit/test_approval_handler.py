"""Unit tests for permission prompt keystrokes."""

import pytest

from island.approval_handler import APPROVE_ALWAYS_KEY, APPROVE_ONCE_KEY, REJECT_KEY, ApprovalHandler
from island.models import PaneTarget

TARGET = PaneTarget("work", "1", "0")


@pytest.fixture
def approvals(mock_tmux, config):
    return ApprovalHandler(mock_tmux, config=config)


@pytest.mark.asyncio
async def test_approve_once(approvals, mock_tmux):
    assert await approvals.approve_once(TARGET)
    mock_tmux.send_keys.assert_awaited_once_with(TARGET, APPROVE_ONCE_KEY)


@pytest.mark.asyncio
async def test_approve_always(approvals, mock_tmux):
    assert await approvals.approve_always(TARGET)
    mock_tmux.send_keys.assert_awaited_once_with(TARGET, APPROVE_ALWAYS_KEY)


@pytest.mark.asyncio
async def test_reject_with_reason_sends_two_inputs(approvals, mock_tmux):
    assert await approvals.reject(TARGET, "use git mv instead")
    assert [c.args for c in mock_tmux.send_keys.await_args_list] == [
        (TARGET, REJECT_KEY),
        (TARGET, "use git mv instead"),
    ]


@pytest.mark.asyncio
async def test_reject_stops_when_key_fails(approvals, mock_tmux):
    mock_tmux.send_keys.return_value = False
    assert not await approvals.reject(TARGET, "reason")
    assert mock_tmux.send_keys.await_count == 1
