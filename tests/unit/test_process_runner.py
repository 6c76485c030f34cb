"""Unit tests for subprocess execution with timeouts."""

import time

import pytest

from island.process_runner import (
    CommandFailedError,
    CommandNotFoundError,
    CommandTimeoutError,
    ProcessRunner,
)


@pytest.fixture
def runner():
    return ProcessRunner(default_timeout=5)


@pytest.mark.asyncio
async def test_run_captures_output(runner):
    result = await runner.run("sh", "-c", "echo out; echo err >&2")
    assert result.ok
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"


@pytest.mark.asyncio
async def test_run_with_input(runner):
    result = await runner.run("cat", input_data="hello")
    assert result.stdout == "hello"


@pytest.mark.asyncio
async def test_nonzero_exit(runner):
    result = await runner.run("sh", "-c", "exit 3")
    assert result.returncode == 3
    assert not result.ok

    with pytest.raises(CommandFailedError) as exc_info:
        await runner.run("sh", "-c", "echo bad >&2; exit 3", check=True)
    assert exc_info.value.returncode == 3
    assert "bad" in exc_info.value.stderr


@pytest.mark.asyncio
async def test_missing_command(runner):
    with pytest.raises(CommandNotFoundError):
        await runner.run("definitely-not-a-real-command-xyz")


@pytest.mark.asyncio
async def test_timeout_kills_child(runner):
    start = time.monotonic()
    with pytest.raises(CommandTimeoutError) as exc_info:
        await runner.run("sleep", "10", timeout=0.2)
    assert exc_info.value.timeout == 0.2
    assert time.monotonic() - start < 5
