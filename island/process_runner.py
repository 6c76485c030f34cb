"""Subprocess execution with explicit timeouts."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


class ProcessExecutorError(Exception):
    """Base error for external command execution."""


class CommandNotFoundError(ProcessExecutorError):
    def __init__(self, command: str):
        super().__init__(f"Command not found: {command}")
        self.command = command


class CommandFailedError(ProcessExecutorError):
    def __init__(self, command: str, returncode: int, stderr: str = ""):
        super().__init__(f"{command} exited with {returncode}: {stderr.strip()}")
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class CommandTimeoutError(ProcessExecutorError):
    def __init__(self, command: str, timeout: float):
        super().__init__(f"{command} timed out after {timeout}s")
        self.command = command
        self.timeout = timeout


@dataclass
class ProcessResult:
    """Output of a finished command."""
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ProcessRunner:
    """
    Runs external CLIs (tmux, ps, lsof, the editor RPC helper).

    Every call carries a timeout. On expiry the child is killed and reaped
    before CommandTimeoutError is raised, so nothing is left running.
    """

    def __init__(self, default_timeout: float = 5.0):
        self.default_timeout = default_timeout

    async def run(
        self,
        *args: str,
        timeout: Optional[float] = None,
        input_data: Optional[str] = None,
        check: bool = False,
    ) -> ProcessResult:
        """
        Run a command asynchronously.

        Args:
            args: Executable and arguments
            timeout: Seconds before the process is killed (default_timeout if None)
            input_data: Optional text written to stdin
            check: Raise CommandFailedError on non-zero exit

        Returns:
            ProcessResult with decoded stdout/stderr
        """
        timeout = self.default_timeout if timeout is None else timeout
        command = args[0]
        logger.debug(f"Running command: {' '.join(args)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise CommandNotFoundError(command)

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(input_data.encode() if input_data is not None else None),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            await self._terminate(proc)
            logger.warning(f"Command {command} timed out after {timeout}s, killed pid {proc.pid}")
            raise CommandTimeoutError(command, timeout)
        except asyncio.CancelledError:
            await self._terminate(proc)
            raise

        result = ProcessResult(
            returncode=proc.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )
        if check and not result.ok:
            raise CommandFailedError(command, result.returncode, result.stderr)
        return result

    @staticmethod
    async def _terminate(proc: asyncio.subprocess.Process):
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=2)
        except asyncio.TimeoutError:
            logger.error(f"Process {proc.pid} did not exit after SIGKILL")
