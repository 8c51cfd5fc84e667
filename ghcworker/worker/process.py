"""Process primitives used by the negotiator and the session manager.

``ProcessLauncher.spawn`` starts a long-running worker with piped stdin and
stdout (stderr merged into stdout, since the worker reports startup failures
on stderr). ``ProcessLauncher.run`` executes a one-shot command to
completion. Both are small enough to be replaced by fakes in tests.
"""

import asyncio
import contextlib
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol

import structlog

from ghcworker.worker.security import sanitize_output

logger = structlog.get_logger()

READ_CHUNK_SIZE = 64 * 1024


class WorkerProcess(Protocol):
    """Handle on a spawned worker process."""

    @property
    def pid(self) -> int | None: ...

    @property
    def returncode(self) -> int | None: ...

    def write(self, data: bytes) -> None:
        """Write bytes to the worker's stdin.

        Raises:
            BrokenPipeError: If stdin is closed.
        """
        ...

    async def read(self, n: int = READ_CHUNK_SIZE) -> bytes:
        """Read up to ``n`` output bytes; ``b""`` means end of output."""
        ...

    async def wait(self) -> int: ...

    def kill(self) -> None: ...


@dataclass
class CommandResult:
    """Result of a one-shot command; stderr is merged into ``output``."""

    output: str
    exit_code: int
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class AsyncioWorkerProcess:
    """WorkerProcess backed by ``asyncio.subprocess.Process``."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    def write(self, data: bytes) -> None:
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            raise BrokenPipeError("worker stdin is closed")
        stdin.write(data)

    async def read(self, n: int = READ_CHUNK_SIZE) -> bytes:
        stdout = self._process.stdout
        if stdout is None:
            return b""
        return await stdout.read(n)

    async def wait(self) -> int:
        return await self._process.wait()

    def kill(self) -> None:
        with contextlib.suppress(ProcessLookupError):
            self._process.kill()


class ProcessLauncher:
    """Spawns worker processes and runs helper commands."""

    async def spawn(
        self,
        argv: Sequence[str],
        *,
        cwd: str,
        env: Mapping[str, str] | None = None,
    ) -> WorkerProcess:
        """Start a long-running process.

        Args:
            argv: Program and arguments.
            cwd: Working directory (the project root).
            env: Extra environment variables, merged over the current ones.

        Returns:
            A WorkerProcess with stdin and merged stdout/stderr piped.

        Raises:
            FileNotFoundError: If the program does not exist.
        """
        merged_env = dict(os.environ)
        if env:
            merged_env.update(env)

        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=merged_env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        logger.debug("process_spawned", argv=list(argv), cwd=cwd, pid=process.pid)
        return AsyncioWorkerProcess(process)

    async def run(
        self,
        argv: Sequence[str],
        *,
        cwd: str,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a command to completion.

        Args:
            argv: Program and arguments.
            cwd: Working directory.
            timeout: Seconds before the command is killed.

        Returns:
            CommandResult with the combined output. A timed-out command
            reports exit code 124.

        Raises:
            FileNotFoundError: If the program does not exist.
        """
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            logger.warning(
                "command_timeout",
                argv=list(argv),
                timeout=timeout,
            )
            return CommandResult(
                output=f"Command timed out after {timeout} seconds",
                exit_code=124,
                timed_out=True,
            )

        result = CommandResult(
            output=sanitize_output(stdout.decode("utf-8", errors="replace")),
            exit_code=process.returncode if process.returncode is not None else -1,
        )
        logger.debug(
            "command_executed",
            argv=list(argv),
            exit_code=result.exit_code,
        )
        return result
