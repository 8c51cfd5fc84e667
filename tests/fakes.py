"""Test doubles for worker processes, the launcher and the negotiator.

Nothing here spawns stack or opens a socket: FakeProcess keeps output in
an asyncio.Queue and FakeLauncher hands out FakeProcesses whose behaviour
is scripted per spawn.
"""

import asyncio
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from ghcworker.events import EventBus, WorkerEvent
from ghcworker.models import InstallStatus
from ghcworker.worker.negotiator import InstallNegotiator
from ghcworker.worker.process import CommandResult

MARKER = b"\x04"

UNSATISFIED_OUTPUT = (
    "<command line>: cannot satisfy -package text-1.2.3.0\n"
    "    (use -v for more information)\n"
)


def drain_events(event_bus: EventBus, session_key: str) -> list[WorkerEvent]:
    """Subscribe to a session and drain everything delivered so far."""
    queue = event_bus.subscribe(session_key)
    events: list[WorkerEvent] = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


# ---------------------------------------------------------------------------
# Fake worker process
# ---------------------------------------------------------------------------


class FakeProcess:
    """In-memory WorkerProcess.

    Output is queued with ``emit`` and read back through ``read``; ``exit``
    ends the output stream. ``responder`` is called for every line written
    to stdin and may emit a reply.
    """

    def __init__(self, pid: int = 4242) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.written: list[bytes] = []
        self.killed = False
        self.responder: Callable[["FakeProcess", str], None] | None = None
        self._output: asyncio.Queue[bytes] = asyncio.Queue()
        self._eof = False
        self._exited = asyncio.Event()

    @property
    def lines(self) -> list[str]:
        return b"".join(self.written).decode("utf-8").splitlines()

    def write(self, data: bytes) -> None:
        if self.returncode is not None:
            raise BrokenPipeError("process exited")
        self.written.append(data)
        if self.responder is not None:
            for line in data.decode("utf-8").splitlines():
                self.responder(self, line)

    def emit(self, data: bytes) -> None:
        self._output.put_nowait(data)

    def exit(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self._output.put_nowait(b"")
        self._exited.set()

    async def read(self, n: int = 65536) -> bytes:
        if self._eof:
            return b""
        data = await self._output.get()
        if not data:
            self._eof = True
        return data

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


Behaviour = Callable[[FakeProcess], None]


def echo_responder(process: FakeProcess, line: str) -> None:
    """Answer every non-setup command with ``ok: <command>`` and a marker."""
    if line.startswith(":set"):
        return
    process.emit(f"ok: {line}\n".encode() + MARKER)


def ready_worker(port: int | None = 4000) -> Behaviour:
    """A worker that starts cleanly and echoes commands."""

    def behave(process: FakeProcess) -> None:
        banner = "GHCi, version 8.4.4\n"
        if port is not None:
            banner += f"Port-Announcement: {port}\n"
        process.emit(banner.encode() + MARKER)
        process.responder = echo_responder

    return behave


def dying_worker(output: str, code: int = 1) -> Behaviour:
    """A worker that prints ``output`` and exits before its first prompt."""

    def behave(process: FakeProcess) -> None:
        process.emit(output.encode())
        process.exit(code)

    return behave


def dies_on_first_command(output: str, code: int = 1) -> Behaviour:
    """A worker that accepts setup commands and dies on the first real one."""

    def respond(process: FakeProcess, line: str) -> None:
        if line.startswith(":set"):
            return
        process.emit(output.encode())
        process.exit(code)

    def behave(process: FakeProcess) -> None:
        process.responder = respond

    return behave


def silent_worker() -> Behaviour:
    """A worker that never prints its first prompt."""

    def behave(process: FakeProcess) -> None:
        return None

    return behave


class FakeLauncher:
    """ProcessLauncher double that hands out scripted FakeProcesses.

    Spawns past the scripted behaviours get ``ready_worker()``.
    """

    def __init__(self, *behaviours: Behaviour) -> None:
        self.behaviours = list(behaviours)
        self.spawned: list[list[str]] = []
        self.processes: list[FakeProcess] = []
        self.runs: list[list[str]] = []
        self.results: list[CommandResult | OSError] = []
        self.spawn_error: OSError | None = None

    async def spawn(self, argv, *, cwd, env=None) -> FakeProcess:
        self.spawned.append(list(argv))
        if self.spawn_error is not None:
            raise self.spawn_error
        process = FakeProcess(pid=1000 + len(self.processes))
        self.processes.append(process)
        behaviour = self.behaviours.pop(0) if self.behaviours else ready_worker()
        behaviour(process)
        return process

    async def run(self, argv, *, cwd, timeout=None) -> CommandResult:
        self.runs.append(list(argv))
        result = self.results.pop(0) if self.results else CommandResult("", 0)
        if isinstance(result, OSError):
            raise result
        return result


# ---------------------------------------------------------------------------
# Secondary channel connections
# ---------------------------------------------------------------------------


class FakeReader:
    def __init__(self, data: bytes = b"", error: Exception | None = None) -> None:
        self.data = data
        self.error = error

    async def read(self, n: int = -1) -> bytes:
        if self.error is not None:
            raise self.error
        return self.data


class FakeWriter:
    def __init__(self) -> None:
        self.written = b""
        self.eof = False
        self.closed = False

    def write(self, data: bytes) -> None:
        self.written += data

    async def drain(self) -> None:
        return None

    def can_write_eof(self) -> bool:
        return True

    def write_eof(self) -> None:
        self.eof = True

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None


class FakeConnector:
    """Connector returning scripted readers, or raising a scripted error."""

    def __init__(
        self,
        reply: bytes = b"",
        *,
        connect_error: Exception | None = None,
        read_error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.reply = reply
        self.connect_error = connect_error
        self.read_error = read_error
        self.delay = delay
        self.calls: list[tuple[str, int]] = []
        self.writers: list[FakeWriter] = []

    async def __call__(self, host: str, port: int) -> tuple[Any, Any]:
        self.calls.append((host, port))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.connect_error is not None:
            raise self.connect_error
        writer = FakeWriter()
        self.writers.append(writer)
        return FakeReader(self.reply, self.read_error), writer


class Recorder:
    """Response callback that records (state, body) pairs."""

    def __init__(self) -> None:
        self.calls: list[tuple[Any, str]] = []

    def __call__(self, state: Any, body: str) -> None:
        self.calls.append((state, body))


# ---------------------------------------------------------------------------
# Mock negotiator
# ---------------------------------------------------------------------------


def make_negotiator(
    status: InstallStatus = InstallStatus.INSTALLED,
    install_error: Exception | None = None,
) -> MagicMock:
    """A negotiator mock whose check() returns ``status``."""
    negotiator = MagicMock(spec=InstallNegotiator)
    negotiator.worker_package = "intero"
    negotiator.check = AsyncMock(return_value=status)
    negotiator.install = AsyncMock(
        return_value="$ stack build\ninstalled", side_effect=install_error
    )
    negotiator.ghc_version = AsyncMock(return_value="8.4.4")
    negotiator.supported_extensions = AsyncMock(
        return_value=["OverloadedStrings", "TupleSections", "ScopedTypeVariables"]
    )
    return negotiator
