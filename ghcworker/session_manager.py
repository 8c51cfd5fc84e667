"""Session manager for long-running compiler workers.

This module provides the WorkerSessionManager class that owns one worker
process per (worker kind, project root) and drives its lifecycle: version
negotiation and installation, spawning, readiness, one automatic escalation
to a dependency-building start, give-up and teardown.

The WorkerSessionManager coordinates between:
- InstallNegotiator: For checking and installing the worker tool
- ProcessLauncher: For spawning the worker
- ResponseDemultiplexer: For the ordered primary channel
- SecondaryQueryChannel: For concurrent read-only queries
- EventBus: For lifecycle notifications

Usage:
    >>> from ghcworker.session_manager import WorkerSessionManager
    >>>
    >>> manager = WorkerSessionManager()
    >>> session = await manager.ensure_ready("/src/app", targets=["app:lib"])
    >>> body = await session.blocking_call(":t map")
    >>> diagnostics = await session.check_file("/src/app/src/Lib.hs")
    >>>
    >>> # Cleanup when done
    >>> await manager.cleanup_all()
"""

import asyncio
import codecs
import contextlib
import re
import shlex
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, ClassVar, Literal

import structlog

from ghcworker.config import settings
from ghcworker.diagnostics import parse_diagnostics
from ghcworker.errors import (
    InstallFailureError,
    ProcessNotRunningError,
    SessionDestroyedError,
    UnsatisfiedDependencyError,
    WorkerSessionError,
)
from ghcworker.events import EventBus, EventType, WorkerEvent, get_event_bus
from ghcworker.metrics import MetricsCollector
from ghcworker.models import (
    Diagnostic,
    InstallStatus,
    SessionSnapshot,
    SessionState,
    StartMode,
)
from ghcworker.worker import commands
from ghcworker.worker.demux import PendingRequest, ResponseCallback, ResponseDemultiplexer
from ghcworker.worker.negotiator import InstallNegotiator
from ghcworker.worker.options import build_start_arguments
from ghcworker.worker.process import ProcessLauncher, WorkerProcess
from ghcworker.worker.secondary import Connector, SecondaryQueryChannel
from ghcworker.worker.security import truncate_transcript, validate_project_root

logger = structlog.get_logger()

PORT_ANNOUNCEMENT_PATTERN = re.compile(r"^Port-Announcement:[ \t]*(\d+)[ \t]*\n?", re.MULTILINE)

ErrorKind = Literal["install_failure", "unsatisfied_dependency"]


def extract_port(body: str) -> tuple[int | None, str]:
    """Read and remove the ``Port-Announcement: <n>`` line of a startup frame.

    Returns:
        (port or None, body without the announcement line)
    """
    match = PORT_ANNOUNCEMENT_PATTERN.search(body)
    if not match:
        return None, body
    return int(match.group(1)), body[: match.start()] + body[match.end():]


# =============================================================================
# Lifecycle phases
# =============================================================================


@dataclass(frozen=True)
class Absent:
    state: ClassVar[SessionState] = SessionState.ABSENT


@dataclass(frozen=True)
class Installing:
    state: ClassVar[SessionState] = SessionState.INSTALLING


@dataclass(frozen=True)
class Starting:
    state: ClassVar[SessionState] = SessionState.STARTING

    mode: StartMode


@dataclass(frozen=True)
class Ready:
    state: ClassVar[SessionState] = SessionState.READY

    mode: StartMode
    port: int | None = None


@dataclass(frozen=True)
class Restarting:
    """The worker died on a missing dependency; ``mode`` is the next attempt's."""

    state: ClassVar[SessionState] = SessionState.RESTARTING

    mode: StartMode
    reason: str


@dataclass(frozen=True)
class GivenUp:
    """Terminal until restart: no further spawn attempts are made."""

    state: ClassVar[SessionState] = SessionState.GIVEN_UP

    reason: str
    transcript: str
    error_kind: ErrorKind

    def to_error(self, session_key: str | None = None) -> WorkerSessionError:
        error_class = (
            UnsatisfiedDependencyError
            if self.error_kind == "unsatisfied_dependency"
            else InstallFailureError
        )
        return error_class(self.reason, transcript=self.transcript, session_key=session_key)


Phase = Absent | Installing | Starting | Ready | Restarting | GivenUp

LEGAL_TRANSITIONS: dict[type, frozenset[type]] = {
    Absent: frozenset({Installing, Starting}),
    Installing: frozenset({Starting, GivenUp, Absent}),
    Starting: frozenset({Ready, Restarting, GivenUp, Absent}),
    Ready: frozenset({Restarting, GivenUp, Absent}),
    Restarting: frozenset({Starting, Absent}),
    GivenUp: frozenset({Absent}),
}


# =============================================================================
# Session
# =============================================================================


class WorkerSession:
    """One worker bound to a project root.

    All attribute mutation happens on the event loop thread. The pending
    request queue belongs to ``demux``; lifecycle changes go through
    ``transition`` so only legal phase changes can happen.

    Attributes:
        key: "<kind>:<root>", used in logs and events
        kind: Worker kind (e.g. "backend")
        root: Resolved project root
        targets: Package targets loaded at start
        phase: Current lifecycle phase
        demux: Primary channel
        secondary: Secondary query channel
        process: The live worker, if any
        ghc_version: Compiler version, fetched before the first spawn
        supported_extensions: Language extensions the compiler accepts
        staging_paths: Scratch copy -> logical source file
    """

    def __init__(
        self,
        kind: str,
        root: str,
        *,
        targets: list[str] | None = None,
        event_bus: EventBus | None = None,
        metrics: MetricsCollector | None = None,
        connector: Connector | None = None,
    ) -> None:
        self.kind = kind
        self.root = root
        self.key = f"{kind}:{root}"
        self.targets: list[str] = list(targets or [])
        self.phase: Phase = Absent()
        self.created_at = time.time()

        self.event_bus = event_bus
        self.demux = ResponseDemultiplexer(
            self.key,
            marker=settings.frame_marker_bytes,
            event_bus=event_bus,
            metrics=metrics,
        )
        self.secondary = SecondaryQueryChannel(
            self.demux,
            host=settings.secondary_host,
            connect_timeout=settings.secondary_connect_timeout_seconds,
            enabled=settings.allow_secondary_channel,
            connector=connector,
            event_bus=event_bus,
            metrics=metrics,
        )
        self.process: WorkerProcess | None = None
        self.reader_task: asyncio.Task[None] | None = None
        self.ready_event = asyncio.Event()
        self.startup_lock = asyncio.Lock()
        self.destroyed = False

        self.work_dir = tempfile.mkdtemp(prefix="ghcworker-")
        self.staging_paths: dict[str, str] = {}
        self.ghc_version: str | None = None
        self.supported_extensions: list[str] = []
        self.startup_output = ""

        self._transcript = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._output_tail = ""
        self.dependency_missing = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def state(self) -> SessionState:
        return self.phase.state

    @property
    def start_mode(self) -> StartMode | None:
        return getattr(self.phase, "mode", None)

    @property
    def service_port(self) -> int | None:
        return self.secondary.port

    @property
    def object_dir(self) -> str:
        return str(Path(self.work_dir) / "build")

    @property
    def transcript(self) -> str:
        return self._transcript

    def transition(self, phase: Phase) -> None:
        """Move to ``phase``.

        Raises:
            RuntimeError: If the transition is not in LEGAL_TRANSITIONS.
        """
        previous = self.phase
        if type(phase) not in LEGAL_TRANSITIONS[type(previous)]:
            raise RuntimeError(
                f"Illegal session transition {previous.state} -> {phase.state} "
                f"for {self.key}"
            )
        self.phase = phase
        if isinstance(phase, (Ready, GivenUp, Absent)):
            self.ready_event.set()
        else:
            self.ready_event.clear()

        logger.info(
            "session_state_changed",
            session_key=self.key,
            previous=previous.state.value,
            state=phase.state.value,
        )
        if self.event_bus is not None:
            self.event_bus.publish_sync(
                WorkerEvent(
                    type=EventType.SESSION_STATE_CHANGED,
                    session_key=self.key,
                    data={"previous": previous.state.value, "state": phase.state.value},
                )
            )

    def begin_attempt(self, argv: list[str]) -> None:
        """Reset per-spawn output tracking and note the command in the transcript."""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._output_tail = ""
        self.dependency_missing = False
        self.append_transcript(f"$ {shlex.join(argv)}\n")

    def append_transcript(self, text: str) -> None:
        self._transcript = truncate_transcript(
            self._transcript + text, settings.transcript_max_bytes
        )

    def record_output(self, data: bytes) -> None:
        """Keep raw worker output for the transcript and dependency detection."""
        text = self._decoder.decode(data)
        if not text:
            return
        self.append_transcript(text.replace(settings.frame_marker, ""))

        window = self._output_tail + text
        if any(marker in window for marker in settings.unsatisfied_dependency_markers):
            self.dependency_missing = True
        self._output_tail = window[-256:]

    # =========================================================================
    # Requests
    # =========================================================================

    def _check_usable(self) -> None:
        if isinstance(self.phase, GivenUp):
            raise ProcessNotRunningError(
                f"Session gave up ({self.phase.reason}); restart it to try again",
                session_key=self.key,
            )
        if self.destroyed:
            raise ProcessNotRunningError("Session was destroyed", session_key=self.key)

    def submit(
        self,
        command: str,
        state: Any = None,
        callback: ResponseCallback | None = None,
    ) -> PendingRequest:
        """Queue a command on the primary channel.

        If the session is destroyed before the response arrives, the
        callback is never invoked.

        Raises:
            ProcessNotRunningError: If the session gave up or has no worker.
            ValueError: If the command is not a single line.
        """
        self._check_usable()
        return self.demux.submit(command, state, callback)

    async def blocking_call(self, command: str, timeout: float | None = None) -> str:
        """Submit a command and wait for its response body.

        Raises:
            ProcessNotRunningError: If the session gave up or has no worker.
            SessionDestroyedError: If the session is destroyed while waiting.
            TimeoutError: If ``timeout`` expires; the request stays queued.
        """
        self._check_usable()
        if timeout is None:
            timeout = settings.blocking_call_timeout_seconds
        return await self.demux.blocking_call(command, timeout=timeout)

    def query_async(
        self,
        command: str,
        state: Any = None,
        callback: ResponseCallback | None = None,
    ) -> asyncio.Task[None] | None:
        """Run a read-only query on the secondary channel (or the primary one)."""
        self._check_usable()
        return self.secondary.query_async(command, state, callback)

    async def query(self, command: str) -> str:
        self._check_usable()
        return await self.secondary.query(command)

    # =========================================================================
    # Diagnostics
    # =========================================================================

    def parse_diagnostics(self, raw_text: str) -> list[Diagnostic]:
        """Parse output with this session's staging map and extension list."""
        return parse_diagnostics(
            raw_text,
            staging_paths=self.staging_paths,
            extensions=self.supported_extensions or None,
        )

    def stage(self, path: str, contents: str) -> str:
        """Write unsaved contents of ``path`` to a scratch copy and return its path.

        The copy keeps the file's name (and its directory layout below the
        project root) so module names still match.
        """
        source = Path(path)
        try:
            relative = source.resolve().relative_to(self.root)
        except ValueError:
            relative = Path(source.name)
        staged = Path(self.work_dir) / "staging" / relative
        staged.parent.mkdir(parents=True, exist_ok=True)
        staged.write_text(contents, encoding="utf-8")
        self.staging_paths[str(staged)] = path
        return str(staged)

    async def check_file(self, path: str, contents: str | None = None) -> list[Diagnostic]:
        """Load a file and return its diagnostics.

        Args:
            path: The source file.
            contents: Unsaved buffer contents; when given a scratch copy is
                loaded and diagnostics are reported against ``path``.

        Returns:
            Parsed diagnostics with suggestions.
        """
        target = path if contents is None else self.stage(path, contents)
        body = await self.blocking_call(commands.load(target))
        return self.parse_diagnostics(body)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            key=self.key,
            kind=self.kind,
            root=self.root,
            state=self.state,
            start_mode=self.start_mode,
            service_port=self.service_port,
            pending_requests=self.demux.pending_count,
            ghc_version=self.ghc_version,
            targets=list(self.targets),
            given_up_reason=self.phase.reason if isinstance(self.phase, GivenUp) else None,
        )


# =============================================================================
# Manager
# =============================================================================


class WorkerSessionManager:
    """Registry and lifecycle driver for worker sessions.

    Exactly one WorkerSession exists per (kind, project root). Sessions are
    created on first use and removed by ``destroy``/``restart``; a session
    that gave up stays registered so it is not respawned until restarted.

    Thread Safety:
        Registry access uses an asyncio.Lock; startup of a single session is
        serialised by its own lock so concurrent callers share one startup.

    Attributes:
        launcher: Spawns worker processes
        negotiator: Checks and installs the worker tool
        event_bus: Event bus for lifecycle events
    """

    def __init__(
        self,
        launcher: ProcessLauncher | None = None,
        negotiator: InstallNegotiator | None = None,
        event_bus: EventBus | None = None,
        metrics_collector: MetricsCollector | None = None,
        connector: Connector | None = None,
    ) -> None:
        """Initialize the WorkerSessionManager.

        Args:
            launcher: Process launcher (default: a ProcessLauncher)
            negotiator: Install negotiator (default: one using ``launcher``)
            event_bus: Event bus (default: the global bus)
            metrics_collector: Optional per-session counters
            connector: Network-connect primitive for secondary queries
        """
        self.launcher = launcher or ProcessLauncher()
        self.negotiator = negotiator or InstallNegotiator(self.launcher)
        self.event_bus = event_bus or get_event_bus()
        self.metrics_collector = metrics_collector
        self.connector = connector
        self._sessions: dict[tuple[str, str], WorkerSession] = {}
        self._lock = asyncio.Lock()
        logger.debug("worker_session_manager_initialized")

    # =========================================================================
    # Registry
    # =========================================================================

    @staticmethod
    def _resolve_root(root: str) -> str:
        return str(Path(root).expanduser().resolve())

    async def _get_or_create(
        self, root: str, kind: str, targets: list[str] | None
    ) -> WorkerSession:
        is_valid, error_msg, resolved = validate_project_root(
            root,
            whitelist=settings.project_whitelist,
            blacklist=settings.project_blacklist,
        )
        if not is_valid:
            raise ValueError(error_msg)

        created = False
        async with self._lock:
            session = self._sessions.get((kind, resolved))
            if session is None:
                session = WorkerSession(
                    kind,
                    resolved,
                    targets=targets,
                    event_bus=self.event_bus,
                    metrics=self.metrics_collector,
                    connector=self.connector,
                )
                self._sessions[(kind, resolved)] = session
                created = True

        if created:
            if self.metrics_collector is not None:
                self.metrics_collector.start(session.key)
            logger.info("session_created", session_key=session.key, targets=session.targets)
            await self.event_bus.publish(
                WorkerEvent(
                    type=EventType.SESSION_CREATED,
                    session_key=session.key,
                    data={"root": resolved, "kind": kind, "targets": session.targets},
                )
            )
        return session

    def get_session(self, root: str, kind: str = "backend") -> WorkerSession | None:
        return self._sessions.get((kind, self._resolve_root(root)))

    def get_all_sessions(self) -> list[WorkerSession]:
        return list(self._sessions.values())

    # =========================================================================
    # Startup
    # =========================================================================

    async def ensure_ready(
        self,
        root: str,
        kind: str = "backend",
        targets: list[str] | None = None,
    ) -> WorkerSession:
        """Return a Ready session for ``root``, starting the worker if needed.

        Args:
            root: Project root directory.
            kind: Worker kind; sessions are keyed by (kind, root).
            targets: Package targets to load when the worker is first started.

        Returns:
            The ready WorkerSession.

        Raises:
            InstallFailureError: If the worker could not be installed or
                started; carries the transcript.
            UnsatisfiedDependencyError: If the worker kept exiting on a
                missing dependency after building it.
            SessionDestroyedError: If the session was destroyed meanwhile.
            TimeoutError: If startup exceeded ``startup_timeout_seconds``.
            ValueError: If the project root is not allowed.
        """
        session = await self._get_or_create(root, kind, targets)
        await self._ensure_started(session)
        await asyncio.wait_for(
            session.ready_event.wait(), timeout=settings.startup_timeout_seconds
        )

        phase = session.phase
        if isinstance(phase, GivenUp):
            raise phase.to_error(session.key)
        if not isinstance(phase, Ready):
            raise SessionDestroyedError(
                "Session was destroyed during startup", session_key=session.key
            )
        return session

    async def _start(self, root: str, kind: str) -> WorkerSession:
        session = await self._get_or_create(root, kind, None)
        await self._ensure_started(session)
        return session

    async def _ensure_started(self, session: WorkerSession) -> None:
        async with session.startup_lock:
            if not isinstance(session.phase, Absent) or session.destroyed:
                return

            if session.ghc_version is None:
                await self._load_metadata(session)
                if session.destroyed:
                    return

            status = await self.negotiator.check(session.root)
            if session.destroyed:
                return
            if status != InstallStatus.INSTALLED and not await self._install(session, status):
                return

            await self._spawn(session, StartMode.FAST)

    async def _load_metadata(self, session: WorkerSession) -> None:
        session.ghc_version = await self.negotiator.ghc_version(session.root)
        session.supported_extensions = await self.negotiator.supported_extensions(
            session.root
        )
        logger.debug(
            "session_metadata_loaded",
            session_key=session.key,
            ghc_version=session.ghc_version,
            extension_count=len(session.supported_extensions),
        )

    async def _install(self, session: WorkerSession, status: InstallStatus) -> bool:
        """Install the worker; returns False if the session gave up instead."""
        session.transition(Installing())
        if not settings.auto_install:
            self._give_up(
                session,
                f"{self.negotiator.worker_package} is {status.value} and "
                "automatic installation is disabled",
                "install_failure",
            )
            return False

        await self.event_bus.publish(
            WorkerEvent(
                type=EventType.INSTALL_STARTED,
                session_key=session.key,
                data={"status": status.value},
            )
        )
        try:
            transcript = await self.negotiator.install(
                session.root, ghc_version=session.ghc_version
            )
        except InstallFailureError as e:
            if session.destroyed:
                return False
            session.append_transcript(e.transcript + "\n")
            await self.event_bus.publish(
                WorkerEvent(
                    type=EventType.INSTALL_FAILED,
                    session_key=session.key,
                    data={"reason": str(e).splitlines()[0]},
                )
            )
            self._give_up(session, str(e).splitlines()[0], "install_failure")
            return False

        session.append_transcript(transcript + "\n")
        await self.event_bus.publish(
            WorkerEvent(type=EventType.INSTALL_COMPLETE, session_key=session.key)
        )
        return not session.destroyed

    async def _spawn(
        self,
        session: WorkerSession,
        mode: StartMode,
        replay: list[PendingRequest] | None = None,
    ) -> None:
        """Start a worker in ``mode`` and wire it to the session."""
        session.transition(Starting(mode))
        argv = build_start_arguments(
            stack_executable=settings.stack_executable,
            worker_package=settings.worker_package,
            object_dir=session.object_dir,
            mode=mode,
            docker_run_args=settings.docker_run_args,
            stack_yaml=settings.stack_yaml,
            ghci_options=settings.ghci_options,
            targets=session.targets,
        )
        session.begin_attempt(argv)

        try:
            process = await self.launcher.spawn(argv, cwd=session.root)
        except OSError as e:
            if session.destroyed:
                return
            session.append_transcript(f"{e}\n")
            self._give_up(session, f"Could not start the worker: {e}", "install_failure")
            return

        if session.destroyed:
            process.kill()
            return

        session.process = process
        session.demux.attach(process)
        session.demux.register(
            mode, self._startup_callback(session, process), "<startup>", internal=True
        )
        try:
            for command in [*settings.setup_commands, settings.prompt_command]:
                session.demux.write_raw(command)
            for pending in replay or []:
                session.demux.requeue(pending)
        except ProcessNotRunningError as e:
            # The reader sees the exit and decides what happens next.
            logger.warning("worker_setup_failed", session_key=session.key, error=str(e))

        session.reader_task = asyncio.create_task(
            self._pump_output(session, process), name=f"worker_output:{session.key}"
        )
        logger.info(
            "worker_spawned",
            session_key=session.key,
            pid=process.pid,
            mode=mode.value,
            replayed=len(replay or []),
        )
        await self.event_bus.publish(
            WorkerEvent(
                type=EventType.WORKER_SPAWNED,
                session_key=session.key,
                data={"pid": process.pid, "mode": mode.value},
            )
        )

    def _startup_callback(
        self, session: WorkerSession, process: WorkerProcess
    ) -> ResponseCallback:
        def on_first_frame(mode: StartMode, body: str) -> None:
            if session.process is not process or not isinstance(session.phase, Starting):
                return
            port, remainder = extract_port(body)
            session.startup_output = remainder
            session.secondary.port = port
            session.transition(Ready(mode, port))
            logger.info(
                "session_ready",
                session_key=session.key,
                mode=mode.value,
                service_port=port,
            )
            self.event_bus.publish_sync(
                WorkerEvent(
                    type=EventType.SESSION_READY,
                    session_key=session.key,
                    data={"service_port": port},
                )
            )

        return on_first_frame

    # =========================================================================
    # Process exit
    # =========================================================================

    async def _pump_output(self, session: WorkerSession, process: WorkerProcess) -> None:
        try:
            while True:
                data = await process.read()
                if not data:
                    break
                session.record_output(data)
                session.demux.feed(data)
        except OSError as e:
            logger.error("worker_output_read_failed", session_key=session.key, error=str(e))

        returncode = await process.wait()
        if session.process is not process or session.destroyed:
            return
        await self._on_process_exit(session, returncode)

    async def _on_process_exit(self, session: WorkerSession, returncode: int | None) -> None:
        session.process = None
        session.demux.detach()
        session.secondary.port = None
        logger.warning(
            "worker_exited",
            session_key=session.key,
            returncode=returncode,
            state=session.state.value,
        )
        await self.event_bus.publish(
            WorkerEvent(
                type=EventType.WORKER_EXITED,
                session_key=session.key,
                data={"returncode": returncode},
            )
        )

        phase = session.phase
        if not isinstance(phase, (Starting, Ready)):
            return

        if session.dependency_missing and phase.mode == StartMode.FAST:
            replay = [p for p in session.demux.take_pending() if not p.internal]
            reason = "Worker exited on an unsatisfied dependency; building dependencies"
            session.transition(Restarting(StartMode.WITH_BUILD, reason))
            if self.metrics_collector is not None:
                self.metrics_collector.record_restart(session.key)
            await self.event_bus.publish(
                WorkerEvent(
                    type=EventType.WORKER_ESCALATED,
                    session_key=session.key,
                    data={"mode": StartMode.WITH_BUILD.value, "replayed": len(replay)},
                )
            )
            await self._spawn(session, StartMode.WITH_BUILD, replay=replay)
            return

        if session.dependency_missing:
            self._give_up(
                session,
                "Worker exited on an unsatisfied dependency even after building "
                "dependencies",
                "unsatisfied_dependency",
            )
        else:
            self._give_up(
                session,
                f"Worker exited unexpectedly (exit code {returncode})",
                "install_failure",
            )

    def _give_up(self, session: WorkerSession, reason: str, error_kind: ErrorKind) -> None:
        phase = GivenUp(reason=reason, transcript=session.transcript, error_kind=error_kind)
        session.transition(phase)
        session.demux.abandon_pending(phase.to_error(session.key))
        logger.error(
            "session_given_up",
            session_key=session.key,
            reason=reason,
            error_kind=error_kind,
        )
        self.event_bus.publish_sync(
            WorkerEvent(
                type=EventType.SESSION_GIVEN_UP,
                session_key=session.key,
                data={"reason": reason, "error_kind": error_kind},
            )
        )

    # =========================================================================
    # Requests
    # =========================================================================

    async def submit(
        self,
        root: str,
        command: str,
        state: Any = None,
        callback: ResponseCallback | None = None,
        kind: str = "backend",
    ) -> PendingRequest:
        """Queue a command, starting the session's worker if it is absent.

        Raises:
            ProcessNotRunningError: If the session gave up; nothing is spawned.
        """
        session = await self._start(root, kind)
        return session.submit(command, state, callback)

    async def blocking_call(
        self,
        root: str,
        command: str,
        kind: str = "backend",
        timeout: float | None = None,
    ) -> str:
        session = await self._start(root, kind)
        return await session.blocking_call(command, timeout=timeout)

    async def query_async(
        self,
        root: str,
        command: str,
        state: Any = None,
        callback: ResponseCallback | None = None,
        kind: str = "backend",
    ) -> asyncio.Task[None] | None:
        session = await self._start(root, kind)
        return session.query_async(command, state, callback)

    # =========================================================================
    # Teardown
    # =========================================================================

    async def destroy(self, root: str, kind: str = "backend") -> bool:
        """Kill a session's worker and forget the session.

        The session leaves the registry before anything else happens, so a
        concurrent destroy finds nothing and is a no-op. Blocking waiters
        receive SessionDestroyedError; plain callbacks are dropped.

        Returns:
            True if a session was destroyed.
        """
        async with self._lock:
            session = self._sessions.pop((kind, self._resolve_root(root)), None)
        if session is None:
            return False
        await self._teardown(session)
        return True

    async def _teardown(self, session: WorkerSession) -> None:
        session.destroyed = True
        # Waiters parked before the first spawn see Absent and give up.
        session.ready_event.set()
        process, session.process = session.process, None
        session.demux.detach()
        session.secondary.port = None

        task, session.reader_task = session.reader_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if process is not None and process.returncode is None:
            process.kill()

        cancelled = await session.secondary.cancel_all()
        abandoned = session.demux.abandon_pending(
            SessionDestroyedError("Session was destroyed", session_key=session.key)
        )
        if not isinstance(session.phase, Absent):
            session.transition(Absent())
        shutil.rmtree(session.work_dir, ignore_errors=True)

        if self.metrics_collector is not None:
            self.metrics_collector.finish(session.key)
        logger.info(
            "session_destroyed",
            session_key=session.key,
            abandoned_requests=abandoned,
            cancelled_queries=cancelled,
        )
        await self.event_bus.publish(
            WorkerEvent(
                type=EventType.SESSION_DESTROYED,
                session_key=session.key,
                data={"abandoned_requests": abandoned},
            )
        )
        await self.event_bus.close_session(session.key)
        self.event_bus.clear_event_history(session.key)

    async def restart(
        self,
        root: str,
        kind: str = "backend",
        targets: list[str] | None = None,
    ) -> WorkerSession:
        """Destroy the session (clearing a give-up) and start it again.

        Args:
            root: Project root.
            kind: Worker kind.
            targets: New targets; None keeps the previous session's targets.
        """
        existing = self.get_session(root, kind)
        if targets is None and existing is not None:
            targets = existing.targets
        await self.destroy(root, kind)
        return await self.ensure_ready(root, kind, targets)

    async def cleanup_all(self) -> None:
        """Destroy every session (application shutdown)."""
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()

        logger.info("cleanup_all_start", session_count=len(sessions))
        for session in sessions:
            try:
                await self._teardown(session)
            except Exception as e:
                logger.error(
                    "cleanup_session_failed",
                    session_key=session.key,
                    error=str(e),
                )
        logger.info("cleanup_all_complete")
