"""Request queue and response demultiplexer for the primary channel.

Commands are written to the worker's stdin one line at a time and answered
in order. The worker terminates every answer with a single marker byte (its
prompt), so the output stream is split on that byte and each frame is handed
to the oldest pending request.

Output is accumulated in a byte buffer with a scan cursor: bytes already
searched for the marker are never searched again, and frames are decoded
only once complete so multi-byte characters split across reads survive.

Usage:
    >>> demux = ResponseDemultiplexer("backend:/src/app")
    >>> demux.attach(process)
    >>> demux.submit(":t map", state="point", callback=on_type)
    >>> demux.feed(b"map :: (a -> b) -> [a] -> [b]\\n\\x04")
"""

import asyncio
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

from ghcworker.errors import ProcessNotRunningError, ProtocolViolationError
from ghcworker.events import EventBus, EventType, WorkerEvent
from ghcworker.metrics import MetricsCollector
from ghcworker.worker.process import WorkerProcess
from ghcworker.worker.security import sanitize_output, validate_command

logger = structlog.get_logger()

ResponseCallback = Callable[[Any, str], None]


@dataclass
class PendingRequest:
    """A queued command awaiting its response frame.

    Attributes:
        state: Opaque value handed back to the callback.
        callback: Called with ``(state, body)`` when the frame arrives.
        command: The command as written (without newline).
        waiter: Future resolved with the body, used by blocking calls.
        internal: True for the startup request registered at spawn time.
    """

    state: Any
    callback: ResponseCallback | None
    command: str
    waiter: asyncio.Future[str] | None = None
    internal: bool = False

    def complete(self, body: str, session_key: str) -> None:
        if self.callback is not None:
            try:
                self.callback(self.state, body)
            except Exception as e:
                logger.error(
                    "response_callback_failed",
                    session_key=session_key,
                    command=self.command[:80],
                    error=str(e),
                    exc_info=True,
                )
        if self.waiter is not None and not self.waiter.done():
            self.waiter.set_result(body)

    def fail(self, error: BaseException) -> None:
        if self.waiter is not None and not self.waiter.done():
            self.waiter.set_exception(error)


class ResponseDemultiplexer:
    """Ordered request queue bound to one worker process at a time.

    All methods except ``blocking_call`` are synchronous and must be called
    from the event loop thread; queue pushes and pops therefore never
    interleave with frame dispatch.

    Attributes:
        session_key: Key of the owning session, used for logs and events.
    """

    def __init__(
        self,
        session_key: str,
        *,
        marker: bytes = b"\x04",
        event_bus: EventBus | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        if len(marker) != 1:
            raise ValueError("frame marker must be exactly one byte")
        self.session_key = session_key
        self._marker = marker
        self._marker_text = marker.decode("latin-1")
        self._event_bus = event_bus
        self._metrics = metrics
        self._process: WorkerProcess | None = None
        self._queue: deque[PendingRequest] = deque()
        self._buffer = bytearray()
        self._scan_from = 0

    # =========================================================================
    # Process binding
    # =========================================================================

    @property
    def is_attached(self) -> bool:
        return self._process is not None

    def attach(self, process: WorkerProcess) -> None:
        """Bind a freshly spawned process; residual output is discarded."""
        self._process = process
        self._buffer = bytearray()
        self._scan_from = 0

    def detach(self) -> None:
        """Unbind the process; later submissions raise ProcessNotRunningError."""
        self._process = None

    def _write_line(self, command: str) -> None:
        if self._process is None:
            raise ProcessNotRunningError(
                "No worker process is attached", session_key=self.session_key
            )
        try:
            self._process.write(command.encode("utf-8") + b"\n")
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ProcessNotRunningError(
                f"Worker stdin is closed: {e}", session_key=self.session_key
            ) from e

    def _validate(self, command: str) -> None:
        is_valid, error_msg = validate_command(command, marker=self._marker_text)
        if not is_valid:
            raise ValueError(f"Command rejected: {error_msg}")

    # =========================================================================
    # Submission
    # =========================================================================

    def write_raw(self, command: str) -> None:
        """Write a command whose output belongs to an already queued request.

        Used for the setup commands sent while the startup request is
        pending; no queue entry is created.
        """
        self._validate(command)
        self._write_line(command)

    def register(
        self,
        state: Any,
        callback: ResponseCallback | None,
        command: str,
        *,
        internal: bool = False,
    ) -> PendingRequest:
        """Queue a request without writing anything (e.g. the startup frame)."""
        pending = PendingRequest(
            state=state, callback=callback, command=command, internal=internal
        )
        self._queue.append(pending)
        return pending

    def submit(
        self,
        command: str,
        state: Any = None,
        callback: ResponseCallback | None = None,
        *,
        waiter: asyncio.Future[str] | None = None,
    ) -> PendingRequest:
        """Write a command and queue its pending request.

        Args:
            command: A single-line command.
            state: Opaque value handed back to the callback.
            callback: Called with ``(state, body)``; may be None.
            waiter: Optional future resolved with the body.

        Returns:
            The queued PendingRequest.

        Raises:
            ValueError: If the command is empty or contains a line break or
                the frame marker.
            ProcessNotRunningError: If no live process is attached.
        """
        self._validate(command)
        self._write_line(command)
        pending = PendingRequest(
            state=state, callback=callback, command=command, waiter=waiter
        )
        self._queue.append(pending)
        if self._metrics is not None:
            self._metrics.record_request(self.session_key)
        logger.debug(
            "request_submitted",
            session_key=self.session_key,
            command=command[:80],
            pending=len(self._queue),
        )
        return pending

    async def blocking_call(self, command: str, timeout: float | None = None) -> str:
        """Submit a command and wait for its own response body.

        Only the calling coroutine waits; other submissions and frame
        delivery continue. On timeout the request keeps its place in the
        queue (its frame is still consumed when it arrives) and
        TimeoutError is raised.

        Raises:
            ValueError: If the command is rejected.
            ProcessNotRunningError: If no live process is attached.
            TimeoutError: If no response arrived within ``timeout`` seconds.
        """
        waiter: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self.submit(command, waiter=waiter)
        if timeout is None:
            return await waiter
        try:
            return await asyncio.wait_for(waiter, timeout=timeout)
        except TimeoutError:
            logger.warning(
                "blocking_call_timeout",
                session_key=self.session_key,
                command=command[:80],
                timeout=timeout,
            )
            raise

    def requeue(self, pending: PendingRequest) -> None:
        """Write a previously queued request to the current process again."""
        self._write_line(pending.command)
        self._queue.append(pending)

    # =========================================================================
    # Output
    # =========================================================================

    def feed(self, data: bytes) -> int:
        """Consume output bytes and dispatch every complete frame.

        Args:
            data: Bytes read from the worker; may split frames anywhere.

        Returns:
            The number of frames dispatched.
        """
        if not data:
            return 0
        if self._metrics is not None:
            self._metrics.record_bytes(self.session_key, len(data))

        buffer = self._buffer
        buffer += data
        start = 0
        dispatched = 0
        while True:
            index = buffer.find(self._marker, self._scan_from)
            if index < 0:
                break
            raw = bytes(buffer[start:index])
            start = index + 1
            self._scan_from = start
            self._dispatch(raw)
            dispatched += 1
            if self._buffer is not buffer:
                # A callback attached a new process; its output starts fresh.
                return dispatched

        if start:
            del buffer[:start]
        self._scan_from = len(buffer)
        return dispatched

    def _dispatch(self, raw: bytes) -> None:
        body = sanitize_output(raw.decode("utf-8", errors="replace"))

        if not self._queue:
            error = ProtocolViolationError(
                f"Unsolicited response frame ({len(body)} chars)",
                session_key=self.session_key,
            )
            logger.warning(
                "protocol_violation",
                session_key=self.session_key,
                error=str(error),
                preview=body[:80],
            )
            if self._metrics is not None:
                self._metrics.record_protocol_violation(self.session_key)
            if self._event_bus is not None:
                self._event_bus.publish_sync(
                    WorkerEvent(
                        type=EventType.PROTOCOL_VIOLATION,
                        session_key=self.session_key,
                        data={"error": str(error), "preview": body[:80]},
                    )
                )
            return

        pending = self._queue.popleft()
        if self._metrics is not None:
            self._metrics.record_frame(self.session_key)
        pending.complete(body, self.session_key)

    @property
    def buffered_bytes(self) -> int:
        """Bytes received after the last complete frame."""
        return len(self._buffer)

    # =========================================================================
    # Queue management
    # =========================================================================

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    def take_pending(self) -> list[PendingRequest]:
        """Remove and return every queued request, oldest first."""
        pending = list(self._queue)
        self._queue.clear()
        return pending

    def abandon_pending(self, error: BaseException) -> int:
        """Drop every queued request.

        Blocking waiters receive ``error``; plain callbacks are not invoked,
        so a caller that only registered a callback never hears back from a
        destroyed or given-up session.

        Returns:
            The number of abandoned requests.
        """
        pending = self.take_pending()
        for request in pending:
            request.fail(error)
        if pending:
            logger.info(
                "pending_requests_abandoned",
                session_key=self.session_key,
                count=len(pending),
                reason=str(error).splitlines()[0] if str(error) else "",
            )
        return len(pending)
