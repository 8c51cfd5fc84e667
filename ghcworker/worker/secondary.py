"""Secondary query channel over the worker's service port.

Read-only queries such as type-at-point must not wait behind a backlog of
loads on the primary channel. Each query opens its own TCP connection to the
port the worker announced at startup, writes the command, reads until the
worker closes the connection and hands the body to the callback.

Whenever a direct connection cannot be used the query is submitted to the
primary queue instead, with the same state and callback, so callers never
need to know which channel answered. Every query invokes its callback
exactly once unless it is cancelled or the session is destroyed.
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from ghcworker.errors import ConnectionUnavailableError
from ghcworker.events import EventBus, EventType, WorkerEvent
from ghcworker.metrics import MetricsCollector
from ghcworker.worker.commands import is_read_only
from ghcworker.worker.demux import ResponseCallback, ResponseDemultiplexer
from ghcworker.worker.security import sanitize_output, validate_command

logger = structlog.get_logger()

Connector = Callable[
    [str, int], Awaitable[tuple[asyncio.StreamReader, asyncio.StreamWriter]]
]


async def open_tcp_connection(
    host: str, port: int
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    return await asyncio.open_connection(host, port)


class SecondaryQueryChannel:
    """Concurrent read-only queries with fallback to the primary queue.

    Attributes:
        port: The announced service port, or None until the worker is ready.
        enabled: False in sandboxed or remote deployments where direct
            connections to the worker are not possible.
    """

    def __init__(
        self,
        demux: ResponseDemultiplexer,
        *,
        host: str = "127.0.0.1",
        connect_timeout: float = 2.0,
        enabled: bool = True,
        connector: Connector | None = None,
        event_bus: EventBus | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.port: int | None = None
        self.host = host
        self.enabled = enabled
        self.connect_timeout = connect_timeout
        self._demux = demux
        self._connector = connector or open_tcp_connection
        self._event_bus = event_bus
        self._metrics = metrics
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def session_key(self) -> str:
        return self._demux.session_key

    @property
    def active_queries(self) -> int:
        return len(self._tasks)

    def query_async(
        self,
        command: str,
        state: Any = None,
        callback: ResponseCallback | None = None,
    ) -> asyncio.Task[None] | None:
        """Run a read-only query, directly if possible.

        Args:
            command: A read-only worker command.
            state: Opaque value handed back to the callback.
            callback: Called with ``(state, body)``.

        Returns:
            The task running the direct exchange (cancel it to abandon the
            query), or None if the query went straight to the primary queue.

        Raises:
            ValueError: If the command may change worker state or is not a
                single line.
            ProcessNotRunningError: If the query had to fall back and no
                worker is running.
        """
        return self._start(command, state, callback, None)

    async def query(self, command: str) -> str:
        """Run a read-only query and return its body."""
        waiter: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._start(command, None, None, waiter)
        return await waiter

    def _start(
        self,
        command: str,
        state: Any,
        callback: ResponseCallback | None,
        waiter: asyncio.Future[str] | None,
    ) -> asyncio.Task[None] | None:
        if not is_read_only(command):
            raise ValueError(
                f"Only read-only queries may use the secondary channel: {command[:40]}"
            )
        is_valid, error_msg = validate_command(command)
        if not is_valid:
            raise ValueError(f"Command rejected: {error_msg}")

        port = self.port
        if not self.enabled or port is None:
            reason = "disabled" if not self.enabled else "no_port"
            self._fallback(command, state, callback, waiter, reason)
            return None

        task = asyncio.create_task(
            self._exchange(command, state, callback, waiter, port),
            name=f"secondary_query:{self.session_key}",
        )
        self._tasks.add(task)

        def _on_done(t: asyncio.Task[None]) -> None:
            self._tasks.discard(t)
            if t.cancelled() and waiter is not None and not waiter.done():
                waiter.set_exception(
                    ConnectionUnavailableError(
                        "Query was cancelled", session_key=self.session_key
                    )
                )

        task.add_done_callback(_on_done)
        return task

    async def _exchange(
        self,
        command: str,
        state: Any,
        callback: ResponseCallback | None,
        waiter: asyncio.Future[str] | None,
        port: int,
    ) -> None:
        try:
            data = await self._roundtrip(command, port)
        except ConnectionUnavailableError as e:
            self._fallback_after_failure(command, state, callback, waiter, str(e))
            return

        body = sanitize_output(data.decode("utf-8", errors="replace"))
        if self._metrics is not None:
            self._metrics.record_secondary_query(self.session_key)
        if callback is not None:
            try:
                callback(state, body)
            except Exception as e:
                logger.error(
                    "response_callback_failed",
                    session_key=self.session_key,
                    command=command[:80],
                    error=str(e),
                    exc_info=True,
                )
        if waiter is not None and not waiter.done():
            waiter.set_result(body)

    async def _roundtrip(self, command: str, port: int) -> bytes:
        """One request/response exchange; the worker closes after answering.

        Raises:
            ConnectionUnavailableError: If the connection could not be made
                or broke before any response arrived.
        """
        writer: asyncio.StreamWriter | None = None
        try:
            reader, writer = await asyncio.wait_for(
                self._connector(self.host, port), timeout=self.connect_timeout
            )
            writer.write(command.encode("utf-8") + b"\n")
            await writer.drain()
            if writer.can_write_eof():
                writer.write_eof()
            data = await reader.read()
        except (OSError, TimeoutError, asyncio.IncompleteReadError) as e:
            raise ConnectionUnavailableError(
                f"{type(e).__name__}: {e}", session_key=self.session_key
            ) from e
        finally:
            if writer is not None:
                writer.close()
                with contextlib.suppress(OSError):
                    await writer.wait_closed()

        if not data:
            raise ConnectionUnavailableError(
                "Connection closed without a response", session_key=self.session_key
            )
        return data

    def _fallback_after_failure(
        self,
        command: str,
        state: Any,
        callback: ResponseCallback | None,
        waiter: asyncio.Future[str] | None,
        reason: str,
    ) -> None:
        try:
            self._fallback(command, state, callback, waiter, reason)
        except Exception as e:
            logger.error(
                "secondary_fallback_failed",
                session_key=self.session_key,
                command=command[:80],
                error=str(e),
            )
            if waiter is not None and not waiter.done():
                waiter.set_exception(e)

    def _fallback(
        self,
        command: str,
        state: Any,
        callback: ResponseCallback | None,
        waiter: asyncio.Future[str] | None,
        reason: str,
    ) -> None:
        logger.debug(
            "secondary_fallback",
            session_key=self.session_key,
            command=command[:80],
            reason=reason,
        )
        self._demux.submit(command, state, callback, waiter=waiter)
        if self._metrics is not None:
            self._metrics.record_secondary_fallback(self.session_key)
        if self._event_bus is not None:
            self._event_bus.publish_sync(
                WorkerEvent(
                    type=EventType.SECONDARY_FALLBACK,
                    session_key=self.session_key,
                    data={"command": command[:80], "reason": reason},
                )
            )

    async def cancel_all(self) -> int:
        """Cancel every in-flight direct query; no callbacks are invoked.

        Returns:
            The number of cancelled queries.
        """
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        return len(tasks)
