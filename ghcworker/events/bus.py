"""Async event bus for worker session notifications.

Subscribers receive events for one session key through an asyncio.Queue.
Events published before anyone subscribes are buffered and handed to the
first subscriber, and a bounded history is kept for late subscribers that
want to replay.
"""

import asyncio
import contextlib
import threading
from collections import defaultdict

import structlog

from ghcworker.events.types import EventType, WorkerEvent

logger = structlog.get_logger()


class EventBus:
    """Pub/sub bus keyed by session key.

    Thread Safety:
        The subscriber registry is guarded by a threading.Lock, so events
        can be published from executor threads through ``publish_sync``.
        Queue puts always happen on the event loop thread.

    Attributes:
        _subscribers: Session key -> subscriber queues
        _event_buffer: Session key -> events waiting for a first subscriber
            (newest MAX_BUFFER_PER_SESSION kept)
        _event_history: Session key -> recent events, for replay
    """

    MAX_HISTORY_PER_SESSION = 1000
    MAX_BUFFER_PER_SESSION = 1000

    def __init__(self) -> None:
        """Initialize an empty event bus."""
        self._subscribers: dict[str, list[asyncio.Queue[WorkerEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[WorkerEvent]] = defaultdict(list)
        self._event_history: dict[str, list[WorkerEvent]] = defaultdict(list)
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None

    def subscribe(self, session_key: str) -> asyncio.Queue[WorkerEvent]:
        """Subscribe to events for a session.

        Buffered events for the session are delivered to the new queue
        immediately.

        Args:
            session_key: The session to follow

        Returns:
            A queue receiving WorkerEvent objects
        """
        queue: asyncio.Queue[WorkerEvent] = asyncio.Queue()

        with self._lock:
            self._subscribers[session_key].append(queue)
            buffered = self._event_buffer.pop(session_key, [])

        for event in buffered:
            queue.put_nowait(event)

        logger.debug(
            "subscriber_added",
            session_key=session_key,
            buffered_events_delivered=len(buffered),
        )
        return queue

    def unsubscribe(self, session_key: str, queue: asyncio.Queue[WorkerEvent]) -> None:
        """Remove a queue; unknown queues are ignored."""
        with self._lock:
            queues = self._subscribers.get(session_key)
            if not queues or queue not in queues:
                return
            queues.remove(queue)
            if not queues:
                del self._subscribers[session_key]

    def _record(self, event: WorkerEvent) -> list[asyncio.Queue[WorkerEvent]]:
        # Caller holds the lock.
        if event.type != EventType.SESSION_CLOSED:
            history = self._event_history[event.session_key]
            history.append(event)
            if len(history) > self.MAX_HISTORY_PER_SESSION:
                del history[: len(history) - self.MAX_HISTORY_PER_SESSION]

        subscribers = list(self._subscribers.get(event.session_key, []))
        if not subscribers:
            buffer = self._event_buffer[event.session_key]
            buffer.append(event)
            if len(buffer) > self.MAX_BUFFER_PER_SESSION:
                del buffer[: len(buffer) - self.MAX_BUFFER_PER_SESSION]
        return subscribers

    async def publish(self, event: WorkerEvent) -> None:
        """Publish an event to every subscriber of its session.

        Args:
            event: The WorkerEvent to publish
        """
        self._loop = asyncio.get_running_loop()

        with self._lock:
            subscribers = self._record(event)

        for queue in subscribers:
            queue.put_nowait(event)

        logger.debug(
            "event_published",
            session_key=event.session_key,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
        )

    def publish_sync(self, event: WorkerEvent) -> None:
        """Publish from synchronous code.

        On the event loop thread the event is queued directly; from any
        other thread the put is scheduled with call_soon_threadsafe since
        asyncio.Queue is not thread-safe.

        Args:
            event: The WorkerEvent to publish
        """
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        with self._lock:
            subscribers = self._record(event)
            loop = self._loop if running is None else running
            if running is not None:
                self._loop = running

        if not subscribers:
            return

        if running is not None or loop is None or loop.is_closed():
            for queue in subscribers:
                queue.put_nowait(event)
            return

        for queue in subscribers:
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(queue.put_nowait, event)

    def get_event_history(self, session_key: str) -> list[WorkerEvent]:
        """Return the stored events for a session, oldest first."""
        with self._lock:
            return list(self._event_history.get(session_key, []))

    async def close_session(self, session_key: str) -> None:
        """Send a SESSION_CLOSED sentinel to subscribers and drop them.

        Buffered events are discarded; history is kept until
        ``clear_event_history`` is called.

        Args:
            session_key: The session to close
        """
        with self._lock:
            queues = self._subscribers.pop(session_key, [])
            self._event_buffer.pop(session_key, None)

        for queue in queues:
            queue.put_nowait(
                WorkerEvent(
                    type=EventType.SESSION_CLOSED,
                    session_key=session_key,
                    data={"reason": "session_closed"},
                )
            )

        if queues:
            logger.debug(
                "event_session_closed",
                session_key=session_key,
                subscribers_removed=len(queues),
            )

    def get_subscriber_count(self, session_key: str) -> int:
        """Number of subscribers for a session."""
        with self._lock:
            return len(self._subscribers.get(session_key, []))

    def clear_event_history(self, session_key: str) -> None:
        """Forget the stored history of a session."""
        with self._lock:
            self._event_history.pop(session_key, None)


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Return the process-wide EventBus, creating it on first use."""
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Drop the process-wide EventBus (used by tests)."""
    global _event_bus
    with _bus_lock:
        _event_bus = None
