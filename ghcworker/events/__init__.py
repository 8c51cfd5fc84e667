"""Event system for worker session notifications.

Key Components:
    - EventType: Enum of all event types
    - WorkerEvent: Pydantic model for a published event
    - EventBus: asyncio.Queue based pub/sub keyed by session key

Usage:
    >>> from ghcworker.events import EventType, WorkerEvent, get_event_bus
    >>>
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("backend:/src/app")
    >>> await bus.publish(WorkerEvent(
    ...     type=EventType.SESSION_READY,
    ...     session_key="backend:/src/app",
    ...     data={"service_port": 53211},
    ... ))
    >>> event = await queue.get()
"""

from ghcworker.events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from ghcworker.events.types import (
    EventType,
    WorkerEvent,
)

__all__ = [
    "EventType",
    "WorkerEvent",
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
