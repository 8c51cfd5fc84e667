"""Event type definitions for worker session notifications.

Every lifecycle change of a worker session produces an event, so an editor
front end (or a log shipper) can follow what the manager is doing without
polling.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types published by ghcworker.

    Events are grouped by:
    - Session lifecycle: state changes, readiness, give-up and teardown
    - Worker process: spawn, exit and escalation to a building start
    - Installation: negotiator install attempts
    - Channels: protocol violations and secondary-channel fallbacks
    """

    # Session lifecycle
    SESSION_CREATED = "session_created"
    SESSION_STATE_CHANGED = "session_state_changed"
    SESSION_READY = "session_ready"
    SESSION_GIVEN_UP = "session_given_up"
    SESSION_DESTROYED = "session_destroyed"
    SESSION_CLOSED = "session_closed"

    # Worker process
    WORKER_SPAWNED = "worker_spawned"
    WORKER_EXITED = "worker_exited"
    WORKER_ESCALATED = "worker_escalated"

    # Installation
    INSTALL_STARTED = "install_started"
    INSTALL_COMPLETE = "install_complete"
    INSTALL_FAILED = "install_failed"

    # Channels
    PROTOCOL_VIOLATION = "protocol_violation"
    SECONDARY_FALLBACK = "secondary_fallback"


class WorkerEvent(BaseModel):
    """An event about one worker session.

    Payload schemas by event type:

    SESSION_STATE_CHANGED:
        - previous: str - State before the transition
        - state: str - State after the transition

    SESSION_READY:
        - service_port: int | None - Port for secondary queries

    SESSION_GIVEN_UP:
        - reason: str - Why the session stopped retrying
        - error_kind: str - "install_failure" or "unsatisfied_dependency"

    WORKER_SPAWNED:
        - pid: int | None - Worker process id
        - mode: str - Start mode ("fast" or "with-build")

    WORKER_EXITED:
        - returncode: int | None - Exit status

    PROTOCOL_VIOLATION:
        - preview: str - First bytes of the discarded frame
        - error: str - Description of the unsolicited frame

    SECONDARY_FALLBACK:
        - command: str - The query that went to the primary queue
        - reason: str - Why the direct connection was not used
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    session_key: str
    data: dict[str, Any] = Field(default_factory=dict)
