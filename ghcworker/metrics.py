"""In-memory counters for worker sessions.

The demultiplexer, the secondary channel and the session manager report
into a MetricsCollector; a session's counters are returned and dropped when
the session is destroyed.

Usage:
    >>> from ghcworker.metrics import MetricsCollector
    >>> collector = MetricsCollector()
    >>> collector.start("backend:/src/app")
    >>> collector.record_request("backend:/src/app")
    >>> collector.record_bytes("backend:/src/app", 128)
    >>> collector.record_frame("backend:/src/app")
    >>> final = collector.finish("backend:/src/app")
"""

import time
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class SessionMetricsData:
    """Accumulated counters for a single session.

    Attributes:
        requests: Commands submitted on the primary channel.
        frames: Response frames delivered to a pending request.
        bytes_received: Raw output bytes read from the worker.
        protocol_violations: Frames discarded because nothing was pending.
        secondary_queries: Queries answered over a direct connection.
        secondary_fallbacks: Queries rerouted to the primary queue.
        restarts: Worker respawns (dependency escalations).
        duration_ms: Session lifetime, set by finish().
        started_at: Unix timestamp when tracking began.
    """

    requests: int = 0
    frames: int = 0
    bytes_received: int = 0
    protocol_violations: int = 0
    secondary_queries: int = 0
    secondary_fallbacks: int = 0
    restarts: int = 0
    duration_ms: int = 0
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, int]:
        """Plain dict of all counters."""
        return {
            "requests": self.requests,
            "frames": self.frames,
            "bytes_received": self.bytes_received,
            "protocol_violations": self.protocol_violations,
            "secondary_queries": self.secondary_queries,
            "secondary_fallbacks": self.secondary_fallbacks,
            "restarts": self.restarts,
            "duration_ms": self.duration_ms,
        }


class MetricsCollector:
    """Tracks SessionMetricsData per session key.

    All recording happens on the event loop thread; recording for an
    untracked session is a silent no-op so components can be used without
    a collector-aware owner.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, SessionMetricsData] = {}

    def start(self, session_key: str) -> None:
        """Begin tracking a session; no-op if already tracked."""
        if session_key not in self._sessions:
            self._sessions[session_key] = SessionMetricsData()

    def _bump(self, session_key: str, name: str, amount: int = 1) -> None:
        data = self._sessions.get(session_key)
        if data is None:
            return
        setattr(data, name, getattr(data, name) + amount)

    def record_request(self, session_key: str) -> None:
        self._bump(session_key, "requests")

    def record_frame(self, session_key: str) -> None:
        self._bump(session_key, "frames")

    def record_bytes(self, session_key: str, size: int) -> None:
        self._bump(session_key, "bytes_received", size)

    def record_protocol_violation(self, session_key: str) -> None:
        self._bump(session_key, "protocol_violations")

    def record_secondary_query(self, session_key: str) -> None:
        self._bump(session_key, "secondary_queries")

    def record_secondary_fallback(self, session_key: str) -> None:
        self._bump(session_key, "secondary_fallbacks")

    def record_restart(self, session_key: str) -> None:
        self._bump(session_key, "restarts")

    def finish(self, session_key: str) -> SessionMetricsData | None:
        """Stop tracking a session and return its final counters.

        Args:
            session_key: The session to finalize.

        Returns:
            The final SessionMetricsData, or None if not tracked.
        """
        data = self._sessions.pop(session_key, None)
        if data is None:
            return None

        data.duration_ms = int((time.time() - data.started_at) * 1000)
        logger.info(
            "metrics_session_finished",
            session_key=session_key,
            **data.to_dict(),
        )
        return data

    def get(self, session_key: str) -> SessionMetricsData | None:
        """Current counters for a session, without removing them."""
        return self._sessions.get(session_key)
