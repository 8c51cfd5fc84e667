"""Error taxonomy for worker sessions.

Only ``InstallFailureError`` and ``UnsatisfiedDependencyError`` are meant to
reach a human: both carry the worker's transcript so environment problems can
be diagnosed. Protocol violations and secondary-channel failures are absorbed
where they happen; their errors are only logged and published as events.
"""


class WorkerSessionError(Exception):
    """Base class for session errors.

    Attributes:
        session_key: The session the error belongs to, if known.
    """

    def __init__(self, message: str, *, session_key: str | None = None) -> None:
        super().__init__(message)
        self.session_key = session_key


class ProcessNotRunningError(WorkerSessionError):
    """No live worker backs the session; call ensure_ready() or restart()."""


class ProtocolViolationError(WorkerSessionError):
    """A response frame arrived while no request was pending."""


class ConnectionUnavailableError(WorkerSessionError):
    """The secondary query channel could not be used."""


class SessionDestroyedError(WorkerSessionError):
    """The session was destroyed while a caller was waiting on it."""


class _TranscriptError(WorkerSessionError):
    def __init__(
        self,
        message: str,
        *,
        transcript: str = "",
        session_key: str | None = None,
    ) -> None:
        super().__init__(message, session_key=session_key)
        self.transcript = transcript

    def __str__(self) -> str:
        message = super().__str__()
        if not self.transcript.strip():
            return message
        return f"{message}\n\n{self.transcript.rstrip()}"


class InstallFailureError(_TranscriptError):
    """The worker could not be installed or started; terminal until restart."""


class UnsatisfiedDependencyError(_TranscriptError):
    """The worker kept exiting on a missing build dependency."""
