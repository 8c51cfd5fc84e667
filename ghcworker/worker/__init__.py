"""Worker process plumbing: spawning, framing, queries and installation.

Key Components:
    - ProcessLauncher: Spawns workers and runs helper commands
    - ResponseDemultiplexer: Ordered request queue on the primary channel
    - SecondaryQueryChannel: Direct read-only queries with fallback
    - InstallNegotiator: Version probing and installation
"""

from ghcworker.worker.demux import PendingRequest, ResponseDemultiplexer
from ghcworker.worker.negotiator import InstallNegotiator
from ghcworker.worker.process import CommandResult, ProcessLauncher, WorkerProcess
from ghcworker.worker.secondary import SecondaryQueryChannel

__all__ = [
    "CommandResult",
    "InstallNegotiator",
    "PendingRequest",
    "ProcessLauncher",
    "ResponseDemultiplexer",
    "SecondaryQueryChannel",
    "WorkerProcess",
]
