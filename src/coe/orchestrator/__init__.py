"""Task orchestration: queue, status state machine, timeout guard and routing.

The Orchestrator facade lives in ``coe.orchestrator.service`` and is
loaded lazily, since it pulls in the verification and agent packages.
"""

from .queue import QueueStatus, Task, TaskQueue
from .routing import FALLBACK_MESSAGE, RequestKind
from .status import (
    TRANSITIONS,
    StateEvent,
    StatusStateMachine,
    TaskStatus,
    Trigger,
    project_queue_status,
)
from .timeout import TIMEOUT_MESSAGE, GuardResult, TimeoutGuard


def __getattr__(name: str):
    """Lazy import for the Orchestrator facade."""
    if name == "Orchestrator":
        from .service import Orchestrator

        return Orchestrator
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "FALLBACK_MESSAGE",
    "TIMEOUT_MESSAGE",
    "TRANSITIONS",
    "GuardResult",
    "Orchestrator",
    "QueueStatus",
    "RequestKind",
    "StateEvent",
    "StatusStateMachine",
    "Task",
    "TaskQueue",
    "TaskStatus",
    "TimeoutGuard",
    "Trigger",
    "project_queue_status",
]
