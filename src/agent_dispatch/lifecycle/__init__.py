"""Task lifecycle: state machine, heartbeat staleness, executors and sweeps."""

from agent_dispatch.lifecycle.engine import LifecycleEngine
from agent_dispatch.lifecycle.errors import (
    CleanupError,
    ConcurrencyLimitExceeded,
    DispatchError,
    ExecutorNotFound,
    LaunchError,
    ProbeUnknown,
    TaskNotFound,
    TaskNotTerminal,
    TerminationError,
)
from agent_dispatch.lifecycle.heartbeat import FileHeartbeatChannel, StalenessPolicy
from agent_dispatch.lifecycle.models import TaskParams, TaskSnapshot, TaskStatus, TaskType
from agent_dispatch.lifecycle.sweeper import ReconciliationSweeper, SweepReport

__all__ = [
    "CleanupError",
    "ConcurrencyLimitExceeded",
    "DispatchError",
    "ExecutorNotFound",
    "FileHeartbeatChannel",
    "LaunchError",
    "LifecycleEngine",
    "ProbeUnknown",
    "ReconciliationSweeper",
    "StalenessPolicy",
    "SweepReport",
    "TaskNotFound",
    "TaskNotTerminal",
    "TaskParams",
    "TaskSnapshot",
    "TaskStatus",
    "TaskType",
    "TerminationError",
]
