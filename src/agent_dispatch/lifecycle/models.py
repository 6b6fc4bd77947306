"""Domain models for the task lifecycle engine."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any
from uuid import uuid4

from agent_dispatch.lifecycle.errors import InvalidTransition


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"
    HEARTBEAT_TIMEOUT = "heartbeat_timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.KILLED,
        TaskStatus.HEARTBEAT_TIMEOUT,
    },
)
ACTIVE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.RUNNING})

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    # A launch failure or a kill can end a task before it ever ran.
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.KILLED}),
    TaskStatus.RUNNING: TERMINAL_STATUSES,
}


class TaskType(str, Enum):
    """What a task runs."""

    AGENT = "agent"
    SHELL = "shell"


class ProbeState(str, Enum):
    """Outcome of a liveness probe as seen in a snapshot."""

    ALIVE = "alive"
    EXITED = "exited"
    ABSENT = "absent"
    UNKNOWN = "unknown"
    NOT_PROBED = "not_probed"


@dataclass(frozen=True, slots=True)
class ResourceUsage:
    cpu_percent: float | None = None
    rss_kb: int | None = None


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """Best-effort process check returned by an executor."""

    state: ProbeState
    exit_code: int | None = None
    resources: ResourceUsage | None = None
    detail: str | None = None


@dataclass(frozen=True, slots=True)
class HeartbeatRecord:
    """Liveness record written by the task's environment."""

    timestamp: datetime
    interval_seconds: int


@dataclass(frozen=True, slots=True)
class ProcessHandle:
    """Identifies a launched backend process without the launch spec."""

    task_id: str
    pid: int | None = None
    artifact_dir: str | None = None
    backend_ref: str | None = None


@dataclass(frozen=True, slots=True)
class LaunchSpec:
    """Everything an executor needs to start one task."""

    task_id: str
    task_type: TaskType
    prompt: str | None
    command: str | None
    workspace: str | None
    heartbeat_interval: int
    max_turns: int | None = None
    allowed_tools: tuple[str, ...] = ()


@dataclass(slots=True)
class TaskParams:
    """Caller-supplied launch parameters."""

    prompt: str | None = None
    command: str | None = None
    workspace: str | None = None
    max_turns: int | None = None
    allowed_tools: tuple[str, ...] = ()
    labels: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class OutputRecord:
    """One line of task output; JSON lines are also parsed into `data`."""

    index: int
    text: str
    data: dict[str, Any] | None = None


class OutputTail:
    """Lazy view over the last lines of a task's output.

    Each iteration fetches from the backend again, so the view can be
    replayed and never acts as a stream cursor.
    """

    def __init__(self, loader: Callable[[], list[str]]) -> None:
        self._loader = loader

    def __iter__(self) -> Iterator[OutputRecord]:
        for index, line in enumerate(self._loader()):
            yield OutputRecord(index=index, text=line, data=_parse_json_line(line))


@dataclass(frozen=True, slots=True)
class Task:
    """Full persisted state of one dispatched task."""

    task_id: str
    task_type: TaskType
    executor_name: str
    executor_type: str
    status: TaskStatus
    created_at: datetime
    updated_at: datetime
    prompt: str | None = None
    command: str | None = None
    workspace: str | None = None
    max_turns: int | None = None
    allowed_tools: tuple[str, ...] = ()
    labels: tuple[str, ...] = ()
    pid: int | None = None
    artifact_dir: str | None = None
    backend_ref: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    exit_code: int | None = None
    error: str | None = None
    last_heartbeat: datetime | None = None
    heartbeat_seen: datetime | None = None
    heartbeat_interval: int = 30

    @classmethod
    def create(  # noqa: PLR0913
        cls,
        *,
        task_type: TaskType,
        executor_name: str,
        executor_type: str,
        params: TaskParams,
        heartbeat_interval: int,
        now: datetime,
        task_id: str | None = None,
    ) -> Task:
        return cls(
            task_id=task_id or str(uuid4()),
            task_type=task_type,
            executor_name=executor_name,
            executor_type=executor_type,
            status=TaskStatus.PENDING,
            created_at=now,
            updated_at=now,
            prompt=params.prompt,
            command=params.command,
            workspace=params.workspace,
            max_turns=params.max_turns,
            allowed_tools=tuple(params.allowed_tools),
            labels=tuple(params.labels),
            heartbeat_interval=heartbeat_interval,
        )

    @property
    def description(self) -> str:
        return (self.prompt if self.task_type is TaskType.AGENT else self.command) or ""

    @property
    def handle(self) -> ProcessHandle:
        return ProcessHandle(
            task_id=self.task_id,
            pid=self.pid,
            artifact_dir=self.artifact_dir,
            backend_ref=self.backend_ref,
        )

    def launch_spec(self) -> LaunchSpec:
        return LaunchSpec(
            task_id=self.task_id,
            task_type=self.task_type,
            prompt=self.prompt,
            command=self.command,
            workspace=self.workspace,
            heartbeat_interval=self.heartbeat_interval,
            max_turns=self.max_turns,
            allowed_tools=self.allowed_tools,
        )

    def mark_running(self, handle: ProcessHandle, *, now: datetime) -> Task:
        self._check_transition(TaskStatus.RUNNING)
        return replace(
            self,
            status=TaskStatus.RUNNING,
            pid=handle.pid,
            artifact_dir=handle.artifact_dir,
            backend_ref=handle.backend_ref,
            started_at=now,
            updated_at=_next_updated_at(self.updated_at, now),
        )

    def mark_terminal(
        self,
        status: TaskStatus,
        *,
        now: datetime,
        exit_code: int | None = None,
        error: str | None = None,
    ) -> Task:
        if not status.is_terminal:
            raise ValueError(f"Not a terminal status: {status.value}")
        if exit_code is None and error is None:
            raise ValueError("A terminal transition needs an exit code or an error.")
        self._check_transition(status)
        return replace(
            self,
            status=status,
            exit_code=exit_code,
            error=error,
            finished_at=now,
            updated_at=_next_updated_at(self.updated_at, now),
        )

    def with_heartbeat(self, record: HeartbeatRecord, *, now: datetime) -> Task:
        """Note a heartbeat record that advanced past the last one seen.

        The record's timestamp comes from the backend's clock, so it is only
        compared with the previous record. Liveness is stamped with `now`,
        the tracker's own time of observation.
        """

        if self.status.is_terminal:
            return self
        if self.heartbeat_seen is not None and record.timestamp <= self.heartbeat_seen:
            return self
        observed = now
        if self.last_heartbeat is not None and self.last_heartbeat > now:
            observed = self.last_heartbeat
        return replace(
            self,
            last_heartbeat=observed,
            heartbeat_seen=record.timestamp,
            heartbeat_interval=record.interval_seconds or self.heartbeat_interval,
            updated_at=_next_updated_at(self.updated_at, now),
        )

    def _check_transition(self, status_to: TaskStatus) -> None:
        if status_to not in ALLOWED_TRANSITIONS.get(self.status, frozenset()):
            raise InvalidTransition(self.task_id, self.status.value, status_to.value)


@dataclass(frozen=True, slots=True)
class TaskSnapshot:
    """Task record merged with the latest live observations."""

    task: Task
    probe_state: ProbeState = ProbeState.NOT_PROBED
    resources: ResourceUsage | None = None
    stale: bool = False
    probe_error: str | None = None

    def to_dashboard_json(self) -> dict[str, Any]:
        task = self.task
        return {
            "task_id": task.task_id,
            "task_type": task.task_type.value,
            "executor": task.executor_name,
            "executor_type": task.executor_type,
            "status": task.status.value,
            "pid": task.pid,
            "prompt": task.prompt,
            "command": task.command,
            "workspace": task.workspace,
            "labels": list(task.labels),
            "created_at": task.created_at.isoformat(),
            "started_at": _iso(task.started_at),
            "updated_at": task.updated_at.isoformat(),
            "finished_at": _iso(task.finished_at),
            "exit_code": task.exit_code,
            "error": task.error,
            "last_heartbeat": _iso(task.last_heartbeat),
            "heartbeat_interval": task.heartbeat_interval,
            "probe_state": self.probe_state.value,
            "probe_error": self.probe_error,
            "stale": self.stale,
            "cpu_percent": self.resources.cpu_percent if self.resources else None,
            "rss_kb": self.resources.rss_kb if self.resources else None,
        }

    def to_jsonl_line(self) -> str:
        return json.dumps(self.to_dashboard_json(), ensure_ascii=False, sort_keys=True)


@dataclass(frozen=True, slots=True)
class TerminalEvent:
    """Single notification emitted when a task reaches a terminal state."""

    task_id: str
    executor_name: str
    status: TaskStatus
    exit_code: int | None
    error: str | None
    finished_at: datetime
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_task(cls, task: Task) -> TerminalEvent:
        if task.finished_at is None:
            raise ValueError(f"Task {task.task_id} is not terminal.")
        return cls(
            task_id=task.task_id,
            executor_name=task.executor_name,
            status=task.status,
            exit_code=task.exit_code,
            error=task.error,
            finished_at=task.finished_at,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": "success" if self.status is TaskStatus.COMPLETED else "failure",
            "final_status": self.status.value,
            "exit_code": self.exit_code if self.exit_code is not None else -1,
            "error": self.error,
            "completed_at": self.finished_at.isoformat(),
            "executor": self.executor_name,
        }


def _next_updated_at(previous: datetime, now: datetime) -> datetime:
    # Strictly increasing even if the clock stalls or steps back.
    floor = previous + timedelta(microseconds=1)
    return now if now > previous else floor


def _parse_json_line(line: str) -> dict[str, Any] | None:
    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
