"""Named errors surfaced by the lifecycle engine and executors."""

from __future__ import annotations


class DispatchError(RuntimeError):
    """Base class for every error the dispatcher reports."""


class ExecutorNotFound(DispatchError):
    def __init__(self, executor_name: str) -> None:
        super().__init__(f"Executor not found: {executor_name}")
        self.executor_name = executor_name


class ConcurrencyLimitExceeded(DispatchError):
    def __init__(self, executor_name: str, limit: int) -> None:
        super().__init__(
            f"Executor {executor_name} is at its concurrency limit ({limit} active tasks).",
        )
        self.executor_name = executor_name
        self.limit = limit


class InvalidTaskRequest(DispatchError, ValueError):
    """Launch parameters are inconsistent with the task type."""


class LaunchError(DispatchError):
    """Backend could not start the task process."""

    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id


class TaskNotFound(DispatchError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TaskNotTerminal(DispatchError):
    def __init__(self, task_id: str, status: str) -> None:
        super().__init__(
            f"Task {task_id} is still {status}; kill it before cleanup.",
        )
        self.task_id = task_id
        self.status = status


class DuplicateTaskId(DispatchError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task id was already used in this store: {task_id}")
        self.task_id = task_id


class InvalidTransition(DispatchError):
    def __init__(self, task_id: str, status_from: str, status_to: str) -> None:
        super().__init__(
            f"Illegal status transition for task {task_id}: {status_from} -> {status_to}",
        )
        self.task_id = task_id
        self.status_from = status_from
        self.status_to = status_to


class ProbeUnknown(DispatchError):
    """Backend could not be reached, so the process state is unknown.

    Never evidence that the process is dead or alive.
    """

    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id


class TerminationError(DispatchError):
    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id


class CleanupError(DispatchError):
    """One part of cleanup failed; the metadata record is left for a retry."""

    def __init__(self, task_id: str, part: str, message: str) -> None:
        super().__init__(f"Cleanup of task {task_id} failed at {part}: {message}")
        self.task_id = task_id
        self.part = part
