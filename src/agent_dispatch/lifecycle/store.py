"""Metadata store contract consumed by the lifecycle engine."""

from __future__ import annotations

from typing import Protocol

from agent_dispatch.lifecycle.models import Task, TaskStatus


class TaskStore(Protocol):
    """Durable task records, atomic per record.

    `put` must refuse to move a stored terminal record to another status.
    """

    def get(self, task_id: str) -> Task | None: ...

    def put(self, task: Task) -> None: ...

    def delete(self, task_id: str) -> bool: ...

    def list(
        self,
        *,
        status: TaskStatus | None = None,
        executor_name: str | None = None,
    ) -> list[Task]: ...

    def count_active(self, executor_name: str) -> int: ...
