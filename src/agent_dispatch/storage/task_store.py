"""Task metadata store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from agent_dispatch.lifecycle.errors import DuplicateTaskId, InvalidTransition
from agent_dispatch.lifecycle.models import ACTIVE_STATUSES, Task, TaskStatus, TaskType
from agent_dispatch.storage.alembic_runner import upgrade_head
from agent_dispatch.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_dispatch.storage.sqlmodel_models import TaskRow, TaskTombstone


class SqlTaskStore:
    """Single source of truth for task state, one transaction per record operation."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Create the database file if needed and migrate it to head."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def get(self, task_id: str) -> Task | None:
        with Session(self.engine) as session:
            row = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one_or_none()
            return _to_task(row) if row is not None else None

    def put(self, task: Task) -> None:
        """Insert or replace a task record.

        Stored terminal records keep their status: writing any other status raises
        `InvalidTransition`. Ids that were deleted before raise `DuplicateTaskId`.
        """

        values = _row_values(task)
        while True:
            with Session(self.engine) as session:
                row = session.exec(
                    select(TaskRow).where(TaskRow.task_id == task.task_id),
                ).one_or_none()
                if row is None:
                    tombstone = session.exec(
                        select(TaskTombstone).where(TaskTombstone.task_id == task.task_id),
                    ).one_or_none()
                    if tombstone is not None:
                        raise DuplicateTaskId(task.task_id)
                    session.add(TaskRow(**values))
                    try:
                        session.commit()
                    except IntegrityError:
                        # Inserted concurrently; retry as an update.
                        session.rollback()
                        continue
                    return

                current = TaskStatus(row.status)
                if current.is_terminal and task.status is not current:
                    raise InvalidTransition(task.task_id, current.value, task.status.value)

                result = session.exec(
                    sa_update(TaskRow)
                    .where(
                        col(TaskRow.task_id) == task.task_id,
                        col(TaskRow.status) == current.value,
                    )
                    .values(**{key: value for key, value in values.items() if key != "task_id"}),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                return

    def delete(self, task_id: str) -> bool:
        """Remove a record and retire its id; absent ids are a no-op."""

        with Session(self.engine) as session:
            row = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one_or_none()
            if row is None:
                return False
            session.delete(row)
            session.add(TaskTombstone(task_id=task_id, deleted_at=to_db_datetime(utc_now())))
            session.commit()
            return True

    def list(
        self,
        *,
        status: TaskStatus | None = None,
        executor_name: str | None = None,
    ) -> list[Task]:
        """List tasks, newest first, optionally filtered by status and executor."""

        with Session(self.engine) as session:
            statement = select(TaskRow).order_by(col(TaskRow.created_at).desc())
            if status is not None:
                statement = statement.where(TaskRow.status == status.value)
            if executor_name is not None:
                statement = statement.where(TaskRow.executor_name == executor_name)
            rows = session.exec(statement).all()
        return [_to_task(row) for row in rows]

    def count_active(self, executor_name: str) -> int:
        """Number of pending or running tasks on one executor."""

        with Session(self.engine) as session:
            count = session.exec(
                select(func.count())
                .select_from(TaskRow)
                .where(
                    TaskRow.executor_name == executor_name,
                    col(TaskRow.status).in_([status.value for status in ACTIVE_STATUSES]),
                ),
            ).one()
        return int(count)


def _row_values(task: Task) -> dict[str, Any]:
    return {
        "task_id": task.task_id,
        "task_type": task.task_type.value,
        "executor_name": task.executor_name,
        "executor_type": task.executor_type,
        "status": task.status.value,
        "prompt": task.prompt,
        "command": task.command,
        "workspace": task.workspace,
        "max_turns": task.max_turns,
        "allowed_tools_json": json.dumps(list(task.allowed_tools)),
        "labels_json": json.dumps(list(task.labels)),
        "pid": task.pid,
        "artifact_dir": task.artifact_dir,
        "backend_ref": task.backend_ref,
        "exit_code": task.exit_code,
        "error": task.error,
        "heartbeat_interval": task.heartbeat_interval,
        "last_heartbeat": _optional_db_datetime(task.last_heartbeat),
        "heartbeat_seen": _optional_db_datetime(task.heartbeat_seen),
        "created_at": to_db_datetime(task.created_at),
        "started_at": _optional_db_datetime(task.started_at),
        "updated_at": to_db_datetime(task.updated_at),
        "finished_at": _optional_db_datetime(task.finished_at),
    }


def _optional_db_datetime(value: datetime | None) -> datetime | None:
    return to_db_datetime(value) if value is not None else None


def _optional_aware_datetime(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_task(row: TaskRow) -> Task:
    return Task(
        task_id=row.task_id,
        task_type=TaskType(row.task_type),
        executor_name=row.executor_name,
        executor_type=row.executor_type,
        status=TaskStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        prompt=row.prompt,
        command=row.command,
        workspace=row.workspace,
        max_turns=row.max_turns,
        allowed_tools=tuple(json.loads(row.allowed_tools_json or "[]")),
        labels=tuple(json.loads(row.labels_json or "[]")),
        pid=row.pid,
        artifact_dir=row.artifact_dir,
        backend_ref=row.backend_ref,
        started_at=_optional_aware_datetime(row.started_at),
        finished_at=_optional_aware_datetime(row.finished_at),
        exit_code=row.exit_code,
        error=row.error,
        last_heartbeat=_optional_aware_datetime(row.last_heartbeat),
        heartbeat_seen=_optional_aware_datetime(row.heartbeat_seen),
        heartbeat_interval=row.heartbeat_interval,
    )
