"""SQLModel ORM tables for the task metadata store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_executor_status", "executor_name", "status"),)

    task_id: str = Field(primary_key=True)
    task_type: str
    executor_name: str
    executor_type: str
    status: str = Field(index=True)
    prompt: str | None = Field(default=None, sa_column=Column(Text))
    command: str | None = Field(default=None, sa_column=Column(Text))
    workspace: str | None = None
    max_turns: int | None = None
    allowed_tools_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    labels_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    pid: int | None = None
    artifact_dir: str | None = None
    backend_ref: str | None = None
    exit_code: int | None = None
    error: str | None = Field(default=None, sa_column=Column(Text))
    heartbeat_interval: int = Field(default=30)
    heartbeat_seen: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    last_heartbeat: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TaskTombstone(SQLModel, table=True):
    __tablename__ = "task_tombstones"  # type: ignore[bad-override]

    task_id: str = Field(primary_key=True)
    deleted_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
