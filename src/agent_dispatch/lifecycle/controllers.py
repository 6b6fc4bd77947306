"""Controllers for dispatcher CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from agent_dispatch.config import (
    ExecutorsFile,
    Settings,
    load_executors,
    sample_executors_yaml,
)
from agent_dispatch.lifecycle.engine import LifecycleEngine
from agent_dispatch.lifecycle.executors import create_executors
from agent_dispatch.lifecycle.heartbeat import StalenessPolicy
from agent_dispatch.lifecycle.models import TaskParams, TaskSnapshot, TaskStatus, TaskType
from agent_dispatch.lifecycle.notifications import (
    CompletionRecordWriter,
    CompositeNotifier,
    NotificationSink,
    WebhookNotifier,
)
from agent_dispatch.lifecycle.sweeper import ReconciliationSweeper
from agent_dispatch.storage import SqlTaskStore


@dataclass(slots=True)
class StartCommand:
    """CLI input for dispatching one task."""

    db_path: Path | None
    config_path: Path | None
    task_type: str
    executor_name: str | None
    labels: tuple[str, ...]
    prompt: str | None
    command: str | None
    workspace: str | None
    max_turns: int | None
    allowed_tools: tuple[str, ...]


@dataclass(slots=True)
class TaskCommand:
    """CLI input for operations addressing one task."""

    db_path: Path | None
    config_path: Path | None
    task_id: str
    as_json: bool = False
    force: bool = False


@dataclass(slots=True)
class LogsCommand:
    """CLI input for output tail."""

    db_path: Path | None
    config_path: Path | None
    task_id: str
    lines: int = 50


@dataclass(slots=True)
class ListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    config_path: Path | None
    status: str | None
    executor_name: str | None
    output_format: str = "table"


@dataclass(slots=True)
class ExecutorsCommand:
    """CLI input for configured executor listing."""

    db_path: Path | None
    config_path: Path | None
    as_json: bool = False


@dataclass(slots=True)
class SweepCommand:
    """CLI input for one reconciliation pass."""

    db_path: Path | None
    config_path: Path | None


@dataclass(slots=True)
class ConfigCommand:
    """CLI input for config file inspection and bootstrap."""

    config_path: Path | None
    init: bool = False
    force: bool = False


class DispatchCliController:
    """Coordinates dispatch, inspection and maintenance CLI operations."""

    def start(self, command: StartCommand) -> list[str]:
        settings = _settings(command.db_path, command.config_path)
        with _engine(settings) as (engine, executors_file):
            task_type = TaskType(command.task_type)
            max_turns = command.max_turns
            if task_type is TaskType.AGENT and max_turns is None:
                max_turns = executors_file.defaults.max_turns
            executor = engine.resolve_executor(command.executor_name, command.labels)
            task_id = engine.start(
                task_type,
                executor.name,
                TaskParams(
                    prompt=command.prompt,
                    command=command.command,
                    workspace=command.workspace,
                    max_turns=max_turns,
                    allowed_tools=command.allowed_tools,
                    labels=command.labels,
                ),
            )
            task = engine.store.get(task_id)
        status = task.status.value if task is not None else "unknown"
        pid = task.pid if task is not None else None
        return [
            f"Task started: task_id={task_id} executor={executor.name} "
            f"status={status} pid={pid if pid is not None else '-'}",
        ]

    def status(self, command: TaskCommand) -> list[str]:
        settings = _settings(command.db_path, command.config_path)
        with _engine(settings) as (engine, _):
            snapshot = engine.status(command.task_id)
        if command.as_json:
            return [json.dumps(snapshot.to_dashboard_json(), ensure_ascii=False, indent=2)]
        return render_snapshot_lines(snapshot)

    def logs(self, command: LogsCommand) -> list[str]:
        settings = _settings(command.db_path, command.config_path)
        with _engine(settings) as (engine, _):
            tail = engine.logs(command.task_id, lines=command.lines)
            return [record.text for record in tail]

    def kill(self, command: TaskCommand) -> list[str]:
        settings = _settings(command.db_path, command.config_path)
        with _engine(settings) as (engine, _):
            snapshot = engine.kill(command.task_id)
        task = snapshot.task
        return [f"Task {task.task_id}: status={task.status.value} error={task.error or '-'}"]

    def cleanup(self, command: TaskCommand) -> list[str]:
        settings = _settings(command.db_path, command.config_path)
        with _engine(settings) as (engine, _):
            engine.cleanup(command.task_id, force=command.force)
        return [f"Task cleaned up: {command.task_id}"]

    def list_tasks(self, command: ListCommand) -> list[str]:
        settings = _settings(command.db_path, command.config_path)
        status_filter = _parse_status(command.status)
        with _engine(settings) as (engine, _):
            snapshots = engine.list(status=status_filter, executor_name=command.executor_name)

        if command.output_format == "jsonl":
            return [snapshot.to_jsonl_line() for snapshot in snapshots]
        if command.output_format == "json":
            payload = [snapshot.to_dashboard_json() for snapshot in snapshots]
            return [json.dumps(payload, ensure_ascii=False, indent=2)]

        lines = [f"Tasks: {len(snapshots)}"]
        for snapshot in snapshots:
            task = snapshot.task
            lines.append(
                f"  {task.task_id} type={task.task_type.value} executor={task.executor_name} "
                f"status={task.status.value} created_at={task.created_at.isoformat()} "
                f"{_shorten(task.description)}",
            )
        return lines

    def executors(self, command: ExecutorsCommand) -> list[str]:
        settings = _settings(command.db_path, command.config_path)
        executors_file = load_executors(settings.executors_path)
        with _store(settings) as store:
            active = {
                config.name: store.count_active(config.name) for config in executors_file.executors
            }

        if command.as_json:
            payload = [
                {
                    "name": config.name,
                    "type": config.executor_type.value,
                    "host": config.host,
                    "image": config.image,
                    "labels": list(config.labels),
                    "max_concurrent": config.max_concurrent,
                    "active": active[config.name],
                }
                for config in executors_file.executors
            ]
            return [json.dumps(payload, ensure_ascii=False, indent=2)]

        lines = [f"Executors: {len(executors_file.executors)} ({settings.executors_path})"]
        for config in executors_file.executors:
            target = config.host or config.image or "localhost"
            limit = config.max_concurrent if config.max_concurrent is not None else "-"
            lines.append(
                f"  {config.name} type={config.executor_type.value} target={target} "
                f"active={active[config.name]}/{limit} labels={','.join(config.labels) or '-'}",
            )
        return lines

    def sweep(self, command: SweepCommand) -> list[str]:
        settings = _settings(command.db_path, command.config_path)
        with _engine(settings) as (engine, _):
            sweeper = ReconciliationSweeper(engine, max_workers=settings.lifecycle.sweep_workers)
            report = sweeper.run_once()

        lines = [
            f"Sweep: checked={report.checked} finished={report.transitioned} "
            f"active={report.still_active} unknown={report.unknown} errors={report.errors}",
        ]
        for task_id, status in sorted(report.finished.items()):
            lines.append(f"  {task_id} -> {status}")
        return lines

    def config(self, command: ConfigCommand) -> list[str]:
        settings = _settings(None, command.config_path)
        path = settings.executors_path
        if not command.init:
            return [str(path)]
        if path.exists() and not command.force:
            raise ValueError(f"Config already exists: {path} (use --force to overwrite)")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(sample_executors_yaml(), "utf-8")
        return [f"Config written: {path}"]


def render_snapshot_lines(snapshot: TaskSnapshot) -> list[str]:
    task = snapshot.task
    resources = snapshot.resources
    lines = [
        f"Task: {task.task_id}",
        f"Type: {task.task_type.value}",
        f"Executor: {task.executor_name} ({task.executor_type})",
        f"Status: {task.status.value}",
        f"PID: {task.pid if task.pid is not None else '-'}",
        f"Created: {task.created_at.isoformat()}",
        f"Started: {task.started_at.isoformat() if task.started_at else '-'}",
        f"Finished: {task.finished_at.isoformat() if task.finished_at else '-'}",
        f"Exit code: {task.exit_code if task.exit_code is not None else '-'}",
        f"Error: {task.error or '-'}",
        f"Last heartbeat: {task.last_heartbeat.isoformat() if task.last_heartbeat else '-'}",
        f"Probe: {snapshot.probe_state.value}"
        + (f" ({snapshot.probe_error})" if snapshot.probe_error else ""),
    ]
    if resources is not None:
        lines.append(f"Resources: cpu={resources.cpu_percent}% rss={resources.rss_kb}kB")
    if snapshot.stale:
        lines.append("Heartbeat: stale")
    lines.append(f"Description: {_shorten(task.description, 200)}")
    return lines


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _shorten(text: str, limit: int = 60) -> str:
    single_line = " ".join(text.split())
    if len(single_line) <= limit:
        return single_line
    return single_line[: limit - 3] + "..."


def _settings(db_path: Path | None, config_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path, executors_path=config_path)
    settings.validate()
    return settings


def _notifier(settings: Settings, executors_file: ExecutorsFile) -> CompositeNotifier:
    sinks: list[NotificationSink] = [
        CompletionRecordWriter(settings.notifications.completions_dir),
    ]
    webhook_url = settings.notifications.webhook_url or executors_file.defaults.webhook_url
    if webhook_url:
        sinks.append(
            WebhookNotifier(
                webhook_url,
                timeout_seconds=settings.notifications.webhook_timeout_seconds,
            ),
        )
    return CompositeNotifier(sinks)


@contextmanager
def _store(settings: Settings) -> Iterator[SqlTaskStore]:
    store = SqlTaskStore(db_path=settings.db_path)
    store.init_schema()
    try:
        yield store
    finally:
        store.close()


@contextmanager
def _engine(settings: Settings) -> Iterator[tuple[LifecycleEngine, ExecutorsFile]]:
    executors_file = load_executors(settings.executors_path)
    notifier = _notifier(settings, executors_file)
    with _store(settings) as store:
        engine = LifecycleEngine(
            store=store,
            executors=create_executors(
                executors_file.executors,
                heartbeat_dir=settings.heartbeat.directory,
            ),
            notifier=notifier,
            policy=StalenessPolicy(
                stale_factor=settings.heartbeat.stale_factor,
                probe_before_timeout=settings.heartbeat.probe_before_timeout,
            ),
            heartbeat_interval_seconds=settings.heartbeat.interval_seconds,
            launch_timeout_seconds=settings.lifecycle.launch_timeout_seconds,
            kill_grace_seconds=settings.lifecycle.kill_grace_seconds,
            cleanup_attempts=settings.lifecycle.cleanup_attempts,
        )
        try:
            yield engine, executors_file
        finally:
            for sink in notifier.sinks:
                if isinstance(sink, WebhookNotifier):
                    sink.close()
