"""CLI entrypoint for agent-dispatch."""

import logging
import time
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from agent_dispatch import __version__
from agent_dispatch.lifecycle.controllers import (
    ConfigCommand,
    DispatchCliController,
    ExecutorsCommand,
    ListCommand,
    LogsCommand,
    StartCommand,
    SweepCommand,
    TaskCommand,
)
from agent_dispatch.lifecycle.errors import DispatchError
from agent_dispatch.lifecycle.models import TaskStatus, TaskType

click.rich_click.USE_MARKDOWN = True
CONTROLLER = DispatchCliController()

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite metadata DB path.",
)
config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Executors YAML path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-dispatch")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
def agent_dispatch(verbose: bool) -> None:
    """Dispatch coding-agent tasks to ssh, container and local executors."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_dispatch.command("start")
@db_path_option
@config_option
@click.option(
    "--type",
    "task_type",
    type=click.Choice([task_type.value for task_type in TaskType]),
    default=TaskType.AGENT.value,
    show_default=True,
    help="Agent invocation or raw shell command.",
)
@click.option("--executor", "executor_name", default=None, help="Executor name.")
@click.option(
    "--label",
    "labels",
    multiple=True,
    help="Required executor label when --executor is omitted. Can be repeated.",
)
@click.option("--prompt", default=None, help="Prompt for agent tasks.")
@click.option("--command", default=None, help="Command for shell tasks.")
@click.option("--workspace", default=None, help="Working directory on the executor.")
@click.option("--max-turns", type=click.IntRange(min=1), default=None, help="Agent turn limit.")
@click.option(
    "--allowed-tool",
    "allowed_tools",
    multiple=True,
    help="Tool the agent may use. Can be repeated.",
)
def start(  # noqa: PLR0913
    db_path: Path | None,
    config_path: Path | None,
    task_type: str,
    executor_name: str | None,
    labels: tuple[str, ...],
    prompt: str | None,
    command: str | None,
    workspace: str | None,
    max_turns: int | None,
    allowed_tools: tuple[str, ...],
) -> None:
    """Launch a task and print its id."""

    _emit_from(
        lambda: CONTROLLER.start(
            StartCommand(
                db_path=db_path,
                config_path=config_path,
                task_type=task_type,
                executor_name=executor_name,
                labels=labels,
                prompt=prompt,
                command=command,
                workspace=workspace,
                max_turns=max_turns,
                allowed_tools=allowed_tools,
            ),
        ),
    )


@agent_dispatch.command("status")
@db_path_option
@config_option
@click.argument("task_id")
@click.option("--json", "as_json", is_flag=True, help="Print the snapshot as JSON.")
def status(db_path: Path | None, config_path: Path | None, task_id: str, as_json: bool) -> None:
    """Probe a task and show its current state."""

    _emit_from(
        lambda: CONTROLLER.status(
            TaskCommand(
                db_path=db_path,
                config_path=config_path,
                task_id=task_id,
                as_json=as_json,
            ),
        ),
    )


@agent_dispatch.command("logs")
@db_path_option
@config_option
@click.argument("task_id")
@click.option(
    "--lines",
    "-n",
    type=click.IntRange(min=1),
    default=50,
    show_default=True,
    help="How many trailing output lines to show.",
)
def logs(db_path: Path | None, config_path: Path | None, task_id: str, lines: int) -> None:
    """Show the tail of a task's output."""

    _emit_from(
        lambda: CONTROLLER.logs(
            LogsCommand(
                db_path=db_path,
                config_path=config_path,
                task_id=task_id,
                lines=lines,
            ),
        ),
    )


@agent_dispatch.command("kill")
@db_path_option
@config_option
@click.argument("task_id")
def kill(db_path: Path | None, config_path: Path | None, task_id: str) -> None:
    """Terminate a running task."""

    _emit_from(
        lambda: CONTROLLER.kill(
            TaskCommand(db_path=db_path, config_path=config_path, task_id=task_id),
        ),
    )


@agent_dispatch.command("cleanup")
@db_path_option
@config_option
@click.argument("task_id")
@click.option(
    "--force",
    is_flag=True,
    help="Drop the record even if backend cleanup fails or the executor is gone.",
)
def cleanup(db_path: Path | None, config_path: Path | None, task_id: str, force: bool) -> None:
    """Remove a finished task's backend artifacts and metadata."""

    _emit_from(
        lambda: CONTROLLER.cleanup(
            TaskCommand(
                db_path=db_path,
                config_path=config_path,
                task_id=task_id,
                force=force,
            ),
        ),
    )


@agent_dispatch.command("list")
@db_path_option
@config_option
@click.option(
    "--status",
    type=click.Choice([task_status.value for task_status in TaskStatus]),
    default=None,
    help="Only tasks in this status.",
)
@click.option("--executor", "executor_name", default=None, help="Only tasks on this executor.")
@click.option("--json", "as_json", is_flag=True, help="Print one JSON array.")
@click.option("--jsonl", "as_jsonl", is_flag=True, help="Print one JSON object per line.")
def list_tasks(  # noqa: PLR0913
    db_path: Path | None,
    config_path: Path | None,
    status: str | None,
    executor_name: str | None,
    as_json: bool,
    as_jsonl: bool,
) -> None:
    """List stored tasks, newest first."""

    if as_json and as_jsonl:
        raise click.UsageError("--json and --jsonl are mutually exclusive.")
    output_format = "jsonl" if as_jsonl else "json" if as_json else "table"
    _emit_from(
        lambda: CONTROLLER.list_tasks(
            ListCommand(
                db_path=db_path,
                config_path=config_path,
                status=status,
                executor_name=executor_name,
                output_format=output_format,
            ),
        ),
    )


@agent_dispatch.command("executors")
@db_path_option
@config_option
@click.option("--json", "as_json", is_flag=True, help="Print as JSON.")
def executors(db_path: Path | None, config_path: Path | None, as_json: bool) -> None:
    """Show configured executors and their active task counts."""

    _emit_from(
        lambda: CONTROLLER.executors(
            ExecutorsCommand(db_path=db_path, config_path=config_path, as_json=as_json),
        ),
    )


@agent_dispatch.command("sweep")
@db_path_option
@config_option
@click.option(
    "--watch",
    "watch_seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Repeat the sweep every N seconds until interrupted.",
)
def sweep(db_path: Path | None, config_path: Path | None, watch_seconds: int | None) -> None:
    """Reconcile every pending and running task once."""

    command = SweepCommand(db_path=db_path, config_path=config_path)
    if watch_seconds is None:
        _emit_from(lambda: CONTROLLER.sweep(command))
        return
    try:
        while True:
            _emit_from(lambda: CONTROLLER.sweep(command))
            time.sleep(watch_seconds)
    except KeyboardInterrupt:
        click.echo("Sweep stopped.")


@agent_dispatch.command("config")
@config_option
@click.option("--init", "init", is_flag=True, help="Write a starter executors file.")
@click.option("--force", is_flag=True, help="Overwrite an existing file with --init.")
def config(config_path: Path | None, init: bool, force: bool) -> None:
    """Print the executors file path, or create it with --init."""

    _emit_from(
        lambda: CONTROLLER.config(ConfigCommand(config_path=config_path, init=init, force=force)),
    )


def _emit_from(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (DispatchError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_dispatch()
