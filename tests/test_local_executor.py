from __future__ import annotations

import os
import sys
import time
from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from agent_dispatch.config import ExecutorConfig, ExecutorType
from agent_dispatch.lifecycle.engine import LifecycleEngine
from agent_dispatch.lifecycle.executors import LocalExecutor
from agent_dispatch.lifecycle.heartbeat import StalenessPolicy
from agent_dispatch.lifecycle.models import (
    LaunchSpec,
    ProbeResult,
    ProbeState,
    ProcessHandle,
    TaskParams,
    TaskStatus,
    TaskType,
)

pytestmark = [
    allure.epic("Executors"),
    allure.feature("Local Executor"),
    pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell and sessions"),
]


def _executor(tmp_path: Path) -> LocalExecutor:
    config = ExecutorConfig(
        name="local",
        executor_type=ExecutorType.LOCAL,
        task_root=str(tmp_path / "tasks"),
    )
    return LocalExecutor(config, heartbeat_dir=tmp_path / "heartbeats")


def _spec(task_id: str, command: str, *, workspace: str | None = None) -> LaunchSpec:
    return LaunchSpec(
        task_id=task_id,
        task_type=TaskType.SHELL,
        prompt=None,
        command=command,
        workspace=workspace,
        heartbeat_interval=1,
    )


def _wait_for(
    probe: Callable[[], ProbeResult],
    states: tuple[ProbeState, ...],
    timeout: float = 10.0,
) -> ProbeResult:
    deadline = time.monotonic() + timeout
    result = probe()
    while result.state not in states and time.monotonic() < deadline:
        time.sleep(0.05)
        result = probe()
    return result


def test_short_command_exits_with_output_and_heartbeat(tmp_path: Path) -> None:
    executor = _executor(tmp_path)
    command = "sleep 0.5; echo hello; echo '{\"type\": \"result\", \"ok\": true}'"

    handle = executor.launch(_spec("t-echo", command))

    assert handle.pid is not None
    assert (tmp_path / "tasks" / "t-echo" / "pid").read_text("utf-8").strip() == str(handle.pid)
    result = _wait_for(lambda: executor.probe(handle), (ProbeState.EXITED, ProbeState.ABSENT))
    assert result.state is ProbeState.EXITED
    assert result.exit_code == 0

    records = list(executor.fetch_output(handle, lines=10))
    assert [record.text for record in records] == ["hello", '{"type": "result", "ok": true}']
    assert records[1].data == {"type": "result", "ok": True}

    heartbeat = executor.heartbeat_channel.read_heartbeat("t-echo")
    assert heartbeat is not None
    assert heartbeat.interval_seconds == 1


def test_non_zero_exit_is_reported(tmp_path: Path) -> None:
    executor = _executor(tmp_path)

    handle = executor.launch(_spec("t-fail", "exit 3"))

    result = _wait_for(lambda: executor.probe(handle), (ProbeState.EXITED, ProbeState.ABSENT))
    assert result.state is ProbeState.EXITED
    assert result.exit_code == 3


def test_missing_workspace_exits_127(tmp_path: Path) -> None:
    executor = _executor(tmp_path)

    handle = executor.launch(_spec("t-nows", "echo never", workspace=str(tmp_path / "nope")))

    result = _wait_for(lambda: executor.probe(handle), (ProbeState.EXITED, ProbeState.ABSENT))
    assert result.exit_code == 127
    assert list(executor.fetch_output(handle, lines=5)) == []


def test_terminate_stops_the_process_group(tmp_path: Path) -> None:
    executor = _executor(tmp_path)
    handle = executor.launch(_spec("t-long", "sleep 60"))

    alive = _wait_for(lambda: executor.probe(handle), (ProbeState.ALIVE,))
    assert alive.state is ProbeState.ALIVE
    assert handle.pid is not None
    assert os.getsid(handle.pid) == handle.pid

    executor.terminate(handle)

    result = _wait_for(lambda: executor.probe(handle), (ProbeState.EXITED, ProbeState.ABSENT))
    assert result.state in (ProbeState.EXITED, ProbeState.ABSENT)
    executor.terminate(handle)


def test_unknown_pid_is_absent(tmp_path: Path) -> None:
    executor = _executor(tmp_path)
    task_dir = tmp_path / "tasks" / "ghost"
    task_dir.mkdir(parents=True)

    result = executor.probe(ProcessHandle(task_id="ghost", artifact_dir=str(task_dir)))

    assert result.state is ProbeState.ABSENT


def test_remove_artifacts_is_idempotent(tmp_path: Path) -> None:
    executor = _executor(tmp_path)
    handle = executor.launch(_spec("t-rm", "true"))
    _wait_for(lambda: executor.probe(handle), (ProbeState.EXITED,))

    executor.remove_artifacts(handle)
    executor.remove_artifacts(handle)

    assert not (tmp_path / "tasks" / "t-rm").exists()


def test_engine_runs_local_task_to_completion(tmp_path: Path, store, notifier) -> None:
    executor = _executor(tmp_path)
    engine = LifecycleEngine(
        store=store,
        executors={"local": executor},
        notifier=notifier,
        policy=StalenessPolicy(),
        heartbeat_interval_seconds=1,
    )

    task_id = engine.start(TaskType.SHELL, "local", TaskParams(command="echo done"))
    deadline = time.monotonic() + 10
    snapshot = engine.status(task_id)
    while not snapshot.task.status.is_terminal and time.monotonic() < deadline:
        time.sleep(0.05)
        snapshot = engine.status(task_id)

    assert snapshot.task.status is TaskStatus.COMPLETED
    assert [record.text for record in engine.logs(task_id)] == ["done"]
    assert [event.task_id for event in notifier.events] == [task_id]

    engine.cleanup(task_id)
    assert store.get(task_id) is None
    assert not executor.heartbeat_channel.path_for(task_id).exists()
    assert not (tmp_path / "tasks" / task_id).exists()


def test_engine_kill_of_local_task(tmp_path: Path, store, notifier) -> None:
    executor = _executor(tmp_path)
    engine = LifecycleEngine(
        store=store,
        executors={"local": executor},
        notifier=notifier,
        heartbeat_interval_seconds=1,
        kill_grace_seconds=5.0,
        kill_poll_seconds=0.1,
    )
    task_id = engine.start(TaskType.SHELL, "local", TaskParams(command="sleep 60"))

    snapshot = engine.kill(task_id)

    assert snapshot.task.status is TaskStatus.KILLED
    assert snapshot.task.error == "terminated by request"
    assert snapshot.probe_state in (ProbeState.EXITED, ProbeState.ABSENT)
