from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence

import allure
import pytest

from agent_dispatch.config import ExecutorConfig, ExecutorType
from agent_dispatch.lifecycle.engine import LifecycleEngine
from agent_dispatch.lifecycle.errors import LaunchError, ProbeUnknown, TerminationError
from agent_dispatch.lifecycle.executors import SshExecutor
from agent_dispatch.lifecycle.executors.base import CommandResult
from agent_dispatch.lifecycle.executors.shell import parse_probe_output
from agent_dispatch.lifecycle.heartbeat import StalenessPolicy
from agent_dispatch.lifecycle.models import (
    LaunchSpec,
    ProbeState,
    ProcessHandle,
    TaskParams,
    TaskStatus,
    TaskType,
)

pytestmark = [
    allure.epic("Executors"),
    allure.feature("SSH Executor"),
]

_MARKERS = {
    "launch": "setsid",
    "probe": "ps -o stat=",
    "terminate": "kill -TERM",
    "tail": "tail -n",
    "remove": "rm -rf",
    "heartbeat": "heartbeat.json 2>/dev/null",
}


class ScriptedRunner:
    """Answers ssh invocations by recognizing which remote script they carry."""

    def __init__(self) -> None:
        self.calls: list[tuple[list[str], str | None]] = []
        self.answers: dict[str, CommandResult | Exception] = {}

    def set(self, kind: str, stdout: str = "", *, returncode: int = 0, stderr: str = "") -> None:
        self.answers[kind] = CommandResult(returncode=returncode, stdout=stdout, stderr=stderr)

    def kinds(self) -> list[str]:
        return [_kind_of(argv[-1]) for argv, _ in self.calls]

    def __call__(
        self,
        argv: Sequence[str],
        *,
        input: str | None = None,  # noqa: A002
        timeout: float,
    ) -> CommandResult:
        argv = list(argv)
        self.calls.append((argv, input))
        answer = self.answers.get(_kind_of(argv[-1]), CommandResult(0, "", ""))
        if isinstance(answer, Exception):
            raise answer
        return answer


def _kind_of(remote_command: str) -> str:
    for kind, marker in _MARKERS.items():
        if marker in remote_command:
            return kind
    return "other"


def _config(**overrides) -> ExecutorConfig:
    options = {
        "name": "build-box",
        "executor_type": ExecutorType.SSH,
        "host": "build-box.example.com",
        "user": "agent",
        "port": 2222,
        "key_path": "/keys/id_ed25519",
        "task_root": "/srv/agent-tasks",
        "env": {"ANTHROPIC_API_KEY": "sk-test"},
    }
    options.update(overrides)
    return ExecutorConfig(**options)


def _spec(**overrides) -> LaunchSpec:
    options = {
        "task_id": "5f0c1a2b-0000-4000-8000-000000000001",
        "task_type": TaskType.AGENT,
        "prompt": "fix the failing test",
        "command": None,
        "workspace": "~/repos/app",
        "heartbeat_interval": 30,
        "max_turns": 12,
        "allowed_tools": ("Read", "Edit"),
    }
    options.update(overrides)
    return LaunchSpec(**options)


def test_ssh_argv_is_non_interactive_and_uses_key() -> None:
    executor = SshExecutor(_config())

    argv = executor.ssh_argv("echo hi")

    assert argv[0] == "ssh"
    assert "BatchMode=yes" in argv
    assert "ConnectTimeout=10" in argv
    assert argv[argv.index("-p") + 1] == "2222"
    assert argv[argv.index("-i") + 1] == "/keys/id_ed25519"
    assert argv[-2] == "agent@build-box.example.com"
    assert argv[-1] == "sh -c 'echo hi'"


def test_launch_sends_wrapper_on_stdin_and_parses_pid() -> None:
    runner = ScriptedRunner()
    runner.set("launch", "4242\n")
    executor = SshExecutor(_config(), runner=runner)

    handle = executor.launch(_spec())

    assert handle.pid == 4242
    assert handle.artifact_dir == "/srv/agent-tasks/5f0c1a2b-0000-4000-8000-000000000001"
    argv, wrapper = runner.calls[0]
    assert "setsid nohup sh run.sh" in argv[-1]
    assert wrapper is not None
    assert 'cd "$HOME"/repos/app || finish 127' in wrapper
    assert "--max-turns 12" in wrapper
    assert "--allowedTools Read --allowedTools Edit" in wrapper
    assert "export ANTHROPIC_API_KEY=sk-test" in wrapper
    assert 'HEARTBEAT_FILE="$TASK_DIR"/heartbeat.json' in wrapper


def test_launch_failure_raises_launch_error() -> None:
    runner = ScriptedRunner()
    runner.set("launch", returncode=1, stderr="mkdir: permission denied")
    executor = SshExecutor(_config(), runner=runner)

    with pytest.raises(LaunchError, match="permission denied"):
        executor.launch(_spec())


def test_launch_without_pid_raises_launch_error() -> None:
    runner = ScriptedRunner()
    runner.set("launch", "\n")
    executor = SshExecutor(_config(), runner=runner)

    with pytest.raises(LaunchError, match="pid"):
        executor.launch(_spec())


@pytest.mark.parametrize(
    ("stdout", "state", "exit_code"),
    [
        ("exited 0\n", ProbeState.EXITED, 0),
        ("exited 3\n", ProbeState.EXITED, 3),
        ("alive  1.5  2048\n", ProbeState.ALIVE, None),
        ("absent\n", ProbeState.ABSENT, None),
    ],
)
def test_probe_parses_remote_report(stdout: str, state: ProbeState, exit_code: int | None) -> None:
    runner = ScriptedRunner()
    runner.set("probe", stdout)
    executor = SshExecutor(_config(), runner=runner)

    handle = ProcessHandle(task_id="t1", pid=77, artifact_dir="/srv/agent-tasks/t1")

    result = executor.probe(handle)

    assert result.state is state
    assert result.exit_code == exit_code
    if state is ProbeState.ALIVE:
        assert result.resources is not None
        assert result.resources.cpu_percent == 1.5
        assert result.resources.rss_kb == 2048


@pytest.mark.parametrize("stdout", ["", "garbage", "exited soon"])
def test_ambiguous_probe_output_is_unknown(stdout: str) -> None:
    with pytest.raises(ProbeUnknown):
        parse_probe_output(stdout, task_id="t1")


def test_connection_failures_are_unknown_not_dead() -> None:
    runner = ScriptedRunner()
    runner.set("probe", returncode=255, stderr="ssh: connect to host: Connection refused")
    executor = SshExecutor(_config(), runner=runner)
    handle = ProcessHandle(task_id="t1", pid=77)

    with pytest.raises(ProbeUnknown, match="Connection refused"):
        executor.probe(handle)

    runner.answers["probe"] = subprocess.TimeoutExpired(cmd="ssh", timeout=30)
    with pytest.raises(ProbeUnknown, match="timed out"):
        executor.probe(handle)


def test_terminate_signals_process_group() -> None:
    runner = ScriptedRunner()
    runner.set("terminate", "signalled\n")
    executor = SshExecutor(_config(), runner=runner)

    executor.terminate(ProcessHandle(task_id="t1", pid=77, artifact_dir="/srv/agent-tasks/t1"))

    assert 'kill -TERM -- "-$PID"' in runner.calls[0][0][-1]
    runner.set("terminate", returncode=1, stderr="boom")
    with pytest.raises(TerminationError):
        executor.terminate(ProcessHandle(task_id="t1", pid=77))


def test_heartbeat_channel_reads_remote_record() -> None:
    runner = ScriptedRunner()
    runner.set("heartbeat", json.dumps({"timestamp": 1_800_000_000, "interval": 20}))
    executor = SshExecutor(_config(), runner=runner)

    record = executor.heartbeat_channel.read_heartbeat("t1")

    assert record is not None
    assert record.interval_seconds == 20
    assert int(record.timestamp.timestamp()) == 1_800_000_000

    runner.set("heartbeat", returncode=255, stderr="Connection timed out")
    assert executor.heartbeat_channel.read_heartbeat("t1") is None


def test_fetch_output_is_lazy_and_replayable() -> None:
    runner = ScriptedRunner()
    runner.set("tail", 'first\n{"type": "result"}\n')
    executor = SshExecutor(_config(), runner=runner)

    tail = executor.fetch_output(ProcessHandle(task_id="t1", artifact_dir="/srv/t1"), lines=5)
    assert runner.calls == []

    assert [record.text for record in tail] == ["first", '{"type": "result"}']
    assert [record.data for record in tail] == [None, {"type": "result"}]
    assert runner.kinds() == ["tail", "tail"]
    assert "tail -n 5 /srv/t1/output.log" in runner.calls[0][0][-1]


def _ssh_engine(store, clock, notifier, runner: ScriptedRunner) -> LifecycleEngine:
    return LifecycleEngine(
        store=store,
        executors={"build-box": SshExecutor(_config(), runner=runner)},
        notifier=notifier,
        policy=StalenessPolicy(),
        clock=clock,
        sleep=lambda _seconds: None,
    )


def test_echo_task_completes_end_to_end(store, clock, notifier) -> None:
    runner = ScriptedRunner()
    runner.set("launch", "9001\n")
    runner.set("heartbeat", json.dumps({"timestamp": int(clock.now.timestamp()), "interval": 30}))
    runner.set("probe", "exited 0\n")
    runner.set("tail", "hi\n")
    engine = _ssh_engine(store, clock, notifier, runner)

    task_id = engine.start(TaskType.SHELL, "build-box", TaskParams(command="echo hi"))
    snapshot = engine.status(task_id)

    assert snapshot.task.status is TaskStatus.COMPLETED
    assert snapshot.task.exit_code == 0
    assert snapshot.task.pid == 9001
    assert snapshot.task.last_heartbeat == clock.now
    assert [record.text for record in engine.logs(task_id)] == ["hi"]
    assert [event.status for event in notifier.events] == [TaskStatus.COMPLETED]

    engine.cleanup(task_id)
    assert "remove" in runner.kinds()
    assert store.get(task_id) is None


def test_lost_connection_keeps_task_running(store, clock, notifier) -> None:
    runner = ScriptedRunner()
    runner.set("launch", "9002\n")
    engine = _ssh_engine(store, clock, notifier, runner)
    task_id = engine.start(TaskType.SHELL, "build-box", TaskParams(command="sleep 600"))
    runner.set("heartbeat", returncode=255, stderr="Connection reset by peer")
    runner.set("probe", returncode=255, stderr="Connection reset by peer")
    clock.advance(60)

    snapshot = engine.status(task_id)

    assert snapshot.task.status is TaskStatus.RUNNING
    assert snapshot.probe_state is ProbeState.UNKNOWN
    assert "Connection reset" in (snapshot.probe_error or "")
    assert notifier.events == []


def test_kill_over_unreachable_ssh_leaves_task_running(store, clock, notifier) -> None:
    runner = ScriptedRunner()
    runner.set("launch", "9003\n")
    engine = _ssh_engine(store, clock, notifier, runner)
    task_id = engine.start(TaskType.SHELL, "build-box", TaskParams(command="sleep 600"))
    runner.set("terminate", returncode=255, stderr="No route to host")

    with pytest.raises(TerminationError):
        engine.kill(task_id)

    assert store.get(task_id).status is TaskStatus.RUNNING


def test_heartbeat_follows_task_directory_recorded_at_launch(store, clock, notifier) -> None:
    runner = ScriptedRunner()
    runner.set("launch", "9004\n")
    task_id = _ssh_engine(store, clock, notifier, runner).start(
        TaskType.SHELL,
        "build-box",
        TaskParams(command="sleep 600"),
    )
    moved = LifecycleEngine(
        store=store,
        executors={"build-box": SshExecutor(_config(task_root="/opt/moved"), runner=runner)},
        notifier=notifier,
        policy=StalenessPolicy(),
        clock=clock,
        sleep=lambda _seconds: None,
    )
    runner.calls.clear()
    runner.set("heartbeat", json.dumps({"timestamp": 1_800_000_000, "interval": 30}))
    runner.set("probe", "alive 0.5 1024\n")

    snapshot = moved.status(task_id)

    assert snapshot.task.status is TaskStatus.RUNNING
    assert snapshot.task.last_heartbeat == clock.now
    heartbeat_command = next(
        argv[-1] for argv, _ in runner.calls if _kind_of(argv[-1]) == "heartbeat"
    )
    assert f"/srv/agent-tasks/{task_id}/heartbeat.json" in heartbeat_command
    assert "/opt/moved" not in heartbeat_command

    moved.kill(task_id)
    runner.calls.clear()
    moved.cleanup(task_id)

    removals = " ".join(argv[-1] for argv, _ in runner.calls)
    assert f"/srv/agent-tasks/{task_id}" in removals
    assert "/opt/moved" not in removals
