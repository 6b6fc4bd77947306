"""Container executor driven through the docker or podman CLI."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path

from agent_dispatch.config import ExecutorConfig
from agent_dispatch.lifecycle.errors import (
    DispatchError,
    LaunchError,
    ProbeUnknown,
    TerminationError,
)
from agent_dispatch.lifecycle.executors.base import CommandResult, CommandRunner, run_command
from agent_dispatch.lifecycle.executors.shell import build_payload, render_wrapper_script
from agent_dispatch.lifecycle.heartbeat import FileHeartbeatChannel
from agent_dispatch.lifecycle.models import (
    LaunchSpec,
    OutputTail,
    ProbeResult,
    ProbeState,
    ProcessHandle,
)

logger = logging.getLogger(__name__)

HEARTBEAT_MOUNT = "/var/run/agent-dispatch"
TASK_ID_LABEL = "agent-dispatch.task-id"

_ALIVE_STATES = frozenset({"running", "created", "restarting", "paused"})
_EXITED_STATES = frozenset({"exited", "dead"})


class ContainerExecutor:
    """One container per task; the container's main process is the task wrapper."""

    def __init__(
        self,
        config: ExecutorConfig,
        *,
        heartbeat_dir: Path,
        runner: CommandRunner = run_command,
    ) -> None:
        self.config = config
        self.heartbeat_dir = heartbeat_dir
        self._runner = runner
        self._heartbeat_channel = FileHeartbeatChannel(heartbeat_dir)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def executor_type(self) -> str:
        return self.config.executor_type.value

    @property
    def heartbeat_channel(self) -> FileHeartbeatChannel:
        return self._heartbeat_channel

    @property
    def runtime(self) -> str:
        return self.config.runtime.value

    def container_name(self, task_id: str) -> str:
        return f"agent-dispatch-{self.config.name}-{task_id[:8]}"

    def run_argv(self, spec: LaunchSpec) -> list[str]:
        wrapper = render_wrapper_script(
            spec,
            payload=build_payload(spec, claude_path=self.config.claude_path),
            heartbeat_file=f"{HEARTBEAT_MOUNT}/{spec.task_id}.heartbeat.json",
            capture_output=False,
        )
        argv = [
            self.runtime,
            "run",
            "-d",
            "--name",
            self.container_name(spec.task_id),
            "--label",
            f"{TASK_ID_LABEL}={spec.task_id}",
            "-v",
            f"{self.heartbeat_dir.resolve()}:{HEARTBEAT_MOUNT}",
        ]
        for volume in self.config.volumes:
            argv.extend(["-v", volume])
        for key, value in sorted(self.config.env.items()):
            argv.extend(["-e", f"{key}={value}"])
        argv.extend([self.config.image or "", "sh", "-c", wrapper])
        return argv

    def launch(self, spec: LaunchSpec) -> ProcessHandle:
        self.heartbeat_dir.mkdir(parents=True, exist_ok=True)
        name = self.container_name(spec.task_id)
        result = self._run(self.run_argv(spec), task_id=spec.task_id)
        if not result.ok:
            raise LaunchError(
                f"{self.runtime} run for {name} failed: {result.stderr.strip()}",
                task_id=spec.task_id,
            )
        logger.info(
            "Launched task %s in container %s (%s)",
            spec.task_id,
            name,
            result.stdout.strip()[:12],
        )
        return ProcessHandle(task_id=spec.task_id, backend_ref=name)

    def probe(self, handle: ProcessHandle) -> ProbeResult:
        name = handle.backend_ref or self.container_name(handle.task_id)
        result = self._run(
            [self.runtime, "inspect", "--format", "{{.State.Status}} {{.State.ExitCode}}", name],
            task_id=handle.task_id,
        )
        if not result.ok:
            if _is_missing(result):
                return ProbeResult(state=ProbeState.ABSENT, detail=f"container {name} not found")
            raise ProbeUnknown(
                f"{self.runtime} inspect {name} failed: {result.stderr.strip()}",
                task_id=handle.task_id,
            )
        words = result.stdout.split()
        status = words[0].lower() if words else ""
        if status in _ALIVE_STATES:
            return ProbeResult(state=ProbeState.ALIVE, detail=status)
        if status in _EXITED_STATES:
            try:
                exit_code = int(words[1])
            except (IndexError, ValueError) as error:
                raise ProbeUnknown(
                    f"Unreadable exit code for {name}: {result.stdout.strip()!r}",
                    task_id=handle.task_id,
                ) from error
            return ProbeResult(state=ProbeState.EXITED, exit_code=exit_code, detail=status)
        raise ProbeUnknown(
            f"Unexpected container state for {name}: {result.stdout.strip()!r}",
            task_id=handle.task_id,
        )

    def fetch_output(self, handle: ProcessHandle, lines: int) -> OutputTail:
        name = handle.backend_ref or self.container_name(handle.task_id)

        def load() -> list[str]:
            result = self._run(
                [self.runtime, "logs", "--tail", str(lines), name],
                task_id=handle.task_id,
            )
            if not result.ok:
                if _is_missing(result):
                    return []
                raise ProbeUnknown(
                    f"{self.runtime} logs {name} failed: {result.stderr.strip()}",
                    task_id=handle.task_id,
                )
            return result.stdout.splitlines()

        return OutputTail(load)

    def terminate(self, handle: ProcessHandle) -> None:
        name = handle.backend_ref or self.container_name(handle.task_id)
        result = self._run([self.runtime, "kill", name], task_id=handle.task_id)
        if result.ok or _is_missing(result) or "not running" in result.stderr.lower():
            return
        raise TerminationError(
            f"{self.runtime} kill {name} failed: {result.stderr.strip()}",
            task_id=handle.task_id,
        )

    def remove_artifacts(self, handle: ProcessHandle) -> None:
        name = handle.backend_ref or self.container_name(handle.task_id)
        result = self._run([self.runtime, "rm", "-f", name], task_id=handle.task_id)
        if result.ok or _is_missing(result):
            return
        raise DispatchError(f"{self.runtime} rm {name} failed: {result.stderr.strip()}")

    def _run(self, argv: Sequence[str], *, task_id: str) -> CommandResult:
        try:
            return self._runner(argv, timeout=self.config.command_timeout_seconds)
        except subprocess.TimeoutExpired as error:
            raise ProbeUnknown(
                f"{self.runtime} did not answer within {error.timeout}s",
                task_id=task_id,
            ) from error
        except OSError as error:
            raise ProbeUnknown(
                f"{self.runtime} could not run: {error}",
                task_id=task_id,
            ) from error


def _is_missing(result: CommandResult) -> bool:
    return "no such" in result.stderr.lower()
