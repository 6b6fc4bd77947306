"""Remote-shell executor driven through the OpenSSH client.

Connection state says nothing about the remote process: every operation
opens a fresh connection, and the process is judged only from what the
remote host reports (the exit-code file, `kill -0`, `ps`). A connection
that cannot be made is `ProbeUnknown`, never "dead".
"""

from __future__ import annotations

import logging
import shlex
import subprocess

from agent_dispatch.config import ExecutorConfig
from agent_dispatch.lifecycle.errors import LaunchError, ProbeUnknown, TerminationError
from agent_dispatch.lifecycle.executors.base import CommandResult, CommandRunner, run_command
from agent_dispatch.lifecycle.executors.shell import (
    HEARTBEAT_NAME,
    build_payload,
    parse_pid,
    parse_probe_output,
    render_launch_script,
    render_probe_script,
    render_remove_script,
    render_tail_script,
    render_terminate_script,
    render_wrapper_script,
    shell_path,
    task_dir_path,
)
from agent_dispatch.lifecycle.heartbeat import parse_heartbeat
from agent_dispatch.lifecycle.models import (
    HeartbeatRecord,
    LaunchSpec,
    OutputTail,
    ProbeResult,
    ProcessHandle,
)

logger = logging.getLogger(__name__)

# ssh reserves this status for its own failures (connect, auth, lost link).
SSH_CONNECTION_FAILURE = 255


class SshExecutor:
    """Runs tasks as detached processes on a remote host."""

    def __init__(self, config: ExecutorConfig, *, runner: CommandRunner = run_command) -> None:
        self.config = config
        self._runner = runner
        self._heartbeat_channel = RemoteHeartbeatChannel(self)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def executor_type(self) -> str:
        return self.config.executor_type.value

    @property
    def heartbeat_channel(self) -> RemoteHeartbeatChannel:
        return self._heartbeat_channel

    @property
    def destination(self) -> str:
        return f"{self.config.user}@{self.config.host}"

    def task_dir(self, task_id: str) -> str:
        return task_dir_path(self.config.task_root, task_id)

    def ssh_argv(self, script: str) -> list[str]:
        argv = [
            "ssh",
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={self.config.connect_timeout_seconds}",
            "-o",
            "StrictHostKeyChecking=accept-new",
            "-p",
            str(self.config.port),
        ]
        if self.config.key_path:
            argv.extend(["-i", self.config.key_path])
        # The remote login shell may not be POSIX; always hand the script to sh.
        argv.extend([self.destination, f"sh -c {shlex.quote(script)}"])
        return argv

    def run_remote(
        self,
        script: str,
        *,
        input: str | None = None,  # noqa: A002
        task_id: str | None = None,
    ) -> CommandResult:
        """Run a script on the host; connectivity failures raise `ProbeUnknown`."""

        try:
            result = self._runner(
                self.ssh_argv(script),
                input=input,
                timeout=self.config.command_timeout_seconds,
            )
        except subprocess.TimeoutExpired as error:
            raise ProbeUnknown(
                f"ssh to {self.destination} timed out after {error.timeout}s",
                task_id=task_id,
            ) from error
        except OSError as error:
            raise ProbeUnknown(
                f"ssh to {self.destination} could not run: {error}",
                task_id=task_id,
            ) from error
        if result.returncode == SSH_CONNECTION_FAILURE:
            raise ProbeUnknown(
                f"ssh to {self.destination} failed: {result.stderr.strip() or 'connection error'}",
                task_id=task_id,
            )
        return result

    def launch(self, spec: LaunchSpec) -> ProcessHandle:
        task_dir = self.task_dir(spec.task_id)
        wrapper = render_wrapper_script(
            spec,
            payload=build_payload(spec, claude_path=self.config.claude_path),
            heartbeat_file=f'"$TASK_DIR"/{HEARTBEAT_NAME}',
            env=dict(self.config.env),
        )
        result = self.run_remote(
            render_launch_script(task_dir),
            input=wrapper,
            task_id=spec.task_id,
        )
        if not result.ok:
            raise LaunchError(
                f"Launch on {self.destination} exited with {result.returncode}: "
                f"{result.stderr.strip()}",
                task_id=spec.task_id,
            )
        try:
            pid = parse_pid(result.stdout)
        except ValueError as error:
            raise LaunchError(str(error), task_id=spec.task_id) from error
        logger.info("Launched task %s on %s (pid %s)", spec.task_id, self.destination, pid)
        return ProcessHandle(task_id=spec.task_id, pid=pid, artifact_dir=task_dir)

    def probe(self, handle: ProcessHandle) -> ProbeResult:
        task_dir = handle.artifact_dir or self.task_dir(handle.task_id)
        result = self.run_remote(
            render_probe_script(task_dir, handle.pid),
            task_id=handle.task_id,
        )
        if not result.ok:
            raise ProbeUnknown(
                f"Probe on {self.destination} exited with {result.returncode}: "
                f"{result.stderr.strip()}",
                task_id=handle.task_id,
            )
        return parse_probe_output(result.stdout, task_id=handle.task_id)

    def fetch_output(self, handle: ProcessHandle, lines: int) -> OutputTail:
        task_dir = handle.artifact_dir or self.task_dir(handle.task_id)

        def load() -> list[str]:
            result = self.run_remote(render_tail_script(task_dir, lines), task_id=handle.task_id)
            return result.stdout.splitlines()

        return OutputTail(load)

    def terminate(self, handle: ProcessHandle) -> None:
        task_dir = handle.artifact_dir or self.task_dir(handle.task_id)
        result = self.run_remote(
            render_terminate_script(task_dir, handle.pid),
            task_id=handle.task_id,
        )
        if not result.ok:
            raise TerminationError(
                f"Terminate on {self.destination} exited with {result.returncode}: "
                f"{result.stderr.strip()}",
                task_id=handle.task_id,
            )
        logger.debug("Terminate task %s: %s", handle.task_id, result.stdout.strip())

    def remove_artifacts(self, handle: ProcessHandle) -> None:
        task_dir = handle.artifact_dir or self.task_dir(handle.task_id)
        result = self.run_remote(render_remove_script(task_dir), task_id=handle.task_id)
        if not result.ok:
            raise OSError(
                f"Removing {task_dir} on {self.destination} failed: {result.stderr.strip()}",
            )


class RemoteHeartbeatChannel:
    """Reads the heartbeat file the wrapper keeps in the remote task directory."""

    def __init__(self, executor: SshExecutor) -> None:
        self._executor = executor

    def path_for(self, task_id: str, artifact_dir: str | None = None) -> str:
        task_dir = artifact_dir or self._executor.task_dir(task_id)
        return f"{shell_path(task_dir)}/{HEARTBEAT_NAME}"

    def read_heartbeat(
        self,
        task_id: str,
        *,
        artifact_dir: str | None = None,
    ) -> HeartbeatRecord | None:
        path = self.path_for(task_id, artifact_dir)
        try:
            result = self._executor.run_remote(f"cat {path} 2>/dev/null\n", task_id=task_id)
        except ProbeUnknown as error:
            # No new record; the task goes stale if this keeps happening.
            logger.warning("Heartbeat for task %s unreadable: %s", task_id, error)
            return None
        if not result.ok or not result.stdout.strip():
            return None
        return parse_heartbeat(result.stdout)

    def remove(self, task_id: str, *, artifact_dir: str | None = None) -> None:
        path = self.path_for(task_id, artifact_dir)
        result = self._executor.run_remote(f"rm -f {path}\n", task_id=task_id)
        if not result.ok:
            raise OSError(f"Removing heartbeat of task {task_id} failed: {result.stderr.strip()}")
