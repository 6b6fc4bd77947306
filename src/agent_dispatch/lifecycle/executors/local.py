"""Local executor: the task wrapper runs as a detached child of this machine."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import signal
import subprocess
import threading
from collections import deque
from pathlib import Path

from agent_dispatch.config import ExecutorConfig
from agent_dispatch.lifecycle.errors import TerminationError
from agent_dispatch.lifecycle.executors.base import CommandRunner, run_command
from agent_dispatch.lifecycle.executors.shell import (
    EXIT_CODE_NAME,
    OUTPUT_NAME,
    PID_NAME,
    WRAPPER_NAME,
    build_payload,
    parse_resources,
    render_wrapper_script,
)
from agent_dispatch.lifecycle.heartbeat import FileHeartbeatChannel
from agent_dispatch.lifecycle.models import (
    LaunchSpec,
    OutputTail,
    ProbeResult,
    ProbeState,
    ProcessHandle,
    ResourceUsage,
)

logger = logging.getLogger(__name__)


class LocalExecutor:
    """Runs each task in its own session under `task_root/<task_id>`."""

    def __init__(
        self,
        config: ExecutorConfig,
        *,
        heartbeat_dir: Path,
        runner: CommandRunner = run_command,
    ) -> None:
        self.config = config
        self._runner = runner
        self._heartbeat_channel = FileHeartbeatChannel(heartbeat_dir)
        # Children started by this process must be reaped here, or they linger as zombies.
        self._children: dict[str, subprocess.Popen[bytes]] = {}
        self._children_lock = threading.Lock()

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def executor_type(self) -> str:
        return self.config.executor_type.value

    @property
    def heartbeat_channel(self) -> FileHeartbeatChannel:
        return self._heartbeat_channel

    def task_dir(self, task_id: str) -> Path:
        return Path(self.config.task_root).expanduser() / task_id

    def launch(self, spec: LaunchSpec) -> ProcessHandle:
        task_dir = self.task_dir(spec.task_id)
        task_dir.mkdir(parents=True, exist_ok=True)
        self._heartbeat_channel.directory.mkdir(parents=True, exist_ok=True)
        heartbeat_path = self._heartbeat_channel.path_for(spec.task_id).resolve()
        wrapper = render_wrapper_script(
            spec,
            payload=build_payload(spec, claude_path=self.config.claude_path),
            heartbeat_file=shlex.quote(str(heartbeat_path)),
            env=dict(self.config.env),
        )
        (task_dir / WRAPPER_NAME).write_text(wrapper, "utf-8")

        child = subprocess.Popen(  # noqa: S603
            ["sh", WRAPPER_NAME],  # noqa: S607
            cwd=task_dir,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        with self._children_lock:
            self._children[spec.task_id] = child
        (task_dir / PID_NAME).write_text(f"{child.pid}\n", "utf-8")
        logger.info("Launched task %s locally (pid %s)", spec.task_id, child.pid)
        return ProcessHandle(task_id=spec.task_id, pid=child.pid, artifact_dir=str(task_dir))

    def probe(self, handle: ProcessHandle) -> ProbeResult:
        task_dir = self._artifact_dir(handle)
        exit_code = _read_exit_code(task_dir)
        if exit_code is not None:
            return ProbeResult(state=ProbeState.EXITED, exit_code=exit_code)

        pid = handle.pid or _read_pid(task_dir)
        if pid is not None and self._is_running(handle.task_id, pid):
            return ProbeResult(state=ProbeState.ALIVE, resources=self._resources(pid))

        # The wrapper may have finished between the two checks.
        exit_code = _read_exit_code(task_dir)
        if exit_code is not None:
            return ProbeResult(state=ProbeState.EXITED, exit_code=exit_code)
        return ProbeResult(state=ProbeState.ABSENT, detail="process not found")

    def fetch_output(self, handle: ProcessHandle, lines: int) -> OutputTail:
        path = self._artifact_dir(handle) / OUTPUT_NAME

        def load() -> list[str]:
            try:
                with path.open(encoding="utf-8", errors="replace") as stream:
                    return [line.rstrip("\n") for line in deque(stream, maxlen=lines)]
            except FileNotFoundError:
                return []

        return OutputTail(load)

    def terminate(self, handle: ProcessHandle) -> None:
        pid = handle.pid or _read_pid(self._artifact_dir(handle))
        if pid is None:
            return
        try:
            os.killpg(pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        except PermissionError as error:
            raise TerminationError(
                f"Not allowed to signal process group {pid}: {error}",
                task_id=handle.task_id,
            ) from error

    def remove_artifacts(self, handle: ProcessHandle) -> None:
        with self._children_lock:
            self._children.pop(handle.task_id, None)
        task_dir = self._artifact_dir(handle)
        if task_dir.exists():
            shutil.rmtree(task_dir)

    def _artifact_dir(self, handle: ProcessHandle) -> Path:
        if handle.artifact_dir:
            return Path(handle.artifact_dir)
        return self.task_dir(handle.task_id)

    def _is_running(self, task_id: str, pid: int) -> bool:
        with self._children_lock:
            child = self._children.get(task_id)
        if child is not None and child.poll() is not None:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but belongs to someone else.
            return True
        return not self._is_zombie(pid)

    def _is_zombie(self, pid: int) -> bool:
        # An exited child that nobody reaped still answers `kill -0`.
        try:
            stat = Path(f"/proc/{pid}/stat").read_text("utf-8")
        except OSError:
            stat = None
        if stat is not None:
            fields = stat.rsplit(")", 1)[-1].split()
            return bool(fields) and fields[0] == "Z"
        try:
            result = self._runner(
                ["ps", "-o", "stat=", "-p", str(pid)],
                timeout=self.config.command_timeout_seconds,
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return result.stdout.strip().startswith("Z")

    def _resources(self, pid: int) -> ResourceUsage | None:
        try:
            result = self._runner(
                ["ps", "-o", "%cpu=", "-o", "rss=", "-p", str(pid)],
                timeout=self.config.command_timeout_seconds,
            )
        except (OSError, subprocess.TimeoutExpired) as error:
            logger.debug("ps for pid %s failed: %s", pid, error)
            return None
        if not result.ok:
            return None
        return parse_resources(result.stdout.split())


def _read_exit_code(task_dir: Path) -> int | None:
    try:
        raw = (task_dir / EXIT_CODE_NAME).read_text("utf-8").strip()
    except FileNotFoundError:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring unreadable exit code in %s: %r", task_dir, raw)
        return None


def _read_pid(task_dir: Path) -> int | None:
    try:
        return int((task_dir / PID_NAME).read_text("utf-8").strip())
    except (FileNotFoundError, ValueError):
        return None
