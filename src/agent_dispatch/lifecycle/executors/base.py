"""Executor interface shared by every backend kind."""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from agent_dispatch.config import ExecutorConfig
from agent_dispatch.lifecycle.heartbeat import HeartbeatChannel
from agent_dispatch.lifecycle.models import LaunchSpec, OutputTail, ProbeResult, ProcessHandle

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of one finished helper command."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner(Protocol):
    """Runs one argv to completion within a bounded time."""

    def __call__(
        self,
        argv: Sequence[str],
        *,
        input: str | None = None,  # noqa: A002
        timeout: float,
    ) -> CommandResult:
        """Raise `subprocess.TimeoutExpired` or `OSError` when the command cannot finish."""


def run_command(
    argv: Sequence[str],
    *,
    input: str | None = None,  # noqa: A002
    timeout: float,
) -> CommandResult:
    logger.debug("Running: %s", shlex.join(argv))
    completed = subprocess.run(  # noqa: S603
        list(argv),
        input=input,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )
    return CommandResult(
        returncode=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr,
    )


class Executor(Protocol):
    """Capability to run one detached task process on a backend.

    Implementations must be safe to call concurrently for different tasks.
    Concurrency limits are the engine's job, not the executor's.
    """

    config: ExecutorConfig

    @property
    def name(self) -> str:
        """Configured executor name."""

    @property
    def executor_type(self) -> str:
        """Backend kind (`ssh`, `container`, `local`)."""

    @property
    def heartbeat_channel(self) -> HeartbeatChannel:
        """Where this backend's tasks publish heartbeats."""

    def launch(self, spec: LaunchSpec) -> ProcessHandle:
        """Start a detached process and return what is needed to find it again.

        Raise any exception when the process could not be started.
        """

    def probe(self, handle: ProcessHandle) -> ProbeResult:
        """Side-effect-free liveness check.

        A missing process is a normal `absent` result. Raise `ProbeUnknown`
        when the backend itself cannot be reached.
        """

    def fetch_output(self, handle: ProcessHandle, lines: int) -> OutputTail:
        """Lazy view over the last `lines` output lines."""

    def terminate(self, handle: ProcessHandle) -> None:
        """Signal the process; an already dead process is success."""

    def remove_artifacts(self, handle: ProcessHandle) -> None:
        """Delete backend-side state; already absent state is success."""
