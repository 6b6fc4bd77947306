"""Executor backends and the factory that builds them from configuration."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from agent_dispatch.config import ExecutorConfig, ExecutorType
from agent_dispatch.lifecycle.executors.base import (
    CommandResult,
    CommandRunner,
    Executor,
    run_command,
)
from agent_dispatch.lifecycle.executors.container import ContainerExecutor
from agent_dispatch.lifecycle.executors.local import LocalExecutor
from agent_dispatch.lifecycle.executors.ssh import RemoteHeartbeatChannel, SshExecutor


def create_executor(
    config: ExecutorConfig,
    *,
    heartbeat_dir: Path,
    runner: CommandRunner = run_command,
) -> Executor:
    """Pick the backend implementation for one executor configuration."""

    if config.executor_type is ExecutorType.SSH:
        return SshExecutor(config, runner=runner)
    if config.executor_type is ExecutorType.CONTAINER:
        return ContainerExecutor(config, heartbeat_dir=heartbeat_dir, runner=runner)
    if config.executor_type is ExecutorType.LOCAL:
        return LocalExecutor(config, heartbeat_dir=heartbeat_dir, runner=runner)
    raise ValueError(f"Unsupported executor type: {config.executor_type}")


def create_executors(
    configs: Iterable[ExecutorConfig],
    *,
    heartbeat_dir: Path,
    runner: CommandRunner = run_command,
) -> dict[str, Executor]:
    return {
        config.name: create_executor(config, heartbeat_dir=heartbeat_dir, runner=runner)
        for config in configs
    }


__all__ = [
    "CommandResult",
    "CommandRunner",
    "ContainerExecutor",
    "Executor",
    "LocalExecutor",
    "RemoteHeartbeatChannel",
    "SshExecutor",
    "create_executor",
    "create_executors",
    "run_command",
]
