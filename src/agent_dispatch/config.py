"""Runtime configuration for the dispatcher and its executors."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 30
DEFAULT_STALE_FACTOR = 10
DEFAULT_TASK_ROOT = "/tmp/agent-dispatch-tasks"  # noqa: S108


class ConfigError(ValueError):
    """Raised when the executors file is malformed."""


class ExecutorType(str, Enum):
    """Backend kinds an executor can be."""

    SSH = "ssh"
    CONTAINER = "container"
    LOCAL = "local"


class ContainerRuntime(str, Enum):
    """Container CLI used by container executors."""

    DOCKER = "docker"
    PODMAN = "podman"


@dataclass(frozen=True, slots=True)
class ExecutorConfig:
    """Immutable description of one configured backend instance."""

    name: str
    executor_type: ExecutorType
    host: str | None = None
    port: int = 22
    user: str | None = None
    key_path: str | None = None
    claude_path: str = "claude"
    image: str | None = None
    runtime: ContainerRuntime = ContainerRuntime.DOCKER
    volumes: tuple[str, ...] = ()
    labels: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    max_concurrent: int | None = None
    connect_timeout_seconds: int = 10
    command_timeout_seconds: int = 30
    task_root: str = DEFAULT_TASK_ROOT

    def matches_labels(self, labels: tuple[str, ...] | list[str]) -> bool:
        """True when every requested label is carried by this executor."""

        return all(label in self.labels for label in labels)


@dataclass(frozen=True, slots=True)
class ExecutorDefaults:
    """`defaults:` block of the executors file."""

    max_turns: int = 100
    claude_path: str = "claude"
    webhook_url: str | None = None


@dataclass(frozen=True, slots=True)
class ExecutorsFile:
    """Resolved list of executor configurations."""

    executors: tuple[ExecutorConfig, ...] = ()
    defaults: ExecutorDefaults = field(default_factory=ExecutorDefaults)

    def find_executor(self, name: str) -> ExecutorConfig | None:
        for executor in self.executors:
            if executor.name == name:
                return executor
        return None

    def find_by_labels(self, labels: tuple[str, ...] | list[str]) -> list[ExecutorConfig]:
        return [executor for executor in self.executors if executor.matches_labels(labels)]


def load_executors(path: Path) -> ExecutorsFile:
    """Load executor configurations from YAML; a missing file means no executors."""

    if not path.exists():
        return ExecutorsFile()
    try:
        raw = yaml.safe_load(path.read_text("utf-8"))
    except yaml.YAMLError as error:
        raise ConfigError(f"Invalid YAML in {path}: {error}") from error
    return parse_executors(raw or {}, source=str(path))


def parse_executors(raw: Any, *, source: str = "<config>") -> ExecutorsFile:
    """Build and validate an `ExecutorsFile` from already-parsed YAML data."""

    if not isinstance(raw, dict):
        raise ConfigError(f"{source}: top level must be a mapping.")

    defaults_raw = raw.get("defaults") or {}
    if not isinstance(defaults_raw, dict):
        raise ConfigError(f"{source}: 'defaults' must be a mapping.")
    defaults = ExecutorDefaults(
        max_turns=_positive_int(defaults_raw.get("max_turns", 100), "defaults.max_turns"),
        claude_path=str(defaults_raw.get("claude_path") or "claude"),
        webhook_url=defaults_raw.get("webhook_url") or None,
    )

    entries = raw.get("executors") or []
    if not isinstance(entries, list):
        raise ConfigError(f"{source}: 'executors' must be a list.")

    executors: list[ExecutorConfig] = []
    seen: set[str] = set()
    for index, entry in enumerate(entries):
        executor = _parse_executor(entry, index=index, defaults=defaults, source=source)
        if executor.name in seen:
            raise ConfigError(f"{source}: duplicate executor name {executor.name!r}.")
        seen.add(executor.name)
        executors.append(executor)
    return ExecutorsFile(executors=tuple(executors), defaults=defaults)


def _parse_executor(
    entry: Any,
    *,
    index: int,
    defaults: ExecutorDefaults,
    source: str,
) -> ExecutorConfig:
    if not isinstance(entry, dict):
        raise ConfigError(f"{source}: executors[{index}] must be a mapping.")
    name = str(entry.get("name") or "").strip()
    if not name:
        raise ConfigError(f"{source}: executors[{index}] is missing 'name'.")

    try:
        executor_type = ExecutorType(str(entry.get("type", "")).strip().lower())
    except ValueError as error:
        raise ConfigError(
            f"{source}: executor {name!r} has unsupported type {entry.get('type')!r}; "
            "expected one of ssh, container, local.",
        ) from error

    try:
        runtime = ContainerRuntime(str(entry.get("runtime") or "docker").strip().lower())
    except ValueError as error:
        raise ConfigError(
            f"{source}: executor {name!r} has unsupported runtime {entry.get('runtime')!r}.",
        ) from error

    max_concurrent_raw = entry.get("max_concurrent")
    config = ExecutorConfig(
        name=name,
        executor_type=executor_type,
        host=entry.get("host") or None,
        port=_positive_int(entry.get("port", 22), f"{name}.port"),
        user=entry.get("user") or None,
        key_path=_expand(entry.get("key_path")),
        claude_path=str(entry.get("claude_path") or defaults.claude_path),
        image=entry.get("image") or None,
        runtime=runtime,
        volumes=tuple(str(volume) for volume in entry.get("volumes") or ()),
        labels=tuple(str(label) for label in entry.get("labels") or ()),
        env={str(key): str(value) for key, value in (entry.get("env") or {}).items()},
        max_concurrent=(
            None
            if max_concurrent_raw is None
            else _positive_int(max_concurrent_raw, f"{name}.max_concurrent")
        ),
        connect_timeout_seconds=_positive_int(
            entry.get("connect_timeout_seconds", 10),
            f"{name}.connect_timeout_seconds",
        ),
        command_timeout_seconds=_positive_int(
            entry.get("command_timeout_seconds", 30),
            f"{name}.command_timeout_seconds",
        ),
        task_root=str(entry.get("task_root") or DEFAULT_TASK_ROOT),
    )

    if config.executor_type is ExecutorType.SSH and (not config.host or not config.user):
        raise ConfigError(f"{source}: ssh executor {name!r} requires 'host' and 'user'.")
    if config.executor_type is ExecutorType.CONTAINER and not config.image:
        raise ConfigError(f"{source}: container executor {name!r} requires 'image'.")
    return config


def sample_executors_yaml() -> str:
    """Starter executors file written by `config --init`."""

    return """\
# agent-dispatch executors
executors:
  - name: local
    type: local
    labels: [dev]
    max_concurrent: 4

  - name: build-box
    type: ssh
    host: build-box.example.com
    user: agent
    key_path: ~/.ssh/id_ed25519
    labels: [linux, gpu]
    max_concurrent: 2

  - name: sandbox
    type: container
    image: ghcr.io/example/coding-agent:latest
    runtime: docker
    volumes:
      - /srv/repos:/workspace
    env:
      ANTHROPIC_API_KEY: changeme
    labels: [isolated]

defaults:
  max_turns: 100
  claude_path: claude
  # webhook_url: https://hooks.example.com/agent-dispatch
"""


@dataclass(slots=True)
class HeartbeatSettings:
    """Heartbeat channel and staleness policy settings."""

    interval_seconds: int = DEFAULT_HEARTBEAT_INTERVAL_SECONDS
    stale_factor: int = DEFAULT_STALE_FACTOR
    probe_before_timeout: bool = False
    directory: Path = Path.home() / ".agent-dispatch" / "heartbeats"


@dataclass(slots=True)
class LifecycleSettings:
    """Lifecycle engine and sweeper tuning."""

    launch_timeout_seconds: int = 300
    kill_grace_seconds: float = 5.0
    cleanup_attempts: int = 3
    sweep_interval_seconds: int = 60
    sweep_workers: int = 8


@dataclass(slots=True)
class NotificationSettings:
    """Terminal-transition notification sinks."""

    completions_dir: Path = Path.home() / ".agent-dispatch" / "completions"
    webhook_url: str | None = None
    webhook_timeout_seconds: float = 10.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path.home() / ".agent-dispatch" / "tasks.db"
    executors_path: Path = Path.home() / ".config" / "agent-dispatch" / "executors.yaml"
    heartbeat: HeartbeatSettings = field(default_factory=HeartbeatSettings)
    lifecycle: LifecycleSettings = field(default_factory=LifecycleSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)

    @classmethod
    def from_env(
        cls,
        db_path: Path | None = None,
        executors_path: Path | None = None,
    ) -> Settings:
        """Load settings from environment with defaults for local use."""

        home = Path(os.getenv("AGENT_DISPATCH_HOME", str(Path.home() / ".agent-dispatch")))
        return cls(
            db_path=db_path or Path(os.getenv("AGENT_DISPATCH_DB_PATH", str(home / "tasks.db"))),
            executors_path=executors_path
            or Path(
                os.getenv(
                    "AGENT_DISPATCH_CONFIG_PATH",
                    str(Path.home() / ".config" / "agent-dispatch" / "executors.yaml"),
                ),
            ).expanduser(),
            heartbeat=HeartbeatSettings(
                interval_seconds=int(
                    os.getenv(
                        "AGENT_DISPATCH_HEARTBEAT_INTERVAL_SECONDS",
                        str(DEFAULT_HEARTBEAT_INTERVAL_SECONDS),
                    ),
                ),
                stale_factor=int(
                    os.getenv("AGENT_DISPATCH_STALE_FACTOR", str(DEFAULT_STALE_FACTOR)),
                ),
                probe_before_timeout=_env_bool(
                    "AGENT_DISPATCH_PROBE_BEFORE_TIMEOUT",
                    default=False,
                ),
                directory=Path(
                    os.getenv("AGENT_DISPATCH_HEARTBEAT_DIR", str(home / "heartbeats")),
                ),
            ),
            lifecycle=LifecycleSettings(
                launch_timeout_seconds=int(
                    os.getenv("AGENT_DISPATCH_LAUNCH_TIMEOUT_SECONDS", "300"),
                ),
                kill_grace_seconds=float(os.getenv("AGENT_DISPATCH_KILL_GRACE_SECONDS", "5.0")),
                cleanup_attempts=int(os.getenv("AGENT_DISPATCH_CLEANUP_ATTEMPTS", "3")),
                sweep_interval_seconds=int(
                    os.getenv("AGENT_DISPATCH_SWEEP_INTERVAL_SECONDS", "60"),
                ),
                sweep_workers=int(os.getenv("AGENT_DISPATCH_SWEEP_WORKERS", "8")),
            ),
            notifications=NotificationSettings(
                completions_dir=Path(
                    os.getenv("AGENT_DISPATCH_COMPLETIONS_DIR", str(home / "completions")),
                ),
                webhook_url=os.getenv("AGENT_DISPATCH_WEBHOOK_URL") or None,
                webhook_timeout_seconds=float(
                    os.getenv("AGENT_DISPATCH_WEBHOOK_TIMEOUT_SECONDS", "10.0"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the engine cannot work with."""

        if self.heartbeat.interval_seconds <= 0:
            raise ValueError("AGENT_DISPATCH_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if self.heartbeat.stale_factor <= 0:
            raise ValueError("AGENT_DISPATCH_STALE_FACTOR must be > 0.")
        if self.lifecycle.launch_timeout_seconds <= 0:
            raise ValueError("AGENT_DISPATCH_LAUNCH_TIMEOUT_SECONDS must be > 0.")
        if self.lifecycle.kill_grace_seconds < 0:
            raise ValueError("AGENT_DISPATCH_KILL_GRACE_SECONDS must be >= 0.")
        if self.lifecycle.cleanup_attempts <= 0:
            raise ValueError("AGENT_DISPATCH_CLEANUP_ATTEMPTS must be > 0.")
        if self.lifecycle.sweep_interval_seconds <= 0:
            raise ValueError("AGENT_DISPATCH_SWEEP_INTERVAL_SECONDS must be > 0.")
        if self.lifecycle.sweep_workers <= 0:
            raise ValueError("AGENT_DISPATCH_SWEEP_WORKERS must be > 0.")


def _positive_int(value: Any, name: str) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError) as error:
        raise ConfigError(f"{name} must be an integer, got {value!r}.") from error
    if parsed <= 0:
        raise ConfigError(f"{name} must be > 0, got {parsed}.")
    return parsed


def _expand(value: Any) -> str | None:
    if not value:
        return None
    return str(Path(str(value)).expanduser())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
