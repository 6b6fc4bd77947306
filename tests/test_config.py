from __future__ import annotations

from pathlib import Path

import allure
import pytest
import yaml

from agent_dispatch.config import (
    ConfigError,
    ContainerRuntime,
    ExecutorType,
    LifecycleSettings,
    Settings,
    load_executors,
    parse_executors,
    sample_executors_yaml,
)

pytestmark = [
    allure.epic("Operator CLI"),
    allure.feature("Configuration"),
]


def test_parse_executors_builds_each_backend_kind() -> None:
    executors_file = parse_executors(
        {
            "executors": [
                {
                    "name": "box",
                    "type": "ssh",
                    "host": "box.example.com",
                    "user": "agent",
                    "key_path": "~/.ssh/id_ed25519",
                    "max_concurrent": 2,
                    "labels": ["linux", "gpu"],
                },
                {
                    "name": "sandbox",
                    "type": "Container",
                    "image": "agent:1",
                    "runtime": "podman",
                    "volumes": ["/srv:/workspace"],
                    "env": {"TOKEN": 123},
                },
                {"name": "here", "type": "local"},
            ],
            "defaults": {"max_turns": 40, "claude_path": "/opt/bin/claude"},
        },
    )

    box, sandbox, here = executors_file.executors
    assert box.executor_type is ExecutorType.SSH
    assert box.key_path == str(Path("~/.ssh/id_ed25519").expanduser())
    assert box.max_concurrent == 2
    assert box.claude_path == "/opt/bin/claude"
    assert sandbox.executor_type is ExecutorType.CONTAINER
    assert sandbox.runtime is ContainerRuntime.PODMAN
    assert sandbox.env == {"TOKEN": "123"}
    assert here.max_concurrent is None
    assert executors_file.defaults.max_turns == 40
    assert executors_file.find_executor("here") is here
    assert executors_file.find_by_labels(["gpu"]) == [box]
    assert executors_file.find_by_labels([]) == [box, sandbox, here]


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ([], "top level must be a mapping"),
        ({"executors": {"name": "x"}}, "'executors' must be a list"),
        ({"executors": [{"type": "local"}]}, "missing 'name'"),
        ({"executors": [{"name": "x", "type": "vm"}]}, "unsupported type"),
        ({"executors": [{"name": "x", "type": "ssh", "host": "h"}]}, "requires 'host' and 'user'"),
        ({"executors": [{"name": "x", "type": "container"}]}, "requires 'image'"),
        ({"executors": [{"name": "x", "type": "local", "max_concurrent": 0}]}, "must be > 0"),
        (
            {"executors": [{"name": "x", "type": "local"}, {"name": "x", "type": "local"}]},
            "duplicate executor name",
        ),
        ({"defaults": {"max_turns": "many"}}, "must be an integer"),
    ],
)
def test_parse_executors_rejects_invalid_entries(raw, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        parse_executors(raw)


def test_load_executors_missing_file_means_no_executors(tmp_path: Path) -> None:
    executors_file = load_executors(tmp_path / "absent.yaml")

    assert executors_file.executors == ()
    assert executors_file.defaults.max_turns == 100


def test_load_executors_reports_yaml_errors(tmp_path: Path) -> None:
    path = tmp_path / "executors.yaml"
    path.write_text("executors: [unclosed\n", "utf-8")

    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_executors(path)


def test_sample_file_parses() -> None:
    executors_file = parse_executors(yaml.safe_load(sample_executors_yaml()))

    assert [executor.name for executor in executors_file.executors] == [
        "local",
        "build-box",
        "sandbox",
    ]


def test_from_env_places_state_under_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_DISPATCH_HOME", str(tmp_path))
    monkeypatch.delenv("AGENT_DISPATCH_DB_PATH", raising=False)
    monkeypatch.delenv("AGENT_DISPATCH_HEARTBEAT_DIR", raising=False)
    monkeypatch.delenv("AGENT_DISPATCH_COMPLETIONS_DIR", raising=False)

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "tasks.db"
    assert settings.heartbeat.directory == tmp_path / "heartbeats"
    assert settings.notifications.completions_dir == tmp_path / "completions"
    assert settings.heartbeat.stale_factor == 10


def test_from_env_reads_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_DISPATCH_STALE_FACTOR", "4")
    monkeypatch.setenv("AGENT_DISPATCH_HEARTBEAT_INTERVAL_SECONDS", "15")
    monkeypatch.setenv("AGENT_DISPATCH_PROBE_BEFORE_TIMEOUT", "yes")
    monkeypatch.setenv("AGENT_DISPATCH_WEBHOOK_URL", "https://hooks.example.com/x")

    settings = Settings.from_env(db_path=tmp_path / "explicit.db")

    assert settings.db_path == tmp_path / "explicit.db"
    assert settings.heartbeat.stale_factor == 4
    assert settings.heartbeat.interval_seconds == 15
    assert settings.heartbeat.probe_before_timeout is True
    assert settings.notifications.webhook_url == "https://hooks.example.com/x"


def test_from_env_rejects_invalid_boolean(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_DISPATCH_PROBE_BEFORE_TIMEOUT", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value"):
        Settings.from_env()


def test_validate_rejects_non_positive_values() -> None:
    with pytest.raises(ValueError, match="CLEANUP_ATTEMPTS"):
        Settings(lifecycle=LifecycleSettings(cleanup_attempts=0)).validate()
    with pytest.raises(ValueError, match="KILL_GRACE_SECONDS"):
        Settings(lifecycle=LifecycleSettings(kill_grace_seconds=-1)).validate()

    Settings().validate()
