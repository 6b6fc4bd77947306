"""Shared test fixtures."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from agent_dispatch.config import ExecutorConfig, ExecutorType
from agent_dispatch.lifecycle.engine import LifecycleEngine
from agent_dispatch.lifecycle.heartbeat import FileHeartbeatChannel, StalenessPolicy
from agent_dispatch.lifecycle.models import (
    LaunchSpec,
    OutputTail,
    ProbeResult,
    ProbeState,
    ProcessHandle,
    TerminalEvent,
)
from agent_dispatch.storage import SqlTaskStore

T0 = datetime(2026, 10, 18, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> datetime:
        with self._lock:
            self.now = self.now + timedelta(seconds=seconds)
            return self.now


class FakeExecutor:
    """In-memory executor whose probe answers are scripted per task."""

    def __init__(
        self,
        name: str,
        *,
        heartbeat_dir: Path,
        max_concurrent: int | None = None,
        labels: tuple[str, ...] = (),
    ) -> None:
        self.config = ExecutorConfig(
            name=name,
            executor_type=ExecutorType.LOCAL,
            max_concurrent=max_concurrent,
            labels=labels,
        )
        self.heartbeat_channel = FileHeartbeatChannel(heartbeat_dir)
        self.launched: list[LaunchSpec] = []
        self.terminated: list[str] = []
        self.removed: list[str] = []
        self.probe_results: dict[str, ProbeResult | Exception] = {}
        self.default_probe = ProbeResult(state=ProbeState.ALIVE)
        self.output: dict[str, list[str]] = {}
        self.launch_error: Exception | None = None
        self.launch_delay = 0.0
        self.terminate_error: Exception | None = None
        self.exit_after_terminate = True
        self.remove_failures = 0
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def executor_type(self) -> str:
        return self.config.executor_type.value

    def launch(self, spec: LaunchSpec) -> ProcessHandle:
        if self.launch_delay:
            time.sleep(self.launch_delay)
        if self.launch_error is not None:
            raise self.launch_error
        with self._lock:
            self.launched.append(spec)
            pid = 1000 + len(self.launched)
        return ProcessHandle(task_id=spec.task_id, pid=pid, artifact_dir=f"/fake/{spec.task_id}")

    def probe(self, handle: ProcessHandle) -> ProbeResult:
        result = self.probe_results.get(handle.task_id, self.default_probe)
        if isinstance(result, Exception):
            raise result
        return result

    def fetch_output(self, handle: ProcessHandle, lines: int) -> OutputTail:
        return OutputTail(lambda: self.output.get(handle.task_id, [])[-lines:])

    def terminate(self, handle: ProcessHandle) -> None:
        self.terminated.append(handle.task_id)
        if self.terminate_error is not None:
            raise self.terminate_error
        if self.exit_after_terminate:
            self.probe_results[handle.task_id] = ProbeResult(state=ProbeState.ABSENT)

    def remove_artifacts(self, handle: ProcessHandle) -> None:
        if self.remove_failures > 0:
            self.remove_failures -= 1
            raise OSError("device busy")
        self.removed.append(handle.task_id)


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[TerminalEvent] = []
        self._lock = threading.Lock()

    def notify(self, event: TerminalEvent) -> None:
        with self._lock:
            self.events.append(event)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[SqlTaskStore]:
    task_store = SqlTaskStore(tmp_path / "tasks.db")
    task_store.init_schema()
    yield task_store
    task_store.close()


@pytest.fixture()
def heartbeat_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "heartbeats"
    directory.mkdir()
    return directory


@pytest.fixture()
def make_executor(heartbeat_dir: Path) -> Callable[..., FakeExecutor]:
    def _make(
        name: str = "fake",
        *,
        max_concurrent: int | None = None,
        labels: tuple[str, ...] = (),
    ) -> FakeExecutor:
        return FakeExecutor(
            name,
            heartbeat_dir=heartbeat_dir,
            max_concurrent=max_concurrent,
            labels=labels,
        )

    return _make


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def make_engine(
    store: SqlTaskStore,
    clock: FakeClock,
    notifier: RecordingNotifier,
) -> Callable[..., LifecycleEngine]:
    def _make(*executors: FakeExecutor, **overrides) -> LifecycleEngine:
        options = {
            "store": store,
            "executors": {executor.name: executor for executor in executors},
            "notifier": notifier,
            "policy": StalenessPolicy(),
            "clock": clock,
            "sleep": lambda _seconds: None,
        }
        options.update(overrides)
        return LifecycleEngine(**options)

    return _make
