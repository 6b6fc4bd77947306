"""Task lifecycle engine: the only writer of task status."""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime, timedelta

from agent_dispatch.config import DEFAULT_HEARTBEAT_INTERVAL_SECONDS
from agent_dispatch.lifecycle.errors import (
    CleanupError,
    ConcurrencyLimitExceeded,
    ExecutorNotFound,
    InvalidTaskRequest,
    InvalidTransition,
    LaunchError,
    ProbeUnknown,
    TaskNotFound,
    TaskNotTerminal,
    TerminationError,
)
from agent_dispatch.lifecycle.executors.base import Executor
from agent_dispatch.lifecycle.heartbeat import StalenessPolicy
from agent_dispatch.lifecycle.models import (
    OutputTail,
    ProbeResult,
    ProbeState,
    ProcessHandle,
    Task,
    TaskParams,
    TaskSnapshot,
    TaskStatus,
    TaskType,
    TerminalEvent,
)
from agent_dispatch.lifecycle.notifications import NotificationSink
from agent_dispatch.lifecycle.store import TaskStore
from agent_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

LAUNCH_NOT_CONFIRMED = "launch was never confirmed"
KILLED_BY_REQUEST = "terminated by request"


class _KeyedLocks:
    """One mutex per key, dropped again once nobody holds or waits for it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (threading.Lock(), 0))
            self._locks[key] = (lock, users + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                lock, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)


class LifecycleEngine:
    """Drives tasks from `pending` to a terminal state.

    Operations on different task ids run in parallel; operations on the same
    id are serialized by a per-task lock. Admission to an executor is
    serialized separately, and only for the capacity check and the insert of
    the pending record, so a slow launch never blocks other starts.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        executors: Mapping[str, Executor],
        notifier: NotificationSink | None = None,
        policy: StalenessPolicy | None = None,
        heartbeat_interval_seconds: int = DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
        launch_timeout_seconds: int = 300,
        kill_grace_seconds: float = 5.0,
        kill_poll_seconds: float = 0.5,
        cleanup_attempts: int = 3,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.executors = dict(executors)
        self.notifier = notifier
        self.policy = policy or StalenessPolicy()
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.launch_timeout = timedelta(seconds=launch_timeout_seconds)
        self.kill_grace_seconds = kill_grace_seconds
        self.kill_poll_seconds = kill_poll_seconds
        self.cleanup_attempts = max(1, cleanup_attempts)
        self._clock = clock
        self._sleep = sleep
        self._task_locks = _KeyedLocks()
        self._admission_locks = _KeyedLocks()

    # -- dispatch ---------------------------------------------------------

    def resolve_executor(
        self,
        name: str | None = None,
        labels: Sequence[str] = (),
    ) -> Executor:
        """Executor by name, else the first one carrying all `labels`.

        Among label matches, one with spare capacity is preferred.
        """

        if name:
            return self._executor(name)
        matches = [
            executor
            for executor in self.executors.values()
            if executor.config.matches_labels(labels)
        ]
        if not matches:
            wanted = ", ".join(labels) or "<any>"
            raise ExecutorNotFound(f"labels [{wanted}]")
        for executor in matches:
            limit = executor.config.max_concurrent
            if limit is None or self.store.count_active(executor.name) < limit:
                return executor
        return matches[0]

    def start(
        self,
        task_type: TaskType | str,
        executor_name: str,
        params: TaskParams,
    ) -> str:
        """Create a task and launch it; returns the new task id."""

        task_type = _coerce_task_type(task_type)
        executor = self._executor(executor_name)
        _validate_params(task_type, params)

        limit = executor.config.max_concurrent
        with self._admission_locks.hold(executor_name):
            if limit is not None and self.store.count_active(executor_name) >= limit:
                raise ConcurrencyLimitExceeded(executor_name, limit)
            task = Task.create(
                task_type=task_type,
                executor_name=executor_name,
                executor_type=executor.executor_type,
                params=params,
                heartbeat_interval=self.heartbeat_interval_seconds,
                now=self._clock(),
            )
            self.store.put(task)

        with self._task_locks.hold(task.task_id):
            try:
                handle = executor.launch(task.launch_spec())
            except Exception as error:  # noqa: BLE001
                logger.warning(
                    "Launch of task %s on %s failed: %s",
                    task.task_id,
                    executor_name,
                    error,
                )
                self._finish(task, TaskStatus.FAILED, error=f"launch failed: {error}")
                raise LaunchError(str(error), task_id=task.task_id) from error

            current = self._require(task.task_id)
            if current.status.is_terminal:
                # Ended elsewhere while the launch was in flight.
                logger.warning(
                    "Task %s became %s during launch; terminating the new process.",
                    task.task_id,
                    current.status.value,
                )
                self._terminate_quietly(executor, handle)
                return task.task_id

            try:
                self.store.put(current.mark_running(handle, now=self._clock()))
            except InvalidTransition:
                logger.warning(
                    "Task %s ended elsewhere during launch; terminating the new process.",
                    task.task_id,
                )
                self._terminate_quietly(executor, handle)
                return task.task_id
        logger.info(
            "Started %s task %s on %s (pid %s)",
            task_type.value,
            task.task_id,
            executor_name,
            handle.pid,
        )
        return task.task_id

    # -- observation ------------------------------------------------------

    def status(self, task_id: str) -> TaskSnapshot:
        """Live view of a task; applies the staleness policy for running tasks."""

        return self.reconcile(task_id)

    def reconcile(self, task_id: str) -> TaskSnapshot:
        with self._task_locks.hold(task_id):
            return self._reconcile_locked(self._require(task_id))

    def logs(self, task_id: str, lines: int = 50) -> OutputTail:
        task = self._require(task_id)
        executor = self._executor(task.executor_name)
        return executor.fetch_output(task.handle, lines)

    def list(
        self,
        *,
        status: TaskStatus | None = None,
        executor_name: str | None = None,
    ) -> list[TaskSnapshot]:
        """Stored records only; no backend is contacted."""

        return [
            TaskSnapshot(task=task)
            for task in self.store.list(status=status, executor_name=executor_name)
        ]

    def list_active(self) -> list[Task]:
        active: list[Task] = []
        for status in (TaskStatus.PENDING, TaskStatus.RUNNING):
            active.extend(self.store.list(status=status))
        return active

    # -- control ----------------------------------------------------------

    def kill(self, task_id: str) -> TaskSnapshot:
        """Terminate a task; a task that is already terminal is returned unchanged."""

        with self._task_locks.hold(task_id):
            task = self._require(task_id)
            if task.status.is_terminal:
                return TaskSnapshot(task=task)
            if task.status is TaskStatus.PENDING:
                killed = self._finish(task, TaskStatus.KILLED, error=KILLED_BY_REQUEST)
                return TaskSnapshot(task=killed, probe_state=ProbeState.NOT_PROBED)

            executor = self._executor(task.executor_name)
            try:
                executor.terminate(task.handle)
            except ProbeUnknown as error:
                raise TerminationError(
                    f"Cannot reach executor {executor.name} to terminate task {task_id}: {error}",
                    task_id=task_id,
                ) from error
            except TerminationError as error:
                logger.warning("Terminating task %s reported: %s", task_id, error)

            probe = self._await_exit(executor, task)
            confirmed = probe is not None and probe.state in (ProbeState.EXITED, ProbeState.ABSENT)
            error = KILLED_BY_REQUEST if confirmed else f"{KILLED_BY_REQUEST}; exit not confirmed"
            current = self._require(task_id)
            if current.status.is_terminal:
                # Finished by another process while the signal was in flight.
                return TaskSnapshot(task=current)
            killed = self._finish(current, TaskStatus.KILLED, error=error)
            return TaskSnapshot(
                task=killed,
                probe_state=probe.state if probe is not None else ProbeState.UNKNOWN,
            )

    def cleanup(self, task_id: str, *, force: bool = False) -> None:
        """Remove backend artifacts, then the metadata record.

        Each backend step is retried; if one still fails, `CleanupError`
        names it and the record stays so cleanup can be run again.

        With `force`, backend steps that fail or cannot run at all (the
        executor is no longer configured) are logged and the record is
        dropped anyway. Artifacts left on the backend are then not tracked.
        """

        with self._task_locks.hold(task_id):
            task = self._require(task_id)
            if not task.status.is_terminal:
                raise TaskNotTerminal(task_id, task.status.value)
            executor = self.executors.get(task.executor_name)
            if executor is None:
                if not force:
                    raise ExecutorNotFound(task.executor_name)
                logger.warning(
                    "Executor %s is not configured; dropping task %s without backend cleanup",
                    task.executor_name,
                    task_id,
                )
            else:
                self._remove_backend_state(executor, task, force=force)
            self.store.delete(task_id)
        logger.info("Cleaned up task %s", task_id)

    # -- internals --------------------------------------------------------

    def _remove_backend_state(self, executor: Executor, task: Task, *, force: bool) -> None:
        steps = [
            ("backend", lambda: executor.remove_artifacts(task.handle)),
            (
                "heartbeat",
                lambda: executor.heartbeat_channel.remove(
                    task.task_id,
                    artifact_dir=task.artifact_dir,
                ),
            ),
        ]
        for part, action in steps:
            try:
                self._with_retries(action, task_id=task.task_id, part=part)
            except CleanupError as error:
                if not force:
                    raise
                logger.warning("Forced cleanup of task %s skips %s: %s", task.task_id, part, error)

    def _reconcile_locked(self, task: Task) -> TaskSnapshot:
        if task.status.is_terminal:
            return TaskSnapshot(task=task)

        now = self._clock()
        if task.status is TaskStatus.PENDING:
            if now - task.created_at > self.launch_timeout:
                task = self._finish(task, TaskStatus.FAILED, error=LAUNCH_NOT_CONFIRMED, now=now)
            return TaskSnapshot(task=task)

        executor = self.executors.get(task.executor_name)
        probe: ProbeResult | None = None
        probe_error: str | None = None
        if executor is None:
            probe_error = f"executor {task.executor_name} is not configured"
        else:
            record = executor.heartbeat_channel.read_heartbeat(
                task.task_id,
                artifact_dir=task.artifact_dir,
            )
            if record is not None:
                updated = task.with_heartbeat(record, now=now)
                if updated is not task:
                    try:
                        self.store.put(updated)
                    except InvalidTransition:
                        return TaskSnapshot(task=self._require(task.task_id))
                    task = updated
            try:
                probe = executor.probe(task.handle)
            except ProbeUnknown as error:
                probe_error = str(error)
                logger.warning("Probe of task %s is inconclusive: %s", task.task_id, error)

        probe_state = probe.state if probe is not None else ProbeState.UNKNOWN
        resources = probe.resources if probe is not None else None

        if probe is not None and probe.state is ProbeState.EXITED:
            exit_code = probe.exit_code if probe.exit_code is not None else -1
            if exit_code == 0:
                task = self._finish(task, TaskStatus.COMPLETED, exit_code=0, now=now)
            else:
                task = self._finish(
                    task,
                    TaskStatus.FAILED,
                    exit_code=exit_code,
                    error=f"process exited with code {exit_code}",
                    now=now,
                )
            return TaskSnapshot(task=task, probe_state=probe_state)

        if probe is not None and probe.state is ProbeState.ABSENT:
            task = self._finish(
                task,
                TaskStatus.FAILED,
                error=f"process disappeared without an exit code ({probe.detail or 'absent'})",
                now=now,
            )
            return TaskSnapshot(task=task, probe_state=probe_state)

        stale = self.policy.is_stale(task, now=now)
        if self.policy.should_time_out(task, now=now, probe_state=probe_state):
            age = int(self.policy.heartbeat_age(task, now=now).total_seconds())
            limit = int(self.policy.stale_after(task).total_seconds())
            logger.warning("Task %s heartbeat is %ss old (limit %ss)", task.task_id, age, limit)
            task = self._finish(
                task,
                TaskStatus.HEARTBEAT_TIMEOUT,
                error=f"no heartbeat for {age}s (limit {limit}s)",
                now=now,
            )
        return TaskSnapshot(
            task=task,
            probe_state=probe_state,
            resources=resources,
            stale=stale,
            probe_error=probe_error,
        )

    def _finish(
        self,
        task: Task,
        status: TaskStatus,
        *,
        exit_code: int | None = None,
        error: str | None = None,
        now: datetime | None = None,
    ) -> Task:
        try:
            finished = task.mark_terminal(
                status,
                now=now or self._clock(),
                exit_code=exit_code,
                error=error,
            )
            self.store.put(finished)
        except InvalidTransition:
            # Another process got there first; its outcome stands.
            stored = self.store.get(task.task_id)
            if stored is None:
                raise TaskNotFound(task.task_id) from None
            return stored
        logger.info(
            "Task %s is %s (exit_code=%s, error=%s)",
            finished.task_id,
            finished.status.value,
            finished.exit_code,
            finished.error,
        )
        self._notify(finished)
        return finished

    def _notify(self, task: Task) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(TerminalEvent.from_task(task))
        except Exception:  # noqa: BLE001
            logger.exception("Terminal notification for task %s failed", task.task_id)

    def _await_exit(self, executor: Executor, task: Task) -> ProbeResult | None:
        """Poll until the process is gone or the grace period runs out."""

        polls = max(1, math.ceil(self.kill_grace_seconds / self.kill_poll_seconds))
        last: ProbeResult | None = None
        for attempt in range(polls + 1):
            try:
                last = executor.probe(task.handle)
            except ProbeUnknown as error:
                logger.debug("Probe after terminate of %s failed: %s", task.task_id, error)
                last = None
            if last is not None and last.state in (ProbeState.EXITED, ProbeState.ABSENT):
                return last
            if attempt < polls:
                self._sleep(self.kill_poll_seconds)
        return last

    def _terminate_quietly(self, executor: Executor, handle: ProcessHandle) -> None:
        try:
            executor.terminate(handle)
        except Exception as error:  # noqa: BLE001
            logger.warning("Terminating orphaned launch of %s failed: %s", handle.task_id, error)

    def _with_retries(self, action: Callable[[], None], *, task_id: str, part: str) -> None:
        last_error: Exception | None = None
        for attempt in range(1, self.cleanup_attempts + 1):
            try:
                action()
            except Exception as error:  # noqa: BLE001
                last_error = error
                logger.warning(
                    "Cleanup of task %s (%s) attempt %s/%s failed: %s",
                    task_id,
                    part,
                    attempt,
                    self.cleanup_attempts,
                    error,
                )
                if attempt < self.cleanup_attempts:
                    self._sleep(0.5 * attempt)
            else:
                return
        raise CleanupError(task_id, part, str(last_error)) from last_error

    def _executor(self, name: str) -> Executor:
        executor = self.executors.get(name)
        if executor is None:
            raise ExecutorNotFound(name)
        return executor

    def _require(self, task_id: str) -> Task:
        task = self.store.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task


def _coerce_task_type(value: TaskType | str) -> TaskType:
    try:
        return TaskType(value)
    except ValueError as error:
        raise InvalidTaskRequest(f"Unsupported task type: {value!r}") from error


def _validate_params(task_type: TaskType, params: TaskParams) -> None:
    if task_type is TaskType.AGENT and not (params.prompt or "").strip():
        raise InvalidTaskRequest("An agent task needs a prompt.")
    if task_type is TaskType.SHELL and not (params.command or "").strip():
        raise InvalidTaskRequest("A shell task needs a command.")
    if params.max_turns is not None and params.max_turns <= 0:
        raise InvalidTaskRequest("max_turns must be > 0.")
