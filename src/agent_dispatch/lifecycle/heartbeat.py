"""Heartbeat side channel and the staleness policy built on it.

A running task's environment rewrites a small JSON record
(`{"timestamp": <unix seconds>, "interval": <seconds>}`) every interval,
independently of its output. The engine only ever reads it. The heartbeat
is the sole authority on liveness: a task whose heartbeat is older than
`interval * stale_factor` is timed out even if the backend still reports a
process, because the backend's own channel cannot be trusted.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol

from agent_dispatch.config import DEFAULT_STALE_FACTOR
from agent_dispatch.lifecycle.models import HeartbeatRecord, ProbeState, Task, TaskStatus
from agent_dispatch.storage.common import from_epoch

logger = logging.getLogger(__name__)


class HeartbeatChannel(Protocol):
    """Read side of the heartbeat channel, addressable by task id."""

    def read_heartbeat(
        self,
        task_id: str,
        *,
        artifact_dir: str | None = None,
    ) -> HeartbeatRecord | None:
        """Latest record, or None when there is none (yet) or it cannot be read.

        `artifact_dir` is the task directory recorded at launch, for channels
        that keep the record there.
        """

    def remove(self, task_id: str, *, artifact_dir: str | None = None) -> None:
        """Delete the task's heartbeat artifact; absent artifacts are fine."""


class FileHeartbeatChannel:
    """Heartbeat records stored as one JSON file per task in a shared directory.

    Records do not live in the task directory, so `artifact_dir` is ignored.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def path_for(self, task_id: str) -> Path:
        return self.directory / f"{task_id}.heartbeat.json"

    def read_heartbeat(
        self,
        task_id: str,
        *,
        artifact_dir: str | None = None,
    ) -> HeartbeatRecord | None:
        path = self.path_for(task_id)
        try:
            raw = path.read_text("utf-8")
        except FileNotFoundError:
            return None
        except OSError as error:
            logger.warning("Cannot read heartbeat %s: %s", path, error)
            return None
        return parse_heartbeat(raw)

    def write_heartbeat(self, task_id: str, *, timestamp: datetime, interval: int) -> None:
        """Write a record atomically (temp file + rename)."""

        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(task_id)
        tmp_path = path.with_name(f"{path.name}.tmp")
        payload = {"timestamp": int(timestamp.timestamp()), "interval": interval}
        tmp_path.write_text(json.dumps(payload), "utf-8")
        os.replace(tmp_path, path)

    def remove(self, task_id: str, *, artifact_dir: str | None = None) -> None:
        self.path_for(task_id).unlink(missing_ok=True)


def parse_heartbeat(raw: str) -> HeartbeatRecord | None:
    """Parse a heartbeat record; malformed content reads as no record."""

    try:
        payload = json.loads(raw)
        timestamp = float(payload["timestamp"])
        interval = int(payload.get("interval") or 0)
    except (ValueError, TypeError, KeyError, AttributeError):
        logger.debug("Ignoring malformed heartbeat record: %r", raw[:200])
        return None
    return HeartbeatRecord(timestamp=from_epoch(timestamp), interval_seconds=max(0, interval))


@dataclass(frozen=True, slots=True)
class StalenessPolicy:
    """Decides when a running task's silence turns into `heartbeat_timeout`.

    `probe_before_timeout` is the optional escalation: when set, a stale task
    whose probe says `alive` is given the benefit of the doubt.
    """

    stale_factor: int = DEFAULT_STALE_FACTOR
    probe_before_timeout: bool = False

    def stale_after(self, task: Task) -> timedelta:
        return timedelta(seconds=task.heartbeat_interval * self.stale_factor)

    def heartbeat_age(self, task: Task, *, now: datetime) -> timedelta:
        # With no heartbeat yet, silence is measured from launch.
        baseline = task.last_heartbeat or task.started_at or task.created_at
        return now - baseline

    def is_stale(self, task: Task, *, now: datetime) -> bool:
        if task.status is not TaskStatus.RUNNING:
            return False
        if task.last_heartbeat is None:
            launched_at = task.started_at or task.created_at
            if now - launched_at < timedelta(seconds=task.heartbeat_interval):
                return False
        return self.heartbeat_age(task, now=now) > self.stale_after(task)

    def should_time_out(self, task: Task, *, now: datetime, probe_state: ProbeState) -> bool:
        if not self.is_stale(task, now=now):
            return False
        return not (self.probe_before_timeout and probe_state is ProbeState.ALIVE)
