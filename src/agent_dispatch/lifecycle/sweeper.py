"""Periodic reconciliation of every non-terminal task."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

from agent_dispatch.lifecycle.engine import LifecycleEngine
from agent_dispatch.lifecycle.errors import TaskNotFound
from agent_dispatch.lifecycle.models import ProbeState, TaskSnapshot

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepReport:
    """Counters for one reconciliation pass."""

    checked: int = 0
    still_active: int = 0
    unknown: int = 0
    errors: int = 0
    vanished: int = 0
    finished: dict[str, str] = field(default_factory=dict)

    @property
    def transitioned(self) -> int:
        return len(self.finished)


class ReconciliationSweeper:
    """Advances unattended tasks; one slow backend never stalls the others.

    Each task is reconciled on its own worker thread, so a host that only
    answers after its ssh timeout delays just its own tasks.
    """

    def __init__(self, engine: LifecycleEngine, *, max_workers: int = 8) -> None:
        self.engine = engine
        self.max_workers = max(1, max_workers)

    def run_once(self) -> SweepReport:
        report = SweepReport()
        tasks = self.engine.list_active()
        if not tasks:
            return report

        with ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(tasks)),
            thread_name_prefix="sweep",
        ) as pool:
            futures = {pool.submit(self.engine.reconcile, task.task_id): task for task in tasks}
            for future in as_completed(futures):
                task = futures[future]
                report.checked += 1
                try:
                    snapshot = future.result()
                except TaskNotFound:
                    # Cleaned up while the pass was running.
                    report.vanished += 1
                    continue
                except Exception:  # noqa: BLE001
                    report.errors += 1
                    logger.exception("Reconciling task %s failed", task.task_id)
                    continue
                self._record(report, snapshot)

        logger.info(
            "Sweep checked %s tasks: %s finished, %s active (%s unknown), %s errors",
            report.checked,
            report.transitioned,
            report.still_active,
            report.unknown,
            report.errors,
        )
        return report

    def run_forever(self, interval_seconds: float, stop_event: threading.Event) -> None:
        """Sweep every `interval_seconds` until `stop_event` is set."""

        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("Sweep pass failed")
            stop_event.wait(timeout=interval_seconds)

    @staticmethod
    def _record(report: SweepReport, snapshot: TaskSnapshot) -> None:
        task = snapshot.task
        if task.status.is_terminal:
            report.finished[task.task_id] = task.status.value
            return
        report.still_active += 1
        if snapshot.probe_state is ProbeState.UNKNOWN:
            report.unknown += 1
