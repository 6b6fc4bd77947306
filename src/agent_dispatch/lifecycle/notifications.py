"""Terminal-transition notification sinks."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

import httpx

from agent_dispatch import __version__
from agent_dispatch.lifecycle.models import TerminalEvent

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_TIMEOUT_SECONDS = 10.0
DEFAULT_WEBHOOK_RETRIES = 3


class NotificationSink(Protocol):
    """Receives exactly one event per task that reaches a terminal state."""

    def notify(self, event: TerminalEvent) -> None:
        """Deliver the event; retries are the sink's own business."""


class CompletionRecordWriter:
    """Writes `<task_id>.json` completion records into a directory."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def path_for(self, task_id: str) -> Path:
        return self.directory / f"{task_id}.json"

    def notify(self, event: TerminalEvent) -> None:
        path = self.path_for(event.task_id)
        if path.exists():
            logger.debug("Completion record for %s already exists", event.task_id)
            return
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.tmp")
        tmp_path.write_text(
            json.dumps(event.to_payload(), ensure_ascii=False, indent=2),
            "utf-8",
        )
        tmp_path.replace(path)


class WebhookNotifier:
    """POSTs the completion payload to a webhook URL."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_WEBHOOK_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            headers={"User-Agent": f"agent-dispatch/{__version__}"},
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def notify(self, event: TerminalEvent) -> None:
        try:
            response = self._client.post(self.url, json=event.to_payload())
        except httpx.TimeoutException:
            logger.warning("Timeout posting completion of %s to %s", event.task_id, self.url)
            return
        except httpx.HTTPError as exc:
            logger.warning("Webhook error for %s: %s", event.task_id, exc)
            return
        if not response.is_success:
            logger.warning(
                "Webhook for %s answered HTTP %s",
                event.task_id,
                response.status_code,
            )

    def close(self) -> None:
        self._client.close()


class CompositeNotifier:
    """Fans an event out; one failing sink does not stop the others."""

    def __init__(self, sinks: Iterable[NotificationSink]) -> None:
        self.sinks = list(sinks)

    def notify(self, event: TerminalEvent) -> None:
        for sink in self.sinks:
            try:
                sink.notify(event)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Notification sink %s failed for task %s",
                    type(sink).__name__,
                    event.task_id,
                )
