"""SQLite-backed metadata store for dispatched tasks."""

from agent_dispatch.storage.task_store import SqlTaskStore

__all__ = ["SqlTaskStore"]
