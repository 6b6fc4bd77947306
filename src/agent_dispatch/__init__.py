"""Dispatch and track long-running coding-agent tasks across pluggable executors."""

__version__ = "0.1.0"
