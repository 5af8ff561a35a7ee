"""Durable AI subtask orchestration and token metering for auto-kanban."""

__version__ = "0.4.0"
