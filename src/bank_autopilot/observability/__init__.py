"""Observability module for run history and structured logging."""

from .logging import bind_run_context, clear_run_context, setup_structured_logging
from .models import RunRecord, RunStatus, RunTrigger
from .store import RunStore

__all__ = [
    "RunRecord",
    "RunStatus",
    "RunStore",
    "RunTrigger",
    "bind_run_context",
    "clear_run_context",
    "setup_structured_logging",
]
