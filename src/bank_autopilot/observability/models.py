"""Data models for recipe run history."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    """Recipe run status."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    INCOMPLETE = "incomplete"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunTrigger(str, Enum):
    """What started the run."""

    MANUAL = "manual"
    SCHEDULE = "schedule"
    RUN_ALL = "run_all"


class RunRecord(BaseModel):
    """Record of a single recipe playback and scrape."""

    run_id: str
    recipe_id: str
    recipe_name: str
    trigger: RunTrigger = RunTrigger.MANUAL
    status: RunStatus = RunStatus.RUNNING

    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    steps_completed: int = 0
    total_steps: int = 0
    failed_step: int | None = None

    scraping_method: str | None = None
    scrape_outcome: str | None = None
    transaction_count: int = 0
    error: str | None = None

    @property
    def duration_seconds(self) -> float | None:
        """Run duration in seconds, measured to now while still running."""
        end = self.completed_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()

    @property
    def is_terminal(self) -> bool:
        return self.status != RunStatus.RUNNING
