"""Cron-driven batch runs across every recipe."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from croniter import croniter

from .config import AppSettings, ScheduleSettings
from .engine import AutomationEngine, RecipeRunReport
from .exceptions import ScheduleConfigError
from .observability import RunStatus, RunTrigger
from .playback import Clock, SystemClock
from .recipes.models import ScheduleConfig
from .recipes.store import RecipeStore

logger = logging.getLogger(__name__)

INTERVAL_TO_CRON = {
    "hourly": "0 * * * *",
    "every_4_hours": "0 */4 * * *",
    "every_6_hours": "0 */6 * * *",
    "every_12_hours": "0 */12 * * *",
    "daily": "0 6 * * *",
    "weekly": "0 6 * * 1",
}


def validate_cron(cron_expression: str) -> str:
    """Return the trimmed expression, or raise ScheduleConfigError."""
    expression = (cron_expression or "").strip()
    if len(expression.split()) != 5 or not croniter.is_valid(expression):
        raise ScheduleConfigError(f"Invalid cron expression: {cron_expression!r}")
    return expression


def cron_for_interval(interval: str) -> str:
    try:
        return INTERVAL_TO_CRON[interval]
    except KeyError:
        raise ScheduleConfigError(f"Unknown interval {interval!r}; expected one of {', '.join(INTERVAL_TO_CRON)}") from None


def next_fire_time(cron_expression: str, after: datetime) -> datetime:
    return croniter(cron_expression, after).get_next(datetime)


@dataclass
class BatchReport:
    """Outcome of one run across all recipes."""

    started_at: datetime
    completed_at: datetime | None = None
    reports: list[RecipeRunReport] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.reports if r.status == RunStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return len(self.reports) - self.succeeded + len(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "runs": [r.to_dict() for r in self.reports],
            "errors": self.errors,
        }


class RecipeScheduler:
    """Fires a batch of recipe runs on a cron schedule.

    Only one batch runs at a time; a trigger that arrives mid-batch is a no-op.
    One recipe failing never stops the rest of the batch.

    Args:
        engine: Runs each recipe.
        store: Source of the recipes to run.
        schedule_settings: Initial cron expression, enabled flag and inter-recipe pause.
        clock: Time source for fire times and pauses.
        on_config_change: Called with the new config when ``apply_config`` succeeds.
    """

    def __init__(
        self,
        engine: AutomationEngine,
        store: RecipeStore,
        schedule_settings: ScheduleSettings | None = None,
        clock: Clock | None = None,
        on_config_change: Callable[[ScheduleConfig], None] | None = None,
    ):
        settings = schedule_settings or ScheduleSettings()
        self.engine = engine
        self.store = store
        self.clock = clock or SystemClock()
        self.pause_between_recipes = settings.pause_between_recipes
        self.on_config_change = on_config_change
        self._initial = ScheduleConfig(cron_expression=settings.cron_expression, enabled=settings.enabled)

        self.cron_expression: str = settings.cron_expression
        self.enabled = False
        self.last_run_at: datetime | None = None
        self.next_run_at: datetime | None = None
        self.current_recipe_name: str | None = None
        self._batch_running = False
        self._task: asyncio.Task | None = None
        self._batch_task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._batch_running

    def start(self, cron_expression: str) -> None:
        """Arm the schedule. An invalid expression leaves the current state untouched."""
        expression = validate_cron(cron_expression)
        self._cancel_task()
        self.cron_expression = expression
        self.enabled = True
        self._task = asyncio.create_task(self._loop(), name="recipe-scheduler")
        logger.info(f"Scheduler armed with '{expression}'")

    async def stop(self) -> None:
        """Disarm the schedule. A batch already in progress finishes on its own."""
        task = self._task
        self._cancel_task()
        self.enabled = False
        self.next_run_at = None
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("Scheduler stopped")

    def _cancel_task(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _loop(self) -> None:
        while True:
            now = self.clock.now()
            self.next_run_at = next_fire_time(self.cron_expression, now)
            delay = (self.next_run_at - now).total_seconds()
            logger.debug(f"Next scheduled batch at {self.next_run_at.isoformat()} (in {delay:.0f}s)")
            await self.clock.sleep(delay)
            if self._batch_running:
                logger.info("Previous batch still running; skipping this scheduled run")
                continue
            # The batch runs outside the loop task so disarming never interrupts it
            self._batch_task = asyncio.create_task(self._scheduled_batch(), name="recipe-batch")

    async def _scheduled_batch(self) -> None:
        try:
            await self.run_all_now(trigger=RunTrigger.SCHEDULE)
        except Exception as e:
            logger.exception(f"Scheduled batch failed: {e}")

    async def run_all_now(self, trigger: RunTrigger = RunTrigger.RUN_ALL) -> BatchReport | None:
        """Run every recipe once, sorted by name.

        Returns None without doing anything when a batch is already running.
        """
        if self._batch_running:
            logger.info("Batch already running; ignoring trigger")
            return None

        self._batch_running = True
        batch = BatchReport(started_at=self.clock.now())
        try:
            recipes = sorted(await self.store.list_all(), key=lambda r: (r.name.lower(), r.id))
            logger.info(f"Running batch of {len(recipes)} recipe(s)")
            for position, recipe in enumerate(recipes):
                self.current_recipe_name = recipe.name
                try:
                    batch.reports.append(await self.engine.run_recipe(recipe, trigger=trigger))
                except Exception as e:
                    logger.exception(f"Recipe '{recipe.name}' crashed: {e}")
                    batch.errors[recipe.id] = str(e)
                if position < len(recipes) - 1:
                    await self.clock.sleep(self.pause_between_recipes)
            batch.completed_at = self.clock.now()
            self.last_run_at = batch.completed_at
        finally:
            self.current_recipe_name = None
            self._batch_running = False

        logger.info(f"Batch finished: {batch.succeeded} succeeded, {batch.failed} did not")
        return batch

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self._batch_running,
            "current_recording_name": self.current_recipe_name,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "cron_expression": self.cron_expression,
            "enabled": self.enabled,
        }

    async def apply_config(self, config: ScheduleConfig) -> dict[str, Any]:
        """Persist and apply a schedule change.

        Raises:
            ScheduleConfigError: The cron expression is invalid; nothing is changed.
        """
        expression = validate_cron(config.cron_expression)
        if config.enabled:
            self.start(expression)
        else:
            await self.stop()
            self.cron_expression = expression
        if self.on_config_change is not None:
            self.on_config_change(ScheduleConfig(cron_expression=expression, enabled=config.enabled))
        return self.get_status()

    def init_from_settings(self) -> bool:
        """Arm the schedule at startup when it is enabled in settings."""
        if not self._initial.enabled:
            return False
        try:
            self.start(self._initial.cron_expression)
        except ScheduleConfigError as e:
            logger.error(f"Schedule not started: {e}")
            return False
        return True


def persist_schedule(app_settings: AppSettings, config: ScheduleConfig) -> None:
    """Write a schedule change into the settings file."""
    app_settings.schedule.cron_expression = config.cron_expression
    app_settings.schedule.enabled = config.enabled
    path = app_settings.save()
    logger.info(f"Schedule saved to {path} (enabled={config.enabled}, cron='{config.cron_expression}')")
