"""Automation engine: one recipe run end to end.

``AutomationEngine`` owns the browser session and playback state of the run in
progress. A run replays the recipe, scrapes the final page if every step
completed, hands the transactions to the sink and stamps the recipe's
``last_run_at``. Failures are contained here and reported, never raised to
the caller, except for a second run requested while one is active.
"""

import asyncio
import functools
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import anyio

from .browser import BrowserSession
from .exceptions import AutopilotError, BrowserError, LLMProviderError, PlaybackBusyError
from .observability import RunRecord, RunStatus, RunStore, RunTrigger, bind_run_context, clear_run_context
from .playback import Clock, PlaybackEngine, PlaybackResult, PlaybackStatus, SensitiveValueProvider, SystemClock
from .recipes.models import Recipe, ScrapedTransaction
from .recipes.store import RecipeStore
from .scraper import ScrapeOutcome, ScrapeResult, TransactionScraper
from .utils import save_execution_result

if TYPE_CHECKING:
    from .config import AppSettings

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Awaitable[BrowserSession]]


class TransactionSink(Protocol):
    """Receives the transactions scraped for a recipe."""

    async def accept(self, recipe: Recipe, transactions: list[ScrapedTransaction]) -> None: ...


class JsonFileSink:
    """Writes each batch of transactions to a JSON file in the results directory."""

    def __init__(self, results_dir: Path):
        self.results_dir = results_dir
        self.last_path: Path | None = None

    async def accept(self, recipe: Recipe, transactions: list[ScrapedTransaction]) -> None:
        payload = [t.model_dump(mode="json", by_alias=True, exclude_none=True) for t in transactions]
        metadata = {
            "recipeId": recipe.id,
            "recipeName": recipe.name,
            "accountId": recipe.account_id,
            "institution": recipe.institution,
            "sourceUrl": recipe.start_url,
        }
        save = functools.partial(
            save_execution_result,
            payload,
            self.results_dir,
            prefix=recipe.name,
            metadata={k: v for k, v in metadata.items() if v is not None},
        )
        self.last_path = await anyio.to_thread.run_sync(save)


@dataclass
class RecipeRunReport:
    """What happened when one recipe was run."""

    recipe_id: str
    recipe_name: str
    run_id: str
    status: RunStatus
    playback: PlaybackResult | None = None
    scrape: ScrapeResult | None = None
    error: str | None = None
    transactions: list[ScrapedTransaction] = field(default_factory=list)

    @property
    def transaction_count(self) -> int:
        return len(self.transactions)

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "recipe_id": self.recipe_id,
            "recipe_name": self.recipe_name,
            "status": self.status.value,
            "steps_completed": self.playback.steps_completed if self.playback else 0,
            "total_steps": self.playback.total_steps if self.playback else 0,
            "failed_step": self.playback.failed_step if self.playback else None,
            "scraping_method": self.scrape.method.value if self.scrape else None,
            "scrape_outcome": self.scrape.outcome.value if self.scrape else None,
            "transaction_count": self.transaction_count,
            "diagnostic_path": str(self.scrape.diagnostic_path) if self.scrape and self.scrape.diagnostic_path else None,
            "error": self.error,
        }


_PLAYBACK_TO_RUN_STATUS = {
    PlaybackStatus.INCOMPLETE: RunStatus.INCOMPLETE,
    PlaybackStatus.CANCELLED: RunStatus.CANCELLED,
}


class AutomationEngine:
    """Runs recipes one at a time.

    Args:
        store: Recipe persistence; receives ``mark_run`` after a scraped run.
        session_factory: Opens a fresh browser session per run.
        playback: Replays the recorded steps.
        scraper: Extracts transactions from the final page.
        sink: Receives the extracted transactions.
        run_store: Optional run history.
        clock: Time source for run timestamps.
    """

    def __init__(
        self,
        store: RecipeStore,
        session_factory: SessionFactory,
        playback: PlaybackEngine | None = None,
        scraper: TransactionScraper | None = None,
        sink: TransactionSink | None = None,
        run_store: RunStore | None = None,
        clock: Clock | None = None,
    ):
        self.store = store
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.playback = playback or PlaybackEngine(clock=self.clock)
        self.scraper = scraper or TransactionScraper(clock=self.clock)
        self.sink = sink
        self.run_store = run_store
        self._lock = asyncio.Lock()
        self._session: BrowserSession | None = None
        self._active: Recipe | None = None

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    @property
    def active_recipe(self) -> Recipe | None:
        return self._active

    async def cancel(self) -> bool:
        """Close the active session; the playback stops at its next wait.

        Returns False when nothing is running.
        """
        session = self._session
        if session is None or session.is_closed:
            return False
        logger.info("Cancelling the active run by closing its browser session")
        await session.close()
        return True

    async def run_recipe(self, recipe: Recipe, trigger: RunTrigger = RunTrigger.MANUAL) -> RecipeRunReport:
        """Play ``recipe``, scrape on success, hand off the transactions.

        A run that stops before its last step is "incomplete": nothing is
        scraped and ``last_run_at`` is left untouched.

        Raises:
            PlaybackBusyError: Another run is in progress.
        """
        if self._lock.locked():
            active = self._active.name if self._active else "another recipe"
            raise PlaybackBusyError(f"Cannot run '{recipe.name}' while '{active}' is running")

        async with self._lock:
            run_id = str(uuid.uuid4())
            self._active = recipe
            bind_run_context(run_id, recipe.name)
            record = RunRecord(
                run_id=run_id,
                recipe_id=recipe.id,
                recipe_name=recipe.name,
                trigger=trigger,
                started_at=self.clock.now(),
                total_steps=len(recipe.steps),
            )
            report = RecipeRunReport(recipe.id, recipe.name, run_id, RunStatus.RUNNING)
            try:
                if self.run_store is not None:
                    await self.run_store.create_run(record)
                report = await self._run(recipe, report)
            except AutopilotError as e:
                logger.error(f"Run of '{recipe.name}' failed: {e}")
                report.status = RunStatus.FAILED
                report.error = str(e)
            finally:
                if report.status == RunStatus.RUNNING:
                    report.status = RunStatus.FAILED
                await self._close_session()
                self._active = None
                await self._finish_record(record, report)
                clear_run_context()

            return report

    async def _run(self, recipe: Recipe, report: RecipeRunReport) -> RecipeRunReport:
        session = await self.session_factory()
        self._session = session

        playback = await self.playback.play(recipe, session)
        report.playback = playback
        if not playback.success:
            report.status = _PLAYBACK_TO_RUN_STATUS[playback.status]
            report.error = playback.error
            logger.warning(
                f"Run of '{recipe.name}' is {report.status.value} after {playback.steps_completed}/{playback.total_steps} "
                f"steps; skipping extraction"
            )
            return report

        scrape = await self.scraper.scrape(session, institution=recipe.institution)
        report.scrape = scrape
        if scrape.outcome == ScrapeOutcome.FAILED:
            report.status = RunStatus.FAILED
            report.error = scrape.error
            return report

        report.transactions = scrape.transactions
        if scrape.transactions and self.sink is not None:
            await self.sink.accept(recipe, scrape.transactions)

        await self.store.mark_run(recipe.id, self.clock.now(), scrape.method)
        report.status = RunStatus.SUCCEEDED
        logger.info(f"Run of '{recipe.name}' extracted {report.transaction_count} transaction(s) via {scrape.method.value}")
        return report

    async def _close_session(self) -> None:
        session, self._session = self._session, None
        if session is None or session.is_closed:
            return
        try:
            await session.close()
        except BrowserError as e:
            logger.warning(f"Failed to close browser session: {e}")

    async def _finish_record(self, record: RunRecord, report: RecipeRunReport) -> None:
        if self.run_store is None:
            return
        playback = report.playback
        record.status = report.status
        record.completed_at = self.clock.now()
        record.steps_completed = playback.steps_completed if playback else 0
        record.failed_step = playback.failed_step if playback else None
        record.scraping_method = report.scrape.method.value if report.scrape else None
        record.scrape_outcome = report.scrape.outcome.value if report.scrape else None
        record.transaction_count = report.transaction_count
        record.error = report.error
        await self.run_store.finish_run(record)


def create_engine(
    app_settings: "AppSettings",
    sensitive_values: SensitiveValueProvider | None = None,
    headless: bool | None = None,
    store: RecipeStore | None = None,
) -> AutomationEngine:
    """Wire an engine from settings: real browser, configured vision model, JSON sink."""
    from .browser import CDPBrowserSession
    from .providers import get_vision_llm
    from .scraper import LLMVisionService

    clock = SystemClock()
    db_path = app_settings.get_database_path()
    results_dir = app_settings.get_results_dir()

    vision_service = None
    try:
        llm = get_vision_llm(app_settings)
    except LLMProviderError as e:
        logger.warning(f"Vision extraction unavailable, DOM extraction only: {e}")
        llm = None
    if llm is not None:
        vision_service = LLMVisionService(llm, timeout=app_settings.scraper.vision_timeout)

    async def session_factory() -> BrowserSession:
        return await CDPBrowserSession.launch(app_settings, headless=headless)

    return AutomationEngine(
        store=store or RecipeStore(db_path=db_path),
        session_factory=session_factory,
        playback=PlaybackEngine(app_settings.playback, clock=clock, sensitive_values=sensitive_values),
        scraper=TransactionScraper(app_settings.scraper, vision_service=vision_service, clock=clock, results_dir=results_dir),
        sink=JsonFileSink(results_dir),
        run_store=RunStore(db_path=db_path),
        clock=clock,
    )
