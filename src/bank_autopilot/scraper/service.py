"""Transaction scraper: picks the extraction method and handles fallback."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ..browser import BrowserSession
from ..config import ScraperSettings
from ..exceptions import BrowserError, ExtractionParseFailure, ServiceUnavailable
from ..playback.clock import Clock, SystemClock
from ..recipes.models import ScrapedTransaction, ScrapingMethod
from ..utils import save_debug_screenshot
from .dom import scrape_dom
from .scroll import ScrollReport, prepare_page
from .vision import VisionService, scrape_vision

logger = logging.getLogger(__name__)


class ScrapeOutcome(str, Enum):
    EXTRACTED = "extracted"
    EMPTY = "empty"
    FAILED = "failed"


@dataclass
class ScrapeResult:
    transactions: list[ScrapedTransaction] = field(default_factory=list)
    method: ScrapingMethod = ScrapingMethod.DOM
    outcome: ScrapeOutcome = ScrapeOutcome.EMPTY
    error: str | None = None
    diagnostic_path: Path | None = None
    scroll: ScrollReport | None = None

    @property
    def count(self) -> int:
        return len(self.transactions)


class TransactionScraper:
    """Extracts transactions from the page a recipe ended on.

    Vision runs first when a vision service is configured; DOM heuristics take
    over when vision is unavailable, unparseable or finds nothing.
    """

    def __init__(
        self,
        scraper_settings: ScraperSettings | None = None,
        vision_service: VisionService | None = None,
        clock: Clock | None = None,
        results_dir: Path | None = None,
    ):
        self.settings = scraper_settings or ScraperSettings()
        self.vision_service = vision_service
        self.clock = clock or SystemClock()
        self.results_dir = results_dir

    @property
    def vision_enabled(self) -> bool:
        return self.settings.vision_provider != "none" and self.vision_service is not None

    async def scrape(self, session: BrowserSession, institution: str | None = None) -> ScrapeResult:
        scroll: ScrollReport | None = None
        try:
            scroll = await prepare_page(session, self.clock, pause=self.settings.scroll_pause)
        except BrowserError as e:
            logger.warning(f"Pre-scrape scroll failed, extracting from the page as is: {e}")
        limit = self.settings.row_limit if scroll is not None and scroll.lazy_loaded else None

        vision_error: str | None = None
        diagnostic: Path | None = None
        vision_empty = False

        if self.vision_enabled:
            logger.info(f"Attempting vision extraction ({self.settings.vision_provider})")
            try:
                transactions, images = await scrape_vision(
                    session,
                    self.vision_service,
                    self.clock,
                    max_screenshots=self.settings.max_screenshots,
                    prompt_override=self.settings.scraping_prompt,
                )
            except (ServiceUnavailable, ExtractionParseFailure) as e:
                vision_error = str(e)
                logger.warning(f"Vision extraction failed, falling back to DOM: {e}")
            else:
                if transactions:
                    return ScrapeResult(transactions, ScrapingMethod.VISION, ScrapeOutcome.EXTRACTED, scroll=scroll)
                vision_empty = True
                logger.warning("Vision extraction found no transactions, falling back to DOM")
                if images:
                    diagnostic = self._save_diagnostic(images[0])
        else:
            logger.info("Vision extraction disabled or not configured, using DOM extraction")

        mapping = self.settings.column_mappings.get(institution) if institution else None
        try:
            transactions = await scrape_dom(
                session,
                mapping=mapping,
                infer_categories=self.settings.infer_categories,
                limit=limit,
            )
        except BrowserError as e:
            logger.error(f"DOM extraction failed: {e}")
            return ScrapeResult(
                method=ScrapingMethod.DOM,
                outcome=ScrapeOutcome.FAILED,
                error=str(e) if vision_error is None else f"{vision_error}; {e}",
                diagnostic_path=diagnostic,
                scroll=scroll,
            )

        if transactions:
            return ScrapeResult(transactions, ScrapingMethod.DOM, ScrapeOutcome.EXTRACTED, error=vision_error, scroll=scroll)

        if vision_empty:
            return ScrapeResult(
                method=ScrapingMethod.VISION,
                outcome=ScrapeOutcome.EMPTY,
                diagnostic_path=diagnostic,
                scroll=scroll,
            )
        logger.warning("No transactions found on the page")
        return ScrapeResult(method=ScrapingMethod.DOM, outcome=ScrapeOutcome.EMPTY, error=vision_error, scroll=scroll)

    def _save_diagnostic(self, image: bytes) -> Path | None:
        if self.results_dir is None:
            return None
        try:
            return save_debug_screenshot(image, self.results_dir)
        except OSError as e:
            logger.error(f"Failed to save debug screenshot: {e}")
            return None
