"""Pre-extraction scrolling that triggers lazy-loaded rows."""

import logging
from dataclasses import dataclass

from ..browser import BrowserSession
from ..playback.clock import Clock

logger = logging.getLogger(__name__)

MAX_SCROLL_STEP = 400
SCROLL_FRACTION = 0.6
SCROLLABLE_RATIO = 1.2
LAZY_LOAD_GROWTH = 2

METRICS_SCRIPT = """
({
  scrollHeight: document.documentElement.scrollHeight,
  clientHeight: document.documentElement.clientHeight,
  rows: document.querySelectorAll('table tr').length
})
"""

ROW_COUNT_SCRIPT = "document.querySelectorAll('table tr').length"


@dataclass(frozen=True, slots=True)
class PageMetrics:
    scroll_height: int
    client_height: int
    rows: int

    @property
    def scrollable(self) -> bool:
        return self.scroll_height > self.client_height * SCROLLABLE_RATIO

    @classmethod
    def from_dict(cls, data: dict | None) -> "PageMetrics":
        data = data or {}
        return cls(
            scroll_height=int(data.get("scrollHeight") or 0),
            client_height=int(data.get("clientHeight") or 0),
            rows=int(data.get("rows") or 0),
        )


@dataclass(frozen=True, slots=True)
class ScrollReport:
    initial_rows: int
    final_rows: int
    scrolled: bool

    @property
    def lazy_loaded(self) -> bool:
        """True when the table grew past twice its initial size while scrolling."""
        return self.final_rows > self.initial_rows * LAZY_LOAD_GROWTH


def scroll_to_script(y: int) -> str:
    return f"window.scrollTo({{top: {int(y)}, behavior: 'instant'}})"


async def read_metrics(session: BrowserSession) -> PageMetrics:
    return PageMetrics.from_dict(await session.evaluate(METRICS_SCRIPT))


async def prepare_page(session: BrowserSession, clock: Clock, pause: float = 0.6) -> ScrollReport:
    """Scroll the page top to bottom in overlapping steps, then back to the top.

    The step is min(400px, 60% of the viewport). Returns the row counts before
    and after so the caller can tell whether lazy loading kicked in.
    """
    metrics = await read_metrics(session)
    if not metrics.scrollable or metrics.client_height <= 0:
        return ScrollReport(initial_rows=metrics.rows, final_rows=metrics.rows, scrolled=False)

    step = min(MAX_SCROLL_STEP, int(metrics.client_height * SCROLL_FRACTION)) or MAX_SCROLL_STEP
    bottom = metrics.scroll_height - metrics.client_height
    rows = metrics.rows
    logger.debug(f"Scrolling {metrics.scroll_height}px page in {step}px steps ({metrics.rows} rows)")

    position = 0
    while True:
        target = min(position, bottom)
        await session.evaluate(scroll_to_script(target))
        await clock.sleep(pause)
        current = int(await session.evaluate(ROW_COUNT_SCRIPT) or 0)
        if current > rows:
            logger.debug(f"Row count grew {rows} -> {current}")
            rows = current
        if target >= bottom:
            break
        position += step

    await session.evaluate(scroll_to_script(0))
    await clock.sleep(pause)
    final = int(await session.evaluate(ROW_COUNT_SCRIPT) or 0)

    report = ScrollReport(initial_rows=metrics.rows, final_rows=max(final, rows), scrolled=True)
    logger.info(f"Scroll complete: {report.initial_rows} -> {report.final_rows} rows")
    if report.lazy_loaded:
        logger.warning("Row count more than doubled while scrolling; lazy loading likely pulled in older history")
    return report
