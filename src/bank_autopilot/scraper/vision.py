"""Vision-based transaction extraction.

Screenshots of the transaction page are sent to a multimodal model together
with the extraction prompt; the JSON reply is repaired, parsed and normalized
into ``ScrapedTransaction`` rows.
"""

import asyncio
import base64
import logging
from typing import TYPE_CHECKING, Any, Protocol

from ..browser import BrowserSession
from ..exceptions import BrowserError, ServiceUnavailable
from ..playback.clock import Clock
from ..recipes.models import ScrapedTransaction
from .amounts import clean_amount
from .json_repair import parse_transaction_json
from .prompts import get_extraction_prompt
from .scroll import SCROLL_FRACTION, read_metrics, scroll_to_script

if TYPE_CHECKING:
    from browser_use.llm.base import BaseChatModel

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 90
SCREENSHOT_SETTLE = 0.5


class VisionService(Protocol):
    async def analyze(self, images: list[bytes], prompt: str) -> str:
        """Return the model's raw text reply for ``images`` and ``prompt``."""
        ...


class LLMVisionService:
    """``VisionService`` backed by a browser-use chat model.

    Provider errors and timeouts surface as ``ServiceUnavailable``; there is no
    retry at this level.
    """

    def __init__(self, llm: "BaseChatModel", timeout: float = 120.0):
        self.llm = llm
        self.timeout = timeout

    async def analyze(self, images: list[bytes], prompt: str) -> str:
        from browser_use.llm.messages import ContentPartImageParam, ContentPartTextParam, ImageURL, UserMessage

        parts: list[Any] = [
            ContentPartImageParam(
                image_url=ImageURL(
                    url=f"data:image/png;base64,{base64.b64encode(image).decode('ascii')}",
                    media_type="image/png",
                )
            )
            for image in images
        ]
        parts.append(ContentPartTextParam(text=prompt))

        try:
            response = await asyncio.wait_for(self.llm.ainvoke([UserMessage(content=parts)]), timeout=self.timeout)
        except TimeoutError as e:
            raise ServiceUnavailable(f"Vision model did not answer within {self.timeout:.0f}s") from e
        except Exception as e:
            raise ServiceUnavailable(f"Vision model call failed: {e}") from e

        content = response.completion
        if not isinstance(content, str):
            content = str(content)
        logger.debug(f"Vision response: {len(content)} chars")
        return content


async def capture_screenshots(session: BrowserSession, clock: Clock, max_screenshots: int = 6) -> list[bytes]:
    """Capture the page in viewport-sized shots advancing 60% at a time."""
    metrics = await read_metrics(session)
    shots: list[bytes] = []

    if not metrics.scrollable or metrics.client_height <= 0:
        await session.evaluate(scroll_to_script(0))
        await clock.sleep(SCREENSHOT_SETTLE)
        shots.append(await session.capture_screenshot())
        return shots

    step = max(1, int(metrics.client_height * SCROLL_FRACTION))
    bottom = metrics.scroll_height - metrics.client_height
    for i in range(max_screenshots):
        target = min(i * step, bottom)
        await session.evaluate(scroll_to_script(target))
        await clock.sleep(SCREENSHOT_SETTLE)
        shots.append(await session.capture_screenshot())
        if target >= bottom:
            break

    await session.evaluate(scroll_to_script(0))
    logger.info(f"Captured {len(shots)} screenshot(s) of a {metrics.scroll_height}px page")
    return shots


def normalize_records(records: list[dict[str, Any]]) -> list[ScrapedTransaction]:
    """Clean model records; records without description and amount are dropped."""
    transactions: list[ScrapedTransaction] = []
    for record in records:
        description = str(record.get("description") or "").strip()
        amount = clean_amount(record.get("amount"))
        if not description and not amount:
            logger.debug(f"Dropping vision record without description or amount: {record}")
            continue
        if "," in description:
            description = description.split(",", 1)[0].strip()

        try:
            confidence = int(record.get("confidence") or DEFAULT_CONFIDENCE)
        except (TypeError, ValueError):
            confidence = DEFAULT_CONFIDENCE

        transactions.append(
            ScrapedTransaction(
                date=str(record.get("date") or "").strip(),
                description=description,
                amount=amount,
                balance=clean_amount(record.get("balance")) or None,
                category=str(record.get("category") or "").strip() or None,
                index=len(transactions) + 1,
                confidence=max(0, min(100, confidence)),
            )
        )
    return transactions


async def scrape_vision(
    session: BrowserSession,
    service: VisionService,
    clock: Clock,
    max_screenshots: int = 6,
    prompt_override: str | None = None,
) -> tuple[list[ScrapedTransaction], list[bytes]]:
    """Run vision extraction; returns the transactions and the screenshots sent.

    Raises:
        ServiceUnavailable: The vision service failed or timed out.
        ExtractionParseFailure: The reply could not be parsed.
    """
    try:
        images = await capture_screenshots(session, clock, max_screenshots=max_screenshots)
    except BrowserError as e:
        raise ServiceUnavailable(f"Could not capture screenshots: {e}") from e

    reply = await service.analyze(images, get_extraction_prompt(prompt_override, len(images)))
    transactions = normalize_records(parse_transaction_json(reply))
    logger.info(f"Vision extraction returned {len(transactions)} transaction(s)")
    return transactions, images
