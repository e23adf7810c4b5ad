"""Transaction scraping: DOM heuristics with an AI-vision path."""

from .amounts import clean_amount, clean_category, clean_description, infer_category
from .dom import RawCell, RawRow, classify_rows, scrape_dom
from .json_repair import parse_transaction_json
from .scroll import ScrollReport, prepare_page
from .service import ScrapeOutcome, ScrapeResult, TransactionScraper
from .vision import LLMVisionService, VisionService, capture_screenshots, normalize_records, scrape_vision

__all__ = [
    "LLMVisionService",
    "RawCell",
    "RawRow",
    "ScrapeOutcome",
    "ScrapeResult",
    "ScrollReport",
    "TransactionScraper",
    "VisionService",
    "capture_screenshots",
    "classify_rows",
    "clean_amount",
    "clean_category",
    "clean_description",
    "infer_category",
    "normalize_records",
    "parse_transaction_json",
    "prepare_page",
    "scrape_dom",
    "scrape_vision",
]
