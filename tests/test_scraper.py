"""Tests for transaction extraction: cleanup, JSON repair, DOM, vision and fallback."""

import asyncio
import json
from types import SimpleNamespace

import pytest
from conftest import FakeBrowserSession, FakeClock

from bank_autopilot.config import ColumnMapping, ScraperSettings
from bank_autopilot.exceptions import BrowserError, ExtractionParseFailure, ServiceUnavailable
from bank_autopilot.recipes.models import ScrapingMethod
from bank_autopilot.scraper import (
    LLMVisionService,
    RawRow,
    ScrapeOutcome,
    TransactionScraper,
    capture_screenshots,
    classify_rows,
    normalize_records,
    parse_transaction_json,
    prepare_page,
)
from bank_autopilot.scraper.amounts import clean_amount, clean_category, clean_cell_text, clean_description, infer_category
from bank_autopilot.scraper.prompts import VISION_EXTRACTION_PROMPT, get_extraction_prompt

SCROLLING_PAGE = {"scrollHeight": 2000, "clientHeight": 800, "rows": 10}


def _row(*texts: str, header: bool = False) -> dict:
    return {"source": "table", "isHeader": header, "cells": [{"text": t, "hint": ""} for t in texts]}


def _history(count: int) -> list[dict]:
    return [_row(f"Mar {i + 1:02d}, 2026", f"Merchant {i + 1}", f"-{i + 1}.25", f"{1000 - i}.00") for i in range(count)]


class FakeVisionService:
    def __init__(self, reply: str = "[]", error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.calls: list[tuple[list[bytes], str]] = []

    async def analyze(self, images: list[bytes], prompt: str) -> str:
        self.calls.append((images, prompt))
        if self.error is not None:
            raise self.error
        return self.reply


class BrokenRowsSession(FakeBrowserSession):
    async def evaluate(self, script: str):
        if "isHeader" in script:
            raise BrowserError("Execution context was destroyed")
        return await super().evaluate(script)


class TestCleanup:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("$1,234.56", "1234.56"),
            ("-$45.99", "-45.99"),
            ("1500.00", "1500.00"),
            (None, ""),
            (-12.5, "-12.5"),
        ],
    )
    def test_clean_amount(self, raw, expected):
        assert clean_amount(raw) == expected

    def test_concatenated_cells_split(self):
        assert clean_cell_text("Feb 04, 2026February 04 2026") == "Feb 04, 2026"
        assert clean_cell_text("-206.422380.52") == "-206.42"
        assert clean_cell_text("  Shake Shack ") == "Shake Shack"

    def test_clean_description(self):
        assert clean_description("Posted  SHAKE SHACK, NEW YORK NY") == "SHAKE SHACK"
        assert clean_description("Coffee opens popup") == "Coffee"

    def test_clean_category(self):
        assert clean_category("Allowance 0") == "Allowance"
        assert clean_category("Travel (3)") == "Travel"

    def test_infer_category(self):
        assert infer_category("SHELL OIL 123") == "Gas & Fuel"
        assert infer_category("Unknown Vendor") is None


class TestJsonRepair:
    def test_plain_array(self):
        assert parse_transaction_json('[{"description": "A", "amount": "-1.00"}]') == [{"description": "A", "amount": "-1.00"}]

    def test_fenced(self):
        content = '```json\n[{"description": "A", "amount": "1.00"}]\n```'
        assert len(parse_transaction_json(content)) == 1

    def test_prose_and_trailing_commas(self):
        content = 'Here are the transactions:\n[{"description": "A", "amount": "1.00",},]\nLet me know!'
        assert parse_transaction_json(content) == [{"description": "A", "amount": "1.00"}]

    def test_truncated_response_keeps_complete_objects(self):
        content = '[{"description": "A", "amount": "1.00"}, {"description": "B {x}", "amount": "2.00"}, {"description": "C", "amo'
        assert [r["description"] for r in parse_transaction_json(content)] == ["A", "B {x}"]

    def test_truncated_inside_fence(self):
        content = '```json\n[{"description": "A", "amount": "1.00"}, {"descr'
        assert [r["description"] for r in parse_transaction_json(content)] == ["A"]

    def test_wrapped_in_object(self):
        assert parse_transaction_json('{"transactions": [{"description": "A"}]}') == [{"description": "A"}]

    def test_empty_array(self):
        assert parse_transaction_json("[]") == []

    def test_empty_response_raises(self):
        with pytest.raises(ExtractionParseFailure):
            parse_transaction_json("   ")

    def test_no_json_raises(self):
        with pytest.raises(ExtractionParseFailure):
            parse_transaction_json("I could not find any transactions on this page.")


class TestDomClassification:
    def test_full_row(self):
        rows = [RawRow.from_dict(_row("Feb 04, 2026", "Shake Shack", "-$28.50", "$2,380.52"))]
        [txn] = classify_rows(rows)

        assert txn.date == "Feb 04, 2026"
        assert txn.description == "Shake Shack"
        assert txn.amount == "-28.50"
        assert txn.balance == "2380.52"
        assert txn.category == "Restaurants & Dining"
        assert txn.index == 1
        assert txn.confidence == 95

    def test_skips_header_pending_and_noise(self):
        rows = [
            RawRow.from_dict(_row("Date", "Description", "Amount", header=True)),
            RawRow.from_dict(_row("02/03/2026", "Description", "1.00")),
            RawRow.from_dict(_row("02/04/2026", "Pending AMAZON MKTPLACE", "-10.00")),
            RawRow.from_dict(_row("Total", "Something")),
            RawRow.from_dict(_row("02/05/2026", "Payroll", "1500.00")),
        ]
        txns = classify_rows(rows)
        assert [t.description for t in txns] == ["Payroll"]

    def test_duplicates_keep_first(self):
        rows = [RawRow.from_dict(_row("02/05/2026", "Payroll", "1500.00"))] * 2
        assert len(classify_rows(rows)) == 1

    def test_twenty_rows_indexed_in_order(self):
        txns = classify_rows([RawRow.from_dict(r) for r in _history(20)])

        assert len(txns) == 20
        assert [t.index for t in txns] == list(range(1, 21))
        assert txns[0].description == "Merchant 1"
        assert txns[-1].amount == "-20.25"

    def test_missing_amount_lowers_confidence(self):
        [txn] = classify_rows([RawRow.from_dict(_row("Feb 04, 2026", "Refund issued"))])
        assert txn.amount == ""
        assert txn.confidence == 75

    def test_column_mapping(self):
        row = RawRow.from_dict(_row("02/04/2026", "REF123", "Corner Bistro", "12.00", "Dining 2"))
        mapping = ColumnMapping(date=0, description=2, amount=3, category=4)

        [unmapped] = classify_rows([row])
        [mapped] = classify_rows([row], mapping=mapping)

        assert unmapped.description == "REF123"
        assert mapped.description == "Corner Bistro"
        assert mapped.category == "Dining"

    def test_class_hints(self):
        row = RawRow.from_dict(
            {
                "cells": [
                    {"text": "Coffee", "hint": "merchant-name"},
                    {"text": "4.50", "hint": "running-balance"},
                    {"text": "-4.50", "hint": "txn-amount"},
                    {"text": "Jan 09, 2026", "hint": "posted-date"},
                ]
            }
        )
        [txn] = classify_rows([row])
        assert (txn.date, txn.description, txn.amount, txn.balance) == ("Jan 09, 2026", "Coffee", "-4.50", "4.50")

    def test_limit(self):
        assert len(classify_rows([RawRow.from_dict(r) for r in _history(12)], limit=5)) == 5

    def test_category_inference_optional(self):
        [txn] = classify_rows([RawRow.from_dict(_row("02/04/2026", "Netflix", "-15.49"))], infer_categories=False)
        assert txn.category is None


class TestVisionNormalization:
    def test_normalize_records(self):
        txns = normalize_records(
            [
                {"date": "Feb 04, 2026", "description": "Shake Shack, NY", "amount": "-$28.50", "balance": "2,380.52", "category": "", "confidence": "97"},
                {"description": "", "amount": ""},
                {"description": "Payroll", "amount": "1500.00", "confidence": "high"},
                {"description": "Refund", "amount": "5.00", "confidence": 150},
            ]
        )

        assert [t.index for t in txns] == [1, 2, 3]
        assert txns[0].description == "Shake Shack"
        assert txns[0].amount == "-28.50"
        assert txns[0].balance == "2380.52"
        assert txns[0].category is None
        assert [t.confidence for t in txns] == [97, 90, 100]

    def test_prompt_override_and_overlap_note(self):
        assert get_extraction_prompt() == VISION_EXTRACTION_PROMPT
        assert get_extraction_prompt("Custom") == "Custom"
        assert "3 overlapping screenshots" in get_extraction_prompt(screenshot_count=3)


class TestLLMVisionService:
    async def test_sends_images_then_prompt(self):
        sent = []

        async def ainvoke(messages):
            sent.extend(messages)
            return SimpleNamespace(completion="[]")

        service = LLMVisionService(SimpleNamespace(ainvoke=ainvoke))
        assert await service.analyze([b"one", b"two"], "extract") == "[]"

        parts = sent[0].content
        assert len(parts) == 3
        assert parts[0].image_url.url.startswith("data:image/png;base64,")
        assert parts[2].text == "extract"

    async def test_timeout_is_service_unavailable(self):
        async def ainvoke(messages):
            await asyncio.sleep(10)

        service = LLMVisionService(SimpleNamespace(ainvoke=ainvoke), timeout=0.01)
        with pytest.raises(ServiceUnavailable, match="did not answer"):
            await service.analyze([b"img"], "extract")

    async def test_provider_error_is_service_unavailable(self):
        async def ainvoke(messages):
            raise RuntimeError("401 invalid api key")

        with pytest.raises(ServiceUnavailable, match="invalid api key"):
            await LLMVisionService(SimpleNamespace(ainvoke=ainvoke)).analyze([b"img"], "extract")


class TestScrolling:
    async def test_prepare_page_tracks_growth(self):
        session = FakeBrowserSession(metrics=SCROLLING_PAGE)
        session.row_counts = [10, 12, 18, 25, 25]
        clock = FakeClock()

        report = await prepare_page(session, clock, pause=0.6)

        assert report.scrolled
        assert (report.initial_rows, report.final_rows) == (10, 25)
        assert report.lazy_loaded
        assert clock.sleeps == [0.6] * 5
        scrolls = [s for s in session.scripts if s.startswith("window.scrollTo")]
        assert scrolls[-2] == "window.scrollTo({top: 1200, behavior: 'instant'})"
        assert scrolls[-1] == "window.scrollTo({top: 0, behavior: 'instant'})"

    async def test_short_page_not_scrolled(self):
        report = await prepare_page(FakeBrowserSession(metrics={"scrollHeight": 900, "clientHeight": 800, "rows": 4}), FakeClock())
        assert not report.scrolled
        assert not report.lazy_loaded

    async def test_screenshots_cover_page(self):
        session = FakeBrowserSession(metrics=SCROLLING_PAGE)
        shots = await capture_screenshots(session, FakeClock())
        # 0, 480, 960, then clamped to the bottom at 1200
        assert len(shots) == 4

    async def test_screenshot_cap(self):
        session = FakeBrowserSession(metrics={"scrollHeight": 20000, "clientHeight": 800, "rows": 0})
        assert len(await capture_screenshots(session, FakeClock(), max_screenshots=6)) == 6

    async def test_single_screenshot_for_short_page(self):
        assert len(await capture_screenshots(FakeBrowserSession(), FakeClock())) == 1


class TestTransactionScraper:
    VISION_SETTINGS = ScraperSettings(vision_provider="openai")

    async def test_dom_when_vision_disabled(self):
        session = FakeBrowserSession(rows=_history(3))
        scraper = TransactionScraper(ScraperSettings(vision_provider="none"), vision_service=FakeVisionService(), clock=FakeClock())

        result = await scraper.scrape(session)

        assert result.method == ScrapingMethod.DOM
        assert result.outcome == ScrapeOutcome.EXTRACTED
        assert result.count == 3
        assert session.screenshots_taken == 0

    async def test_vision_first(self):
        reply = '```json\n[{"date": "Feb 04, 2026", "description": "Shake Shack", "amount": "-28.50", "confidence": 95}]\n```'
        service = FakeVisionService(reply)
        scraper = TransactionScraper(self.VISION_SETTINGS, vision_service=service, clock=FakeClock())

        result = await scraper.scrape(FakeBrowserSession(rows=_history(3)))

        assert result.method == ScrapingMethod.VISION
        assert result.outcome == ScrapeOutcome.EXTRACTED
        assert [t.description for t in result.transactions] == ["Shake Shack"]
        images, prompt = service.calls[0]
        assert len(images) == 1
        assert prompt == VISION_EXTRACTION_PROMPT

    async def test_custom_prompt(self):
        service = FakeVisionService('[{"description": "A", "amount": "1.00"}]')
        settings = ScraperSettings(vision_provider="openai", scraping_prompt="Only card transactions please")
        await TransactionScraper(settings, vision_service=service, clock=FakeClock()).scrape(FakeBrowserSession())
        assert service.calls[0][1] == "Only card transactions please"

    async def test_service_unavailable_falls_back_to_dom(self):
        service = FakeVisionService(error=ServiceUnavailable("Vision model did not answer within 120s"))
        scraper = TransactionScraper(self.VISION_SETTINGS, vision_service=service, clock=FakeClock())

        result = await scraper.scrape(FakeBrowserSession(rows=_history(2)))

        assert result.method == ScrapingMethod.DOM
        assert result.count == 2
        assert "did not answer" in result.error

    async def test_unparseable_reply_falls_back_to_dom(self):
        service = FakeVisionService("Sorry, I can't read this page.")
        scraper = TransactionScraper(self.VISION_SETTINGS, vision_service=service, clock=FakeClock())

        result = await scraper.scrape(FakeBrowserSession(rows=_history(2)))

        assert result.method == ScrapingMethod.DOM
        assert result.outcome == ScrapeOutcome.EXTRACTED

    async def test_empty_vision_saves_diagnostic_then_tries_dom(self, tmp_path):
        scraper = TransactionScraper(self.VISION_SETTINGS, vision_service=FakeVisionService("[]"), clock=FakeClock(), results_dir=tmp_path)

        result = await scraper.scrape(FakeBrowserSession(rows=_history(2)))

        assert result.method == ScrapingMethod.DOM
        assert result.count == 2
        assert len(list((tmp_path / "debug-screenshots").glob("*.png"))) == 1

    async def test_empty_everywhere_reports_diagnostic(self, tmp_path):
        scraper = TransactionScraper(self.VISION_SETTINGS, vision_service=FakeVisionService("[]"), clock=FakeClock(), results_dir=tmp_path)

        result = await scraper.scrape(FakeBrowserSession())

        assert result.method == ScrapingMethod.VISION
        assert result.outcome == ScrapeOutcome.EMPTY
        assert result.count == 0
        assert result.diagnostic_path is not None
        assert result.diagnostic_path.read_bytes().startswith(b"\x89PNG")

    async def test_dom_empty(self):
        result = await TransactionScraper(clock=FakeClock()).scrape(FakeBrowserSession())
        assert result.method == ScrapingMethod.DOM
        assert result.outcome == ScrapeOutcome.EMPTY

    async def test_dom_failure(self):
        result = await TransactionScraper(clock=FakeClock()).scrape(BrokenRowsSession())
        assert result.outcome == ScrapeOutcome.FAILED
        assert "Execution context was destroyed" in result.error

    async def test_institution_mapping_used(self):
        settings = ScraperSettings(column_mappings={"First Bank": {"date": 0, "description": 2, "amount": 3}})
        session = FakeBrowserSession(rows=[_row("02/04/2026", "REF123", "Corner Bistro", "12.00")])

        result = await TransactionScraper(settings, clock=FakeClock()).scrape(session, institution="First Bank")

        assert result.transactions[0].description == "Corner Bistro"

    async def test_lazy_loading_limits_rows(self):
        session = FakeBrowserSession(rows=_history(12), metrics={"scrollHeight": 4000, "clientHeight": 800, "rows": 10})
        session.row_counts = [30] * 20
        scraper = TransactionScraper(ScraperSettings(row_limit=5), clock=FakeClock())

        result = await scraper.scrape(session)

        assert result.scroll.lazy_loaded
        assert result.count == 5
        assert [t.index for t in result.transactions] == [1, 2, 3, 4, 5]

    async def test_saved_transactions_are_json_ready(self):
        result = await TransactionScraper(clock=FakeClock()).scrape(FakeBrowserSession(rows=_history(1)))
        payload = json.loads(json.dumps([t.model_dump(by_alias=True, exclude_none=True) for t in result.transactions]))
        assert payload[0]["index"] == 1
