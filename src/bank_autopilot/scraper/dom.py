"""DOM-based transaction extraction.

A page script gathers raw rows (cell texts plus class hints) from transaction
tables and from elements marked as transactions. Classification happens in
Python so the heuristics stay testable without a browser.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from ..browser import BrowserSession
from ..config import ColumnMapping
from ..recipes.models import ScrapedTransaction
from .amounts import (
    clean_amount,
    clean_category,
    clean_cell_text,
    clean_description,
    infer_category,
    is_amount,
    is_date,
    is_pending,
)

logger = logging.getLogger(__name__)

FULL_CONFIDENCE = 95
PARTIAL_CONFIDENCE = 75

_HEADER_WORDS = {"date", "description", "amount", "balance", "category"}

_HINT_KEYWORDS: dict[str, tuple[str, ...]] = {
    "date": ("date",),
    "description": ("description", "merchant", "payee"),
    "amount": ("amount",),
    "balance": ("balance",),
    "category": ("category",),
}

ROWS_SCRIPT = r"""
(function() {
  function hintOf(el) {
    const cls = typeof el.className === 'string' ? el.className : (el.getAttribute('class') || '');
    return (cls + ' ' + (el.getAttribute('data-testid') || '')).toLowerCase().trim();
  }
  function cellText(el) {
    const time = el.querySelector('time');
    const text = time ? (time.innerText || time.textContent) : (el.innerText || el.textContent);
    return (text || '').trim();
  }
  function cellsOf(row) {
    let cells = Array.from(row.querySelectorAll(':scope > td, :scope > th'));
    if (!cells.length) {
      cells = Array.from(row.querySelectorAll('[class*="date"], [class*="description"], [class*="merchant"], ' +
        '[class*="payee"], [class*="amount"], [class*="balance"], [class*="category"]'));
    }
    if (!cells.length) cells = Array.from(row.children);
    return cells.map(function(c) { return {text: cellText(c), hint: hintOf(c)}; });
  }

  const seen = new Set();
  const rows = [];
  function push(row, source) {
    if (seen.has(row)) return;
    seen.add(row);
    rows.push({
      source: source,
      isHeader: row.querySelector('th') !== null || row.parentElement && row.parentElement.tagName === 'THEAD',
      cells: cellsOf(row)
    });
  }

  document.querySelectorAll('table tbody tr').forEach(function(row) { push(row, 'table'); });

  const marked = Array.from(document.querySelectorAll(
    'tr[data-testid*="transaction-row"], [data-testid*="transaction"], [class*="transaction"]'));
  marked.forEach(function(el) {
    if (el.closest('table tbody tr') && !el.matches('tr')) return;
    if (el.matches('table, tbody, thead')) return;
    const container = marked.some(function(other) { return other !== el && el.contains(other); });
    if (container) return;
    push(el, 'marked');
  });
  return rows;
})()
"""


@dataclass
class RawCell:
    text: str
    hint: str = ""


@dataclass
class RawRow:
    cells: list[RawCell] = field(default_factory=list)
    is_header: bool = False
    source: str = "table"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RawRow":
        cells = [RawCell(text=str(c.get("text") or ""), hint=str(c.get("hint") or "")) for c in data.get("cells") or []]
        return cls(cells=cells, is_header=bool(data.get("isHeader")), source=str(data.get("source") or "table"))


@dataclass
class _Fields:
    date: str = ""
    description: str = ""
    amount: str = ""
    balance: str = ""
    category: str = ""


def _by_index(texts: list[str], index: int | None) -> str:
    if index is None or index < 0 or index >= len(texts):
        return ""
    return texts[index]


def _classify(row: RawRow, mapping: ColumnMapping | None) -> _Fields:
    texts = [clean_cell_text(cell.text) for cell in row.cells]
    fields = _Fields()
    used: set[int] = set()

    if mapping is not None:
        for name in ("date", "description", "amount", "balance", "category"):
            index = getattr(mapping, name)
            value = _by_index(texts, index)
            if value:
                setattr(fields, name, value)
                used.add(index)

    for name, keywords in _HINT_KEYWORDS.items():
        if getattr(fields, name):
            continue
        for i, cell in enumerate(row.cells):
            if i in used or not texts[i]:
                continue
            if any(keyword in cell.hint for keyword in keywords):
                setattr(fields, name, texts[i])
                used.add(i)
                break

    if not fields.date:
        for i, text in enumerate(texts):
            if i not in used and is_date(text):
                fields.date = text
                used.add(i)
                break

    amounts = [i for i, text in enumerate(texts) if i not in used and is_amount(text)]
    if not fields.amount and amounts:
        first = amounts.pop(0)
        fields.amount = texts[first]
        used.add(first)
    if not fields.balance and amounts:
        fields.balance = texts[amounts[0]]
        used.add(amounts[0])

    if not fields.description:
        for i, text in enumerate(texts):
            if i in used or not text or is_date(text) or is_amount(text):
                continue
            if len(text) >= 2:
                fields.description = text
                break

    return fields


def classify_rows(
    raw_rows: list[RawRow],
    mapping: ColumnMapping | None = None,
    infer_categories: bool = True,
    limit: int | None = None,
) -> list[ScrapedTransaction]:
    """Turn raw page rows into transactions.

    Header and pending rows are skipped, as are rows with neither a date nor
    an amount. Duplicates (same date, description and amount) keep their first
    occurrence. Indices run 1..N in document order.
    """
    transactions: list[ScrapedTransaction] = []
    seen: set[str] = set()
    skipped = 0

    for row in raw_rows:
        if row.is_header or not row.cells:
            skipped += 1
            continue

        fields = _classify(row, mapping)
        if fields.description.strip().lower() in _HEADER_WORDS:
            skipped += 1
            continue
        if not fields.date and not fields.amount:
            skipped += 1
            continue
        if is_pending(fields.description, fields.category):
            logger.debug(f"Skipping pending row: {fields.description}")
            skipped += 1
            continue

        description = clean_description(fields.description)
        amount = clean_amount(fields.amount)
        category = clean_category(fields.category)
        if not category and description and infer_categories:
            category = infer_category(description) or ""

        key = f"{fields.date}|{description}|{amount}"
        if key in seen:
            continue
        seen.add(key)

        transactions.append(
            ScrapedTransaction(
                date=fields.date,
                description=description,
                amount=amount,
                balance=clean_amount(fields.balance) or None,
                category=category or None,
                index=len(transactions) + 1,
                confidence=FULL_CONFIDENCE if fields.date and amount else PARTIAL_CONFIDENCE,
            )
        )

    if limit is not None and len(transactions) > limit:
        logger.info(f"Limiting DOM extraction to the first {limit} of {len(transactions)} transactions")
        transactions = transactions[:limit]

    logger.debug(f"DOM classification kept {len(transactions)} row(s), skipped {skipped}")
    return transactions


async def scrape_dom(
    session: BrowserSession,
    mapping: ColumnMapping | None = None,
    infer_categories: bool = True,
    limit: int | None = None,
) -> list[ScrapedTransaction]:
    """Extract transactions from the current page's DOM."""
    raw = await session.evaluate(ROWS_SCRIPT)
    rows = [RawRow.from_dict(item) for item in raw or [] if isinstance(item, dict)]
    logger.info(f"DOM scan found {len(rows)} candidate row(s)")
    return classify_rows(rows, mapping=mapping, infer_categories=infer_categories, limit=limit)
