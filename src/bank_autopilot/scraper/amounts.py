"""Text cleanup shared by the DOM and vision extractors."""

import re

DATE_RE = re.compile(r"\d{1,2}[/-]\d{1,2}[/-]\d{2,4}|[A-Z][a-z]{2}\s+\d{1,2},?\s+\d{4}|\d{4}-\d{2}-\d{2}")
AMOUNT_RE = re.compile(r"^-?\$?[\d,]+\.\d{2}$")

# "Feb 04, 2026February 04 2026" and "-206.422380.52" come from nested
# elements whose text was concatenated
_LEADING_DATE_RE = re.compile(r"^([A-Za-z]{3}\s+\d{1,2},\s+\d{4})")
_LEADING_AMOUNT_RE = re.compile(r"^(-?\$?[\d,]+\.\d{2})")

_DESCRIPTION_NOISE_RE = re.compile(r"pending|posted|opens? popup", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")
_CATEGORY_TAIL_RE = re.compile(r"[\d()]+$")

CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Restaurants & Dining", ("restaurant", "shack", "cafe", "pizza")),
    ("Gas & Fuel", ("gas", "fuel", "shell", "chevron")),
    ("Groceries", ("grocery", "market", "safeway", "whole foods")),
    ("Shopping", ("amazon", "target", "walmart")),
    ("Entertainment", ("netflix", "spotify", "hulu")),
)


def clean_cell_text(text: str | None) -> str:
    """Trim a cell and undo date/amount concatenation."""
    text = (text or "").strip()
    date = _LEADING_DATE_RE.match(text)
    if date:
        text = date.group(1)
    amount = _LEADING_AMOUNT_RE.match(text)
    if amount and len(text) > len(amount.group(0)):
        text = amount.group(1)
    return text


def is_date(text: str) -> bool:
    return bool(DATE_RE.search(text))


def is_amount(text: str) -> bool:
    return bool(AMOUNT_RE.match(text))


def clean_amount(value: object) -> str:
    """Strip currency symbols and thousands separators, keeping the sign.

    >>> clean_amount("$1,234.56")
    '1234.56'
    >>> clean_amount("-$45.99")
    '-45.99'
    """
    if value is None:
        return ""
    return re.sub(r"[$,]", "", str(value)).strip()


def clean_description(text: str | None) -> str:
    """Drop status words and anything after the first comma."""
    text = _DESCRIPTION_NOISE_RE.sub("", text or "")
    text = _WHITESPACE_RE.sub(" ", text).strip()
    if "," in text:
        text = text.split(",", 1)[0].strip()
    return text


def clean_category(text: str | None) -> str:
    """Remove trailing counters such as "Allowance 0" or "Travel (3)"."""
    text = re.sub(r"\s+\d+$", "", (text or "").strip())
    text = _CATEGORY_TAIL_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def infer_category(description: str) -> str | None:
    lowered = description.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return None


def is_pending(*texts: str | None) -> bool:
    return any("pending" in (text or "").lower() for text in texts)
