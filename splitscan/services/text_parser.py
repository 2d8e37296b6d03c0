"""Turn plain OCR text into structured receipt fields.

No network, no database: the same text always yields the same
``ParsedReceipt``. Lines are classified in one pass with a fixed priority
(tax > tip > total > subtotal > line item) because a line like
"Service charge total 4.00" matches several keyword families.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Iterable

from splitscan.schemas.ocr import ParsedItem, ParsedReceipt

MERCHANT_SCAN_LINES = 5
DEFAULT_ITEM_CONFIDENCE = 0.8

DATE_PATTERN = re.compile(
    r"(\d{1,2}[-/]\d{1,2}[-/]\d{2,4})|(\d{4}[-/]\d{1,2}[-/]\d{1,2})|"
    r"((?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]* \d{1,2},? \d{4})",
    re.IGNORECASE,
)
PRICE_PATTERN = re.compile(r"\$?\s*(\d+\.\d{2})")
LINE_ITEM_PATTERN = re.compile(r"^(.+?)\s+\$?\s*(\d+\.\d{2})$")
BARE_NUMBER_PATTERN = re.compile(r"^[+-]?\d[\d,]*(\.\d+)?$")

TAX_KEYWORDS = ("tax", "sales tax", "gst", "hst", "pst")
TIP_KEYWORDS = ("tip", "gratuity", "service")
TOTAL_KEYWORDS = ("total", "amount", "balance", "grand total")
SUBTOTAL_KEYWORDS = ("subtotal", "sub total", "sub-total")

_NOT_AN_ITEM_KEYWORDS = TOTAL_KEYWORDS + TAX_KEYWORDS + TIP_KEYWORDS

_MONTHS = {m: i for i, m in enumerate(
    ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"), start=1
)}


def _contains_keyword(line: str, keywords: Iterable[str]) -> bool:
    lowered = line.lower()
    return any(k in lowered for k in keywords)


def extract_amount(line: str) -> Decimal | None:
    m = PRICE_PATTERN.search(line)
    if not m:
        return None
    return Decimal(m.group(1))


def _split_lines(raw_text: str) -> list[tuple[int, str]]:
    """Non-empty stripped lines with their 1-based position in the source text."""
    out = []
    for idx, line in enumerate((raw_text or "").splitlines(), start=1):
        line = line.strip()
        if line:
            out.append((idx, line))
    return out


def _is_bare_number(line: str) -> bool:
    return bool(BARE_NUMBER_PATTERN.match(line.replace("$", "").strip()))


def extract_merchant(lines: list[str]) -> str | None:
    for line in lines[:MERCHANT_SCAN_LINES]:
        if len(line) > 2 and not DATE_PATTERN.search(line) and not _is_bare_number(line):
            return line
    return lines[0] if lines else None


def _year(value: str) -> int:
    y = int(value)
    return y + 2000 if len(value) <= 2 else y


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_date(value: str) -> date | None:
    value = value.strip()

    if value[:1].isdigit():
        parts = re.split(r"[-/]", value)
        if len(parts) != 3:
            return None
        if len(parts[0]) == 4:
            return _safe_date(int(parts[0]), int(parts[1]), int(parts[2]))
        first, second, year = int(parts[0]), int(parts[1]), _year(parts[2])
        # day-first; month-first only when that is not a valid date (03/15/2024)
        return _safe_date(year, second, first) or _safe_date(year, first, second)

    cleaned = value.replace(",", " ").split()
    if len(cleaned) != 3:
        return None
    month = _MONTHS.get(cleaned[0][:3].lower())
    if month is None:
        return None
    try:
        return _safe_date(int(cleaned[2]), month, int(cleaned[1]))
    except ValueError:
        return None


def extract_date(lines: list[str]) -> date | None:
    for line in lines:
        m = DATE_PATTERN.search(line)
        if not m:
            continue
        parsed = parse_date(m.group(0))
        if parsed is not None:
            return parsed
    return None


def _match_line_item(line: str, line_number: int) -> ParsedItem | None:
    m = LINE_ITEM_PATTERN.match(line)
    if not m:
        return None
    try:
        price = Decimal(m.group(2))
    except InvalidOperation:
        return None
    if price <= 0 or _contains_keyword(line, _NOT_AN_ITEM_KEYWORDS):
        return None
    return ParsedItem(
        name=m.group(1).strip(),
        price=price,
        quantity=1,
        line_number=line_number,
        confidence=DEFAULT_ITEM_CONFIDENCE,
    )


def parse_receipt_text(raw_text: str, confidence: float | None = None) -> ParsedReceipt:
    numbered = _split_lines(raw_text)
    if not numbered:
        return ParsedReceipt(confidence=confidence)

    lines = [line for _, line in numbered]

    subtotal = tax = tip = total = None
    items: list[ParsedItem] = []

    for line_number, line in numbered:
        if _contains_keyword(line, TAX_KEYWORDS):
            tax = extract_amount(line)
            continue
        if _contains_keyword(line, TIP_KEYWORDS):
            tip = extract_amount(line)
            continue
        if _contains_keyword(line, TOTAL_KEYWORDS):
            total = extract_amount(line)
            continue
        if _contains_keyword(line, SUBTOTAL_KEYWORDS):
            subtotal = extract_amount(line)
            continue

        item = _match_line_item(line, line_number)
        if item is not None:
            items.append(item)

    if subtotal is None and items:
        subtotal = sum((it.price * it.quantity for it in items), Decimal("0"))
    if total is None:
        total = (subtotal or Decimal("0")) + (tax or Decimal("0")) + (tip or Decimal("0"))

    return ParsedReceipt(
        merchant_name=extract_merchant(lines),
        transaction_date=extract_date(lines),
        subtotal=subtotal,
        tax=tax,
        tip=tip,
        total=total,
        items=items,
        confidence=confidence,
    )
