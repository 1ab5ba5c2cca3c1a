from __future__ import annotations

import re

from textexpense.modules.extraction.normalize import normalize_amount, normalize_date, resolve_currency
from textexpense.modules.extraction.schemas import ExtractionMethod, ReceiptRecord

BASIC_EXTRACTION_CONFIDENCE = 0.3

_TOTAL_RE = re.compile(
    r"\b(?:total|amount|sum|balance|due)\b[:\s]*(?:rs\.?|inr|usd)?\s*[$₹€£]?\s*(\d[\d,]*(?:\.\d+)?)",
    re.I,
)
_LABELED_DATE_RE = re.compile(r"\b(?:date|dt)\b[:.\s]*(\d{1,2}[/-]\d{1,2}[/-]\d{2,4})", re.I)
_BARE_DATE_RE = re.compile(r"\b(\d{1,2}[/-]\d{1,2}[/-]\d{2,4})\b")
_DATE_LIKE_RE = re.compile(r"\d+[/-]\d+")
_NUMERIC_LINE_RE = re.compile(r"^[\d\s.,:/#()+-]+$")
_BOILERPLATE = ("feedback", "improve", "please", "survey")


def _find_total(text: str) -> float | None:
    for m in _TOTAL_RE.finditer(text):
        amount = normalize_amount(m.group(1))
        if amount is not None:
            return amount
    return None


def _find_date(text: str) -> str | None:
    m = _LABELED_DATE_RE.search(text) or _BARE_DATE_RE.search(text)
    if not m:
        return None
    return normalize_date(m.group(1))


def _find_merchant(lines: list[str]) -> str | None:
    for ln in lines:
        if not 3 <= len(ln) <= 49:
            continue
        if _NUMERIC_LINE_RE.match(ln) or _DATE_LIKE_RE.search(ln):
            continue
        if "$" in ln:
            continue
        lowered = ln.lower()
        if any(word in lowered for word in _BOILERPLATE):
            continue
        return ln
    return None


def basic_extraction(
    text: str | None,
    *,
    default_currency: str | None = None,
    fallback_currency: str = "INR",
) -> ReceiptRecord:
    """Regex extraction used when the model is unavailable. Always succeeds, always low confidence."""
    body = text or ""
    lines = [ln.strip() for ln in body.splitlines() if ln.strip()]
    currency, currency_source = resolve_currency(
        body, default_currency=default_currency, fallback_currency=fallback_currency
    )
    return ReceiptRecord(
        merchant=_find_merchant(lines),
        date=_find_date(body),
        total=_find_total(body),
        currency=currency,
        currency_source=currency_source,
        confidence=BASIC_EXTRACTION_CONFIDENCE,
        method=ExtractionMethod.BASIC_EXTRACTION,
        original_text=body,
    )
