from __future__ import annotations

import math
import re
from datetime import date
from typing import Any

from textexpense.core.currencies import normalize_currency

_MONTHS: dict[str, int] = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}
_MONTH_ABBR = {v: k.title() for k, v in _MONTHS.items()}

_MONTH_RE = (
    r"(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?|"
    r"sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)\.?"
)

# Partial tokens as emitted by the extraction model, and their canonical forms.
_MONTH_DAY_TOKEN = re.compile(rf"^{_MONTH_RE}[-\s]+(\d{{1,2}})$", re.I)
_MONTH_YEAR_TOKEN = re.compile(rf"^{_MONTH_RE}[-\s,]+(\d{{4}})$", re.I)
_DAY_YEAR_TOKEN = re.compile(r"^(\d{1,2})(?:-|,\s*)(\d{4})$")

_DAY_MONTH_TEXT = re.compile(rf"^(\d{{1,2}})(?:st|nd|rd|th)?[\s-]+{_MONTH_RE}(?:[\s,-]+(\d{{2,4}}))?$", re.I)
_MONTH_DAY_YEAR_TEXT = re.compile(rf"^{_MONTH_RE}\s+(\d{{1,2}})(?:st|nd|rd|th)?,?\s+(\d{{4}})$", re.I)

_ISO_DATE = re.compile(r"(\d{4})[/.-](\d{1,2})[/.-](\d{1,2})")
_NUMERIC_DATE = re.compile(r"(\d{1,2})[/.-](\d{1,2})[/.-](\d{2,4})(?!\d)")

_YEAR_PIVOT = 50
_MIN_YEAR = 1900


def _month_number(raw: str) -> int:
    return _MONTHS[raw.lower()[:3]]


def _expand_year(raw: str) -> int | None:
    if len(raw) == 2:
        yy = int(raw)
        return 1900 + yy if yy > _YEAR_PIVOT else 2000 + yy
    if len(raw) == 4:
        return int(raw)
    return None


def _year_ok(year: int) -> bool:
    return _MIN_YEAR <= year <= date.today().year + 1


def _iso(year: int | None, month: int, day: int) -> str | None:
    if year is None or not _year_ok(year):
        return None
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def normalize_date(value: Any) -> str | None:
    """
    Canonicalize a receipt date.

    Full dates become ``YYYY-MM-DD``. Dates missing a component become partial
    tokens ("Oct 19", "Oct 2023", "19, 2023") and are never completed with a
    guessed day, month or year. Anything failing calendar validity is None.
    """
    if not isinstance(value, str):
        return None
    s = re.sub(r"\s+", " ", value.strip())
    if not s:
        return None

    m = _MONTH_DAY_TOKEN.match(s)
    if m:
        day = int(m.group(2))
        if not 1 <= day <= 31:
            return None
        return f"{_MONTH_ABBR[_month_number(m.group(1))]} {day:02d}"

    m = _MONTH_YEAR_TOKEN.match(s)
    if m:
        year = int(m.group(2))
        if not _year_ok(year):
            return None
        return f"{_MONTH_ABBR[_month_number(m.group(1))]} {year}"

    m = _DAY_YEAR_TOKEN.match(s)
    if m:
        day, year = int(m.group(1)), int(m.group(2))
        if not 1 <= day <= 31 or not _year_ok(year):
            return None
        return f"{day}, {year}"

    m = _DAY_MONTH_TEXT.match(s)
    if m:
        day = int(m.group(1))
        month = _month_number(m.group(2))
        if m.group(3) is None:
            if not 1 <= day <= 31:
                return None
            return f"{_MONTH_ABBR[month]} {day:02d}"
        return _iso(_expand_year(m.group(3)), month, day)

    m = _MONTH_DAY_YEAR_TEXT.match(s)
    if m:
        return _iso(int(m.group(3)), _month_number(m.group(1)), int(m.group(2)))

    m = _ISO_DATE.search(s)
    if m:
        return _iso(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    m = _NUMERIC_DATE.search(s)
    if m:
        first, second = int(m.group(1)), int(m.group(2))
        year = _expand_year(m.group(3))
        # Day-first unless the first part cannot be a month.
        day, month = first, second
        if month > 12 and day <= 12:
            day, month = second, first
        return _iso(year, month, day)

    return None


def parse_decimal_amount(raw: str) -> float | None:
    s = str(raw or "").strip()
    if not s:
        return None
    s = s.replace("\u202f", " ").replace("\xa0", " ")
    # "Rs." style prefixes: the dot is not a decimal point.
    s = re.sub(r"^[A-Za-z]+\.", "", s)
    s = re.sub(r"[^0-9,.' ]", "", s)
    s = s.replace(" ", "").replace("'", "")
    if not s or not any(ch.isdigit() for ch in s):
        return None

    if "," in s and "." in s:
        decimal_sep = "," if s.rfind(",") > s.rfind(".") else "."
        thousands_sep = "." if decimal_sep == "," else ","
        normalized = s.replace(thousands_sep, "").replace(decimal_sep, ".")
    elif "," in s:
        if s.count(",") > 1:
            normalized = s.replace(",", "")
        else:
            idx = s.rfind(",")
            digits_after = len(s) - idx - 1
            if digits_after == 2:
                normalized = s.replace(",", ".")
            elif digits_after in {0, 1}:
                normalized = s.replace(",", ".")
            else:
                normalized = s.replace(",", "")
    elif s.count(".") > 1:
        normalized = s.replace(".", "")
    else:
        normalized = s

    try:
        return round(float(normalized), 2)
    except ValueError:
        return None


def normalize_amount(value: Any) -> float | None:
    """Non-negative float or None. Negative, NaN and unparsable inputs become None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        amount = float(value)
    elif isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        if re.match(r"^[^0-9]*-", s) or (s.startswith("(") and s.endswith(")")):
            return None
        parsed = parse_decimal_amount(s)
        if parsed is None:
            return None
        amount = parsed
    else:
        return None
    if math.isnan(amount) or math.isinf(amount) or amount < 0:
        return None
    return amount


_OTHER_DOLLAR = re.compile(r"(?<![a-z])(hk|s|a|c|ca|mx|nz)\$", re.I)

# Ordered: the first matching rule wins.
_TEXT_CURRENCY_RULES: tuple[tuple[str, tuple[re.Pattern[str], ...]], ...] = (
    (
        "INR",
        (
            re.compile("₹"),
            re.compile(r"\brs\.?\s*\d", re.I),
            re.compile(r"rupee", re.I),
            re.compile(r"\binr\b", re.I),
        ),
    ),
    (
        "HKD",
        (re.compile(r"\bhkd\b", re.I), re.compile(r"hk\$", re.I), re.compile(r"hong\s*kong", re.I)),
    ),
    ("USD", (re.compile(r"\busd\b", re.I), re.compile(r"\bus\$", re.I))),
    ("GBP", (re.compile("£"), re.compile(r"\bgbp\b", re.I), re.compile(r"\bpounds?\b", re.I))),
    ("EUR", (re.compile("€"), re.compile(r"\beur\b", re.I), re.compile(r"\beuros?\b", re.I))),
    ("SGD", (re.compile(r"\bsgd\b", re.I), re.compile(r"(?<![a-z])s\$", re.I), re.compile(r"singapore", re.I))),
    ("AUD", (re.compile(r"\baud\b", re.I), re.compile(r"(?<![a-z])a\$", re.I), re.compile(r"australian", re.I))),
    ("AED", (re.compile(r"\baed\b", re.I), re.compile(r"dirham", re.I))),
    ("JPY", (re.compile(r"\bjpy\b", re.I), re.compile("¥"), re.compile(r"\byen\b", re.I))),
)

_INDIAN_TAX_IDS = re.compile(r"cgst|sgst|igst|gstin", re.I)


def _currency_from_text(text: str) -> str | None:
    for code, patterns in _TEXT_CURRENCY_RULES:
        if code == "USD" and "$" in text and not _OTHER_DOLLAR.search(text):
            return "USD"
        if any(p.search(text) for p in patterns):
            return code
    return None


def resolve_currency(
    text: str | None,
    *,
    model_currency: str | None = None,
    default_currency: str | None = None,
    fallback_currency: str = "INR",
) -> tuple[str, str]:
    """
    Resolve the receipt currency.

    Returns ``(code, source)`` where source is one of ``text``, ``tax_identifier``,
    ``model``, ``default`` or ``fallback``.
    """
    body = text or ""
    code = _currency_from_text(body)
    if code:
        return code, "text"
    if _INDIAN_TAX_IDS.search(body):
        return "INR", "tax_identifier"
    code = normalize_currency(model_currency)
    if code:
        return code, "model"
    hint = (default_currency or "").strip().upper()
    if len(hint) == 3 and hint.isalpha():
        return hint, "default"
    return fallback_currency.strip().upper(), "fallback"
