from __future__ import annotations

KNOWN_CURRENCIES: frozenset[str] = frozenset(
    {"INR", "USD", "EUR", "GBP", "HKD", "SGD", "AUD", "CAD", "AED", "JPY", "CNY"}
)

_ALIASES: dict[str, str] = {
    "₹": "INR",
    "RS": "INR",
    "RS.": "INR",
    "RUPEE": "INR",
    "RUPEES": "INR",
    "$": "USD",
    "US$": "USD",
    "€": "EUR",
    "£": "GBP",
    "HK$": "HKD",
    "S$": "SGD",
    "A$": "AUD",
    "C$": "CAD",
    "CA$": "CAD",
    "¥": "JPY",
}


def normalize_currency(value: object) -> str | None:
    """Map a code or symbol to an allow-listed ISO code, or None."""
    if not isinstance(value, str):
        return None
    raw = value.strip().upper()
    if not raw:
        return None
    code = _ALIASES.get(raw, raw)
    if code in KNOWN_CURRENCIES:
        return code
    return None
