from __future__ import annotations

import json
import logging
import re
import time
from typing import Any

import httpx
from pydantic import ValidationError

from textexpense.core.config import Settings
from textexpense.core.logging import get_logger, log_event, monotonic_ms
from textexpense.modules.extraction.errors import (
    BackendResponseError,
    ErrorType,
    ModelExtractionError,
    is_service_failure,
)
from textexpense.modules.extraction.schemas import ExtractionCandidate

logger = get_logger(__name__)

_SYSTEM_PROMPT = """You extract structured data from the OCR text of receipts, invoices and bills.{currency_hint}

Output:
- Return exactly one JSON object and nothing else: no code fences, no commentary.
- Every field below must be present. Use null for anything missing, unclear or invalid.
- Amounts are JSON numbers without currency symbols.

Fields:
{{
  "merchant": string|null,
  "date": string|null,
  "subtotal": number|null,
  "tax": number|null,
  "tip": number (0 if absent),
  "miscellaneous": number (0 if absent),
  "totalAmount": number|null,
  "currency": ISO-4217 code|null,
  "invoiceNumber": string|null,
  "billNumber": string|null,
  "serialNumber": string|null,
  "paymentMethod": "cash"|"card"|"credit"|"debit"|"upi"|"unknown",
  "items": [{{"name": string, "price": number|null}}] (at most 20),
  "confidence": number between 0 and 1
}}

Tax vs. miscellaneous:
- Only government taxes go into tax: CGST, SGST, IGST, UTGST, CESS, GST, VAT, HST, PST, QST, sales tax, service tax, excise tax.
- Merchant charges go into miscellaneous: service charge, cover charge, delivery fee, shipping, packing or container charge, convenience, processing or platform fee, handling fee, round off.
- When several tax lines appear, add them into a single tax value. Never return separate tax lines.

Dates:
- Report only the components printed on the receipt. Never guess a missing day, month or year, and never assume the current year.
- Full date: YYYY-MM-DD.
- Month and day only: "Oct-19". Month and year only: "Oct-2023". Day and year only: "19-2023".
- null only when no date text exists at all.

Other fields:
- merchant: the first meaningful business name near the top; skip headers such as "TAX INVOICE", "RECEIPT", "CASH MEMO".
- invoiceNumber: labels like Invoice No, Inv #, Receipt No, Ref No, Txn ID, Voucher No, Ticket No.
- currency: use symbols or codes printed in the text (the one on the total line wins). If none is present, use the user's default currency when given, otherwise null.

Checks:
- subtotal + tax + tip + miscellaneous should equal totalAmount within 1.
- If subtotal is missing and the other parts are known, subtotal = totalAmount - (tax + tip + miscellaneous).
- If the amounts do not add up, set the uncertain ones to null and lower confidence.

Confidence:
- 0.9 or more: all fields clear and consistent.
- 0.5 to 0.8: partially extracted.
- 0.3 or less: unclear, garbled or incomplete text.
- 0.1: the text is not a receipt or invoice."""

_USER_PROMPT = """Extract the receipt fields from this OCR text and return only the JSON object.

Reminder: packing, delivery and service charges are miscellaneous, not tax.

OCR text:
{text}"""

_JSON_MODE: dict[str, str] = {"type": "json_object"}


def receipt_ai_available(settings: Settings) -> bool:
    return bool(settings.receipt_ai_enabled and settings.openai_api_key)


def build_messages(text: str, *, locale_currency: str | None = None) -> list[dict[str, str]]:
    hint = ""
    if locale_currency:
        hint = (
            f"\n\nThe user's default currency is {locale_currency}. "
            f"Use it when the receipt shows no clear currency symbol or code."
        )
    return [
        {"role": "system", "content": _SYSTEM_PROMPT.format(currency_hint=hint)},
        {"role": "user", "content": _USER_PROMPT.format(text=text)},
    ]


def extract_receipt_candidate(
    text: str,
    *,
    settings: Settings,
    client: httpx.Client,
    locale_currency: str | None = None,
) -> ExtractionCandidate:
    """
    One chat-completions call turned into a validated ExtractionCandidate.

    Raises ModelExtractionError carrying the failure class; never lets a raw
    backend or parsing exception through.
    """
    cleaned = _truncate_text(text, max_chars=int(settings.receipt_ai_max_chars or 0) or 12000)
    if not cleaned:
        raise ModelExtractionError("No text to extract from", error_type=ErrorType.DATA_QUALITY_FAILURE)

    payload: dict[str, Any] = {
        "model": settings.openai_model,
        "temperature": settings.receipt_ai_temperature,
        "max_tokens": settings.receipt_ai_max_tokens,
        "response_format": _JSON_MODE,
        "messages": build_messages(cleaned, locale_currency=locale_currency),
    }
    headers = {
        "Authorization": f"Bearer {settings.openai_api_key}",
        "Content-Type": "application/json",
    }
    url = settings.openai_base_url.rstrip("/") + "/chat/completions"
    timeout = float(settings.receipt_ai_timeout_seconds or 45.0)

    start = time.monotonic()
    try:
        resp = _post(client, url, headers=headers, payload=payload, timeout=timeout)
    except httpx.HTTPStatusError as e:
        # Endpoints without JSON mode reject response_format; retry once without it.
        if e.response.status_code not in {400, 422}:
            raise _classified(e) from e
        log_event(logger, "ai.json_mode.unsupported", status_code=e.response.status_code)
        payload.pop("response_format", None)
        try:
            resp = _post(client, url, headers=headers, payload=payload, timeout=timeout)
        except Exception as retry_exc:
            raise _classified(retry_exc) from retry_exc
    except Exception as e:
        raise _classified(e) from e

    content = _message_content(resp)
    obj = parse_json_object(content)
    if not isinstance(obj, dict):
        raise ModelExtractionError(
            "Model response is not a JSON object", error_type=ErrorType.DATA_QUALITY_FAILURE
        )
    try:
        candidate = ExtractionCandidate.model_validate(obj)
    except ValidationError as e:
        raise ModelExtractionError(
            f"Model response failed validation ({e.error_count()} errors)",
            error_type=ErrorType.DATA_QUALITY_FAILURE,
        ) from e
    except (TypeError, ValueError) as e:
        # A validator that raises outside pydantic's error wrapping.
        raise ModelExtractionError(
            f"Model response failed validation ({type(e).__name__})",
            error_type=ErrorType.DATA_QUALITY_FAILURE,
        ) from e

    log_event(
        logger,
        "ai.extract.success",
        model=settings.openai_model,
        confidence=candidate.confidence,
        duration_ms=monotonic_ms(start),
    )
    return candidate


def _post(
    client: httpx.Client,
    url: str,
    *,
    headers: dict[str, str],
    payload: dict[str, Any],
    timeout: float,
) -> httpx.Response:
    resp = client.post(url, headers=headers, json=payload, timeout=timeout, follow_redirects=True)
    resp.raise_for_status()
    return resp


def _classified(exc: BaseException) -> ModelExtractionError:
    error_type = (
        ErrorType.SERVICE_FAILURE if is_service_failure(exc) else ErrorType.DATA_QUALITY_FAILURE
    )
    log_event(
        logger,
        "ai.extract.failure",
        level=logging.WARNING,
        error_type=error_type.value,
        error_class=type(exc).__name__,
        error=str(exc)[:300],
    )
    return ModelExtractionError(str(exc)[:300] or type(exc).__name__, error_type=error_type)


def _message_content(resp: httpx.Response) -> str:
    try:
        raw = resp.json()
    except ValueError as e:
        raise ModelExtractionError(
            "Completion response is not JSON", error_type=ErrorType.DATA_QUALITY_FAILURE
        ) from e

    if isinstance(raw, dict) and isinstance(raw.get("error"), dict) and not raw.get("choices"):
        err = raw["error"]
        raise _classified(
            BackendResponseError(str(err.get("message") or "Completion failed"), code=err.get("type"))
        )

    try:
        msg = raw["choices"][0]["message"]
    except (KeyError, IndexError, TypeError) as e:
        raise ModelExtractionError(
            "Completion response has no message", error_type=ErrorType.DATA_QUALITY_FAILURE
        ) from e
    if not isinstance(msg, dict) or msg.get("refusal"):
        raise ModelExtractionError("Model refused the request", error_type=ErrorType.DATA_QUALITY_FAILURE)
    content = msg.get("content")
    if not isinstance(content, str) or not content.strip():
        raise ModelExtractionError("Model returned no content", error_type=ErrorType.DATA_QUALITY_FAILURE)
    return content


def _truncate_text(text: str, *, max_chars: int) -> str:
    t = (text or "").replace("\u202f", " ").replace("\xa0", " ").strip()
    if not t or max_chars <= 0 or len(t) <= max_chars:
        return t
    return t[: max_chars - 20].rstrip() + "\n\n[TRUNCATED]"


_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


def parse_json_object(content: str | None) -> Any:
    """Parse model output, tolerating code fences and prose around the object."""
    c = _FENCE_RE.sub("", (content or "").strip()).strip()
    if not c:
        return None
    try:
        return json.loads(c)
    except ValueError:
        pass

    first, last = c.find("{"), c.rfind("}")
    if first == -1 or last <= first:
        return None
    try:
        return json.loads(c[first : last + 1])
    except ValueError:
        return None
