from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from textexpense.core.currencies import normalize_currency
from textexpense.modules.extraction.errors import ErrorType
from textexpense.modules.extraction.normalize import normalize_amount

MAX_LINE_ITEMS = 20


class OCRMethod(str, enum.Enum):
    GOOGLE_VISION_AI = "google_vision_ai"
    GOOGLE_VISION = "google_vision"
    PDF_TEXT_EXTRACTION = "pdf_text_extraction"
    PDF_TO_IMAGE_OCR = "pdf_to_image_ocr"
    TESSERACT = "tesseract"
    FALLBACK = "fallback"


class ExtractionMethod(str, enum.Enum):
    AI_EXTRACTION = "ai_extraction"
    BASIC_EXTRACTION = "basic_extraction"


class Reconciliation(str, enum.Enum):
    RECONCILED = "reconciled"
    DERIVED_SUBTOTAL = "derived_subtotal"
    TIP_EXCLUDED = "tip_excluded"
    MISMATCH = "mismatch"
    INCOMPLETE = "incomplete"


class DocumentPath(str, enum.Enum):
    IMAGE = "image"
    PDF = "pdf"


@dataclass(frozen=True)
class RawDocument:
    body: bytes
    mime_type: str
    filename: str | None = None


class OCRResult(BaseModel):
    success: bool
    text: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    method: OCRMethod
    word_count: int = 0
    detected_languages: list[str] = Field(default_factory=list)
    needs_ai_processing: bool = False
    # Set only by the labelled stub; survives re-tagging by the PDF path.
    is_placeholder: bool = False
    error_type: ErrorType | None = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _failed_result_carries_no_text(self) -> OCRResult:
        if not self.success:
            self.text = ""
            self.confidence = 0.0
            self.word_count = 0
        return self


def _clean_str(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    s = value.strip()
    if not s or s.lower() in {"null", "none", "unknown", "n/a"}:
        return None
    return s


class LineItem(BaseModel):
    name: str
    price: float | None = None

    @field_validator("price", mode="before")
    @classmethod
    def _price(cls, v: Any) -> float | None:
        return normalize_amount(v)


def _coerce_items(value: Any) -> list[LineItem]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError("items must be a list")
    out: list[LineItem] = []
    for raw in value:
        if len(out) >= MAX_LINE_ITEMS:
            break
        if not isinstance(raw, dict):
            continue
        name = _clean_str(raw.get("name") or raw.get("description"))
        if not name:
            continue
        out.append(LineItem(name=name[:200], price=raw.get("price", raw.get("amount"))))
    return out


class ExtractionCandidate(BaseModel):
    """The model's structured guess, before reconciliation and normalization."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    merchant: str | None = None
    date: str | None = None
    subtotal: float | None = None
    tax: float | None = None
    tip: float | None = None
    miscellaneous: float | None = None
    total: float | None = Field(default=None, alias="totalAmount")
    currency: str | None = None
    invoice_number: str | None = Field(default=None, alias="invoiceNumber")
    bill_number: str | None = Field(default=None, alias="billNumber")
    serial_number: str | None = Field(default=None, alias="serialNumber")
    payment_method: str | None = Field(default=None, alias="paymentMethod")
    items: list[LineItem] = Field(default_factory=list)
    confidence: float = 0.7

    @field_validator("merchant", "date", "invoice_number", "bill_number", "serial_number", mode="before")
    @classmethod
    def _strings(cls, v: Any) -> str | None:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            v = str(v)
        return _clean_str(v)

    @field_validator("subtotal", "tax", "tip", "miscellaneous", "total", mode="before")
    @classmethod
    def _amounts(cls, v: Any) -> float | None:
        return normalize_amount(v)

    @field_validator("currency", mode="before")
    @classmethod
    def _currency(cls, v: Any) -> str | None:
        return normalize_currency(v)

    @field_validator("payment_method", mode="before")
    @classmethod
    def _payment_method(cls, v: Any) -> str | None:
        s = _clean_str(v)
        return s.lower() if s else None

    @field_validator("items", mode="before")
    @classmethod
    def _items(cls, v: Any) -> list[LineItem]:
        return _coerce_items(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v: Any) -> float:
        if v is None:
            return 0.7
        if isinstance(v, bool):
            raise ValueError("confidence must be numeric")
        try:
            conf = float(v)
        except (TypeError, ValueError) as e:
            raise ValueError("confidence must be numeric") from e
        if math.isnan(conf):
            raise ValueError("confidence must be numeric")
        return min(max(conf, 0.0), 1.0)


class ReceiptRecord(BaseModel):
    merchant: str | None = None
    date: str | None = None
    subtotal: float | None = Field(default=None, ge=0)
    tax: float | None = Field(default=None, ge=0)
    tip: float | None = Field(default=None, ge=0)
    miscellaneous: float | None = Field(default=None, ge=0)
    total: float | None = Field(default=None, ge=0)
    currency: str
    items: list[LineItem] = Field(default_factory=list, max_length=MAX_LINE_ITEMS)
    payment_method: str = "unknown"
    invoice_number: str | None = None
    bill_number: str | None = None
    serial_number: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    method: ExtractionMethod
    reconciliation: Reconciliation = Reconciliation.INCOMPLETE
    currency_source: str | None = None
    original_text: str = ""


class ReceiptExtractionResult(BaseModel):
    success: bool
    error_type: ErrorType | None = None
    error: str | None = None
    ocr: OCRResult
    extraction: ReceiptRecord | None = None
    overall_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    fallback_reason: str | None = None
