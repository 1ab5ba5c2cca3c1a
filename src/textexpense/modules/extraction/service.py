from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import httpx

from textexpense.core.config import Settings, settings as default_settings
from textexpense.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_document_context,
    set_document_context,
)
from textexpense.modules.extraction.ai import extract_receipt_candidate, receipt_ai_available
from textexpense.modules.extraction.errors import ErrorType, ModelExtractionError, is_service_failure
from textexpense.modules.extraction.fallback import BASIC_EXTRACTION_CONFIDENCE, basic_extraction
from textexpense.modules.extraction.normalize import normalize_date, resolve_currency
from textexpense.modules.extraction.ocr import MIN_TEXT_CHARS, OCREngine
from textexpense.modules.extraction.pdf import extract_pdf_text
from textexpense.modules.extraction.reconcile import Amounts, reconcile
from textexpense.modules.extraction.routing import route
from textexpense.modules.extraction.schemas import (
    DocumentPath,
    ExtractionCandidate,
    ExtractionMethod,
    OCRMethod,
    OCRResult,
    RawDocument,
    ReceiptExtractionResult,
    ReceiptRecord,
    Reconciliation,
)

logger = get_logger(__name__)

SERVICE_UNAVAILABLE_MESSAGE = "Service temporarily unavailable"


@dataclass
class PipelineStats:
    documents: int = 0
    service_failures: int = 0
    model_extractions: int = 0
    fallbacks: int = 0
    confidence_total: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        completed = self.documents - self.service_failures
        mean = self.confidence_total / completed if completed > 0 else 0.0
        return {
            "documents": self.documents,
            "service_failures": self.service_failures,
            "model_extractions": self.model_extractions,
            "fallbacks": self.fallbacks,
            "mean_confidence": round(mean, 3),
        }


def build_record(
    candidate: ExtractionCandidate,
    *,
    text: str,
    locale_currency: str | None,
    fallback_currency: str,
) -> ReceiptRecord:
    """Reconcile and normalize a model candidate into the output record."""
    outcome = reconcile(
        Amounts(
            subtotal=candidate.subtotal,
            tax=candidate.tax,
            tip=candidate.tip,
            miscellaneous=candidate.miscellaneous,
            total=candidate.total,
        ),
        confidence=candidate.confidence,
    )
    currency, currency_source = resolve_currency(
        text,
        model_currency=candidate.currency,
        default_currency=locale_currency,
        fallback_currency=fallback_currency,
    )
    amounts = outcome.amounts
    return ReceiptRecord(
        merchant=candidate.merchant,
        date=normalize_date(candidate.date),
        subtotal=amounts.subtotal,
        tax=amounts.tax,
        tip=amounts.tip,
        miscellaneous=amounts.miscellaneous,
        total=amounts.total,
        currency=currency,
        items=candidate.items,
        payment_method=candidate.payment_method or "unknown",
        invoice_number=candidate.invoice_number,
        bill_number=candidate.bill_number,
        serial_number=candidate.serial_number,
        confidence=outcome.confidence,
        method=ExtractionMethod.AI_EXTRACTION,
        reconciliation=outcome.status,
        currency_source=currency_source,
        original_text=text,
    )


def overall_confidence(ocr: OCRResult, record: ReceiptRecord) -> float:
    # OCR confidence only counts when the model agreed with a consistent record.
    if (
        record.method is ExtractionMethod.AI_EXTRACTION
        and record.reconciliation is not Reconciliation.MISMATCH
        and record.confidence > BASIC_EXTRACTION_CONFIDENCE
    ):
        return max(ocr.confidence, record.confidence)
    return record.confidence


def _is_degraded(record: ReceiptRecord, ocr: OCRResult) -> bool:
    return (
        record.method is ExtractionMethod.BASIC_EXTRACTION
        or not ocr.success
        or ocr.is_placeholder
        or record.reconciliation is Reconciliation.MISMATCH
        or record.confidence <= BASIC_EXTRACTION_CONFIDENCE
    )


class ReceiptPipeline:
    """
    Document bytes in, ReceiptExtractionResult out.

    Backend clients and flags come from the injected Settings. The only shared
    mutable state is the statistics counters, which are lock-guarded, so one
    instance may serve concurrent invocations.
    """

    def __init__(self, settings: Settings, *, http_client: httpx.Client | None = None) -> None:
        self._settings = settings
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(follow_redirects=True)
        self._ocr = OCREngine(settings, client=self._client)
        self._lock = threading.Lock()
        self._stats = PipelineStats()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def process_document(
        self,
        body: bytes,
        mime_type: str,
        *,
        locale_currency: str | None = None,
        filename: str | None = None,
    ) -> ReceiptExtractionResult:
        document = RawDocument(body=body, mime_type=mime_type, filename=filename)
        path = route(document)

        token = set_document_context(uuid.uuid4().hex)
        start = time.monotonic()
        try:
            log_event(
                logger,
                "extraction.route",
                path=path.value,
                mime_type=mime_type,
                byte_size=len(body),
            )
            try:
                result = self._run(document, path, locale_currency=locale_currency)
            except Exception as e:
                log_exception(logger, "extraction.unhandled", error_class=type(e).__name__)
                result = self._unexpected_failure(e, locale_currency=locale_currency)
            self._record(result)
            log_event(
                logger,
                "extraction.done",
                success=result.success,
                error_type=result.error_type.value if result.error_type else None,
                ocr_method=result.ocr.method.value,
                extraction_method=result.extraction.method.value if result.extraction else None,
                overall_confidence=result.overall_confidence,
                duration_ms=monotonic_ms(start),
            )
            return result
        finally:
            reset_document_context(token)

    def extract_text(self, document: RawDocument, path: DocumentPath) -> OCRResult:
        if path is DocumentPath.PDF:
            return extract_pdf_text(
                document.body,
                image_ocr=self._ocr.extract_text,
                dpi=int(self._settings.pdf_raster_dpi or 300),
                temp_root=self._settings.raster_temp_dir,
            )
        return self._ocr.extract_text(document.body)

    def _run(
        self, document: RawDocument, path: DocumentPath, *, locale_currency: str | None
    ) -> ReceiptExtractionResult:
        ocr = self.extract_text(document, path)
        if ocr.error_type is ErrorType.SERVICE_FAILURE:
            return ReceiptExtractionResult(
                success=False,
                error_type=ErrorType.SERVICE_FAILURE,
                error=ocr.error or SERVICE_UNAVAILABLE_MESSAGE,
                ocr=ocr,
            )

        text = ocr.text if ocr.success else ""
        if ocr.is_placeholder or len(text.strip()) < MIN_TEXT_CHARS:
            return self._fallback(ocr, text, locale_currency=locale_currency, reason="insufficient_text")
        if not receipt_ai_available(self._settings):
            return self._fallback(ocr, text, locale_currency=locale_currency, reason="model_unavailable")

        try:
            candidate = extract_receipt_candidate(
                text,
                settings=self._settings,
                client=self._client,
                locale_currency=locale_currency,
            )
        except ModelExtractionError as e:
            return self._fallback(
                ocr, text, locale_currency=locale_currency, reason=f"{e.error_type.value}: {e}"
            )

        record = build_record(
            candidate,
            text=text,
            locale_currency=locale_currency,
            fallback_currency=self._settings.default_currency,
        )
        return self._result(ocr, record)

    def _fallback(
        self, ocr: OCRResult, text: str, *, locale_currency: str | None, reason: str
    ) -> ReceiptExtractionResult:
        log_event(
            logger,
            "extraction.fallback",
            level=logging.WARNING,
            reason=reason[:300],
            ocr_method=ocr.method.value,
        )
        record = basic_extraction(
            text,
            default_currency=locale_currency,
            fallback_currency=self._settings.default_currency,
        )
        return self._result(ocr, record, fallback_reason=reason)

    def _result(
        self, ocr: OCRResult, record: ReceiptRecord, *, fallback_reason: str | None = None
    ) -> ReceiptExtractionResult:
        return ReceiptExtractionResult(
            success=True,
            error_type=ErrorType.DATA_QUALITY_FAILURE if _is_degraded(record, ocr) else None,
            ocr=ocr,
            extraction=record,
            overall_confidence=overall_confidence(ocr, record),
            fallback_reason=fallback_reason,
        )

    def _unexpected_failure(
        self, exc: BaseException, *, locale_currency: str | None
    ) -> ReceiptExtractionResult:
        if is_service_failure(exc):
            ocr = OCRResult(
                success=False,
                method=OCRMethod.FALLBACK,
                error_type=ErrorType.SERVICE_FAILURE,
                error=SERVICE_UNAVAILABLE_MESSAGE,
            )
            return ReceiptExtractionResult(
                success=False,
                error_type=ErrorType.SERVICE_FAILURE,
                error=SERVICE_UNAVAILABLE_MESSAGE,
                ocr=ocr,
            )
        ocr = OCRResult(success=False, method=OCRMethod.FALLBACK, error=f"Processing failed: {type(exc).__name__}")
        return self._fallback(ocr, "", locale_currency=locale_currency, reason="unexpected_error")

    def _record(self, result: ReceiptExtractionResult) -> None:
        with self._lock:
            self._stats.documents += 1
            if result.error_type is ErrorType.SERVICE_FAILURE:
                self._stats.service_failures += 1
                return
            self._stats.confidence_total += result.overall_confidence
            if result.extraction and result.extraction.method is ExtractionMethod.AI_EXTRACTION:
                self._stats.model_extractions += 1
            else:
                self._stats.fallbacks += 1

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return self._stats.as_dict()

    def service_status(self) -> dict[str, Any]:
        return {
            "cloud_ocr": self._ocr.vision_configured(),
            "local_ocr": True,
            "model": receipt_ai_available(self._settings),
            "model_name": self._settings.openai_model if receipt_ai_available(self._settings) else None,
            "default_currency": self._settings.default_currency,
        }


@lru_cache(maxsize=1)
def get_pipeline() -> ReceiptPipeline:
    return ReceiptPipeline(default_settings)
