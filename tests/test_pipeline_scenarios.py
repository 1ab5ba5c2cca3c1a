from __future__ import annotations

import json

import httpx
import pytest

from textexpense.modules.extraction.errors import ErrorType, UnsupportedDocumentType
from textexpense.modules.extraction.schemas import (
    ExtractionMethod,
    OCRMethod,
    OCRResult,
    Reconciliation,
)


def _completion(payload: dict) -> httpx.Response:
    content = json.dumps(payload)
    return httpx.Response(
        200,
        json={"choices": [{"index": 0, "message": {"role": "assistant", "content": content}}]},
    )


def _ocr(text: str, *, confidence: float = 0.9, method: OCRMethod = OCRMethod.GOOGLE_VISION_AI) -> OCRResult:
    return OCRResult(success=True, text=text, confidence=confidence, method=method, needs_ai_processing=True)


@pytest.fixture
def make_pipeline(make_settings, mock_client, monkeypatch):
    from textexpense.modules.extraction.service import ReceiptPipeline

    def _make(*, ocr_result=None, handler=None, **overrides):
        settings_values = {"receipt_ai_enabled": True, "openai_api_key": "sk-test"}
        settings_values.update(overrides)
        if handler is None:

            def handler(_request):
                raise AssertionError("no backend call expected")

        pipeline = ReceiptPipeline(make_settings(**settings_values), http_client=mock_client(handler))
        if ocr_result is not None:
            monkeypatch.setattr(pipeline._ocr, "extract_text", lambda _image: ocr_result)
        return pipeline

    return _make


def test_us_receipt_with_tip_below_the_total(make_pipeline):
    text = "STARBUCKS COFFEE #1234\nSubtotal $11.50\nTax $0.95\nTip $2.00\nTotal $12.45"
    model = {
        "merchant": "Starbucks Coffee #1234",
        "date": "Oct-19",
        "subtotal": 11.50,
        "tax": 0.95,
        "tip": 2.00,
        "miscellaneous": 0,
        "totalAmount": 12.45,
        "currency": "USD",
        "confidence": 0.95,
    }
    pipeline = make_pipeline(ocr_result=_ocr(text), handler=lambda _r: _completion(model))

    result = pipeline.process_document(b"jpeg-bytes", "image/jpeg")
    record = result.extraction
    assert result.success
    assert result.error_type is None
    assert record.merchant.startswith("Starbucks")
    assert (record.subtotal, record.tax, record.tip, record.total) == (11.50, 0.95, 2.00, 12.45)
    assert record.currency == "USD"
    assert record.date == "Oct 19"
    assert record.reconciliation is Reconciliation.TIP_EXCLUDED
    assert record.method is ExtractionMethod.AI_EXTRACTION
    assert record.original_text == text
    assert result.overall_confidence == 0.95


def test_indian_gst_receipt_sums_taxes_and_resolves_inr(make_pipeline):
    text = (
        "HOTEL SARAVANA BHAVAN\n"
        "Meals 399.00\n"
        "CGST 9% 35.91\n"
        "SGST 9% 35.91\n"
        "Total Amount 470.82"
    )
    model = {
        "merchant": "Hotel Saravana Bhavan",
        "date": None,
        "subtotal": None,
        "tax": 71.82,
        "tip": 0,
        "miscellaneous": 0,
        "totalAmount": 470.82,
        "currency": None,
        "confidence": 0.9,
    }
    pipeline = make_pipeline(ocr_result=_ocr(text, confidence=0.85), handler=lambda _r: _completion(model))

    result = pipeline.process_document(b"png-bytes", "image/png", locale_currency="USD")
    record = result.extraction
    assert record.tax == 71.82
    assert record.total == 470.82
    assert record.subtotal == pytest.approx(399.0)
    assert record.reconciliation is Reconciliation.DERIVED_SUBTOTAL
    assert record.currency == "INR"
    assert record.currency_source == "tax_identifier"


def test_garbled_text_falls_back_without_model_call(make_pipeline):
    pipeline = make_pipeline(ocr_result=_ocr("#@!x", confidence=0.2, method=OCRMethod.TESSERACT))

    result = pipeline.process_document(b"png-bytes", "image/png")
    assert result.success
    assert result.error_type is ErrorType.DATA_QUALITY_FAILURE
    assert result.extraction.method is ExtractionMethod.BASIC_EXTRACTION
    assert result.extraction.confidence == 0.3
    assert result.overall_confidence == 0.3
    assert result.fallback_reason == "insufficient_text"


def test_stub_ocr_text_is_never_sent_to_the_model(make_pipeline):
    from textexpense.modules.extraction.ocr import STUB_TEXT

    stub = OCRResult(
        success=True, text=STUB_TEXT, confidence=0.3, method=OCRMethod.FALLBACK, is_placeholder=True
    )
    result = make_pipeline(ocr_result=stub).process_document(b"png", "image/png")
    assert result.extraction.method is ExtractionMethod.BASIC_EXTRACTION
    assert result.extraction.merchant is None
    assert result.extraction.total is None


def test_unreadable_scanned_pdf_falls_back_without_model_call(make_pipeline, monkeypatch):
    from io import BytesIO

    from PIL import Image

    from textexpense.modules.extraction import ocr as ocr_module
    from textexpense.modules.extraction import pdf as pdf_module

    class _BlankReader:
        def __init__(self, _stream) -> None:
            self.pages = []

    def _render(_body, *, dpi):
        buf = BytesIO()
        Image.new("RGB", (40, 20), "white").save(buf, format="PNG")
        return buf.getvalue()

    monkeypatch.setattr(pdf_module, "PdfReader", _BlankReader)
    monkeypatch.setattr(pdf_module, "render_first_page", _render)
    monkeypatch.setattr(
        ocr_module.pytesseract, "image_to_data", lambda *_a, **_k: {"text": ["", "x"], "conf": ["-1", "10"]}
    )

    model_calls: list[httpx.Request] = []

    def handler(request):
        model_calls.append(request)
        return _completion({"merchant": "Hallucinated Cafe", "totalAmount": 42, "confidence": 0.9})

    result = make_pipeline(handler=handler).process_document(b"%PDF-1.4 scan", "application/pdf")
    assert model_calls == []
    assert result.success
    assert result.ocr.method is OCRMethod.PDF_TO_IMAGE_OCR
    assert result.ocr.is_placeholder
    assert result.ocr.metadata["source_method"] == "fallback"
    assert result.error_type is ErrorType.DATA_QUALITY_FAILURE
    assert result.fallback_reason == "insufficient_text"
    assert result.extraction.method is ExtractionMethod.BASIC_EXTRACTION
    assert result.extraction.merchant is None
    assert result.overall_confidence == 0.3


def test_malformed_model_output_degrades_to_basic_extraction(make_pipeline):
    text = "Corner Shop\nDate: 05/04/2023\nTotal $8.00"

    def handler(_request):
        return httpx.Response(
            200, json={"choices": [{"message": {"role": "assistant", "content": "cannot help"}}]}
        )

    result = make_pipeline(ocr_result=_ocr(text), handler=handler).process_document(b"png", "image/png")
    assert result.success
    assert result.error_type is ErrorType.DATA_QUALITY_FAILURE
    assert result.fallback_reason.startswith("data_quality_failure")
    record = result.extraction
    assert record.method is ExtractionMethod.BASIC_EXTRACTION
    assert record.merchant == "Corner Shop"
    assert record.total == 8.0
    assert record.date == "2023-04-05"


@pytest.mark.parametrize("confidence", [[0.9], {}, "high"])
def test_non_numeric_model_confidence_keeps_the_ocr_text(make_pipeline, confidence):
    text = "Corner Shop\nTotal $8.00"
    model = {"merchant": "Corner Shop", "totalAmount": 8.0, "confidence": confidence}
    pipeline = make_pipeline(ocr_result=_ocr(text), handler=lambda _r: _completion(model))

    result = pipeline.process_document(b"png", "image/png")
    assert result.success
    assert result.ocr.success
    assert result.fallback_reason.startswith("data_quality_failure")
    record = result.extraction
    assert record.method is ExtractionMethod.BASIC_EXTRACTION
    assert record.original_text == text
    assert record.total == 8.0
    assert record.merchant == "Corner Shop"


def test_model_outage_still_returns_a_record(make_pipeline):
    text = "Corner Shop\nTotal $8.00"
    pipeline = make_pipeline(ocr_result=_ocr(text), handler=lambda _r: httpx.Response(503))

    result = pipeline.process_document(b"png", "image/png")
    assert result.success
    assert result.extraction is not None
    assert result.fallback_reason.startswith("service_failure")


def test_disabled_model_uses_basic_extraction(make_pipeline):
    pipeline = make_pipeline(ocr_result=_ocr("Corner Shop\nTotal 8.00"), receipt_ai_enabled=False)

    result = pipeline.process_document(b"png", "image/png", locale_currency="AED")
    assert result.fallback_reason == "model_unavailable"
    assert result.extraction.currency == "AED"
    assert result.extraction.total == 8.0


def test_arithmetic_mismatch_nulls_subtotal_and_flags_quality(make_pipeline):
    model = {"merchant": "Shop", "subtotal": 100, "tax": 5, "tip": 0, "miscellaneous": 0, "totalAmount": 200, "confidence": 0.9}
    pipeline = make_pipeline(ocr_result=_ocr("Shop\nTotal 200.00 USD"), handler=lambda _r: _completion(model))

    result = pipeline.process_document(b"png", "image/png")
    record = result.extraction
    assert record.subtotal is None
    assert record.total == 200.0
    assert record.reconciliation is Reconciliation.MISMATCH
    assert record.confidence == 0.5
    assert result.overall_confidence == 0.5
    assert result.error_type is ErrorType.DATA_QUALITY_FAILURE


def test_model_currency_and_locale_hint_fill_in_when_text_is_silent(make_pipeline):
    model = {"merchant": "Cafe", "totalAmount": 30, "currency": "GBP", "confidence": 0.8}
    pipeline = make_pipeline(ocr_result=_ocr("Cafe\nTotal 30.00"), handler=lambda _r: _completion(model))
    assert pipeline.process_document(b"png", "image/png").extraction.currency == "GBP"

    model = {"merchant": "Cafe", "totalAmount": 30, "currency": None, "confidence": 0.8}
    pipeline = make_pipeline(ocr_result=_ocr("Cafe\nTotal 30.00"), handler=lambda _r: _completion(model))
    record = pipeline.process_document(b"png", "image/png", locale_currency="SGD").extraction
    assert (record.currency, record.currency_source) == ("SGD", "default")


def test_cloud_auth_failure_is_surfaced_as_service_failure(make_pipeline, monkeypatch):
    from textexpense.modules.extraction import ocr as ocr_module

    local_calls: list[object] = []
    monkeypatch.setattr(ocr_module.pytesseract, "image_to_data", lambda *a, **k: local_calls.append(a))

    pipeline = make_pipeline(
        handler=lambda _r: httpx.Response(401, json={"error": {"message": "unauthorized"}}),
        google_vision_enabled=True,
        google_vision_api_key="bad-key",
    )
    result = pipeline.process_document(b"png", "image/png")
    assert not result.success
    assert result.error_type is ErrorType.SERVICE_FAILURE
    assert result.extraction is None
    assert result.ocr.text == ""
    assert local_calls == []


def test_pdf_documents_use_the_pdf_path(make_pipeline, monkeypatch):
    from textexpense.modules.extraction import service as service_module

    calls: list[bytes] = []

    def _pdf(body, *, image_ocr, dpi, temp_root):
        calls.append(body)
        return OCRResult(success=True, text="Corner Shop\nTotal 8.00", confidence=0.8, method=OCRMethod.PDF_TEXT_EXTRACTION)

    monkeypatch.setattr(service_module, "extract_pdf_text", _pdf)
    result = make_pipeline(receipt_ai_enabled=False).process_document(b"%PDF", "application/pdf")
    assert calls == [b"%PDF"]
    assert result.ocr.method is OCRMethod.PDF_TEXT_EXTRACTION


def test_unsupported_type_is_rejected_before_processing(make_pipeline):
    pipeline = make_pipeline()
    with pytest.raises(UnsupportedDocumentType):
        pipeline.process_document(b"hello", "text/plain")
    assert pipeline.stats()["documents"] == 0


def test_unexpected_error_never_escapes(make_pipeline, monkeypatch):
    pipeline = make_pipeline()

    def _boom(_image):
        raise RuntimeError("boom")

    monkeypatch.setattr(pipeline._ocr, "extract_text", _boom)
    result = pipeline.process_document(b"png", "image/png")
    assert result.success
    assert result.error_type is ErrorType.DATA_QUALITY_FAILURE
    assert result.fallback_reason == "unexpected_error"

    def _offline(_image):
        raise httpx.ConnectError("network unreachable")

    monkeypatch.setattr(pipeline._ocr, "extract_text", _offline)
    result = pipeline.process_document(b"png", "image/png")
    assert not result.success
    assert result.error_type is ErrorType.SERVICE_FAILURE


def test_stats_and_service_status(make_pipeline):
    model = {"merchant": "Cafe", "subtotal": 10, "tax": 1, "totalAmount": 11, "confidence": 0.9}
    pipeline = make_pipeline(ocr_result=_ocr("Cafe\nTotal 11.00"), handler=lambda _r: _completion(model))
    pipeline.process_document(b"png", "image/png")

    stats = pipeline.stats()
    assert stats["documents"] == 1
    assert stats["model_extractions"] == 1
    assert stats["fallbacks"] == 0
    assert stats["mean_confidence"] == 0.9

    status = pipeline.service_status()
    assert status["model"] is True
    assert status["cloud_ocr"] is False
    assert status["default_currency"] == "INR"
