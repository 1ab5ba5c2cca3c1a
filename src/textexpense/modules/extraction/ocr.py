from __future__ import annotations

import base64
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from io import BytesIO
from typing import Any

import httpx
import pytesseract
from PIL import Image

from textexpense.core.config import Settings
from textexpense.core.logging import get_logger, log_event, monotonic_ms
from textexpense.modules.extraction.errors import (
    BackendResponseError,
    ErrorType,
    FailureAction,
    is_service_failure,
)
from textexpense.modules.extraction.schemas import OCRMethod, OCRResult

logger = get_logger(__name__)

MIN_TEXT_CHARS = 10

# The Vision API exposes no per-word confidence for text detection.
VISION_ADVANCED_CONFIDENCE = 0.9
VISION_WORD_CONFIDENCE = 0.85
STUB_CONFIDENCE = 0.3

STUB_TEXT = "[Text extraction limited: the image could not be read by the available OCR engines]"


@dataclass(frozen=True)
class OCRAttempt:
    method: OCRMethod
    run: Callable[[bytes], OCRResult]
    on_failure: Callable[[BaseException], FailureAction]


def continue_on_failure(_exc: BaseException) -> FailureAction:
    return FailureAction.NEXT


def abort_on_service_failure(exc: BaseException) -> FailureAction:
    return FailureAction.ABORT if is_service_failure(exc) else FailureAction.NEXT


def detect_languages(text: str) -> list[str]:
    if re.search(r"[a-zA-Z]", text) and re.search(r"\d", text):
        return ["en"]
    return ["unknown"]


def assess_ocr_quality(text: str) -> dict[str, Any]:
    """Heuristic 0-100 readability score for OCR output."""
    issues: list[str] = []
    if len(text) < 20:
        issues.append("Text too short")
        return {"score": 10, "rating": "Very Poor", "issues": issues}

    words = [w for w in text.split() if w]
    readable = [w for w in words if len(w) > 1 and re.fullmatch(r"[a-zA-Z0-9$.,%-]+", w)]
    ratio = len(readable) / max(len(words), 1)
    score = ratio * 40
    if ratio < 0.3:
        issues.append("Too many unreadable characters")

    has_total = bool(re.search(r"total|amount|sum|balance|invoice|bill", text, re.I))
    has_price = bool(
        re.search(r"\$\d+|₹\d+|rs\.?\s*\d+|\d+\.\d{2}|\d+,\d+\.\d{2}", text, re.I)
    )
    has_date = bool(
        re.search(
            r"\d{1,2}[/-]\d{1,2}[/-]\d{2,4}|\d{1,2}\s+(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)",
            text,
            re.I,
        )
    )
    has_invoice_number = bool(re.search(r"invoice\s*no|bill\s*no|receipt\s*no|ref\s*no", text, re.I))
    has_tax_info = bool(re.search(r"gst|cgst|sgst|igst|tax|vat", text, re.I))

    score += 15 * has_total + 20 * has_price + 15 * has_date
    score += 15 * has_invoice_number + 15 * has_tax_info
    if not (has_total or has_price or has_invoice_number):
        issues.append("No recognizable receipt patterns found")
    if re.search(r"[^a-zA-Z0-9\s$.,\-/()%@₹]{3,}", text):
        score -= 30
        issues.append("Contains garbled/corrupted text")

    score = max(0, min(100, round(score)))
    if score >= 80:
        rating = "Excellent"
    elif score >= 60:
        rating = "Good"
    elif score >= 40:
        rating = "Fair"
    elif score >= 20:
        rating = "Poor"
    else:
        rating = "Very Poor"
    return {
        "score": score,
        "rating": rating,
        "issues": issues,
        "readability_ratio": round(ratio, 3),
        "has_receipt_patterns": has_total or has_price or has_date,
    }


_LINE_KEYS = ("page_num", "block_num", "par_num", "line_num")


def _text_from_data(data: dict[str, Any]) -> str:
    """Rebuild line-broken text from pytesseract's per-word output."""
    words = data.get("text") or []
    lines: dict[tuple[int, ...], list[str]] = {}
    for i, raw in enumerate(words):
        word = str(raw or "").strip()
        if not word:
            continue
        key = tuple(_at(data.get(k), i) for k in _LINE_KEYS)
        lines.setdefault(key, []).append(word)
    return "\n".join(" ".join(line) for line in lines.values())


def _at(column: Any, i: int) -> int:
    try:
        return int(column[i])
    except (TypeError, ValueError, IndexError):
        return 0


class OCREngine:
    """Ordered OCR cascade: Vision (document mode), Vision (text mode), Tesseract, stub."""

    def __init__(self, settings: Settings, *, client: httpx.Client) -> None:
        self._settings = settings
        self._client = client
        if settings.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = settings.tesseract_cmd

    def vision_configured(self) -> bool:
        return bool(self._settings.google_vision_enabled and self._settings.google_vision_api_key)

    def attempts(self) -> list[OCRAttempt]:
        chain: list[OCRAttempt] = []
        if self.vision_configured():
            chain.append(
                OCRAttempt(OCRMethod.GOOGLE_VISION_AI, self._vision_advanced, continue_on_failure)
            )
            chain.append(
                OCRAttempt(OCRMethod.GOOGLE_VISION, self._vision_basic, abort_on_service_failure)
            )
        chain.append(OCRAttempt(OCRMethod.TESSERACT, self._tesseract, continue_on_failure))
        chain.append(OCRAttempt(OCRMethod.FALLBACK, self._stub, continue_on_failure))
        return chain

    def extract_text(self, image: bytes) -> OCRResult:
        for attempt in self.attempts():
            start = time.monotonic()
            try:
                result = attempt.run(image)
            except Exception as e:
                action = attempt.on_failure(e)
                log_event(
                    logger,
                    "ocr.attempt.failure",
                    level=logging.WARNING,
                    method=attempt.method.value,
                    action=action.value,
                    error_class=type(e).__name__,
                    error=str(e)[:300],
                    service_failure=is_service_failure(e),
                    duration_ms=monotonic_ms(start),
                )
                if action is FailureAction.ABORT:
                    log_event(
                        logger,
                        "ocr.cascade.abort",
                        level=logging.ERROR,
                        method=attempt.method.value,
                    )
                    return OCRResult(
                        success=False,
                        method=attempt.method,
                        error_type=ErrorType.SERVICE_FAILURE,
                        error="Service temporarily unavailable",
                    )
                continue

            if result.success:
                result.metadata.setdefault("quality", assess_ocr_quality(result.text))
                log_event(
                    logger,
                    "ocr.attempt.success",
                    method=attempt.method.value,
                    confidence=result.confidence,
                    word_count=result.word_count,
                    duration_ms=monotonic_ms(start),
                )
                return result
            log_event(
                logger,
                "ocr.attempt.empty",
                method=attempt.method.value,
                error=result.error,
                duration_ms=monotonic_ms(start),
            )

        return OCRResult(
            success=False,
            method=OCRMethod.FALLBACK,
            error_type=ErrorType.DATA_QUALITY_FAILURE,
            error="No OCR backend produced text",
        )

    def _vision_annotate(self, image: bytes, *, feature: str) -> dict[str, Any]:
        url = self._settings.google_vision_base_url.rstrip("/") + "/images:annotate"
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": str(self._settings.google_vision_api_key),
        }
        if self._settings.google_vision_project_id:
            headers["x-goog-user-project"] = self._settings.google_vision_project_id
        payload = {
            "requests": [
                {
                    "image": {"content": base64.b64encode(image).decode("ascii")},
                    "features": [{"type": feature}],
                }
            ]
        }
        resp = self._client.post(
            url,
            headers=headers,
            json=payload,
            timeout=float(self._settings.ocr_timeout_seconds or 20.0),
        )
        resp.raise_for_status()
        responses = resp.json().get("responses") or [{}]
        first = responses[0] if isinstance(responses[0], dict) else {}
        error = first.get("error")
        if isinstance(error, dict):
            raise BackendResponseError(
                str(error.get("message") or "Vision annotate request failed"),
                code=error.get("status") or error.get("code"),
            )
        return first

    def _vision_advanced(self, image: bytes) -> OCRResult:
        response = self._vision_annotate(image, feature="DOCUMENT_TEXT_DETECTION")
        annotations = response.get("textAnnotations") or []
        full = response.get("fullTextAnnotation") or {}
        text = str(full.get("text") or (annotations[0].get("description") if annotations else "") or "")
        if not text.strip():
            return OCRResult(
                success=False,
                method=OCRMethod.GOOGLE_VISION_AI,
                error="No text detected in receipt",
            )
        return OCRResult(
            success=True,
            text=text,
            confidence=VISION_ADVANCED_CONFIDENCE,
            method=OCRMethod.GOOGLE_VISION_AI,
            word_count=max(len(annotations) - 1, 0),
            detected_languages=detect_languages(text),
            needs_ai_processing=True,
            metadata={"total_detections": len(annotations), "image_bytes": len(image)},
        )

    def _vision_basic(self, image: bytes) -> OCRResult:
        response = self._vision_annotate(image, feature="TEXT_DETECTION")
        annotations = response.get("textAnnotations") or []
        text = str(annotations[0].get("description") or "") if annotations else ""
        if not text.strip():
            return OCRResult(
                success=False,
                method=OCRMethod.GOOGLE_VISION,
                error="No text detected in image",
            )
        word_scores = [
            VISION_WORD_CONFIDENCE
            for ann in annotations[1:]
            if (ann.get("boundingPoly") or {}).get("vertices")
        ]
        confidence = sum(word_scores) / len(word_scores) if word_scores else 0.0
        return OCRResult(
            success=True,
            text=text,
            confidence=confidence,
            method=OCRMethod.GOOGLE_VISION,
            word_count=len(word_scores),
            detected_languages=detect_languages(text),
            needs_ai_processing=True,
            metadata={"total_detections": len(annotations), "image_bytes": len(image)},
        )

    def _tesseract(self, image: bytes) -> OCRResult:
        lang = self._settings.tesseract_lang or "eng"
        img = Image.open(BytesIO(image))
        if img.mode not in {"RGB", "L"}:
            img = img.convert("RGB")
        data = pytesseract.image_to_data(img, lang=lang, output_type=pytesseract.Output.DICT)
        text = _text_from_data(data)
        word_confs: list[float] = []
        for raw in data.get("conf", []):
            try:
                conf = float(raw)
            except (TypeError, ValueError):
                continue
            if conf >= 0:
                word_confs.append(conf)
        engine_confidence = sum(word_confs) / len(word_confs) if word_confs else 0.0

        if len(text.strip()) < MIN_TEXT_CHARS:
            return OCRResult(
                success=False,
                method=OCRMethod.TESSERACT,
                error="Local OCR returned too little text",
            )
        return OCRResult(
            success=True,
            text=text,
            confidence=min(engine_confidence / 100, 1.0),
            method=OCRMethod.TESSERACT,
            word_count=len(text.split()),
            detected_languages=detect_languages(text),
            needs_ai_processing=True,
            metadata={
                "note": "Tesseract OCR used",
                "engine_confidence": round(engine_confidence, 2),
                "image_bytes": len(image),
            },
        )

    def _stub(self, image: bytes) -> OCRResult:
        return OCRResult(
            success=True,
            text=STUB_TEXT,
            confidence=STUB_CONFIDENCE,
            method=OCRMethod.FALLBACK,
            word_count=len(STUB_TEXT.split()),
            detected_languages=["unknown"],
            is_placeholder=True,
            metadata={
                "note": "Fallback OCR used - local OCR returned no usable text",
                "suggestion": "Enable cloud OCR for better results",
                "image_bytes": len(image),
            },
        )
