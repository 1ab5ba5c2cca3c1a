from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from io import BytesIO
from pathlib import Path
from tempfile import TemporaryDirectory

import fitz
from pypdf import PdfReader

from textexpense.core.logging import get_logger, log_event, monotonic_ms
from textexpense.modules.extraction.ocr import MIN_TEXT_CHARS, detect_languages
from textexpense.modules.extraction.schemas import OCRMethod, OCRResult

logger = get_logger(__name__)

PDF_TEXT_CONFIDENCE = 0.8
_POINTS_PER_INCH = 72


def _clean(text: str) -> str:
    return text.replace("\u202f", " ").replace("\xa0", " ")


def read_text_layer(body: bytes) -> tuple[str, int]:
    reader = PdfReader(BytesIO(body))
    pages = [_clean(page.extract_text() or "") for page in reader.pages]
    return "\n".join(pages).strip(), len(pages)


def render_first_page(body: bytes, *, dpi: int) -> bytes:
    zoom = dpi / _POINTS_PER_INCH
    with fitz.open(stream=body, filetype="pdf") as doc:
        if doc.page_count < 1:
            raise ValueError("PDF has no pages")
        pix = doc[0].get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
        return pix.tobytes("png")


def rasterize_and_ocr(
    body: bytes,
    *,
    image_ocr: Callable[[bytes], OCRResult],
    dpi: int,
    temp_root: Path | None = None,
) -> OCRResult:
    """Render page 1 to a per-invocation temp PNG and OCR it; the temp dir is removed on every path."""
    start = time.monotonic()
    with TemporaryDirectory(prefix="receipt-raster-", dir=temp_root) as tmpdir:
        image_path = Path(tmpdir) / f"page-1-{uuid.uuid4().hex}.png"
        image_path.write_bytes(render_first_page(body, dpi=dpi))
        log_event(
            logger,
            "pdf.rasterize.success",
            dpi=dpi,
            byte_size=image_path.stat().st_size,
            duration_ms=monotonic_ms(start),
        )
        result = image_ocr(image_path.read_bytes())

    metadata = dict(result.metadata)
    metadata.update(
        {
            "original_format": "pdf",
            "converted_to_image": True,
            "raster_dpi": dpi,
            "source_method": result.method.value,
            "pdf_note": "PDF converted to image for OCR processing",
        }
    )
    return result.model_copy(update={"method": OCRMethod.PDF_TO_IMAGE_OCR, "metadata": metadata})


def extract_pdf_text(
    body: bytes,
    *,
    image_ocr: Callable[[bytes], OCRResult],
    dpi: int = 300,
    temp_root: Path | None = None,
) -> OCRResult:
    start = time.monotonic()
    try:
        text, page_count = read_text_layer(body)
    except Exception as e:
        log_event(
            logger,
            "pdf.text_layer.failure",
            level=logging.WARNING,
            error_class=type(e).__name__,
            error=str(e)[:300],
        )
        return OCRResult(
            success=False,
            method=OCRMethod.PDF_TEXT_EXTRACTION,
            error=f"PDF processing failed: {type(e).__name__}",
        )

    if len(text) >= MIN_TEXT_CHARS:
        log_event(
            logger,
            "pdf.text_layer.success",
            pages=page_count,
            text_length=len(text),
            duration_ms=monotonic_ms(start),
        )
        return OCRResult(
            success=True,
            text=text,
            confidence=PDF_TEXT_CONFIDENCE,
            method=OCRMethod.PDF_TEXT_EXTRACTION,
            word_count=len(text.split()),
            detected_languages=detect_languages(text),
            needs_ai_processing=True,
            metadata={"pages": page_count, "text_length": len(text)},
        )

    log_event(logger, "pdf.text_layer.empty", pages=page_count, text_length=len(text))
    try:
        return rasterize_and_ocr(body, image_ocr=image_ocr, dpi=dpi, temp_root=temp_root)
    except Exception as e:
        log_event(
            logger,
            "pdf.rasterize.failure",
            level=logging.WARNING,
            error_class=type(e).__name__,
            error=str(e)[:300],
        )
        return OCRResult(
            success=False,
            method=OCRMethod.PDF_TO_IMAGE_OCR,
            error="PDF to image conversion failed",
            metadata={"pages": page_count},
        )
