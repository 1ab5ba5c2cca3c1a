from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from textexpense.core.config import settings
from textexpense.core.currencies import normalize_currency
from textexpense.core.logging import get_logger, log_event
from textexpense.modules.extraction.errors import ErrorType, UnsupportedDocumentType
from textexpense.modules.extraction.schemas import ReceiptExtractionResult
from textexpense.modules.extraction.service import ReceiptPipeline, get_pipeline

router = APIRouter(tags=["receipts"])
logger = get_logger(__name__)


@router.post("/receipts/extract", response_model=ReceiptExtractionResult)
async def extract_receipt(
    file: UploadFile = File(...),
    currency: str | None = Form(default=None),
    pipeline: ReceiptPipeline = Depends(get_pipeline),
) -> Any:
    body = await file.read()
    content_type = file.content_type or ""
    log_event(
        logger,
        "upload.received",
        filename=file.filename or "upload.bin",
        content_type=content_type,
        byte_size=len(body),
    )
    if not body:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty upload")
    max_bytes = int(settings.max_upload_mb) * 1024 * 1024
    if len(body) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Upload exceeds {settings.max_upload_mb} MB",
        )

    locale_currency = normalize_currency(currency) if currency else None
    try:
        result = await run_in_threadpool(
            pipeline.process_document,
            body,
            content_type,
            locale_currency=locale_currency,
            filename=file.filename,
        )
    except UnsupportedDocumentType as e:
        raise HTTPException(status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, detail=str(e)) from e

    if result.error_type is ErrorType.SERVICE_FAILURE:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=result.model_dump(mode="json"),
        )
    return result


@router.get("/receipts/status")
def receipt_service_status(pipeline: ReceiptPipeline = Depends(get_pipeline)) -> dict[str, Any]:
    return {"services": pipeline.service_status(), "stats": pipeline.stats()}
