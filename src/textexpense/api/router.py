from __future__ import annotations

from fastapi import APIRouter

from textexpense.modules.extraction.api import router as extraction_router

router = APIRouter()

router.include_router(extraction_router, prefix="/api")


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}
