from __future__ import annotations

from textexpense.modules.extraction.errors import UnsupportedDocumentType
from textexpense.modules.extraction.schemas import DocumentPath, RawDocument


def _base_mime(mime_type: str | None) -> str:
    return (mime_type or "").split(";", 1)[0].strip().lower()


def route(document: RawDocument) -> DocumentPath:
    """Pick the image or PDF path from the declared MIME type alone; content is never sniffed."""
    mime = _base_mime(document.mime_type)
    if mime == "application/pdf":
        return DocumentPath.PDF
    if mime.startswith("image/"):
        return DocumentPath.IMAGE
    raise UnsupportedDocumentType(f"Unsupported document type: {mime or 'unknown'}")
