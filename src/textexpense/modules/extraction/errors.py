from __future__ import annotations

import enum

import httpx


class ErrorType(str, enum.Enum):
    SERVICE_FAILURE = "service_failure"
    DATA_QUALITY_FAILURE = "data_quality_failure"


class FailureAction(str, enum.Enum):
    NEXT = "next"
    ABORT = "abort"


class UnsupportedDocumentType(ValueError):
    pass


class BackendResponseError(RuntimeError):
    """A backend answered, but with an error payload instead of a result."""

    def __init__(self, message: str, *, code: str | int | None = None) -> None:
        super().__init__(message)
        self.code = code


_SERVICE_ERROR_MARKERS: tuple[str, ...] = (
    "billing",
    "quota exceeded",
    "quota",
    "insufficient_quota",
    "rate limit",
    "rate_limit",
    "api key",
    "unauthorized",
    "authentication",
    "permission denied",
    "permission_denied",
    "unauthenticated",
    "resource_exhausted",
    "deadline_exceeded",
    "network",
    "timeout",
    "timed out",
    "enotfound",
    "econnreset",
    "econnrefused",
    "connection refused",
    "service unavailable",
    "502",
    "503",
    "504",
    "bad gateway",
    "internal server error",
    "server_error",
    "service_unavailable",
)

_SERVICE_STATUS_CODES: frozenset[int] = frozenset({401, 403, 429})


def is_service_failure(exc: BaseException) -> bool:
    """True for infrastructure failures (auth, quota, network, 5xx), False for content problems."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in _SERVICE_STATUS_CODES or status >= 500:
            return True

    message = str(exc).lower()
    code = str(getattr(exc, "code", None) or getattr(exc, "type", None) or "").lower()
    return any(marker in message or marker in code for marker in _SERVICE_ERROR_MARKERS)


class ModelExtractionError(RuntimeError):
    """The model stage produced no usable candidate."""

    def __init__(self, message: str, *, error_type: ErrorType) -> None:
        super().__init__(message)
        self.error_type = error_type
