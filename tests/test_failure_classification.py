from __future__ import annotations

import httpx
import pytest

from textexpense.modules.extraction.errors import BackendResponseError, is_service_failure


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://example.test/v1/endpoint")
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError(f"status {code}", request=request, response=response)


@pytest.mark.parametrize("code", [401, 403, 429, 500, 502, 503, 504])
def test_infrastructure_status_codes_are_service_failures(code):
    assert is_service_failure(_status_error(code))


@pytest.mark.parametrize("code", [400, 404, 422])
def test_client_status_codes_are_not_service_failures(code):
    assert not is_service_failure(_status_error(code))


def test_transport_errors_are_service_failures():
    assert is_service_failure(httpx.ConnectTimeout("slow"))
    assert is_service_failure(httpx.ConnectError("refused"))


@pytest.mark.parametrize(
    "message",
    ["Rate limit reached", "You exceeded your current quota", "Invalid API key", "getaddrinfo ENOTFOUND"],
)
def test_vocabulary_in_message_is_a_service_failure(message):
    assert is_service_failure(RuntimeError(message))


def test_error_code_attribute_is_inspected():
    assert is_service_failure(BackendResponseError("denied", code="PERMISSION_DENIED"))
    assert not is_service_failure(BackendResponseError("Bad image data", code="INVALID_ARGUMENT"))


def test_content_problems_are_not_service_failures():
    assert not is_service_failure(ValueError("could not parse receipt"))
