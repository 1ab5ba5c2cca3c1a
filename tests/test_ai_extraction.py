from __future__ import annotations

import json

import httpx
import pytest

_RECEIPT = {
    "merchant": "Starbucks Coffee",
    "date": "Oct-19",
    "subtotal": 11.5,
    "tax": 0.95,
    "tip": 2.0,
    "miscellaneous": 0,
    "totalAmount": 12.45,
    "currency": "USD",
    "invoiceNumber": None,
    "billNumber": "A-1002",
    "serialNumber": None,
    "paymentMethod": "Card",
    "items": [{"name": "Latte", "price": 5.75}, {"name": "Muffin", "price": "5.75"}],
    "confidence": 0.92,
}


def _completion(content: str) -> httpx.Response:
    return httpx.Response(
        200,
        json={"choices": [{"index": 0, "message": {"role": "assistant", "content": content}}]},
    )


def _extract(settings, client, text="STARBUCKS\nTotal $12.45", **kwargs):
    from textexpense.modules.extraction.ai import extract_receipt_candidate

    return extract_receipt_candidate(text, settings=settings, client=client, **kwargs)


@pytest.fixture
def ai_settings(make_settings):
    return make_settings(receipt_ai_enabled=True, openai_api_key="sk-test")


def test_plain_json_response_becomes_candidate(ai_settings, mock_client):
    requests: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        assert request.headers["authorization"] == "Bearer sk-test"
        assert request.url.path.endswith("/chat/completions")
        return _completion(json.dumps(_RECEIPT))

    candidate = _extract(ai_settings, mock_client(handler))
    assert candidate.merchant == "Starbucks Coffee"
    assert candidate.total == 12.45
    assert candidate.bill_number == "A-1002"
    assert candidate.payment_method == "card"
    assert [item.price for item in candidate.items] == [5.75, 5.75]
    assert candidate.confidence == 0.92

    payload = requests[0]
    assert payload["model"] == "gpt-4o-mini"
    assert payload["max_tokens"] == 1000
    assert payload["temperature"] == 0.1
    assert payload["response_format"] == {"type": "json_object"}


def test_fenced_response_is_parsed(ai_settings, mock_client):
    content = "```json\n" + json.dumps(_RECEIPT) + "\n```"
    candidate = _extract(ai_settings, mock_client(lambda _r: _completion(content)))
    assert candidate.total == 12.45


def test_response_with_prose_is_parsed(ai_settings, mock_client):
    content = "Here is the extracted data:\n" + json.dumps(_RECEIPT) + "\nLet me know if you need more."
    candidate = _extract(ai_settings, mock_client(lambda _r: _completion(content)))
    assert candidate.merchant == "Starbucks Coffee"


def test_malformed_response_is_a_data_quality_failure(ai_settings, mock_client):
    from textexpense.modules.extraction.errors import ErrorType, ModelExtractionError

    client = mock_client(lambda _r: _completion("Sorry, I cannot read this receipt."))
    with pytest.raises(ModelExtractionError) as exc_info:
        _extract(ai_settings, client)
    assert exc_info.value.error_type is ErrorType.DATA_QUALITY_FAILURE


def test_schema_violation_is_a_data_quality_failure(ai_settings, mock_client):
    from textexpense.modules.extraction.errors import ErrorType, ModelExtractionError

    bad = dict(_RECEIPT, items="Latte 5.75", confidence="high")
    client = mock_client(lambda _r: _completion(json.dumps(bad)))
    with pytest.raises(ModelExtractionError) as exc_info:
        _extract(ai_settings, client)
    assert exc_info.value.error_type is ErrorType.DATA_QUALITY_FAILURE


@pytest.mark.parametrize("confidence", [[0.9], {}, {"value": 0.9}])
def test_non_scalar_confidence_is_a_data_quality_failure(ai_settings, mock_client, confidence):
    from textexpense.modules.extraction.errors import ErrorType, ModelExtractionError

    bad = dict(_RECEIPT, confidence=confidence)
    client = mock_client(lambda _r: _completion(json.dumps(bad)))
    with pytest.raises(ModelExtractionError) as exc_info:
        _extract(ai_settings, client)
    assert exc_info.value.error_type is ErrorType.DATA_QUALITY_FAILURE


def test_unknown_values_and_negative_amounts_become_null(ai_settings, mock_client):
    odd = dict(_RECEIPT, merchant="unknown", tax=-3, currency="XYZ", confidence=None)
    candidate = _extract(ai_settings, mock_client(lambda _r: _completion(json.dumps(odd))))
    assert candidate.merchant is None
    assert candidate.tax is None
    assert candidate.currency is None
    assert candidate.confidence == 0.7


def test_json_mode_rejection_retries_without_response_format(ai_settings, mock_client):
    requests: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        requests.append(payload)
        if "response_format" in payload:
            return httpx.Response(400, json={"error": {"message": "response_format not supported"}})
        return _completion(json.dumps(_RECEIPT))

    candidate = _extract(ai_settings, mock_client(handler))
    assert candidate.total == 12.45
    assert len(requests) == 2
    assert "response_format" not in requests[1]


@pytest.mark.parametrize("status_code", [401, 429, 503])
def test_backend_errors_are_service_failures(ai_settings, mock_client, status_code):
    from textexpense.modules.extraction.errors import ErrorType, ModelExtractionError

    client = mock_client(lambda _r: httpx.Response(status_code, json={"error": {"message": "nope"}}))
    with pytest.raises(ModelExtractionError) as exc_info:
        _extract(ai_settings, client)
    assert exc_info.value.error_type is ErrorType.SERVICE_FAILURE


def test_network_error_is_a_service_failure(ai_settings, mock_client):
    from textexpense.modules.extraction.errors import ErrorType, ModelExtractionError

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ModelExtractionError) as exc_info:
        _extract(ai_settings, mock_client(handler))
    assert exc_info.value.error_type is ErrorType.SERVICE_FAILURE


def test_error_payload_with_ok_status_is_classified(ai_settings, mock_client):
    from textexpense.modules.extraction.errors import ErrorType, ModelExtractionError

    body = {"error": {"message": "You exceeded your current quota", "type": "insufficient_quota"}}
    client = mock_client(lambda _r: httpx.Response(200, json=body))
    with pytest.raises(ModelExtractionError) as exc_info:
        _extract(ai_settings, client)
    assert exc_info.value.error_type is ErrorType.SERVICE_FAILURE


def test_locale_currency_hint_reaches_the_prompt():
    from textexpense.modules.extraction.ai import build_messages

    messages = build_messages("Total 10.00", locale_currency="AED")
    assert messages[0]["role"] == "system"
    assert "AED" in messages[0]["content"]
    assert "AED" not in build_messages("Total 10.00")[0]["content"]
    assert messages[1]["content"].endswith("Total 10.00")


def test_parse_json_object_edge_cases():
    from textexpense.modules.extraction.ai import parse_json_object

    assert parse_json_object('{"a": 1}') == {"a": 1}
    assert parse_json_object('```\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_object("no json here") is None
    assert parse_json_object("} backwards {") is None
    assert parse_json_object("") is None
    assert parse_json_object(None) is None


def test_receipt_ai_available_requires_flag_and_key(make_settings):
    from textexpense.modules.extraction.ai import receipt_ai_available

    assert not receipt_ai_available(make_settings(receipt_ai_enabled=True, openai_api_key=None))
    assert not receipt_ai_available(make_settings(receipt_ai_enabled=False, openai_api_key="sk"))
    assert receipt_ai_available(make_settings(receipt_ai_enabled=True, openai_api_key="sk"))
