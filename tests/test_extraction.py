from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from household_scan.domain.models import LabelImage
from household_scan.errors import (
    ConfigurationError,
    FatalServiceError,
    InputValidationError,
    MalformedResponseError,
    RetryableServiceError,
)
from household_scan.orchestrator.extraction import (
    BUSY_MESSAGE,
    UNAVAILABLE_MESSAGE,
    GeminiClient,
    GeminiConfig,
    IngredientExtractor,
    friendly_error_message,
    normalize_extraction,
    parse_model_json,
    retry_delay_seconds,
)


def _response(status: int, body: Any = None, headers: Optional[Dict[str, str]] = None, raw: Optional[str] = None):
    resp = requests.Response()
    resp.status_code = status
    text = raw if raw is not None else json.dumps(body if body is not None else {})
    resp._content = text.encode("utf-8")
    resp.headers = CaseInsensitiveDict(headers or {})
    resp.encoding = "utf-8"
    return resp


def _candidate(text: str) -> Dict[str, Any]:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


class FakeSession:
    """Records posts and replays queued responses."""

    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.headers: Dict[str, str] = {}
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def post(self, url: str, json: Any = None, timeout: Any = None):
        self.calls.append({"url": url, "json": json, "timeout": timeout})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        self.closed = True


def _client(responses: List[Any], sleeps: List[float], **overrides: Any) -> GeminiClient:
    config = GeminiConfig(api_key="test-key", model_name="gemini-test", vision_model_name="gemini-vision", **overrides)
    return GeminiClient(config, session=FakeSession(responses), sleep=sleeps.append)


# ---- retry policy ----


def test_retry_delay_backoff_with_jitter():
    assert retry_delay_seconds(0, rng=lambda: 0.0) == pytest.approx(0.6)
    assert retry_delay_seconds(1, rng=lambda: 0.0) == pytest.approx(1.2)
    assert retry_delay_seconds(1, rng=lambda: 1.0) == pytest.approx(1.45)


def test_retry_after_header_wins_when_positive():
    assert retry_delay_seconds(0, "3", rng=lambda: 0.5) == pytest.approx(3.0)
    assert retry_delay_seconds(0, "0", rng=lambda: 0.0) == pytest.approx(0.6)
    assert retry_delay_seconds(0, "soon", rng=lambda: 0.0) == pytest.approx(0.6)
    assert retry_delay_seconds(0, "nan", rng=lambda: 0.0) == pytest.approx(0.6)


def test_friendly_error_messages():
    assert friendly_error_message(429, "") == BUSY_MESSAGE
    assert friendly_error_message(400, '{"status": "RESOURCE_EXHAUSTED"}') == BUSY_MESSAGE
    assert friendly_error_message(503, "overloaded") == UNAVAILABLE_MESSAGE
    assert friendly_error_message(None, "") == UNAVAILABLE_MESSAGE
    assert friendly_error_message(400, "bad field") == "Gemini API error 400: bad field"


# ---- JSON repair tiers ----


def test_parse_model_json_tiers():
    assert parse_model_json('{"a": 1}') == {"a": 1}
    assert parse_model_json('```json\n{"a": 2}\n```') == {"a": 2}
    assert parse_model_json('Sure! Here you go: {"a": 3} Hope that helps.') == {"a": 3}


def test_parse_model_json_raises_when_all_tiers_fail():
    with pytest.raises(MalformedResponseError):
        parse_model_json("no json here")
    with pytest.raises(MalformedResponseError):
        parse_model_json("{ broken: ")


def test_normalize_extraction_hardens_model_output():
    extraction = normalize_extraction(
        {
            "ingredients": [
                {"name": " Sodium Hypochlorite ", "risk": "HIGH", "notes": "Bleach"},
                {"name": "Water"},
                {"name": "   "},
                "not-an-object",
            ],
        }
    )
    assert [(i.name, i.slug, i.risk) for i in extraction.ingredients] == [
        ("Sodium Hypochlorite", "sodium-hypochlorite", "avoid"),
        ("Water", "water", "safe"),
    ]
    assert extraction.ingredients[0].notes == "Bleach"
    assert extraction.summary == ""
    assert normalize_extraction(["garbage"]).ingredients == []


# ---- HTTP client ----


def test_client_retries_429_then_succeeds():
    sleeps: List[float] = []
    client = _client(
        [
            _response(429, {"error": "busy"}, headers={"Retry-After": "2"}),
            _response(200, _candidate('{"ok": true}')),
        ],
        sleeps,
    )
    assert client.generate_json("hi") == {"ok": True}
    assert sleeps == [2.0]
    assert len(client.s.calls) == 2
    assert client.s.calls[0]["url"].endswith("/models/gemini-test:generateContent")
    assert client.s.headers["X-goog-api-key"] == "test-key"


def test_client_gives_up_after_max_retries():
    sleeps: List[float] = []
    client = _client([_response(429, raw="RESOURCE_EXHAUSTED") for _ in range(3)], sleeps)
    with pytest.raises(RetryableServiceError) as excinfo:
        client.generate("hi")
    assert str(excinfo.value) == BUSY_MESSAGE
    assert excinfo.value.status == 429
    assert len(sleeps) == 2
    assert len(client.s.calls) == 3


def test_client_does_not_retry_server_errors():
    sleeps: List[float] = []
    client = _client([_response(503, raw="backend down")], sleeps)
    with pytest.raises(FatalServiceError) as excinfo:
        client.generate("hi")
    assert str(excinfo.value) == UNAVAILABLE_MESSAGE
    assert excinfo.value.details == "backend down"
    assert sleeps == []


def test_client_transport_error_is_fatal():
    client = _client([requests.ConnectionError("refused")], [])
    with pytest.raises(FatalServiceError):
        client.generate("hi")


def test_client_body_carries_images_and_generation_config():
    sleeps: List[float] = []
    client = _client([_response(200, _candidate("{}"))], sleeps)
    image = LabelImage(label="front", data=b"\x89PNG", mime_type="image/png")
    client.generate("look", images=[image], model="gemini-vision", max_output_tokens=600)
    call = client.s.calls[0]
    assert call["url"].endswith("/models/gemini-vision:generateContent")
    parts = call["json"]["contents"][0]["parts"]
    assert parts[0] == {"text": "look"}
    assert parts[1]["inlineData"] == {"mimeType": "image/png", "data": "iVBORw=="}
    assert call["json"]["generationConfig"] == {"temperature": 0.1, "maxOutputTokens": 600}


def test_candidate_text_joins_parts():
    payload = {"candidates": [{"content": {"parts": [{"text": "a"}, {"inline": 1}, {"text": "b"}]}}]}
    client = _client([_response(200, payload)], [])
    assert client.generate("x") == "a\nb"


# ---- extractor ----


def test_extractor_text_path_and_validation():
    body = _candidate('```json\n{"ingredients":[{"name":"Citric Acid","risk":"moderate"}],"summary":"ok"}\n```')
    extractor = IngredientExtractor(_client([_response(200, body)], []))
    extraction = extractor.extract(text="Citric acid")
    assert extraction.ingredients[0].slug == "citric-acid"
    assert extraction.ingredients[0].risk == "caution"
    assert extraction.summary == "ok"

    with pytest.raises(InputValidationError):
        extractor.extract(text="  ", ingredient_names=[""], images=[])


def test_extract_products_caps_and_maps_fields():
    products = [{"name_guess": f"Cleaner {i}", "warnings": ["Danger"], "confidence": 0.5} for i in range(7)]
    body = _candidate(json.dumps({"products": products, "notes_for_user_confirmation": ["retake photo"]}))
    extractor = IngredientExtractor(_client([_response(200, body)], []))
    labels, notes = extractor.extract_products(LabelImage(label="photo", data=b"img"))
    assert len(labels) == 5
    assert labels[0].name == "Cleaner 0"
    assert labels[0].warnings == ["Danger"]
    assert notes == ["retake photo"]


def test_answer_question_returns_answer_and_titles():
    body = _candidate('{"answer": "Ventilate.", "sourceTitles": ["EPA", "", null]}')
    extractor = IngredientExtractor(_client([_response(200, body)], []))
    answer, titles = extractor.answer_question("Is it safe?", "Summary: x", ["EPA"])
    assert answer == "Ventilate."
    assert titles == ["EPA"]


def test_config_requires_api_key(monkeypatch, tmp_path):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    with pytest.raises(ConfigurationError):
        GeminiConfig.from_env(str(tmp_path))


def test_client_treats_non_2xx_redirect_as_fatal():
    client = _client([_response(304, raw="")], [])
    with pytest.raises(FatalServiceError) as excinfo:
        client.generate("hi")
    assert excinfo.value.status == 304
    assert len(client.s.calls) == 1
