"""
Tests for the Gemini image client.

No network access: the requests session is a mock returning canned
`requests.Response` objects, and backoff sleeps are patched out.
"""

import base64
import json
import logging
import os
from unittest.mock import MagicMock, patch

import pytest
import requests

from golf_media.services import gemini_client
from golf_media.services.gemini_client import (
    GeminiImageClient,
    GenerationError,
    build_prompt,
    extract_image,
    stylize_course_image,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + bytes(range(256)) * 2


def _response(status_code: int, payload=None, text: str | None = None) -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    if payload is not None:
        response._content = json.dumps(payload).encode("utf-8")
    else:
        response._content = (text or "").encode("utf-8")
    response.encoding = "utf-8"
    return response


def _image_payload(data: bytes = PNG_BYTES, camel: bool = False) -> dict:
    key, mime_key = ("inlineData", "mimeType") if camel else ("inline_data", "mime_type")
    return {
        "candidates": [
            {
                "content": {
                    "parts": [
                        {"text": "Here is the stylized hole."},
                        {key: {mime_key: "image/png", "data": base64.b64encode(data).decode()}},
                    ]
                }
            }
        ]
    }


def _text_payload(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def _client(*responses) -> GeminiImageClient:
    session = MagicMock()
    session.post.side_effect = list(responses)
    return GeminiImageClient(api_key="test-key", model="test-model", session=session)


def test_inline_image_part_is_returned():
    client = _client(_response(200, _image_payload()))

    result = client.stylize_image(b"raw-input", mime_type="image/jpeg", seed=42)

    assert result == PNG_BYTES
    call = client.session.post.call_args
    assert call.args[0].endswith("/models/test-model:generateContent")
    assert call.kwargs["params"] == {"key": "test-key"}
    assert call.kwargs["timeout"] == (10, 120)
    parts = call.kwargs["json"]["contents"][0]["parts"]
    assert "Style seed: 42" in parts[0]["text"]
    assert parts[1]["inline_data"]["mime_type"] == "image/jpeg"
    assert base64.b64decode(parts[1]["inline_data"]["data"]) == b"raw-input"
    assert "temperature" in call.kwargs["json"]["generationConfig"]
    logger.info("✓ Inline image part decoded")


def test_camel_case_inline_data_is_accepted():
    assert extract_image(_image_payload(camel=True)) == PNG_BYTES


def test_data_url_in_text_is_used_when_no_inline_part():
    encoded = base64.b64encode(PNG_BYTES).decode()
    payload = _text_payload(f"Done! ![hole](data:image/png;base64,{encoded}) enjoy")

    assert extract_image(payload) == PNG_BYTES


def test_bare_base64_in_text_is_used_as_last_resort():
    blob = os.urandom(300)
    payload = _text_payload(f"The image follows:\n{base64.b64encode(blob).decode()}\nThanks.")

    assert extract_image(payload) == blob


def test_short_tokens_in_prose_are_not_mistaken_for_images():
    payload = _text_payload("I could not render this layout, please upload a clearer photo.")

    assert extract_image(payload) is None


def test_response_without_image_returns_none():
    client = _client(_response(200, _text_payload("Sorry, no image this time.")))

    assert client.stylize_image(b"raw") is None
    assert client.session.post.call_count == 1


def test_transient_errors_are_retried_with_backoff():
    client = _client(
        _response(503, {"error": {"status": "UNAVAILABLE"}}),
        _response(429, {"error": {"status": "RESOURCE_EXHAUSTED"}}),
        _response(200, _image_payload()),
    )

    with patch("golf_media.services.gemini_client.time.sleep") as sleep:
        result = client.stylize_image(b"raw")

    assert result == PNG_BYTES
    assert client.session.post.call_count == 3
    assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]
    logger.info("✓ Two transient failures retried, third attempt succeeded")


def test_timeouts_exhaust_retry_budget():
    client = _client(
        requests.exceptions.ReadTimeout("slow"),
        requests.exceptions.ReadTimeout("slow"),
        requests.exceptions.ReadTimeout("slow"),
        _response(200, _image_payload()),
    )

    with patch("golf_media.services.gemini_client.time.sleep"):
        with pytest.raises(GenerationError):
            client.stylize_image(b"raw")

    assert client.session.post.call_count == 3


def test_provider_internal_error_in_body_is_transient():
    client = _client(
        _response(200, {"error": {"status": "INTERNAL", "message": "try again"}}),
        _response(200, _image_payload()),
    )

    with patch("golf_media.services.gemini_client.time.sleep"):
        assert client.stylize_image(b"raw") == PNG_BYTES
    assert client.session.post.call_count == 2


def test_non_transient_http_error_fails_without_retry():
    client = _client(
        _response(400, {"error": {"status": "INVALID_ARGUMENT", "message": "bad image"}}),
        _response(200, _image_payload()),
    )

    with patch("golf_media.services.gemini_client.time.sleep") as sleep:
        with pytest.raises(GenerationError, match="HTTP 400"):
            client.stylize_image(b"raw")

    assert client.session.post.call_count == 1
    sleep.assert_not_called()


def test_malformed_json_is_a_hard_failure():
    client = _client(_response(200, text="<html>gateway</html>"))

    with pytest.raises(GenerationError, match="Malformed JSON"):
        client.stylize_image(b"raw")


def test_missing_api_key_fails(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    client = GeminiImageClient(api_key=None, session=MagicMock())

    assert not client.is_available()
    with pytest.raises(GenerationError, match="GEMINI_API_KEY"):
        client.stylize_image(b"raw")
    client.session.post.assert_not_called()


def test_prompt_without_seed_has_no_seed_hint():
    assert "Style seed" not in build_prompt(None)
    assert build_prompt(7).startswith(build_prompt(None))


def test_convenience_wrapper_uses_global_client(monkeypatch):
    fake = MagicMock(spec=GeminiImageClient)
    fake.stylize_image.return_value = PNG_BYTES
    monkeypatch.setattr(gemini_client, "_gemini_client", fake)

    assert stylize_course_image(b"raw", seed=3, input_mime_type="image/webp") == PNG_BYTES
    fake.stylize_image.assert_called_once_with(b"raw", mime_type="image/webp", seed=3)
