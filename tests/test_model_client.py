"""Unit tests for pageclick.engine.model_client -- request bodies and HTTP error handling."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from pageclick.engine.model_client import HttpModelClient, ModelCallError
from pageclick.engine.tool_schemas import CLARIFICATION_TOOLS

MESSAGES = [{"role": "user", "content": "hi"}]


def _client(model_key: str = "llama-4-scout", **kwargs) -> tuple[HttpModelClient, MagicMock]:
    session = MagicMock()
    return HttpModelClient(model_key, "sk-test-1234", session=session, **kwargs), session


def _response(status: int = 200, body=None, text: str = "") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    if isinstance(body, Exception):
        resp.json.side_effect = body
    else:
        resp.json.return_value = body
    return resp


class TestBuildRequest:
    """Request bodies per wire format."""

    def test_openai_compatible(self):
        client, _ = _client()
        url, headers, body = client.build_request("be brief", MESSAGES, CLARIFICATION_TOOLS)

        assert url == "https://api.groq.com/openai/v1/chat/completions"
        assert headers["Authorization"] == "Bearer sk-test-1234"
        assert body["model"] == "meta-llama/llama-4-scout-17b-16e-instruct"
        assert body["messages"][0] == {"role": "system", "content": "be brief"}
        assert body["messages"][1:] == MESSAGES
        assert body["tool_choice"] == "required"
        assert body["tools"] is CLARIFICATION_TOOLS

    def test_gemini(self):
        client, _ = _client("gemini-3-pro")
        url, headers, body = client.build_request("be brief", MESSAGES, CLARIFICATION_TOOLS)

        assert url == "https://generativelanguage.googleapis.com/v1beta/models/gemini-3-pro-preview:generateContent"
        assert headers["x-goog-api-key"] == "sk-test-1234"
        assert "Authorization" not in headers
        assert body["systemInstruction"] == {"parts": [{"text": "be brief"}]}
        assert body["toolConfig"] == {"functionCallingConfig": {"mode": "ANY"}}
        names = [d["name"] for d in body["tools"][0]["functionDeclarations"]]
        assert names == ["ask_user", "task_ready"]

    def test_custom_base_url_and_unknown_model(self):
        client, _ = _client("my-local-model", base_url="http://localhost:8000/v1/")
        url, _, body = client.build_request("", [], [])
        assert url == "http://localhost:8000/v1/chat/completions"
        assert body["model"] == "my-local-model"


class TestComplete:
    """HTTP failures become ModelCallError."""

    def test_returns_decoded_body(self):
        client, session = _client(timeout=12.0)
        session.post.return_value = _response(body={"choices": []})
        assert client.complete("s", MESSAGES, []) == {"choices": []}
        _, kwargs = session.post.call_args
        assert kwargs["timeout"] == 12.0

    def test_http_error_status(self):
        client, session = _client()
        session.post.return_value = _response(status=429, text="rate limited " + "x" * 1000)
        with pytest.raises(ModelCallError) as exc_info:
            client.complete("s", MESSAGES, [])
        assert exc_info.value.status_code == 429
        assert str(exc_info.value).startswith("Model API returned 429: rate limited")
        assert len(str(exc_info.value)) < 600

    def test_transport_error(self):
        client, session = _client()
        session.post.side_effect = requests.ConnectionError("no route")
        with pytest.raises(ModelCallError, match="Request failed: ConnectionError"):
            client.complete("s", MESSAGES, [])

    def test_non_json_body(self):
        client, session = _client()
        session.post.return_value = _response(body=ValueError("bad json"))
        with pytest.raises(ModelCallError, match="non-JSON"):
            client.complete("s", MESSAGES, [])

    def test_non_object_body(self):
        client, session = _client()
        session.post.return_value = _response(body=["not", "a", "dict"])
        with pytest.raises(ModelCallError, match="unexpected body"):
            client.complete("s", MESSAGES, [])
