"""Model-call collaborator over HTTP.

Two wire formats are supported, chosen by the model key:

- OpenAI-compatible ``/chat/completions`` with ``tools`` and
  ``tool_choice: "required"`` (Groq and friends).
- Gemini ``generateContent`` with ``systemInstruction``, ``contents`` and
  ``functionDeclarations``.

The client returns the decoded JSON body untouched; interpreting it is the
response adapter's job.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from pageclick.engine.tool_adapter import is_gemini_model
from pageclick.engine.tool_schemas import to_gemini_tools
from pageclick.models import GEMINI_BASE_URL, OPENAI_COMPATIBLE_BASE_URL, PROVIDER_MODEL_IDS

logger = logging.getLogger("pageclick.engine.model_client")

MAX_ERROR_BODY_CHARS = 500


class ModelCallError(Exception):
    """HTTP or transport failure talking to the model provider."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class HttpModelClient:
    """ModelClient implementation using a shared ``requests.Session``."""

    def __init__(
        self,
        model_key: str,
        api_key: str,
        base_url: str | None = None,
        timeout: float = 60.0,
        temperature: float = 0.2,
        session: requests.Session | None = None,
    ) -> None:
        self.model_key = model_key
        self._api_key = api_key
        self._gemini = is_gemini_model(model_key)
        default_base = GEMINI_BASE_URL if self._gemini else OPENAI_COMPATIBLE_BASE_URL
        self._base_url = (base_url or default_base).rstrip("/")
        self._timeout = timeout
        self._temperature = temperature
        self._session = session or requests.Session()

    @property
    def provider_model_id(self) -> str:
        return PROVIDER_MODEL_IDS.get(self.model_key, self.model_key)

    # -- Request bodies ------------------------------------------------------

    def build_request(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Return ``(url, headers, body)`` for one completion call."""
        if self._gemini:
            url = f"{self._base_url}/models/{self.provider_model_id}:generateContent"
            headers = {"Content-Type": "application/json", "x-goog-api-key": self._api_key}
            body: dict[str, Any] = {
                "systemInstruction": {"parts": [{"text": system_prompt}]},
                "contents": messages,
                "tools": [to_gemini_tools(tools)],
                "toolConfig": {"functionCallingConfig": {"mode": "ANY"}},
                "generationConfig": {"temperature": self._temperature},
            }
            return url, headers, body

        url = f"{self._base_url}/chat/completions"
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self._api_key}"}
        body = {
            "model": self.provider_model_id,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
            "tools": tools,
            "tool_choice": "required",
            "temperature": self._temperature,
        }
        return url, headers, body

    # -- ModelClient ---------------------------------------------------------

    def complete(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        **kwargs: Any,
    ) -> dict[str, Any]:
        url, headers, body = self.build_request(system_prompt, messages, tools)
        body.update(kwargs)
        logger.debug("Model call to %s (%d messages, %d tools)", self.provider_model_id, len(messages), len(tools))
        try:
            response = self._session.post(url, json=body, headers=headers, timeout=self._timeout)
        except requests.RequestException as exc:
            raise ModelCallError(f"Request failed: {type(exc).__name__}: {exc}") from exc

        if response.status_code >= 400:
            detail = response.text[:MAX_ERROR_BODY_CHARS]
            raise ModelCallError(f"Model API returned {response.status_code}: {detail}", response.status_code)
        try:
            data = response.json()
        except ValueError as exc:
            raise ModelCallError("Model API returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise ModelCallError("Model API returned an unexpected body")
        return data

    def close(self) -> None:
        self._session.close()
