from __future__ import annotations

from typing import Any

import httpx

__all__ = ["LlmError", "LlmClient"]

# ── Error classification ─────────────────────────────────


class LlmError(Exception):
    """Text generation / embedding failure with a kind label for metrics."""

    def __init__(self, kind: str, message: str) -> None:
        self.kind = kind
        super().__init__(message)


class LlmClient:
    """
    OpenAI-compatible HTTP client:
      POST {base_url}/chat/completions
      POST {base_url}/embeddings

    Raises LlmError with kind in {timeout, unavailable, bad_status, bad_response}.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        model: str,
        embedding_model: str,
        timeout_s: float = 20.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self._url = base_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._embedding_model = embedding_model
        self._timeout = timeout_s
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        if not self._api_key:
            raise LlmError("unavailable", "LLM API key not configured")
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                r = client.post(f"{self._url}{path}", json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise LlmError("timeout", f"LLM request timed out: {exc}") from exc
        except httpx.ConnectError as exc:
            raise LlmError("unavailable", f"LLM unreachable: {exc}") from exc
        except httpx.HTTPError as exc:
            raise LlmError("unavailable", f"LLM HTTP error: {exc}") from exc

        if r.status_code >= 400:
            raise LlmError("bad_status", f"LLM returned {r.status_code}: {r.text[:200]}")
        try:
            body = r.json()
        except ValueError as exc:
            raise LlmError("bad_response", f"LLM returned non-JSON: {exc}") from exc
        if not isinstance(body, dict):
            raise LlmError("bad_response", "LLM returned a non-object body")
        return body

    def generate(
        self,
        system_prompt: str,
        user_message: str,
        *,
        history: list[dict[str, str]] | None = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> str:
        messages = [{"role": "system", "content": system_prompt}, *(history or [])]
        messages.append({"role": "user", "content": user_message})
        body = self._post(
            "/chat/completions",
            {
                "model": self._model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
        )
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise LlmError("bad_response", f"LLM response missing content: {exc}") from exc
        if not isinstance(content, str) or not content.strip():
            raise LlmError("bad_response", "LLM returned empty content")
        return content

    def embed(self, text: str) -> list[float]:
        body = self._post("/embeddings", {"model": self._embedding_model, "input": text})
        try:
            vector = body["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as exc:
            raise LlmError("bad_response", f"embedding response malformed: {exc}") from exc
        return [float(v) for v in vector]
