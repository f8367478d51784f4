from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional

import requests

from . import config


class InferenceError(RuntimeError):
    """Raised when the inference gateway call fails."""


class InferenceDecodeError(InferenceError):
    """Raised when a successful gateway response has no usable completion text."""


class ConfigurationError(RuntimeError):
    """Raised when required configuration (such as the gateway credential) is missing."""


class GatewayClient:
    """Client for an OpenAI-style ``/v1/chat/completions`` gateway."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        host: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        selected_host = (host or config.GATEWAY_HOST).rstrip("/")
        if not selected_host.startswith("http://") and not selected_host.startswith("https://"):
            selected_host = "https://" + selected_host
        self.host = selected_host
        self.model = model or config.MODEL
        self.temperature = config.TEMPERATURE if temperature is None else temperature
        self.max_tokens = config.MAX_TOKENS if max_tokens is None else max_tokens
        self.timeout = config.REQUEST_TIMEOUT if timeout is None else timeout
        self._api_key = api_key
        self._logger = logger or logging.getLogger(__name__)
        if session is None:
            self._session = requests.Session()
            self._close_session = self._session.close
        else:
            self._session = session
            self._close_session = getattr(session, "close", lambda: None)

    @property
    def url(self) -> str:
        return f"{self.host}{config.CHAT_COMPLETIONS_PATH}"

    def close(self) -> None:
        self._close_session()

    def __enter__(self) -> "GatewayClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _resolve_api_key(self) -> str:
        key = self._api_key or config.gateway_api_key()
        if not key:
            raise ConfigurationError(f"{config.GATEWAY_API_KEY_ENV} not configured")
        return key

    def _prepare_payload(self, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        msgs = [{"role": m["role"], "content": m["content"]} for m in messages]
        return {
            "model": self.model,
            "messages": msgs,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

    @staticmethod
    def _extract_text(data: Any) -> str:
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise InferenceDecodeError("Gateway response has no completion content") from exc
        if not isinstance(content, str):
            raise InferenceDecodeError("Gateway completion content is not text")
        return content

    def complete(self, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        """Send one chat completion request and return ``{"text", "meta"}``.

        Raises ``ConfigurationError`` before any network I/O when the credential
        is missing, ``InferenceError`` on transport failures or non-2xx statuses
        and ``InferenceDecodeError`` when the body lacks the completion text.
        """

        api_key = self._resolve_api_key()
        payload = self._prepare_payload(messages)
        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        t0 = time.perf_counter()

        try:
            response = self._session.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            self._logger.error("Inference request to %s failed: %s", self.url, exc)
            raise InferenceError("AI gateway unreachable") from exc

        elapsed = time.perf_counter() - t0
        if response.status_code < 200 or response.status_code >= 300:
            try:
                preview = json.dumps(response.json(), ensure_ascii=False)[:4000]
            except ValueError:
                preview = (response.text or "")[:4000]
            self._logger.error("AI gateway error: %s %s", response.status_code, preview)
            raise InferenceError(f"AI gateway returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise InferenceDecodeError("Gateway response is not JSON") from exc

        text = self._extract_text(data)
        meta = {
            "status": response.status_code,
            "elapsed_sec": round(elapsed, 3),
            "model": self.model,
            "usage": data.get("usage") if isinstance(data, dict) else None,
        }
        self._logger.debug("Inference completed in %.3fs", elapsed)
        return {"text": text, "meta": meta}


__all__ = ["ConfigurationError", "GatewayClient", "InferenceDecodeError", "InferenceError"]
