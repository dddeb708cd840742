"""HTTP transport for the Groq OpenAI-compatible chat completions API."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional

import requests

from log_utils import setup_logger

logger = setup_logger(__name__)

_DEFAULT_GROQ_API_URL = "https://api.groq.com/openai/v1/chat/completions"


def _env_float(name: str, default: float, *, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    return max(minimum, min(maximum, value))


_HTTP_TIMEOUT = _env_float("GROQ_HTTP_TIMEOUT", 20.0, minimum=1.0, maximum=120.0)


def groq_api_url() -> str:
    return os.getenv("GROQ_API_URL", _DEFAULT_GROQ_API_URL) or _DEFAULT_GROQ_API_URL


@dataclass(frozen=True)
class ChatResult:
    """Outcome of one chat completion request.

    ``content`` is set on success.  Otherwise ``status_code``/``error`` carry
    the HTTP status and decoded error payload (or the transport exception).
    """

    model: str
    content: Optional[str] = None
    status_code: Optional[int] = None
    error: Any = None
    auth_failed: bool = False

    @property
    def ok(self) -> bool:
        return bool(self.content)


def extract_error_payload(response: Any) -> Any:
    try:
        return response.json()
    except ValueError:
        return getattr(response, "text", "")


def _extract_content(payload: Any) -> str:
    if not isinstance(payload, Mapping):
        return ""
    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0]
        if isinstance(first, Mapping):
            message = first.get("message")
            if isinstance(message, Mapping):
                content = message.get("content")
                if isinstance(content, str):
                    return content.strip()
    return ""


def is_auth_error(status_code: Optional[int], error_payload: Any) -> bool:
    """Return ``True`` if the response describes an authentication failure."""

    if status_code == 401:
        return True
    if isinstance(error_payload, Mapping):
        payload = error_payload.get("error") if "error" in error_payload else error_payload
        if isinstance(payload, Mapping):
            code = str(payload.get("code", "")).lower()
            if code in {"authentication_error", "invalid_api_key"}:
                return True
            lowered = str(payload.get("message", "")).lower()
            return "invalid api key" in lowered or "authentication" in lowered
    if isinstance(error_payload, str):
        lowered = error_payload.lower()
        return "invalid api key" in lowered or "authentication" in lowered
    return False


def http_chat_completion(
    *,
    model: str,
    messages: List[Mapping[str, str]],
    api_key: str,
    temperature: float = 0.0,
    max_tokens: int = 512,
    api_url: Optional[str] = None,
    timeout: Optional[float] = None,
    session: Optional[requests.Session] = None,
) -> ChatResult:
    """POST one chat completion and classify the outcome."""

    payload = {
        "model": model,
        "messages": list(messages),
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
    poster = session.post if session is not None else requests.post
    try:
        response = poster(
            api_url or groq_api_url(),
            headers=headers,
            json=payload,
            timeout=timeout or _HTTP_TIMEOUT,
        )
    except requests.RequestException as exc:
        return ChatResult(model=model, error=exc)

    if response.status_code >= 400:
        error_payload = extract_error_payload(response)
        return ChatResult(
            model=model,
            status_code=response.status_code,
            error=error_payload,
            auth_failed=is_auth_error(response.status_code, error_payload),
        )
    try:
        data = response.json()
    except ValueError:
        return ChatResult(model=model, status_code=response.status_code, error="invalid JSON body")
    content = _extract_content(data)
    if not content:
        return ChatResult(model=model, status_code=response.status_code, error=data)
    return ChatResult(model=model, content=content, status_code=response.status_code)


__all__ = ["ChatResult", "extract_error_payload", "groq_api_url", "http_chat_completion", "is_auth_error"]
