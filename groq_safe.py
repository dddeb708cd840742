"""Groq authentication state and error classification helpers.

An authentication failure disables Groq for the rest of the process so the
regime loop stops hammering the API with a bad key; the classifier then uses
its heuristic fallback.
"""

from __future__ import annotations

import os
from typing import Any, Mapping

from log_utils import setup_logger

logger = setup_logger(__name__)

_DECOMMISSIONED_HINTS = (
    "model_decommissioned",
    "has been decommissioned",
    "is no longer supported",
    "has been deprecated",
    "model has been retired",
    "does not exist",
    "not found",
    "do not have access",
)


class GroqAuthError(RuntimeError):
    """Raised when Groq authentication fails and requests must be skipped."""


_groq_auth_disabled: bool = False


def get_groq_api_key() -> str | None:
    key = os.getenv("GROQ_API_KEY", "").strip()
    return key or None


def _extract_error_parts(error: Any) -> tuple[str, str | None]:
    if isinstance(error, Mapping):
        inner = error.get("error")
        if isinstance(inner, Mapping):
            code = inner.get("code")
            return str(inner.get("message", "") or ""), str(code) if code is not None else None
        code = error.get("code")
        return str(error.get("message", "") or ""), str(code) if code is not None else None
    return str(error or ""), None


def describe_error(error: Any) -> str:
    """Return a compact description of ``error`` suitable for logging."""

    message, code = _extract_error_parts(error)
    if code and message:
        return f"{code}: {message}"
    return code or message


def is_model_decommissioned_error(error: Any) -> bool:
    message, code = _extract_error_parts(error)
    if code in {"model_decommissioned", "model_not_found"}:
        return True
    lowered = message.lower()
    return any(hint in lowered for hint in _DECOMMISSIONED_HINTS)


def disable_auth(reason: str) -> None:
    global _groq_auth_disabled
    if not _groq_auth_disabled:
        logger.error("Disabling Groq requests: %s", reason)
    _groq_auth_disabled = True


def reset_auth_state() -> None:
    """Reset authentication state (primarily for tests)."""

    global _groq_auth_disabled
    _groq_auth_disabled = False


def require_groq_api_key() -> str:
    """Return the configured Groq API key or raise when unavailable."""

    if _groq_auth_disabled:
        raise GroqAuthError("Groq authentication disabled")
    key = get_groq_api_key()
    if not key:
        disable_auth("no GROQ_API_KEY in environment")
        raise GroqAuthError("Groq authentication disabled")
    return key


__all__ = [
    "GroqAuthError",
    "describe_error",
    "disable_auth",
    "get_groq_api_key",
    "is_model_decommissioned_error",
    "require_groq_api_key",
    "reset_auth_state",
]
