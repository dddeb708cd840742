"""Task-aware Groq LLM routing with soft limits and model chains."""

from __future__ import annotations

import os
import time
from collections import defaultdict, deque
from enum import Enum
from typing import Any, Optional, Tuple

import config
from groq_http import http_chat_completion
from groq_safe import (
    GroqAuthError,
    describe_error,
    disable_auth,
    is_model_decommissioned_error,
    require_groq_api_key,
)
from log_utils import setup_logger

logger = setup_logger(__name__)

_SOFT_LIMIT_WINDOW_SECONDS = 60.0
_MODEL_CALLS: dict[str, deque[float]] = defaultdict(deque)


class LLMTask(str, Enum):
    REGIME = "regime"


def _coerce_models(models) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for model in models:
        candidate = str(model or "").strip()
        if not candidate or candidate in seen:
            continue
        seen.add(candidate)
        result.append(candidate)
    return result


def iter_models_for_task(task: LLMTask) -> list[str]:
    """Model chain for ``task``: explicit env list, else primary then overflow."""

    if task == LLMTask.REGIME:
        raw = os.getenv("REGIME_LLM_MODELS", "").strip()
        if raw:
            models = _coerce_models(raw.split(","))
            if models:
                return models
        return _coerce_models([config.get_regime_model(), config.get_overflow_model()])
    return [config.get_overflow_model()]


def _limit_for_model(model_name: str) -> int:
    default_limit = int(os.getenv("GROQ_SOFT_RPM_DEFAULT", "30") or 30)
    if "70b" in model_name.lower():
        return int(os.getenv("GROQ_SOFT_RPM_70B", "20") or 20)
    return default_limit


def _soft_limit_check(model_name: str, *, now: Optional[float] = None) -> bool:
    allowed = max(1, _limit_for_model(model_name))
    now = time.time() if now is None else now
    window_start = now - _SOFT_LIMIT_WINDOW_SECONDS
    timestamps = _MODEL_CALLS[model_name]
    while timestamps and timestamps[0] < window_start:
        timestamps.popleft()
    if len(timestamps) >= allowed:
        return False
    timestamps.append(now)
    return True


def reset_soft_limits() -> None:
    _MODEL_CALLS.clear()


def call_llm_for_task(
    task: LLMTask,
    messages: list[dict[str, Any]],
    *,
    temperature: float = 0.0,
    max_tokens: int = 512,
    timeout: Optional[float] = None,
) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(text, model)`` from the first model that answers, else ``(None, None)``."""

    models = iter_models_for_task(task)
    try:
        api_key = require_groq_api_key()
    except GroqAuthError as exc:
        logger.warning("Groq unavailable for task=%s: %s", task.value, exc)
        return None, None

    last_error: Any = None
    for model_name in models:
        if not _soft_limit_check(model_name):
            logger.info("Soft rate limit hit for model=%s task=%s; trying next model", model_name, task.value)
            continue
        result = http_chat_completion(
            model=model_name,
            messages=messages,
            api_key=api_key,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
        if result.ok:
            logger.info("LLM call succeeded: task=%s model=%s", task.value, model_name)
            return result.content, model_name
        if result.auth_failed:
            disable_auth(f"authentication failed for model {model_name}")
            return None, None
        last_error = result.error
        if is_model_decommissioned_error(result.error):
            logger.warning("Groq model %s unavailable (%s); trying next model", model_name, describe_error(result.error))
            continue
        logger.warning(
            "Groq error for task=%s model=%s status=%s: %s",
            task.value,
            model_name,
            result.status_code,
            describe_error(result.error),
        )

    logger.warning(
        "LLM unavailable for task=%s after trying models=%s. Last error: %r",
        task.value,
        models,
        last_error,
    )
    return None, None


__all__ = ["LLMTask", "call_llm_for_task", "iter_models_for_task", "reset_soft_limits"]
