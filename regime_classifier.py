"""Market regime classification with per-asset caching and a heuristic fallback.

The LLM is treated as an untrusted classifier: its reply must follow a fixed
line-prefix schema (``REGIME:``, ``CONFIDENCE:``, ``REASONING:``, ``SIGNALS:``,
``OUTLOOK:``) and anything that fails validation is replaced with a
deterministic assessment derived from ``bull_state`` and the 5-minute
Stochastic RSI.

Automatic assessments are rate limited per asset.  Within the window the
cached assessment is returned, and a per-asset lock guarantees at most one
outbound call per asset at a time.  Manual assessments always call the
backend and never touch the cache.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

import numpy as np

import config
from event_log import EventLog, EventType
from llm_tasks import LLMTask, call_llm_for_task
from log_utils import setup_logger
from market_schema import IndicatorSnapshot, Regime, RegimeAssessment
from observability import record_metric

logger = setup_logger(__name__)

HISTORY_WINDOW = 240


class RegimeClassificationError(RuntimeError):
    """The backend could not produce an assessment."""


class RegimeParseError(RegimeClassificationError):
    """The backend reply did not match the expected schema."""


SYSTEM_PROMPT = """You are an expert market analyst specializing in cryptocurrency trend analysis. Your task is to classify the current market regime based on technical indicators and price action.

You must respond EXACTLY in this format:
REGIME:[classification]
CONFIDENCE:[1-10]
REASONING:[brief 1-2 sentence explanation]
SIGNALS:[key technical signals observed]
OUTLOOK:[short-term outlook]

Available regime classifications:
- STRONG_UPTREND: Clear bullish momentum, sustained buying pressure
- WEAK_UPTREND: Choppy upward movement, mixed signals
- RANGING: Sideways consolidation, no clear direction
- WEAK_DOWNTREND: Declining with bounces, mixed bearish signals
- STRONG_DOWNTREND: Clear bearish momentum, sustained selling
- VOLATILE_UNCERTAIN: High volatility, whipsaw conditions

Be precise and concise. Focus on actionable insights."""


RECOMMENDATIONS: Dict[Regime, List[str]] = {
    Regime.STRONG_UPTREND: [
        "Favorable for long entries on dips",
        "Use wider stops, trend is strong",
        "Consider increasing position size",
    ],
    Regime.WEAK_UPTREND: [
        "Cautious long bias, watch for reversal",
        "Use standard stops, trend is fragile",
        "Wait for clearer signals",
    ],
    Regime.RANGING: [
        "Range-bound trading opportunity",
        "Tight stops, quick profits",
        "Trade the range, avoid breakout trades",
    ],
    Regime.WEAK_DOWNTREND: [
        "Avoid long entries, consider shorts",
        "If long, use very tight stops",
        "Wait for trend reversal signals",
    ],
    Regime.STRONG_DOWNTREND: [
        "Avoid all long positions",
        "Consider short entries on bounces",
        "High risk environment for longs",
    ],
    Regime.VOLATILE_UNCERTAIN: [
        "High risk - reduce position size",
        "Avoid new entries until clarity",
        "Focus on risk management",
    ],
}


class RegimeBackend(Protocol):
    def classify(self, system_prompt: str, user_prompt: str) -> str:
        ...


class GroqRegimeBackend:
    """Backend that routes the prompt through :func:`llm_tasks.call_llm_for_task`."""

    def __init__(self, *, max_tokens: int = 300, temperature: float = 0.0) -> None:
        self.max_tokens = max_tokens
        self.temperature = temperature

    def classify(self, system_prompt: str, user_prompt: str) -> str:
        if not config.use_groq():
            raise RegimeClassificationError("Groq disabled via USE_GROQ")
        text, model = call_llm_for_task(
            LLMTask.REGIME,
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        if not text:
            raise RegimeClassificationError("LLM returned no regime assessment")
        logger.debug("Regime classified by %s", model)
        return text


# ---------------------------------------------------------------------------
# Prompt construction
# ---------------------------------------------------------------------------

def stoch_label(value: Optional[float]) -> str:
    if not value:
        return ""
    if value > 80:
        return "(Overbought)"
    if value < 20:
        return "(Oversold)"
    return ""


def market_metrics(snapshot: IndicatorSnapshot, prices: Sequence[float]) -> Dict[str, Any]:
    """Volatility, range, level respect and breakout count over the history window."""

    window = np.asarray(list(prices)[-HISTORY_WINDOW:], dtype=float)
    metrics: Dict[str, Any] = {"volatility": None, "price_range": None, "level_respect": "WEAK", "breakouts": 0}
    if window.size >= 2:
        returns = np.diff(window) / window[:-1]
        metrics["volatility"] = float(np.std(returns) * 100)
        metrics["breakouts"] = int(np.count_nonzero(np.abs(returns) > 0.02))
    if window.size >= 1 and window.min() > 0:
        metrics["price_range"] = float((window.max() - window.min()) / window.min() * 100)
    price, fib_entry, fib0 = snapshot.latest_price, snapshot.fib_entry, snapshot.wma_fib_0
    if price is not None and fib_entry and fib0:
        if abs(price - fib_entry) / fib_entry < 0.01 or abs(price - fib0) / fib0 < 0.01:
            metrics["level_respect"] = "STRONG"
    return metrics


def hourly_averages(prices: Sequence[float]) -> str:
    recent = list(prices)[-HISTORY_WINDOW:]
    if len(recent) < HISTORY_WINDOW:
        return "Insufficient data for 4-hour analysis"
    lines = []
    for hour in range(4):
        chunk = recent[hour * 60 : (hour + 1) * 60]
        lines.append(f"Hour {hour + 1} ({4 - hour}h ago): ${float(np.mean(chunk)):.4f}")
    return "\n".join(lines)


def _fmt(value: Optional[float], digits: int = 4) -> str:
    return "n/a" if value is None else f"{value:.{digits}f}"


def build_prompt(asset: str, snapshot: IndicatorSnapshot, prices: Sequence[float]) -> str:
    recent = list(prices)[-HISTORY_WINDOW:]
    change = "n/a"
    if len(recent) >= 2 and recent[0]:
        change = f"{(recent[-1] - recent[0]) / recent[0] * 100:.2f}"
    metrics = market_metrics(snapshot, recent)
    price = snapshot.latest_price
    stoch = snapshot.stoch_rsi
    stoch_4h = snapshot.stoch_rsi_4hr
    k5, d5 = (stoch.k, stoch.d) if stoch else (None, None)
    k4, d4 = (stoch_4h.k, stoch_4h.d) if stoch_4h else (None, None)

    def _side(level: Optional[float]) -> str:
        if price is None or level is None:
            return "UNKNOWN"
        return "ABOVE" if price > level else "BELOW"

    last_30 = ", ".join(f"{i + 1}: ${p:.4f}" for i, p in enumerate(recent[-30:]))
    return f"""Analyze current market regime for {asset}:

CURRENT MARKET STATE:
- Asset: {asset}
- Current Price: ${_fmt(price)}
- 4h Change: {change}%
- Bull State: {'BULLISH' if snapshot.bull_state else 'BEARISH'}

FIBONACCI ANALYSIS:
- Fib Entry Level: ${_fmt(snapshot.fib_entry)}
- Fib 0 Level (WMA): ${_fmt(snapshot.wma_fib_0)}
- Price vs Fib Entry: {_side(snapshot.fib_entry)}
- Price vs Fib 0: {_side(snapshot.wma_fib_0)}

STOCHASTIC RSI (5MIN):
- K: {_fmt(k5, 2)} {stoch_label(k5)}
- D: {_fmt(d5, 2)} {stoch_label(d5)}

STOCHASTIC RSI (4HR):
- K: {_fmt(k4, 2)} {stoch_label(k4)}
- D: {_fmt(d4, 2)} {stoch_label(d4)}

MARKET METRICS (4h timeframe):
- Volatility: {_fmt(metrics['volatility'], 2)}%
- Price Range: {_fmt(metrics['price_range'], 2)}%
- Support/Resistance Respect: {metrics['level_respect']}
- Recent Breakouts: {metrics['breakouts']}

RECENT PRICE ACTION (last 30 readings):
{last_30 or 'none'}

HOURLY AVERAGES (last 4 hours):
{hourly_averages(recent)}

Based on this comprehensive 4-hour technical analysis, classify the current market regime and provide actionable insights."""


# ---------------------------------------------------------------------------
# Response validation and fallback
# ---------------------------------------------------------------------------

_FIELDS = ("REGIME", "CONFIDENCE", "REASONING", "SIGNALS", "OUTLOOK")


def _clean_value(value: str) -> str:
    return value.strip().strip("*").strip().strip("[]").strip()


def parse_regime_response(text: str) -> RegimeAssessment:
    """Validate a line-prefix reply; raises :class:`RegimeParseError` on any violation."""

    if not isinstance(text, str) or not text.strip():
        raise RegimeParseError("empty response")
    fields: Dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip().lstrip("-*").strip()
        key, sep, value = line.partition(":")
        key = key.strip().strip("*").upper()
        if sep and key in _FIELDS and key not in fields:
            fields[key] = _clean_value(value)

    regime = Regime.parse(fields.get("REGIME"))
    if regime is None:
        raise RegimeParseError(f"invalid or missing REGIME: {fields.get('REGIME')!r}")
    raw_confidence = fields.get("CONFIDENCE", "")
    head = raw_confidence.split("/", 1)[0].strip()
    try:
        confidence = int(head)
    except ValueError:
        raise RegimeParseError(f"invalid CONFIDENCE: {raw_confidence!r}") from None
    if not 1 <= confidence <= 10:
        raise RegimeParseError(f"CONFIDENCE out of range: {confidence}")
    return RegimeAssessment(
        regime=regime,
        confidence=confidence,
        reasoning=fields.get("REASONING", ""),
        signals=fields.get("SIGNALS", ""),
        outlook=fields.get("OUTLOOK", ""),
        recommendations=list(RECOMMENDATIONS[regime]),
    )


def fallback_assessment(snapshot: Optional[IndicatorSnapshot] = None) -> RegimeAssessment:
    regime, confidence = Regime.RANGING, 3
    if snapshot is not None and snapshot.stoch_rsi is not None:
        k = snapshot.stoch_rsi.k
        if snapshot.bull_state and k < 80:
            regime, confidence = Regime.WEAK_UPTREND, 4
        elif not snapshot.bull_state and k > 20:
            regime, confidence = Regime.WEAK_DOWNTREND, 4
    return RegimeAssessment(
        regime=regime,
        confidence=confidence,
        reasoning="Fallback analysis - AI unavailable",
        signals="Limited data available",
        outlook="Monitor for clearer signals",
        recommendations=list(RECOMMENDATIONS[regime]),
        source="fallback",
    )


class RegimeClassifier:
    """Caching, rate-limited wrapper around a :class:`RegimeBackend`."""

    def __init__(
        self,
        backend: RegimeBackend,
        *,
        event_log: Optional[EventLog] = None,
        min_interval: float = 600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.event_log = event_log
        self.min_interval = float(min_interval)
        self._clock = clock
        self._cache: Dict[str, RegimeAssessment] = {}
        self._last_attempt: Dict[str, float] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, asset: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(asset)
            if lock is None:
                lock = threading.Lock()
                self._locks[asset] = lock
            return lock

    def cached(self, asset: str) -> Optional[RegimeAssessment]:
        return self._cache.get(asset)

    def assess(
        self,
        asset: str,
        snapshot: Any,
        price_history: Sequence[float] = (),
        source: str = "auto",
    ) -> RegimeAssessment:
        snap = IndicatorSnapshot.coerce(snapshot)
        if source == "manual":
            logger.info("%s: performing manual regime assessment", asset)
            return self._classify(asset, snap, price_history, source)

        with self._lock_for(asset):
            now = self._clock()
            last = self._last_attempt.get(asset)
            cached = self._cache.get(asset)
            if cached is not None and last is not None and now - last < self.min_interval:
                remaining = self.min_interval - (now - last)
                logger.info("%s: regime rate limited, returning cached result (%.0fs remaining)", asset, remaining)
                return cached
            self._last_attempt[asset] = now
            assessment = self._classify(asset, snap, price_history, source)
            self._cache[asset] = assessment
            self._record(asset, assessment)
            return assessment

    def _classify(
        self,
        asset: str,
        snap: IndicatorSnapshot,
        price_history: Sequence[float],
        source: str,
    ) -> RegimeAssessment:
        prompt = build_prompt(asset, snap, price_history)
        try:
            reply = self.backend.classify(SYSTEM_PROMPT, prompt)
            assessment = parse_regime_response(reply)
        except RegimeParseError as exc:
            logger.warning("%s: regime reply rejected (%s); using fallback", asset, exc)
            return fallback_assessment(snap)
        except Exception as exc:
            logger.error("%s: regime classification failed: %s", asset, exc, exc_info=True)
            return fallback_assessment(snap)
        logger.info("%s regime: %s (confidence %d/10, %s)", asset, assessment.regime.value, assessment.confidence, source)
        return assessment

    def _record(self, asset: str, assessment: RegimeAssessment) -> None:
        record_metric("regime_confidence", assessment.confidence, labels={"asset": asset, "regime": assessment.regime.value})
        if self.event_log is None:
            return
        try:
            self.event_log.append(asset, EventType.REGIME_ASSESSMENT, assessment.to_dict())
        except OSError:
            logger.warning("Failed to store regime assessment for %s", asset, exc_info=True)


__all__ = [
    "GroqRegimeBackend",
    "RECOMMENDATIONS",
    "RegimeBackend",
    "RegimeClassificationError",
    "RegimeClassifier",
    "RegimeParseError",
    "SYSTEM_PROMPT",
    "build_prompt",
    "fallback_assessment",
    "hourly_averages",
    "market_metrics",
    "parse_regime_response",
]
