"""Shared record types exchanged between the agent, its engines and the supervisor.

Every record that crosses a process boundary (through :mod:`state_store`) has
a ``to_dict``/``from_mapping`` pair.  ``from_mapping`` is tolerant: missing or
malformed numeric fields become ``None`` instead of raising, so the engines
can degrade to ``hold``/skip on partial data.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def to_float(value: Any) -> Optional[float]:
    """Return ``value`` as a finite float or ``None``."""

    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def to_bool(value: Any, default: bool = False) -> bool:
    """Interpret JSON booleans, numbers and strings such as ``"false"``/``"1"``."""

    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on", "bullish"}:
        return True
    if text in {"0", "false", "no", "off", "bearish", ""}:
        return False
    return default


class Regime(str, Enum):
    STRONG_UPTREND = "STRONG_UPTREND"
    WEAK_UPTREND = "WEAK_UPTREND"
    RANGING = "RANGING"
    WEAK_DOWNTREND = "WEAK_DOWNTREND"
    STRONG_DOWNTREND = "STRONG_DOWNTREND"
    VOLATILE_UNCERTAIN = "VOLATILE_UNCERTAIN"

    @classmethod
    def parse(cls, value: Any) -> Optional["Regime"]:
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().upper().replace(" ", "_").replace("-", "_")
        try:
            return cls(text)
        except ValueError:
            return None


class RuleAction(str, Enum):
    DISABLE = "DISABLE"
    ENABLE = "ENABLE"
    REDUCE_RISK = "REDUCE_RISK"
    PANIC_ALL = "PANIC_ALL"


class AgentStatus(str, Enum):
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    HEALTHY = "HEALTHY"
    CRASHED = "CRASHED"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    FAILED = "FAILED"


class RunMode(str, Enum):
    TRADE = "trade"
    DATA_ONLY = "data-only"


@dataclass(frozen=True)
class PriceTick:
    timestamp: datetime
    price: float

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "price": self.price}


@dataclass(frozen=True)
class StochReading:
    k: float
    d: float

    @classmethod
    def from_value(cls, value: Any) -> Optional["StochReading"]:
        if isinstance(value, StochReading):
            return value
        if not isinstance(value, Mapping):
            return None
        k = to_float(value.get("k"))
        d = to_float(value.get("d"))
        if k is None or d is None:
            return None
        return cls(k=k, d=d)

    def to_dict(self) -> Dict[str, float]:
        return {"k": self.k, "d": self.d}


@dataclass(frozen=True)
class IndicatorSnapshot:
    """Indicator values derived from the rolling candle window for one tick."""

    latest_price: Optional[float] = None
    fib_entry: Optional[float] = None
    wma_fib_0: Optional[float] = None
    stoch_rsi: Optional[StochReading] = None
    stoch_rsi_4hr: Optional[StochReading] = None
    bull_state: bool = False
    atr: Optional[float] = None
    timestamp: Optional[str] = None

    @classmethod
    def coerce(cls, value: Any) -> "IndicatorSnapshot":
        if isinstance(value, IndicatorSnapshot):
            return value
        if isinstance(value, Mapping):
            return cls.from_mapping(value)
        return cls()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "IndicatorSnapshot":
        return cls(
            latest_price=to_float(data.get("latest_price")),
            fib_entry=to_float(data.get("fib_entry")),
            wma_fib_0=to_float(data.get("wma_fib_0")),
            stoch_rsi=StochReading.from_value(data.get("stoch_rsi")),
            stoch_rsi_4hr=StochReading.from_value(data.get("stoch_rsi_4hr")),
            bull_state=to_bool(data.get("bull_state")),
            atr=to_float(data.get("atr")),
            timestamp=str(data["timestamp"]) if data.get("timestamp") is not None else None,
        )

    @property
    def has_levels(self) -> bool:
        return None not in (self.latest_price, self.fib_entry, self.wma_fib_0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latest_price": self.latest_price,
            "fib_entry": self.fib_entry,
            "wma_fib_0": self.wma_fib_0,
            "stoch_rsi": self.stoch_rsi.to_dict() if self.stoch_rsi else None,
            "stoch_rsi_4hr": self.stoch_rsi_4hr.to_dict() if self.stoch_rsi_4hr else None,
            "bull_state": self.bull_state,
            "atr": self.atr,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class Signal:
    type: str
    reason: str

    @classmethod
    def hold(cls, reason: str) -> "Signal":
        return cls("hold", reason)

    @classmethod
    def buy(cls, reason: str) -> "Signal":
        return cls("buy", reason)

    @property
    def is_buy(self) -> bool:
        return self.type == "buy"


@dataclass
class RegimeAssessment:
    regime: Regime
    confidence: int
    reasoning: str = ""
    signals: str = ""
    outlook: str = ""
    recommendations: List[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now_iso)
    source: str = "llm"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "regime": self.regime.value,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "signals": self.signals,
            "outlook": self.outlook,
            "recommendations": list(self.recommendations),
            "timestamp": self.timestamp,
            "source": self.source,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> Optional["RegimeAssessment"]:
        regime = Regime.parse(data.get("regime"))
        confidence = to_float(data.get("confidence"))
        if regime is None or confidence is None:
            return None
        return cls(
            regime=regime,
            confidence=int(max(1, min(10, round(confidence)))),
            reasoning=str(data.get("reasoning") or ""),
            signals=str(data.get("signals") or ""),
            outlook=str(data.get("outlook") or ""),
            recommendations=[str(r) for r in data.get("recommendations") or []],
            timestamp=str(data.get("timestamp") or utc_now_iso()),
            source=str(data.get("source") or "llm"),
        )


__all__ = [
    "AgentStatus",
    "IndicatorSnapshot",
    "PriceTick",
    "Regime",
    "RegimeAssessment",
    "RuleAction",
    "RunMode",
    "Signal",
    "StochReading",
    "to_bool",
    "to_float",
    "utc_now_iso",
]
