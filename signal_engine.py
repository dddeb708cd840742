"""Arm/disarm entry trigger for the fib-bounce strategy.

Price dipping below ``fib_entry`` arms the trigger.  While armed, a close back
above ``wma_fib_0`` with the 5-minute Stochastic RSI below the variant's
overbought cutoff fires a single ``buy`` and disarms.

Three historical flavours of the rules are kept as named
:class:`StrategyVariant` entries so the active behaviour is an explicit
configuration choice:

``fib_bounce``
    Oscillator cutoff 60, no reset, no 4-hour gating.
``fib_bounce_reset``
    As ``fib_bounce`` but disarms without buying once price runs more than
    ``reset_pct`` above ``wma_fib_0``.
``fib_bounce_4h``
    Oscillator cutoff 80 and two 4-hour gates evaluated before the trigger:
    overbought 4-hour Stochastic RSI blocks, and a bearish 4-hour trend blocks
    unless the 4-hour Stochastic RSI is oversold.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from event_log import EventType
from log_utils import setup_logger
from market_schema import IndicatorSnapshot, Signal, StochReading
from position_state import PositionState

logger = setup_logger(__name__)

EventSink = Callable[[str, Mapping[str, Any]], None]


@dataclass(frozen=True)
class StrategyVariant:
    name: str
    oscillator_cutoff: Optional[float] = 60.0
    reset_pct: Optional[float] = None
    gate_on_4h_stoch: bool = False
    gate_on_4h_trend: bool = False
    trend_overbought: float = 80.0
    trend_oversold: float = 20.0

    @property
    def needs_trend_data(self) -> bool:
        return self.gate_on_4h_stoch or self.gate_on_4h_trend


VARIANTS: Dict[str, StrategyVariant] = {
    "fib_bounce": StrategyVariant(name="fib_bounce"),
    "fib_bounce_reset": StrategyVariant(name="fib_bounce_reset", reset_pct=0.005),
    "fib_bounce_4h": StrategyVariant(
        name="fib_bounce_4h",
        oscillator_cutoff=80.0,
        gate_on_4h_stoch=True,
        gate_on_4h_trend=True,
    ),
}

DEFAULT_VARIANT = "fib_bounce"


def get_variant(name: Optional[str]) -> StrategyVariant:
    key = (name or DEFAULT_VARIANT).strip().lower()
    try:
        return VARIANTS[key]
    except KeyError:
        raise ValueError(f"Unknown signal variant {name!r}; choose from {sorted(VARIANTS)}") from None


class SignalEngine:
    """Turns indicator snapshots into ``hold``/``buy`` decisions."""

    def __init__(
        self,
        state: PositionState,
        variant: StrategyVariant | str = DEFAULT_VARIANT,
        *,
        on_event: Optional[EventSink] = None,
    ) -> None:
        self.state = state
        self.variant = variant if isinstance(variant, StrategyVariant) else get_variant(variant)
        self._on_event = on_event
        logger.info("%s signal variant: %s", state.asset, self.variant)

    def _emit(self, event_type: str, details: Mapping[str, Any]) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event_type, details)
        except Exception:
            logger.warning("Event sink failed for %s", event_type, exc_info=True)

    def generate(self, snapshot: Any) -> Signal:
        try:
            return self._generate(IndicatorSnapshot.coerce(snapshot))
        except (TypeError, ValueError, ArithmeticError) as exc:
            logger.warning("Malformed snapshot for %s: %s", self.state.asset, exc)
            return Signal.hold("Waiting for valid indicator data.")

    def _generate(self, snap: IndicatorSnapshot) -> Signal:
        if not snap.has_levels:
            return Signal.hold("Waiting for data: price or fib levels missing.")
        if snap.stoch_rsi is None:
            return Signal.hold("Waiting for 5-min Stochastic RSI data.")
        variant = self.variant
        if variant.needs_trend_data and snap.stoch_rsi_4hr is None:
            return Signal.hold("Waiting for 4-hour Stochastic RSI data.")

        blocked = self._trend_gate(snap)
        if blocked is not None:
            return blocked

        price, fib_entry, wma_fib_0 = snap.latest_price, snap.fib_entry, snap.wma_fib_0
        if not self.state.is_trigger_armed():
            if price < fib_entry:
                self.state.set_trigger_armed(True)
                self._emit(
                    EventType.TRIGGER_ARMED,
                    {"price": price, "fib_entry": fib_entry, "wma_fib_0": wma_fib_0},
                )
                return Signal.hold("Trigger has been armed.")
            return Signal.hold(f"Waiting for price < {fib_entry:.4f} to arm trigger.")

        if price > wma_fib_0:
            if self._oscillator_overbought(snap.stoch_rsi):
                if not self._reset_exceeded(price, wma_fib_0):
                    return self._blocked(
                        "5min_stoch_overbought",
                        f"Price condition met, but 5-min Stoch is overbought "
                        f"(K:{snap.stoch_rsi.k:.2f} D:{snap.stoch_rsi.d:.2f}).",
                        k=snap.stoch_rsi.k,
                        d=snap.stoch_rsi.d,
                    )
            else:
                self.state.set_trigger_armed(False)
                message = f"BUY SIGNAL! Price {price:.4f} > WMA_Fib_0 ({wma_fib_0:.4f}) and all blockers passed."
                logger.info(message)
                self._emit(EventType.BUY_SIGNAL, {"price": price, "wma_fib_0": wma_fib_0})
                return Signal.buy(message)

        if self._reset_exceeded(price, wma_fib_0):
            self.state.set_trigger_armed(False)
            self._emit(
                EventType.TRIGGER_DISARMED,
                {"price": price, "wma_fib_0": wma_fib_0, "reset_pct": variant.reset_pct},
            )
            return Signal.hold("Trigger disarmed: price ran above the reset threshold without a buy.")
        return Signal.hold(f"Trigger is armed. Waiting for price > {wma_fib_0:.4f}.")

    def _trend_gate(self, snap: IndicatorSnapshot) -> Optional[Signal]:
        variant = self.variant
        trend = snap.stoch_rsi_4hr
        if trend is None:
            return None
        if variant.gate_on_4h_stoch and (trend.k > variant.trend_overbought or trend.d > variant.trend_overbought):
            return self._blocked(
                "4hr_stoch_overbought", "HOLD (BLOCKER): 4hr Stoch is overbought.", k=trend.k, d=trend.d
            )
        if variant.gate_on_4h_trend and not snap.bull_state:
            if trend.k < variant.trend_oversold and trend.d < variant.trend_oversold:
                logger.info(
                    "Trend is bearish but 4hr Stoch is oversold (K:%.2f); allowing reversal entry",
                    trend.k,
                )
                return None
            return self._blocked(
                "4hr_trend_bearish_not_oversold",
                "HOLD (BLOCKER): 4hr price trend is bearish and Stoch is not oversold.",
                bull_state=False,
                k_4hr=trend.k,
                d_4hr=trend.d,
            )
        return None

    def _blocked(self, code: str, message: str, **details: Any) -> Signal:
        logger.info(message)
        self._emit(EventType.TRADE_BLOCKED, {"reason": code, **details})
        return Signal.hold(message)

    def _oscillator_overbought(self, reading: StochReading) -> bool:
        cutoff = self.variant.oscillator_cutoff
        if cutoff is None:
            return False
        return reading.k >= cutoff or reading.d >= cutoff

    def _reset_exceeded(self, price: float, wma_fib_0: float) -> bool:
        reset_pct = self.variant.reset_pct
        return reset_pct is not None and price > wma_fib_0 * (1 + reset_pct)


__all__ = ["DEFAULT_VARIANT", "SignalEngine", "StrategyVariant", "VARIANTS", "get_variant"]
