"""Exit management for an open long position.

Each evaluation runs the stop sub-state machine held on
:class:`position_state.PositionState`:

* ``FIXED_STOP`` - close when ROE falls to ``-stop_loss_pct``.
* ``FIB_TRAILING`` - entered once, after the grace period, when ``fib_entry``
  has risen above the entry price.  The stop starts at ``wma_fib_0`` and is
  ratcheted up whenever ``wma_fib_0`` exceeds it.  Close when price falls to
  the stop.

Take-profit is checked every cycle against a ROE target.  The target comes
from the supervisor's regime record while it is fresh; otherwise it falls back
to the configured two-tier value chosen by the 4-hour trend.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from config import RiskSettings
from event_log import EventType
from exchange_client import LivePosition
from log_utils import setup_logger
from market_schema import IndicatorSnapshot, to_float
from position_state import PositionState
from state_store import REGIME_RISK, StateStore

logger = setup_logger(__name__)

EventSink = Callable[[str, Mapping[str, Any]], None]


class StopMode(str, Enum):
    FIXED_STOP = "FIXED_STOP"
    FIB_TRAILING = "FIB_TRAILING"
    CLOSED = "CLOSED"


@dataclass(frozen=True)
class RiskParameters:
    stop_loss_pct: float
    take_profit_pct: float
    size_multiplier: float = 1.0
    strategy: str = "DEFAULT"
    regime: str = "CONFIG_DEFAULT"


@dataclass(frozen=True)
class RiskDecision:
    should_close: bool
    live_stop_loss_pct: float
    live_take_profit_pct: float
    reason: Optional[str] = None
    value: Optional[Any] = None
    stop_mode: StopMode = StopMode.FIXED_STOP
    stop_price: Optional[float] = None
    roe: Optional[float] = None
    strategy: str = "DEFAULT"
    regime: str = "CONFIG_DEFAULT"
    size_multiplier: float = 1.0
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "should_close": self.should_close,
            "reason": self.reason,
            "value": self.value,
            "live_stop_loss_pct": self.live_stop_loss_pct,
            "live_take_profit_pct": self.live_take_profit_pct,
            "stop_mode": self.stop_mode.value,
            "stop_price": self.stop_price,
            "roe": self.roe,
            "strategy": self.strategy,
            "regime": self.regime,
            "size_multiplier": self.size_multiplier,
            "skipped": self.skipped,
        }


def stop_mode_of(position: PositionState) -> StopMode:
    record = position.record
    if not record.in_position:
        return StopMode.CLOSED
    return StopMode.FIB_TRAILING if record.fib_stop_active else StopMode.FIXED_STOP


class RiskEngine:
    def __init__(
        self,
        asset: str,
        settings: RiskSettings,
        store: StateStore,
        *,
        clock: Callable[[], float] = time.time,
        on_event: Optional[EventSink] = None,
    ) -> None:
        self.asset = asset
        self.settings = settings
        self.store = store
        self._clock = clock
        self._on_event = on_event

    def _emit(self, event_type: str, details: Mapping[str, Any]) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event_type, details)
        except Exception:
            logger.warning("Event sink failed for %s", event_type, exc_info=True)

    def load_parameters(self, bull_state: bool) -> RiskParameters:
        """Regime parameters while fresh, otherwise the configured defaults."""

        record = self.store.get(self.asset, REGIME_RISK)
        if record:
            stop_loss = to_float(record.get("live_stop_loss_pct"))
            take_profit = to_float(record.get("live_take_profit_pct"))
            updated = to_float(record.get("updated_at"))
            age = None if updated is None else self._clock() - updated
            if (
                stop_loss is not None
                and take_profit is not None
                and age is not None
                and age <= self.settings.regime_risk_max_age_seconds
            ):
                size = to_float(record.get("size_multiplier"))
                return RiskParameters(
                    stop_loss_pct=stop_loss,
                    take_profit_pct=take_profit,
                    size_multiplier=1.0 if size is None else size,
                    strategy=str(record.get("strategy") or "DYNAMIC"),
                    regime=str(record.get("regime") or "UNKNOWN"),
                )
            logger.debug("%s regime risk record stale or incomplete; using defaults", self.asset)
        take_profit = self.settings.take_profit_bull_pct if bull_state else self.settings.take_profit_bear_pct
        return RiskParameters(
            stop_loss_pct=self.settings.stop_loss_pct,
            take_profit_pct=take_profit,
            regime="BULL_DEFAULT" if bull_state else "BEAR_DEFAULT",
        )

    def evaluate(
        self,
        position: PositionState,
        live_position: Optional[LivePosition],
        current_price: Optional[float],
        snapshot: Any,
    ) -> RiskDecision:
        snap = IndicatorSnapshot.coerce(snapshot)
        params = self.load_parameters(snap.bull_state)
        base = dict(
            live_stop_loss_pct=params.stop_loss_pct,
            live_take_profit_pct=params.take_profit_pct,
            strategy=params.strategy,
            regime=params.regime,
            size_multiplier=params.size_multiplier,
        )
        record = position.record
        price = to_float(current_price)
        if not record.in_position or record.entry_price is None:
            return RiskDecision(should_close=False, stop_mode=StopMode.CLOSED, skipped=True, **base)
        if snap.wma_fib_0 is None or snap.fib_entry is None or price is None:
            logger.warning("%s: skipping risk check due to missing analysis data", self.asset)
            return RiskDecision(should_close=False, stop_mode=stop_mode_of(position), skipped=True, **base)
        if live_position is None:
            logger.warning("%s: skipping risk check; no live position info", self.asset)
            return RiskDecision(should_close=False, stop_mode=stop_mode_of(position), skipped=True, **base)

        roe = live_position.return_on_equity
        entry_price = record.entry_price
        self._advance_trailing_stop(position, snap)
        record = position.record
        mode = stop_mode_of(position)
        base.update(stop_mode=mode, stop_price=record.stop_price, roe=roe)

        if mode is StopMode.FIB_TRAILING:
            if price <= record.stop_price:
                logger.warning(
                    "FIB-STOP HIT for %s: price %.6f <= stop %.6f", self.asset, price, record.stop_price
                )
                self._emit(
                    EventType.STOP_HIT,
                    {
                        "kind": "FIB-STOP",
                        "current_price": price,
                        "stop_price": record.stop_price,
                        "roe": roe,
                        "entry_price": entry_price,
                    },
                )
                return RiskDecision(should_close=True, reason="FIB-STOP", value=record.stop_price, **base)
        elif roe <= -params.stop_loss_pct:
            logger.warning(
                "STOP-LOSS HIT for %s: ROE %.2f%% <= -%.2f%%",
                self.asset,
                roe * 100,
                params.stop_loss_pct * 100,
            )
            self._emit(EventType.STOP_HIT, {"kind": "STOP-LOSS", "roe": roe, "stop_loss_pct": params.stop_loss_pct})
            return RiskDecision(should_close=True, reason="STOP-LOSS", value=f"{roe * 100:.2f}%", **base)

        if roe >= params.take_profit_pct:
            logger.info(
                "TAKE-PROFIT HIT for %s: ROE %.2f%% >= %.2f%%",
                self.asset,
                roe * 100,
                params.take_profit_pct * 100,
            )
            self._emit(
                EventType.TAKE_PROFIT_HIT, {"roe": roe, "take_profit_pct": params.take_profit_pct}
            )
            return RiskDecision(should_close=True, reason="TAKE-PROFIT", value=f"{roe * 100:.2f}%", **base)

        return RiskDecision(should_close=False, **base)

    def _advance_trailing_stop(self, position: PositionState, snap: IndicatorSnapshot) -> None:
        record = position.record
        if record.fib_stop_active:
            previous = record.stop_price
            if position.ratchet_stop(snap.wma_fib_0):
                logger.info(
                    "FIB-TRAIL UPDATED for %s: stop moved up from %.6f to %.6f",
                    self.asset,
                    previous,
                    snap.wma_fib_0,
                )
                self._emit(EventType.FIB_STOP_RATCHETED, {"old_stop": previous, "new_stop": snap.wma_fib_0})
            return

        elapsed = self._clock() - (record.entry_time or self._clock())
        if elapsed <= self.settings.grace_period_seconds:
            logger.debug("%s in grace period (%.0fs); fib-trail activation paused", self.asset, elapsed)
            return
        if snap.fib_entry > record.entry_price:
            position.activate_fib_stop(snap.wma_fib_0)
            logger.info(
                "FIB-TRAIL ACTIVATED for %s: fib_entry %.6f > entry %.6f, stop %.6f",
                self.asset,
                snap.fib_entry,
                record.entry_price,
                snap.wma_fib_0,
            )
            self._emit(
                EventType.FIB_STOP_ACTIVATED,
                {
                    "fib_entry": snap.fib_entry,
                    "stop_price": snap.wma_fib_0,
                    "entry_price": record.entry_price,
                },
            )


__all__ = ["RiskDecision", "RiskEngine", "RiskParameters", "StopMode", "stop_mode_of"]
