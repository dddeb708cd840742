"""In-position and trigger state for a single asset.

The in-memory :class:`PositionState` is the source of truth while an agent
runs.  Every change is mirrored into the ``position`` record of the
:class:`state_store.StateStore` so the supervisor and other front ends can
read it.  On startup the exchange, not the local record, decides whether the
agent is in a position (see :meth:`PositionState.load_initial_state`).
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional, Protocol

from exchange_client import ExchangeError, LivePosition
from log_utils import setup_logger
from market_schema import to_float
from state_store import LIVE_RISK, POSITION, StateStore

logger = setup_logger(__name__)


class ReconciliationError(RuntimeError):
    """Raised when the authoritative position list cannot be fetched."""


class PositionSource(Protocol):
    def get_live_position(self, coin: str) -> Optional[LivePosition]:
        ...


@dataclass(frozen=True)
class PositionRecord:
    in_position: bool = False
    direction: Optional[str] = None
    size: float = 0.0
    entry_price: Optional[float] = None
    entry_time: Optional[float] = None
    fib_stop_active: bool = False
    stop_price: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "in_position": self.in_position,
            "direction": self.direction,
            "size": self.size,
            "entry_price": self.entry_price,
            "entry_time": self.entry_time,
            "fib_stop_active": self.fib_stop_active,
            "stop_price": self.stop_price,
        }


class PositionState:
    """Tracks position and trigger flags for ``asset``.

    The trigger always starts disarmed.  ``stop_price`` only moves up once the
    fib trailing stop is active.
    """

    def __init__(
        self,
        asset: str,
        store: StateStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.asset = asset
        self.store = store
        self._clock = clock
        self._lock = threading.RLock()
        self._record = PositionRecord()
        self._trigger_armed = False

    # -- trigger -------------------------------------------------------------
    def is_trigger_armed(self) -> bool:
        return self._trigger_armed

    def set_trigger_armed(self, armed: bool) -> bool:
        """Set the trigger flag; returns ``True`` when the value changed."""

        with self._lock:
            if self._trigger_armed == armed:
                return False
            self._trigger_armed = armed
        logger.info("%s trigger has been %s", self.asset, "ARMED" if armed else "DISARMED")
        return True

    # -- position ------------------------------------------------------------
    @property
    def record(self) -> PositionRecord:
        return self._record

    def is_in_position(self) -> bool:
        return self._record.in_position

    def open_position(
        self,
        entry_price: float,
        size: float,
        *,
        direction: str = "LONG",
        entry_time: Optional[float] = None,
    ) -> PositionRecord:
        with self._lock:
            self._record = PositionRecord(
                in_position=True,
                direction=direction,
                size=float(size),
                entry_price=float(entry_price),
                entry_time=self._clock() if entry_time is None else float(entry_time),
            )
            self._trigger_armed = False
            self._persist()
            return self._record

    def close_position(self) -> None:
        """Leave the position and clear every dependent sub-state."""

        with self._lock:
            self._record = PositionRecord()
            self._trigger_armed = False
            self.store.delete(self.asset, POSITION)
            self.store.delete(self.asset, LIVE_RISK)
        logger.info("%s position state cleared", self.asset)

    def sync_size(self, size: float) -> None:
        with self._lock:
            if self._record.in_position and size != self._record.size:
                self._record = replace(self._record, size=float(size))
                self._persist()

    # -- trailing stop -------------------------------------------------------
    def activate_fib_stop(self, stop_price: float) -> None:
        with self._lock:
            if not self._record.in_position:
                raise RuntimeError(f"{self.asset}: cannot activate a stop without a position")
            self._record = replace(self._record, fib_stop_active=True, stop_price=float(stop_price))
            self._persist()

    def ratchet_stop(self, candidate: float) -> bool:
        """Raise the trailing stop to ``candidate`` if it is higher."""

        with self._lock:
            current = self._record.stop_price
            if not self._record.fib_stop_active or current is None or candidate <= current:
                return False
            self._record = replace(self._record, stop_price=float(candidate))
            self._persist()
            return True

    # -- reconciliation ------------------------------------------------------
    def load_initial_state(self, source: PositionSource) -> PositionRecord:
        """Reconcile local state against the exchange's live position.

        No live position clears any stale local records.  A live position is
        adopted even when no local record exists.  When the local record
        describes the same position (direction and size) its entry time and
        trailing stop are carried over, so an active stop never moves down
        across a restart.  The trigger is disarmed either way.
        """

        try:
            live = source.get_live_position(self.asset)
        except ExchangeError as exc:
            raise ReconciliationError(f"{self.asset}: cannot fetch live position: {exc}") from exc

        with self._lock:
            self._trigger_armed = False
            if live is None:
                self._record = PositionRecord()
                removed = self.store.clear(self.asset, (POSITION, LIVE_RISK))
                if removed:
                    logger.info("%s: no live position; cleared stale %s", self.asset, ", ".join(removed))
                else:
                    logger.info("%s: no live position found", self.asset)
                return self._record

            local = self.store.get(self.asset, POSITION) or {}
            entry_time = local.get("entry_time") if local.get("in_position") else None
            try:
                entry_time = float(entry_time) if entry_time is not None else self._clock()
            except (TypeError, ValueError):
                entry_time = self._clock()
            stop_price = to_float(local.get("stop_price"))
            restore_stop = (
                bool(local.get("fib_stop_active"))
                and stop_price is not None
                and self._same_position(local, live)
            )
            self._record = PositionRecord(
                in_position=True,
                direction=live.direction,
                size=live.size,
                entry_price=live.entry_price,
                entry_time=entry_time,
                fib_stop_active=restore_stop,
                stop_price=stop_price if restore_stop else None,
            )
            self._persist()
        logger.info(
            "%s: adopted live %s position size=%s entry=%s",
            self.asset,
            live.direction,
            live.size,
            live.entry_price,
        )
        return self._record

    @staticmethod
    def _same_position(local: Dict[str, Any], live: LivePosition) -> bool:
        if not local.get("in_position") or local.get("direction") != live.direction:
            return False
        size = to_float(local.get("size"))
        return size is not None and math.isclose(size, live.size, rel_tol=1e-9, abs_tol=1e-12)

    def _persist(self) -> None:
        payload = self._record.to_dict()
        payload["asset"] = self.asset
        payload["updated_at"] = self._clock()
        self.store.put(self.asset, POSITION, payload)


__all__ = ["PositionRecord", "PositionSource", "PositionState", "ReconciliationError"]
