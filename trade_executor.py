"""Immediate-or-cancel order placement for entries and reduce-only exits."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence

from config import TradingSettings
from event_log import EventLog, EventType
from exchange_client import ExchangeError, HyperliquidInfoClient
from log_utils import setup_logger
from market_schema import to_float

logger = setup_logger(__name__)

MAX_PRICE_DECIMALS = 6
PRICE_SIG_FIGS = 5


class OrderTransport(Protocol):
    def order(self, orders: Sequence[Mapping[str, Any]], grouping: str = "na") -> Dict[str, Any]:
        ...


@dataclass(frozen=True)
class TradeResult:
    success: bool
    size: float = 0.0
    price: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "size": self.size, "price": self.price, "error": self.error}


def round_size(size: float, sz_decimals: int) -> float:
    return round(size, max(0, sz_decimals))


def round_price(price: float, sz_decimals: int) -> float:
    """Round to five significant figures and at most ``6 - sz_decimals`` decimals."""

    if price <= 0:
        return 0.0
    magnitude = math.floor(math.log10(abs(price)))
    sig_decimals = max(0, PRICE_SIG_FIGS - 1 - magnitude)
    decimals = min(sig_decimals, max(0, MAX_PRICE_DECIMALS - sz_decimals))
    return round(price, decimals)


def _format_number(value: float) -> str:
    text = f"{value:.8f}".rstrip("0").rstrip(".")
    return text or "0"


def _first_status(result: Mapping[str, Any]) -> Mapping[str, Any]:
    if result.get("status") != "ok":
        raise ExchangeError(f"Order rejected: {result}")
    statuses = (((result.get("response") or {}).get("data") or {}).get("statuses")) or []
    if not statuses or not isinstance(statuses[0], Mapping):
        raise ExchangeError(f"Order response missing statuses: {result}")
    return statuses[0]


class TradeExecutor:
    def __init__(
        self,
        asset: str,
        info: HyperliquidInfoClient,
        transport: OrderTransport,
        settings: TradingSettings,
        *,
        event_log: Optional[EventLog] = None,
    ) -> None:
        self.asset = asset
        self.info = info
        self.transport = transport
        self.settings = settings
        self.event_log = event_log

    def _log(self, event_type: str, details: Mapping[str, Any]) -> None:
        if self.event_log is None:
            return
        try:
            self.event_log.append(self.asset, event_type, details)
        except OSError:
            logger.warning("Failed to record %s for %s", event_type, self.asset, exc_info=True)

    def _current_price(self) -> float:
        price = self.info.get_mid_price(self.asset)
        if not price:
            raise ExchangeError(f"Could not fetch current price for {self.asset}")
        return price

    def execute_buy(self, usd_size: float) -> TradeResult:
        try:
            if usd_size <= 0:
                raise ValueError(f"Trade size must be positive, got {usd_size}")
            logger.info("Executing BUY for %s with target size ~$%.2f", self.asset, usd_size)
            meta = self.info.asset_meta(self.asset)
            price = self._current_price()
            size = round_size(usd_size / price, meta.sz_decimals)
            if size <= 0:
                raise ValueError(f"Order size rounds to zero at price {price}")
            limit = round_price(price * (1 + self.settings.slippage), meta.sz_decimals)
            payload = {
                "a": meta.index,
                "b": True,
                "p": _format_number(limit),
                "s": _format_number(size),
                "r": False,
                "t": {"limit": {"tif": "Ioc"}},
            }
            status = _first_status(self.transport.order([payload], grouping="na"))
            filled = status.get("filled")
            if not isinstance(filled, Mapping):
                raise ExchangeError(f"Order was not filled immediately: {status.get('error', status)}")
            avg_px = to_float(filled.get("avgPx")) or 0.0
            total = to_float(filled.get("totalSz")) or 0.0
        except (ExchangeError, ValueError, KeyError, TypeError) as exc:
            logger.error("Error in execute_buy for %s: %s", self.asset, exc)
            self._log(EventType.TRADE_FAILED, {"error": str(exc), "usd_size": usd_size})
            return TradeResult(success=False, error=str(exc))

        logger.info("TRADE EXECUTED: bought %s %s @ $%s", total, self.asset, avg_px)
        self._log(EventType.TRADE_EXECUTED, {"size": total, "avg_px": avg_px, "usd_size": usd_size})
        return TradeResult(success=True, size=total, price=avg_px)

    def close_position(self, size: float) -> TradeResult:
        try:
            if not size:
                raise ValueError("Nothing to close: size is zero")
            closing_long = size > 0
            meta = self.info.asset_meta(self.asset)
            price = self._current_price()
            offset = -self.settings.slippage if closing_long else self.settings.slippage
            limit = round_price(price * (1 + offset), meta.sz_decimals)
            logger.info(
                "Executing CLOSE for %s position of size %s (%s)",
                self.asset,
                size,
                "SELL" if closing_long else "BUY",
            )
            payload = {
                "a": meta.index,
                "b": not closing_long,
                "p": _format_number(limit),
                "s": _format_number(abs(size)),
                "r": True,
                "t": {"limit": {"tif": "Ioc"}},
            }
            status = _first_status(self.transport.order([payload], grouping="na"))
            filled = status.get("filled")
            if not isinstance(filled, Mapping):
                raise ExchangeError(f"Close order was not filled: {status.get('error', status)}")
            avg_px = to_float(filled.get("avgPx")) or 0.0
        except (ExchangeError, ValueError, KeyError, TypeError) as exc:
            logger.error("Error in close_position for %s: %s", self.asset, exc)
            self._log(EventType.CLOSE_FAILED, {"error": str(exc), "size": size})
            return TradeResult(success=False, error=str(exc))

        logger.info("POSITION CLOSED: %s @ ~$%s", self.asset, avg_px)
        self._log(EventType.POSITION_CLOSED, {"size": size, "avg_px": avg_px})
        return TradeResult(success=True, size=abs(size), price=avg_px)


__all__ = ["OrderTransport", "TradeExecutor", "TradeResult", "round_price", "round_size"]
