"""Hyperliquid market data client and the paper-trading order transport.

``HyperliquidInfoClient`` wraps the public ``/info`` endpoint with
:mod:`requests`.  It is the source of mid prices, asset metadata and the
authoritative open-position list.  ``PaperExchange`` accepts orders in the
exchange's wire format, fills them at the current mid price and keeps the
resulting positions on disk so reconciliation behaves the same way after a
restart as it does against the live venue.
"""

from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

import requests

from file_utils import atomic_write_json
from log_utils import setup_logger
from market_schema import to_float

logger = setup_logger(__name__)

_DEFAULT_INFO_URL = "https://api.hyperliquid.xyz/info"


def _env_float(name: str, default: float, *, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    return max(minimum, min(maximum, value))


_HTTP_TIMEOUT = _env_float("EXCHANGE_HTTP_TIMEOUT", 10.0, minimum=1.0, maximum=60.0)


def info_api_url() -> str:
    return os.getenv("HYPERLIQUID_INFO_URL", _DEFAULT_INFO_URL) or _DEFAULT_INFO_URL


class ExchangeError(RuntimeError):
    """Raised when the exchange cannot be reached or returns an error."""


class RateLimitError(ExchangeError):
    """Raised on HTTP 429 responses."""


@dataclass(frozen=True)
class LivePosition:
    coin: str
    size: float
    entry_price: float
    return_on_equity: float = 0.0
    unrealized_pnl: float = 0.0

    @property
    def direction(self) -> str:
        return "LONG" if self.size > 0 else "SHORT"

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Optional["LivePosition"]:
        """Build from a clearinghouse ``assetPositions[].position`` entry."""

        coin = payload.get("coin")
        size = to_float(payload.get("szi"))
        entry = to_float(payload.get("entryPx"))
        if not coin or size is None or entry is None or size == 0:
            return None
        return cls(
            coin=str(coin),
            size=size,
            entry_price=entry,
            return_on_equity=to_float(payload.get("returnOnEquity")) or 0.0,
            unrealized_pnl=to_float(payload.get("unrealizedPnl")) or 0.0,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "coin": self.coin,
            "size": self.size,
            "entry_price": self.entry_price,
            "return_on_equity": self.return_on_equity,
            "unrealized_pnl": self.unrealized_pnl,
            "direction": self.direction,
        }


@dataclass(frozen=True)
class AssetMeta:
    name: str
    index: int
    sz_decimals: int


class HyperliquidInfoClient:
    """Read-only client for the exchange ``/info`` endpoint."""

    def __init__(
        self,
        user_address: str = "",
        *,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.user_address = (user_address or "").lower()
        self.api_url = api_url or info_api_url()
        self.timeout = timeout or _HTTP_TIMEOUT
        self.session = session or requests.Session()
        self._meta_cache: Optional[List[AssetMeta]] = None

    def _post(self, payload: Mapping[str, Any]) -> Any:
        try:
            response = self.session.post(self.api_url, json=dict(payload), timeout=self.timeout)
        except requests.RequestException as exc:
            raise ExchangeError(f"{payload.get('type')} request failed: {exc}") from exc
        if response.status_code == 429:
            raise RateLimitError(f"Rate limited (429) on {payload.get('type')}")
        if response.status_code >= 400:
            raise ExchangeError(
                f"{payload.get('type')} returned HTTP {response.status_code}: {response.text[:200]}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ExchangeError(f"{payload.get('type')} returned invalid JSON") from exc

    def all_mids(self) -> Dict[str, float]:
        data = self._post({"type": "allMids"})
        if not isinstance(data, Mapping):
            raise ExchangeError("allMids returned an unexpected payload")
        mids: Dict[str, float] = {}
        for coin, raw in data.items():
            value = to_float(raw)
            if value is not None:
                mids[str(coin)] = value
        return mids

    def get_mid_price(self, coin: str) -> Optional[float]:
        price = self.all_mids().get(coin)
        if price is None:
            logger.warning("Asset %s not found in allMids response", coin)
        return price

    def meta(self, refresh: bool = False) -> List[AssetMeta]:
        if self._meta_cache is not None and not refresh:
            return self._meta_cache
        data = self._post({"type": "meta"})
        universe = data.get("universe") if isinstance(data, Mapping) else None
        if not isinstance(universe, list):
            raise ExchangeError("meta returned no universe")
        assets = []
        for index, entry in enumerate(universe):
            if not isinstance(entry, Mapping) or not entry.get("name"):
                continue
            try:
                decimals = int(entry.get("szDecimals", 0))
            except (TypeError, ValueError):
                decimals = 0
            assets.append(AssetMeta(name=str(entry["name"]), index=index, sz_decimals=decimals))
        self._meta_cache = assets
        return assets

    def asset_meta(self, coin: str) -> AssetMeta:
        for asset in self.meta():
            if asset.name == coin:
                return asset
        raise ExchangeError(f"Asset {coin} not found in exchange metadata")

    def clearinghouse_state(self, user: Optional[str] = None) -> Dict[str, Any]:
        address = (user or self.user_address).lower()
        if not address:
            raise ExchangeError("No wallet address configured for clearinghouse queries")
        data = self._post({"type": "clearinghouseState", "user": address})
        if not isinstance(data, Mapping):
            raise ExchangeError("clearinghouseState returned an unexpected payload")
        return dict(data)

    def open_positions(self, user: Optional[str] = None) -> List[LivePosition]:
        state = self.clearinghouse_state(user)
        positions = []
        for entry in state.get("assetPositions") or []:
            payload = entry.get("position") if isinstance(entry, Mapping) else None
            if isinstance(payload, Mapping):
                position = LivePosition.from_payload(payload)
                if position is not None:
                    positions.append(position)
        return positions


class PaperExchange:
    """Order transport and position source that simulates fills at the mid price.

    Positions are persisted to ``state_path`` so that an agent restart
    reconciles against the same book it traded on.
    """

    def __init__(self, info: HyperliquidInfoClient, state_path: str, *, leverage: float = 1.0) -> None:
        self.info = info
        self.state_path = state_path
        self.leverage = float(leverage) if leverage else 1.0
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, Dict[str, float]]:
        if not os.path.exists(self.state_path):
            return {}
        try:
            with open(self.state_path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise ExchangeError(f"Paper book {self.state_path} unreadable: {exc}") from exc
        return {k: dict(v) for k, v in data.items() if isinstance(v, Mapping)} if isinstance(data, Mapping) else {}

    def _save(self, book: Mapping[str, Mapping[str, float]]) -> None:
        atomic_write_json(self.state_path, dict(book))

    def _coin_for_index(self, index: int) -> str:
        for asset in self.info.meta():
            if asset.index == index:
                return asset.name
        raise ExchangeError(f"Unknown asset index {index}")

    def order(self, orders: Sequence[Mapping[str, Any]], grouping: str = "na") -> Dict[str, Any]:
        statuses = []
        with self._lock:
            book = self._load()
            for order in orders:
                statuses.append(self._fill(book, order))
            self._save(book)
        return {"status": "ok", "response": {"type": "order", "data": {"statuses": statuses}}}

    def _fill(self, book: Dict[str, Dict[str, float]], order: Mapping[str, Any]) -> Dict[str, Any]:
        coin = self._coin_for_index(int(order["a"]))
        is_buy = bool(order.get("b"))
        limit = to_float(order.get("p"))
        size = to_float(order.get("s"))
        reduce_only = bool(order.get("r"))
        if limit is None or size is None or size <= 0:
            return {"error": "Invalid order size or price"}
        mid = self.info.get_mid_price(coin)
        if mid is None:
            return {"error": f"No mid price for {coin}"}
        # IOC limit semantics: a buy only fills at or below its limit, a sell at or above.
        if (is_buy and mid > limit) or (not is_buy and mid < limit):
            return {"error": "Order could not immediately match against any resting orders."}
        signed = size if is_buy else -size
        current = book.get(coin)
        if reduce_only:
            if not current or current["szi"] * signed >= 0:
                return {"error": "Reduce only order would increase position."}
            remaining = current["szi"] + signed
            if abs(remaining) < 1e-12 or remaining * current["szi"] < 0:
                book.pop(coin, None)
                filled = abs(current["szi"])
            else:
                current["szi"] = remaining
                filled = size
        else:
            if current:
                total = current["szi"] + signed
                if abs(total) < 1e-12:
                    book.pop(coin, None)
                else:
                    current["entryPx"] = (current["entryPx"] * current["szi"] + mid * signed) / total
                    current["szi"] = total
            else:
                book[coin] = {"szi": signed, "entryPx": mid}
            filled = size
        return {"filled": {"totalSz": f"{filled}", "avgPx": f"{mid}", "oid": len(book)}}

    def get_live_position(self, coin: str) -> Optional[LivePosition]:
        with self._lock:
            entry = self._load().get(coin)
        if not entry:
            return None
        size = float(entry["szi"])
        entry_price = float(entry["entryPx"])
        mid = self.info.get_mid_price(coin)
        roe = 0.0
        pnl = 0.0
        if mid is not None and entry_price > 0:
            move = (mid - entry_price) / entry_price
            roe = move * self.leverage if size > 0 else -move * self.leverage
            pnl = (mid - entry_price) * size
        return LivePosition(coin=coin, size=size, entry_price=entry_price, return_on_equity=roe, unrealized_pnl=pnl)

    def open_positions(self) -> List[LivePosition]:
        with self._lock:
            coins = list(self._load())
        return [p for p in (self.get_live_position(c) for c in coins) if p is not None]


__all__ = [
    "AssetMeta",
    "ExchangeError",
    "HyperliquidInfoClient",
    "LivePosition",
    "PaperExchange",
    "RateLimitError",
    "info_api_url",
]
