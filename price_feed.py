"""Polling price feed with exponential backoff on rate limits.

Normal polling happens every ``interval`` seconds.  A 429 response doubles the
wait (starting from ``interval`` and capped at one hour); the first successful
poll restores the normal interval.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from exchange_client import ExchangeError, RateLimitError
from log_utils import setup_logger
from market_schema import PriceTick

logger = setup_logger(__name__)

MAX_BACKOFF_SECONDS = 3600.0


class MidPriceSource(Protocol):
    def get_mid_price(self, coin: str) -> Optional[float]:
        ...


class PriceFeed:
    def __init__(
        self,
        asset: str,
        source: MidPriceSource,
        *,
        interval: float = 60.0,
        max_backoff: float = MAX_BACKOFF_SECONDS,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.asset = asset
        self.source = source
        self.interval = float(interval)
        self.max_backoff = float(max_backoff)
        self._now = now
        self._backoff: Optional[float] = None

    @property
    def backing_off(self) -> bool:
        return self._backoff is not None

    def poll_once(self) -> Optional[PriceTick]:
        """Fetch one price; returns ``None`` on any recoverable failure."""

        try:
            price = self.source.get_mid_price(self.asset)
        except RateLimitError:
            self._backoff = (
                self.interval if self._backoff is None else min(self._backoff * 2, self.max_backoff)
            )
            logger.warning("Rate limit exceeded (429). Backing off for %.0f seconds", self._backoff)
            return None
        except ExchangeError as exc:
            logger.error("Price fetch failed for %s: %s", self.asset, exc)
            return None
        self._backoff = None
        if price is None or price <= 0:
            logger.warning("Asset '%s' not found in the price response", self.asset)
            return None
        tick = PriceTick(timestamp=self._now(), price=float(price))
        logger.info("Fetched new price for %s: $%.4f", self.asset, tick.price)
        return tick

    def next_delay(self) -> float:
        return self._backoff if self._backoff is not None else self.interval

    def run(self, on_tick: Callable[[PriceTick], None], stop_event: threading.Event) -> None:
        """Poll until ``stop_event`` is set, calling ``on_tick`` for each price."""

        logger.info("Starting price feed for %s every %.0f seconds", self.asset, self.interval)
        while not stop_event.is_set():
            tick = self.poll_once()
            if tick is not None:
                try:
                    on_tick(tick)
                except Exception:
                    logger.error("Tick handler failed for %s", self.asset, exc_info=True)
            stop_event.wait(self.next_delay())
        logger.info("Price feed for %s stopped", self.asset)


__all__ = ["MAX_BACKOFF_SECONDS", "MidPriceSource", "PriceFeed"]
