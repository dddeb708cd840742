"""
Per-token trading agent.

One agent process runs for each configured token.  It polls the token's mid
price, recomputes the fib/Stochastic RSI indicators on every tick, feeds them
through the arm/disarm entry trigger and places an IOC entry when a buy fires.
A separate risk loop checks the open position every ``risk_check_interval``
seconds and closes it on a stop or take-profit.

Everything the supervisor and front ends need to see is written to the
per-token state store: ``live_analysis`` after every tick, ``live_risk`` after
every risk check, ``position`` on every position change and a ``heartbeat``
record.  Manual directives (``manual_override`` to force a buy,
``manual_close`` to force an exit) are consumed from the same store.

In ``data-only`` mode (used during an emergency halt) the agent keeps
collecting prices and publishing analysis but never places orders.

Usage::

    python -m agent --token SOL [--mode trade|data-only]
"""

from __future__ import annotations

import argparse
import os
import signal
import sys
import threading
import time
from typing import Any, Callable, Dict, Optional, Sequence

from config import (
    TokenSettings,
    get_data_dir,
    get_log_dir,
    get_token_settings,
    get_wallet_address,
)
from event_log import EventLog, EventType
from exchange_client import ExchangeError, HyperliquidInfoClient, PaperExchange
from log_utils import setup_logger
from market_schema import IndicatorSnapshot, PriceTick, RunMode, Signal, to_float
from notifier import Notifier
from observability import log_event, record_metric, set_metrics_path
from position_state import PositionSource, PositionState, ReconciliationError
from price_feed import MidPriceSource, PriceFeed
from price_store import PriceStore
from risk_engine import RiskDecision, RiskEngine
from signal_engine import SignalEngine
from state_store import (
    HEARTBEAT,
    LIVE_ANALYSIS,
    LIVE_RISK,
    MANUAL_CLOSE,
    MANUAL_OVERRIDE,
    REGIME_RISK,
    StateStore,
)
from technical_analyzer import TechnicalAnalyzer, trigger_status
from trade_executor import TradeExecutor

logger = setup_logger(__name__)

RECONCILE_ATTEMPTS = 5
RECONCILE_BASE_DELAY = 2.0


def handle_exception(exc_type, exc_value, exc_traceback):
    """Log uncaught exceptions with stack traces."""
    if issubclass(exc_type, KeyboardInterrupt):
        return
    logger.error("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback))


class TradingAgent:
    def __init__(
        self,
        settings: TokenSettings,
        *,
        store: StateStore,
        event_log: EventLog,
        price_store: PriceStore,
        prices: MidPriceSource,
        positions: PositionSource,
        executor: TradeExecutor,
        mode: RunMode = RunMode.TRADE,
        notifier: Optional[Notifier] = None,
        analyzer: Optional[TechnicalAnalyzer] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.asset = settings.symbol
        self.mode = RunMode(mode)
        self.store = store
        self.event_log = event_log
        self.price_store = price_store
        self.prices = prices
        self.positions = positions
        self.executor = executor
        self.notifier = notifier or Notifier(webhook_url="")
        self.analyzer = analyzer or TechnicalAnalyzer(settings.analysis)
        self._clock = clock
        self._sleep = sleep
        self.position = PositionState(self.asset, store, clock=clock)
        self.signal_engine = SignalEngine(self.position, settings.signal_variant, on_event=self._record_event)
        self.risk_engine = RiskEngine(self.asset, settings.risk, store, clock=clock, on_event=self._record_event)
        self.feed = PriceFeed(self.asset, prices, interval=settings.collector_interval)
        self.latest_snapshot: Optional[IndicatorSnapshot] = None
        self.last_trade_time: Optional[float] = None
        self._lock = threading.RLock()
        self.stop_event = threading.Event()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _record_event(self, event_type: str, details: Any) -> None:
        try:
            self.event_log.append(self.asset, event_type, dict(details or {}))
        except OSError:
            logger.warning("Failed to record %s for %s", event_type, self.asset, exc_info=True)

    def _notify(self, title: str, message: str, level: str = "info") -> None:
        self.notifier.send(f"[{self.asset}] {title}", message, level)

    @property
    def trading(self) -> bool:
        return self.mode is RunMode.TRADE

    # ------------------------------------------------------------------
    # startup
    # ------------------------------------------------------------------
    def reconcile(self, attempts: int = RECONCILE_ATTEMPTS, base_delay: float = RECONCILE_BASE_DELAY) -> None:
        """Adopt the exchange's view of the position before any loop starts."""

        last_error: Optional[Exception] = None
        for attempt in range(1, max(1, attempts) + 1):
            try:
                record = self.position.load_initial_state(self.positions)
            except ReconciliationError as exc:
                last_error = exc
                logger.warning("Reconciliation attempt %d/%d failed: %s", attempt, attempts, exc)
                if attempt < attempts:
                    self._sleep(base_delay * (2 ** (attempt - 1)))
                continue
            self._record_event(EventType.STATE_RECONCILED, record.to_dict())
            return
        raise ReconciliationError(f"{self.asset}: reconciliation failed after {attempts} attempts") from last_error

    # ------------------------------------------------------------------
    # tick path
    # ------------------------------------------------------------------
    def handle_tick(self, tick: PriceTick) -> Optional[Signal]:
        started = time.perf_counter()
        with self._lock:
            self.price_store.append(self.asset, tick)
            history = self.price_store.load(self.asset, limit=self.settings.analysis.history_limit)
            snapshot = self.analyzer.analyze(history)
            if snapshot is None:
                return None
            self.latest_snapshot = snapshot
            self._publish_analysis(snapshot)
            if not self.trading:
                return None

            signal_ = self.signal_engine.generate(snapshot)
            override = self.store.take(self.asset, MANUAL_OVERRIDE)
            if override and str(override.get("signal", "")).lower() == "buy":
                logger.warning("MANUAL OVERRIDE DETECTED for %s: forcing a buy signal", self.asset)
                self._record_event(EventType.MANUAL_OVERRIDE, {"signal": "buy"})
                self._notify("Manual Override Triggered!", "Forcing a buy signal.", "warning")
                signal_ = Signal.buy("Manual override")
            elif override:
                logger.warning("Ignoring unknown manual override for %s: %s", self.asset, override)

            if signal_.is_buy:
                self._notify("BUY SIGNAL", signal_.reason, "success")
                if not self.position.is_in_position():
                    self._enter(snapshot)
        record_metric("tick_latency_ms", (time.perf_counter() - started) * 1000, labels={"asset": self.asset})
        return signal_

    def _publish_analysis(self, snapshot: IndicatorSnapshot) -> None:
        payload: Dict[str, Any] = snapshot.to_dict()
        armed = self.position.is_trigger_armed()
        payload.update(
            asset=self.asset,
            mode=self.mode.value,
            signal_variant=self.signal_engine.variant.name,
            trigger_armed=armed,
            trigger_reason=trigger_status(armed, snapshot.latest_price, snapshot.fib_entry, snapshot.wma_fib_0),
            updated_at=self._clock(),
        )
        self.store.put(self.asset, LIVE_ANALYSIS, payload)

    def size_multiplier(self) -> float:
        """Regime size multiplier from a fresh supervisor record, else 1."""

        record = self.store.get(self.asset, REGIME_RISK)
        if not record:
            return 1.0
        updated = to_float(record.get("updated_at"))
        if updated is None or self._clock() - updated > self.settings.risk.regime_risk_max_age_seconds:
            return 1.0
        value = to_float(record.get("size_multiplier"))
        return 1.0 if value is None else max(0.0, value)

    def _enter(self, snapshot: IndicatorSnapshot) -> None:
        now = self._clock()
        cooldown = self.settings.trading.cooldown_minutes * 60
        if self.last_trade_time is not None and now - self.last_trade_time < cooldown:
            remaining = (cooldown - (now - self.last_trade_time)) / 60
            logger.warning("Cooldown active for %s. Skipping signal. Time left: %.2f min", self.asset, remaining)
            self._record_event(EventType.TRADE_SKIPPED, {"reason": "cooldown", "minutes_left": round(remaining, 2)})
            return
        multiplier = self.size_multiplier()
        if multiplier <= 0:
            logger.warning("Regime size multiplier is 0 for %s; skipping entry", self.asset)
            self._record_event(EventType.TRADE_SKIPPED, {"reason": "regime_size_zero"})
            return
        usd_size = self.settings.trading.trade_usd_size * multiplier
        result = self.executor.execute_buy(usd_size)
        if not result.success:
            self._notify("Trade Failed", result.error or "unknown error", "error")
            return
        self.position.open_position(result.price, result.size)
        self.last_trade_time = now
        self._notify(
            "Trade Executed",
            f"Bought {result.size} {self.asset} @ ${result.price} (size x{multiplier:.2f})",
            "success",
        )

    # ------------------------------------------------------------------
    # risk path
    # ------------------------------------------------------------------
    def check_risk(self) -> Optional[RiskDecision]:
        with self._lock:
            manual_close = self.store.take(self.asset, MANUAL_CLOSE)
            if not self.position.is_in_position():
                if manual_close:
                    logger.info("Manual close for %s ignored: no open position", self.asset)
                return None
            try:
                live = self.positions.get_live_position(self.asset)
            except ExchangeError as exc:
                logger.warning("Could not fetch live position for %s: %s. Skipping check.", self.asset, exc)
                return None
            if live is None:
                logger.warning("%s position no longer exists on the exchange; clearing local state", self.asset)
                self._record_event(EventType.POSITION_CLOSED, {"reason": "closed externally"})
                self.position.close_position()
                return None
            self.position.sync_size(live.size)

            if manual_close:
                logger.warning("MANUAL CLOSE DETECTED for %s", self.asset)
                self._record_event(EventType.MANUAL_CLOSE, {"size": live.size})
                self._close(live.size, "MANUAL-CLOSE", None)
                return None

            try:
                price = self.prices.get_mid_price(self.asset)
            except ExchangeError as exc:
                logger.warning("Could not fetch current price for %s: %s. Skipping check.", self.asset, exc)
                return None
            decision = self.risk_engine.evaluate(self.position, live, price, self.latest_snapshot)
            record = self.position.record
            payload = decision.to_dict()
            payload.update(
                asset=self.asset,
                entry_price=record.entry_price,
                current_price=price,
                size=live.size,
                fib_stop_active=record.fib_stop_active,
                updated_at=self._clock(),
            )
            self.store.put(self.asset, LIVE_RISK, payload)
            if decision.should_close:
                self._close(live.size, decision.reason or "RISK", decision.value)
            return decision

    def _close(self, size: float, reason: str, value: Any) -> None:
        self._notify(f"{reason} Hit!", f"Closing position for {self.asset}. Trigger Value: {value}", "warning")
        result = self.executor.close_position(size)
        if result.success:
            self.position.close_position()
        else:
            self._notify("Close Failed", result.error or "unknown error", "error")

    # ------------------------------------------------------------------
    # heartbeat and loops
    # ------------------------------------------------------------------
    def heartbeat(self) -> None:
        self.store.put(
            self.asset,
            HEARTBEAT,
            {
                "pid": os.getpid(),
                "mode": self.mode.value,
                "in_position": self.position.is_in_position(),
                "trigger_armed": self.position.is_trigger_armed(),
                "updated_at": self._clock(),
            },
        )

    def _periodic(self, interval: float, action: Callable[[], Any], name: str) -> None:
        while not self.stop_event.is_set():
            try:
                action()
            except Exception:
                logger.error("%s loop error for %s", name, self.asset, exc_info=True)
            self.stop_event.wait(interval)

    def run(self) -> None:
        logger.info("Starting %s agent in %s mode", self.asset, self.mode.value)
        if self.trading:
            self.reconcile()
        self.heartbeat()
        log_event(logger, "agent_started", asset=self.asset, mode=self.mode.value, pid=os.getpid())
        self._notify("Agent Started", f"Running in {self.mode.value} mode.", "info")
        threads = [
            threading.Thread(
                target=self.feed.run, args=(self.handle_tick, self.stop_event), name=f"{self.asset}-feed", daemon=True
            ),
            threading.Thread(
                target=self._periodic,
                args=(self.settings.heartbeat_interval, self.heartbeat, "heartbeat"),
                name=f"{self.asset}-heartbeat",
                daemon=True,
            ),
        ]
        if self.trading:
            threads.append(
                threading.Thread(
                    target=self._periodic,
                    args=(self.settings.risk_check_interval, self.check_risk, "risk"),
                    name=f"{self.asset}-risk",
                    daemon=True,
                )
            )
        for thread in threads:
            thread.start()
        self.stop_event.wait()
        for thread in threads:
            thread.join(timeout=5)
        logger.info("%s agent stopped", self.asset)

    def stop(self) -> None:
        self.stop_event.set()


def build_agent(settings: TokenSettings, mode: RunMode = RunMode.TRADE) -> TradingAgent:
    """Wire the production collaborators for ``settings``."""

    root = get_data_dir()
    set_metrics_path(os.path.join(get_log_dir(), f"{settings.symbol}_metrics.csv"))
    store = StateStore(root)
    event_log = EventLog(root)
    info = HyperliquidInfoClient(get_wallet_address())
    paper = PaperExchange(
        info,
        os.path.join(settings.data_dir, "paper_book.json"),
        leverage=settings.trading.leverage,
    )
    executor = TradeExecutor(settings.symbol, info, paper, settings.trading, event_log=event_log)
    return TradingAgent(
        settings,
        store=store,
        event_log=event_log,
        price_store=PriceStore(root),
        prices=info,
        positions=paper,
        executor=executor,
        mode=mode,
        notifier=Notifier(),
    )


def main(cli_args: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run a single-token fib trading agent.")
    parser.add_argument("--token", default=os.getenv("TOKEN_SYMBOL"), help="Token symbol, e.g. SOL")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in RunMode],
        default=os.getenv("AGENT_MODE", RunMode.TRADE.value),
        help="trade (default) or data-only",
    )
    args = parser.parse_args(cli_args)
    if not args.token:
        parser.error("Provide --token or set TOKEN_SYMBOL")

    sys.excepthook = handle_exception
    try:
        settings = get_token_settings(args.token)
    except KeyError as exc:
        parser.error(str(exc))
    agent = build_agent(settings, RunMode(args.mode))

    def _shutdown(signum, _frame):
        logger.info("Received signal %s; stopping %s agent", signum, settings.symbol)
        agent.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)
    try:
        agent.run()
    except ReconciliationError as exc:
        logger.error("FATAL: %s", exc)
        return 2
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
