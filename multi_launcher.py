"""
Command line entry point for the multi-token system.

``run`` starts the supervisor in the foreground: enabled tokens are launched
with a small stagger, health/regime/command timers run until SIGINT or
SIGTERM, then every agent is stopped gracefully.  The other subcommands talk
to a running supervisor through the shared state store: control commands are
posted to the single-slot command mailbox, ``status`` reads the persisted
status snapshot and ``force-buy``/``force-close`` drop manual directives for
an agent.  ``backfill``/``clear-prices`` manage a token's stored price
history and ``positions`` lists the wallet's open positions on the exchange.

Examples::

    python multi_launcher.py run
    python multi_launcher.py status
    python multi_launcher.py disable DOGE
    python multi_launcher.py panic ALL
    python multi_launcher.py emergency-halt "exchange maintenance"
    python multi_launcher.py events SOL --limit 20
    python multi_launcher.py logs DOGE --tail 200
    python multi_launcher.py backfill SOL historical_prices.json
    python multi_launcher.py clear-prices SOL
    python multi_launcher.py positions
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from typing import Optional, Sequence

import pandas as pd

from config import get_data_dir, get_wallet_address, load_supervisor_settings, load_token_settings
from event_log import EventLog
from exchange_client import ExchangeError, HyperliquidInfoClient
from log_utils import read_logs, setup_logger
from notifier import Notifier
from price_store import PriceStore, read_history_file
from regime_classifier import GroqRegimeBackend, RegimeClassifier
from state_store import (
    MANUAL_CLOSE,
    MANUAL_OVERRIDE,
    SUPERVISOR_COMMAND,
    SUPERVISOR_SCOPE,
    SUPERVISOR_STATUS,
    StateStore,
)
from supervisor import SubprocessLauncher, Supervisor

logger = setup_logger(__name__)

CONTROL_COMMANDS = ("start", "stop", "enable", "disable")
EMERGENCY_COMMANDS = ("emergency-halt", "emergency-shutdown", "emergency-startup")


def build_supervisor() -> Supervisor:
    root = get_data_dir()
    settings = load_supervisor_settings()
    event_log = EventLog(root)
    classifier = RegimeClassifier(
        GroqRegimeBackend(),
        event_log=event_log,
        min_interval=settings.regime_min_interval,
    )
    return Supervisor(
        load_token_settings(),
        settings,
        launcher=SubprocessLauncher(),
        store=StateStore(root),
        event_log=event_log,
        price_store=PriceStore(root),
        classifier=classifier,
        notifier=Notifier(bot_name="Fib Supervisor"),
    )


def run_supervisor(supervisor: Supervisor) -> int:
    stop_event = threading.Event()

    def _shutdown(signum, _frame):
        logger.info("Received signal %s; shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    started = supervisor.start_enabled()
    logger.info("Multi-token system startup complete. Running tokens: %s", ", ".join(started) or "none")
    logger.info(
        "Regime monitoring: %s", "ENABLED" if supervisor.settings.regime_rules_enabled else "DISABLED"
    )
    try:
        supervisor.run(stop_event)
    finally:
        supervisor.shutdown()
    return 0


def post_command(store: StateStore, command: str, asset: Optional[str] = None, reason: Optional[str] = None) -> dict:
    """Queue ``command`` for the running supervisor (last write wins)."""

    payload = {"command": command}
    if asset:
        payload["asset"] = asset.upper()
    if reason:
        payload["reason"] = reason
    store.put(SUPERVISOR_SCOPE, SUPERVISOR_COMMAND, payload)
    return payload


def status_frame(snapshot: dict) -> pd.DataFrame:
    rows = []
    for symbol, entry in sorted((snapshot.get("tokens") or {}).items()):
        regime = entry.get("regime") or {}
        rows.append(
            {
                "token": symbol,
                "enabled": entry.get("enabled"),
                "status": entry.get("status"),
                "mode": entry.get("mode"),
                "pid": entry.get("pid"),
                "restarts": entry.get("restart_count"),
                "uptime_min": round(float(entry.get("uptime") or 0.0) / 60, 1),
                "regime": regime.get("current"),
                "confidence": regime.get("confidence"),
            }
        )
    return pd.DataFrame(rows)


def main(cli_args: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run and control the multi-token fib trading system.")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Start the supervisor and every enabled token")
    status = sub.add_parser("status", help="Show the last persisted supervisor status")
    status.add_argument("--json", action="store_true", help="Print the raw status record")
    for name in CONTROL_COMMANDS:
        cmd = sub.add_parser(name, help=f"{name.capitalize()} a token on the running supervisor")
        cmd.add_argument("token")
    panic = sub.add_parser("panic", help="Stop one token, or ALL tokens")
    panic.add_argument("token", nargs="?", default="ALL")
    for name in EMERGENCY_COMMANDS:
        cmd = sub.add_parser(name, help=name.replace("-", " ").capitalize())
        cmd.add_argument("reason", nargs="*", help="Free-text reason recorded in the event log")
    buy = sub.add_parser("force-buy", help="Force the token's agent to buy on its next tick")
    buy.add_argument("token")
    close = sub.add_parser("force-close", help="Force the token's agent to close on its next risk check")
    close.add_argument("token")
    events = sub.add_parser("events", help="Print recent events for a token (or _supervisor)")
    events.add_argument("token")
    events.add_argument("--type", dest="event_type")
    events.add_argument("--limit", type=int, default=50)
    logs = sub.add_parser("logs", help="Print the tail of a token's agent log")
    logs.add_argument("token")
    logs.add_argument("--tail", type=int, default=100)
    backfill = sub.add_parser("backfill", help="Load historical prices (CSV or JSON array) for a token")
    backfill.add_argument("token")
    backfill.add_argument("path", help="File with timestamp and price columns")
    clear_prices = sub.add_parser("clear-prices", help="Delete a token's stored price history")
    clear_prices.add_argument("token")
    positions = sub.add_parser("positions", help="List open positions for the configured wallet")
    positions.add_argument("--address", help="Wallet address (defaults to the configured wallet)")

    args = parser.parse_args(cli_args)
    root = get_data_dir()
    store = StateStore(root)

    if args.command == "run":
        return run_supervisor(build_supervisor())

    if args.command == "status":
        snapshot = store.get(SUPERVISOR_SCOPE, SUPERVISOR_STATUS)
        if not snapshot:
            print("No supervisor status recorded yet.", file=sys.stderr)
            return 1
        if args.json:
            print(json.dumps(snapshot, indent=2, sort_keys=True))
        else:
            manager = snapshot.get("manager") or {}
            print(f"Supervisor pid={manager.get('pid')} emergency={manager.get('emergency')}")
            print(status_frame(snapshot).to_string(index=False))
        return 0

    if args.command in CONTROL_COMMANDS:
        payload = post_command(store, args.command, args.token)
    elif args.command == "panic":
        token = None if args.token.upper() == "ALL" else args.token
        payload = post_command(store, "panic", token)
    elif args.command in EMERGENCY_COMMANDS:
        payload = post_command(store, args.command, reason=" ".join(args.reason) or None)
    elif args.command == "force-buy":
        store.put(args.token.upper(), MANUAL_OVERRIDE, {"signal": "buy"})
        print(f"Manual buy queued for {args.token.upper()}")
        return 0
    elif args.command == "force-close":
        store.put(args.token.upper(), MANUAL_CLOSE, {"close": True})
        print(f"Manual close queued for {args.token.upper()}")
        return 0
    elif args.command == "events":
        scope = args.token if args.token.startswith("_") else args.token.upper()
        frame = EventLog(root).to_frame(scope, args.event_type)
        if frame.empty:
            print("No events recorded.")
        else:
            print(frame.tail(args.limit).to_string(index=False))
        return 0
    elif args.command == "logs":
        settings = load_token_settings().get(args.token.upper())
        if settings is None:
            parser.error(f"No configuration found for token: {args.token}")
        text = read_logs(args.tail, path=settings.log_file)
        print(text or f"No log output at {settings.log_file}")
        return 0
    elif args.command in ("backfill", "clear-prices"):
        symbol = args.token.upper()
        if symbol not in load_token_settings():
            parser.error(f"No configuration found for token: {args.token}")
        prices = PriceStore(root)
        if args.command == "clear-prices":
            print(f"Deleted {prices.clear(symbol)} price records for {symbol}")
            return 0
        try:
            history = read_history_file(args.path)
        except (OSError, ValueError) as exc:
            print(f"Cannot read {args.path}: {exc}", file=sys.stderr)
            return 1
        inserted = prices.backfill(symbol, history)
        print(f"Total records in file: {len(history)}")
        print(f"New records inserted:  {inserted}")
        return 0
    elif args.command == "positions":
        address = args.address or get_wallet_address()
        if not address:
            parser.error("No wallet address; pass --address or set HYPERLIQUID_MAIN_ACCOUNT_ADDRESS")
        try:
            open_positions = HyperliquidInfoClient(address).open_positions()
        except ExchangeError as exc:
            print(f"Position query failed: {exc}", file=sys.stderr)
            return 1
        if not open_positions:
            print(f"No open positions for {address}")
        else:
            print(pd.DataFrame([p.to_dict() for p in open_positions]).to_string(index=False))
        return 0
    else:  # pragma: no cover - argparse enforces the choices
        parser.error(f"Unknown command {args.command}")

    print(f"Queued command: {json.dumps(payload)}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
