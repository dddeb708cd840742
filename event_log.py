"""Append-only audit log of significant per-asset events.

Events are stored as JSON lines in ``<root>/<asset>/events.jsonl`` so agents
and the supervisor can append from separate processes under an advisory file
lock.  Queries return events in insertion order.
"""

from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

import pandas as pd

from file_utils import ensure_parent_dir, file_lock
from log_utils import setup_logger
from market_schema import utc_now_iso
from observability import log_event

logger = setup_logger(__name__)


class EventType:
    TRIGGER_ARMED = "TRIGGER_ARMED"
    TRIGGER_DISARMED = "TRIGGER_DISARMED"
    BUY_SIGNAL = "BUY_SIGNAL"
    TRADE_EXECUTED = "TRADE_EXECUTED"
    TRADE_FAILED = "TRADE_FAILED"
    TRADE_SKIPPED = "TRADE_SKIPPED"
    TRADE_BLOCKED = "TRADE_BLOCKED"
    POSITION_CLOSED = "POSITION_CLOSED"
    CLOSE_FAILED = "CLOSE_FAILED"
    FIB_STOP_ACTIVATED = "FIB_STOP_ACTIVATED"
    FIB_STOP_RATCHETED = "FIB_STOP_RATCHETED"
    STOP_HIT = "STOP_HIT"
    TAKE_PROFIT_HIT = "TAKE_PROFIT_HIT"
    MANUAL_OVERRIDE = "MANUAL_OVERRIDE"
    MANUAL_CLOSE = "MANUAL_CLOSE"
    STATE_RECONCILED = "STATE_RECONCILED"
    REGIME_ASSESSMENT = "REGIME_ASSESSMENT"
    REGIME_RULE_TRIGGERED = "REGIME_RULE_TRIGGERED"
    REGIME_RISK_UPDATED = "REGIME_RISK_UPDATED"
    AGENT_STARTED = "AGENT_STARTED"
    AGENT_STOPPED = "AGENT_STOPPED"
    AGENT_CRASHED = "AGENT_CRASHED"
    AGENT_FAILED = "AGENT_FAILED"
    AGENT_HEALTHY = "AGENT_HEALTHY"
    AGENT_UNHEALTHY = "AGENT_UNHEALTHY"
    EMERGENCY_SHUTDOWN = "EMERGENCY_SHUTDOWN"
    EMERGENCY_HALT = "EMERGENCY_HALT"
    EMERGENCY_STARTUP = "EMERGENCY_STARTUP"


@dataclass(frozen=True)
class Event:
    seq: int
    event_type: str
    asset: str
    timestamp: str
    details: Dict[str, Any] = field(default_factory=dict)
    ts: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "event_type": self.event_type,
            "asset": self.asset,
            "timestamp": self.timestamp,
            "ts": self.ts,
            "details": dict(self.details),
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> Optional["Event"]:
        event_type = data.get("event_type")
        if not event_type:
            return None
        try:
            seq = int(data.get("seq", 0))
            ts = float(data.get("ts", 0.0))
        except (TypeError, ValueError):
            return None
        details = data.get("details")
        return cls(
            seq=seq,
            event_type=str(event_type),
            asset=str(data.get("asset") or ""),
            timestamp=str(data.get("timestamp") or ""),
            details=dict(details) if isinstance(details, Mapping) else {},
            ts=ts,
        )


class EventLog:
    """JSON-lines event log rooted at ``root`` with one file per asset."""

    FILENAME = "events.jsonl"

    def __init__(self, root: str) -> None:
        self.root = root

    def path_for(self, asset: str) -> str:
        return os.path.join(self.root, asset, self.FILENAME)

    def append(self, asset: str, event_type: str, details: Optional[Mapping[str, Any]] = None) -> Event:
        path = self.path_for(asset)
        ensure_parent_dir(path)
        with file_lock(path):
            seq = self._next_seq(path)
            event = Event(
                seq=seq,
                event_type=event_type,
                asset=asset,
                timestamp=utc_now_iso(),
                details=dict(details or {}),
                ts=time.time(),
            )
            with open(path, "a", encoding="utf-8") as handle:
                handle.write(json.dumps(event.to_dict(), default=str) + "\n")
        log_event(logger, event_type, asset=asset, seq=event.seq, details=event.details)
        return event

    def query(
        self,
        asset: str,
        event_type: Optional[str | Iterable[str]] = None,
        *,
        limit: Optional[int] = None,
        since: Optional[float] = None,
    ) -> List[Event]:
        """Return events for ``asset`` in insertion order.

        ``limit`` keeps the most recent ``limit`` matches.
        """

        if isinstance(event_type, str):
            wanted = {event_type}
        elif event_type is None:
            wanted = None
        else:
            wanted = set(event_type)
        events = [
            event
            for event in self._read_all(asset)
            if (wanted is None or event.event_type in wanted)
            and (since is None or event.ts >= since)
        ]
        if limit is not None and limit >= 0:
            events = events[-limit:] if limit else []
        return events

    def latest(self, asset: str, event_type: Optional[str] = None) -> Optional[Event]:
        events = self.query(asset, event_type, limit=1)
        return events[0] if events else None

    def to_frame(self, asset: str, event_type: Optional[str] = None) -> pd.DataFrame:
        rows = []
        for event in self.query(asset, event_type):
            row = {k: v for k, v in event.to_dict().items() if k != "details"}
            row.update({f"details.{k}": v for k, v in event.details.items()})
            rows.append(row)
        if not rows:
            return pd.DataFrame(columns=["seq", "event_type", "asset", "timestamp", "ts"])
        frame = pd.DataFrame(rows)
        frame["timestamp"] = pd.to_datetime(frame["timestamp"], utc=True, errors="coerce")
        return frame

    def _read_all(self, asset: str) -> List[Event]:
        path = self.path_for(asset)
        if not os.path.exists(path):
            return []
        events: List[Event] = []
        with open(path, "r", encoding="utf-8") as handle:
            for line_no, line in enumerate(handle, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed event on line %d of %s", line_no, path)
                    continue
                event = Event.from_mapping(payload) if isinstance(payload, Mapping) else None
                if event is not None:
                    events.append(event)
        return events

    def _next_seq(self, path: str) -> int:
        if not os.path.exists(path):
            return 1
        last = 0
        with open(path, "r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    last = max(last, int(json.loads(line).get("seq", 0)))
                except (json.JSONDecodeError, AttributeError, TypeError, ValueError):
                    continue
        return last + 1


__all__ = ["Event", "EventLog", "EventType"]
