"""Key-value record store used as the channel between agents and the supervisor.

Each record is a JSON object stored at ``<root>/<asset>/<key>.json``.  Writes
are atomic replacements (last write wins), so a reader in another process
never observes a half-written record.  ``take`` implements the mailbox
contract used by manual directives: the consumer claims the record with an
atomic rename before reading it, so a directive is consumed at most once.
"""

from __future__ import annotations

import json
import os
import time
import uuid
from typing import Any, Dict, Iterable, Mapping, Optional

from file_utils import atomic_write_json
from log_utils import setup_logger

logger = setup_logger(__name__)

# Record keys
POSITION = "position"
LIVE_RISK = "live_risk"
LIVE_ANALYSIS = "live_analysis"
REGIME_RISK = "regime_risk"
HEARTBEAT = "heartbeat"
MANUAL_OVERRIDE = "manual_override"
MANUAL_CLOSE = "manual_close"
SUPERVISOR_STATUS = "status"
SUPERVISOR_COMMAND = "command"

SUPERVISOR_SCOPE = "_supervisor"


def _safe_component(value: str) -> str:
    cleaned = "".join(ch for ch in str(value) if ch.isalnum() or ch in {"_", "-", "."})
    if not cleaned or cleaned.startswith("."):
        raise ValueError(f"Invalid store component: {value!r}")
    return cleaned


class StateStore:
    """JSON record store rooted at ``root`` with one directory per asset."""

    def __init__(self, root: str) -> None:
        self.root = root

    def path_for(self, asset: str, key: str) -> str:
        return os.path.join(self.root, _safe_component(asset), f"{_safe_component(key)}.json")

    def put(self, asset: str, key: str, value: Mapping[str, Any]) -> None:
        payload = dict(value)
        payload.setdefault("updated_at", time.time())
        atomic_write_json(self.path_for(asset, key), payload)

    def get(self, asset: str, key: str, default: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        return self._read(self.path_for(asset, key), default)

    def delete(self, asset: str, key: str) -> bool:
        try:
            os.unlink(self.path_for(asset, key))
            return True
        except FileNotFoundError:
            return False

    def take(self, asset: str, key: str) -> Optional[Dict[str, Any]]:
        """Return and remove the record, or ``None`` when nothing is pending."""

        path = self.path_for(asset, key)
        claim = f"{path}.{uuid.uuid4().hex}.claim"
        try:
            os.replace(path, claim)
        except FileNotFoundError:
            return None
        try:
            return self._read(claim, None, log_missing=True)
        finally:
            try:
                os.unlink(claim)
            except OSError:
                pass

    def exists(self, asset: str, key: str) -> bool:
        return os.path.exists(self.path_for(asset, key))

    def updated_at(self, asset: str, key: str) -> Optional[float]:
        record = self.get(asset, key)
        if not record:
            return None
        try:
            return float(record.get("updated_at"))
        except (TypeError, ValueError):
            return None

    def age(self, asset: str, key: str, *, now: Optional[float] = None) -> Optional[float]:
        updated = self.updated_at(asset, key)
        if updated is None:
            return None
        current = time.time() if now is None else now
        return max(0.0, current - updated)

    def clear(self, asset: str, keys: Iterable[str]) -> list[str]:
        removed = []
        for key in keys:
            if self.delete(asset, key):
                removed.append(key)
        return removed

    def _read(self, path: str, default: Optional[Dict[str, Any]], *, log_missing: bool = False) -> Optional[Dict[str, Any]]:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                content = handle.read().strip()
        except FileNotFoundError:
            if log_missing:
                logger.warning("Record %s vanished before it could be read", path)
            return default
        except OSError as exc:
            logger.error("Failed to read record %s: %s", path, exc)
            return default
        if not content:
            return default
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            logger.error("Record %s contains invalid JSON: %s", path, exc)
            return default
        if not isinstance(data, dict):
            logger.error("Record %s is not a JSON object; ignoring", path)
            return default
        return data


__all__ = [
    "HEARTBEAT",
    "LIVE_ANALYSIS",
    "LIVE_RISK",
    "MANUAL_CLOSE",
    "MANUAL_OVERRIDE",
    "POSITION",
    "REGIME_RISK",
    "SUPERVISOR_COMMAND",
    "SUPERVISOR_SCOPE",
    "SUPERVISOR_STATUS",
    "StateStore",
]
