"""Append-only storage of price ticks per asset.

Ticks are kept as ``timestamp,price`` rows in ``<root>/<asset>/prices.csv``,
always in ascending timestamp order.  Loading returns a pandas Series indexed
by UTC timestamp, ready for resampling by :mod:`technical_analyzer`.  A
bounded load only reads the tail of the file.

``backfill`` merges historical prices into the file (existing timestamps
win) and ``clear`` drops an asset's history; both are operator tools used by
``multi_launcher``.
"""

from __future__ import annotations

import csv
import io
import os
from datetime import datetime
from typing import Iterable, List, Optional

import pandas as pd

from file_utils import ensure_parent_dir, file_lock
from log_utils import setup_logger
from market_schema import PriceTick

logger = setup_logger(__name__)

_TAIL_BLOCK = 64 * 1024


def _tail_lines(path: str, count: int) -> List[str]:
    """Return up to ``count`` non-empty trailing lines of ``path``."""

    with open(path, "rb") as handle:
        handle.seek(0, os.SEEK_END)
        position = handle.tell()
        data = b""
        while position > 0 and data.count(b"\n") <= count:
            step = min(_TAIL_BLOCK, position)
            position -= step
            handle.seek(position)
            data = handle.read(step) + data
    lines = [line for line in data.decode("utf-8", errors="replace").splitlines() if line.strip()]
    if position > 0 and lines:
        # the first line may have been cut in half by the block boundary
        lines = lines[1:]
    return lines[-count:]


def _to_utc(values: pd.Series) -> pd.Series:
    """Parse ISO strings or epoch seconds/milliseconds into UTC timestamps."""

    if pd.api.types.is_datetime64_any_dtype(values):
        return pd.to_datetime(values, utc=True)
    numeric = pd.to_numeric(values, errors="coerce")
    if numeric.notna().all() and len(numeric):
        unit = "ms" if numeric.abs().max() > 1e11 else "s"
        return pd.to_datetime(numeric, unit=unit, utc=True, errors="coerce")
    return pd.to_datetime(values, utc=True, errors="coerce")


def _clean_frame(frame: pd.DataFrame) -> pd.DataFrame:
    frame = frame.copy()
    frame["timestamp"] = _to_utc(frame["timestamp"])
    frame["price"] = pd.to_numeric(frame["price"], errors="coerce")
    frame = frame.dropna(subset=["timestamp", "price"])
    frame = frame[frame["price"] > 0]
    return frame.drop_duplicates(subset="timestamp", keep="first").sort_values("timestamp")


def read_history_file(path: str) -> pd.Series:
    """Read a ``timestamp``/``price`` history export (CSV or JSON array)."""

    if path.lower().endswith(".json"):
        frame = pd.read_json(path, orient="records", convert_dates=False)
    else:
        frame = pd.read_csv(path)
    frame.columns = [str(c).strip().lower() for c in frame.columns]
    if not {"timestamp", "price"}.issubset(frame.columns):
        raise ValueError(f"{path} needs 'timestamp' and 'price' columns")
    frame = _clean_frame(frame)
    series = frame.set_index("timestamp")["price"].astype(float)
    series.name = "price"
    return series


class PriceStore:
    FILENAME = "prices.csv"
    FIELDS = ("timestamp", "price")

    def __init__(self, root: str) -> None:
        self.root = root

    def path_for(self, asset: str) -> str:
        return os.path.join(self.root, asset, self.FILENAME)

    def append(self, asset: str, tick: PriceTick) -> bool:
        """Append ``tick`` unless it is not newer than the last stored tick."""

        path = self.path_for(asset)
        ensure_parent_dir(path)
        with file_lock(path):
            last = self._read_last_timestamp(path)
            if last is not None and tick.timestamp <= last:
                logger.debug("Ignoring out-of-order tick for %s at %s", asset, tick.timestamp)
                return False
            need_header = not os.path.exists(path) or os.path.getsize(path) == 0
            with open(path, "a", newline="", encoding="utf-8") as handle:
                writer = csv.writer(handle)
                if need_header:
                    writer.writerow(self.FIELDS)
                writer.writerow([tick.timestamp.isoformat(), f"{tick.price:.10g}"])
        return True

    def load(self, asset: str, limit: Optional[int] = None) -> pd.Series:
        path = self.path_for(asset)
        empty = pd.Series(dtype=float, name="price")
        if not os.path.exists(path):
            return empty
        try:
            if limit is not None and limit > 0:
                rows = [line for line in _tail_lines(path, limit) if not line.startswith("timestamp")]
                frame = pd.read_csv(io.StringIO("\n".join(rows)), names=list(self.FIELDS), header=None)
            else:
                frame = pd.read_csv(path)
        except (pd.errors.EmptyDataError, pd.errors.ParserError) as exc:
            logger.warning("Price history %s unreadable: %s", path, exc)
            return empty
        if frame.empty or not set(self.FIELDS).issubset(frame.columns):
            return empty
        frame["timestamp"] = pd.to_datetime(frame["timestamp"], utc=True, errors="coerce")
        frame["price"] = pd.to_numeric(frame["price"], errors="coerce")
        frame = frame.dropna(subset=["timestamp", "price"])
        frame = frame.drop_duplicates(subset="timestamp", keep="last").sort_values("timestamp")
        series = frame.set_index("timestamp")["price"].astype(float)
        series.name = "price"
        if limit is not None and limit > 0:
            series = series.iloc[-limit:]
        return series

    def recent(self, asset: str, count: int) -> list[float]:
        return [float(v) for v in self.load(asset, limit=count).tolist()]

    def backfill(self, asset: str, history: pd.Series) -> int:
        """Merge ``history`` into the stored ticks; returns the number of new rows.

        Timestamps already present keep their stored price.
        """

        path = self.path_for(asset)
        ensure_parent_dir(path)
        incoming = pd.DataFrame({"timestamp": history.index, "price": history.values})
        incoming = _clean_frame(incoming)
        with file_lock(path):
            existing = self.load(asset)
            added = incoming[~incoming["timestamp"].isin(existing.index)]
            if added.empty:
                return 0
            frames = [added]
            if not existing.empty:
                frames.insert(0, pd.DataFrame({"timestamp": existing.index, "price": existing.values}))
            merged = pd.concat(frames, ignore_index=True).sort_values("timestamp")
            self._rewrite(path, zip(merged["timestamp"], merged["price"]))
        logger.info("Backfilled %d price rows for %s", len(added), asset)
        return len(added)

    def clear(self, asset: str) -> int:
        """Delete the stored history for ``asset``; returns the rows removed."""

        path = self.path_for(asset)
        with file_lock(path):
            if not os.path.exists(path):
                return 0
            removed = len(self.load(asset))
            os.remove(path)
        logger.warning("Cleared %d price rows for %s", removed, asset)
        return removed

    def _rewrite(self, path: str, rows: Iterable) -> None:
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", newline="", encoding="utf-8") as handle:
            writer = csv.writer(handle)
            writer.writerow(self.FIELDS)
            for stamp, price in rows:
                writer.writerow([pd.Timestamp(stamp).isoformat(), f"{float(price):.10g}"])
        os.replace(tmp_path, path)

    def _read_last_timestamp(self, path: str) -> Optional[datetime]:
        if not os.path.exists(path):
            return None
        lines = _tail_lines(path, 1)
        if not lines or lines[-1].startswith("timestamp"):
            return None
        stamp = lines[-1].split(",", 1)[0]
        parsed = pd.to_datetime(stamp, utc=True, errors="coerce")
        return None if pd.isna(parsed) else parsed.to_pydatetime()


__all__ = ["PriceStore", "read_history_file"]
