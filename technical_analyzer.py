"""Indicator computation for the fib-bounce strategy.

Raw price ticks are resampled into 5-minute OHLC candles.  From those the
analyzer derives:

* ``wma_fib_0`` - exponential average of the rolling ``fib_lookback`` lowest
  low (the "bounce target"),
* ``fib_entry`` - ``wma_fib_0`` shifted down by ``fib_entry_offset_pct`` (the
  level price must dip under to arm the trigger),
* ATR as a simple average of the true range,
* Stochastic RSI ``k``/``d`` on the 5-minute candles,
* ``bull_state`` and a 4-hour Stochastic RSI from 4-hour candles.

``analyze`` returns ``None`` whenever the history is too short; callers treat
that as "waiting for data" rather than an error.
"""

from __future__ import annotations

import math
from typing import Optional, Tuple

import numpy as np
import pandas as pd

from config import AnalysisSettings
from log_utils import setup_logger
from market_schema import IndicatorSnapshot, StochReading

logger = setup_logger(__name__)


def resample_ohlc(prices: pd.Series, rule: str) -> pd.DataFrame:
    """Resample a tick series into OHLC candles labelled by their open time."""

    if prices.empty:
        return pd.DataFrame(columns=["open", "high", "low", "close"])
    candles = prices.resample(rule, label="left", closed="left").ohlc()
    return candles.dropna()


def wilder_rsi(closes: pd.Series, period: int) -> pd.Series:
    """RSI with Wilder smoothing seeded by the simple average of the first window."""

    values = closes.to_numpy(dtype=float)
    rsi = np.full(len(values), np.nan)
    if len(values) <= period:
        return pd.Series(rsi, index=closes.index)
    delta = np.diff(values)
    gains = np.clip(delta, 0, None)
    losses = np.clip(-delta, 0, None)
    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()
    for i in range(period, len(delta) + 1):
        if i > period:
            avg_gain = (avg_gain * (period - 1) + gains[i - 1]) / period
            avg_loss = (avg_loss * (period - 1) + losses[i - 1]) / period
        if avg_loss == 0:
            rsi[i] = 100.0 if avg_gain > 0 else np.nan
        else:
            rsi[i] = 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)
    return pd.Series(rsi, index=closes.index)


def stoch_rsi(
    closes: pd.Series,
    rsi_period: int,
    stoch_period: int,
    k_period: int,
    d_period: int,
) -> pd.DataFrame:
    """Stochastic RSI with ``k``/``d`` smoothing.

    Flat RSI windows (zero range) repeat the previous stochastic value, or 50
    when there is none.
    """

    rsi = wilder_rsi(closes, rsi_period)
    lowest = rsi.rolling(stoch_period).min()
    highest = rsi.rolling(stoch_period).max()
    raw = (rsi - lowest) / (highest - lowest) * 100.0
    raw = raw.replace([np.inf, -np.inf], np.nan)
    valid_window = highest.notna()
    stoch = raw.copy()
    previous = None
    for idx in range(len(stoch)):
        if not valid_window.iloc[idx]:
            continue
        value = stoch.iloc[idx]
        if pd.isna(value):
            value = previous if previous is not None else 50.0
            stoch.iloc[idx] = value
        previous = value
    k = stoch.rolling(k_period).mean()
    d = k.rolling(d_period).mean()
    return pd.DataFrame({"stoch": stoch, "k": k, "d": d})


def _latest_reading(frame: pd.DataFrame) -> Optional[StochReading]:
    if frame.empty:
        return None
    last = frame.iloc[-1]
    k, d = last.get("k"), last.get("d")
    if k is None or d is None or pd.isna(k) or pd.isna(d):
        return None
    return StochReading(k=float(k), d=float(d))


class TechnicalAnalyzer:
    def __init__(self, settings: Optional[AnalysisSettings] = None) -> None:
        self.settings = settings or AnalysisSettings()

    @property
    def min_records(self) -> int:
        s = self.settings
        return max(s.fib_lookback + s.wma_period, s.rsi_period + s.stoch_period)

    def trend_state(self, prices: pd.Series) -> Tuple[bool, Optional[StochReading]]:
        """Return ``(bull_state, stoch_rsi_4hr)`` from higher-timeframe candles."""

        s = self.settings
        candles = resample_ohlc(prices, s.trend_rule)
        if len(candles) < s.trend_ma_period:
            logger.debug(
                "Only %d %s candles; need %d for trend state",
                len(candles),
                s.trend_rule,
                s.trend_ma_period,
            )
            return False, None
        closes = candles["close"]
        trend_ma = closes.rolling(s.trend_ma_period).mean()
        bull_state = bool(closes.iloc[-1] > trend_ma.iloc[-1])
        reading = _latest_reading(
            stoch_rsi(closes, s.trend_rsi_period, s.trend_stoch_period, s.k_period, s.d_period)
        )
        return bull_state, reading

    def analyze(self, prices: pd.Series) -> Optional[IndicatorSnapshot]:
        s = self.settings
        if prices is None or len(prices) < self.min_records:
            logger.info(
                "Not enough price history: need >= %d ticks, have %d",
                self.min_records,
                0 if prices is None else len(prices),
            )
            return None
        bull_state, stoch_4hr = self.trend_state(prices)

        candles = resample_ohlc(prices, s.candle_rule)
        if len(candles) < self.min_records:
            logger.info("Not enough candles: need >= %d, have %d", self.min_records, len(candles))
            return None

        high, low, close = candles["high"], candles["low"], candles["close"]
        lowest_low = low.rolling(s.fib_lookback).min()
        wma_fib_0 = lowest_low.ewm(span=s.wma_period, adjust=False).mean()
        wma_fib_0 = wma_fib_0.where(lowest_low.notna())
        prev_close = close.shift(1)
        true_range = pd.concat(
            [high - low, (high - prev_close).abs(), (low - prev_close).abs()], axis=1
        ).max(axis=1)
        atr = true_range.rolling(s.atr_period).mean()
        stoch = stoch_rsi(close, s.rsi_period, s.stoch_period, s.k_period, s.d_period)

        frame = pd.DataFrame(
            {"close": close, "wma_fib_0": wma_fib_0, "atr": atr, "k": stoch["k"], "d": stoch["d"]}
        ).dropna()
        if frame.empty:
            logger.warning("No complete indicator row yet; more data needed")
            return None

        latest = frame.iloc[-1]
        wma_value = float(latest["wma_fib_0"])
        if not math.isfinite(wma_value):
            return None
        fib_entry = wma_value * (1 - s.fib_entry_offset_pct)
        timestamp = frame.index[-1]
        return IndicatorSnapshot(
            latest_price=float(latest["close"]),
            fib_entry=fib_entry,
            wma_fib_0=wma_value,
            stoch_rsi=StochReading(k=float(latest["k"]), d=float(latest["d"])),
            stoch_rsi_4hr=stoch_4hr,
            bull_state=bull_state,
            atr=float(latest["atr"]),
            timestamp=timestamp.isoformat() if hasattr(timestamp, "isoformat") else str(timestamp),
        )


def trigger_status(armed: bool, price: float, fib_entry: float, wma_fib_0: float) -> str:
    """Human readable description of the trigger relative to current levels."""

    if armed:
        distance = (price - wma_fib_0) / wma_fib_0 * 100
        if price > wma_fib_0:
            return f"Armed - price {distance:.2f}% above bounce target ${wma_fib_0:.3f}"
        return f"Armed - waiting for bounce above ${wma_fib_0:.3f} ({abs(distance):.2f}% below)"
    distance = (price - fib_entry) / fib_entry * 100
    if price > fib_entry:
        return f"Waiting for price drop to ${fib_entry:.3f} ({distance:.2f}% above trigger)"
    return "Price below trigger level - should arm soon"


__all__ = ["TechnicalAnalyzer", "resample_ohlc", "stoch_rsi", "trigger_status", "wilder_rsi"]
