import numpy as np
import pandas as pd
import pytest

from config import AnalysisSettings
from technical_analyzer import TechnicalAnalyzer, resample_ohlc, stoch_rsi, trigger_status, wilder_rsi


def _series(minutes: int, slope: float) -> pd.Series:
    index = pd.date_range("2024-01-01", periods=minutes, freq="1min", tz="UTC")
    steps = np.arange(minutes)
    values = 100 + slope * steps + np.sin(steps / 7.0)
    return pd.Series(values, index=index, name="price")


def _settings() -> AnalysisSettings:
    return AnalysisSettings(
        trend_rule="1h",
        trend_ma_period=3,
        trend_rsi_period=3,
        trend_stoch_period=3,
    )


def test_resample_ohlc_labels_by_open_time():
    prices = _series(10, 1.0)
    candles = resample_ohlc(prices, "5min")
    assert len(candles) == 2
    first = candles.iloc[0]
    assert first["open"] == prices.iloc[0]
    assert first["close"] == prices.iloc[4]
    assert candles.index[0] == prices.index[0]


def test_wilder_rsi_is_100_for_monotonic_gains():
    closes = pd.Series(np.arange(1.0, 30.0))
    rsi = wilder_rsi(closes, 14)
    assert rsi.iloc[:14].isna().all()
    assert rsi.iloc[-1] == pytest.approx(100.0)


def test_stoch_rsi_stays_within_bounds():
    closes = _series(600, 0.01).iloc[::5].reset_index(drop=True)
    frame = stoch_rsi(closes, 14, 14, 3, 3).dropna()
    assert not frame.empty
    assert frame["k"].between(0, 100).all()
    assert frame["d"].between(0, 100).all()


def test_analyze_requires_enough_history():
    analyzer = TechnicalAnalyzer(_settings())
    assert analyzer.analyze(_series(analyzer.min_records - 1, 0.05)) is None
    # enough ticks but not enough 5-minute candles
    assert analyzer.analyze(_series(analyzer.min_records + 10, 0.05)) is None


def test_analyze_builds_snapshot_from_levels():
    settings = _settings()
    analyzer = TechnicalAnalyzer(settings)
    snapshot = analyzer.analyze(_series(2000, 0.05))

    assert snapshot is not None
    assert snapshot.has_levels
    assert snapshot.fib_entry == pytest.approx(snapshot.wma_fib_0 * (1 - settings.fib_entry_offset_pct))
    # the bounce target trails the rolling low, so it sits under price in an uptrend
    assert snapshot.wma_fib_0 < snapshot.latest_price
    assert 0 <= snapshot.stoch_rsi.k <= 100
    assert snapshot.atr > 0
    assert snapshot.bull_state is True
    assert snapshot.stoch_rsi_4hr is not None


def test_bear_state_in_downtrend():
    analyzer = TechnicalAnalyzer(_settings())
    snapshot = analyzer.analyze(_series(2000, -0.03))
    assert snapshot is not None
    assert snapshot.bull_state is False


def test_trend_state_without_enough_candles():
    analyzer = TechnicalAnalyzer(AnalysisSettings())
    bull, reading = analyzer.trend_state(_series(600, 0.05))
    assert bull is False
    assert reading is None


def test_trigger_status_messages():
    assert trigger_status(False, 101.0, 100.0, 105.0).startswith("Waiting for price drop")
    assert trigger_status(False, 99.0, 100.0, 105.0) == "Price below trigger level - should arm soon"
    assert "waiting for bounce" in trigger_status(True, 102.0, 100.0, 105.0)
    assert "above bounce target" in trigger_status(True, 106.0, 100.0, 105.0)
