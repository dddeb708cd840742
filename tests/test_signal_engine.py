import random

import pytest

from event_log import EventType
from market_schema import IndicatorSnapshot, StochReading
from position_state import PositionState
from signal_engine import SignalEngine, get_variant
from state_store import StateStore


def _snap(price, fib_entry=100.0, wma=105.0, k=40.0, d=45.0, trend=None, bull=True):
    return IndicatorSnapshot(
        latest_price=price,
        fib_entry=fib_entry,
        wma_fib_0=wma,
        stoch_rsi=StochReading(k, d) if k is not None else None,
        stoch_rsi_4hr=trend,
        bull_state=bull,
    )


@pytest.fixture
def state(tmp_path):
    return PositionState("SOL", StateStore(str(tmp_path)))


def test_dip_then_bounce_fires_exactly_one_buy(state):
    events = []
    engine = SignalEngine(state, "fib_bounce", on_event=lambda et, d: events.append(et))

    signals = [engine.generate(_snap(p)) for p in (101.0, 99.0, 103.0, 106.0, 107.0)]

    assert [s.type for s in signals] == ["hold", "hold", "hold", "buy", "hold"]
    assert state.is_trigger_armed() is False
    assert events == [EventType.TRIGGER_ARMED, EventType.BUY_SIGNAL]


def test_overbought_oscillator_keeps_trigger_armed(state):
    engine = SignalEngine(state, "fib_bounce")
    engine.generate(_snap(99.0))

    blocked = engine.generate(_snap(106.0, k=65.0, d=50.0))
    assert blocked.type == "hold"
    assert "overbought" in blocked.reason
    assert state.is_trigger_armed() is True

    assert engine.generate(_snap(106.0, k=30.0, d=30.0)).is_buy


def test_missing_fields_hold_without_mutation(state):
    engine = SignalEngine(state, "fib_bounce")
    assert engine.generate(_snap(None)).reason.startswith("Waiting for data")
    assert engine.generate(_snap(99.0, k=None)).reason.startswith("Waiting for 5-min")
    assert state.is_trigger_armed() is False


@pytest.mark.parametrize("bad", [None, "garbage", 42, {"latest_price": "abc"}, {"stoch_rsi": {"k": 1}}])
def test_malformed_snapshot_degrades_to_hold(state, bad):
    engine = SignalEngine(state, "fib_bounce")
    signal = engine.generate(bad)
    assert signal.type == "hold"
    assert state.is_trigger_armed() is False


def test_accepts_mapping_snapshots(state):
    engine = SignalEngine(state, "fib_bounce")
    payload = {"latest_price": 99, "fib_entry": 100, "wma_fib_0": 105, "stoch_rsi": {"k": 10, "d": 10}}
    engine.generate(payload)
    assert state.is_trigger_armed() is True


def test_reset_variant_disarms_without_buying(state):
    events = []
    engine = SignalEngine(state, "fib_bounce_reset", on_event=lambda et, d: events.append(et))
    engine.generate(_snap(99.0))

    # far above wma with an overbought oscillator: no buy, reset threshold crossed
    signal = engine.generate(_snap(110.0, k=90.0, d=90.0))
    assert signal.type == "hold"
    assert state.is_trigger_armed() is False
    assert events[-1] == EventType.TRIGGER_DISARMED


def test_4h_variant_gates(state):
    engine = SignalEngine(state, "fib_bounce_4h")

    assert "4-hour" in engine.generate(_snap(99.0)).reason
    overbought = StochReading(90.0, 85.0)
    assert "overbought" in engine.generate(_snap(99.0, trend=overbought)).reason
    neutral = StochReading(50.0, 50.0)
    assert "bearish" in engine.generate(_snap(99.0, trend=neutral, bull=False)).reason
    assert state.is_trigger_armed() is False

    oversold = StochReading(10.0, 12.0)
    engine.generate(_snap(99.0, trend=oversold, bull=False))
    assert state.is_trigger_armed() is True
    # cutoff is 80 for this variant
    assert engine.generate(_snap(106.0, k=70.0, d=70.0, trend=neutral)).is_buy


def test_unknown_variant_rejected():
    with pytest.raises(ValueError):
        get_variant("nope")


def test_trigger_transitions_only_on_defined_conditions(state):
    rng = random.Random(7)
    engine = SignalEngine(state, "fib_bounce_reset")
    for _ in range(500):
        price = rng.uniform(95.0, 112.0)
        k = rng.uniform(0.0, 100.0)
        before = state.is_trigger_armed()
        signal = engine.generate(_snap(price, k=k, d=k))
        after = state.is_trigger_armed()
        if not before and after:
            assert price < 100.0
        if before and not after:
            assert signal.is_buy or price > 105.0 * 1.005
        if signal.is_buy:
            assert before and price > 105.0


def test_blockers_record_trade_blocked_events(state):
    events = []
    engine = SignalEngine(state, "fib_bounce_4h", on_event=lambda et, d: events.append((et, dict(d))))

    engine.generate(_snap(99.0, trend=StochReading(90.0, 85.0)))
    engine.generate(_snap(99.0, trend=StochReading(50.0, 50.0), bull=False))
    engine.generate(_snap(99.0, trend=StochReading(50.0, 50.0)))
    engine.generate(_snap(106.0, k=85.0, d=70.0, trend=StochReading(50.0, 50.0)))

    blocked = [details for event_type, details in events if event_type == EventType.TRADE_BLOCKED]
    assert [d["reason"] for d in blocked] == [
        "4hr_stoch_overbought",
        "4hr_trend_bearish_not_oversold",
        "5min_stoch_overbought",
    ]
    assert blocked[0]["k"] == 90.0
    assert blocked[1]["bull_state"] is False
    assert blocked[2]["d"] == 70.0
    assert state.is_trigger_armed() is True
