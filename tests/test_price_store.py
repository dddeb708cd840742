from datetime import datetime, timedelta, timezone

from market_schema import PriceTick
from price_store import PriceStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_append_and_load_series(tmp_path):
    store = PriceStore(str(tmp_path))
    for i in range(5):
        assert store.append("SOL", PriceTick(T0 + timedelta(minutes=i), 100.0 + i))

    series = store.load("SOL")
    assert series.name == "price"
    assert list(series) == [100.0, 101.0, 102.0, 103.0, 104.0]
    assert str(series.index.tz) == "UTC"
    assert list(store.load("SOL", limit=2)) == [103.0, 104.0]
    assert store.recent("SOL", 3) == [102.0, 103.0, 104.0]


def test_out_of_order_and_duplicate_ticks_rejected(tmp_path):
    store = PriceStore(str(tmp_path))
    assert store.append("SOL", PriceTick(T0 + timedelta(minutes=1), 101.0))
    assert not store.append("SOL", PriceTick(T0 + timedelta(minutes=1), 105.0))
    assert not store.append("SOL", PriceTick(T0, 99.0))
    assert list(store.load("SOL")) == [101.0]


def test_last_timestamp_survives_new_instance(tmp_path):
    PriceStore(str(tmp_path)).append("SOL", PriceTick(T0 + timedelta(minutes=5), 1.0))

    fresh = PriceStore(str(tmp_path))
    assert not fresh.append("SOL", PriceTick(T0, 2.0))
    assert fresh.append("SOL", PriceTick(T0 + timedelta(minutes=6), 3.0))


def test_missing_history_is_empty(tmp_path):
    store = PriceStore(str(tmp_path))
    assert store.load("ADA").empty
    assert store.recent("ADA", 10) == []


def test_bounded_load_reads_only_the_tail(tmp_path, monkeypatch):
    import price_store as price_store_module

    monkeypatch.setattr(price_store_module, "_TAIL_BLOCK", 64)
    store = PriceStore(str(tmp_path))
    for i in range(200):
        store.append("SOL", PriceTick(T0 + timedelta(minutes=i), 100.0 + i))

    assert list(store.load("SOL", limit=3)) == [297.0, 298.0, 299.0]
    assert len(store.load("SOL", limit=500)) == 200
    assert not store.append("SOL", PriceTick(T0 + timedelta(minutes=10), 1.0))


def test_backfill_merges_history_and_keeps_existing_prices(tmp_path):
    import pandas as pd

    store = PriceStore(str(tmp_path))
    store.append("SOL", PriceTick(T0 + timedelta(minutes=2), 102.0))
    history = pd.Series(
        [90.0, 91.0, 999.0],
        index=pd.DatetimeIndex([T0, T0 + timedelta(minutes=1), T0 + timedelta(minutes=2)]),
    )

    assert store.backfill("SOL", history) == 2
    assert store.backfill("SOL", history) == 0
    assert list(store.load("SOL")) == [90.0, 91.0, 102.0]
    assert store.append("SOL", PriceTick(T0 + timedelta(minutes=3), 103.0))


def test_clear_removes_history(tmp_path):
    store = PriceStore(str(tmp_path))
    store.append("SOL", PriceTick(T0, 1.0))
    store.append("SOL", PriceTick(T0 + timedelta(minutes=1), 2.0))

    assert store.clear("SOL") == 2
    assert store.load("SOL").empty
    assert store.clear("SOL") == 0


def test_read_history_file_formats(tmp_path):
    import json

    import pytest

    from price_store import read_history_file

    epoch_ms = int(T0.timestamp() * 1000)
    json_path = tmp_path / "historical_prices.json"
    json_path.write_text(json.dumps([
        {"timestamp": epoch_ms + 60_000, "price": 2.0},
        {"timestamp": epoch_ms, "price": 1.0},
        {"timestamp": epoch_ms, "price": 5.0},
        {"timestamp": epoch_ms + 120_000, "price": None},
    ]))
    series = read_history_file(str(json_path))
    assert list(series) == [1.0, 2.0]
    assert series.index[0] == T0

    csv_path = tmp_path / "prices.csv"
    csv_path.write_text("Timestamp,Price\n2024-01-01T00:05:00Z,3.5\n")
    assert list(read_history_file(str(csv_path))) == [3.5]

    bad = tmp_path / "bad.csv"
    bad.write_text("time,close\n1,2\n")
    with pytest.raises(ValueError):
        read_history_file(str(bad))
