import json
import os

from state_store import LIVE_RISK, MANUAL_OVERRIDE, POSITION, StateStore


def test_put_get_roundtrip_stamps_updated_at(tmp_path):
    store = StateStore(str(tmp_path))
    store.put("SOL", POSITION, {"in_position": True, "entry_price": 100.0})

    record = store.get("SOL", POSITION)
    assert record["in_position"] is True
    assert record["entry_price"] == 100.0
    assert isinstance(record["updated_at"], float)
    assert os.path.exists(tmp_path / "SOL" / "position.json")


def test_put_keeps_explicit_updated_at(tmp_path):
    store = StateStore(str(tmp_path))
    store.put("SOL", LIVE_RISK, {"updated_at": 123.0})
    assert store.updated_at("SOL", LIVE_RISK) == 123.0
    assert store.age("SOL", LIVE_RISK, now=200.0) == 77.0


def test_get_returns_default_for_missing_or_corrupt(tmp_path):
    store = StateStore(str(tmp_path))
    assert store.get("SOL", POSITION) is None
    assert store.get("SOL", POSITION, {"x": 1}) == {"x": 1}

    path = tmp_path / "SOL" / "position.json"
    path.parent.mkdir(parents=True)
    path.write_text("{not json")
    assert store.get("SOL", POSITION) is None

    path.write_text(json.dumps([1, 2, 3]))
    assert store.get("SOL", POSITION) is None


def test_take_consumes_directive_once(tmp_path):
    store = StateStore(str(tmp_path))
    store.put("DOGE", MANUAL_OVERRIDE, {"signal": "buy"})

    first = store.take("DOGE", MANUAL_OVERRIDE)
    second = store.take("DOGE", MANUAL_OVERRIDE)

    assert first["signal"] == "buy"
    assert second is None
    assert not store.exists("DOGE", MANUAL_OVERRIDE)
    assert not any(name.endswith(".claim") for name in os.listdir(tmp_path / "DOGE"))


def test_last_write_wins(tmp_path):
    store = StateStore(str(tmp_path))
    store.put("SOL", MANUAL_OVERRIDE, {"signal": "hold"})
    store.put("SOL", MANUAL_OVERRIDE, {"signal": "buy"})
    assert store.take("SOL", MANUAL_OVERRIDE)["signal"] == "buy"


def test_delete_and_clear(tmp_path):
    store = StateStore(str(tmp_path))
    store.put("ADA", POSITION, {"in_position": True})

    assert store.clear("ADA", (POSITION, LIVE_RISK)) == [POSITION]
    assert store.delete("ADA", POSITION) is False


def test_rejects_path_traversal(tmp_path):
    store = StateStore(str(tmp_path))
    try:
        store.path_for("..", POSITION)
    except ValueError:
        pass
    else:
        raise AssertionError("expected ValueError")
