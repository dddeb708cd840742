import json

import pytest

import multi_launcher
from event_log import EventLog, EventType
from state_store import MANUAL_CLOSE, MANUAL_OVERRIDE, SUPERVISOR_COMMAND, SUPERVISOR_SCOPE, SUPERVISOR_STATUS, StateStore


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("AGENT_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("AGENT_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.delenv("TOKENS_CONFIG_FILE", raising=False)
    return tmp_path


def test_control_commands_post_to_mailbox(data_dir, capsys):
    assert multi_launcher.main(["disable", "doge"]) == 0
    command = StateStore(str(data_dir)).get(SUPERVISOR_SCOPE, SUPERVISOR_COMMAND)
    assert command["command"] == "disable"
    assert command["asset"] == "DOGE"
    assert "Queued command" in capsys.readouterr().out


def test_panic_all_and_emergency_reason(data_dir):
    store = StateStore(str(data_dir))
    multi_launcher.main(["panic"])
    assert "asset" not in store.get(SUPERVISOR_SCOPE, SUPERVISOR_COMMAND)

    multi_launcher.main(["emergency-halt", "exchange", "maintenance"])
    command = store.get(SUPERVISOR_SCOPE, SUPERVISOR_COMMAND)
    assert command == {"command": "emergency-halt", "reason": "exchange maintenance", "updated_at": command["updated_at"]}


def test_force_buy_and_close_write_directives(data_dir):
    store = StateStore(str(data_dir))
    multi_launcher.main(["force-buy", "sol"])
    multi_launcher.main(["force-close", "sol"])
    assert store.take("SOL", MANUAL_OVERRIDE)["signal"] == "buy"
    assert store.take("SOL", MANUAL_CLOSE)["close"] is True


def test_status_reads_snapshot(data_dir, capsys):
    assert multi_launcher.main(["status"]) == 1

    snapshot = {
        "manager": {"pid": 1, "emergency": None},
        "tokens": {
            "SOL": {"status": "HEALTHY", "enabled": True, "mode": "trade", "uptime": 120.0, "restart_count": 0,
                    "regime": {"current": "RANGING", "confidence": 6}},
            "LTC": {"status": "STOPPED", "enabled": False, "mode": "trade", "uptime": 0.0, "restart_count": 0,
                    "regime": None},
        },
    }
    StateStore(str(data_dir)).put(SUPERVISOR_SCOPE, SUPERVISOR_STATUS, snapshot)
    capsys.readouterr()

    assert multi_launcher.main(["status"]) == 0
    out = capsys.readouterr().out
    assert "HEALTHY" in out and "RANGING" in out

    assert multi_launcher.main(["status", "--json"]) == 0
    assert json.loads(capsys.readouterr().out)["tokens"]["SOL"]["status"] == "HEALTHY"


def test_status_frame_columns():
    frame = multi_launcher.status_frame({"tokens": {"SOL": {"status": "RUNNING", "uptime": 90}}})
    assert list(frame["token"]) == ["SOL"]
    assert frame.loc[0, "uptime_min"] == 1.5
    assert frame.loc[0, "regime"] is None


def test_events_command(data_dir, capsys):
    log = EventLog(str(data_dir))
    log.append("SOL", EventType.BUY_SIGNAL, {"price": 106.0})
    log.append(SUPERVISOR_SCOPE, EventType.EMERGENCY_SHUTDOWN, {"reason": "test"})

    multi_launcher.main(["events", "sol"])
    assert "BUY_SIGNAL" in capsys.readouterr().out
    multi_launcher.main(["events", SUPERVISOR_SCOPE])
    assert "EMERGENCY_SHUTDOWN" in capsys.readouterr().out
    multi_launcher.main(["events", "ADA"])
    assert "No events recorded." in capsys.readouterr().out


def test_logs_command(data_dir, capsys):
    log_dir = data_dir / "logs"
    log_dir.mkdir()
    (log_dir / "SOL.log").write_text("first\nsecond\n")

    multi_launcher.main(["logs", "SOL", "--tail", "1"])
    assert capsys.readouterr().out.strip() == "second"

    with pytest.raises(SystemExit):
        multi_launcher.main(["logs", "NOPE"])


def test_backfill_and_clear_prices(data_dir, tmp_path, capsys):
    from price_store import PriceStore

    history = tmp_path / "historical_prices.csv"
    history.write_text(
        "timestamp,price\n"
        "2024-01-01T00:00:00Z,100.0\n"
        "2024-01-01T00:05:00Z,101.0\n"
        "2024-01-01T00:10:00Z,bad\n"
    )

    assert multi_launcher.main(["backfill", "sol", str(history)]) == 0
    out = capsys.readouterr().out
    assert "Total records in file: 2" in out
    assert "New records inserted:  2" in out
    assert list(PriceStore(str(data_dir)).load("SOL")) == [100.0, 101.0]

    multi_launcher.main(["backfill", "SOL", str(history)])
    assert "New records inserted:  0" in capsys.readouterr().out

    assert multi_launcher.main(["clear-prices", "SOL"]) == 0
    assert "Deleted 2 price records for SOL" in capsys.readouterr().out
    assert PriceStore(str(data_dir)).load("SOL").empty


def test_backfill_rejects_bad_input(data_dir, tmp_path):
    assert multi_launcher.main(["backfill", "SOL", str(tmp_path / "missing.csv")]) == 1
    with pytest.raises(SystemExit):
        multi_launcher.main(["clear-prices", "NOPE"])


def test_positions_command(data_dir, monkeypatch, capsys):
    from exchange_client import ExchangeError, LivePosition

    class FakeInfo:
        positions = [LivePosition("SOL", 2.0, 150.0, return_on_equity=0.1)]
        error = None

        def __init__(self, address):
            self.address = address

        def open_positions(self):
            if FakeInfo.error:
                raise FakeInfo.error
            return FakeInfo.positions

    monkeypatch.setattr(multi_launcher, "HyperliquidInfoClient", FakeInfo)
    monkeypatch.delenv("HYPERLIQUID_MAIN_ACCOUNT_ADDRESS", raising=False)
    monkeypatch.delenv("HYPERLIQUID_WALLET_ADDRESS", raising=False)

    with pytest.raises(SystemExit):
        multi_launcher.main(["positions"])

    assert multi_launcher.main(["positions", "--address", "0xabc"]) == 0
    out = capsys.readouterr().out
    assert "SOL" in out and "LONG" in out

    FakeInfo.positions = []
    monkeypatch.setenv("HYPERLIQUID_WALLET_ADDRESS", "0xdef")
    multi_launcher.main(["positions"])
    assert "No open positions for 0xdef" in capsys.readouterr().out

    FakeInfo.error = ExchangeError("HTTP 500")
    assert multi_launcher.main(["positions"]) == 1
