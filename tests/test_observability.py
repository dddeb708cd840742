import csv
import json
import logging
import threading

import observability
from file_utils import atomic_write_json, file_lock


def test_log_event_emits_json(caplog):
    logger = logging.getLogger("test.observability")
    caplog.set_level(logging.INFO, logger="test.observability")

    observability.log_event(logger, "agent_tick", asset="SOL", price=101.5, extra=object())

    payload = json.loads(caplog.records[-1].getMessage())
    assert payload["event"] == "agent_tick"
    assert payload["asset"] == "SOL"
    assert payload["extra"].startswith("<object")


def test_record_metric_writes_csv(tmp_path):
    path = tmp_path / "nested" / "metrics.csv"
    observability.set_metrics_path(str(path))

    observability.record_metric("tick_latency", 0.25, labels={"asset": "SOL"})
    observability.record_metric("restarts", 1)

    with path.open() as handle:
        rows = list(csv.DictReader(handle))
    assert [row["metric"] for row in rows] == ["tick_latency", "restarts"]
    assert float(rows[0]["value"]) == 0.25
    assert json.loads(rows[0]["labels"]) == {"asset": "SOL"}


def test_record_metric_swallows_bad_values(tmp_path):
    path = tmp_path / "metrics.csv"
    observability.set_metrics_path(str(path))
    observability.record_metric("bad", "not-a-number")
    assert not path.exists()


def test_atomic_write_json_replaces_file(tmp_path):
    target = tmp_path / "SOL" / "position.json"
    atomic_write_json(str(target), {"in_position": True})
    atomic_write_json(str(target), {"in_position": False})

    assert json.loads(target.read_text()) == {"in_position": False}
    assert [p.name for p in target.parent.iterdir()] == ["position.json"]


def test_file_lock_serialises_threads(tmp_path):
    target = str(tmp_path / "events.jsonl")
    counter = {"value": 0}

    def _bump():
        for _ in range(200):
            with file_lock(target):
                current = counter["value"]
                counter["value"] = current + 1

    threads = [threading.Thread(target=_bump) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert counter["value"] == 800
    assert (tmp_path / "events.jsonl.lock").exists()
