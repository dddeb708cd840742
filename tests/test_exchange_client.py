from types import SimpleNamespace

import pytest
import requests

from exchange_client import ExchangeError, HyperliquidInfoClient, RateLimitError


class FakeSession:
    def __init__(self, responses):
        self.responses = dict(responses)
        self.requests = []

    def post(self, url, json, timeout):
        self.requests.append(json)
        reply = self.responses[json["type"]]
        if isinstance(reply, Exception):
            raise reply
        status, payload = reply
        return SimpleNamespace(status_code=status, json=lambda: payload, text=str(payload))


def _client(responses, address="0xABC"):
    session = FakeSession(responses)
    return HyperliquidInfoClient(address, api_url="https://info.test", session=session), session


def test_mid_prices_and_meta():
    client, _ = _client({
        "allMids": (200, {"SOL": "151.25", "BAD": "x"}),
        "meta": (200, {"universe": [{"name": "BTC", "szDecimals": 5}, {"name": "SOL", "szDecimals": 2}]}),
    })
    assert client.all_mids() == {"SOL": 151.25}
    assert client.get_mid_price("DOGE") is None
    assert client.asset_meta("SOL").index == 1
    with pytest.raises(ExchangeError):
        client.asset_meta("DOGE")


def test_rate_limit_and_transport_errors():
    client, _ = _client({"allMids": (429, {}), "meta": requests.ConnectionError("down")})
    with pytest.raises(RateLimitError):
        client.all_mids()
    with pytest.raises(ExchangeError):
        client.meta()


def test_open_positions_from_clearinghouse_state():
    client, session = _client({
        "clearinghouseState": (
            200,
            {
                "assetPositions": [
                    {"position": {"coin": "SOL", "szi": "2.5", "entryPx": "150", "returnOnEquity": "0.12"}},
                    {"position": {"coin": "DOGE", "szi": "0", "entryPx": "0.1"}},
                    {"type": "oneWay"},
                ]
            },
        )
    })

    positions = client.open_positions()

    assert [p.coin for p in positions] == ["SOL"]
    assert positions[0].direction == "LONG"
    assert positions[0].return_on_equity == pytest.approx(0.12)
    assert session.requests[-1] == {"type": "clearinghouseState", "user": "0xabc"}


def test_open_positions_needs_an_address():
    client, _ = _client({}, address="")
    with pytest.raises(ExchangeError):
        client.open_positions()
