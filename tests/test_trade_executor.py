import pytest

from config import TradingSettings
from event_log import EventLog, EventType
from exchange_client import AssetMeta, ExchangeError, PaperExchange
from trade_executor import TradeExecutor, round_price, round_size


class FakeInfo:
    def __init__(self, price=150.0):
        self.price = price

    def meta(self, refresh=False):
        return [AssetMeta("BTC", 0, 5), AssetMeta("SOL", 5, 2)]

    def asset_meta(self, coin):
        for meta in self.meta():
            if meta.name == coin:
                return meta
        raise ExchangeError(f"Asset {coin} not found in exchange metadata")

    def get_mid_price(self, coin):
        return self.price


class RecordingTransport:
    def __init__(self, response=None):
        self.orders = []
        self.response = response

    def order(self, orders, grouping="na"):
        self.orders.extend(orders)
        if self.response is not None:
            return self.response
        return {
            "status": "ok",
            "response": {"data": {"statuses": [{"filled": {"totalSz": orders[0]["s"], "avgPx": "150.1"}}]}},
        }


SETTINGS = TradingSettings(trade_usd_size=360, leverage=3, slippage=0.01)


def test_round_price_uses_significant_figures():
    assert round_price(151.234567, 2) == 151.23
    assert round_price(0.123456789, 0) == 0.12346
    assert round_price(12345.67, 5) == 12346.0
    assert round_price(-1.0, 2) == 0.0
    assert round_size(2.456, 2) == 2.46


def test_buy_builds_ioc_payload(tmp_path):
    transport = RecordingTransport()
    log = EventLog(str(tmp_path))
    executor = TradeExecutor("SOL", FakeInfo(), transport, SETTINGS, event_log=log)

    result = executor.execute_buy(360)

    assert result.success
    assert result.size == 2.4
    assert result.price == 150.1
    payload = transport.orders[0]
    assert payload == {"a": 5, "b": True, "p": "151.5", "s": "2.4", "r": False, "t": {"limit": {"tif": "Ioc"}}}
    assert log.latest("SOL", EventType.TRADE_EXECUTED).details["size"] == 2.4


def test_close_is_reduce_only_sell(tmp_path):
    transport = RecordingTransport()
    executor = TradeExecutor("SOL", FakeInfo(), transport, SETTINGS)
    result = executor.close_position(2.4)
    assert result.success
    payload = transport.orders[0]
    assert payload["b"] is False
    assert payload["r"] is True
    assert payload["p"] == "148.5"


@pytest.mark.parametrize(
    "response",
    [
        {"status": "err", "response": "bad"},
        {"status": "ok", "response": {"data": {"statuses": []}}},
        {"status": "ok", "response": {"data": {"statuses": [{"error": "no liquidity"}]}}},
    ],
)
def test_rejected_orders_fail_cleanly(tmp_path, response):
    log = EventLog(str(tmp_path))
    executor = TradeExecutor("SOL", FakeInfo(), RecordingTransport(response), SETTINGS, event_log=log)
    result = executor.execute_buy(360)
    assert not result.success
    assert result.error
    assert log.latest("SOL", EventType.TRADE_FAILED) is not None


def test_invalid_sizes_fail_without_ordering():
    transport = RecordingTransport()
    executor = TradeExecutor("SOL", FakeInfo(), transport, SETTINGS)
    assert not executor.execute_buy(0).success
    assert not executor.execute_buy(0.0001).success
    assert not executor.close_position(0).success
    assert transport.orders == []


def test_missing_price_fails():
    executor = TradeExecutor("SOL", FakeInfo(price=None), RecordingTransport(), SETTINGS)
    result = executor.execute_buy(360)
    assert not result.success
    assert "current price" in result.error


def test_paper_exchange_round_trip(tmp_path):
    info = FakeInfo(price=100.0)
    paper = PaperExchange(info, str(tmp_path / "book.json"), leverage=3)
    executor = TradeExecutor("SOL", info, paper, SETTINGS)

    bought = executor.execute_buy(360)
    assert bought.success and bought.price == 100.0
    live = paper.get_live_position("SOL")
    assert live.size == 3.6
    assert live.direction == "LONG"

    info.price = 102.0
    assert paper.get_live_position("SOL").return_on_equity == pytest.approx(0.06)

    closed = executor.close_position(live.size)
    assert closed.success
    assert paper.get_live_position("SOL") is None
    assert paper.open_positions() == []


def test_paper_exchange_rejects_reduce_only_without_position(tmp_path):
    info = FakeInfo(price=100.0)
    paper = PaperExchange(info, str(tmp_path / "book.json"))
    result = TradeExecutor("SOL", info, paper, SETTINGS).close_position(1.0)
    assert not result.success
    assert "Reduce only" in result.error
