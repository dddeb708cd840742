import pytest

from market_schema import IndicatorSnapshot, to_bool, to_float


@pytest.mark.parametrize(
    "raw, expected",
    [(True, True), ("true", True), (" Yes ", True), (1, True), ("bullish", True),
     (False, False), ("false", False), ("0", False), (0.0, False), ("", False), (None, False)],
)
def test_to_bool(raw, expected):
    assert to_bool(raw) is expected


def test_to_bool_unknown_text_uses_default():
    assert to_bool("maybe") is False
    assert to_bool("maybe", default=True) is True


def test_to_float_rejects_non_finite():
    assert to_float("1.5") == 1.5
    assert to_float(float("nan")) is None
    assert to_float(True) is None


def test_snapshot_bull_state_parses_strings():
    base = {"latest_price": "101", "fib_entry": 100, "wma_fib_0": 105}

    assert IndicatorSnapshot.from_mapping({**base, "bull_state": "false"}).bull_state is False
    assert IndicatorSnapshot.from_mapping({**base, "bull_state": "true"}).bull_state is True
    assert IndicatorSnapshot.from_mapping({**base, "bull_state": 1}).bull_state is True
    assert IndicatorSnapshot.from_mapping(base).bull_state is False
