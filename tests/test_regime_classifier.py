import pytest

from event_log import EventLog, EventType
from market_schema import IndicatorSnapshot, Regime, StochReading
from regime_classifier import (
    RegimeClassifier,
    RegimeParseError,
    build_prompt,
    fallback_assessment,
    hourly_averages,
    market_metrics,
    parse_regime_response,
)

GOOD_REPLY = """REGIME: STRONG_UPTREND
CONFIDENCE: 8
REASONING: Price holding above both fib levels.
SIGNALS: Higher lows, 4h stoch rising
OUTLOOK: Continuation likely"""


class FakeBackend:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = 0

    def classify(self, system_prompt, user_prompt):
        self.calls += 1
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


SNAP = IndicatorSnapshot(
    latest_price=101.0,
    fib_entry=100.0,
    wma_fib_0=102.0,
    stoch_rsi=StochReading(30.0, 35.0),
    bull_state=True,
)


def test_parse_valid_reply():
    assessment = parse_regime_response(GOOD_REPLY)
    assert assessment.regime is Regime.STRONG_UPTREND
    assert assessment.confidence == 8
    assert assessment.reasoning.startswith("Price holding")
    assert assessment.recommendations


def test_parse_tolerates_markdown_and_fraction():
    reply = "**REGIME:** [ranging]\n**CONFIDENCE:** 6/10\nREASONING: flat"
    assessment = parse_regime_response(reply)
    assert assessment.regime is Regime.RANGING
    assert assessment.confidence == 6


@pytest.mark.parametrize(
    "reply",
    [
        "",
        "REGIME: MOONING\nCONFIDENCE: 5",
        "REGIME: RANGING\nCONFIDENCE: high",
        "REGIME: RANGING\nCONFIDENCE: 11",
        "REGIME: RANGING",
        "I think the market is going up",
    ],
)
def test_parse_rejects_invalid_replies(reply):
    with pytest.raises(RegimeParseError):
        parse_regime_response(reply)


def test_fallback_uses_bull_state_and_stoch():
    assert fallback_assessment(SNAP).regime is Regime.WEAK_UPTREND
    bear = IndicatorSnapshot(stoch_rsi=StochReading(50.0, 50.0), bull_state=False)
    assert fallback_assessment(bear).regime is Regime.WEAK_DOWNTREND
    assert fallback_assessment(None).regime is Regime.RANGING
    assert fallback_assessment(None).source == "fallback"


def test_invalid_reply_falls_back(tmp_path):
    classifier = RegimeClassifier(FakeBackend(["nonsense"]), event_log=EventLog(str(tmp_path)))
    assessment = classifier.assess("SOL", SNAP)
    assert assessment.source == "fallback"
    assert assessment.regime is Regime.WEAK_UPTREND


def test_auto_assessments_are_rate_limited(tmp_path):
    clock = FakeClock(1_000.0)
    backend = FakeBackend([GOOD_REPLY])
    log = EventLog(str(tmp_path))
    classifier = RegimeClassifier(backend, event_log=log, min_interval=600, clock=clock)

    first = classifier.assess("SOL", SNAP)
    clock.now += 300
    second = classifier.assess("SOL", SNAP)
    assert second is first
    assert backend.calls == 1

    classifier.assess("DOGE", SNAP)
    assert backend.calls == 2

    clock.now += 301
    classifier.assess("SOL", SNAP)
    assert backend.calls == 3
    assert len(log.query("SOL", EventType.REGIME_ASSESSMENT)) == 2


def test_manual_assessment_bypasses_cache(tmp_path):
    backend = FakeBackend([GOOD_REPLY])
    classifier = RegimeClassifier(backend, min_interval=600, clock=FakeClock())
    classifier.assess("SOL", SNAP)
    classifier.assess("SOL", SNAP, source="manual")
    classifier.assess("SOL", SNAP, source="manual")
    assert backend.calls == 3
    assert classifier.cached("SOL").regime is Regime.STRONG_UPTREND


def test_backend_failure_is_cached_as_fallback():
    clock = FakeClock()
    backend = FakeBackend([RuntimeError("boom"), GOOD_REPLY])
    classifier = RegimeClassifier(backend, min_interval=600, clock=clock)

    failed = classifier.assess("SOL", SNAP)
    assert failed.source == "fallback"
    assert classifier.assess("SOL", SNAP) is failed
    assert backend.calls == 1


def test_market_metrics_and_prompt():
    prices = [100.0 + (i % 10) * 0.1 for i in range(240)]
    metrics = market_metrics(SNAP, prices)
    assert metrics["volatility"] > 0
    assert metrics["level_respect"] == "STRONG"
    assert metrics["breakouts"] == 0
    assert "Hour 4 (1h ago)" in hourly_averages(prices)
    assert hourly_averages(prices[:10]).startswith("Insufficient")

    prompt = build_prompt("SOL", SNAP, prices)
    assert "Asset: SOL" in prompt
    assert "Price vs Fib Entry: ABOVE" in prompt
    assert "Bull State: BULLISH" in prompt


def test_groq_backend_respects_use_groq_switch(monkeypatch):
    from regime_classifier import GroqRegimeBackend

    monkeypatch.setenv("USE_GROQ", "0")
    classifier = RegimeClassifier(GroqRegimeBackend())
    assessment = classifier.assess("SOL", SNAP, source="manual")
    assert assessment.source == "fallback"


def test_groq_backend_returns_llm_text(monkeypatch):
    import regime_classifier
    from regime_classifier import GroqRegimeBackend

    monkeypatch.setenv("USE_GROQ", "1")
    monkeypatch.setattr(regime_classifier, "call_llm_for_task", lambda *_a, **_k: (GOOD_REPLY, "m"))
    assessment = RegimeClassifier(GroqRegimeBackend()).assess("SOL", SNAP, source="manual")
    assert assessment.regime is Regime.STRONG_UPTREND
    assert assessment.source == "llm"
