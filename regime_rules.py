"""Regime driven lifecycle rules and the regime to risk-parameter table.

Rules are evaluated in declaration order and only the first match applies.
The emergency rule comes first because its condition (confidence >= 9) is a
subset of the stronger bearish and volatile rules below it, which would
otherwise always shadow it.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from market_schema import Regime, RegimeAssessment, RuleAction, utc_now_iso

Condition = Callable[[RegimeAssessment], bool]


@dataclass(frozen=True)
class RegimeRule:
    name: str
    condition: Condition
    action: RuleAction
    description: str

    def matches(self, assessment: RegimeAssessment) -> bool:
        try:
            return bool(self.condition(assessment))
        except (AttributeError, TypeError, ValueError):
            return False


def regime_at_least(regimes: Iterable[Regime], confidence: int) -> Condition:
    wanted = frozenset(regimes)

    def _condition(assessment: RegimeAssessment) -> bool:
        return assessment.regime in wanted and assessment.confidence >= confidence

    return _condition


DEFAULT_RULES: List[RegimeRule] = [
    RegimeRule(
        name="EMERGENCY_SHUTDOWN",
        condition=regime_at_least((Regime.STRONG_DOWNTREND, Regime.VOLATILE_UNCERTAIN), 9),
        action=RuleAction.PANIC_ALL,
        description="Emergency shutdown - stop every running token",
    ),
    RegimeRule(
        name="STRONG_DOWNTREND_DISABLE",
        condition=regime_at_least((Regime.STRONG_DOWNTREND,), 8),
        action=RuleAction.DISABLE,
        description="Disable trading during strong bearish conditions",
    ),
    RegimeRule(
        name="VOLATILE_REDUCE",
        condition=regime_at_least((Regime.VOLATILE_UNCERTAIN,), 7),
        action=RuleAction.REDUCE_RISK,
        description="Reduce position sizes during volatile conditions",
    ),
    RegimeRule(
        name="STRONG_UPTREND_ENABLE",
        condition=regime_at_least((Regime.STRONG_UPTREND,), 7),
        action=RuleAction.ENABLE,
        description="Re-enable trading during strong bullish conditions",
    ),
]

TOKEN_RULE_MIN_CONFIDENCE = 7


def token_rules(
    symbol: str,
    enable_on: Sequence[str] = (),
    disable_on: Sequence[str] = (),
    *,
    min_confidence: int = TOKEN_RULE_MIN_CONFIDENCE,
) -> List[RegimeRule]:
    """Per-token rules built from ``disable_on``/``enable_on`` regime lists."""

    rules: List[RegimeRule] = []
    disable = [r for r in (Regime.parse(x) for x in disable_on) if r is not None]
    enable = [r for r in (Regime.parse(x) for x in enable_on) if r is not None]
    if disable:
        rules.append(
            RegimeRule(
                name=f"{symbol}_REGIME_DISABLE",
                condition=regime_at_least(disable, min_confidence),
                action=RuleAction.DISABLE,
                description=f"{symbol} disabled in {', '.join(r.value for r in disable)}",
            )
        )
    if enable:
        rules.append(
            RegimeRule(
                name=f"{symbol}_REGIME_ENABLE",
                condition=regime_at_least(enable, min_confidence),
                action=RuleAction.ENABLE,
                description=f"{symbol} enabled in {', '.join(r.value for r in enable)}",
            )
        )
    return rules


def first_matching_rule(rules: Sequence[RegimeRule], assessment: RegimeAssessment) -> Optional[RegimeRule]:
    for rule in rules:
        if rule.matches(assessment):
            return rule
    return None


@dataclass(frozen=True)
class RegimeRiskProfile:
    stop_loss_pct: float
    take_profit_pct: float
    size_multiplier: float
    strategy: str
    description: str


REGIME_RISK_TABLE: Dict[Regime, RegimeRiskProfile] = {
    Regime.STRONG_UPTREND: RegimeRiskProfile(
        0.25, 4.0, 1.0, "AGGRESSIVE_TREND", "Wide stops, massive targets for trend following"
    ),
    Regime.WEAK_UPTREND: RegimeRiskProfile(
        0.30, 1.5, 0.8, "CAUTIOUS_TREND", "Moderate parameters for weak trends"
    ),
    Regime.RANGING: RegimeRiskProfile(
        0.35, 0.80, 0.7, "RANGE_SCALPING", "Quick profits in sideways markets"
    ),
    Regime.VOLATILE_UNCERTAIN: RegimeRiskProfile(
        0.40, 0.65, 0.5, "VOLATILITY_SCALPING", "Tight management for volatile conditions"
    ),
    Regime.WEAK_DOWNTREND: RegimeRiskProfile(
        0.40, 0.25, 0.25, "MINIMAL_COUNTER", "Minimal size counter-trend trades only"
    ),
    Regime.STRONG_DOWNTREND: RegimeRiskProfile(
        0.50, 0.20, 0.0, "DISABLED", "No trading during strong bearish conditions"
    ),
}


def risk_record_for(
    assessment: RegimeAssessment,
    size_overrides: Optional[Mapping[str, float]] = None,
    *,
    now: Optional[float] = None,
) -> Optional[Dict[str, Any]]:
    """Risk-parameter record for ``assessment`` or ``None`` for unknown regimes.

    A per-token size multiplier for the regime replaces the table value.
    """

    profile = REGIME_RISK_TABLE.get(assessment.regime)
    if profile is None:
        return None
    size = profile.size_multiplier
    if size_overrides and assessment.regime.value in size_overrides:
        size = float(size_overrides[assessment.regime.value])
    return {
        "timestamp": utc_now_iso(),
        "updated_at": time.time() if now is None else now,
        "regime": assessment.regime.value,
        "regime_confidence": assessment.confidence,
        "live_stop_loss_pct": profile.stop_loss_pct,
        "live_take_profit_pct": profile.take_profit_pct,
        "size_multiplier": max(0.0, size),
        "strategy": profile.strategy,
        "regime_description": profile.description,
    }


__all__ = [
    "DEFAULT_RULES",
    "REGIME_RISK_TABLE",
    "RegimeRiskProfile",
    "RegimeRule",
    "first_matching_rule",
    "regime_at_least",
    "risk_record_for",
    "token_rules",
]
