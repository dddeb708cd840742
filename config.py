"""Central configuration loader for environment variables and token settings."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv

# Load environment variables once when this module is imported.
load_dotenv()

import json
import os


def _clean_path(value: str | None) -> str:
    """Return ``value`` without inline comments or surrounding whitespace."""

    if not value:
        return ""
    return value.split("#", 1)[0].strip()


def _truthy(x: str | None) -> bool:
    return str(x or "").strip().lower() in {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(raw)
    except (TypeError, ValueError):
        return float(default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return int(default)


# ---------------------------------------------------------------------------
# LLM model selection for regime classification
# ---------------------------------------------------------------------------

DEFAULT_REGIME_MODEL = "meta-llama/llama-4-scout-17b-16e-instruct"
DEFAULT_OVERFLOW_MODEL = "llama-3.3-70b-versatile"

# Groq retires older Llama releases from time to time; map the identifiers we
# have seen retired onto the current overflow model.
_DEPRECATED_GROQ_MODELS = {
    "llama3-70b-8192": DEFAULT_OVERFLOW_MODEL,
    "llama-3.1-70b": DEFAULT_OVERFLOW_MODEL,
    "llama-3.1-70b-versatile": DEFAULT_OVERFLOW_MODEL,
}
_DEPRECATED_LOOKUP = {key.lower(): value for key, value in _DEPRECATED_GROQ_MODELS.items()}


def _resolve_model(env_var: str | tuple[str, ...], default: str) -> str:
    """Resolve the configured model name for ``env_var`` falling back to ``default``."""

    env_sources = (env_var,) if isinstance(env_var, str) else env_var
    normalized = ""
    for candidate in env_sources:
        raw_model = os.getenv(candidate)
        normalized = raw_model.strip() if raw_model else ""
        if normalized:
            break
    if not normalized:
        normalized = default
    return _DEPRECATED_LOOKUP.get(normalized.lower(), normalized)


def get_regime_model() -> str:
    """Return the primary model used for market regime classification."""

    return _resolve_model(("REGIME_LLM_MODEL", "GROQ_MODEL"), DEFAULT_REGIME_MODEL)


def get_overflow_model() -> str:
    """Return the overflow model used when the primary is rate limited or retired."""

    return _resolve_model("GROQ_OVERFLOW_MODEL", DEFAULT_OVERFLOW_MODEL)


def use_groq(default: bool = True) -> bool:
    """Return ``True`` when Groq should be used for regime classification."""

    return _env_bool("USE_GROQ", default)


# ---------------------------------------------------------------------------
# Storage locations
# ---------------------------------------------------------------------------

DEFAULT_DATA_DIR = "data"
DEFAULT_LOG_DIR = "logs"


def get_data_dir() -> str:
    return _clean_path(os.getenv("AGENT_DATA_DIR")) or DEFAULT_DATA_DIR


def get_log_dir() -> str:
    return _clean_path(os.getenv("AGENT_LOG_DIR")) or DEFAULT_LOG_DIR


# ---------------------------------------------------------------------------
# Settings dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TradingSettings:
    """Order sizing knobs for a single token."""

    trade_usd_size: float = 625.0
    leverage: float = 20.0
    slippage: float = 0.01
    cooldown_minutes: float = 10.0


@dataclass(frozen=True)
class RiskSettings:
    """Default stop-loss / take-profit thresholds expressed as ROE fractions.

    ``take_profit_bull_pct`` is the aggressive target used while the 4-hour
    trend is bullish, ``take_profit_bear_pct`` the conservative one.  Both are
    overridden by regime-derived parameters younger than
    ``regime_risk_max_age_seconds``.
    """

    stop_loss_pct: float = 0.45
    take_profit_bull_pct: float = 2.15
    take_profit_bear_pct: float = 0.75
    grace_period_seconds: float = 60.0
    regime_risk_max_age_seconds: float = 3600.0


@dataclass(frozen=True)
class AnalysisSettings:
    fib_lookback: int = 42
    wma_period: int = 24
    atr_period: int = 14
    fib_entry_offset_pct: float = 0.005
    rsi_period: int = 14
    stoch_period: int = 14
    k_period: int = 3
    d_period: int = 3
    trend_ma_period: int = 20
    trend_rsi_period: int = 14
    trend_stoch_period: int = 14
    candle_rule: str = "5min"
    trend_rule: str = "4h"
    history_limit: int = 20000


@dataclass(frozen=True)
class TokenSettings:
    """Everything an agent process needs to trade one asset."""

    symbol: str
    enabled: bool = True
    data_dir: str = ""
    log_file: str = ""
    trading: TradingSettings = field(default_factory=TradingSettings)
    risk: RiskSettings = field(default_factory=RiskSettings)
    analysis: AnalysisSettings = field(default_factory=AnalysisSettings)
    signal_variant: str = "fib_bounce"
    collector_interval: float = 60.0
    risk_check_interval: float = 15.0
    heartbeat_interval: float = 30.0
    regime_size_multipliers: Mapping[str, float] = field(default_factory=dict)
    enable_on_regime: Tuple[str, ...] = ()
    disable_on_regime: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SupervisorSettings:
    """Process management and regime monitoring knobs."""

    max_restarts: int = 5
    restart_delay: float = 10.0
    max_restart_delay: float = 300.0
    restart_window: float = 3600.0
    health_check_interval: float = 30.0
    heartbeat_timeout: float = 120.0
    graceful_shutdown_timeout: float = 15.0
    regime_check_interval: float = 900.0
    regime_rules_enabled: bool = True
    regime_min_interval: float = 600.0
    start_stagger: float = 2.0


# ---------------------------------------------------------------------------
# Token table
# ---------------------------------------------------------------------------

_DEFAULT_REGIME_MULTIPLIERS = {
    "STRONG_UPTREND": 1.2,
    "WEAK_UPTREND": 1.0,
    "RANGING": 0.8,
    "WEAK_DOWNTREND": 0.5,
    "STRONG_DOWNTREND": 0.0,
    "VOLATILE_UNCERTAIN": 0.4,
}

DEFAULT_TOKENS: Dict[str, Dict[str, Any]] = {
    "AVAX": {
        "enabled": True,
        "trading": {"trade_usd_size": 800, "leverage": 3},
        "risk": {"stop_loss_pct": 0.025, "take_profit_bull_pct": 0.045, "take_profit_bear_pct": 0.03},
        "regime_size_multipliers": {**_DEFAULT_REGIME_MULTIPLIERS, "STRONG_UPTREND": 1.3},
        "enable_on_regime": ["STRONG_UPTREND", "WEAK_UPTREND"],
        "disable_on_regime": ["STRONG_DOWNTREND"],
    },
    "SOL": {
        "enabled": True,
        "trading": {"trade_usd_size": 360, "leverage": 3},
        "risk": {"stop_loss_pct": 0.02, "take_profit_bull_pct": 0.04, "take_profit_bear_pct": 0.025},
        "regime_size_multipliers": dict(_DEFAULT_REGIME_MULTIPLIERS),
        "enable_on_regime": ["STRONG_UPTREND", "WEAK_UPTREND"],
        "disable_on_regime": ["STRONG_DOWNTREND"],
    },
    "DOGE": {
        "enabled": True,
        "trading": {"trade_usd_size": 500, "leverage": 10},
        "risk": {"stop_loss_pct": 0.03, "take_profit_bull_pct": 0.06, "take_profit_bear_pct": 0.035},
        "signal_variant": "fib_bounce_4h",
        "regime_size_multipliers": {
            **_DEFAULT_REGIME_MULTIPLIERS,
            "STRONG_UPTREND": 1.4,
            "WEAK_UPTREND": 0.8,
            "RANGING": 0.6,
            "WEAK_DOWNTREND": 0.3,
            "VOLATILE_UNCERTAIN": 0.2,
        },
        "enable_on_regime": ["STRONG_UPTREND"],
        "disable_on_regime": ["STRONG_DOWNTREND", "VOLATILE_UNCERTAIN"],
    },
    "LTC": {
        "enabled": False,
        "trading": {"trade_usd_size": 400, "leverage": 3},
        "regime_size_multipliers": {
            **_DEFAULT_REGIME_MULTIPLIERS,
            "STRONG_UPTREND": 1.1,
            "RANGING": 0.7,
            "WEAK_DOWNTREND": 0.4,
            "VOLATILE_UNCERTAIN": 0.3,
        },
    },
    "ADA": {
        "enabled": True,
        "trading": {"trade_usd_size": 400, "leverage": 3},
        "regime_size_multipliers": {
            **_DEFAULT_REGIME_MULTIPLIERS,
            "STRONG_UPTREND": 1.1,
            "WEAK_UPTREND": 0.9,
            "RANGING": 0.6,
            "WEAK_DOWNTREND": 0.3,
            "VOLATILE_UNCERTAIN": 0.3,
        },
    },
    "LINK": {
        "enabled": True,
        "trading": {"trade_usd_size": 400, "leverage": 3},
        "regime_size_multipliers": {
            **_DEFAULT_REGIME_MULTIPLIERS,
            "RANGING": 0.7,
            "WEAK_DOWNTREND": 0.4,
            "VOLATILE_UNCERTAIN": 0.3,
        },
    },
}


def _coerce_section(cls, base, overrides: Optional[Mapping[str, Any]]):
    """Apply known keys from ``overrides`` on top of the dataclass ``base``."""

    if not isinstance(overrides, Mapping):
        return base
    known = {name for name in cls.__dataclass_fields__}
    updates: Dict[str, Any] = {}
    for key, value in overrides.items():
        if key not in known:
            continue
        default = getattr(base, key)
        try:
            if isinstance(default, bool):
                updates[key] = value if isinstance(value, bool) else _truthy(str(value))
            elif isinstance(default, int):
                updates[key] = int(value)
            elif isinstance(default, float):
                updates[key] = float(value)
            else:
                updates[key] = value
        except (TypeError, ValueError):
            continue
    return replace(base, **updates) if updates else base


def _load_overlay() -> Dict[str, Dict[str, Any]]:
    path = _clean_path(os.getenv("TOKENS_CONFIG_FILE"))
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError):
        return {}
    if not isinstance(data, Mapping):
        return {}
    return {str(k).upper(): dict(v) for k, v in data.items() if isinstance(v, Mapping)}


def _merge_token_tables() -> Dict[str, Dict[str, Any]]:
    merged: Dict[str, Dict[str, Any]] = {k: dict(v) for k, v in DEFAULT_TOKENS.items()}
    for symbol, overrides in _load_overlay().items():
        entry = merged.setdefault(symbol, {})
        for key, value in overrides.items():
            if isinstance(value, Mapping) and isinstance(entry.get(key), Mapping):
                entry[key] = {**entry[key], **value}
            else:
                entry[key] = value
    return merged


def build_token_settings(symbol: str, raw: Mapping[str, Any]) -> TokenSettings:
    """Build :class:`TokenSettings` for ``symbol`` from a raw table entry."""

    symbol = symbol.upper()
    data_dir = _clean_path(raw.get("data_dir")) or os.path.join(get_data_dir(), symbol)
    log_file = _clean_path(raw.get("log_file")) or os.path.join(get_log_dir(), f"{symbol}.log")
    multipliers = raw.get("regime_size_multipliers") or {}
    clean_multipliers: Dict[str, float] = {}
    for regime, value in dict(multipliers).items():
        try:
            clean_multipliers[str(regime).upper()] = float(value)
        except (TypeError, ValueError):
            continue
    settings = TokenSettings(
        symbol=symbol,
        enabled=bool(raw.get("enabled", True)),
        data_dir=data_dir,
        log_file=log_file,
        trading=_coerce_section(TradingSettings, TradingSettings(), raw.get("trading")),
        risk=_coerce_section(RiskSettings, RiskSettings(), raw.get("risk")),
        analysis=_coerce_section(AnalysisSettings, AnalysisSettings(), raw.get("analysis")),
        signal_variant=str(raw.get("signal_variant") or os.getenv("SIGNAL_VARIANT", "fib_bounce")),
        regime_size_multipliers=clean_multipliers,
        enable_on_regime=tuple(str(r).upper() for r in raw.get("enable_on_regime", ()) or ()),
        disable_on_regime=tuple(str(r).upper() for r in raw.get("disable_on_regime", ()) or ()),
    )
    return replace(
        settings,
        collector_interval=max(5.0, _env_float("COLLECTOR_INTERVAL", float(raw.get("collector_interval", 60.0)))),
        risk_check_interval=max(1.0, _env_float("RISK_CHECK_INTERVAL", float(raw.get("risk_check_interval", 15.0)))),
        heartbeat_interval=max(1.0, _env_float("HEARTBEAT_INTERVAL", float(raw.get("heartbeat_interval", 30.0)))),
    )


def load_token_settings() -> Dict[str, TokenSettings]:
    """Return settings for every configured token keyed by upper-case symbol."""

    return {
        symbol: build_token_settings(symbol, raw)
        for symbol, raw in _merge_token_tables().items()
    }


def get_token_settings(symbol: str) -> TokenSettings:
    tokens = load_token_settings()
    try:
        return tokens[symbol.upper()]
    except KeyError:
        raise KeyError(f"No configuration found for token: {symbol}") from None


def load_supervisor_settings() -> SupervisorSettings:
    """Load supervisor settings from environment variables."""

    return SupervisorSettings(
        max_restarts=max(0, _env_int("MAX_RESTARTS", 5)),
        restart_delay=max(0.0, _env_float("RESTART_DELAY", 10.0)),
        max_restart_delay=max(0.0, _env_float("MAX_RESTART_DELAY", 300.0)),
        restart_window=max(0.0, _env_float("RESTART_WINDOW", 3600.0)),
        health_check_interval=max(1.0, _env_float("HEALTH_CHECK_INTERVAL", 30.0)),
        heartbeat_timeout=max(5.0, _env_float("HEARTBEAT_TIMEOUT", 120.0)),
        graceful_shutdown_timeout=max(1.0, _env_float("GRACEFUL_SHUTDOWN_TIMEOUT", 15.0)),
        regime_check_interval=max(30.0, _env_float("REGIME_CHECK_INTERVAL", 900.0)),
        regime_rules_enabled=_env_bool("REGIME_RULES_ENABLED", True),
        regime_min_interval=max(0.0, _env_float("REGIME_MIN_INTERVAL", 600.0)),
        start_stagger=max(0.0, _env_float("START_STAGGER", 2.0)),
    )


def get_webhook_url() -> str:
    return _clean_path(os.getenv("DISCORD_WEBHOOK_URL"))


def get_wallet_address() -> str:
    return _clean_path(os.getenv("HYPERLIQUID_MAIN_ACCOUNT_ADDRESS")) or _clean_path(
        os.getenv("HYPERLIQUID_WALLET_ADDRESS")
    )
