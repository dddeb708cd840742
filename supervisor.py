"""
Multi-token supervisor.

The supervisor owns one :class:`AgentProcessInfo` per configured token and
runs every agent as a separate OS process.  It talks to agents only through
process lifecycle calls (spawn / terminate / exit code) and the shared
:class:`state_store.StateStore` records:

* ``heartbeat`` (written by the agent) drives RUNNING <-> HEALTHY.
* ``live_analysis`` (written by the agent) feeds the regime classifier.
* ``regime_risk`` (written here) carries regime-derived stop, target and size
  multiplier to the agent's risk engine.

Lifecycle per asset::

    STOPPED -> STARTING -> RUNNING -> HEALTHY
    RUNNING/HEALTHY -> CRASHED -> STARTING   (after an exponential backoff)
    CRASHED -> FAILED                        (restart ceiling exceeded)
    any running state -> STOPPING -> STOPPED

``FAILED`` assets are never restarted automatically; an explicit
:meth:`Supervisor.start_agent` or :meth:`Supervisor.enable` resets them.
"""

from __future__ import annotations

import os
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from config import SupervisorSettings, TokenSettings
from event_log import EventLog, EventType
from log_utils import setup_logger
from market_schema import AgentStatus, RegimeAssessment, RuleAction, RunMode, utc_now_iso
from notifier import Notifier
from observability import log_event, record_metric
from price_store import PriceStore
from regime_classifier import HISTORY_WINDOW, RegimeClassifier
from regime_rules import DEFAULT_RULES, RegimeRule, first_matching_rule, risk_record_for, token_rules
from state_store import (
    HEARTBEAT,
    LIVE_ANALYSIS,
    REGIME_RISK,
    SUPERVISOR_COMMAND,
    SUPERVISOR_SCOPE,
    SUPERVISOR_STATUS,
    StateStore,
)

logger = setup_logger(__name__)

ACTIVE_STATUSES = frozenset({AgentStatus.STARTING, AgentStatus.RUNNING, AgentStatus.HEALTHY})

EMERGENCY_SHUTDOWN = "shutdown"
EMERGENCY_HALT = "halt"

# (title, message, level) of a notification built under the lock and sent after release.
Alert = Tuple[str, str, str]


class ProcessHandle(Protocol):
    pid: int

    def poll(self) -> Optional[int]:
        ...

    def wait(self, timeout: Optional[float] = None) -> int:
        ...

    def terminate(self) -> None:
        ...

    def kill(self) -> None:
        ...


class AgentLauncher(Protocol):
    def launch(self, settings: TokenSettings, mode: RunMode) -> ProcessHandle:
        ...


class SubprocessLauncher:
    """Spawn ``python -m agent`` for a token with its own log file."""

    def __init__(self, python: str = sys.executable, cwd: Optional[str] = None) -> None:
        self.python = python
        self.cwd = cwd

    def command(self, settings: TokenSettings, mode: RunMode) -> List[str]:
        return [self.python, "-m", "agent", "--token", settings.symbol, "--mode", mode.value]

    def launch(self, settings: TokenSettings, mode: RunMode) -> subprocess.Popen:
        env = dict(os.environ)
        env["TOKEN_SYMBOL"] = settings.symbol
        if settings.log_file:
            os.makedirs(os.path.dirname(settings.log_file) or ".", exist_ok=True)
            env["AGENT_LOG_FILE"] = settings.log_file
        return subprocess.Popen(self.command(settings, mode), env=env, cwd=self.cwd)


Scheduler = Callable[[float, Callable[[], None]], Any]


def _thread_timer(delay: float, action: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, action)
    timer.daemon = True
    timer.start()
    return timer


@dataclass
class AgentProcessInfo:
    asset: str
    status: AgentStatus = AgentStatus.STOPPED
    pid: Optional[int] = None
    start_time: Optional[float] = None
    restart_count: int = 0
    mode: RunMode = RunMode.TRADE
    last_exit_code: Optional[int] = None
    last_reason: Optional[str] = None
    handle: Optional[ProcessHandle] = field(default=None, repr=False, compare=False)
    restart_timer: Any = field(default=None, repr=False, compare=False)

    @property
    def active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self, now: Optional[float] = None) -> Dict[str, Any]:
        current = time.time() if now is None else now
        return {
            "asset": self.asset,
            "status": self.status.value,
            "pid": self.pid,
            "start_time": self.start_time,
            "uptime": (current - self.start_time) if self.active and self.start_time else 0.0,
            "restart_count": self.restart_count,
            "mode": self.mode.value,
            "last_exit_code": self.last_exit_code,
            "last_reason": self.last_reason,
        }


class Supervisor:
    def __init__(
        self,
        tokens: Mapping[str, TokenSettings],
        settings: SupervisorSettings,
        *,
        launcher: AgentLauncher,
        store: StateStore,
        event_log: EventLog,
        price_store: Optional[PriceStore] = None,
        classifier: Optional[RegimeClassifier] = None,
        notifier: Optional[Notifier] = None,
        rules: Optional[Sequence[RegimeRule]] = None,
        clock: Callable[[], float] = time.time,
        scheduler: Scheduler = _thread_timer,
        watch_exits: bool = True,
    ) -> None:
        self.tokens = {symbol.upper(): cfg for symbol, cfg in tokens.items()}
        self.settings = settings
        self.launcher = launcher
        self.store = store
        self.event_log = event_log
        self.price_store = price_store
        self.classifier = classifier
        self.notifier = notifier or Notifier(webhook_url="")
        self.rules = list(DEFAULT_RULES if rules is None else rules)
        self._clock = clock
        self._schedule = scheduler
        self._watch_exits = watch_exits
        self._lock = threading.RLock()
        self._agents: Dict[str, AgentProcessInfo] = {s: AgentProcessInfo(asset=s) for s in self.tokens}
        self._enabled: Dict[str, bool] = {s: cfg.enabled for s, cfg in self.tokens.items()}
        self._regimes: Dict[str, RegimeAssessment] = {}
        self._emergency: Optional[str] = None
        self._shutting_down = False
        self.last_regime_check: Optional[float] = None

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _event(self, asset: str, event_type: str, details: Mapping[str, Any]) -> None:
        try:
            self.event_log.append(asset, event_type, details)
        except OSError:
            logger.warning("Failed to record %s for %s", event_type, asset, exc_info=True)

    def _notify(self, title: str, message: str, level: str = "info") -> None:
        self.notifier.send(title, message, level)

    def _info(self, asset: str) -> Optional[AgentProcessInfo]:
        return self._agents.get(asset.upper())

    def is_running(self, asset: str) -> bool:
        info = self._info(asset)
        return bool(info and info.active)

    def is_enabled(self, asset: str) -> bool:
        return self._enabled.get(asset.upper(), False)

    @property
    def emergency(self) -> Optional[str]:
        return self._emergency

    def _default_mode(self) -> RunMode:
        return RunMode.DATA_ONLY if self._emergency == EMERGENCY_HALT else RunMode.TRADE

    @staticmethod
    def _cancel_restart(info: AgentProcessInfo) -> None:
        timer = info.restart_timer
        info.restart_timer = None
        cancel = getattr(timer, "cancel", None)
        if callable(cancel):
            cancel()

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def start_agent(self, asset: str, mode: Optional[RunMode] = None, *, manual: bool = True) -> bool:
        """Start ``asset``; returns ``True`` when it is running afterwards.

        Already running agents are left untouched.  Automatic callers
        (restarts and regime rules) pass ``manual=False`` and are refused for
        ``FAILED`` assets and while an emergency shutdown is in force.
        """

        symbol = asset.upper()
        settings = self.tokens.get(symbol)
        if settings is None:
            logger.error("No configuration found for token: %s", asset)
            return False
        with self._lock:
            info = self._agents[symbol]
            if info.active:
                logger.info("%s is already running", symbol)
                return True
            if self._shutting_down:
                logger.info("Supervisor shutting down; not starting %s", symbol)
                return False
            if not self._enabled.get(symbol, False):
                logger.info("%s is disabled; not starting", symbol)
                return False
            if not manual:
                if info.status is AgentStatus.FAILED:
                    logger.warning("%s is FAILED; automatic start refused", symbol)
                    return False
                if self._emergency == EMERGENCY_SHUTDOWN:
                    logger.warning("Emergency shutdown in force; automatic start of %s refused", symbol)
                    return False
            else:
                info.restart_count = 0
            self._cancel_restart(info)

            run_mode = RunMode(mode) if mode is not None else self._default_mode()
            info.status = AgentStatus.STARTING
            info.mode = run_mode
            logger.info("Starting %s agent in %s mode...", symbol, run_mode.value)
            spawn_alert: Optional[Alert] = None
            try:
                handle = self.launcher.launch(settings, run_mode)
            except OSError as exc:
                logger.error("Failed to start %s: %s", symbol, exc)
                info.last_reason = f"spawn failed: {exc}"
                info.start_time = self._clock()
                spawn_alert = self._on_crash(info, None)
            else:
                info.handle = handle
                info.pid = getattr(handle, "pid", None)
                info.start_time = self._clock()
                info.last_exit_code = None
                info.last_reason = None
                info.status = AgentStatus.RUNNING
                self._event(symbol, EventType.AGENT_STARTED, {"pid": info.pid, "mode": run_mode.value})
                log_event(logger, "agent_started", asset=symbol, pid=info.pid, mode=run_mode.value)
                self._persist_status()
        if spawn_alert is not None:
            self._notify(*spawn_alert)
            return False
        logger.info("%s started with PID %s", symbol, info.pid)
        if self._watch_exits:
            threading.Thread(target=self._watch, args=(symbol, handle), name=f"watch-{symbol}", daemon=True).start()
        return True

    def stop_agent(self, asset: str, reason: str = "Manual stop") -> bool:
        """Stop ``asset`` and wait for its process to exit.

        Stopping an asset that is not running is a no-op that returns
        ``True``.  A pending crash restart is cancelled.
        """

        symbol = asset.upper()
        with self._lock:
            info = self._agents.get(symbol)
            if info is None:
                logger.error("No configuration found for token: %s", asset)
                return False
            if info.status is AgentStatus.CRASHED:
                self._cancel_restart(info)
                info.status = AgentStatus.STOPPED
                info.last_reason = reason
                self._persist_status()
                return True
            if not info.active or info.handle is None:
                logger.info("%s is not running", symbol)
                return True
            info.status = AgentStatus.STOPPING
            info.last_reason = reason
            handle = info.handle
            self._persist_status()

        logger.info("Stopping %s (%s)...", symbol, reason)
        exit_code = self._terminate(symbol, handle)

        with self._lock:
            if info.handle is handle:
                info.handle = None
                info.pid = None
                info.status = AgentStatus.STOPPED
                info.last_exit_code = exit_code
            self._event(symbol, EventType.AGENT_STOPPED, {"reason": reason, "exit_code": exit_code})
            self._persist_status()
        logger.info("%s stopped", symbol)
        return True

    def _terminate(self, asset: str, handle: ProcessHandle) -> Optional[int]:
        timeout = self.settings.graceful_shutdown_timeout
        try:
            handle.terminate()
        except OSError:
            logger.debug("Terminate failed for %s; process already gone", asset)
        try:
            return handle.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("%s did not exit within %.0fs; force killing", asset, timeout)
        try:
            handle.kill()
        except OSError:
            logger.debug("Kill failed for %s; process already gone", asset)
        return handle.wait()

    def _watch(self, asset: str, handle: ProcessHandle) -> None:
        try:
            code = handle.wait()
        except Exception:
            logger.error("Exit watcher failed for %s", asset, exc_info=True)
            return
        self.handle_exit(asset, handle, code)

    def handle_exit(self, asset: str, handle: ProcessHandle, exit_code: Optional[int]) -> None:
        """Process-exit notification for ``handle``.

        Exits of handles that are no longer current, and exits caused by
        :meth:`stop_agent`, are ignored.
        """

        with self._lock:
            info = self._agents.get(asset.upper())
            if info is None or info.handle is not handle:
                return
            if info.status in (AgentStatus.STOPPING, AgentStatus.STOPPED):
                return
            logger.warning("%s process exited with code %s", info.asset, exit_code)
            alert = self._on_crash(info, exit_code)
        self._notify(*alert)

    def _on_crash(self, info: AgentProcessInfo, exit_code: Optional[int]) -> Alert:
        """Record a crash and schedule the restart; caller holds the lock and sends the returned alert."""

        now = self._clock()
        if info.start_time is not None and now - info.start_time >= self.settings.restart_window:
            info.restart_count = 0
        info.restart_count += 1
        info.status = AgentStatus.CRASHED
        info.handle = None
        info.pid = None
        info.last_exit_code = exit_code
        self._event(info.asset, EventType.AGENT_CRASHED, {"exit_code": exit_code, "restart_count": info.restart_count})
        record_metric("agent_restarts", info.restart_count, labels={"asset": info.asset})
        logger.error("%s crashed (restart count: %d)", info.asset, info.restart_count)

        if info.restart_count > self.settings.max_restarts:
            info.status = AgentStatus.FAILED
            info.last_reason = "Max restarts exceeded"
            self._event(info.asset, EventType.AGENT_FAILED, {"restart_count": info.restart_count})
            self._persist_status()
            logger.error("%s exceeded max restarts, giving up", info.asset)
            return (
                f"{info.asset} FAILED",
                f"Exceeded {self.settings.max_restarts} restarts. Manual intervention required.",
                "error",
            )

        self._persist_status()
        alert = (
            f"{info.asset} crashed",
            f"Exit code {exit_code}. Restart {info.restart_count}/{self.settings.max_restarts} scheduled.",
            "warning",
        )
        if self._shutting_down:
            return alert
        delay = min(
            self.settings.restart_delay * (2 ** (info.restart_count - 1)),
            self.settings.max_restart_delay,
        )
        logger.info("Scheduling %s restart in %.0fs", info.asset, delay)
        info.restart_timer = self._schedule(delay, lambda: self._restart(info.asset))
        return alert

    def _restart(self, asset: str) -> None:
        with self._lock:
            info = self._agents.get(asset)
            if info is None or info.status is not AgentStatus.CRASHED:
                return
            info.restart_timer = None
            mode = info.mode
        self.start_agent(asset, mode, manual=False)

    # ------------------------------------------------------------------
    # operator controls
    # ------------------------------------------------------------------
    def enable(self, asset: str) -> bool:
        symbol = asset.upper()
        if symbol not in self.tokens:
            logger.error("No configuration found for token: %s", asset)
            return False
        with self._lock:
            self._enabled[symbol] = True
        logger.info("%s enabled", symbol)
        return self.start_agent(symbol)

    def disable(self, asset: str, reason: str = "Disabled by operator") -> bool:
        symbol = asset.upper()
        if symbol not in self.tokens:
            logger.error("No configuration found for token: %s", asset)
            return False
        with self._lock:
            self._enabled[symbol] = False
        logger.info("%s disabled", symbol)
        return self.stop_agent(symbol, reason)

    def panic(self, asset: Optional[str] = None) -> List[str]:
        """Stop one asset, or every running asset when ``asset`` is ``None``."""

        if asset is None or asset.upper() == "ALL":
            return self.emergency_shutdown("Manual panic")
        symbol = asset.upper()
        was_running = self.is_running(symbol)
        self.stop_agent(symbol, "PANIC STOP")
        self._notify(f"{symbol} PANIC STOP", "Agent process stopped.", "error")
        return [symbol] if was_running else []

    def _stop_all(self, reason: str) -> List[str]:
        with self._lock:
            running = [s for s, info in self._agents.items() if info.active]
        for symbol in running:
            self.stop_agent(symbol, reason)
        return running

    def emergency_shutdown(self, reason: str) -> List[str]:
        """Stop every running agent and block automatic starts."""

        logger.critical("EMERGENCY SHUTDOWN: %s", reason)
        with self._lock:
            self._emergency = EMERGENCY_SHUTDOWN
        stopped = self._stop_all(f"Emergency shutdown: {reason}")
        self._event(SUPERVISOR_SCOPE, EventType.EMERGENCY_SHUTDOWN, {"reason": reason, "tokens_affected": stopped})
        self._notify(
            "EMERGENCY SHUTDOWN",
            f"Reason: {reason}\nTokens affected: {', '.join(stopped) or 'none'}",
            "error",
        )
        self._persist_status()
        return stopped

    def emergency_halt(self, reason: str) -> List[str]:
        """Stop trading everywhere while keeping price collection alive."""

        logger.critical("EMERGENCY TRADING HALT: %s", reason)
        with self._lock:
            self._emergency = EMERGENCY_HALT
            halted = [s for s, info in self._agents.items() if info.active]
        for symbol in halted:
            self.stop_agent(symbol, f"Emergency halt: {reason}")
            self.start_agent(symbol, RunMode.DATA_ONLY, manual=False)
        self._event(SUPERVISOR_SCOPE, EventType.EMERGENCY_HALT, {"reason": reason, "tokens_affected": halted})
        self._notify(
            "EMERGENCY TRADING HALT",
            f"Reason: {reason}\nTokens halted: {', '.join(halted) or 'none'}\nData collection continues.",
            "warning",
        )
        self._persist_status()
        return halted

    def emergency_startup(self, reason: str) -> Dict[str, List[str]]:
        """Clear any emergency and start every enabled token in trade mode."""

        logger.warning("EMERGENCY STARTUP: %s", reason)
        with self._lock:
            self._emergency = None
            targets = [s for s in self.tokens if self._enabled.get(s)]
        started: List[str] = []
        failed: List[str] = []
        for symbol in targets:
            info = self._agents[symbol]
            if info.active and info.mode is not RunMode.TRADE:
                self.stop_agent(symbol, f"Emergency startup: {reason}")
            if self.start_agent(symbol, RunMode.TRADE):
                started.append(symbol)
            else:
                failed.append(symbol)
        result = {"started": started, "failed": failed}
        self._event(SUPERVISOR_SCOPE, EventType.EMERGENCY_STARTUP, {"reason": reason, **result})
        self._notify(
            "EMERGENCY STARTUP COMPLETE",
            f"Reason: {reason}\nStarted: {', '.join(started) or 'none'}\nFailed: {', '.join(failed) or 'none'}",
            "success" if not failed else "warning",
        )
        self._persist_status()
        return result

    def start_enabled(self, stagger: Optional[float] = None, sleep: Callable[[float], None] = time.sleep) -> List[str]:
        delay = self.settings.start_stagger if stagger is None else stagger
        started = []
        targets = [s for s in self.tokens if self._enabled.get(s)]
        logger.info("Starting enabled tokens: %s", ", ".join(targets))
        for index, symbol in enumerate(targets):
            if self.start_agent(symbol):
                started.append(symbol)
            else:
                logger.error("Failed to start %s", symbol)
            if delay and index < len(targets) - 1:
                sleep(delay)
        return started

    # ------------------------------------------------------------------
    # health
    # ------------------------------------------------------------------
    def check_health(self) -> Dict[str, AgentStatus]:
        """Promote or demote agents by heartbeat freshness; detect silent exits."""

        now = self._clock()
        with self._lock:
            items = list(self._agents.values())
        for info in items:
            handle = info.handle
            if info.status in (AgentStatus.RUNNING, AgentStatus.HEALTHY) and handle is not None:
                code = handle.poll()
                if code is not None:
                    self.handle_exit(info.asset, handle, code)
                    continue
            with self._lock:
                if info.status not in (AgentStatus.RUNNING, AgentStatus.HEALTHY):
                    continue
                beat = self.store.updated_at(info.asset, HEARTBEAT)
                fresh = (
                    beat is not None
                    and info.start_time is not None
                    and beat >= info.start_time
                    and now - beat <= self.settings.heartbeat_timeout
                )
                if fresh and info.status is AgentStatus.RUNNING:
                    info.status = AgentStatus.HEALTHY
                    self._event(info.asset, EventType.AGENT_HEALTHY, {"heartbeat": beat})
                    logger.info("%s is HEALTHY", info.asset)
                    self._persist_status()
                elif not fresh and info.status is AgentStatus.HEALTHY:
                    info.status = AgentStatus.RUNNING
                    age = None if beat is None else round(now - beat, 1)
                    self._event(info.asset, EventType.AGENT_UNHEALTHY, {"heartbeat_age": age})
                    logger.warning("%s heartbeat is stale (%ss)", info.asset, age)
                    self._persist_status()
        return {s: info.status for s, info in self._agents.items()}

    # ------------------------------------------------------------------
    # regime handling
    # ------------------------------------------------------------------
    def check_regimes(self) -> Dict[str, RegimeAssessment]:
        """Assess every enabled token, propagate risk and apply rules.

        A ``PANIC_ALL`` action ends the cycle for the remaining tokens.
        """

        if self.classifier is None:
            logger.debug("No regime classifier configured; skipping regime check")
            return {}
        self.last_regime_check = self._clock()
        results: Dict[str, RegimeAssessment] = {}
        for symbol in [s for s in self.tokens if self._enabled.get(s)]:
            try:
                assessment = self.check_token_regime(symbol)
            except Exception:
                logger.error("Error checking %s regime", symbol, exc_info=True)
                continue
            if assessment is None:
                continue
            results[symbol] = assessment
            rule = self.apply_regime_rules(symbol, assessment)
            if rule is not None and rule.action is RuleAction.PANIC_ALL:
                break
        self._persist_status()
        return results

    def check_token_regime(self, asset: str) -> Optional[RegimeAssessment]:
        analysis = self.store.get(asset, LIVE_ANALYSIS)
        if not analysis:
            logger.info("No analysis data for %s, skipping regime check", asset)
            return None
        prices = self.price_store.recent(asset, HISTORY_WINDOW) if self.price_store is not None else []
        assessment = self.classifier.assess(asset, analysis, prices, "auto")
        with self._lock:
            self._regimes[asset] = assessment
        logger.info("%s regime: %s (confidence: %d/10)", asset, assessment.regime.value, assessment.confidence)
        self.apply_regime_risk_parameters(asset, assessment)
        return assessment

    def apply_regime_risk_parameters(self, asset: str, assessment: RegimeAssessment) -> Optional[Dict[str, Any]]:
        settings = self.tokens.get(asset.upper())
        overrides = settings.regime_size_multipliers if settings else None
        record = risk_record_for(assessment, overrides, now=self._clock())
        if record is None:
            logger.info("No risk parameters defined for regime: %s", assessment.regime)
            return None
        self.store.put(asset, REGIME_RISK, record)
        self._event(asset, EventType.REGIME_RISK_UPDATED, record)
        logger.info(
            "%s: applied %s risk params - SL: %.1f%%, TP: %.1f%%, Size: %.0f%%",
            asset,
            record["regime"],
            record["live_stop_loss_pct"] * 100,
            record["live_take_profit_pct"] * 100,
            record["size_multiplier"] * 100,
        )
        return record

    def rules_for(self, asset: str) -> List[RegimeRule]:
        settings = self.tokens.get(asset.upper())
        extra = token_rules(asset.upper(), settings.enable_on_regime, settings.disable_on_regime) if settings else []
        return self.rules + extra

    def apply_regime_rules(self, asset: str, assessment: RegimeAssessment) -> Optional[RegimeRule]:
        """Apply the first matching rule for ``asset``; returns that rule."""

        symbol = asset.upper()
        rule = first_matching_rule(self.rules_for(symbol), assessment)
        if rule is None:
            return None
        logger.info("%s: regime rule '%s' triggered", symbol, rule.name)
        self._event(
            symbol,
            EventType.REGIME_RULE_TRIGGERED,
            {
                "rule": rule.name,
                "action": rule.action.value,
                "regime": assessment.regime.value,
                "confidence": assessment.confidence,
            },
        )
        reason = f"Regime rule {rule.name}: {rule.description}"
        if rule.action is RuleAction.DISABLE:
            if self.is_running(symbol):
                self.stop_agent(symbol, reason)
                self._notify(f"{symbol} disabled by regime", reason, "warning")
        elif rule.action is RuleAction.ENABLE:
            if self._emergency == EMERGENCY_SHUTDOWN:
                logger.info("%s: ENABLE ignored during emergency shutdown", symbol)
            elif not self.is_running(symbol) and self.is_enabled(symbol):
                if self.start_agent(symbol, manual=False):
                    self._notify(f"{symbol} enabled by regime", reason, "success")
        elif rule.action is RuleAction.REDUCE_RISK:
            self._notify(f"{symbol} risk reduced", reason, "warning")
        elif rule.action is RuleAction.PANIC_ALL:
            self.emergency_shutdown(f"Emergency regime rule {rule.name}: {rule.description}")
        return rule

    # ------------------------------------------------------------------
    # status and commands
    # ------------------------------------------------------------------
    def status(self) -> Dict[str, AgentProcessInfo]:
        with self._lock:
            return {s: replace(info) for s, info in self._agents.items()}

    def snapshot(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            tokens: Dict[str, Any] = {}
            for symbol, info in self._agents.items():
                entry = info.to_dict(now)
                entry["enabled"] = self._enabled.get(symbol, False)
                regime = self._regimes.get(symbol)
                entry["regime"] = (
                    {"current": regime.regime.value, "confidence": regime.confidence, "last_check": regime.timestamp}
                    if regime
                    else None
                )
                tokens[symbol] = entry
            return {
                "manager": {
                    "pid": os.getpid(),
                    "is_running": not self._shutting_down,
                    "emergency": self._emergency,
                    "regime_monitoring_enabled": self.settings.regime_rules_enabled,
                    "last_regime_check": self.last_regime_check,
                    "timestamp": utc_now_iso(),
                },
                "tokens": tokens,
            }

    def _persist_status(self) -> None:
        try:
            self.store.put(SUPERVISOR_SCOPE, SUPERVISOR_STATUS, self.snapshot())
        except OSError:
            logger.warning("Failed to persist supervisor status", exc_info=True)

    def execute_command(self, command: Mapping[str, Any]) -> Any:
        name = str(command.get("command") or "").strip().lower()
        asset = command.get("asset")
        reason = str(command.get("reason") or f"Operator command: {name}")
        logger.info("Executing command %s %s", name, asset or "")
        if name == "start" and asset:
            return self.start_agent(asset)
        if name == "stop" and asset:
            return self.stop_agent(asset, reason)
        if name == "enable" and asset:
            return self.enable(asset)
        if name == "disable" and asset:
            return self.disable(asset, reason)
        if name == "panic":
            return self.panic(asset)
        if name == "emergency-halt":
            return self.emergency_halt(reason)
        if name == "emergency-shutdown":
            return self.emergency_shutdown(reason)
        if name == "emergency-startup":
            return self.emergency_startup(reason)
        logger.warning("Ignoring unknown supervisor command: %s", dict(command))
        return None

    def process_commands(self) -> Any:
        command = self.store.take(SUPERVISOR_SCOPE, SUPERVISOR_COMMAND)
        if not command:
            return None
        return self.execute_command(command)

    # ------------------------------------------------------------------
    # main loop
    # ------------------------------------------------------------------
    def run(self, stop_event: threading.Event, poll_interval: float = 1.0) -> None:
        next_health = self._clock() + self.settings.health_check_interval
        next_regime = self._clock() + self.settings.regime_check_interval
        if self.settings.regime_rules_enabled:
            logger.info("Regime monitoring every %.0fs", self.settings.regime_check_interval)
        while not stop_event.is_set():
            try:
                self.process_commands()
                now = self._clock()
                if now >= next_health:
                    self.check_health()
                    next_health = now + self.settings.health_check_interval
                if self.settings.regime_rules_enabled and now >= next_regime:
                    self.check_regimes()
                    next_regime = now + self.settings.regime_check_interval
            except Exception:
                logger.error("Supervisor loop error", exc_info=True)
            stop_event.wait(poll_interval)

    def shutdown(self) -> None:
        with self._lock:
            if self._shutting_down:
                return
            self._shutting_down = True
            for info in self._agents.values():
                self._cancel_restart(info)
        logger.info("Shutting down multi-token supervisor...")
        self._stop_all("Manager shutdown")
        self._persist_status()
        logger.info("Shutdown complete")


__all__ = [
    "AgentLauncher",
    "AgentProcessInfo",
    "ProcessHandle",
    "SubprocessLauncher",
    "Supervisor",
]
