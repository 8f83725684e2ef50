from __future__ import annotations

from typing import Any, Callable, Iterable, Optional

import numpy as np
import structlog

from klinealert.alerts.rules import (
    EXTREME_MOVE_TIMEFRAME,
    AlertRule,
    BreakoutParams,
    ExtremeMoveParams,
    VolumeSpikeParams,
)
from klinealert.alerts.state import CooldownState
from klinealert.data.series import TimeSeriesBuffer
from klinealert.store.base import RuleRegistry
from klinealert.utils.ids import new_id
from klinealert.utils.time import minutes_to_ms, ms_to_dt, utc_now_ms
from klinealert.utils.types import Candle, TriggeredAlert

log = structlog.get_logger("evaluator")

Payload = dict[str, Any]


# ---------- per-type conditions ----------
# Each check returns the payload snapshot when the condition holds, else None.
# The buffer already contains `candle` as its newest entry.

def check_breakout(p: BreakoutParams, candle: Candle, buffers: TimeSeriesBuffer) -> Optional[Payload]:
    view = buffers.view_last(candle.symbol, candle.timeframe, p.lookback + 1)
    if view.length < p.lookback + 1:
        return None

    # previous `lookback` candles, current one excluded
    highest = float(np.max(view.h[:-1]))
    lowest = float(np.min(view.l[:-1]))

    broke_up = candle.close > highest
    broke_down = candle.close < lowest
    if p.direction == "UP":
        fire = broke_up
    elif p.direction == "DOWN":
        fire = broke_down
    else:
        fire = broke_up or broke_down
    if not fire:
        return None

    return {
        "timeframe": candle.timeframe,
        "close": candle.close,
        "highest": highest,
        "lowest": lowest,
        "lookback": p.lookback,
        "direction": "UP" if broke_up else "DOWN",
    }


def check_volume_spike(p: VolumeSpikeParams, candle: Candle, buffers: TimeSeriesBuffer) -> Optional[Payload]:
    view = buffers.view_last(candle.symbol, candle.timeframe, p.lookback + 1)
    if view.length < p.lookback + 1:
        return None

    avg_volume = float(np.mean(view.v[:-1]))
    threshold = avg_volume * p.multiplier
    if candle.volume < threshold:
        return None

    return {
        "timeframe": candle.timeframe,
        "volume": candle.volume,
        "avg_volume": avg_volume,
        "multiplier": p.multiplier,
        "lookback": p.lookback,
        "close": candle.close,
    }


def check_extreme_move(p: ExtremeMoveParams, candle: Candle, buffers: TimeSeriesBuffer) -> Optional[Payload]:
    view = buffers.view_all(candle.symbol, EXTREME_MOVE_TIMEFRAME)
    if view.length == 0:
        return None

    cutoff = candle.close_time - minutes_to_ms(p.window_min)
    # series is ordered by close time: the last index at/below cutoff is the reference
    idx = int(np.searchsorted(view.close_time, cutoff, side="right")) - 1
    if idx < 0:
        return None

    prev_close = float(view.c[idx])
    if prev_close == 0.0:
        return None

    change = (candle.close - prev_close) / prev_close * 100.0
    up = change >= p.percent
    down = change <= -p.percent
    if p.direction == "UP":
        fire = up
    elif p.direction == "DOWN":
        fire = down
    else:
        fire = up or down
    if not fire:
        return None

    return {
        "timeframe": EXTREME_MOVE_TIMEFRAME,
        "window_min": p.window_min,
        "percent": p.percent,
        "change": change,
        "price": candle.close,
        "previous_close": prev_close,
        "previous_close_time": int(view.close_time[idx]),
        "direction": "UP" if change >= 0 else "DOWN",
    }


CONDITION_CHECKS: dict[str, Callable[[Any, Candle, TimeSeriesBuffer], Optional[Payload]]] = {
    "EXTREME_MOVE": check_extreme_move,
    "BREAKOUT": check_breakout,
    "VOLUME_SPIKE": check_volume_spike,
}


class RuleEvaluator:
    """
    Decides which enabled rules fire for a finalized candle.

    Per rule: cooldown gate → type-specific condition → cooldown armed →
    owner lookup → TriggeredAlert. The cooldown is armed as soon as the
    condition holds, under the rule's own lock, so a later slow or failing
    dispatch cannot open a second trigger inside the window.

    Inputs:
      - registry:  list_rules() / get_user()
      - buffers:   TimeSeriesBuffer (the candle is expected to be appended already)
      - cooldowns: CooldownState keyed by rule id
      - clock:     epoch-ms clock (injectable for tests)
    """
    def __init__(
        self,
        registry: RuleRegistry,
        buffers: TimeSeriesBuffer,
        cooldowns: Optional[CooldownState] = None,
        clock: Callable[[], int] = utc_now_ms,
    ):
        self.registry = registry
        self.buffers = buffers
        self.cooldowns = cooldowns if cooldowns is not None else CooldownState()
        self._clock = clock
        self._oversized: set[str] = set()

    # --- rule selection ---

    def evaluate_candle(self, candle: Candle) -> list[TriggeredAlert]:
        """BREAKOUT / VOLUME_SPIKE rules on the candle's own series."""
        rules = [
            r for r in self.registry.list_rules()
            if r.is_enabled
            and r.type != "EXTREME_MOVE"
            and r.symbol == candle.symbol
            and r.effective_timeframe == candle.timeframe
        ]
        return self._evaluate(rules, candle)

    def evaluate_extreme_move(self, candle: Candle) -> list[TriggeredAlert]:
        """EXTREME_MOVE rules; meaningful only for 1m candles."""
        rules = [
            r for r in self.registry.list_rules()
            if r.is_enabled and r.type == "EXTREME_MOVE" and r.symbol == candle.symbol
        ]
        return self._evaluate(rules, candle)

    def _evaluate(self, rules: Iterable[AlertRule], candle: Candle) -> list[TriggeredAlert]:
        out: list[TriggeredAlert] = []
        for rule in rules:
            try:
                alert = self.evaluate_rule(rule, candle)
            except Exception as e:
                # a failure skips only this rule
                log.error("rule_evaluation_failed", rule_id=rule.id, symbol=candle.symbol,
                          timeframe=candle.timeframe, err=str(e))
                continue
            if alert is not None:
                out.append(alert)
        return out

    def unreachable_rules(self, rules: Iterable[AlertRule]) -> list[str]:
        """
        Ids of rules that need more history than a buffer series can hold
        and so can never fire. Each one is logged once.
        """
        cap = self.buffers.default_capacity
        out: list[str] = []
        for rule in rules:
            if rule.history_needed <= cap:
                continue
            out.append(rule.id)
            if rule.id not in self._oversized:
                self._oversized.add(rule.id)
                log.warning("rule_history_exceeds_buffer", rule_id=rule.id, type=rule.type,
                            needed=rule.history_needed, capacity=cap)
        return out

    # --- single rule ---

    def evaluate_rule(self, rule: AlertRule, candle: Candle) -> Optional[TriggeredAlert]:
        if not rule.is_enabled or rule.symbol != candle.symbol:
            return None

        now = self._clock()
        with self.cooldowns.hold(rule.id) as st:
            if not st.ready(rule.cooldown_sec, now):
                return None
            snapshot = CONDITION_CHECKS[rule.type](rule.params, candle, self.buffers)
            if snapshot is None:
                return None
            st.mark(now)

        user = self.registry.get_user(rule.user_id)
        if user is None:
            log.warning("alert_user_missing", rule_id=rule.id, user_id=rule.user_id, symbol=rule.symbol)
            return None

        payload: Payload = {
            "id": new_id(),
            "type": rule.type,
            "symbol": rule.symbol,
            **snapshot,
            "triggered_at": ms_to_dt(now).isoformat(),
        }
        log.info("alert_triggered", rule_id=rule.id, type=rule.type, symbol=rule.symbol)
        return TriggeredAlert(rule=rule, user=user, payload=payload)
