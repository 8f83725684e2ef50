# src/klinealert/alerts/rules.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Mapping, Optional, Union

from klinealert.utils.types import TIMEFRAMES, FeedKey

RuleType = Literal["EXTREME_MOVE", "BREAKOUT", "VOLUME_SPIKE"]
Direction = Literal["UP", "DOWN", "BOTH"]

RULE_TYPES: tuple[str, ...] = ("EXTREME_MOVE", "BREAKOUT", "VOLUME_SPIKE")
DIRECTIONS: tuple[str, ...] = ("UP", "DOWN", "BOTH")

# extreme-move rules always read the 1-minute series
EXTREME_MOVE_TIMEFRAME = "1m"
DEFAULT_TIMEFRAME = "1m"
DEFAULT_COOLDOWN_SEC = 900


@dataclass(slots=True, frozen=True)
class ExtremeMoveParams:
    """
    Fire when close moved >= percent over the last window_min minutes.
    - direction = "UP"   →  change >= percent
                  "DOWN" →  change <= -percent
                  "BOTH" →  either
    """
    window_min: int = 5
    percent: float = 2.0
    direction: Direction = "BOTH"


@dataclass(slots=True, frozen=True)
class BreakoutParams:
    """Fire when close breaks the high/low of the previous `lookback` candles."""
    lookback: int = 20
    direction: Direction = "BOTH"


@dataclass(slots=True, frozen=True)
class VolumeSpikeParams:
    """Fire when volume >= mean volume of the previous `lookback` candles × multiplier."""
    lookback: int = 20
    multiplier: float = 3.0


RuleParams = Union[ExtremeMoveParams, BreakoutParams, VolumeSpikeParams]

PARAMS_BY_TYPE: dict[str, type] = {
    "EXTREME_MOVE": ExtremeMoveParams,
    "BREAKOUT": BreakoutParams,
    "VOLUME_SPIKE": VolumeSpikeParams,
}


@dataclass(slots=True, frozen=True)
class AlertRule:
    id: str
    user_id: str
    symbol: str
    type: RuleType
    params: RuleParams
    timeframe: Optional[str] = None
    is_enabled: bool = True
    cooldown_sec: int = DEFAULT_COOLDOWN_SEC
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        object.__setattr__(self, "symbol", str(self.symbol).strip().upper())
        expected = PARAMS_BY_TYPE.get(self.type)
        if expected is None:
            raise ValueError(f"unknown rule type: {self.type!r}")
        if not isinstance(self.params, expected):
            raise ValueError(
                f"{self.type} rule needs {expected.__name__}, got {type(self.params).__name__}"
            )
        if self.timeframe is not None and self.timeframe not in TIMEFRAMES:
            raise ValueError(f"invalid timeframe: {self.timeframe!r}")
        if self.cooldown_sec < 0:
            raise ValueError("cooldown_sec must be >= 0")
        _validate_params(self.params)

    @property
    def effective_timeframe(self) -> str:
        """Series this rule is evaluated against (and subscribed to)."""
        if self.type == "EXTREME_MOVE":
            return EXTREME_MOVE_TIMEFRAME
        return self.timeframe or DEFAULT_TIMEFRAME

    @property
    def history_needed(self) -> int:
        """Candles a series must hold before this rule can fire."""
        if isinstance(self.params, ExtremeMoveParams):
            return self.params.window_min + 1
        return self.params.lookback + 1

    @property
    def feed_key(self) -> FeedKey:
        return (self.symbol, self.effective_timeframe)


def _validate_params(p: RuleParams) -> None:
    direction = getattr(p, "direction", None)
    if direction is not None and direction not in DIRECTIONS:
        raise ValueError(f"invalid direction: {direction!r}")
    if isinstance(p, ExtremeMoveParams):
        if p.window_min <= 0:
            raise ValueError("window_min must be >= 1")
        if p.percent < 0:
            raise ValueError("percent must be >= 0")
    elif isinstance(p, (BreakoutParams, VolumeSpikeParams)):
        if p.lookback <= 0:
            raise ValueError("lookback must be >= 1")
        if isinstance(p, VolumeSpikeParams) and p.multiplier <= 0:
            raise ValueError("multiplier must be > 0")


# ---- construction from plain dicts (seed files) ----

_PARAM_ALIASES = {
    "windowMin": "window_min",
}


def params_from_dict(rule_type: str, raw: Mapping[str, Any]) -> RuleParams:
    cls = PARAMS_BY_TYPE.get(rule_type)
    if cls is None:
        raise ValueError(f"unknown rule type: {rule_type!r}")
    kwargs = {_PARAM_ALIASES.get(k, k): v for k, v in (raw or {}).items()}
    try:
        return cls(**kwargs)
    except TypeError as e:
        raise ValueError(f"invalid params for {rule_type}: {e}") from e


def rule_from_dict(d: Mapping[str, Any]) -> AlertRule:
    """
    Build an AlertRule from a seed-file record. Accepts snake_case keys
    and the camelCase spellings used by the rule API (userId, isEnabled, ...).
    """
    def pick(*names, default=None):
        for n in names:
            if n in d:
                return d[n]
        return default

    for names in (("id",), ("user_id", "userId"), ("symbol",), ("type",)):
        if pick(*names) is None:
            raise ValueError(f"rule record missing {names[0]!r}")

    rule_type = str(pick("type")).upper()
    try:
        return AlertRule(
            id=str(pick("id")),
            user_id=str(pick("user_id", "userId")),
            symbol=str(pick("symbol")).upper(),
            type=rule_type,
            params=params_from_dict(rule_type, pick("params", default={})),
            timeframe=pick("timeframe"),
            is_enabled=bool(pick("is_enabled", "isEnabled", default=True)),
            cooldown_sec=int(pick("cooldown_sec", "cooldownSec", default=DEFAULT_COOLDOWN_SEC)),
        )
    except (TypeError, KeyError) as e:
        raise ValueError(f"invalid rule record: {e}") from e


def required_feed_keys(rules) -> set[FeedKey]:
    """Distinct (symbol, timeframe) series needed by the enabled rules."""
    return {r.feed_key for r in rules if r.is_enabled}
