from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal, Optional

if TYPE_CHECKING:
    from klinealert.alerts.rules import AlertRule, RuleType

# ---- market primitives ----

Timeframe = Literal["1m", "5m", "15m"]

TIMEFRAMES: tuple[str, ...] = ("1m", "5m", "15m")

TIMEFRAME_MS: dict[str, int] = {
    "1m": 60_000,
    "5m": 300_000,
    "15m": 900_000,
}

# (symbol, timeframe) - identifies one buffer and one feed connection
FeedKey = tuple[str, str]


@dataclass(slots=True, frozen=True)
class Candle:
    """
    One OHLCV bar. Times are epoch milliseconds.
    `is_final` is False while the bar's period is still open.
    """
    symbol: str
    timeframe: str
    open_time: int
    close_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    is_final: bool = True

    @property
    def key(self) -> FeedKey:
        return (self.symbol, self.timeframe)


# ---- registry records ----

Plan = Literal["FREE", "PRO"]


@dataclass(slots=True)
class User:
    id: str
    telegram_chat_id: str
    plan: Plan = "FREE"
    email: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ---- alerting domain ----

NotificationStatus = Literal["SENT", "FAILED"]
Channel = Literal["TELEGRAM", "CONSOLE"]


@dataclass(slots=True)
class TriggeredAlert:
    """In-flight result of a rule firing; lives for one evaluate→dispatch cycle."""
    rule: AlertRule
    user: User
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AlertEvent:
    id: str
    rule_id: str
    user_id: str
    symbol: str
    type: RuleType
    triggered_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class NotificationLog:
    id: str
    alert_event_id: str
    rule_id: str
    user_id: str
    channel: Channel
    status: NotificationStatus
    sent_at: datetime
    error: Optional[str] = None
