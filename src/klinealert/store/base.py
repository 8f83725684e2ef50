from __future__ import annotations

from typing import Iterable, Optional, Protocol

from klinealert.alerts.rules import AlertRule
from klinealert.utils.types import AlertEvent, NotificationLog, User


class RuleRegistry(Protocol):
    """Read side of the rule/user store. The engine never writes through it."""

    def list_rules(self) -> Iterable[AlertRule]: ...

    def get_rule(self, rule_id: str) -> Optional[AlertRule]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...


class EventStore(Protocol):
    """Fire-and-forget sink for alert events and delivery outcomes."""

    def add_alert_event(self, event: AlertEvent) -> None: ...

    def add_notification_log(self, log: NotificationLog) -> None: ...
