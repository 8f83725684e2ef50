# src/klinealert/alerts/notifiers.py
from __future__ import annotations

from typing import Callable, Optional, Protocol

import structlog

from klinealert.alerts.formatting import format_alert_plain
from klinealert.utils.types import Channel, TriggeredAlert

log = structlog.get_logger("notifier")


class NotificationError(Exception):
    """A notification channel could not deliver an alert."""


class Notifier(Protocol):
    channel: Channel

    async def dispatch(self, alert: TriggeredAlert) -> None:
        """Deliver the alert; raise on failure."""
        ...


class ConsoleNotifier:
    channel: Channel = "CONSOLE"

    def __init__(self, format_fn: Optional[Callable[[TriggeredAlert], str]] = None):
        self._format_fn = format_fn or format_alert_plain

    async def dispatch(self, alert: TriggeredAlert) -> None:
        try:
            text = self._format_fn(alert)
        except Exception as e:
            log.warning("console_format_failed", err=str(e), rule_id=alert.rule.id)
            text = f"[ALERT] {alert.rule.symbol} {alert.rule.type} payload={alert.payload}"
        print(text, flush=True)
