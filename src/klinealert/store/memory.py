from __future__ import annotations

import dataclasses
import json
import threading
from pathlib import Path
from typing import Any, Mapping, Optional

import structlog

from klinealert.alerts.rules import AlertRule, rule_from_dict
from klinealert.utils.ids import new_id
from klinealert.utils.time import utc_now
from klinealert.utils.types import AlertEvent, NotificationLog, User

log = structlog.get_logger("store")


class InMemoryStore:
    """
    Process-local rule registry and event store.

    Read side (used by the engine): list_rules, get_rule, get_user.
    Append side (used by the pipeline): add_alert_event, add_notification_log.
    Everything else is the administrative surface used for seeding.

    An optional `mirror` (see storage.redis_events) receives every appended
    event and log on a best-effort basis.
    """
    def __init__(self, mirror=None):
        self._users: dict[str, User] = {}
        self._rules: dict[str, AlertRule] = {}
        self._alerts: list[AlertEvent] = []
        self._notifications: list[NotificationLog] = []
        self._lock = threading.Lock()
        self.mirror = mirror

    # ---- users ----

    def create_user(self, telegram_chat_id: str, plan: str = "FREE", email: Optional[str] = None,
                    user_id: Optional[str] = None) -> User:
        now = utc_now()
        user = User(
            id=user_id or new_id(),
            telegram_chat_id=str(telegram_chat_id),
            plan=plan,
            email=email,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._users[user.id] = user
        return user

    def list_users(self) -> list[User]:
        return list(self._users.values())

    def get_user(self, user_id: str) -> Optional[User]:
        return self._users.get(user_id)

    # ---- rules ----

    def add_rule(self, rule: AlertRule) -> AlertRule:
        now = utc_now()
        rule = dataclasses.replace(rule, created_at=rule.created_at or now, updated_at=now)
        with self._lock:
            self._rules[rule.id] = rule
        return rule

    def list_rules(self) -> list[AlertRule]:
        # snapshot: callers iterate while the admin side may edit
        return list(self._rules.values())

    def get_rule(self, rule_id: str) -> Optional[AlertRule]:
        return self._rules.get(rule_id)

    def update_rule(self, rule_id: str, **changes: Any) -> Optional[AlertRule]:
        changes.pop("id", None)
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                return None
            updated = dataclasses.replace(rule, **changes, updated_at=utc_now())
            self._rules[rule_id] = updated
        return updated

    def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None

    # ---- events ----

    def add_alert_event(self, event: AlertEvent) -> None:
        with self._lock:
            self._alerts.append(event)
        if self.mirror is not None:
            self.mirror.write_alert_event(event)

    def add_notification_log(self, entry: NotificationLog) -> None:
        with self._lock:
            self._notifications.append(entry)
        if self.mirror is not None:
            self.mirror.write_notification_log(entry)

    def list_alerts(self) -> list[AlertEvent]:
        return list(self._alerts)

    def list_notifications(self) -> list[NotificationLog]:
        return list(self._notifications)

    # ---- seeding ----

    def load_seed(self, data: Mapping[str, Any]) -> tuple[int, int]:
        """
        Load {"users": [...], "rules": [...]}. Rules whose owner is unknown
        are still loaded (the evaluator drops their triggers).
        Returns (users_loaded, rules_loaded).
        """
        users = data.get("users") or []
        rules = data.get("rules") or []
        for u in users:
            chat_id = u.get("telegram_chat_id", u.get("telegramChatId"))
            if chat_id is None:
                raise ValueError(f"user record missing telegram_chat_id: {u!r}")
            self.create_user(
                telegram_chat_id=chat_id,
                plan=u.get("plan", "FREE"),
                email=u.get("email"),
                user_id=u.get("id"),
            )
        for r in rules:
            rule = self.add_rule(rule_from_dict(r))
            if rule.user_id not in self._users:
                log.warning("seed_rule_unknown_user", rule_id=rule.id, user_id=rule.user_id)
        log.info("seed_loaded", users=len(users), rules=len(rules))
        return len(users), len(rules)

    def load_seed_file(self, path: str | Path) -> tuple[int, int]:
        with open(path, "r", encoding="utf-8") as fh:
            return self.load_seed(json.load(fh))
