from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator


@dataclass(slots=True)
class RuleState:
    last_trigger_ms: int | None = None
    trigger_count: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def ready(self, cooldown_sec: int, now_ms: int) -> bool:
        if self.last_trigger_ms is None:
            return True
        return now_ms - self.last_trigger_ms >= cooldown_sec * 1000

    def mark(self, now_ms: int) -> None:
        self.last_trigger_ms = now_ms
        self.trigger_count += 1


# keyed by rule id and kept apart from the rule record, so editing a rule
# in the registry never resets its trigger timing
@dataclass(slots=True)
class CooldownState:
    rules: dict[str, RuleState] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def ensure_rule(self, rule_id: str) -> RuleState:
        st = self.rules.get(rule_id)
        if st is None:
            with self._lock:
                st = self.rules.get(rule_id)
                if st is None:
                    st = RuleState()
                    self.rules[rule_id] = st
        return st

    @contextmanager
    def hold(self, rule_id: str) -> Iterator[RuleState]:
        """Exclusive access to one rule's state for a check-then-set sequence."""
        st = self.ensure_rule(rule_id)
        with st.lock:
            yield st

    def last_trigger_ms(self, rule_id: str) -> int | None:
        st = self.rules.get(rule_id)
        return st.last_trigger_ms if st else None
