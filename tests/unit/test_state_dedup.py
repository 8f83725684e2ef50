from klinealert.alerts.dedup import TTLDeduper, candle_key
from klinealert.alerts.state import CooldownState
from tests.helpers.factories import candle


def test_cooldown_absent_until_first_trigger():
    cd = CooldownState()
    assert cd.last_trigger_ms("r1") is None
    with cd.hold("r1") as st:
        assert st.ready(60, now_ms=0)
        st.mark(1_000)
    assert cd.last_trigger_ms("r1") == 1_000

def test_cooldown_window_boundary_inclusive():
    cd = CooldownState()
    with cd.hold("r1") as st:
        st.mark(10_000)
    st = cd.ensure_rule("r1")
    assert not st.ready(60, 10_000 + 59_999)
    assert st.ready(60, 10_000 + 60_000)
    assert st.ready(0, 10_000)

def test_cooldown_keys_independent():
    cd = CooldownState()
    with cd.hold("a") as st:
        st.mark(5)
    assert cd.last_trigger_ms("b") is None
    assert cd.ensure_rule("a").trigger_count == 1


class Clock:
    def __init__(self, t=0.0):
        self.t = t

    def __call__(self):
        return self.t


def test_deduper_ttl_expiry():
    clock = Clock(100.0)
    d = TTLDeduper(ttl_s=10, clock=clock)
    assert d.check_and_mark("k") is True
    assert d.check_and_mark("k") is False
    clock.t = 111.0
    assert d.seen_recently("k") is False
    assert d.check_and_mark("k") is True

def test_deduper_bounded():
    clock = Clock()
    d = TTLDeduper(ttl_s=1000, max_size=8, clock=clock)
    for i in range(50):
        d.mark(f"k{i}")
    assert len(d) <= 8
    assert d.seen_recently("k49")

def test_candle_key_uses_open_time():
    assert candle_key(candle(0)) != candle_key(candle(1))
    assert candle_key(candle(0, 1.0)) == candle_key(candle(0, 2.0))
