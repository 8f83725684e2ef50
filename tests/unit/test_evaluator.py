import pytest

from klinealert.alerts.evaluator import CONDITION_CHECKS, RuleEvaluator
from klinealert.alerts.rules import RULE_TYPES
from klinealert.data.series import TimeSeriesBuffer
from klinealert.store.memory import InMemoryStore
from tests.helpers.factories import breakout_rule, candle, extreme_rule, volume_rule


class Clock:
    def __init__(self, ms=1_700_000_000_000):
        self.ms = ms

    def __call__(self):
        return self.ms


@pytest.fixture
def env():
    store = InMemoryStore()
    store.create_user(telegram_chat_id="42", user_id="u1")
    buffers = TimeSeriesBuffer()
    clock = Clock()
    ev = RuleEvaluator(store, buffers, clock=clock)
    return store, buffers, clock, ev


def feed(buffers, ev, c, extreme=False):
    """Mimic the pipeline: append first, then evaluate."""
    buffers.append(c)
    out = ev.evaluate_candle(c)
    if extreme:
        out += ev.evaluate_extreme_move(c)
    return out


def test_every_rule_type_has_a_condition():
    assert set(CONDITION_CHECKS) == set(RULE_TYPES)


# ---------- BREAKOUT ----------

def test_breakout_needs_lookback_plus_one(env):
    store, buffers, _, ev = env
    store.add_rule(breakout_rule(lookback=3, direction="UP"))
    # rising closes would break out every bar once history allows
    fired = [bool(feed(buffers, ev, candle(i, 100.0 + i))) for i in range(5)]
    assert fired == [False, False, False, True, True]

def test_breakout_up_payload(env):
    store, buffers, _, ev = env
    store.add_rule(breakout_rule(lookback=3, direction="UP"))
    for i, (h, l) in enumerate([(101, 99), (103, 98), (102, 97)]):
        feed(buffers, ev, candle(i, 100.0, high=h, low=l))

    assert feed(buffers, ev, candle(3, 103.0)) == []          # equal to high: no break
    out = feed(buffers, ev, candle(4, 103.5))
    assert len(out) == 1
    p = out[0].payload
    # window is candles 1..3; current candle excluded
    assert p["type"] == "BREAKOUT"
    assert p["highest"] == pytest.approx(103.0)
    assert p["lowest"] == pytest.approx(97.0)
    assert p["close"] == pytest.approx(103.5)
    assert p["direction"] == "UP"
    assert p["timeframe"] == "1m"
    assert p["id"] and p["triggered_at"]
    assert out[0].user.id == "u1"

def test_breakout_down_and_both(env):
    store, buffers, _, ev = env
    store.add_rule(breakout_rule("down", lookback=2, direction="DOWN"))
    store.add_rule(breakout_rule("both", lookback=2, direction="BOTH"))
    store.add_rule(breakout_rule("up", lookback=2, direction="UP"))
    feed(buffers, ev, candle(0, 100.0, low=99.0))
    feed(buffers, ev, candle(1, 100.0, low=98.0))
    out = feed(buffers, ev, candle(2, 97.0))
    assert sorted(a.rule.id for a in out) == ["both", "down"]
    assert all(a.payload["direction"] == "DOWN" for a in out)

def test_breakout_ignores_other_timeframe_and_symbol(env):
    store, buffers, _, ev = env
    store.add_rule(breakout_rule(lookback=1, timeframe="5m"))
    store.add_rule(breakout_rule("eth", lookback=1, symbol="ETHUSDT"))
    feed(buffers, ev, candle(0, 100.0))
    assert feed(buffers, ev, candle(1, 200.0)) == []

def test_breakout_unset_timeframe_evaluates_on_1m(env):
    store, buffers, _, ev = env
    store.add_rule(breakout_rule(lookback=1, timeframe=None))
    feed(buffers, ev, candle(0, 100.0))
    assert len(feed(buffers, ev, candle(1, 200.0))) == 1


# ---------- VOLUME_SPIKE ----------

def test_volume_spike_boundary_inclusive(env):
    store, buffers, _, ev = env
    store.add_rule(volume_rule(lookback=4, multiplier=2.5))
    for i in range(4):
        feed(buffers, ev, candle(i, 100.0, volume=10.0))
    out = feed(buffers, ev, candle(4, 100.0, volume=25.0))
    assert len(out) == 1
    assert out[0].payload["avg_volume"] == pytest.approx(10.0)
    assert out[0].payload["volume"] == pytest.approx(25.0)
    assert out[0].payload["multiplier"] == 2.5

def test_volume_spike_below_threshold(env):
    store, buffers, _, ev = env
    store.add_rule(volume_rule(lookback=2, multiplier=2.0))
    feed(buffers, ev, candle(0, 100.0, volume=10.0))
    feed(buffers, ev, candle(1, 100.0, volume=30.0))
    assert feed(buffers, ev, candle(2, 100.0, volume=39.9)) == []

def test_volume_spike_insufficient_history(env):
    store, buffers, _, ev = env
    store.add_rule(volume_rule(lookback=3, multiplier=1.0))
    for i in range(3):
        assert feed(buffers, ev, candle(i, 100.0, volume=1000.0)) == []


# ---------- EXTREME_MOVE ----------

def test_extreme_move_up(env):
    store, buffers, _, ev = env
    store.add_rule(extreme_rule("up", window_min=5, percent=2.0, direction="UP"))
    store.add_rule(extreme_rule("down", window_min=5, percent=2.0, direction="DOWN"))
    feed(buffers, ev, candle(0, 100.0), extreme=True)
    for i in range(1, 5):
        assert feed(buffers, ev, candle(i, 101.0), extreme=True) == []
    out = feed(buffers, ev, candle(5, 103.0), extreme=True)
    assert [a.rule.id for a in out] == ["up"]
    p = out[0].payload
    assert p["change"] == pytest.approx(3.0)
    assert p["previous_close"] == pytest.approx(100.0)
    assert p["price"] == pytest.approx(103.0)
    assert p["window_min"] == 5 and p["percent"] == 2.0
    assert p["direction"] == "UP"

def test_extreme_move_down_and_both(env):
    store, buffers, _, ev = env
    store.add_rule(extreme_rule("both", window_min=1, percent=1.0, direction="BOTH"))
    store.add_rule(extreme_rule("down", window_min=1, percent=1.0, direction="DOWN"))
    feed(buffers, ev, candle(0, 100.0), extreme=True)
    out = feed(buffers, ev, candle(1, 98.5), extreme=True)
    assert sorted(a.rule.id for a in out) == ["both", "down"]
    assert out[0].payload["change"] == pytest.approx(-1.5)

def test_extreme_move_needs_old_enough_reference(env):
    store, buffers, _, ev = env
    store.add_rule(extreme_rule(window_min=10, percent=1.0))
    feed(buffers, ev, candle(0, 100.0), extreme=True)
    # only 5 minutes of history: no reference candle at/before the cutoff
    assert feed(buffers, ev, candle(5, 150.0), extreme=True) == []

def test_extreme_move_uses_latest_candle_before_cutoff(env):
    store, buffers, _, ev = env
    store.add_rule(extreme_rule(window_min=2, percent=5.0, direction="UP"))
    for i, px in enumerate([50.0, 100.0, 100.0, 101.0]):
        feed(buffers, ev, candle(i, px), extreme=True)
    # reference is candle 2 (100.0), not the older 50.0
    assert feed(buffers, ev, candle(4, 104.0), extreme=True) == []
    out = feed(buffers, ev, candle(5, 110.0), extreme=True)
    assert out[0].payload["previous_close"] == pytest.approx(101.0)

def test_extreme_move_not_evaluated_by_own_timeframe_pass(env):
    store, buffers, _, ev = env
    store.add_rule(extreme_rule(window_min=1, percent=1.0))
    feed(buffers, ev, candle(0, 100.0))
    assert feed(buffers, ev, candle(1, 200.0)) == []


# ---------- cooldown / enabled / user ----------

def test_cooldown_blocks_repeat_until_elapsed(env):
    store, buffers, clock, ev = env
    store.add_rule(volume_rule(lookback=1, multiplier=1.0, cooldown_sec=60))
    feed(buffers, ev, candle(0, 100.0, volume=1.0))
    assert len(feed(buffers, ev, candle(1, 100.0, volume=1.0))) == 1
    t_fire = clock.ms

    # condition stays true every bar
    for i in range(2, 6):
        clock.ms = t_fire + (i - 1) * 15_000 - 1   # still inside 60s
        assert feed(buffers, ev, candle(i, 100.0, volume=1.0)) == []
    clock.ms = t_fire + 60_000
    assert len(feed(buffers, ev, candle(6, 100.0, volume=1.0))) == 1
    assert ev.cooldowns.last_trigger_ms("r-vs") == t_fire + 60_000

def test_cooldown_survives_rule_update(env):
    store, buffers, clock, ev = env
    store.add_rule(volume_rule(lookback=1, multiplier=1.0, cooldown_sec=60))
    feed(buffers, ev, candle(0, 100.0))
    assert feed(buffers, ev, candle(1, 100.0))
    store.update_rule("r-vs", params=volume_rule(lookback=1, multiplier=0.5).params)
    clock.ms += 1_000
    assert feed(buffers, ev, candle(2, 100.0)) == []

def test_disabled_rules_never_fire(env):
    store, buffers, _, ev = env
    store.add_rule(volume_rule(lookback=1, multiplier=0.1, is_enabled=False))
    store.add_rule(breakout_rule(lookback=1, is_enabled=False))
    store.add_rule(extreme_rule(window_min=1, percent=0.0, is_enabled=False))
    for i in range(5):
        assert feed(buffers, ev, candle(i, 100.0 * (i + 1), volume=10.0 ** i), extreme=True) == []
    assert ev.cooldowns.last_trigger_ms("r-vs") is None

def test_missing_user_drops_trigger_but_arms_cooldown(env):
    store, buffers, _, ev = env
    store.add_rule(volume_rule(lookback=1, multiplier=1.0, user_id="ghost", cooldown_sec=60))
    feed(buffers, ev, candle(0, 100.0))
    assert feed(buffers, ev, candle(1, 100.0)) == []
    assert ev.cooldowns.last_trigger_ms("r-vs") is not None

def test_rules_evaluated_independently(env):
    store, buffers, _, ev = env
    store.add_rule(volume_rule("v1", lookback=1, multiplier=1.0, cooldown_sec=600))
    store.add_rule(volume_rule("v2", lookback=1, multiplier=1.0, cooldown_sec=0))
    feed(buffers, ev, candle(0, 100.0))
    assert sorted(a.rule.id for a in feed(buffers, ev, candle(1, 100.0))) == ["v1", "v2"]
    assert [a.rule.id for a in feed(buffers, ev, candle(2, 100.0))] == ["v2"]


class _FlakyStore(InMemoryStore):
    """get_user fails for one owner id."""
    def get_user(self, user_id):
        if user_id == "broken":
            raise RuntimeError("user lookup timed out")
        return super().get_user(user_id)


def test_failing_rule_does_not_discard_other_triggers():
    store = _FlakyStore()
    store.create_user(telegram_chat_id="42", user_id="u1")
    buffers = TimeSeriesBuffer()
    ev = RuleEvaluator(store, buffers, clock=Clock())
    store.add_rule(volume_rule("good", lookback=1, multiplier=1.0, cooldown_sec=600))
    store.add_rule(volume_rule("other", lookback=1, multiplier=1.0, user_id="broken"))
    store.add_rule(volume_rule("late", lookback=1, multiplier=1.0, cooldown_sec=600))

    feed(buffers, ev, candle(0, 100.0))
    out = feed(buffers, ev, candle(1, 100.0))
    assert sorted(a.rule.id for a in out) == ["good", "late"]


def test_unreachable_rules_need_more_history_than_buffer():
    store = InMemoryStore()
    ev = RuleEvaluator(store, TimeSeriesBuffer(default_capacity=50))
    rules = [
        breakout_rule("fits", lookback=49),
        breakout_rule("too-long", lookback=50),
        volume_rule("vol-long", lookback=200),
        extreme_rule("em-long", window_min=60),
        extreme_rule("em-fits", window_min=5),
    ]
    assert ev.unreachable_rules(rules) == ["too-long", "vol-long", "em-long"]
    # reported again on later calls, logged once
    assert ev.unreachable_rules(rules[1:2]) == ["too-long"]
