import numpy as np
import pytest

from klinealert.data.ring_buffer import RingBufferOHLCV
from tests.helpers.factories import candle


def test_append_and_last_close_time():
    rb = RingBufferOHLCV(capacity=5)
    assert rb.last_close_time() is None

    rb.append(candle(0, 1.0))
    rb.append(candle(1, 2.0))
    assert rb.last_close_time() == candle(1).close_time
    assert rb.size == 2

def test_view_last_contiguous():
    rb = RingBufferOHLCV(capacity=5)
    for i in range(1, 4):
        rb.append(candle(i, float(i), high=i + 0.2, low=i - 0.1, volume=i * 10))

    v = rb.view_last(2)
    assert v.length == 2
    assert list(v.open_time) == [candle(2).open_time, candle(3).open_time]
    assert np.allclose(v.c, [2.0, 3.0])
    assert np.allclose(v.h, [2.2, 3.2])
    assert np.allclose(v.v, [20.0, 30.0])

def test_view_last_wraparound_keeps_time_order():
    rb = RingBufferOHLCV(capacity=4)
    # 5 bars force a wrap
    for i in range(1, 6):
        rb.append(candle(i, float(i)))

    v = rb.view_last(3)
    assert v.length == 3
    assert v.c.tolist() == [3.0, 4.0, 5.0]
    assert rb.view_last(10).c.tolist() == [2.0, 3.0, 4.0, 5.0]

def test_view_is_detached_from_ring():
    rb = RingBufferOHLCV(capacity=3)
    for i in range(3):
        rb.append(candle(i, float(i)))
    v = rb.view_last(3)
    rb.append(candle(3, 99.0))
    assert v.c.tolist() == [0.0, 1.0, 2.0]

def test_candles_round_trip_fields():
    rb = RingBufferOHLCV(capacity=3)
    c = candle(0, 101.5, high=102.0, low=100.0, volume=7.5, open_=100.5)
    rb.append(c)
    assert rb.candles(c.symbol, c.timeframe) == (c,)

def test_resized_keeps_newest():
    rb = RingBufferOHLCV(capacity=4)
    for i in range(6):
        rb.append(candle(i, float(i)))
    smaller = rb.resized(2)
    assert smaller.view_last(5).c.tolist() == [4.0, 5.0]
    larger = rb.resized(10)
    assert larger.view_last(10).c.tolist() == [2.0, 3.0, 4.0, 5.0]
    larger.append(candle(6, 6.0))
    assert larger.view_last(10).c.tolist() == [2.0, 3.0, 4.0, 5.0, 6.0]

def test_zero_capacity_rejected():
    with pytest.raises(ValueError):
        RingBufferOHLCV(capacity=0)
