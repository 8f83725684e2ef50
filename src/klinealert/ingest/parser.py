from __future__ import annotations

from typing import Any, Optional

from klinealert.utils.types import TIMEFRAMES, Candle

_REQUIRED = ("t", "T", "s", "i", "o", "h", "l", "c", "v", "x")


def parse_kline_msg(m: Any) -> Optional[Candle]:
    """
    Return a Candle if `m` is a kline event; None for anything else
    (subscription acks, other event types). Raises ValueError when a kline
    event is malformed.

    Kline event shape (raw stream; combined streams wrap it in {"stream", "data"}):
      {"e": "kline", "s": "BTCUSDT",
       "k": {"t": 1700000000000, "T": 1700000059999, "s": "BTCUSDT", "i": "1m",
             "o": "37000.10", "h": "37050.00", "l": "36990.00", "c": "37020.55",
             "v": "12.345", "x": false, ...}}
    """
    if not isinstance(m, dict):
        return None
    if "data" in m and isinstance(m["data"], dict):
        m = m["data"]

    k = m.get("k")
    if m.get("e") != "kline" and k is None:
        return None
    if not isinstance(k, dict):
        raise ValueError("kline event without 'k' object")

    missing = [f for f in _REQUIRED if f not in k]
    if missing:
        raise ValueError(f"kline missing fields: {','.join(missing)}")

    interval = str(k["i"])
    if interval not in TIMEFRAMES:
        raise ValueError(f"unsupported interval: {interval}")

    is_final = k["x"]
    if not isinstance(is_final, bool):
        raise ValueError(f"kline 'x' must be boolean, got {is_final!r}")

    try:
        return Candle(
            symbol=str(k["s"]).upper(),
            timeframe=interval,
            open_time=int(k["t"]),
            close_time=int(k["T"]),
            open=float(k["o"]),
            high=float(k["h"]),
            low=float(k["l"]),
            close=float(k["c"]),
            volume=float(k["v"]),
            is_final=is_final,
        )
    except (TypeError, ValueError) as e:
        raise ValueError(f"kline field not numeric: {e}") from e
