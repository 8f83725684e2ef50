from __future__ import annotations

import time
from datetime import datetime, timezone

# --- clock helpers (epoch milliseconds are the unit used by the feed) ---

def utc_now_s() -> float:
    """Unix epoch seconds (float)."""
    return time.time()

def utc_now_ms() -> int:
    """Unix epoch milliseconds (int)."""
    return time.time_ns() // 1_000_000

def utc_now() -> datetime:
    """Timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)

def ms_to_dt(ts_ms: int | float) -> datetime:
    """Epoch milliseconds -> timezone-aware UTC datetime."""
    return datetime.fromtimestamp(float(ts_ms) / 1000.0, tz=timezone.utc)

def minutes_to_ms(minutes: float) -> int:
    return int(minutes * 60_000)

def seconds_since(ts_past: float) -> float:
    """Non-negative time since past (clamped at 0)."""
    return max(0.0, utc_now_s() - ts_past)
