from __future__ import annotations

from datetime import datetime

from klinealert.utils.types import TriggeredAlert

_TITLES = {
    "EXTREME_MOVE": "EXTREME MOVE",
    "BREAKOUT": "BREAKOUT",
    "VOLUME_SPIKE": "VOLUME SPIKE",
}


def _fmt_ts(iso: str | None) -> str | None:
    if not iso:
        return None
    try:
        return datetime.fromisoformat(iso).strftime("%H:%M:%S %Z")
    except ValueError:
        return iso


def format_alert_lines(alert: TriggeredAlert) -> list[str]:
    p = alert.payload
    rule = alert.rule
    lines = [f"Symbol: {rule.symbol}"]
    if p.get("timeframe"):
        lines.append(f"Timeframe: {p['timeframe']}")

    if rule.type == "EXTREME_MOVE":
        arrow = "↑" if p.get("direction") == "UP" else "↓"
        lines.append(f"Change: {arrow} {float(p.get('change', 0.0)):+.2f}% in {p.get('window_min')}m")
        lines.append(f"Price: {float(p.get('price', 0.0)):.4f} (from {float(p.get('previous_close', 0.0)):.4f})")
    elif rule.type == "BREAKOUT":
        ref = p.get("highest") if p.get("direction") == "UP" else p.get("lowest")
        side = "high" if p.get("direction") == "UP" else "low"
        lines.append(f"Close: {float(p.get('close', 0.0)):.4f}")
        lines.append(f"Broke {p.get('lookback')}-bar {side}: {float(ref or 0.0):.4f}")
    elif rule.type == "VOLUME_SPIKE":
        lines.append(f"Volume: {float(p.get('volume', 0.0)):.2f}")
        lines.append(
            f"Avg({p.get('lookback')}): {float(p.get('avg_volume', 0.0)):.2f}  ×{p.get('multiplier')}"
        )

    ts = _fmt_ts(p.get("triggered_at"))
    if ts:
        lines.append(f"At: {ts}")
    return lines


def format_alert_markdown(alert: TriggeredAlert) -> str:
    """Telegram text (legacy Markdown parse mode)."""
    title = _TITLES.get(alert.rule.type, alert.rule.type)
    return "\n".join([f"*{title} Alert*", *format_alert_lines(alert)])


def format_alert_plain(alert: TriggeredAlert) -> str:
    """Single-line console text."""
    title = _TITLES.get(alert.rule.type, alert.rule.type)
    return f"[{title}] " + "  |  ".join(format_alert_lines(alert))
