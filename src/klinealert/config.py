from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from klinealert.data.series import DEFAULT_CAPACITY
from klinealert.ingest.subscriptions import DEFAULT_RECONCILE_INTERVAL_S

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")
DEFAULT_WS_BASE_URL = "wss://stream.binance.com:9443"
DEFAULT_TELEGRAM_LINK = "https://cryptobriefs.net"
DEFAULT_REDIS_URL = "redis://localhost:6379/0"


class ConfigError(Exception):
    """Invalid process configuration."""


def _read_number(value: Optional[str], fallback: float) -> float:
    # unset or unparsable -> fallback
    if not value:
        return fallback
    try:
        return float(value)
    except ValueError:
        return fallback


def _read_bool(value: Optional[str], fallback: bool = False) -> bool:
    if value is None or value == "":
        return fallback
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(slots=True)
class Settings:
    ws_base_url: str = DEFAULT_WS_BASE_URL
    reconcile_interval_s: float = DEFAULT_RECONCILE_INTERVAL_S
    buffer_capacity: int = DEFAULT_CAPACITY
    rules_file: Optional[str] = None
    telegram_bot_token: str = ""
    telegram_default_link: str = DEFAULT_TELEGRAM_LINK
    redis_url: str = DEFAULT_REDIS_URL
    redis_mirror: bool = False
    log_level: str = "info"
    default_symbols: list[str] = field(default_factory=list)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env

        level = env.get("LOG_LEVEL", "info").strip().lower()
        if level not in LOG_LEVELS:
            raise ConfigError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}; got {level!r}")

        interval = _read_number(env.get("RECONCILE_INTERVAL_S"), DEFAULT_RECONCILE_INTERVAL_S)
        if interval <= 0:
            interval = DEFAULT_RECONCILE_INTERVAL_S
        capacity = int(_read_number(env.get("BUFFER_CAPACITY"), DEFAULT_CAPACITY))
        if capacity <= 0:
            capacity = DEFAULT_CAPACITY

        symbols_env = env.get("DEFAULT_SYMBOLS", "")
        return cls(
            ws_base_url=env.get("KLINE_WS_BASE_URL", DEFAULT_WS_BASE_URL),
            reconcile_interval_s=interval,
            buffer_capacity=capacity,
            rules_file=env.get("RULES_FILE") or None,
            telegram_bot_token=env.get("TELEGRAM_BOT_TOKEN", "").strip(),
            telegram_default_link=env.get("TELEGRAM_DEFAULT_LINK", DEFAULT_TELEGRAM_LINK),
            redis_url=env.get("REDIS_URL", DEFAULT_REDIS_URL),
            redis_mirror=_read_bool(env.get("REDIS_MIRROR")),
            log_level=level,
            default_symbols=[s.strip().upper() for s in symbols_env.split(",") if s.strip()],
        )
