from __future__ import annotations

import asyncio
import random
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

import aiohttp
import structlog

from klinealert.alerts.formatting import format_alert_markdown
from klinealert.alerts.notifiers import NotificationError
from klinealert.utils.types import Channel, TriggeredAlert

log = structlog.get_logger("telegram")

API_BASE = "https://api.telegram.org"

# --------- small rate limiter (token bucket) ----------

class RateLimiter:
    def __init__(self, rate_per_sec: float, burst: int = 1):
        self.rate = float(rate_per_sec)
        self.capacity = int(burst)
        self.tokens = float(burst)
        self.updated: Optional[float] = None
        self._lock = asyncio.Lock()

    async def acquire(self):
        async with self._lock:
            loop = asyncio.get_running_loop()
            now = loop.time()
            if self.updated is None:
                self.updated = now
            # refill
            self.tokens = min(self.capacity, self.tokens + (now - self.updated) * self.rate)
            self.updated = now
            if self.tokens < 1.0:
                needed = 1.0 - self.tokens
                await asyncio.sleep(needed / self.rate)
                self.updated = loop.time()
                self.tokens = 1.0
            self.tokens -= 1.0

# --------- config & client ----------

@dataclass(slots=True)
class TelegramConfig:
    bot_token: str
    default_link: str = "https://cryptobriefs.net"
    link_text: str = "View on CryptoBriefs"
    parse_mode: Optional[str] = "Markdown"  # "HTML", "MarkdownV2" or None
    timeout_s: float = 8.0
    per_chat_rate_per_sec: float = 1.0
    per_chat_burst: int = 3
    max_retries: int = 3
    initial_backoff_s: float = 0.5
    max_backoff_s: float = 8.0
    # least recently used chats lose their bucket beyond this
    max_chat_limiters: int = 10_000


class TelegramNotifier:
    """
    Sends one alert to its owner's chat via the Bot API `sendMessage`.

    Per-chat token-bucket rate limiting; 429 / 5xx / network errors are
    retried with jittered backoff up to `max_retries`, then NotificationError
    is raised. Other 4xx fail immediately.
    """
    channel: Channel = "TELEGRAM"

    def __init__(
        self,
        cfg: TelegramConfig,
        format_fn: Optional[Callable[[TriggeredAlert], str]] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.cfg = cfg
        self._session = session
        self._owns_session = session is None
        self._limiters: OrderedDict[str, RateLimiter] = OrderedDict()
        self._format_fn = format_fn or format_alert_markdown

    async def start(self):
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.cfg.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def stop(self):
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _limiter(self, chat_id: str) -> RateLimiter:
        rl = self._limiters.get(chat_id)
        if rl is None:
            rl = RateLimiter(rate_per_sec=self.cfg.per_chat_rate_per_sec, burst=self.cfg.per_chat_burst)
            self._limiters[chat_id] = rl
            while len(self._limiters) > max(1, self.cfg.max_chat_limiters):
                self._limiters.popitem(last=False)
        else:
            self._limiters.move_to_end(chat_id)
        return rl

    def build_body(self, alert: TriggeredAlert) -> dict:
        body = {
            "chat_id": alert.user.telegram_chat_id,
            "text": self._format_fn(alert),
        }
        if self.cfg.parse_mode:
            body["parse_mode"] = self.cfg.parse_mode
        if self.cfg.default_link:
            body["reply_markup"] = {
                "inline_keyboard": [[{"text": self.cfg.link_text, "url": self.cfg.default_link}]]
            }
        return body

    async def dispatch(self, alert: TriggeredAlert) -> None:
        if not self.cfg.bot_token:
            raise NotificationError("Missing TELEGRAM_BOT_TOKEN")
        if not alert.user.telegram_chat_id:
            raise NotificationError(f"user {alert.user.id} has no telegram_chat_id")
        if self._session is None:
            await self.start()
        await self._limiter(alert.user.telegram_chat_id).acquire()
        await self._send(self.build_body(alert))

    async def _send(self, body: dict) -> None:
        assert self._session is not None
        url = f"{API_BASE}/bot{self.cfg.bot_token}/sendMessage"

        backoff = self.cfg.initial_backoff_s
        last_err = "no attempt made"
        attempts = max(1, self.cfg.max_retries + 1)
        for attempt in range(1, attempts + 1):
            try:
                async with self._session.post(url, json=body) as resp:
                    if resp.status == 200:
                        return
                    detail = await _maybe_text(resp)
                    last_err = f"Telegram send failed: {resp.status} {detail}"
                    log.warning("telegram_send_failed", status=resp.status, body=detail[:200], attempt=attempt)
                    if resp.status != 429 and not 500 <= resp.status < 600:
                        # other 4xx: retrying will not help
                        raise NotificationError(last_err)
                    retry_after = await _retry_after(resp) if resp.status == 429 else None
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_err = f"Telegram network error: {e!s}"
                log.warning("telegram_network_error", err=str(e), attempt=attempt)
                retry_after = None

            if attempt < attempts:
                await asyncio.sleep(retry_after if retry_after else self._jitter(backoff))
                backoff = min(backoff * 2.0, self.cfg.max_backoff_s)

        log.error("telegram_give_up_after_retries", attempts=attempts)
        raise NotificationError(last_err)

    @staticmethod
    def _jitter(base: float) -> float:
        return base * (0.8 + 0.4 * random.random())


async def _maybe_text(resp: aiohttp.ClientResponse) -> str:
    try:
        return await resp.text()
    except Exception:
        return "<no body>"


async def _retry_after(resp: aiohttp.ClientResponse) -> Optional[float]:
    # Telegram includes parameters.retry_after (seconds) on 429
    try:
        data = await resp.json(content_type=None)
        ra = data.get("parameters", {}).get("retry_after")
        return float(ra) if ra else None
    except Exception:
        return None
