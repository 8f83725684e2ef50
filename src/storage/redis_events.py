# src/storage/redis_events.py
from __future__ import annotations

import asyncio
import json
from dataclasses import asdict
from datetime import datetime
from typing import Optional

import structlog
import redis.asyncio as redis

from klinealert.utils.types import AlertEvent, NotificationLog

log = structlog.get_logger("redis_events")

EVENTS_STREAM = "alerts:events"
NOTIFICATIONS_STREAM = "alerts:notifications"


def _default(o):
    if isinstance(o, datetime):
        return o.isoformat()
    return str(o)


def event_fields(event: AlertEvent) -> dict[str, str]:
    d = asdict(event)
    d["triggered_at"] = event.triggered_at.isoformat()
    d["payload"] = json.dumps(event.payload, default=_default)
    return {k: str(v) for k, v in d.items()}


def notification_fields(entry: NotificationLog) -> dict[str, str]:
    d = asdict(entry)
    d["sent_at"] = entry.sent_at.isoformat()
    d["error"] = entry.error or ""
    return {k: str(v) for k, v in d.items()}


class RedisEventMirror:
    """
    Optional mirror of alert events and notification logs into Redis streams.
    Non-blocking best-effort writes: callers enqueue, a writer task XADDs.
    A full queue or a Redis error drops the record (logged).
    """
    def __init__(self, url: str, enabled: bool = False, maxlen: int = 100_000, queue_size: int = 5000):
        self.enabled = enabled
        self.url = url
        self.maxlen = maxlen
        self._r: Optional[redis.Redis] = None
        self._q: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._task: Optional[asyncio.Task] = None
        self.dropped = 0

    async def start(self):
        if not self.enabled:
            return
        self._r = redis.from_url(self.url, decode_responses=True)
        self._task = asyncio.create_task(self._writer_loop(), name="redis-event-mirror")
        log.info("redis_mirror_started", url=self.url)

    async def stop(self):
        if not self.enabled:
            return
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._r:
            await self._r.aclose()

    def write_alert_event(self, event: AlertEvent) -> None:
        self._enqueue(EVENTS_STREAM, event_fields(event))

    def write_notification_log(self, entry: NotificationLog) -> None:
        self._enqueue(NOTIFICATIONS_STREAM, notification_fields(entry))

    def _enqueue(self, stream: str, fields: dict[str, str]) -> None:
        if not self.enabled:
            return
        try:
            self._q.put_nowait((stream, fields))
        except asyncio.QueueFull:
            self.dropped += 1
            log.warning("redis_mirror_queue_full_drop", stream=stream)

    async def _writer_loop(self):
        assert self._r is not None
        r = self._r
        while True:
            stream, fields = await self._q.get()
            try:
                await r.xadd(stream, fields, maxlen=self.maxlen, approximate=True)
            except Exception as e:
                # it's a mirror; the in-memory store stays authoritative
                self.dropped += 1
                log.warning("redis_mirror_write_failed", stream=stream, err=str(e))
