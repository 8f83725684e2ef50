from __future__ import annotations

import asyncio
from typing import Callable, Iterable, Optional

import structlog

from klinealert.alerts.rules import AlertRule, required_feed_keys
from klinealert.ingest.binance_ws import KlineStream, KlineStreamConfig
from klinealert.utils.types import Candle, FeedKey

log = structlog.get_logger("subscriptions")

DEFAULT_RECONCILE_INTERVAL_S = 30.0

# (key, on_candle) -> object with `async run()` and `async stop()`
StreamFactory = Callable[[FeedKey, Callable[[Candle], object]], KlineStream]


class SubscriptionManager:
    """
    Keeps exactly one live connection per required (symbol, timeframe).

    - reconcile(keys) opens whatever is missing; connections for keys that are
      no longer required are left running
    - a connection that ends (close or error) drops out of the active set and
      is reopened by the next reconcile pass; nothing retries inline
    - run_periodic() reconciles on start and every `interval_s` seconds
    """
    def __init__(
        self,
        on_candle: Callable[[Candle], object],
        cfg: Optional[KlineStreamConfig] = None,
        stream_factory: Optional[StreamFactory] = None,
    ):
        self.on_candle = on_candle
        self.cfg = cfg or KlineStreamConfig()
        self._factory = stream_factory or (lambda key, cb: KlineStream(key, cb, self.cfg))
        self._active: dict[FeedKey, tuple[object, asyncio.Task]] = {}
        self._stop = asyncio.Event()
        self.opened_total: int = 0

    # ---------- reconciliation ----------

    @staticmethod
    def required_keys(rules: Iterable[AlertRule]) -> set[FeedKey]:
        return required_feed_keys(rules)

    def reconcile(self, required: Iterable[FeedKey]) -> list[FeedKey]:
        """Open a connection for every required key without one. Returns the keys opened."""
        opened: list[FeedKey] = []
        if self._stop.is_set():
            return opened
        for key in sorted(set(required)):
            if key in self._active:
                continue
            self._open(key)
            opened.append(key)
        if opened:
            log.info("subscriptions_opened", keys=[f"{s}@{tf}" for s, tf in opened], active=len(self._active))
        return opened

    def _open(self, key: FeedKey) -> None:
        stream = self._factory(key, self.on_candle)
        task = asyncio.get_running_loop().create_task(stream.run(), name=f"kline-{key[0]}-{key[1]}")
        self._active[key] = (stream, task)
        self.opened_total += 1
        task.add_done_callback(lambda t, k=key: self._on_stream_done(k, t))

    def _on_stream_done(self, key: FeedKey, task: asyncio.Task) -> None:
        current = self._active.get(key)
        # a newer connection may already own the key
        if current is not None and current[1] is task:
            del self._active[key]
        if task.cancelled():
            return
        err = task.exception()
        if err is not None:
            log.warning("subscription_task_error", symbol=key[0], timeframe=key[1], err=str(err))
        else:
            log.info("subscription_closed", symbol=key[0], timeframe=key[1])

    async def run_periodic(
        self,
        rules_source: Callable[[], Iterable[AlertRule]],
        interval_s: float = DEFAULT_RECONCILE_INTERVAL_S,
    ) -> None:
        """Reconcile now, then every interval_s, until stop()."""
        while not self._stop.is_set():
            try:
                self.reconcile(self.required_keys(rules_source()))
            except Exception as e:
                log.error("reconcile_failed", err=str(e))
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                pass
        log.info("reconcile_loop_exit")

    # ---------- lifecycle / introspection ----------

    async def stop(self) -> None:
        self._stop.set()
        entries = list(self._active.values())
        for stream, _ in entries:
            try:
                await stream.stop()
            except Exception as e:
                log.warning("subscription_stop_error", err=str(e))
        tasks = [t for _, t in entries]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=5.0)
            for t in pending:
                t.cancel()
        self._active.clear()

    def active_keys(self) -> set[FeedKey]:
        return set(self._active)

    def is_active(self, key: FeedKey) -> bool:
        return key in self._active

    def healthy(self) -> bool:
        """True when every active connection reports healthy."""
        for stream, _ in self._active.values():
            check = getattr(stream, "healthy", None)
            if check is not None and not check():
                return False
        return True
