from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from klinealert.alerts.dedup import TTLDeduper, candle_key
from klinealert.alerts.evaluator import RuleEvaluator
from klinealert.alerts.notifiers import Notifier
from klinealert.data.series import TimeSeriesBuffer
from klinealert.store.base import EventStore
from klinealert.utils.ids import new_id
from klinealert.utils.time import utc_now
from klinealert.utils.types import AlertEvent, Candle, NotificationLog, TriggeredAlert

log = structlog.get_logger("pipeline")

# long enough to cover a 15m bar and a reconnect
DEDUPE_TTL_S = 1800.0


class AlertPipeline:
    """
    Feed callback → buffer → evaluator → notifier, per finalized candle.

      1) non-final candles are dropped
      2) a final bar already seen for its key (same open time, or a close
         time that does not advance the series) is dropped
      3) candle appended to the TimeSeriesBuffer
      4) own-timeframe rules evaluated; EXTREME_MOVE too when timeframe is 1m
      5) every trigger becomes an AlertEvent in the store and a dispatch task;
         each task records one NotificationLog (SENT / FAILED)

    Dispatches run concurrently and independently; nothing here retries.
    """
    def __init__(
        self,
        evaluator: RuleEvaluator,
        buffers: TimeSeriesBuffer,
        events: EventStore,
        notifier: Notifier,
        buffer_capacity: Optional[int] = None,
        dedupe: Optional[TTLDeduper] = None,
    ):
        self.evaluator = evaluator
        self.buffers = buffers
        self.events = events
        self.notifier = notifier
        self.buffer_capacity = buffer_capacity
        self._dedupe = dedupe or TTLDeduper(ttl_s=DEDUPE_TTL_S, max_size=50_000)
        self._inflight: set[asyncio.Task] = set()

    # ---------- feed side ----------

    def on_candle(self, candle: Candle) -> list[asyncio.Task]:
        """
        Synchronous entry point for the feed. Returns the dispatch tasks it
        scheduled (empty when nothing fired).
        """
        if not candle.is_final:
            return []
        if not self._accept(candle):
            log.debug("candle_duplicate_drop", symbol=candle.symbol, timeframe=candle.timeframe,
                      open_time=candle.open_time)
            return []

        self.buffers.append(candle, self.buffer_capacity)

        try:
            triggered = self.evaluator.evaluate_candle(candle)
            if candle.timeframe == "1m":
                triggered.extend(self.evaluator.evaluate_extreme_move(candle))
        except Exception as e:
            log.error("candle_evaluation_failed", symbol=candle.symbol, timeframe=candle.timeframe, err=str(e))
            return []

        return [self._schedule(alert) for alert in triggered]

    def _accept(self, candle: Candle) -> bool:
        last = self.buffers.last_close_time(candle.symbol, candle.timeframe)
        if last is not None and candle.close_time <= last:
            return False
        return self._dedupe.check_and_mark(candle_key(candle))

    # ---------- dispatch side ----------

    def _schedule(self, alert: TriggeredAlert) -> asyncio.Task:
        event = build_alert_event(alert)
        try:
            self.events.add_alert_event(event)
        except Exception as e:
            log.error("alert_event_store_failed", event_id=event.id, err=str(e))
        task = asyncio.get_running_loop().create_task(
            self._deliver(alert, event), name=f"dispatch-{event.id}"
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _deliver(self, alert: TriggeredAlert, event: AlertEvent) -> NotificationLog:
        status, error = "SENT", None
        try:
            await self.notifier.dispatch(alert)
        except Exception as e:
            status, error = "FAILED", str(e) or type(e).__name__
            log.error("alert_dispatch_failed", rule_id=alert.rule.id, event_id=event.id, err=error)
        else:
            log.info("alert_dispatched", rule_id=alert.rule.id, event_id=event.id)

        entry = NotificationLog(
            id=new_id(),
            alert_event_id=event.id,
            rule_id=alert.rule.id,
            user_id=alert.user.id,
            channel=self.notifier.channel,
            status=status,
            error=error,
            sent_at=utc_now(),
        )
        try:
            self.events.add_notification_log(entry)
        except Exception as e:
            log.error("notification_log_store_failed", event_id=event.id, err=str(e))
        return entry

    def inflight(self) -> int:
        return len(self._inflight)

    async def drain(self, timeout_s: Optional[float] = None) -> None:
        """Wait for in-flight dispatches (used on shutdown)."""
        if not self._inflight:
            return
        pending = list(self._inflight)
        _, still = await asyncio.wait(pending, timeout=timeout_s)
        if still:
            log.warning("dispatch_drain_timeout", pending=len(still))


def build_alert_event(alert: TriggeredAlert) -> AlertEvent:
    return AlertEvent(
        id=new_id(),
        rule_id=alert.rule.id,
        user_id=alert.user.id,
        symbol=alert.rule.symbol,
        type=alert.rule.type,
        triggered_at=utc_now(),
        payload=dict(alert.payload),
    )
