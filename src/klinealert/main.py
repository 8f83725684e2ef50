# src/klinealert/main.py
import asyncio

import structlog
from dotenv import load_dotenv

from klinealert.config import ConfigError, Settings
from klinealert.utils.logging import configure_logging

from klinealert.data.series import TimeSeriesBuffer
from klinealert.store.memory import InMemoryStore

# Engine
from klinealert.alerts.evaluator import RuleEvaluator
from klinealert.alerts.pipeline import AlertPipeline
from klinealert.ingest.binance_ws import KlineStreamConfig
from klinealert.ingest.subscriptions import SubscriptionManager

# Notification channels / optional Redis mirror
from klinealert.alerts.notifiers import ConsoleNotifier
from klinealert.notify.telegram import TelegramConfig, TelegramNotifier
from storage.redis_events import RedisEventMirror

load_dotenv()
log = structlog.get_logger()


def build_notifier(settings: Settings):
    if settings.telegram_bot_token:
        log.info("telegram_enabled")
        return TelegramNotifier(
            TelegramConfig(bot_token=settings.telegram_bot_token, default_link=settings.telegram_default_link)
        )
    log.info("telegram_disabled_missing_env")
    return ConsoleNotifier()


async def main():
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        configure_logging("info")
        log.error("config_invalid", err=str(e))
        return
    configure_logging(settings.log_level)

    # Optional Redis mirror of alert events / notification logs
    mirror = RedisEventMirror(url=settings.redis_url, enabled=settings.redis_mirror)
    store = InMemoryStore(mirror=mirror if settings.redis_mirror else None)
    if settings.rules_file:
        store.load_seed_file(settings.rules_file)
    if settings.default_symbols:
        log.info("default_symbols", symbols=settings.default_symbols)

    buffers = TimeSeriesBuffer(default_capacity=settings.buffer_capacity)
    evaluator = RuleEvaluator(store, buffers)
    evaluator.unreachable_rules(store.list_rules())
    notifier = build_notifier(settings)
    pipeline = AlertPipeline(
        evaluator=evaluator,
        buffers=buffers,
        events=store,
        notifier=notifier,
        buffer_capacity=settings.buffer_capacity,
    )
    subs = SubscriptionManager(
        on_candle=pipeline.on_candle,
        cfg=KlineStreamConfig(base_url=settings.ws_base_url),
    )

    await mirror.start()
    if isinstance(notifier, TelegramNotifier):
        await notifier.start()

    log.info("klinealert_started", rules=len(store.list_rules()), users=len(store.list_users()))
    try:
        await subs.run_periodic(store.list_rules, interval_s=settings.reconcile_interval_s)
    finally:
        # stop taking frames, let in-flight dispatches finish
        await subs.stop()
        await pipeline.drain(timeout_s=10.0)
        if isinstance(notifier, TelegramNotifier):
            await notifier.stop()
        await mirror.stop()
        log.info("klinealert_stopped")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
