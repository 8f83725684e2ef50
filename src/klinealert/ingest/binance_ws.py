from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Callable, Optional

import structlog
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from klinealert.ingest import parser  # parse_kline_msg(dict) -> Candle | None
from klinealert.utils.time import seconds_since, utc_now_s
from klinealert.utils.types import Candle, FeedKey


@dataclass(slots=True)
class KlineStreamConfig:
    base_url: str = "wss://stream.binance.com:9443"
    # staleness: log a warning if nothing arrives for this long
    expect_heartbeat_s: float = 90.0
    # timeouts
    open_timeout_s: float = 10.0
    ping_interval_s: float = 20.0


def stream_url(base_url: str, symbol: str, timeframe: str) -> str:
    return f"{base_url.rstrip('/')}/ws/{symbol.lower()}@kline_{timeframe}"


class KlineStream:
    """
    One live kline connection for a single (symbol, timeframe).

    Lifecycle:
      - Connect → Stream until closed, errored, or stop() is called
      - No reconnect here: run() returns and the owner (SubscriptionManager)
        reopens the key on its next reconciliation pass
      - Each frame is normalized with parser.parse_kline_msg() and handed to
        `on_candle`; malformed frames are logged and dropped, the connection
        stays up

    Usage:
        s = KlineStream(("BTCUSDT", "1m"), pipeline.on_candle)
        await s.run()
    """

    def __init__(
        self,
        key: FeedKey,
        on_candle: Callable[[Candle], object],
        cfg: Optional[KlineStreamConfig] = None,
    ):
        self.key = key
        self.cfg = cfg or KlineStreamConfig()
        self.on_candle = on_candle
        self.url = stream_url(self.cfg.base_url, key[0], key[1])

        self._log = structlog.get_logger("kline_ws").bind(symbol=key[0], timeframe=key[1])
        self._stop = asyncio.Event()
        self._last_msg_ts: float = 0.0
        self._ws = None

        self.connected: bool = False
        self.frames: int = 0
        self.dropped: int = 0

    # ---------------------------- public API ---------------------------- #

    async def run(self) -> None:
        """Stream until the connection ends. Never raises on feed errors."""
        try:
            await self._connect_and_stream()
        except asyncio.CancelledError:
            self._log.info("kline_ws_cancelled")
            raise
        except ConnectionClosed as e:
            self._log.warning("kline_ws_closed", code=getattr(e.rcvd, "code", None), reason=str(e))
        except Exception as e:
            self._log.warning("kline_ws_error", err=str(e), err_type=type(e).__name__)
        finally:
            self.connected = False
            self._ws = None
        self._log.info("kline_ws_exit")

    async def stop(self) -> None:
        self._stop.set()
        if self._ws and hasattr(self._ws, "close"):
            try:
                await self._ws.close()
            except Exception as e:
                self._log.debug("kline_ws_close_error", err=str(e))

    # --------------------------- core internals ------------------------- #

    async def _connect_and_stream(self) -> None:
        self._log.info("kline_ws_connecting", url=self.url)
        async with ws_connect(
            self.url,
            open_timeout=self.cfg.open_timeout_s,
            ping_interval=self.cfg.ping_interval_s,
        ) as ws:
            self._ws = ws
            self.connected = True
            self._last_msg_ts = utc_now_s()
            self._log.info("kline_ws_connected")
            await self._stream_loop(ws)

    async def _stream_loop(self, ws) -> None:
        while not self._stop.is_set():
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=self._recv_timeout())
            except asyncio.TimeoutError:
                age = utc_now_s() - self._last_msg_ts
                if age > self.cfg.expect_heartbeat_s:
                    self._log.warning("kline_ws_stale_no_messages", age_s=round(age, 3))
                continue

            self._last_msg_ts = utc_now_s()
            self.frames += 1
            self._handle_frame(raw)

        self._log.info("kline_ws_stream_loop_exit")

    def _handle_frame(self, raw) -> None:
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError) as e:
            self.dropped += 1
            self._log.warning("kline_json_error", err=str(e), snippet=str(raw)[:200])
            return

        try:
            candle = parser.parse_kline_msg(msg)
        except ValueError as e:
            self.dropped += 1
            self._log.warning("kline_parse_error", err=str(e), snippet=str(msg)[:200])
            return

        if candle is None:
            # acks / non-kline events
            return

        try:
            self.on_candle(candle)
        except Exception as e:
            self._log.error("kline_handler_error", err=str(e), err_type=type(e).__name__)

    # --------------------------- helpers -------------------------------- #

    def healthy(self) -> bool:
        if not self.connected:
            return False
        return (utc_now_s() - self._last_msg_ts) <= self.cfg.expect_heartbeat_s

    def last_message_age_s(self) -> float:
        return seconds_since(self._last_msg_ts) if self._last_msg_ts else float("inf")

    def _recv_timeout(self) -> float:
        # how long we wait for a frame before checking staleness
        return max(1.0, min(self.cfg.expect_heartbeat_s, 5.0))
