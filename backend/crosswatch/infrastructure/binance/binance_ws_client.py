"""Binance futures market-stream client (robust) using asyncio + websockets.

Features:
- SUBSCRIBE over the live connection, correlated by request id
- Heartbeat (ping) task
- Reconnection with exponential backoff + jitter
- Resubscribe all streams after reconnect
- Messages handed to one async callback, strictly in arrival order
"""

from __future__ import annotations

import asyncio
import json
import random
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from crosswatch.infrastructure.logging.logging import get_logger

JsonDict = Dict[str, Any]
MessageHandler = Callable[[JsonDict], Awaitable[None]]


class BinanceFeedError(RuntimeError):
    pass


def kline_stream_name(ticker: str, interval: str) -> str:
    return f"{ticker.lower()}@kline_{interval}"


class MessageRouter:
    def __init__(self) -> None:
        self._futures: Dict[int, asyncio.Future[JsonDict]] = {}
        self._lock = asyncio.Lock()

    async def register(self, req_id: int) -> asyncio.Future[JsonDict]:
        async with self._lock:
            fut: asyncio.Future[JsonDict] = asyncio.get_running_loop().create_future()
            self._futures[req_id] = fut
            return fut

    async def resolve(self, req_id: int, msg: JsonDict) -> bool:
        async with self._lock:
            fut = self._futures.pop(req_id, None)
            if fut and not fut.done():
                fut.set_result(msg)
                return True
            return False

    async def reject_all(self, exc: BaseException) -> None:
        async with self._lock:
            for fut in self._futures.values():
                if not fut.done():
                    fut.set_exception(exc)
            self._futures.clear()


class BinanceWSClient:
    def __init__(
        self,
        websocket_url: str,
        on_message: MessageHandler,
        *,
        streams: Iterable[str] = (),
        heartbeat_interval_sec: float = 30.0,
        request_timeout_sec: float = 10.0,
        max_reconnect_backoff_sec: float = 60.0,
    ) -> None:
        self._logger = get_logger("binance_ws")
        self._url = websocket_url
        self._on_message = on_message
        self._heartbeat_interval = heartbeat_interval_sec
        self._request_timeout = request_timeout_sec
        self._max_backoff = max_reconnect_backoff_sec

        self._ws: Optional[ClientConnection] = None
        self._router = MessageRouter()
        self._connected_evt = asyncio.Event()
        self._stop_evt = asyncio.Event()

        self._runner_task: Optional[asyncio.Task[None]] = None
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None

        self._req_id = 0
        self._streams: List[str] = list(dict.fromkeys(streams))
        self.reconnects = 0

    @property
    def is_connected(self) -> bool:
        return self._connected_evt.is_set()

    @property
    def streams(self) -> List[str]:
        return list(self._streams)

    async def start(self) -> None:
        self._stop_evt.clear()
        self._runner_task = asyncio.create_task(self._run_forever())

    async def stop(self) -> None:
        self._stop_evt.set()
        if self._runner_task:
            self._runner_task.cancel()
        await self._disconnect()

    async def _run_forever(self) -> None:
        backoff = 1.0
        while not self._stop_evt.is_set():
            try:
                await self._connect_and_run()
                backoff = 1.0
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error("ws_loop_error", error=str(e))

            if self._stop_evt.is_set():
                break

            self.reconnects += 1
            jitter = random.random() * 0.3 * backoff
            sleep_for = min(self._max_backoff, backoff + jitter)
            self._logger.warning("reconnect_backoff", seconds=round(sleep_for, 2))
            await asyncio.sleep(sleep_for)
            backoff = min(self._max_backoff, backoff * 2)

    async def _connect_and_run(self) -> None:
        self._logger.info("ws_connect", url=self._url, streams=len(self._streams))

        async with connect(
            self._url,
            ping_interval=None,  # heartbeat handled below
            close_timeout=5,
            max_queue=1024,
        ) as ws:
            self._ws = ws
            self._connected_evt.clear()

            # Reader must run before SUBSCRIBE so its ack can be resolved
            self._reader_task = asyncio.create_task(self._reader_loop())

            try:
                if self._streams:
                    await self._send_method("SUBSCRIBE", self._streams)
                self._connected_evt.set()
                self._logger.info("ws_subscribed", streams=len(self._streams))

                self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

                done, pending = await asyncio.wait(
                    [self._reader_task, self._heartbeat_task],
                    return_when=asyncio.FIRST_COMPLETED,
                )

                for t in pending:
                    t.cancel()

                for t in done:
                    exc = t.exception()
                    if exc:
                        raise exc

            except Exception:
                await self._router.reject_all(BinanceFeedError("Disconnected during subscribe"))
                raise
            finally:
                self._connected_evt.clear()

    async def _disconnect(self) -> None:
        self._connected_evt.clear()
        await self._router.reject_all(BinanceFeedError("Disconnected"))

        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

        if self._reader_task:
            self._reader_task.cancel()
            self._reader_task = None

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                self._logger.debug("ws_close_failed", error=str(e))
            self._ws = None

    def _next_req_id(self) -> int:
        self._req_id += 1
        return self._req_id

    async def _send_method(self, method: str, params: List[str]) -> JsonDict:
        if not self._ws:
            raise BinanceFeedError("WebSocket not open")

        req_id = self._next_req_id()
        fut = await self._router.register(req_id)
        await self._ws.send(json.dumps({"method": method, "params": params, "id": req_id}))

        try:
            resp = await asyncio.wait_for(fut, timeout=self._request_timeout)
        except asyncio.TimeoutError as e:
            raise BinanceFeedError(f"{method} timeout id={req_id}") from e

        if resp.get("error"):
            raise BinanceFeedError(f"{method} error: {resp['error']}")
        return resp

    async def _reader_loop(self) -> None:
        assert self._ws is not None
        try:
            async for raw in self._ws:
                try:
                    msg = json.loads(raw)
                except (TypeError, ValueError):
                    self._logger.warning("ws_bad_json", size=len(raw) if raw else 0)
                    continue
                if not isinstance(msg, dict):
                    continue

                req_id = msg.get("id")
                if isinstance(req_id, int) and ("result" in msg or "error" in msg):
                    await self._router.resolve(req_id, msg)
                    continue

                # One message fully handled before the next is read
                await self._on_message(msg)
        except ConnectionClosed:
            return
        except Exception as e:
            self._logger.error("reader_loop_error", error=str(e))
            raise

    async def _heartbeat_loop(self) -> None:
        assert self._ws is not None
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                pong_waiter = await self._ws.ping()
                await asyncio.wait_for(pong_waiter, timeout=5.0)
                self._logger.debug("ws_ping_ok")
            except Exception as e:
                self._logger.warning("ws_ping_failed", error=str(e))
                raise
