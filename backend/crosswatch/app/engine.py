"""Alert engine: seed -> live klines -> EMA state -> cross/touch alerts."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx
import uvicorn

from crosswatch.api.server import create_app
from crosswatch.api.state import AppState, set_state
from crosswatch.infrastructure.binance.binance_ws_client import BinanceWSClient, kline_stream_name
from crosswatch.infrastructure.logging.logging import configure_logging, get_logger
from crosswatch.infrastructure.utils.config import CrossWatchConfig, load_config
from crosswatch.infrastructure.utils.timeutils import now_ms
from crosswatch.models.alert_models import AlertEvent
from crosswatch.models.market_models import Candle, InstrumentSnapshot, KlineTick
from crosswatch.services.alerts.alert_sequencer import AlertSequencer
from crosswatch.services.alerts.notifications import build_dispatcher
from crosswatch.services.market.binance_klines import fetch_seed_klines, parse_kline_event
from crosswatch.services.market.instrument_store import InstrumentStore
from crosswatch.services.monitoring.metrics import MetricsSnapshot

log = get_logger("engine")

AlertCallback = Callable[[AlertEvent], None]


class AlertEngine:
    """
    Single entry point for tick processing.

    Each tick runs to completion (EMA step -> detection -> sequencing) before the
    next one. Nothing raises out of seed()/on_tick(): anomalies end as
    "no state change" or "no alert" plus a log line.
    """

    def __init__(
        self,
        store: InstrumentStore,
        sequencer: AlertSequencer,
        *,
        metrics: Optional[MetricsSnapshot] = None,
        on_alert: Optional[AlertCallback] = None,
    ) -> None:
        self.store = store
        self.sequencer = sequencer
        self.metrics = metrics or MetricsSnapshot()
        self._on_alert = on_alert

    def seed(self, symbol: str, candles: Sequence[Candle], ticker: Optional[str] = None) -> bool:
        try:
            state = self.store.initialize(symbol, candles, ticker=ticker)
        except Exception as e:
            log.error("seed_error", symbol=symbol, error=str(e))
            return False

        if state is None:
            got = len(candles) if isinstance(candles, (list, tuple)) else None
            log.warning("seed_insufficient", symbol=symbol, ticker=ticker, candles=got, needed=self.store.min_seed_candles)
            return False

        self.metrics.instruments = len(self.store)
        log.info(
            "seed_loaded",
            symbol=symbol,
            ticker=state.ticker,
            candles=len(state.history),
            price=state.price,
            ema20=state.ema20,
            ema100=state.ema100,
        )
        return True

    def on_tick(self, tick: KlineTick, now: Optional[int] = None) -> Optional[AlertEvent]:
        try:
            outcome = self.store.apply_tick(
                tick.symbol,
                tick.close,
                tick.is_final,
                tick.to_candle() if tick.is_final else None,
            )
            if outcome is None:
                self.metrics.ticks_ignored += 1
                log.debug("tick_ignored", ticker=tick.symbol, close=tick.close)
                return None

            self.metrics.ticks_processed += 1
            self.metrics.last_tick_at = now_ms() if now is None else now
            if outcome.candle_closed:
                self.metrics.candles_closed += 1
                log.debug(
                    "candle_closed",
                    ticker=tick.symbol,
                    time=tick.time,
                    close=tick.close,
                    ema20=outcome.state.ema20,
                    ema100=outcome.state.ema100,
                )

            if outcome.signal is None:
                return None

            alert = self.sequencer.record(outcome.signal, now=now)
            if alert is None:
                self.metrics.alerts_suppressed += 1
                log.debug("alert_suppressed", symbol=outcome.signal.symbol, kind=outcome.signal.kind)
                return None

            self.metrics.alerts_recorded += 1
            log.info(
                "alert_recorded",
                alert_id=alert.id,
                symbol=alert.symbol,
                kind=alert.kind,
                price=alert.price,
                ema20=outcome.state.ema20,
                ema100=outcome.state.ema100,
            )
            self._emit(alert)
            return alert

        except Exception as e:
            log.error("on_tick_error", ticker=getattr(tick, "symbol", "?"), error=str(e))
            return None

    def _emit(self, alert: AlertEvent) -> None:
        if self._on_alert is None:
            return
        try:
            self._on_alert(alert)
        except Exception as e:
            log.warning("alert_callback_failed", alert_id=alert.id, error=str(e))

    async def handle_message(self, msg: Dict[str, Any]) -> None:
        tick = parse_kline_event(msg)
        if tick is None:
            return
        self.on_tick(tick)

    @property
    def alerts(self) -> List[AlertEvent]:
        return list(self.sequencer.alerts)

    def instruments(self, *, with_history: bool = False) -> List[InstrumentSnapshot]:
        return self.store.snapshot(with_history=with_history)


def build_engine(
    config: CrossWatchConfig,
    *,
    on_alert: Optional[AlertCallback] = None,
    clock: Callable[[], int] = now_ms,
) -> AlertEngine:
    ic = config.indicators
    store = InstrumentStore(
        fast_period=ic.fast_period,
        slow_period=ic.slow_period,
        touch_band=ic.touch_band,
        history_limit=ic.history_limit,
    )
    sequencer = AlertSequencer(
        dedup_window_ms=config.alerts.dedup_window_ms,
        capacity=config.alerts.log_capacity,
        clock=clock,
    )
    metrics = MetricsSnapshot(interval=config.binance.interval)
    return AlertEngine(store, sequencer, metrics=metrics, on_alert=on_alert)


async def fetch_all_seeds(config: CrossWatchConfig) -> Dict[str, List[Candle]]:
    """Seed candles per instrument label. Failed instruments are left out."""
    out: Dict[str, List[Candle]] = {}
    bc = config.binance
    async with httpx.AsyncClient(base_url=bc.rest_url, timeout=bc.request_timeout_sec) as http:
        for label, ticker in config.instruments.items():
            try:
                candles = await fetch_seed_klines(http, ticker, interval=bc.interval, limit=bc.seed_limit)
            except (httpx.HTTPError, ValueError) as e:
                log.warning("seed_fetch_failed", symbol=label, ticker=ticker, error=str(e))
                continue
            if candles:
                out[label] = candles
    return out


async def run_engine(config_path: Path | None = None, *, with_api: bool = True) -> None:
    config = load_config(config_path)
    configure_logging(config.log_level, json_logs=config.json_logs)
    log.info("config_loaded", instruments=len(config.instruments), interval=config.binance.interval)

    loop = asyncio.get_running_loop()
    dispatcher = build_dispatcher(
        desktop_enabled=config.notifications.desktop_enabled,
        sound_enabled=config.notifications.sound_enabled,
    )

    # Delivery runs on a later loop iteration, outside the tick path
    engine = build_engine(config, on_alert=lambda alert: loop.call_soon(dispatcher.notify, alert))

    seeds = await fetch_all_seeds(config)
    for label, ticker in config.instruments.items():
        if label in seeds:
            engine.seed(label, seeds[label], ticker=ticker)

    if len(engine.store) == 0:
        log.error("no_instruments_seeded", message="Nothing to watch: every seed fetch failed or was too short")
        return

    metrics = engine.metrics
    set_state(AppState(engine=engine, metrics=metrics))

    streams = [kline_stream_name(t, config.binance.interval) for t in engine.store]
    client = BinanceWSClient(
        websocket_url=config.binance.websocket_url,
        on_message=engine.handle_message,
        streams=streams,
    )

    server: Optional[uvicorn.Server] = None
    server_task: Optional[asyncio.Task[None]] = None
    if with_api and config.api.enabled:
        app = create_app(cors_origins=config.api.cors_origins)
        server = uvicorn.Server(
            uvicorn.Config(app, host=config.api.host, port=config.api.port, log_level="warning")
        )
        server_task = asyncio.create_task(server.serve())
        log.info("api_started", host=config.api.host, port=config.api.port)

    await client.start()

    try:
        log.info(
            "engine_started",
            instruments=sorted(s.symbol for s in engine.instruments()),
            streams=client.streams,
            channels=dispatcher.channels,
        )
        status_every = config.monitoring.status_log_interval_seconds
        elapsed = 0.0
        while True:
            was_connected = metrics.connected
            metrics.connected = client.is_connected
            if was_connected and not metrics.connected:
                log.warning("ws_disconnected", message="Stream lost; client is reconnecting, EMA state resumes as-is")
            if not was_connected and metrics.connected:
                log.info("ws_connected", reconnects=client.reconnects)

            if server_task is not None and server_task.done():
                exc = None if server_task.cancelled() else server_task.exception()
                log.error("api_server_stopped", error=str(exc) if exc else None)
                server_task = None

            if elapsed >= status_every:
                log.info("status", **metrics.to_dict())
                elapsed = 0.0

            try:
                await asyncio.sleep(1.0)
            except asyncio.CancelledError:
                break
            elapsed += 1.0

    finally:
        await client.stop()
        if server is not None:
            server.should_exit = True
        if server_task is not None:
            try:
                await server_task
            except Exception as e:
                log.error("api_server_error", error=str(e))
        log.info("engine_stopped", **metrics.to_dict())
