"""End-to-end tick path: seed -> ticks -> alerts."""

from __future__ import annotations

import argparse
import asyncio
import math
from pathlib import Path
from typing import Any, Dict, List

import pytest
import uvicorn

import crosswatch.app.engine as engine_mod
from crosswatch.api.state import set_state
from crosswatch.app.engine import AlertEngine, build_engine, run_engine
from crosswatch.app.replay import _kline_limit, closed_only, replay_candles
from crosswatch.infrastructure.utils.config import CrossWatchConfig
from crosswatch.models.alert_models import AlertEvent
from crosswatch.models.market_models import Candle, KlineTick

T0 = 1_700_000_000_000
STEP = 300_000


def _candles(closes: List[float], start: int = T0, step: int = STEP) -> List[Candle]:
    return [Candle(time=start + i * step, open=c, high=c, low=c, close=c) for i, c in enumerate(closes)]


def _falling(n: int = 150) -> List[float]:
    return [200.0 - i * 0.5 for i in range(n)]


def _tick(ticker: str, close: float, final: bool = True, t: int = T0) -> KlineTick:
    return KlineTick(symbol=ticker, close=close, is_final=final, open=close, high=close, low=close, time=t)


def _engine(**kw) -> AlertEngine:
    return build_engine(CrossWatchConfig.model_validate({}), **kw)


def test_seed_and_cross_records_alert() -> None:
    got: List[AlertEvent] = []
    eng = _engine(on_alert=got.append)
    assert eng.seed("btcusdt.p", _candles(_falling()), ticker="BTCUSDT") is True

    alert = eng.on_tick(_tick("BTCUSDT", 1000.0, final=False), now=T0)
    assert alert is not None
    assert alert.kind == "bullish_cross"
    assert alert.symbol == "BTCUSDT.P"
    assert alert.price == 1000.0
    assert got == [alert]
    assert eng.alerts == [alert]
    assert eng.metrics.alerts_recorded == 1
    assert eng.metrics.ticks_processed == 1


def test_follow_up_signal_within_window_is_suppressed() -> None:
    eng = _engine()
    eng.seed("btcusdt.p", _candles([100.0] * 150), ticker="BTCUSDT")
    # flat market: EMAs sit on top of each other, every tick is a touch
    assert eng.on_tick(_tick("BTCUSDT", 100.0, final=False), now=T0).kind == "touch"
    assert eng.on_tick(_tick("BTCUSDT", 100.0, final=False), now=T0 + 60_000) is None
    assert eng.store.get("BTCUSDT").is_touching is True
    assert eng.metrics.alerts_suppressed == 1
    assert len(eng.alerts) == 1


def test_insufficient_seed_is_skipped_and_others_still_work() -> None:
    eng = _engine()
    assert eng.seed("zecusdt.p", _candles([1.0] * 50), ticker="ZECUSDT") is False
    assert eng.seed("btcusdt.p", _candles(_falling()), ticker="BTCUSDT") is True
    assert eng.metrics.instruments == 1

    assert eng.on_tick(_tick("ZECUSDT", 5.0)) is None
    assert eng.metrics.ticks_ignored == 1
    assert eng.on_tick(_tick("BTCUSDT", 1000.0), now=T0) is not None


def test_callback_failure_never_leaks_out() -> None:
    def broken(alert: AlertEvent) -> None:
        raise RuntimeError("speaker unplugged")

    eng = _engine(on_alert=broken)
    eng.seed("btcusdt.p", _candles(_falling()), ticker="BTCUSDT")
    alert = eng.on_tick(_tick("BTCUSDT", 1000.0), now=T0)

    assert alert is not None
    assert eng.store.get("BTCUSDT").price == 1000.0


def test_handle_message_parses_kline_stream_events() -> None:
    eng = _engine()
    eng.seed("btcusdt.p", _candles(_falling()), ticker="BTCUSDT")
    msg = {
        "e": "kline",
        "s": "BTCUSDT",
        "k": {"t": T0 + 150 * STEP, "o": "125", "h": "130", "l": "120", "c": "126.5", "x": True},
    }

    asyncio.run(eng.handle_message(msg))
    asyncio.run(eng.handle_message({"result": None, "id": 1}))

    st = eng.store.get("BTCUSDT")
    assert st.price == 126.5
    assert len(st.history) == 151
    assert st.history[-1] == Candle(time=T0 + 150 * STEP, open=125.0, high=130.0, low=120.0, close=126.5)
    assert eng.metrics.candles_closed == 1


def test_replay_uses_candle_time_for_dedup() -> None:
    eng = _engine()
    minute = 60_000
    candles = _candles([100.0] * 106, step=minute)
    alerts = replay_candles(eng, {"btcusdt.p": candles}, {"btcusdt.p": "BTCUSDT"}, warmup=100)

    # touches every minute; only one per 5 minutes of candle time gets through
    assert [a.timestamp for a in alerts] == [T0 + 100 * minute, T0 + 105 * minute]
    assert eng.metrics.alerts_suppressed == 4
    assert eng.metrics.candles_closed == 6


def test_nan_close_on_the_stream_is_ignored() -> None:
    eng = _engine()
    eng.seed("btcusdt.p", _candles([100.0] * 150), ticker="BTCUSDT")
    st = eng.store.get("BTCUSDT")
    before = (st.price, st.ema20, st.ema100)

    k = {"t": T0 + 150 * STEP, "o": "100", "h": "100", "l": "100", "c": "NaN", "x": True}
    asyncio.run(eng.handle_message({"e": "kline", "s": "BTCUSDT", "k": k}))
    assert eng.on_tick(_tick("BTCUSDT", float("nan")), now=T0) is None

    assert (st.price, st.ema20, st.ema100) == before
    assert math.isfinite(st.ema20) and math.isfinite(st.ema100)
    assert eng.metrics.ticks_processed == 0
    assert eng.metrics.ticks_ignored == 1

    # detection still works afterwards
    assert eng.on_tick(_tick("BTCUSDT", 100.0), now=T0).kind == "touch"


def test_replay_drops_the_open_kline() -> None:
    candles = _candles([1.0, 2.0, 3.0])
    assert closed_only({"btcusdt.p": candles, "ethusdt.p": []}) == {"btcusdt.p": candles[:2], "ethusdt.p": []}


def test_replay_limit_is_bounded() -> None:
    assert _kline_limit("1500") == 1500
    for bad in ("0", "1501"):
        with pytest.raises(argparse.ArgumentTypeError):
            _kline_limit(bad)


class _FakeClient:
    def __init__(self, websocket_url: str, on_message: Any, *, streams: List[str]) -> None:
        self.streams = list(streams)
        self.is_connected = True
        self.reconnects = 0
        self.stopped = False

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        self.stopped = True


class _FakeServer:
    instances: List["_FakeServer"] = []

    def __init__(self, config: uvicorn.Config) -> None:
        self.should_exit = False
        self.finished = False
        _FakeServer.instances.append(self)

    async def serve(self) -> None:
        while not self.should_exit:
            await asyncio.sleep(0.01)
        self.finished = True


def test_run_engine_waits_for_api_server_on_shutdown(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    cfg = tmp_path / "c.yaml"
    cfg.write_text(
        "json_logs: false\ninstruments:\n  btcusdt.p: BTCUSDT\nnotifications:\n  sound_enabled: false\n",
        encoding="utf-8",
    )

    async def fake_seeds(config) -> Dict[str, List[Candle]]:
        return {"btcusdt.p": _candles([100.0] * 150)}

    monkeypatch.setattr(engine_mod, "fetch_all_seeds", fake_seeds)
    monkeypatch.setattr(engine_mod, "BinanceWSClient", _FakeClient)
    monkeypatch.setattr(uvicorn, "Server", _FakeServer)
    _FakeServer.instances.clear()

    async def go() -> None:
        task = asyncio.create_task(run_engine(cfg, with_api=True))
        await asyncio.sleep(0.2)
        task.cancel()
        await task

    try:
        asyncio.run(go())
    finally:
        set_state(None)

    assert len(_FakeServer.instances) == 1
    assert _FakeServer.instances[0].should_exit is True
    assert _FakeServer.instances[0].finished is True
