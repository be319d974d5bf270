from __future__ import annotations

import math
from typing import List

import pytest

from crosswatch.models.market_models import Candle
from crosswatch.services.market.indicators import batch_ema
from crosswatch.services.market.instrument_store import InstrumentStore

FIVE_MIN_MS = 300_000


def _candles(closes: List[float], start: int = 1_700_000_000_000) -> List[Candle]:
    return [
        Candle(time=start + i * FIVE_MIN_MS, open=c, high=c + 1.0, low=c - 1.0, close=c)
        for i, c in enumerate(closes)
    ]


def _seeded(n: int = 150, price: float = 100.0) -> InstrumentStore:
    store = InstrumentStore()
    assert store.initialize("btcusdt.p", _candles([price] * n), ticker="BTCUSDT") is not None
    return store


def test_initialize_sets_last_close_and_emas() -> None:
    closes = [100.0 + i * 0.1 for i in range(150)]
    store = InstrumentStore()
    state = store.initialize("ethusdt.p", _candles(closes), ticker="ETHUSDT")

    assert state is not None
    assert "ETHUSDT" in store
    assert state.symbol == "ethusdt.p"
    assert state.price == closes[-1]
    assert state.ema20 == pytest.approx(batch_ema(closes, 20)[-1])
    assert state.ema100 == pytest.approx(batch_ema(closes, 100)[-1])
    assert state.is_touching is False
    assert len(state.history) == 150


def test_ticker_defaults_to_upper_label() -> None:
    store = InstrumentStore()
    store.initialize("solusdt", _candles([10.0] * 100))
    assert store.get("SOLUSDT") is not None


def test_insufficient_seed_omits_instrument() -> None:
    store = InstrumentStore()
    assert store.initialize("zecusdt.p", _candles([1.0] * 99), ticker="ZECUSDT") is None
    assert "ZECUSDT" not in store
    assert len(store) == 0


def test_non_list_seed_omits_instrument() -> None:
    store = InstrumentStore()
    assert store.initialize("x", {"code": -1121, "msg": "Invalid symbol."}, ticker="X") is None  # type: ignore[arg-type]
    assert store.initialize("x", None, ticker="X") is None  # type: ignore[arg-type]
    assert len(store) == 0


def test_seed_history_keeps_newest_200() -> None:
    store = InstrumentStore()
    candles = _candles([float(i) for i in range(250)])
    state = store.initialize("btcusdt.p", candles, ticker="BTCUSDT")
    assert state is not None
    assert len(state.history) == 200
    assert state.history[0] == candles[50]
    assert state.history[-1] == candles[-1]


def test_unknown_ticker_is_noop() -> None:
    store = _seeded()
    before = store.get("BTCUSDT").ema20
    assert store.apply_tick("DOGEUSDT", 1.0, True, _candles([1.0])[0]) is None
    assert store.get("BTCUSDT").ema20 == before


@pytest.mark.parametrize("close", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_close_leaves_state_untouched(close: float) -> None:
    store = _seeded()
    st = store.get("BTCUSDT")
    before = (st.price, st.ema20, st.ema100, st.is_touching, len(st.history))

    assert store.apply_tick("BTCUSDT", close, True, _candles([100.0])[0]) is None
    assert (st.price, st.ema20, st.ema100, st.is_touching, len(st.history)) == before

    out = store.apply_tick("BTCUSDT", 100.0, False, None)
    assert out is not None and math.isfinite(out.state.ema20) and math.isfinite(out.state.ema100)


def test_open_candle_updates_price_but_not_history() -> None:
    store = _seeded()
    out = store.apply_tick("BTCUSDT", 101.0, False, None)

    assert out is not None
    assert out.candle_closed is False
    assert out.state.price == 101.0
    assert out.state.ema20 > 100.0
    assert len(out.state.history) == 150


def test_closed_candle_is_appended_and_history_capped() -> None:
    store = _seeded(n=200)
    state = store.get("BTCUSDT")
    first = state.history[0]

    extra = _candles([100.0] * 3, start=2_000_000_000_000)
    for c in extra:
        out = store.apply_tick("BTCUSDT", c.close, True, c)
        assert out.candle_closed is True

    assert len(state.history) == 200
    assert first not in state.history
    assert list(state.history)[-3:] == extra


def test_apply_tick_reports_cross() -> None:
    # Falling series leaves EMA20 below EMA100; a big jump flips it above
    closes = [200.0 - i * 0.5 for i in range(150)]
    store = InstrumentStore()
    store.initialize("btcusdt.p", _candles(closes), ticker="BTCUSDT")
    st = store.get("BTCUSDT")
    assert st.ema20 < st.ema100

    out = store.apply_tick("BTCUSDT", 1000.0, False, None)
    assert out.detection.crossed is True
    assert out.signal is not None
    assert out.signal.kind == "bullish_cross"
    assert out.signal.symbol == "btcusdt.p"
    assert out.signal.price == 1000.0


def test_flat_market_is_touching() -> None:
    store = _seeded(price=50.0)
    out = store.apply_tick("BTCUSDT", 50.0, True, _candles([50.0])[0])
    assert out.state.is_touching is True
    assert out.signal is not None and out.signal.kind == "touch"


def test_snapshot_is_sorted_copy() -> None:
    store = InstrumentStore()
    store.initialize("solusdt.p", _candles([10.0] * 100), ticker="SOLUSDT")
    store.initialize("aaveusdt.p", _candles([20.0] * 100), ticker="AAVEUSDT")

    snaps = store.snapshot(with_history=False)
    assert [s.symbol for s in snaps] == ["aaveusdt.p", "solusdt.p"]
    assert snaps[0].history == ()

    full = store.snapshot()
    store.apply_tick("SOLUSDT", 11.0, True, _candles([11.0], start=9_000_000_000_000)[0])
    assert len(full[1].history) == 100
