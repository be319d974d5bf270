"""Per-instrument indicator state, seeded once and updated on every tick."""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence

from crosswatch.models.alert_models import Signal
from crosswatch.models.market_models import Candle, InstrumentSnapshot, InstrumentState
from crosswatch.services.market.indicators import batch_ema, last_defined, step_ema
from crosswatch.services.strategy.ema_cross import DEFAULT_TOUCH_BAND, Detection, SignalDetector


@dataclass(frozen=True)
class TickOutcome:
    state: InstrumentState
    detection: Detection
    signal: Optional[Signal]
    candle_closed: bool


class InstrumentStore:
    """
    Owns one InstrumentState per tracked instrument, keyed by exchange ticker.

    - initialize(): seed EMAs from history (instrument omitted if it can't be seeded)
    - apply_tick(): incremental EMA step + signal detection + closed-candle append
    """

    def __init__(
        self,
        *,
        fast_period: int = 20,
        slow_period: int = 100,
        touch_band: float = DEFAULT_TOUCH_BAND,
        history_limit: int = 200,
    ) -> None:
        if fast_period <= 0 or slow_period <= 0:
            raise ValueError("EMA periods must be > 0")
        if history_limit <= 0:
            raise ValueError("history_limit must be > 0")
        self.fast_period = int(fast_period)
        self.slow_period = int(slow_period)
        self.history_limit = int(history_limit)
        self._detector = SignalDetector(touch_band=touch_band)
        self._states: Dict[str, InstrumentState] = {}

    @property
    def min_seed_candles(self) -> int:
        return max(self.fast_period, self.slow_period)

    def __contains__(self, ticker: object) -> bool:
        return ticker in self._states

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self) -> Iterator[str]:
        return iter(self._states)

    def get(self, ticker: str) -> Optional[InstrumentState]:
        return self._states.get(ticker)

    def initialize(
        self,
        symbol: str,
        seed_candles: Sequence[Candle],
        ticker: Optional[str] = None,
    ) -> Optional[InstrumentState]:
        """Seed an instrument from closed candles. Returns None (and stores nothing) on bad seed data."""
        if not isinstance(seed_candles, (list, tuple, deque)):
            return None
        if len(seed_candles) < self.min_seed_candles:
            return None
        if not all(isinstance(c, Candle) for c in seed_candles):
            return None

        closes = [float(c.close) for c in seed_candles]
        ema_fast = last_defined(batch_ema(closes, self.fast_period))
        ema_slow = last_defined(batch_ema(closes, self.slow_period))
        if ema_fast is None or ema_slow is None:
            return None

        key = ticker or symbol.upper()
        state = InstrumentState(
            symbol=symbol,
            ticker=key,
            price=closes[-1],
            ema20=ema_fast,
            ema100=ema_slow,
            is_touching=False,
            history=deque(seed_candles, maxlen=self.history_limit),
        )
        self._states[key] = state
        return state

    def apply_tick(
        self,
        ticker: str,
        close: float,
        is_final: bool,
        candle: Optional[Candle] = None,
    ) -> Optional[TickOutcome]:
        """Apply one live kline update. Unknown ticker or NaN/inf close -> None, nothing changes."""
        state = self._states.get(ticker)
        if state is None:
            return None

        close = float(close)
        if not math.isfinite(close):
            return None
        prev_fast, prev_slow = state.ema20, state.ema100
        new_fast = step_ema(close, prev_fast, self.fast_period)
        new_slow = step_ema(close, prev_slow, self.slow_period)

        detection, signal = self._detector.evaluate(
            state.symbol, prev_fast, prev_slow, new_fast, new_slow, close
        )

        state.price = close
        state.ema20 = new_fast
        state.ema100 = new_slow
        state.is_touching = detection.is_touching

        closed = bool(is_final) and candle is not None
        if closed:
            state.history.append(candle)  # deque(maxlen) evicts the oldest

        return TickOutcome(state=state, detection=detection, signal=signal, candle_closed=closed)

    def snapshot(self, *, with_history: bool = True) -> List[InstrumentSnapshot]:
        """Read-only copies, sorted by instrument label."""
        return [
            s.snapshot(with_history=with_history)
            for s in sorted(self._states.values(), key=lambda s: s.symbol)
        ]
