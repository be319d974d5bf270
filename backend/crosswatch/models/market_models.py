"""Market domain models."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Optional, Tuple


@dataclass(frozen=True)
class Candle:
    time: int           # open time, epoch ms
    open: float
    high: float
    low: float
    close: float


@dataclass(frozen=True)
class KlineTick:
    symbol: str         # exchange ticker, e.g. "BTCUSDT"
    close: float
    is_final: bool
    open: float
    high: float
    low: float
    time: int

    def to_candle(self) -> Candle:
        return Candle(time=self.time, open=self.open, high=self.high, low=self.low, close=self.close)


@dataclass(frozen=True)
class InstrumentSnapshot:
    symbol: str
    ticker: str
    price: float
    ema20: Optional[float]
    ema100: Optional[float]
    is_touching: bool
    history: Tuple[Candle, ...] = ()


@dataclass
class InstrumentState:
    symbol: str         # instrument label, e.g. "btcusdt.p"
    ticker: str
    price: float
    ema20: float
    ema100: float
    is_touching: bool = False
    history: Deque[Candle] = field(default_factory=lambda: deque(maxlen=200))

    def snapshot(self, *, with_history: bool = True) -> InstrumentSnapshot:
        return InstrumentSnapshot(
            symbol=self.symbol,
            ticker=self.ticker,
            price=self.price,
            ema20=self.ema20,
            ema100=self.ema100,
            is_touching=self.is_touching,
            history=tuple(self.history) if with_history else (),
        )
