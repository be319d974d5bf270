from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

SignalKind = Literal["bullish_cross", "bearish_cross", "touch"]


@dataclass(frozen=True)
class Signal:
    kind: SignalKind
    symbol: str         # instrument label
    price: float        # tick close


@dataclass(frozen=True)
class AlertEvent:
    id: str
    symbol: str
    timestamp: int      # epoch ms
    price: float
    kind: SignalKind

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "timestamp": self.timestamp,
            "price": self.price,
            "kind": self.kind,
        }
