"""EMA20/EMA100 cross + touch detection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from crosswatch.models.alert_models import Signal, SignalKind

DEFAULT_TOUCH_BAND = 0.00015  # 0.015% of EMA100


@dataclass(frozen=True)
class Detection:
    is_touching: bool
    crossed: bool
    is_above: bool
    kind: Optional[SignalKind]


def is_touching(ema_fast: float, ema_slow: float, band: float = DEFAULT_TOUCH_BAND) -> bool:
    # ema_slow == 0 collapses the band to exact equality
    return abs(ema_fast - ema_slow) <= ema_slow * band


def detect(
    prev_fast: float,
    prev_slow: float,
    new_fast: float,
    new_slow: float,
    *,
    band: float = DEFAULT_TOUCH_BAND,
) -> Detection:
    """Evaluate one tick. A cross wins over a touch; at most one kind per tick.

    Equality counts as "not above" on both sides of the flip test.
    """
    touching = is_touching(new_fast, new_slow, band)
    was_above = prev_fast > prev_slow
    is_above = new_fast > new_slow
    crossed = was_above != is_above

    kind: Optional[SignalKind] = None
    if crossed:
        kind = "bullish_cross" if is_above else "bearish_cross"
    elif touching:
        kind = "touch"

    return Detection(is_touching=touching, crossed=crossed, is_above=is_above, kind=kind)


class SignalDetector:
    """Turns an EMA transition into a Signal for one instrument."""

    def __init__(self, *, touch_band: float = DEFAULT_TOUCH_BAND) -> None:
        if touch_band < 0:
            raise ValueError("touch_band must be >= 0")
        self.touch_band = float(touch_band)

    def evaluate(
        self,
        symbol: str,
        prev_fast: float,
        prev_slow: float,
        new_fast: float,
        new_slow: float,
        new_close: float,
    ) -> tuple[Detection, Optional[Signal]]:
        d = detect(prev_fast, prev_slow, new_fast, new_slow, band=self.touch_band)
        if d.kind is None:
            return d, None
        return d, Signal(kind=d.kind, symbol=symbol, price=float(new_close))
