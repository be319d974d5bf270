"""EMA calculator: batch seeding over history + single-step incremental update."""

from __future__ import annotations

from typing import List, Optional, Sequence


def _alpha(period: int) -> float:
    if period <= 0:
        raise ValueError("period must be > 0")
    return 2.0 / (period + 1.0)


def step_ema(new_close: float, prev_ema: float, period: int) -> float:
    """One incremental EMA update. Hot path: called once per tick per period."""
    k = _alpha(period)
    return (float(new_close) - prev_ema) * k + prev_ema


def batch_ema(closes: Sequence[float], period: int) -> List[Optional[float]]:
    """EMA over a full series, same length as `closes`.

    The first `period - 1` entries are None. Index `period - 1` holds the SMA of
    the first `period` closes (seed); every later entry applies the recurrence.
    With fewer than `period` closes no seed exists and every entry is None.
    """
    k = _alpha(period)
    out: List[Optional[float]] = [None] * len(closes)
    if len(closes) < period:
        return out

    prev = sum(float(c) for c in closes[:period]) / period
    out[period - 1] = prev
    for i in range(period, len(closes)):
        prev = (float(closes[i]) - prev) * k + prev
        out[i] = prev
    return out


def last_defined(values: Sequence[Optional[float]]) -> Optional[float]:
    for v in reversed(values):
        if v is not None:
            return v
    return None
