"""Time helpers (UTC everywhere, epoch milliseconds on the wire)."""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Wall-clock time as epoch milliseconds (Binance and alert timestamps)."""
    return int(utc_now().timestamp() * 1000)


def ms_to_datetime(epoch_ms: int) -> datetime:
    return datetime.fromtimestamp(epoch_ms / 1000.0, tz=timezone.utc)
