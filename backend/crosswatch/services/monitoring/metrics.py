"""In-memory metrics snapshot for the API + periodic log line."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


@dataclass
class MetricsSnapshot:
    connected: bool = False
    interval: str = ""
    instruments: int = 0
    ticks_processed: int = 0
    ticks_ignored: int = 0
    candles_closed: int = 0
    alerts_recorded: int = 0
    alerts_suppressed: int = 0
    last_tick_at: Optional[int] = None    # epoch ms

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
