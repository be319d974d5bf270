"""Alert sequencer: signal -> AlertEvent, head-of-log dedup, bounded newest-first log."""

from __future__ import annotations

import uuid
from collections import deque
from typing import Callable, Deque, Optional, Tuple

from crosswatch.infrastructure.utils.timeutils import now_ms
from crosswatch.models.alert_models import AlertEvent, Signal

DEFAULT_DEDUP_WINDOW_MS = 300_000
DEFAULT_LOG_CAPACITY = 50


class AlertSequencer:
    """
    Records alerts in tick order.

    Dedup only looks at the log head: a signal for symbol S is suppressed when the
    most recent alert is also for S and is younger than the dedup window, whatever
    its kind. An alert for another symbol in between resets that comparison.
    """

    def __init__(
        self,
        *,
        dedup_window_ms: int = DEFAULT_DEDUP_WINDOW_MS,
        capacity: int = DEFAULT_LOG_CAPACITY,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        if dedup_window_ms < 0:
            raise ValueError("dedup_window_ms must be >= 0")
        self.dedup_window_ms = int(dedup_window_ms)
        self.capacity = int(capacity)
        self._clock = clock
        # appendleft keeps index 0 as the newest entry
        self._log: Deque[AlertEvent] = deque(maxlen=self.capacity)
        self.recorded = 0
        self.suppressed = 0

    def __len__(self) -> int:
        return len(self._log)

    @property
    def alerts(self) -> Tuple[AlertEvent, ...]:
        return tuple(self._log)

    @property
    def latest(self) -> Optional[AlertEvent]:
        return self._log[0] if self._log else None

    def is_duplicate(self, symbol: str, now: int) -> bool:
        head = self.latest
        return head is not None and head.symbol == symbol and (now - head.timestamp) < self.dedup_window_ms

    def record(self, signal: Signal, now: Optional[int] = None) -> Optional[AlertEvent]:
        """Returns the new AlertEvent, or None when suppressed."""
        ts = self._clock() if now is None else int(now)
        symbol = signal.symbol.upper()

        if self.is_duplicate(symbol, ts):
            self.suppressed += 1
            return None

        alert = AlertEvent(
            id=uuid.uuid4().hex,
            symbol=symbol,
            timestamp=ts,
            price=float(signal.price),
            kind=signal.kind,
        )
        self._log.appendleft(alert)
        self.recorded += 1
        return alert
