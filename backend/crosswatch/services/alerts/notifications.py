"""Best-effort alert notifications (log line, desktop popup, sound cue).

Delivery failures are logged and dropped: a broken channel must never touch
engine state or stop the tick path.
"""

from __future__ import annotations

import shutil
import subprocess
import sys
from typing import Iterable, List, Optional, Protocol, TextIO, Tuple

from crosswatch.infrastructure.logging.logging import get_logger
from crosswatch.models.alert_models import AlertEvent

log = get_logger("notifications")

_TITLES = {
    "bullish_cross": "Bullish Cross 🚀",
    "bearish_cross": "Bearish Cross 📉",
    "touch": "EMA Touch 🔔",
}

_LABELS = {
    "bullish_cross": "Bullish Cross (Up)",
    "bearish_cross": "Bearish Cross (Down)",
    "touch": "EMA Touch",
}


def format_price(price: float) -> str:
    # thousands separators, at most 3 decimals, no trailing zeros
    text = f"{price:,.3f}".rstrip("0").rstrip(".")
    return f"${text}"


def alert_label(kind: str) -> str:
    return _LABELS.get(kind, kind)


def format_alert_message(alert: AlertEvent) -> Tuple[str, str]:
    price = format_price(alert.price)
    if alert.kind == "bullish_cross":
        body = f"{alert.symbol} EMA 20 crossed ABOVE EMA 100 (Upwards) at {price}"
    elif alert.kind == "bearish_cross":
        body = f"{alert.symbol} EMA 20 crossed BELOW EMA 100 (Downwards) at {price}"
    else:
        body = f"{alert.symbol} price touched the EMA lines at {price}"
    return _TITLES.get(alert.kind, alert.kind), body


class Notifier(Protocol):
    name: str

    def send(self, alert: AlertEvent, title: str, body: str) -> None: ...


class LogNotifier:
    name = "log"

    def send(self, alert: AlertEvent, title: str, body: str) -> None:
        log.info("alert", title=title, body=body, **alert.to_dict())


class DesktopNotifier:
    """Desktop popup via `notify-send`. Spawned without waiting for it to exit."""

    name = "desktop"

    def __init__(self, *, enabled: bool = False, command: str = "notify-send") -> None:
        self.enabled = bool(enabled)
        self.command = command

    def send(self, alert: AlertEvent, title: str, body: str) -> None:
        if not self.enabled:
            return
        exe = shutil.which(self.command)
        if exe is None:
            raise FileNotFoundError(f"{self.command} not found on PATH")
        subprocess.Popen(
            [exe, "--app-name=crosswatch", title, body],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )


class SoundNotifier:
    """Terminal bell on stderr; stdout carries the log lines."""

    name = "sound"

    def __init__(self, *, enabled: bool = True, stream: Optional[TextIO] = None) -> None:
        self.enabled = bool(enabled)
        self._stream = stream

    def send(self, alert: AlertEvent, title: str, body: str) -> None:
        if not self.enabled:
            return
        stream = self._stream or sys.stderr
        stream.write("\a")
        stream.flush()


class NotificationDispatcher:
    def __init__(self, notifiers: Iterable[Notifier]) -> None:
        self._notifiers: List[Notifier] = list(notifiers)

    @property
    def channels(self) -> List[str]:
        return [n.name for n in self._notifiers]

    def notify(self, alert: AlertEvent) -> None:
        title, body = format_alert_message(alert)
        for n in self._notifiers:
            try:
                n.send(alert, title, body)
            except Exception as e:
                log.warning("notify_failed", channel=n.name, alert_id=alert.id, error=str(e))


def build_dispatcher(*, desktop_enabled: bool = False, sound_enabled: bool = True) -> NotificationDispatcher:
    return NotificationDispatcher(
        [
            LogNotifier(),
            DesktopNotifier(enabled=desktop_enabled),
            SoundNotifier(enabled=sound_enabled),
        ]
    )
