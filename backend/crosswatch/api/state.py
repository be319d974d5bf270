# crosswatch/api/state.py
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from crosswatch.services.monitoring.metrics import MetricsSnapshot

if TYPE_CHECKING:
    from crosswatch.app.engine import AlertEngine


@dataclass
class AppState:
    engine: "AlertEngine"
    metrics: MetricsSnapshot


_state: Optional[AppState] = None


def set_state(state: Optional[AppState]) -> None:
    global _state
    _state = state


def get_state() -> AppState:
    if _state is None:
        raise RuntimeError("API state not initialized. Start the engine first (or init state).")
    return _state
