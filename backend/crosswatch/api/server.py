# crosswatch/api/server.py
"""Read-only HTTP view of the engine for the dashboard."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from crosswatch.api.state import get_state
from crosswatch.models.market_models import InstrumentSnapshot
from crosswatch.services.alerts.notifications import alert_label

_DEFAULT_ORIGINS = ["http://localhost:5173", "http://localhost:3000"]


def _instrument_dict(s: InstrumentSnapshot, with_history: bool) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "symbol": s.symbol,
        "ticker": s.ticker,
        "price": s.price,
        "ema20": s.ema20,
        "ema100": s.ema100,
        "is_touching": s.is_touching,
    }
    if with_history:
        out["history"] = [
            {"time": c.time, "open": c.open, "high": c.high, "low": c.low, "close": c.close}
            for c in s.history
        ]
    return out


def create_app(cors_origins: Optional[Sequence[str]] = None) -> FastAPI:
    app = FastAPI(title="EMA Cross Watch API", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cors_origins or _DEFAULT_ORIGINS),
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.get("/status")
    async def status():
        s = get_state()
        return s.metrics.to_dict()

    @app.get("/instruments")
    async def instruments(history: bool = False) -> List[Dict[str, Any]]:
        s = get_state()
        return [_instrument_dict(i, history) for i in s.engine.instruments(with_history=history)]

    @app.get("/instruments/{symbol}")
    async def instrument(symbol: str, history: bool = True):
        s = get_state()
        key = symbol.lower()
        for i in s.engine.instruments(with_history=history):
            if i.symbol.lower() == key or i.ticker.lower() == key:
                return _instrument_dict(i, history)
        raise HTTPException(status_code=404, detail=f"unknown instrument: {symbol}")

    @app.get("/alerts")
    async def alerts(limit: int = Query(default=50, ge=1, le=1000)):
        s = get_state()
        return [{**a.to_dict(), "label": alert_label(a.kind)} for a in s.engine.alerts[:limit]]

    return app
