"""Binance futures klines: REST seed history + kline stream event parsing."""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional

import httpx

from crosswatch.infrastructure.logging.logging import get_logger
from crosswatch.models.market_models import Candle, KlineTick

log = get_logger("binance_klines")


def _price(v: Any) -> float:
    p = float(v)
    if not math.isfinite(p):
        raise ValueError(f"non-finite price: {v!r}")
    return p


def parse_rest_klines(data: Any) -> Optional[List[Candle]]:
    """
    Convert a /klines response body into closed candles.

    Rows look like [openTime, open, high, low, close, volume, closeTime, ...] with
    prices as strings. Returns None when the body is not a list (Binance returns
    an error object instead, e.g. {"code": -1121, "msg": "Invalid symbol."}).
    Malformed rows and rows with NaN/inf prices are skipped.
    """
    if not isinstance(data, list):
        return None

    candles: List[Candle] = []
    for row in data:
        if not isinstance(row, (list, tuple)) or len(row) < 5:
            continue
        try:
            candles.append(
                Candle(
                    time=int(row[0]),
                    open=_price(row[1]),
                    high=_price(row[2]),
                    low=_price(row[3]),
                    close=_price(row[4]),
                )
            )
        except (TypeError, ValueError):
            continue
    return candles


def parse_kline_event(msg: Dict[str, Any]) -> Optional[KlineTick]:
    """Parse a `<symbol>@kline_<interval>` event. Anything else -> None.

    Accepts both the raw stream payload and the combined-stream wrapper
    ({"stream": ..., "data": {...}}).
    """
    if not isinstance(msg, dict):
        return None
    if "data" in msg and isinstance(msg["data"], dict):
        msg = msg["data"]
    if msg.get("e") != "kline":
        return None

    k = msg.get("k") or {}
    symbol = msg.get("s") or k.get("s")
    if not symbol:
        return None
    try:
        return KlineTick(
            symbol=str(symbol).upper(),
            close=_price(k["c"]),
            is_final=bool(k.get("x", False)),
            open=_price(k["o"]),
            high=_price(k["h"]),
            low=_price(k["l"]),
            time=int(k["t"]),
        )
    except (KeyError, TypeError, ValueError):
        return None


async def fetch_seed_klines(
    client: httpx.AsyncClient,
    ticker: str,
    interval: str = "5m",
    limit: int = 150,
) -> Optional[List[Candle]]:
    """
    GET /klines for one ticker. `client` must carry the REST base_url.

    HTTP/transport errors propagate; the caller decides whether the instrument
    is dropped.
    """
    resp = await client.get("/klines", params={"symbol": ticker, "interval": interval, "limit": limit})
    resp.raise_for_status()
    candles = parse_rest_klines(resp.json())
    if candles is None:
        log.warning("klines_unexpected_body", ticker=ticker, status=resp.status_code)
        return None

    log.info("klines_loaded", ticker=ticker, interval=interval, candles=len(candles))
    return candles
