"""
Replay the alert engine over Binance kline history.

Usage:
  python -m crosswatch.app.replay [--symbols btcusdt.p ethusdt.p] [--limit 1000] [--warmup 100]

Fetches REST klines per instrument, seeds each one with the first `warmup`
candles and feeds the rest as closed klines through the same engine used live.
Candle open time is the sequencer clock, so dedup behaves as it would have.
Notifications are log-only.
"""

from __future__ import annotations

import argparse
import asyncio
import heapq
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from crosswatch.app.engine import AlertEngine, build_engine, fetch_all_seeds
from crosswatch.infrastructure.logging.logging import configure_logging, get_logger
from crosswatch.infrastructure.utils.config import load_config
from crosswatch.infrastructure.utils.timeutils import ms_to_datetime
from crosswatch.models.alert_models import AlertEvent
from crosswatch.models.market_models import Candle, KlineTick
from crosswatch.services.alerts.notifications import alert_label, format_price

log = get_logger("replay")

MAX_KLINE_LIMIT = 1500


def _kline_limit(value: str) -> int:
    n = int(value)
    if not 1 <= n <= MAX_KLINE_LIMIT:
        raise argparse.ArgumentTypeError(f"limit must be between 1 and {MAX_KLINE_LIMIT}")
    return n


def closed_only(candles_by_symbol: Dict[str, List[Candle]]) -> Dict[str, List[Candle]]:
    """Drop the newest kline of each series: /klines returns the still-open bar last."""
    return {label: candles[:-1] for label, candles in candles_by_symbol.items()}


def _keyed(ticker: str, candles: List[Candle]) -> Iterator[Tuple[int, str, Candle]]:
    for c in candles:
        yield c.time, ticker, c


def _merged_ticks(live: Dict[str, Tuple[str, List[Candle]]]) -> Iterator[KlineTick]:
    """Closed-kline ticks for every instrument, merged in candle-time order."""
    streams = [_keyed(ticker, candles) for ticker, candles in live.values()]
    for t, ticker, c in heapq.merge(*streams, key=lambda x: (x[0], x[1])):
        yield KlineTick(symbol=ticker, close=c.close, is_final=True, open=c.open, high=c.high, low=c.low, time=t)


def replay_candles(
    engine: AlertEngine,
    candles_by_symbol: Dict[str, List[Candle]],
    instruments: Dict[str, str],
    warmup: int,
) -> List[AlertEvent]:
    """Seed with the first `warmup` candles, replay the rest. Returns alerts oldest-first."""
    live: Dict[str, Tuple[str, List[Candle]]] = {}
    for label, candles in candles_by_symbol.items():
        ticker = instruments.get(label, label.upper())
        if engine.seed(label, candles[:warmup], ticker=ticker):
            live[label] = (ticker, candles[warmup:])

    fired: List[AlertEvent] = []
    for tick in _merged_ticks(live):
        alert = engine.on_tick(tick, now=tick.time)
        if alert is not None:
            fired.append(alert)
    return fired


def _print_report(alerts: List[AlertEvent], engine: AlertEngine) -> None:
    m = engine.metrics
    print("\n" + "=" * 60)
    print("REPLAY - EMA20/EMA100 cross + touch alerts")
    print("=" * 60)
    print(f"  Instruments:     {m.instruments}")
    print(f"  Candles replayed:{m.candles_closed}")
    print(f"  Alerts recorded: {m.alerts_recorded}")
    print(f"  Suppressed:      {m.alerts_suppressed}")
    print("=" * 60)
    for a in alerts[-20:]:
        ts = ms_to_datetime(a.timestamp).strftime("%Y-%m-%d %H:%M")
        print(f"  {ts} {a.symbol:<14} {alert_label(a.kind):<22} {format_price(a.price)}")
    print()


async def run_replay(
    config_path: Optional[Path] = None,
    symbols_override: Optional[List[str]] = None,
    limit: int = 1000,
    warmup: Optional[int] = None,
) -> List[AlertEvent]:
    config = load_config(config_path)
    configure_logging(config.log_level, json_logs=False)

    instruments = dict(config.instruments)
    if symbols_override:
        wanted = {s.lower() for s in symbols_override}
        instruments = {k: v for k, v in instruments.items() if k.lower() in wanted or v.lower() in wanted}

    limit = max(1, min(limit, MAX_KLINE_LIMIT))
    warmup = warmup or config.indicators.slow_period
    cfg = config.model_copy(deep=True)
    cfg.instruments = instruments
    cfg.binance.seed_limit = limit
    log.info("replay_start", instruments=sorted(instruments), limit=limit, warmup=warmup)

    candles_by_symbol = closed_only(await fetch_all_seeds(cfg))
    if not candles_by_symbol:
        log.error("no_data", message="No kline history for any instrument")
        return []

    # Replay clock is candle time, never wall time
    engine = build_engine(cfg, clock=lambda: 0)
    alerts = replay_candles(engine, candles_by_symbol, instruments, warmup)
    _print_report(alerts, engine)
    return alerts


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay EMA cross/touch alerts over Binance kline history")
    parser.add_argument("--config", type=Path, default=None, help="Path to config YAML")
    parser.add_argument("--symbols", nargs="+", default=None, help="Instrument labels or tickers (default: all)")
    parser.add_argument("--limit", type=_kline_limit, default=1000, help=f"Klines per instrument (1-{MAX_KLINE_LIMIT})")
    parser.add_argument("--warmup", type=int, default=None, help="Candles used for seeding (default: slow period)")
    args = parser.parse_args()
    asyncio.run(run_replay(config_path=args.config, symbols_override=args.symbols, limit=args.limit, warmup=args.warmup))


if __name__ == "__main__":
    main()
