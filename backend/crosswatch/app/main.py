"""Entrypoint.

Usage:
  python -m crosswatch.app.main run       # engine + read-only API in one process
  python -m crosswatch.app.main engine    # engine only (alerts go to log/notifications)
  python -m crosswatch.app.main replay    # replay alerts over kline history
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from crosswatch.app.engine import run_engine


def main() -> None:
    parser = argparse.ArgumentParser("crosswatch")
    parser.add_argument("command", choices=["run", "engine", "replay"], help="What to run")
    parser.add_argument("--config", type=Path, default=None, help="Path to config YAML")
    args = parser.parse_args()

    try:
        if args.command == "run":
            asyncio.run(run_engine(args.config, with_api=True))
            return

        if args.command == "engine":
            asyncio.run(run_engine(args.config, with_api=False))
            return

        if args.command == "replay":
            from crosswatch.app.replay import run_replay
            asyncio.run(run_replay(config_path=args.config))
            return
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
