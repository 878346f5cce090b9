#!/usr/bin/env python3
"""Run the detection worker pool.

Usage:
    python scripts/run_worker.py
    python scripts/run_worker.py --concurrency 8

Polls for due detection jobs and executes them until SIGINT/SIGTERM.
Exits 0 on clean shutdown, 1 on failure.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from replywatch.db.session import SessionLocal
from replywatch.pipeline.dispatcher import run_worker_pool
from replywatch.providers.registry import build_default_registry

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)


async def _run(concurrency: int | None) -> int:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    return await run_worker_pool(
        build_default_registry(), SessionLocal, stop, concurrency=concurrency
    )


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the reply detection worker pool")
    parser.add_argument("--concurrency", type=int, default=None)
    args = parser.parse_args()
    try:
        executed = asyncio.run(_run(args.concurrency))
        print(f"status=stopped jobs_executed={executed}")
        return 0
    except Exception as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
