#!/usr/bin/env python3
"""Write detection metrics snapshots for the last closed period.

Usage:
    python scripts/run_metrics_rollup.py --period hourly
    python scripts/run_metrics_rollup.py --period daily

Idempotent per period. Exits 0 on success, 1 on failure.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from replywatch.db.session import SessionLocal
from replywatch.services.metrics import run_metrics_rollup


def main() -> int:
    parser = argparse.ArgumentParser(description="Write detection metrics snapshots")
    parser.add_argument("--period", choices=("hourly", "daily", "weekly"), default="hourly")
    args = parser.parse_args()

    db = SessionLocal()
    try:
        snapshots = run_metrics_rollup(db, period_type=args.period)
        if not snapshots:
            print("status=failed snapshots=0", file=sys.stderr)
            return 1
        print(
            f"status=completed snapshots={len(snapshots)} "
            f"period_start={snapshots[0].period_start.isoformat()}"
        )
        return 0
    except Exception as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
