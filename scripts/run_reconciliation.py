#!/usr/bin/env python3
"""Run a reconciliation sweep locally or from cron.

Usage:
    python scripts/run_reconciliation.py --run-type nightly
    python scripts/run_reconciliation.py --run-type hourly --tenant-id 3

Creates reconciliation jobs for sent messages that have no recorded reply
and no active job. Exits 0 on success or partial success, 1 on failure.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from replywatch.db.session import SessionLocal
from replywatch.services.reconciliation import run_reconciliation_sweep


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a reconciliation sweep")
    parser.add_argument("--run-type", choices=("hourly", "nightly", "manual"), default="manual")
    parser.add_argument("--tenant-id", type=int, default=None)
    args = parser.parse_args()

    db = SessionLocal()
    try:
        run = run_reconciliation_sweep(db, run_type=args.run_type, tenant_id=args.tenant_id)
        print(
            f"status={run.outcome} "
            f"run_id={run.id} "
            f"messages_checked={run.messages_checked} "
            f"jobs_created={run.jobs_created} "
            f"anomalies_logged={run.anomalies_logged}"
        )
        return 1 if run.outcome == "failed" else 0
    except Exception as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
