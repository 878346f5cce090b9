#!/usr/bin/env python3
"""Queue history sync jobs from cron.

Usage:
    python scripts/run_history_sync.py
    python scripts/run_history_sync.py --tenant-id 3

Queues one history_sync job per mailbox that has watched messages and a
change stream; the workers run them. Exits 0 on success, 1 on failure.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from replywatch.db.session import SessionLocal
from replywatch.services.history_sync import schedule_history_sync_jobs


def main() -> int:
    parser = argparse.ArgumentParser(description="Queue mailbox history sync jobs")
    parser.add_argument("--tenant-id", type=int, default=None)
    args = parser.parse_args()

    db = SessionLocal()
    try:
        jobs = schedule_history_sync_jobs(db, tenant_id=args.tenant_id)
        print(f"jobs_created={len(jobs)}")
        for job in jobs:
            print(f"  job_id={job.id} provider={job.provider} mailbox={job.mailbox_address}")
        return 0
    except Exception as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
