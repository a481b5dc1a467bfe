#!/usr/bin/env python3
"""
Run one email pipeline sweep and print its JSON report.

Meant for cron or a platform scheduler when the HTTP trigger endpoints are
not used.

Usage:
    # Reschedule / dead-letter stuck emails and record queue health
    python run_email_sweep.py monitor

    # Recover emails whose immediate trigger never fired
    python run_email_sweep.py backup

    # Send due pending emails (oldest first)
    python run_email_sweep.py process --limit 20
"""

import argparse
import json
import os
import sys

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from mailqueue.core.logging import setup_logging
from mailqueue.db.session import SessionLocal
from mailqueue.services.email_processor import process_due_emails
from mailqueue.services.recovery import NeverAttemptedSweep, StalenessSweep


def run(sweep: str, limit: int = None) -> dict:
    db = SessionLocal()
    try:
        if sweep == "monitor":
            return StalenessSweep(db).run().model_dump(mode="json", by_alias=True)
        if sweep == "backup":
            return NeverAttemptedSweep(db).run().model_dump(mode="json")
        batch = process_due_emails(db, limit=limit)
        return {"success": True, "processed": batch.processed, "succeeded": batch.succeeded, "failed": batch.failed}
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description="Run one email pipeline sweep")
    parser.add_argument("sweep", choices=["monitor", "backup", "process"], help="Sweep to run")
    parser.add_argument("--limit", type=int, default=None, help="Batch size for 'process'")
    args = parser.parse_args()

    setup_logging()
    try:
        report = run(args.sweep, args.limit)
    except Exception as e:
        print(json.dumps({"success": False, "error": str(e)}))
        sys.exit(1)

    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
