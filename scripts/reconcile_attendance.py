"""
Reconcile daily attendance for one date.

Auto-closes sessions left open, rebuilds missing summaries and classifies
days without sessions (HOLIDAY, LEAVE, WEEKEND or ABSENT).

Usage:
    python scripts/reconcile_attendance.py 2026-03-14 [--user-id UUID]
    python scripts/reconcile_attendance.py --sweep
"""
import sys
import os
import argparse
import uuid
from datetime import date

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from timekeeper.db import SessionLocal
from timekeeper.logging import setup_logging
from timekeeper.services.outbox import outbox
from timekeeper.services.reconciliation import reconcile_date, run_hourly_sweep


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile daily attendance")
    parser.add_argument("date", nargs="?", type=date.fromisoformat, help="Target date (YYYY-MM-DD)")
    parser.add_argument("--user-id", type=uuid.UUID, default=None, help="Only reconcile this user")
    parser.add_argument("--sweep", action="store_true", help="Run the hourly sweep once instead")
    args = parser.parse_args(argv)

    if not args.sweep and args.date is None:
        parser.error("a date is required unless --sweep is given")

    setup_logging()
    db = SessionLocal()
    try:
        if args.sweep:
            results = run_hourly_sweep(db)
        else:
            results = reconcile_date(db, args.date, user_id=args.user_id)
    finally:
        db.close()
    outbox.flush()

    for result in results:
        print(f"{result.user_id}  {result.date.isoformat()}  {result.action:<12} {result.status or '-'}  {result.remarks or ''}")
    print(f"{len(results)} user(s) processed")
    return 1 if any(r.action == "failed" for r in results) else 0


if __name__ == "__main__":
    sys.exit(main())
