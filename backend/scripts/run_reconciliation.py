"""Run one reconciliation pass (reminders, expiry warnings, forced expiry, retries).

Usage: python scripts/run_reconciliation.py [--now 2026-01-31T12:00:00]
"""
import argparse
import sys
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.core.logging_setup import logger  # noqa: E402
from app.db.session import init_db  # noqa: E402
from app.models.base import as_naive_utc  # noqa: E402
from app.services.reconciliation import run_reconciliation_once  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--now", type=datetime.fromisoformat, default=None, help="Evaluate the sweeps at this instant")
    args = parser.parse_args()

    init_db()
    report = run_reconciliation_once(as_naive_utc(args.now))
    for name in ("expirations", "expiry_warnings", "reminders", "notification_retries", "artifact_retries"):
        sweep = getattr(report, name)
        logger.info("%s: processed=%d sent=%d errors=%d", name, sweep.processed, sweep.sent, len(sweep.errors))
        for error in sweep.errors:
            logger.warning("  %s: %s", error.request_id, error.error)


if __name__ == "__main__":
    main()
