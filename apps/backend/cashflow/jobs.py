"""
Command-line entry points for scheduled work (cron, queue workers, backfills).

    python -m cashflow.jobs materialize --as-of 2024-03-15
    python -m cashflow.jobs recompute --account-id 3
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import date, datetime
from typing import Optional, Sequence, Union

from cashflow.core.config import settings
from cashflow.core.database import get_session_factory
from cashflow.exceptions import CashflowError
from cashflow.logging_config import configure_logging, get_logger
from cashflow import models
from cashflow.scheduler import parse_reference, run_materialization
from cashflow.services.balance_service import BalanceSynchronizer


logger = get_logger("jobs")


def parse_as_of(value: str) -> Union[date, datetime]:
    try:
        return parse_reference(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid --as-of value: {value!r}") from exc


def cmd_materialize(args) -> int:
    """Materialize every due occurrence and print the run report as JSON."""
    report = run_materialization(args.as_of)
    summary = {
        "reference": report.reference.isoformat(),
        "templates_processed": report.templates_processed,
        "entries_created": report.entries_created,
        "occurrences_skipped": report.occurrences_skipped,
        "failed_template_ids": report.failed_template_ids,
        "cancelled": report.cancelled,
    }
    print(json.dumps(summary, indent=2))
    return 1 if report.failed_template_ids else 0


def cmd_recompute(args) -> int:
    """Rebuild balance history for one account (or all of them) from the ledger."""
    db = get_session_factory()()
    try:
        q = db.query(models.Account)
        if args.account_id is not None:
            q = q.filter(models.Account.id == args.account_id)
        accounts = q.order_by(models.Account.id).all()
        if not accounts:
            print("No accounts matched", file=sys.stderr)
            return 1
        sync = BalanceSynchronizer(db)
        for account in accounts:
            balance = sync.recompute(account.id, account.user_id)
            print(f"{account.id}\t{account.name}\t{balance} {account.currency}")
        db.commit()
        return 0
    except CashflowError as e:
        db.rollback()
        print(f"Recompute failed: {e}", file=sys.stderr)
        return 1
    finally:
        db.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cashflow-jobs", description="Cashflow scheduled jobs")
    subparsers = parser.add_subparsers(dest="cmd", required=True, help="Available commands")

    materialize_parser = subparsers.add_parser(
        "materialize", help="Create ledger entries for every due recurring occurrence"
    )
    materialize_parser.add_argument(
        "--as-of",
        type=parse_as_of,
        default=None,
        help="Reference date or ISO timestamp (default: now, UTC)",
    )
    materialize_parser.set_defaults(func=cmd_materialize)

    recompute_parser = subparsers.add_parser(
        "recompute", help="Rebuild account balance history from the ledger"
    )
    recompute_parser.add_argument("--account-id", type=int, default=None, help="Only this account")
    recompute_parser.set_defaults(func=cmd_recompute)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    configure_logging(level=settings.LOG_LEVEL, json_lines=settings.LOG_JSON)
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
