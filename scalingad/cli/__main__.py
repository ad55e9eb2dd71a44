"""
scalingad CLI - operator tools for the job escrow engine.

Usage:
    python -m scalingad.cli [--db PATH] job show JOB_ID [--json]
    python -m scalingad.cli [--db PATH] job list [--status S] [--limit N] [--json]
    python -m scalingad.cli [--db PATH] ledger list [--job JOB_ID] [--limit N] [--json]
    python -m scalingad.cli [--db PATH] ledger replay EVENT_ID
    python -m scalingad.cli [--db PATH] payouts list [--job JOB_ID] [--status S] [--json]
    python -m scalingad.cli [--db PATH] payouts sweep
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

from scalingad.cli.commands import cmd_job, cmd_ledger, cmd_payouts
from scalingad.cli.commands.helpers import CliContext
from scalingad.errors import EscrowError
from scalingad.jobs.models import JobStatus
from scalingad.payments.models import PayoutStatus
from scalingad.storage.sqlite import SQLiteStorage

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = os.path.join("~", ".scalingad", "scalingad.db")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scalingad",
        description="Operator tools for the job escrow engine",
    )
    parser.add_argument(
        "--db",
        default=os.environ.get("SCALINGAD_DB_PATH", DEFAULT_DB_PATH),
        help="SQLite database path",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log at INFO level")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # job
    p_job = subparsers.add_parser("job", help="Inspect jobs")
    job_sub = p_job.add_subparsers(dest="job_action", required=True)

    job_show = job_sub.add_parser("show", help="Show one job with its history")
    job_show.add_argument("id", help="Job ID")
    job_show.add_argument("--json", "-j", action="store_true")

    job_list = job_sub.add_parser("list", help="List jobs")
    job_list.add_argument("--status", choices=[s.value for s in JobStatus])
    job_list.add_argument("--limit", type=int, default=50)
    job_list.add_argument("--json", "-j", action="store_true")

    # ledger
    p_ledger = subparsers.add_parser("ledger", help="Webhook event ledger")
    ledger_sub = p_ledger.add_subparsers(dest="ledger_action", required=True)

    ledger_list = ledger_sub.add_parser("list", help="List ledger entries, newest first")
    ledger_list.add_argument("--job", help="Only entries for this job")
    ledger_list.add_argument("--limit", type=int, default=50)
    ledger_list.add_argument("--json", "-j", action="store_true")

    ledger_replay = ledger_sub.add_parser(
        "replay", help="Re-dispatch an event left open or failed"
    )
    ledger_replay.add_argument("event_id", help="Processor event ID")

    # payouts
    p_payouts = subparsers.add_parser("payouts", help="Agency payouts")
    payouts_sub = p_payouts.add_subparsers(dest="payouts_action", required=True)

    payouts_list = payouts_sub.add_parser("list", help="List payout attempts")
    payouts_list.add_argument("--job", help="Only payouts for this job")
    payouts_list.add_argument("--status", choices=[s.value for s in PayoutStatus])
    payouts_list.add_argument("--json", "-j", action="store_true")

    payouts_sub.add_parser("sweep", help="Issue every payout that is due")

    return parser


def main(argv: Optional[List[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger("scalingad").setLevel(logging.INFO)

    try:
        ctx = CliContext(SQLiteStorage(args.db))
    except (ValueError, OSError) as e:
        logger.error(f"Failed to open database: {e}")
        sys.exit(1)

    try:
        if args.command == "job":
            cmd_job(args, ctx)
        elif args.command == "ledger":
            cmd_ledger(args, ctx)
        elif args.command == "payouts":
            cmd_payouts(args, ctx)
    except EscrowError as e:
        logger.error(str(e))
        sys.exit(1)
    except ValueError as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
