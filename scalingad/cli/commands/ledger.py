"""Webhook ledger commands."""

import logging
from typing import TYPE_CHECKING

from scalingad.cli.commands.helpers import print_json, validate_input

if TYPE_CHECKING:
    from scalingad.cli.commands.helpers import CliContext

logger = logging.getLogger(__name__)


def cmd_ledger(args, ctx: "CliContext"):
    """Inspect the event ledger or replay a stuck event."""
    if args.ledger_action == "list":
        job_id = validate_input(args.job, "job id") if args.job else None
        entries = ctx.service.list_ledger(job_id=job_id, limit=args.limit)
        if args.json:
            print_json([e.to_dict() for e in entries])
            return
        if not entries:
            print("Ledger is empty.")
            return
        for e in entries:
            print(
                f"{e.created_at.isoformat()}  {e.event_id}  #{e.attempt} {e.outcome:<8}  "
                f"{e.event_type}  job={e.job_id or '-'}"
            )

    elif args.ledger_action == "replay":
        event_id = validate_input(args.event_id, "event id")
        try:
            dispatcher = ctx.dispatcher()
        except ValueError:
            logger.warning("No processor key configured; replay will not schedule payout retries")
            dispatcher = None
        result = ctx.ingestion(dispatcher).replay(event_id)
        if result.duplicate:
            print(f"Event {event_id} already closed as {result.outcome}; nothing to replay.")
        else:
            print(f"Replayed {event_id} (attempt {result.attempt}): {result.outcome}")
