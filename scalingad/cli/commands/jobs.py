"""Job inspection commands."""

import logging
from typing import TYPE_CHECKING

from scalingad.cli.commands.helpers import print_json, validate_input

if TYPE_CHECKING:
    from scalingad.cli.commands.helpers import CliContext

logger = logging.getLogger(__name__)


def cmd_job(args, ctx: "CliContext"):
    """Show or list jobs."""
    if args.job_action == "show":
        job_id = validate_input(args.id, "job id")
        job = ctx.service.get_job(job_id)
        transitions = ctx.service.get_transitions(job_id)
        payments = ctx.service.list_payments(job_id)
        payouts = ctx.service.list_payouts(job_id)

        if args.json:
            data = job.to_dict()
            data["agency_receives"] = str(job.agency_receives)
            data["transitions"] = [t.to_dict() for t in transitions]
            data["payments"] = [p.to_dict() for p in payments]
            data["payouts"] = [p.to_dict() for p in payouts]
            print_json(data)
            return

        print(f"Job {job.id}: {job.title}")
        print(f"  Status:   {job.status}")
        print(f"  Business: {job.business_id}")
        print(f"  Agency:   {job.agency_id}")
        print(
            f"  Amount:   {job.amount} {job.currency} "
            f"(fee {job.platform_fee}, agency receives {job.agency_receives})"
        )
        if transitions:
            print("  History:")
            for t in transitions:
                print(
                    f"    {t.created_at.isoformat()}  {t.from_status or '-'} -> {t.to_status}"
                    f"  ({t.trigger} by {t.actor_role})"
                )
        for p in payments:
            print(f"  Payment {p.payment_intent_id}: {p.status} {p.amount} {p.currency}")
        for p in payouts:
            line = f"  Payout attempt {p.attempt}: {p.status} {p.amount} {p.currency}"
            if p.last_error:
                line += f" [{p.last_error}]"
            print(line)

    elif args.job_action == "list":
        jobs = ctx.service.list_jobs(status=args.status, limit=args.limit)
        if args.json:
            print_json([j.to_dict() for j in jobs])
            return
        if not jobs:
            print("No jobs found.")
            return
        for j in jobs:
            print(f"{j.id}  {j.status:<12} {j.amount:>12} {j.currency}  {j.title}")
