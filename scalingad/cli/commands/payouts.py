"""Payout operations."""

from typing import TYPE_CHECKING

from scalingad.cli.commands.helpers import print_json

if TYPE_CHECKING:
    from scalingad.cli.commands.helpers import CliContext


def cmd_payouts(args, ctx: "CliContext"):
    """List payouts or retry the ones that are due."""
    if args.payouts_action == "sweep":
        dispatched = ctx.dispatcher().sweep()
        escalations = ctx.outbox.pending_count
        print(f"Dispatched {dispatched} payout(s).")
        if escalations:
            print(f"{escalations} notification(s) raised; check the logs for escalations.")

    elif args.payouts_action == "list":
        payouts = ctx.storage.list_payouts(job_id=args.job, status=args.status)
        if args.json:
            print_json([p.to_dict() for p in payouts])
            return
        if not payouts:
            print("No payouts found.")
            return
        for p in payouts:
            print(
                f"{p.job_id}  #{p.attempt} {p.status:<8} {p.amount:>12} {p.currency}  "
                f"transfer={p.transfer_id or '-'}"
            )
