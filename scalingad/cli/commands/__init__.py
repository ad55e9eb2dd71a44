"""CLI command implementations."""

from scalingad.cli.commands.jobs import cmd_job
from scalingad.cli.commands.ledger import cmd_ledger
from scalingad.cli.commands.payouts import cmd_payouts

__all__ = ["cmd_job", "cmd_ledger", "cmd_payouts"]
