"""
scalingad - job lifecycle and escrow payments for the business/agency marketplace.

A job moves from creation through funding, work, review and payout (or
refund). User commands and payment processor webhooks both drive it through
one state machine.
"""

from .config import EscrowConfig
from .errors import EscrowError
from .jobs.engine import JobEngine
from .jobs.service import JobService
from .notifications import NotificationOutbox
from .payments.payouts import PayoutDispatcher
from .webhooks.ingestion import WebhookIngestionService

try:
    from importlib.metadata import version

    __version__ = version("scalingad")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    "EscrowConfig",
    "EscrowError",
    "JobEngine",
    "JobService",
    "NotificationOutbox",
    "PayoutDispatcher",
    "WebhookIngestionService",
]
