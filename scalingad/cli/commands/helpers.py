"""Shared helpers for CLI commands."""

import json
import os
import re
from typing import Any, Optional

from scalingad.config import EscrowConfig
from scalingad.jobs.engine import JobEngine
from scalingad.jobs.service import JobService
from scalingad.notifications import NotificationOutbox
from scalingad.payments.payouts import PayoutDispatcher
from scalingad.payments.processor import StripeProcessor
from scalingad.storage.sqlite import SQLiteStorage
from scalingad.webhooks.ingestion import WebhookIngestionService


def validate_input(value: str, field_name: str, max_length: int = 200) -> str:
    """Validate and sanitize CLI inputs."""
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string")

    if len(value) > max_length:
        raise ValueError(f"{field_name} too long (max {max_length} characters)")

    # Remove null bytes and control characters
    return re.sub(r"[\x00-\x1f\x7f]", "", value)


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    print(json.dumps(data, indent=2, default=str))


class CliContext:
    """Wires the engine pieces over one SQLite database for a CLI run."""

    def __init__(self, storage: SQLiteStorage, config: Optional[EscrowConfig] = None):
        self.storage = storage
        self.config = config or EscrowConfig.from_env()
        self.outbox = NotificationOutbox()
        self.engine = JobEngine(storage, self.outbox)
        self.service = JobService(self.engine, storage, self.config)

    def dispatcher(self) -> PayoutDispatcher:
        """Payout dispatcher with a live processor client.

        Raises:
            ValueError: If no processor secret key is configured
        """
        secret = os.environ.get("SCALINGAD_STRIPE_SECRET_KEY", "")
        if not secret:
            raise ValueError("SCALINGAD_STRIPE_SECRET_KEY is required for payout operations")
        return PayoutDispatcher(
            self.storage,
            self.storage,
            StripeProcessor(secret),
            config=self.config,
            outbox=self.outbox,
        )

    def ingestion(self, dispatcher: Optional[PayoutDispatcher] = None) -> WebhookIngestionService:
        # Replays come from the ledger, already verified; no secret needed
        return WebhookIngestionService(
            self.engine,
            self.storage,
            webhook_secret=os.environ.get("SCALINGAD_STRIPE_WEBHOOK_SECRET", ""),
            config=self.config,
            dispatcher=dispatcher,
            processor=dispatcher.processor if dispatcher is not None else None,
        )
