"""
Pytest fixtures and test configuration for scalingad tests.
"""

import json
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

import pytest

from scalingad.config import EscrowConfig
from scalingad.jobs.engine import JobEngine
from scalingad.jobs.models import to_minor_units
from scalingad.jobs.service import JobService
from scalingad.jobs.storage import InMemoryJobStorage
from scalingad.notifications import NotificationOutbox
from scalingad.payments.models import AgencyPayoutAccount
from scalingad.payments.payouts import PayoutDispatcher
from scalingad.payments.processor import PaymentIntentResult, RefundResult, TransferResult
from scalingad.payments.storage import InMemoryPaymentStorage
from scalingad.storage.sqlite import SQLiteStorage
from scalingad.webhooks.ingestion import WebhookIngestionService
from scalingad.webhooks.signature import sign_payload

BUSINESS = "biz-acme"
AGENCY = "agency-pixel"
AGENCY_ACCOUNT = "acct_pixel_001"
WEBHOOK_SECRET = "whsec_test_secret"


class FakeProcessor:
    """In-memory stand-in for the Stripe client.

    Honors idempotency keys the way the processor does: repeating a key
    returns the original object. Exceptions queued in ``failures`` are
    raised by the next calls, in order.
    """

    def __init__(self):
        self.intents: Dict[str, PaymentIntentResult] = {}
        self.transfers: Dict[str, TransferResult] = {}
        self.refunds: Dict[str, RefundResult] = {}
        self.calls: list = []
        self.failures: list = []

    def _maybe_fail(self):
        if self.failures:
            raise self.failures.pop(0)

    def create_payment_intent(self, amount, currency, idempotency_key, metadata, transfer_group=None):
        self.calls.append(("payment_intent", idempotency_key, metadata, transfer_group))
        self._maybe_fail()
        if idempotency_key not in self.intents:
            n = len(self.intents) + 1
            self.intents[idempotency_key] = PaymentIntentResult(
                payment_intent_id=f"pi_{n}",
                client_secret=f"pi_{n}_secret_abc",
                status="requires_payment_method",
            )
        return self.intents[idempotency_key]

    def create_transfer(
        self,
        amount,
        currency,
        destination,
        idempotency_key,
        metadata,
        source_transaction=None,
        transfer_group=None,
    ):
        self.calls.append(("transfer", idempotency_key, metadata, source_transaction))
        self._maybe_fail()
        if idempotency_key not in self.transfers:
            n = len(self.transfers) + 1
            self.transfers[idempotency_key] = TransferResult(
                transfer_id=f"tr_{n}",
                amount_minor=to_minor_units(amount, currency),
                destination=destination,
            )
        return self.transfers[idempotency_key]

    def create_refund(self, payment_intent_id, idempotency_key, metadata=None):
        self.calls.append(("refund", idempotency_key, metadata, payment_intent_id))
        self._maybe_fail()
        if idempotency_key not in self.refunds:
            n = len(self.refunds) + 1
            self.refunds[idempotency_key] = RefundResult(refund_id=f"re_{n}", status="pending")
        return self.refunds[idempotency_key]


@pytest.fixture
def config():
    """Engine config with a short payout retry budget."""
    return EscrowConfig(
        platform_fee_rate=Decimal("0.10"),
        payout_max_attempts=3,
        payout_retry_backoff_seconds=60,
    )


@pytest.fixture
def job_storage():
    return InMemoryJobStorage()


@pytest.fixture
def payment_storage():
    return InMemoryPaymentStorage()


@pytest.fixture
def outbox():
    return NotificationOutbox()


@pytest.fixture
def engine(job_storage, outbox):
    return JobEngine(job_storage, outbox=outbox)


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def dispatcher(job_storage, payment_storage, processor, config, outbox):
    return PayoutDispatcher(job_storage, payment_storage, processor, config=config, outbox=outbox)


@pytest.fixture
def service(engine, payment_storage, config, processor, dispatcher):
    return JobService(
        engine, payment_storage, config=config, processor=processor, dispatcher=dispatcher
    )


@pytest.fixture
def ingestion(engine, payment_storage, config, dispatcher, processor):
    return WebhookIngestionService(
        engine,
        payment_storage,
        WEBHOOK_SECRET,
        config=config,
        dispatcher=dispatcher,
        processor=processor,
    )


@pytest.fixture
def linked_agency(payment_storage):
    """The agency has an onboarded, payout-enabled account."""
    account = AgencyPayoutAccount(
        agency_id=AGENCY,
        account_id=AGENCY_ACCOUNT,
        onboarding_complete=True,
        payouts_enabled=True,
    )
    payment_storage.save_payout_account(account)
    return account


@pytest.fixture
def sqlite_storage(tmp_path):
    """SQLite storage in a temporary directory."""
    return SQLiteStorage(tmp_path / "scalingad.db")


@pytest.fixture
def make_job(service):
    """Factory for pending jobs between the default parties."""

    def _make(amount="1000.00", currency="USD", title="Landing page redesign", **kwargs):
        return service.create_job(
            business_id=kwargs.pop("business_id", BUSINESS),
            agency_id=kwargs.pop("agency_id", AGENCY),
            title=title,
            amount=amount,
            currency=currency,
            **kwargs,
        )

    return _make


@pytest.fixture
def stripe_event():
    """Factory for processor event envelopes."""

    def _event(
        event_type: str,
        obj: Dict[str, Any],
        event_id: Optional[str] = None,
        livemode: bool = False,
        account: Optional[str] = None,
    ) -> Dict[str, Any]:
        envelope = {
            "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "livemode": livemode,
            "created": 1700000000,
            "data": {"object": obj},
        }
        if account:
            envelope["account"] = account
        return envelope

    return _event


@pytest.fixture
def deliver(ingestion):
    """Sign an event envelope and push it through ingestion, as the endpoint does."""

    def _deliver(envelope: Dict[str, Any]):
        body = json.dumps(envelope).encode("utf-8")
        return ingestion.ingest(body, sign_payload(WEBHOOK_SECRET, body))

    return _deliver


@pytest.fixture
def payment_succeeded(stripe_event):
    """Factory for ``payment_intent.succeeded`` envelopes for a job."""

    def _make(job, intent_id: str, amount_minor: Optional[int] = None, event_id=None, charge="ch_1"):
        return stripe_event(
            "payment_intent.succeeded",
            {
                "id": intent_id,
                "object": "payment_intent",
                "amount": amount_minor if amount_minor is not None else to_minor_units(job.amount, job.currency),
                "currency": job.currency.lower(),
                "metadata": {"job_id": job.id, "platform": "scalingad"},
                "latest_charge": charge,
            },
            event_id=event_id,
        )

    return _make


@pytest.fixture
def job_in(service, make_job, linked_agency, payment_succeeded, deliver):
    """Factory that walks a fresh job to ``status`` along the normal path."""
    path = ["pending", "unfunded", "funded", "in_progress", "review", "approved"]

    def _job_in(status: str):
        job = make_job()
        steps = path[: path.index(status) + 1]
        for step in steps[1:]:
            if step == "unfunded":
                service.accept(job.id, AGENCY)
            elif step == "funded":
                record = service.initiate_funding(job.id, BUSINESS)
                deliver(payment_succeeded(job, record.payment_intent_id))
            elif step == "in_progress":
                service.start_work(job.id, AGENCY)
            elif step == "review":
                service.submit_for_review(job.id, AGENCY)
            elif step == "approved":
                service.approve(job.id, BUSINESS)
        job = service.get_job(job.id)
        assert job.status == status
        return job

    return _job_in
