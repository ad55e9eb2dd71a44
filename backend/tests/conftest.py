"""Pytest configuration and fixtures."""

import json
import os
import secrets
import uuid

import pytest

# Generate a unique test secret for this test run to prevent token forgery
_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"
TEST_WEBHOOK_SECRET = "whsec_backend_test"

# Unit tests run against in-memory storage with no background worker
os.environ.setdefault("JWT_SECRET_KEY", _TEST_JWT_SECRET)
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("WORKER_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)

from app.database import EscrowServices, get_services, reset_services  # noqa: E402
from app.main import app  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from scalingad.jobs.engine import JobEngine  # noqa: E402
from scalingad.jobs.models import to_minor_units  # noqa: E402
from scalingad.jobs.service import JobService  # noqa: E402
from scalingad.jobs.storage import InMemoryJobStorage  # noqa: E402
from scalingad.notifications import NotificationOutbox  # noqa: E402
from scalingad.payments.models import AgencyPayoutAccount  # noqa: E402
from scalingad.payments.payouts import PayoutDispatcher  # noqa: E402
from scalingad.payments.processor import (  # noqa: E402
    PaymentIntentResult,
    RefundResult,
    TransferResult,
)
from scalingad.payments.storage import InMemoryPaymentStorage  # noqa: E402
from scalingad.webhooks.ingestion import WebhookIngestionService  # noqa: E402
from scalingad.webhooks.signature import sign_payload  # noqa: E402


class StubProcessor:
    """Processor client returning sequential ids, one object per idempotency key."""

    def __init__(self):
        self.objects = {}

    def _once(self, key, build):
        if key not in self.objects:
            self.objects[key] = build(len(self.objects) + 1)
        return self.objects[key]

    def create_payment_intent(self, amount, currency, idempotency_key, metadata, transfer_group=None):
        return self._once(
            idempotency_key,
            lambda n: PaymentIntentResult(f"pi_{n}", f"pi_{n}_secret", "requires_payment_method"),
        )

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
        return self._once(
            idempotency_key,
            lambda n: TransferResult(f"tr_{n}", to_minor_units(amount, currency), destination),
        )

    def create_refund(self, payment_intent_id, idempotency_key, metadata=None):
        return self._once(idempotency_key, lambda n: RefundResult(f"re_{n}", "pending"))


@pytest.fixture(autouse=True)
def _fresh_services():
    """Never share the cached service container between tests."""
    reset_services()
    yield
    reset_services()
    app.dependency_overrides.clear()


@pytest.fixture
def services():
    """In-memory engine with a stub processor, injected into the app."""
    from app.config import get_settings

    config = get_settings().escrow_config()
    job_storage = InMemoryJobStorage()
    payment_storage = InMemoryPaymentStorage()
    outbox = NotificationOutbox()
    engine = JobEngine(job_storage, outbox=outbox)
    processor = StubProcessor()
    dispatcher = PayoutDispatcher(
        job_storage, payment_storage, processor, config=config, outbox=outbox
    )
    container = EscrowServices(
        engine=engine,
        jobs=JobService(
            engine, payment_storage, config=config, processor=processor, dispatcher=dispatcher
        ),
        ingestion=WebhookIngestionService(
            engine,
            payment_storage,
            TEST_WEBHOOK_SECRET,
            config=config,
            dispatcher=dispatcher,
            processor=processor,
        ),
        outbox=outbox,
        dispatcher=dispatcher,
    )
    app.dependency_overrides[get_services] = lambda: container
    return container


@pytest.fixture
def client():
    """Create a test client."""
    return TestClient(app)


@pytest.fixture
def token_headers():
    """Factory for bearer headers for a user acting in a role."""
    from app.auth import create_access_token
    from app.config import get_settings

    def _headers(user_id, role):
        token = create_access_token(user_id, role, get_settings())
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def business_headers(token_headers):
    return token_headers("biz-acme", "business")


@pytest.fixture
def agency_headers(token_headers):
    return token_headers("agency-pixel", "agency")


@pytest.fixture
def admin_headers(token_headers):
    return token_headers("ops-admin", "admin")


@pytest.fixture
def onboarded_agency(services):
    """The default agency can receive payouts."""
    account = AgencyPayoutAccount(
        agency_id="agency-pixel",
        account_id="acct_pixel_001",
        onboarding_complete=True,
        payouts_enabled=True,
    )
    services.jobs.payments.save_payout_account(account)
    return account


@pytest.fixture
def post_event(client):
    """Sign a processor event and post it to the webhook endpoint."""

    def _post(event_type, obj, event_id=None, secret=TEST_WEBHOOK_SECRET, account=None):
        envelope = {
            "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "livemode": False,
            "created": 1700000000,
            "data": {"object": obj},
        }
        if account:
            envelope["account"] = account
        body = json.dumps(envelope).encode("utf-8")
        return client.post(
            "/webhooks/stripe",
            content=body,
            headers={"Stripe-Signature": sign_payload(secret, body)},
        )

    return _post
