"""Tests for webhook ingestion: ledger dedup, handlers and replay."""

import json
from decimal import Decimal

import pytest

from scalingad.errors import PaymentProcessorError, SignatureInvalidError, ValidationError
from scalingad.payments.models import LedgerEntry
from scalingad.webhooks.ingestion import WebhookIngestionService
from scalingad.webhooks.signature import sign_payload

BUSINESS = "biz-acme"
AGENCY = "agency-pixel"
AGENCY_ACCOUNT = "acct_pixel_001"
SECRET = "whsec_test_secret"


def trail(payment_storage, event_id):
    return [(e.attempt, e.outcome) for e in payment_storage.get_ledger_entries(event_id)]


@pytest.fixture
def unfunded_job(service, make_job, linked_agency):
    """An accepted job with a pending funding attempt (pi_1)."""
    job = make_job()
    service.accept(job.id, AGENCY)
    service.initiate_funding(job.id, BUSINESS)
    return service.get_job(job.id)


@pytest.fixture
def transfer_event(stripe_event):
    def _make(event_type, transfer_id, job_id, amount_minor=90000, event_id=None, payout_id=None):
        metadata = {"job_id": job_id}
        if payout_id:
            metadata["payout_id"] = payout_id
        return stripe_event(
            event_type,
            {
                "id": transfer_id,
                "object": "transfer",
                "amount": amount_minor,
                "currency": "usd",
                "metadata": metadata,
            },
            event_id=event_id,
        )

    return _make


@pytest.fixture
def charge_refunded(stripe_event):
    def _make(job_id, payment_intent_id="pi_1", refunded=True, amount_refunded=100000, event_id=None):
        return stripe_event(
            "charge.refunded",
            {
                "id": "ch_1",
                "object": "charge",
                "payment_intent": payment_intent_id,
                "amount": 100000,
                "amount_refunded": amount_refunded,
                "refunded": refunded,
                "metadata": {"job_id": job_id},
            },
            event_id=event_id,
        )

    return _make


class TestFundingEvents:
    """Tests for payment intent events."""

    def test_payment_succeeded_funds_job(
        self, unfunded_job, deliver, payment_succeeded, service, payment_storage
    ):
        """Test a matching payment moves the job to funded."""
        result = deliver(payment_succeeded(unfunded_job, "pi_1", event_id="evt_pay"))

        assert result.outcome == "applied"
        assert not result.duplicate
        assert result.job_id == unfunded_job.id
        assert service.get_job(unfunded_job.id).status == "funded"
        record = payment_storage.get_payment_by_intent("pi_1")
        assert record.status == "succeeded"
        assert record.charge_id == "ch_1"
        assert trail(payment_storage, "evt_pay") == [(1, "received"), (1, "applied")]

    def test_fee_unchanged_by_transitions(self, unfunded_job, deliver, payment_succeeded, service):
        """Test the fee set at creation survives funding."""
        deliver(payment_succeeded(unfunded_job, "pi_1"))
        job = service.get_job(unfunded_job.id)
        assert job.platform_fee == Decimal("100.00")
        assert job.agency_receives == Decimal("900.00")

    def test_received_row_keeps_payload(self, unfunded_job, deliver, payment_succeeded, payment_storage):
        """Test the raw body is stored with the received row for replay."""
        envelope = payment_succeeded(unfunded_job, "pi_1", event_id="evt_pay")
        deliver(envelope)
        received = payment_storage.get_ledger_entries("evt_pay")[0]
        assert json.loads(received.payload)["id"] == "evt_pay"
        assert received.object_id == "pi_1"

    def test_amount_mismatch_rejected(
        self, unfunded_job, deliver, payment_succeeded, service, payment_storage
    ):
        """Test a payment for the wrong amount does not fund the job."""
        result = deliver(payment_succeeded(unfunded_job, "pi_1", amount_minor=50000))

        assert result.outcome == "rejected"
        assert result.detail == "amount mismatch"
        assert service.get_job(unfunded_job.id).status == "unfunded"
        assert payment_storage.get_payment_by_intent("pi_1").status == "pending"

    def test_payment_failed(self, unfunded_job, deliver, stripe_event, service, payment_storage):
        """Test a failed payment leaves the job unfunded with a failed record."""
        result = deliver(
            stripe_event(
                "payment_intent.payment_failed",
                {
                    "id": "pi_1",
                    "amount": 100000,
                    "currency": "usd",
                    "metadata": {"job_id": unfunded_job.id},
                    "last_payment_error": {"message": "Your card was declined."},
                },
            )
        )

        assert result.outcome == "applied"
        assert result.detail == "Your card was declined."
        assert service.get_job(unfunded_job.id).status == "unfunded"
        assert payment_storage.get_payment_by_intent("pi_1").status == "failed"

    def test_failure_after_success_rejected(
        self, unfunded_job, deliver, payment_succeeded, stripe_event, payment_storage
    ):
        """Test a late failure cannot undo a succeeded payment."""
        deliver(payment_succeeded(unfunded_job, "pi_1"))
        result = deliver(
            stripe_event(
                "payment_intent.payment_failed",
                {"id": "pi_1", "amount": 100000, "currency": "usd"},
            )
        )
        assert result.outcome == "rejected"
        assert payment_storage.get_payment_by_intent("pi_1").status == "succeeded"

    def test_double_funding_rejected(
        self, unfunded_job, deliver, payment_succeeded, stripe_event, service, payment_storage
    ):
        """Test a second successful intent for one job is refused."""
        # First attempt fails, the business retries with a new intent which succeeds
        deliver(
            stripe_event(
                "payment_intent.payment_failed",
                {"id": "pi_1", "amount": 100000, "currency": "usd"},
            )
        )
        second = service.initiate_funding(unfunded_job.id, BUSINESS)
        assert second.payment_intent_id == "pi_2"
        deliver(payment_succeeded(unfunded_job, "pi_2"))

        # The processor later reports the first intent as succeeded too
        result = deliver(payment_succeeded(unfunded_job, "pi_1"))

        assert result.outcome == "rejected"
        assert result.detail == "job already funded"
        succeeded = [p for p in service.list_payments(unfunded_job.id) if p.status == "succeeded"]
        assert [p.payment_intent_id for p in succeeded] == ["pi_2"]

    def test_payment_for_cancelled_job_refunded(
        self, unfunded_job, deliver, payment_succeeded, charge_refunded, service, processor,
        payment_storage,
    ):
        """Test money captured after cancellation is sent straight back."""
        service.cancel(unfunded_job.id, BUSINESS)

        result = deliver(payment_succeeded(unfunded_job, "pi_1", event_id="evt_late"))

        assert result.outcome == "applied"
        assert result.detail == "job cancelled; refund requested"
        assert service.get_job(unfunded_job.id).status == "cancelled"
        refunds = [c for c in processor.calls if c[0] == "refund"]
        assert len(refunds) == 1
        _, key, metadata, intent = refunds[0]
        assert key == f"refund:{unfunded_job.id}"
        assert metadata["job_id"] == unfunded_job.id
        assert intent == "pi_1"

        # A second success report for the same intent refunds with the same key
        deliver(payment_succeeded(unfunded_job, "pi_1"))
        assert len(processor.refunds) == 1

        confirmed = deliver(charge_refunded(unfunded_job.id))
        assert confirmed.outcome == "applied"
        assert payment_storage.get_payment_by_intent("pi_1").status == "refunded"
        assert service.get_job(unfunded_job.id).status == "cancelled"

    def test_payment_for_cancelled_job_refund_retried(
        self, unfunded_job, deliver, payment_succeeded, service, processor, payment_storage
    ):
        """Test a processor outage while refunding leaves the event open for redelivery."""
        service.cancel(unfunded_job.id, BUSINESS)
        processor.failures.append(PaymentProcessorError("timeout", retryable=True))
        envelope = payment_succeeded(unfunded_job, "pi_1", event_id="evt_late")

        with pytest.raises(PaymentProcessorError):
            deliver(envelope)
        result = deliver(envelope)

        assert result.outcome == "applied"
        assert result.attempt == 2
        assert len(processor.refunds) == 1

    def test_payment_for_cancelled_job_without_processor(
        self, unfunded_job, engine, payment_storage, config, payment_succeeded, service
    ):
        """Test the event is rejected for manual follow-up when refunds can't be issued."""
        service.cancel(unfunded_job.id, BUSINESS)
        ingestion = WebhookIngestionService(engine, payment_storage, SECRET, config=config)
        body = json.dumps(payment_succeeded(unfunded_job, "pi_1")).encode("utf-8")

        result = ingestion.ingest(body, sign_payload(SECRET, body))

        assert result.outcome == "rejected"
        assert result.detail == "job cancelled; manual refund required"

    def test_refund_before_success(
        self, unfunded_job, deliver, payment_succeeded, charge_refunded, service, processor,
        payment_storage,
    ):
        """Test a refund that overtakes the success keeps the job unfunded."""
        refund = deliver(charge_refunded(unfunded_job.id))
        assert refund.outcome == "rejected"
        assert payment_storage.get_payment_by_intent("pi_1").status == "refunded"

        result = deliver(payment_succeeded(unfunded_job, "pi_1"))

        assert result.outcome == "rejected"
        assert result.detail == "payment already refunded"
        assert payment_storage.get_payment_by_intent("pi_1").status == "refunded"
        assert service.get_job(unfunded_job.id).status == "unfunded"

        # The business can fund again, under a fresh idempotency key
        retry = service.initiate_funding(unfunded_job.id, BUSINESS)
        assert retry.payment_intent_id == "pi_2"
        assert processor.calls[-1][1] == f"fund:{unfunded_job.id}:1"

    def test_untracked_intent_with_job_metadata(
        self, service, make_job, deliver, payment_succeeded, payment_storage
    ):
        """Test a payment started outside initiate_funding is still recorded."""
        job = make_job()
        service.accept(job.id, AGENCY)

        result = deliver(payment_succeeded(job, "pi_external"))

        assert result.outcome == "applied"
        assert payment_storage.get_payment_by_intent("pi_external").status == "succeeded"
        assert service.get_job(job.id).status == "funded"

    def test_unknown_job_ignored(self, deliver, stripe_event, payment_storage):
        """Test events for jobs we don't know are acknowledged and closed."""
        result = deliver(
            stripe_event(
                "payment_intent.succeeded",
                {"id": "pi_9", "amount": 100, "currency": "usd", "metadata": {"job_id": "ghost"}},
                event_id="evt_ghost",
            )
        )
        assert result.outcome == "ignored"
        assert result.detail == "job not found"
        assert trail(payment_storage, "evt_ghost") == [(1, "received"), (1, "ignored")]


class TestPayoutEvents:
    """Tests for transfer events."""

    def test_full_lifecycle_to_paid_out(
        self, job_in, service, dispatcher, deliver, transfer_event, payment_storage
    ):
        """Test review, revision, approval and a paid transfer end in paid_out."""
        job = job_in("review")
        service.request_revision(job.id, BUSINESS)
        service.resubmit(job.id, AGENCY)
        service.approve(job.id, BUSINESS)
        dispatcher.drain()

        result = deliver(transfer_event("transfer.paid", "tr_1", job.id, event_id="evt_paid"))

        assert result.outcome == "applied"
        job = service.get_job(job.id)
        assert job.status == "paid_out"
        assert job.agency_receives == Decimal("900.00")
        payouts = payment_storage.list_payouts(job_id=job.id)
        assert [(p.status, p.amount) for p in payouts] == [("paid", Decimal("900.00"))]

    def test_duplicate_transfer_paid(
        self, job_in, service, dispatcher, deliver, transfer_event, payment_storage
    ):
        """Test redelivery is acknowledged without a second payout or transition."""
        job = job_in("approved")
        dispatcher.drain()
        envelope = transfer_event("transfer.paid", "tr_1", job.id, event_id="evt_paid")
        deliver(envelope)
        transitions_before = len(service.get_transitions(job.id))

        result = deliver(envelope)

        assert result.duplicate
        assert result.outcome == "applied"
        assert service.get_job(job.id).status == "paid_out"
        assert len(payment_storage.list_payouts(job_id=job.id)) == 1
        assert len(service.get_transitions(job.id)) == transitions_before
        assert trail(payment_storage, "evt_paid") == [(1, "received"), (1, "applied")]

    def test_transfer_failed_schedules_retry(
        self, job_in, dispatcher, deliver, transfer_event, service, payment_storage
    ):
        """Test a failed transfer keeps the job approved and plans attempt 2."""
        job = job_in("approved")
        dispatcher.drain()

        result = deliver(transfer_event("transfer.failed", "tr_1", job.id))

        assert result.outcome == "applied"
        assert service.get_job(job.id).status == "approved"
        failed = payment_storage.list_payouts(job_id=job.id)[0]
        assert failed.status == "failed"
        assert failed.last_error == "transfer failed"
        assert failed.next_attempt_at is not None

        assert dispatcher.sweep(now=failed.next_attempt_at) == 1
        attempts = payment_storage.list_payouts(job_id=job.id)
        assert [p.attempt for p in attempts] == [1, 2]

    def test_transfer_failed_twice_ignored(self, job_in, dispatcher, deliver, transfer_event):
        """Test a second failure report for the same transfer changes nothing."""
        job = job_in("approved")
        dispatcher.drain()
        deliver(transfer_event("transfer.failed", "tr_1", job.id))
        result = deliver(transfer_event("transfer.failed", "tr_1", job.id))
        assert result.outcome == "ignored"

    def test_unknown_transfer_ignored(self, deliver, transfer_event):
        """Test transfers we never issued are acknowledged."""
        result = deliver(transfer_event("transfer.paid", "tr_unknown", "job-x"))
        assert result.outcome == "ignored"
        assert result.detail == "payout not found"

    def test_paid_after_issuance_timeout(
        self, job_in, dispatcher, processor, deliver, transfer_event, service, payment_storage
    ):
        """Test a transfer whose creation response was lost is matched by payout id."""
        job = job_in("approved")
        processor.failures.append(PaymentProcessorError("read timeout", retryable=True))
        dispatcher.drain()
        payout = payment_storage.list_payouts(job_id=job.id)[0]
        assert payout.transfer_id is None

        envelope = transfer_event(
            "transfer.paid", "tr_1", job.id, event_id="evt_paid", payout_id=payout.id
        )
        result = deliver(envelope)

        assert result.outcome == "applied"
        assert service.get_job(job.id).status == "paid_out"
        paid = payment_storage.get_payout(payout.id)
        assert (paid.status, paid.transfer_id) == ("paid", "tr_1")

        # Nothing left to issue, and redelivery stays a duplicate
        assert dispatcher.sweep(now=paid.next_attempt_at) == 0
        assert deliver(envelope).duplicate
        assert len(payment_storage.list_payouts(job_id=job.id)) == 1

    def test_paid_matched_by_job_when_payout_id_missing(
        self, job_in, dispatcher, processor, deliver, transfer_event, service, payment_storage
    ):
        """Test the job's unlinked pending payout is used when metadata has no payout id."""
        job = job_in("approved")
        processor.failures.append(PaymentProcessorError("read timeout", retryable=True))
        dispatcher.drain()

        result = deliver(transfer_event("transfer.paid", "tr_1", job.id))

        assert result.outcome == "applied"
        assert service.get_job(job.id).status == "paid_out"
        assert payment_storage.get_payout_by_transfer("tr_1").status == "paid"

    def test_failed_after_issuance_timeout(
        self, job_in, dispatcher, processor, deliver, transfer_event, service, payment_storage
    ):
        """Test a failure report for an unlinked transfer still schedules the retry."""
        job = job_in("approved")
        processor.failures.append(PaymentProcessorError("read timeout", retryable=True))
        dispatcher.drain()
        payout = payment_storage.list_payouts(job_id=job.id)[0]

        result = deliver(transfer_event("transfer.failed", "tr_1", job.id, payout_id=payout.id))

        assert result.outcome == "applied"
        failed = payment_storage.get_payout(payout.id)
        assert (failed.status, failed.transfer_id) == ("failed", "tr_1")
        assert service.get_job(job.id).status == "approved"

    def test_unmatched_transfer_for_known_job_left_open(
        self, job_in, dispatcher, processor, deliver, transfer_event, service, payment_storage
    ):
        """Test a transfer we can't match yet is retried instead of closed."""
        job = job_in("approved")
        envelope = transfer_event("transfer.paid", "tr_1", job.id, event_id="evt_early")

        early = deliver(envelope)

        assert early.outcome == "failed"
        assert trail(payment_storage, "evt_early") == [(1, "received"), (1, "failed")]
        assert service.get_job(job.id).status == "approved"

        # The payout is recorded, but the creation response is lost
        processor.failures.append(PaymentProcessorError("read timeout", retryable=True))
        dispatcher.drain()

        result = deliver(envelope)

        assert result.outcome == "applied"
        assert result.attempt == 2
        assert service.get_job(job.id).status == "paid_out"


class TestRefundEvents:
    """Tests for charge refunds."""

    def test_full_refund(self, job_in, deliver, charge_refunded, service, payment_storage):
        """Test a full refund of a funded job."""
        job = job_in("funded")
        result = deliver(charge_refunded(job.id))
        assert result.outcome == "applied"
        assert service.get_job(job.id).status == "refunded"
        assert payment_storage.get_payment_by_intent("pi_1").status == "refunded"

    def test_partial_refund_ignored(self, job_in, deliver, charge_refunded, service):
        """Test a partial refund leaves the job where it is."""
        job = job_in("in_progress")
        result = deliver(charge_refunded(job.id, refunded=False, amount_refunded=20000))
        assert result.outcome == "ignored"
        assert result.detail == "partial refund"
        assert service.get_job(job.id).status == "in_progress"

    def test_paid_out_is_never_refunded(
        self, job_in, dispatcher, deliver, transfer_event, charge_refunded, service
    ):
        """Test paid_out is terminal even for a refund."""
        job = job_in("approved")
        dispatcher.drain()
        deliver(transfer_event("transfer.paid", "tr_1", job.id))

        result = deliver(charge_refunded(job.id))

        assert result.outcome == "rejected"
        assert service.get_job(job.id).status == "paid_out"

    def test_transfer_after_refund_rejected(
        self, job_in, dispatcher, deliver, transfer_event, charge_refunded, service
    ):
        """Test a late transfer.paid cannot move a refunded job."""
        job = job_in("approved")
        dispatcher.drain()
        deliver(charge_refunded(job.id))
        assert service.get_job(job.id).status == "refunded"

        result = deliver(transfer_event("transfer.paid", "tr_1", job.id))

        assert result.outcome == "rejected"
        assert "refunded" in result.detail
        assert service.get_job(job.id).status == "refunded"

    def test_untracked_charge_ignored(self, deliver, charge_refunded):
        """Test refunds of payments we never recorded."""
        result = deliver(charge_refunded("job-x", payment_intent_id="pi_unknown"))
        assert result.outcome == "ignored"


class TestAccountEvents:
    """Tests for agency payout account events."""

    def test_account_enabled(self, service, deliver, stripe_event, payment_storage):
        """Test onboarding completion enables payouts."""
        service.link_payout_account(AGENCY, "acct_new")
        result = deliver(
            stripe_event(
                "account.updated",
                {
                    "id": "acct_new",
                    "details_submitted": True,
                    "payouts_enabled": True,
                    "charges_enabled": True,
                },
            )
        )
        assert result.outcome == "applied"
        account = payment_storage.get_payout_account(AGENCY)
        assert account.onboarding_complete
        assert account.payouts_enabled

    def test_payouts_need_charges_enabled(self, service, deliver, stripe_event, payment_storage):
        """Test payouts stay off while the account cannot take charges."""
        service.link_payout_account(AGENCY, "acct_new")
        deliver(
            stripe_event(
                "account.updated",
                {"id": "acct_new", "details_submitted": True, "payouts_enabled": True},
            )
        )
        assert not payment_storage.get_payout_account(AGENCY).payouts_enabled

    def test_unlinked_account_ignored(self, deliver, stripe_event):
        """Test updates for accounts no agency linked."""
        result = deliver(stripe_event("account.updated", {"id": "acct_stranger"}))
        assert result.outcome == "ignored"

    def test_deauthorized(self, linked_agency, deliver, stripe_event, payment_storage):
        """Test disconnecting the platform unlinks the account."""
        result = deliver(
            stripe_event("account.application.deauthorized", {"id": "ca_app"}, account=AGENCY_ACCOUNT)
        )
        assert result.outcome == "applied"
        account = payment_storage.get_payout_account(AGENCY)
        assert account.account_id is None
        assert not account.payouts_enabled

    def test_account_events_touch_no_job(self, job_in, deliver, stripe_event, service):
        """Test account changes never move jobs."""
        job = job_in("funded")
        deliver(stripe_event("account.application.deauthorized", {"id": "ca_app"}, account=AGENCY_ACCOUNT))
        assert service.get_job(job.id).status == "funded"


class TestDeliverySemantics:
    """Tests for verification, dedup, failure and replay."""

    def test_bad_signature_writes_nothing(self, ingestion, stripe_event, payment_storage):
        """Test a forged delivery is refused before any write."""
        body = json.dumps(stripe_event("transfer.paid", {"id": "tr_1", "amount": 1, "currency": "usd"}, event_id="evt_x")).encode()
        with pytest.raises(SignatureInvalidError):
            ingestion.ingest(body, sign_payload("whsec_wrong", body))
        assert payment_storage.get_ledger_entries("evt_x") == []

    def test_malformed_body_writes_nothing(self, ingestion, payment_storage):
        """Test a signed but undecodable body is refused."""
        body = b'{"id": "evt_bad", "type": "transfer.paid", "data": {"object": {"id": 5}}}'
        with pytest.raises(ValidationError):
            ingestion.ingest(body, sign_payload(SECRET, body))
        assert payment_storage.get_ledger_entries("evt_bad") == []

    def test_unknown_type_acknowledged(self, deliver, stripe_event, payment_storage):
        """Test unhandled event types are closed as ignored."""
        result = deliver(stripe_event("customer.created", {"id": "cus_1"}, event_id="evt_cus"))
        assert result.outcome == "ignored"
        assert result.detail == "unhandled event type"
        assert trail(payment_storage, "evt_cus") == [(1, "received"), (1, "ignored")]

    def test_failure_then_redelivery(
        self, unfunded_job, deliver, payment_succeeded, payment_storage, service, monkeypatch
    ):
        """Test our own failure is recorded and the redelivery applies as attempt 2."""
        original = payment_storage.update_payment_status
        calls = {"n": 0}

        def flaky(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("database went away")
            return original(*args, **kwargs)

        monkeypatch.setattr(payment_storage, "update_payment_status", flaky)
        envelope = payment_succeeded(unfunded_job, "pi_1", event_id="evt_retry")

        with pytest.raises(RuntimeError):
            deliver(envelope)
        assert service.get_job(unfunded_job.id).status == "unfunded"

        result = deliver(envelope)

        assert result.outcome == "applied"
        assert result.attempt == 2
        assert service.get_job(unfunded_job.id).status == "funded"
        assert trail(payment_storage, "evt_retry") == [
            (1, "received"),
            (1, "failed"),
            (2, "received"),
            (2, "applied"),
        ]
        assert "RuntimeError" in payment_storage.get_ledger_entries("evt_retry")[1].detail

    def test_open_attempt_acknowledged(
        self, unfunded_job, deliver, payment_succeeded, payment_storage, service
    ):
        """Test an event another worker is handling is not dispatched twice."""
        envelope = payment_succeeded(unfunded_job, "pi_1", event_id="evt_open")
        payment_storage.append_ledger_entry(
            LedgerEntry("evt_open", "payment_intent.succeeded", payload=json.dumps(envelope))
        )

        result = deliver(envelope)

        assert result.duplicate
        assert result.outcome == "received"
        assert service.get_job(unfunded_job.id).status == "unfunded"

    def test_replay_open_attempt(
        self, unfunded_job, ingestion, payment_succeeded, payment_storage, service
    ):
        """Test replay finishes an event whose worker died mid-dispatch."""
        envelope = payment_succeeded(unfunded_job, "pi_1", event_id="evt_stuck")
        payment_storage.append_ledger_entry(
            LedgerEntry("evt_stuck", "payment_intent.succeeded", payload=json.dumps(envelope))
        )

        result = ingestion.replay("evt_stuck")

        assert result.outcome == "applied"
        assert result.attempt == 2
        assert service.get_job(unfunded_job.id).status == "funded"

    def test_replay_closed_event(self, unfunded_job, deliver, ingestion, payment_succeeded):
        """Test replaying a closed event is a no-op."""
        deliver(payment_succeeded(unfunded_job, "pi_1", event_id="evt_done"))
        result = ingestion.replay("evt_done")
        assert result.duplicate
        assert result.outcome == "applied"

    def test_replay_unknown_event(self, ingestion):
        """Test replaying an event with no ledger trail."""
        with pytest.raises(ValidationError, match="No ledger entries"):
            ingestion.replay("evt_never")

    def test_concurrent_claim(
        self, unfunded_job, ingestion, payment_succeeded, payment_storage, monkeypatch, service
    ):
        """Test losing the race to claim an attempt is acknowledged as a duplicate."""
        envelope = payment_succeeded(unfunded_job, "pi_1", event_id="evt_race")
        payment_storage.append_ledger_entry(LedgerEntry("evt_race", "payment_intent.succeeded"))
        # Simulate reading the ledger before the other worker's row landed
        monkeypatch.setattr(payment_storage, "get_ledger_entries", lambda event_id: [])

        event = ingestion.parser.parse_dict(envelope)
        result = ingestion.process(event)

        assert result.duplicate
        assert result.outcome == "received"
        assert service.get_job(unfunded_job.id).status == "unfunded"

    def test_result_to_dict(self, unfunded_job, deliver, payment_succeeded):
        """Test the result serializes for the HTTP response."""
        data = deliver(payment_succeeded(unfunded_job, "pi_1", event_id="evt_dict")).to_dict()
        assert data == {
            "event_id": "evt_dict",
            "event_type": "payment_intent.succeeded",
            "outcome": "applied",
            "attempt": 1,
            "duplicate": False,
            "job_id": unfunded_job.id,
            "detail": None,
        }
