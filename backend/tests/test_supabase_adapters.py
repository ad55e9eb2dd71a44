"""Test the Supabase storage adapters against a mocked client."""

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from app.config import Settings
from app.database import (
    SupabaseJobStorage,
    SupabasePaymentStorage,
    build_services,
    is_unique_violation,
)
from scalingad.errors import DoubleFundingError, DuplicateEventError, DuplicatePayoutError
from scalingad.jobs.models import Job
from scalingad.jobs.storage import CONFLICT, NOT_FOUND
from scalingad.payments.models import LedgerEntry, PaymentRecord, PayoutRecord
from scalingad.payments.processor import StripeProcessor

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_job(status="pending"):
    return Job(
        id="job-1",
        business_id="biz-acme",
        agency_id="agency-pixel",
        title="Ad campaign",
        amount=Decimal("1000.00"),
        platform_fee=Decimal("100.00"),
        status=status,
        created_at=NOW,
        updated_at=NOW,
    )


def unique_error(constraint="some_key"):
    return Exception(
        f"{{'code': '23505', 'message': 'duplicate key value violates unique constraint \"{constraint}\"'}}"
    )


@pytest.fixture
def db():
    return MagicMock()


class TestUniqueViolation:
    """Test PostgREST error classification."""

    def test_detects_code(self):
        """Test the Postgres unique violation code is recognized."""
        assert is_unique_violation(unique_error())

    def test_other_errors(self):
        """Test unrelated errors are not mistaken for conflicts."""
        assert not is_unique_violation(Exception("connection refused"))


class TestSupabaseJobStorage:
    """Test the optimistic status update."""

    def test_update_matches(self, db):
        """Test a matching expected status returns the updated job."""
        db.table.return_value.update.return_value.eq.return_value.eq.return_value.execute.return_value.data = [
            make_job("unfunded").to_dict()
        ]
        storage = SupabaseJobStorage(db)

        job, error = storage.update_job_status("job-1", "pending", "unfunded", NOW)

        assert error is None
        assert job.status == "unfunded"
        update_call = db.table.return_value.update
        assert update_call.call_args[0][0]["status"] == "unfunded"
        eq_chain = update_call.return_value.eq
        eq_chain.assert_called_with("id", "job-1")
        eq_chain.return_value.eq.assert_called_with("status", "pending")

    def test_update_conflict(self, db):
        """Test a moved job is reported as a conflict."""
        db.table.return_value.update.return_value.eq.return_value.eq.return_value.execute.return_value.data = []
        db.table.return_value.select.return_value.eq.return_value.execute.return_value.data = [
            make_job("declined").to_dict()
        ]
        storage = SupabaseJobStorage(db)

        job, error = storage.update_job_status("job-1", "pending", "unfunded", NOW)

        assert job is None
        assert error == CONFLICT

    def test_update_missing(self, db):
        """Test a missing job is reported as not found."""
        db.table.return_value.update.return_value.eq.return_value.eq.return_value.execute.return_value.data = []
        db.table.return_value.select.return_value.eq.return_value.execute.return_value.data = []
        storage = SupabaseJobStorage(db)

        assert storage.update_job_status("job-1", "pending", "unfunded", NOW) == (None, NOT_FOUND)

    def test_get_job_roundtrips_money(self, db):
        """Test rows decode with exact decimals."""
        db.table.return_value.select.return_value.eq.return_value.execute.return_value.data = [
            make_job().to_dict()
        ]
        job = SupabaseJobStorage(db).get_job("job-1")
        assert job.amount == Decimal("1000.00")
        assert job.agency_receives == Decimal("900.00")


class TestSupabasePaymentStorage:
    """Test unique-index violations map to domain errors."""

    def test_ledger_duplicate(self, db):
        """Test a second row for the same attempt and outcome."""
        db.table.return_value.insert.return_value.execute.side_effect = unique_error(
            "uq_ledger_event_attempt_outcome"
        )
        with pytest.raises(DuplicateEventError):
            SupabasePaymentStorage(db).append_ledger_entry(LedgerEntry("evt_1", "transfer.paid"))

    def test_active_payout_duplicate(self, db):
        """Test a second active payout for a job."""
        db.table.return_value.insert.return_value.execute.side_effect = unique_error(
            "uq_payouts_one_active"
        )
        record = PayoutRecord(job_id="job-1", amount=Decimal("900"), idempotency_key="payout:job-1:1")
        with pytest.raises(DuplicatePayoutError):
            SupabasePaymentStorage(db).save_payout(record)

    def test_second_succeeded_payment(self, db):
        """Test the one-succeeded-payment index surfaces as double funding."""
        db.table.return_value.update.return_value.eq.return_value.execute.side_effect = unique_error(
            "uq_payments_one_succeeded"
        )
        db.table.return_value.select.return_value.eq.return_value.execute.return_value.data = [
            PaymentRecord(job_id="job-1", payment_intent_id="pi_2", amount=Decimal("1000")).to_dict()
        ]
        with pytest.raises(DoubleFundingError):
            SupabasePaymentStorage(db).update_payment_status("pi_2", "succeeded", charge_id="ch_2")

    def test_other_errors_propagate(self, db):
        """Test non-constraint failures are not swallowed."""
        db.table.return_value.insert.return_value.execute.side_effect = RuntimeError("timeout")
        with pytest.raises(RuntimeError):
            SupabasePaymentStorage(db).append_ledger_entry(LedgerEntry("evt_1", "transfer.paid"))

    def test_ledger_ordered_by_sequence(self, db):
        """Test an event's trail is read in insertion order."""
        chain = db.table.return_value.select.return_value.eq.return_value.order
        chain.return_value.execute.return_value.data = []
        SupabasePaymentStorage(db).get_ledger_entries("evt_1")
        chain.assert_called_with("seq")


class TestBuildServices:
    """Test service wiring from settings."""

    def test_memory_without_processor(self):
        """Test money movement is disabled without a processor key."""
        services = build_services(
            Settings(
                jwt_secret_key="k",
                storage_backend="memory",
                stripe_secret_key=None,
                stripe_webhook_secret=None,
            )
        )
        assert services.dispatcher is None
        assert services.jobs.processor is None
        assert services.ingestion.webhook_secret == ""

    def test_memory_with_processor(self):
        """Test a processor key enables funding and payouts."""
        services = build_services(
            Settings(
                jwt_secret_key="k",
                storage_backend="memory",
                stripe_secret_key="sk_test_123",
                stripe_webhook_secret="whsec_1",
                platform_fee_rate=Decimal("0.15"),
            )
        )
        assert isinstance(services.jobs.processor, StripeProcessor)
        assert services.dispatcher is not None
        assert services.ingestion.webhook_secret == "whsec_1"
        assert services.jobs.config.platform_fee_rate == Decimal("0.15")

    def test_sqlite_shares_one_store(self, tmp_path):
        """Test the sqlite backend serves jobs and payments from one file."""
        services = build_services(
            Settings(jwt_secret_key="k", storage_backend="sqlite", sqlite_path=str(tmp_path / "s.db"))
        )
        assert services.jobs.jobs is services.jobs.payments
