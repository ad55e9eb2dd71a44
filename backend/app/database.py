"""Database utilities for Supabase integration.

Holds the Supabase client cache, the Supabase-backed implementations of the
engine's storage protocols, and the :class:`EscrowServices` container that
routes and the background worker share.

Uniqueness rules (one succeeded payment per job, one active payout per job,
one ledger row per event attempt and outcome) are unique indexes in the
database; see ``supabase/migrations/001_escrow_schema.sql``. A violation
comes back from PostgREST as an error carrying Postgres code 23505.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated

from fastapi import Depends

from supabase import Client, create_client

from scalingad.errors import DoubleFundingError, DuplicateEventError, DuplicatePayoutError
from scalingad.jobs.engine import JobEngine
from scalingad.jobs.models import Job, JobStateTransition
from scalingad.jobs.service import JobService
from scalingad.jobs.storage import CONFLICT, NOT_FOUND, InMemoryJobStorage
from scalingad.notifications import NotificationOutbox
from scalingad.payments.models import (
    AgencyPayoutAccount,
    LedgerEntry,
    PaymentRecord,
    PaymentStatus,
    PayoutRecord,
    PayoutStatus,
)
from scalingad.payments.payouts import PayoutDispatcher
from scalingad.payments.processor import StripeProcessor
from scalingad.payments.storage import InMemoryPaymentStorage
from scalingad.storage.sqlite import SQLiteStorage
from scalingad.webhooks.ingestion import WebhookIngestionService

from .config import Settings, get_settings
from .logging_config import get_logger

logger = get_logger("scalingad.database")

_supabase_client: Client | None = None


def get_supabase_client(settings: Settings | None = None) -> Client:
    """Get cached Supabase client."""
    global _supabase_client
    if _supabase_client is None:
        if settings is None:
            settings = get_settings()
        # Prefer new secret key, fall back to legacy service_role_key
        api_key = settings.supabase_secret_key or settings.supabase_service_role_key
        if not settings.supabase_url or not api_key:
            raise ValueError(
                "SUPABASE_URL and either SUPABASE_SECRET_KEY or SUPABASE_SERVICE_ROLE_KEY must be set"
            )
        _supabase_client = create_client(settings.supabase_url, api_key)
    return _supabase_client


# =============================================================================
# Table Names
# =============================================================================

JOBS_TABLE = "jobs"
JOB_TRANSITIONS_TABLE = "job_state_transitions"
PAYMENTS_TABLE = "payments"
PAYOUTS_TABLE = "payouts"
LEDGER_TABLE = "ledger_entries"
PAYOUT_ACCOUNTS_TABLE = "payout_accounts"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _enum_value(value):
    return value.value if hasattr(value, "value") else value


def is_unique_violation(exc: Exception) -> bool:
    """Whether a PostgREST error is a unique-constraint violation."""
    text = str(exc).lower()
    return "23505" in text or "duplicate" in text or "unique" in text


# =============================================================================
# Job Storage
# =============================================================================


class SupabaseJobStorage:
    """Jobs and the transition audit log in Supabase."""

    def __init__(self, db: Client):
        self.db = db

    def save_job(self, job: Job) -> str:
        try:
            self.db.table(JOBS_TABLE).insert(job.to_dict()).execute()
        except Exception as e:
            if is_unique_violation(e):
                raise ValueError(f"Job already exists: {job.id}")
            raise
        return job.id

    def get_job(self, job_id: str) -> Job | None:
        result = self.db.table(JOBS_TABLE).select("*").eq("id", job_id).execute()
        return Job.from_dict(result.data[0]) if result.data else None

    def list_jobs(
        self,
        status=None,
        business_id: str | None = None,
        agency_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Job]:
        query = self.db.table(JOBS_TABLE).select("*")
        if status is not None:
            query = query.eq("status", _enum_value(status))
        if business_id:
            query = query.eq("business_id", business_id)
        if agency_id:
            query = query.eq("agency_id", agency_id)
        query = query.order("created_at", desc=True).range(offset, offset + limit - 1)
        result = query.execute()
        return [Job.from_dict(row) for row in result.data or []]

    def update_job_status(
        self,
        job_id: str,
        expected_status: str,
        new_status: str,
        updated_at: datetime,
    ) -> tuple[Job | None, str | None]:
        """Atomically update job status with optimistic locking.

        Uses UPDATE ... WHERE status = expected_status so two concurrent
        writers can't both move the job.
        """
        result = (
            self.db.table(JOBS_TABLE)
            .update({"status": _enum_value(new_status), "updated_at": updated_at.isoformat()})
            .eq("id", job_id)
            .eq("status", _enum_value(expected_status))
            .execute()
        )

        if result.data:
            return Job.from_dict(result.data[0]), None

        # Update didn't match - either job doesn't exist or status changed
        job = self.get_job(job_id)
        if job is None:
            return None, NOT_FOUND

        logger.warning(
            f"Race condition detected on job {job_id}: "
            f"expected status '{_enum_value(expected_status)}', found '{job.status}'"
        )
        return None, CONFLICT

    def save_transition(self, transition: JobStateTransition) -> str:
        self.db.table(JOB_TRANSITIONS_TABLE).insert(transition.to_dict()).execute()
        return transition.id

    def get_transitions(self, job_id: str) -> list[JobStateTransition]:
        result = (
            self.db.table(JOB_TRANSITIONS_TABLE)
            .select("*")
            .eq("job_id", job_id)
            .order("created_at")
            .execute()
        )
        return [JobStateTransition.from_dict(row) for row in result.data or []]


# =============================================================================
# Payment Storage
# =============================================================================


class SupabasePaymentStorage:
    """Payments, payouts, the webhook ledger and payout accounts in Supabase."""

    def __init__(self, db: Client):
        self.db = db

    # === Payments ===

    def save_payment(self, record: PaymentRecord) -> str:
        data = {**record.to_dict(), "client_secret": record.client_secret}
        try:
            self.db.table(PAYMENTS_TABLE).insert(data).execute()
        except Exception as e:
            if not is_unique_violation(e):
                raise
            if "one_succeeded" in str(e):
                raise DoubleFundingError(record.job_id)
            raise ValueError(f"Payment intent already recorded: {record.payment_intent_id}")
        return record.id

    def get_payment_by_intent(self, payment_intent_id: str) -> PaymentRecord | None:
        result = (
            self.db.table(PAYMENTS_TABLE)
            .select("*")
            .eq("payment_intent_id", payment_intent_id)
            .execute()
        )
        return PaymentRecord.from_dict(result.data[0]) if result.data else None

    def list_payments(self, job_id: str) -> list[PaymentRecord]:
        result = (
            self.db.table(PAYMENTS_TABLE)
            .select("*")
            .eq("job_id", job_id)
            .order("created_at")
            .execute()
        )
        return [PaymentRecord.from_dict(row) for row in result.data or []]

    def update_payment_status(
        self,
        payment_intent_id: str,
        status: PaymentStatus,
        charge_id: str | None = None,
    ) -> PaymentRecord | None:
        update_data = {"status": _enum_value(status), "updated_at": _utc_now().isoformat()}
        if charge_id:
            update_data["charge_id"] = charge_id
        try:
            result = (
                self.db.table(PAYMENTS_TABLE)
                .update(update_data)
                .eq("payment_intent_id", payment_intent_id)
                .execute()
            )
        except Exception as e:
            if is_unique_violation(e):
                existing = self.get_payment_by_intent(payment_intent_id)
                raise DoubleFundingError(existing.job_id if existing else payment_intent_id)
            raise
        return PaymentRecord.from_dict(result.data[0]) if result.data else None

    # === Payouts ===

    def save_payout(self, record: PayoutRecord) -> str:
        try:
            self.db.table(PAYOUTS_TABLE).insert(record.to_dict()).execute()
        except Exception as e:
            if is_unique_violation(e):
                raise DuplicatePayoutError(record.job_id)
            raise
        return record.id

    def get_payout(self, payout_id: str) -> PayoutRecord | None:
        result = self.db.table(PAYOUTS_TABLE).select("*").eq("id", payout_id).execute()
        return PayoutRecord.from_dict(result.data[0]) if result.data else None

    def get_payout_by_transfer(self, transfer_id: str) -> PayoutRecord | None:
        result = (
            self.db.table(PAYOUTS_TABLE).select("*").eq("transfer_id", transfer_id).execute()
        )
        return PayoutRecord.from_dict(result.data[0]) if result.data else None

    def list_payouts(
        self,
        job_id: str | None = None,
        status: PayoutStatus | None = None,
    ) -> list[PayoutRecord]:
        query = self.db.table(PAYOUTS_TABLE).select("*")
        if job_id is not None:
            query = query.eq("job_id", job_id)
        if status is not None:
            query = query.eq("status", _enum_value(status))
        result = query.order("created_at").execute()
        return [PayoutRecord.from_dict(row) for row in result.data or []]

    def update_payout(
        self,
        payout_id: str,
        status: PayoutStatus | None = None,
        transfer_id: str | None = None,
        last_error: str | None = None,
        next_attempt_at: datetime | None = None,
    ) -> PayoutRecord | None:
        update_data = {
            "next_attempt_at": next_attempt_at.isoformat() if next_attempt_at else None,
            "updated_at": _utc_now().isoformat(),
        }
        if status is not None:
            update_data["status"] = _enum_value(status)
        if transfer_id:
            update_data["transfer_id"] = transfer_id
        if last_error is not None:
            update_data["last_error"] = last_error
        try:
            result = (
                self.db.table(PAYOUTS_TABLE).update(update_data).eq("id", payout_id).execute()
            )
        except Exception as e:
            if is_unique_violation(e):
                existing = self.get_payout(payout_id)
                raise DuplicatePayoutError(existing.job_id if existing else payout_id)
            raise
        return PayoutRecord.from_dict(result.data[0]) if result.data else None

    # === Ledger ===

    def append_ledger_entry(self, entry: LedgerEntry) -> str:
        try:
            self.db.table(LEDGER_TABLE).insert(entry.to_dict()).execute()
        except Exception as e:
            if is_unique_violation(e):
                raise DuplicateEventError(entry.event_id)
            raise
        return entry.id

    def get_ledger_entries(self, event_id: str) -> list[LedgerEntry]:
        result = (
            self.db.table(LEDGER_TABLE)
            .select("*")
            .eq("event_id", event_id)
            .order("seq")
            .execute()
        )
        return [LedgerEntry.from_dict(row) for row in result.data or []]

    def list_ledger(self, job_id: str | None = None, limit: int = 100) -> list[LedgerEntry]:
        query = self.db.table(LEDGER_TABLE).select("*")
        if job_id is not None:
            query = query.eq("job_id", job_id)
        result = query.order("seq", desc=True).limit(limit).execute()
        return [LedgerEntry.from_dict(row) for row in result.data or []]

    # === Payout accounts ===

    def save_payout_account(self, account: AgencyPayoutAccount) -> None:
        self.db.table(PAYOUT_ACCOUNTS_TABLE).upsert(
            account.to_dict(), on_conflict="agency_id"
        ).execute()

    def get_payout_account(self, agency_id: str) -> AgencyPayoutAccount | None:
        result = (
            self.db.table(PAYOUT_ACCOUNTS_TABLE).select("*").eq("agency_id", agency_id).execute()
        )
        return AgencyPayoutAccount.from_dict(result.data[0]) if result.data else None

    def get_payout_account_by_account_id(self, account_id: str) -> AgencyPayoutAccount | None:
        result = (
            self.db.table(PAYOUT_ACCOUNTS_TABLE)
            .select("*")
            .eq("account_id", account_id)
            .execute()
        )
        return AgencyPayoutAccount.from_dict(result.data[0]) if result.data else None


# =============================================================================
# Service container
# =============================================================================


@dataclass
class EscrowServices:
    """Engine, command API, webhook ingestion and payout dispatch, wired together."""

    engine: JobEngine
    jobs: JobService
    ingestion: WebhookIngestionService
    outbox: NotificationOutbox
    dispatcher: PayoutDispatcher | None = None


def _build_storages(settings: Settings):
    if settings.storage_backend == "memory":
        return InMemoryJobStorage(), InMemoryPaymentStorage()
    if settings.storage_backend == "sqlite":
        storage = SQLiteStorage(settings.sqlite_path)
        return storage, storage
    db = get_supabase_client(settings)
    return SupabaseJobStorage(db), SupabasePaymentStorage(db)


def build_services(settings: Settings) -> EscrowServices:
    """Wire the engine against the configured storage backend."""
    config = settings.escrow_config()
    job_storage, payment_storage = _build_storages(settings)

    outbox = NotificationOutbox()
    engine = JobEngine(job_storage, outbox=outbox)

    processor = None
    dispatcher = None
    if settings.stripe_secret_key:
        processor = StripeProcessor(settings.stripe_secret_key, api_base=settings.stripe_api_base)
        dispatcher = PayoutDispatcher(
            job_storage, payment_storage, processor, config=config, outbox=outbox
        )
    else:
        logger.warning("STRIPE_SECRET_KEY not set; funding, refunds and payouts are disabled")

    jobs = JobService(
        engine, payment_storage, config=config, processor=processor, dispatcher=dispatcher
    )
    ingestion = WebhookIngestionService(
        engine,
        payment_storage,
        settings.stripe_webhook_secret or "",
        config=config,
        dispatcher=dispatcher,
        processor=processor,
    )
    logger.info(
        f"Services ready | storage={settings.storage_backend} | payouts={dispatcher is not None}"
    )
    return EscrowServices(
        engine=engine, jobs=jobs, ingestion=ingestion, outbox=outbox, dispatcher=dispatcher
    )


_services: EscrowServices | None = None


def get_services() -> EscrowServices:
    """Get the process-wide service container, building it on first use."""
    global _services
    if _services is None:
        _services = build_services(get_settings())
    return _services


def reset_services() -> None:
    """Drop the cached container so the next call rebuilds it."""
    global _services
    _services = None


# Type alias for dependency injection
Escrow = Annotated[EscrowServices, Depends(get_services)]
