"""Job command service.

The synchronous, user-triggered half of the job lifecycle. Every command
checks that the caller is the right party, then hands the trigger to
:meth:`JobEngine.apply_transition`; the legality rules live only there.

Funding and refunds start here (outbound processor calls) but the status
changes they lead to arrive later, through webhook ingestion.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Union

from scalingad.config import EscrowConfig
from scalingad.errors import (
    DoubleFundingError,
    ForbiddenError,
    InvalidTransitionError,
    PaymentProcessorError,
    ValidationError,
)
from scalingad.jobs.engine import JobEngine
from scalingad.jobs.models import (
    MAX_TITLE_LENGTH,
    ActorRole,
    Job,
    JobStateTransition,
    JobStatus,
    JobTrigger,
    compute_platform_fee,
    currency_exponent,
)
from scalingad.payments.models import (
    AgencyPayoutAccount,
    LedgerEntry,
    PaymentRecord,
    PaymentStatus,
    PayoutRecord,
)
from scalingad.payments.payouts import PayoutDispatcher
from scalingad.payments.processor import PaymentProcessor, RefundResult
from scalingad.payments.storage import PaymentStorage

logger = logging.getLogger(__name__)

# Statuses a business may ask to be refunded from
REFUNDABLE_STATUSES = frozenset(
    {
        JobStatus.FUNDED.value,
        JobStatus.IN_PROGRESS.value,
        JobStatus.REVIEW.value,
        JobStatus.REVISION.value,
    }
)


class JobService:
    """Command API for businesses and agencies.

    Args:
        engine: State machine that owns job status writes
        payments: Payment, payout, ledger and payout-account storage
        config: Fee rate, currency and payout policy
        processor: Payment processor client, needed for funding and refunds
        dispatcher: Payout dispatcher, notified after approval
    """

    def __init__(
        self,
        engine: JobEngine,
        payments: PaymentStorage,
        config: Optional[EscrowConfig] = None,
        processor: Optional[PaymentProcessor] = None,
        dispatcher: Optional[PayoutDispatcher] = None,
    ):
        self.engine = engine
        self.jobs = engine.storage
        self.payments = payments
        self.config = config or EscrowConfig()
        self.processor = processor
        self.dispatcher = dispatcher

    def _utc_now(self) -> datetime:
        return datetime.now(timezone.utc)

    # =========================================================================
    # Creation
    # =========================================================================

    def create_job(
        self,
        business_id: str,
        agency_id: str,
        title: str,
        amount: Union[Decimal, str, int],
        currency: Optional[str] = None,
        description: str = "",
        deal_id: Optional[str] = None,
    ) -> Job:
        """Create a job in ``pending``, waiting for the agency.

        The platform fee is computed here from the configured rate and
        never recomputed.

        Raises:
            ValidationError: Missing parties or title, non-positive amount,
                an amount finer than the currency's minor unit, or a bad
                currency code
        """
        if not business_id or not agency_id:
            raise ValidationError("Both business and agency are required")
        if business_id == agency_id:
            raise ValidationError("Business and agency must be different parties")
        if not title or not title.strip():
            raise ValidationError("Title is required")
        title = title.strip()
        if len(title) > MAX_TITLE_LENGTH:
            raise ValidationError(f"Title too long (max {MAX_TITLE_LENGTH} characters)")

        currency = (currency or self.config.default_currency).upper()
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError(f"Invalid currency code: {currency!r}")

        try:
            value = Decimal(str(amount))
        except InvalidOperation:
            raise ValidationError(f"Amount is not a number: {amount!r}")
        if not value.is_finite() or value <= 0:
            raise ValidationError("Amount must be positive")
        if -value.as_tuple().exponent > currency_exponent(currency):
            raise ValidationError(f"Amount has more precision than {currency} allows")

        now = self._utc_now()
        job = Job(
            id=str(uuid.uuid4()),
            deal_id=deal_id,
            business_id=business_id,
            agency_id=agency_id,
            title=title,
            description=description or "",
            amount=value,
            currency=currency,
            platform_fee=compute_platform_fee(value, self.config.platform_fee_rate, currency),
            status=JobStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        self.jobs.save_job(job)
        self.jobs.save_transition(
            JobStateTransition(
                job_id=job.id,
                from_status=None,
                to_status=job.status,
                trigger="create",
                actor_role=ActorRole.BUSINESS.value,
                actor_id=business_id,
                created_at=now,
            )
        )
        logger.info(
            f"Job created | job={job.id} | business={business_id} | agency={agency_id} "
            f"| amount={job.amount} {currency} | fee={job.platform_fee}"
        )
        return job

    # =========================================================================
    # Party checks
    # =========================================================================

    def _as_agency(self, job_id: str, agency_id: str) -> Job:
        job = self.engine.get_job(job_id)
        if job.agency_id != agency_id:
            raise ForbiddenError(f"Only the job's agency may do this (job {job_id})")
        return job

    def _as_business(self, job_id: str, business_id: str) -> Job:
        job = self.engine.get_job(job_id)
        if job.business_id != business_id:
            raise ForbiddenError(f"Only the job's business may do this (job {job_id})")
        return job

    def _agency_action(self, job_id: str, agency_id: str, trigger: JobTrigger) -> Job:
        self._as_agency(job_id, agency_id)
        return self.engine.apply_transition(job_id, trigger, ActorRole.AGENCY, agency_id)

    def _business_action(self, job_id: str, business_id: str, trigger: JobTrigger) -> Job:
        self._as_business(job_id, business_id)
        return self.engine.apply_transition(job_id, trigger, ActorRole.BUSINESS, business_id)

    # =========================================================================
    # Agency commands
    # =========================================================================

    def accept(self, job_id: str, agency_id: str) -> Job:
        """Agency accepts a pending job; it then awaits funding."""
        return self._agency_action(job_id, agency_id, JobTrigger.ACCEPT)

    def decline(self, job_id: str, agency_id: str) -> Job:
        return self._agency_action(job_id, agency_id, JobTrigger.DECLINE)

    def start_work(self, job_id: str, agency_id: str) -> Job:
        return self._agency_action(job_id, agency_id, JobTrigger.START_WORK)

    def submit_for_review(self, job_id: str, agency_id: str) -> Job:
        return self._agency_action(job_id, agency_id, JobTrigger.SUBMIT)

    def resubmit(self, job_id: str, agency_id: str) -> Job:
        return self._agency_action(job_id, agency_id, JobTrigger.RESUBMIT)

    # =========================================================================
    # Business commands
    # =========================================================================

    def approve(self, job_id: str, business_id: str) -> Job:
        """Approve submitted work and queue the payout.

        The transition is committed before the payout is requested; the
        request itself only queues work for the dispatcher, so approval never
        waits on the processor.
        """
        job = self._business_action(job_id, business_id, JobTrigger.APPROVE)
        if self.dispatcher is not None:
            self.dispatcher.request(job_id)
        else:
            logger.warning(f"Job {job_id} approved with no payout dispatcher configured")
        return job

    def request_revision(self, job_id: str, business_id: str) -> Job:
        return self._business_action(job_id, business_id, JobTrigger.REQUEST_REVISION)

    def cancel(self, job_id: str, requester_id: str) -> Job:
        """Cancel a job before any funds are captured.

        Once funded, the business asks for a refund instead.
        """
        return self._business_action(job_id, requester_id, JobTrigger.CANCEL)

    # =========================================================================
    # Money movement
    # =========================================================================

    def _require_processor(self) -> PaymentProcessor:
        if self.processor is None:
            raise PaymentProcessorError("No payment processor configured")
        return self.processor

    def initiate_funding(self, job_id: str, business_id: str) -> PaymentRecord:
        """Open a payment intent for an accepted job.

        Returns the pending PaymentRecord, including the client secret the
        business's browser uses to confirm payment. Calling again while an
        attempt is still pending returns that attempt.

        Raises:
            ForbiddenError: Caller is not the job's business
            InvalidTransitionError: Job is not ``unfunded``
            DoubleFundingError: A payment for this job already succeeded
            ValidationError: The agency can't receive payouts yet
            PaymentProcessorError: The processor call failed
        """
        job = self._as_business(job_id, business_id)
        if job.status != JobStatus.UNFUNDED.value:
            raise InvalidTransitionError(
                job_id, job.status, JobTrigger.FUND.value, "job is not awaiting funding"
            )

        attempts = self.payments.list_payments(job_id)
        if any(p.status == PaymentStatus.SUCCEEDED.value for p in attempts):
            raise DoubleFundingError(job_id)
        in_flight = next(
            (p for p in attempts if p.status == PaymentStatus.PENDING.value and p.client_secret),
            None,
        )
        if in_flight is not None:
            return in_flight

        account = self.payments.get_payout_account(job.agency_id)
        if account is None or not account.account_id or not account.payouts_enabled:
            raise ValidationError("The agency has not finished payout onboarding")

        processor = self._require_processor()
        # Closed attempts (failed, or refunded before success) each need a fresh key
        failed = sum(
            1
            for p in attempts
            if p.status in (PaymentStatus.FAILED.value, PaymentStatus.REFUNDED.value)
        )
        result = processor.create_payment_intent(
            amount=job.amount,
            currency=job.currency,
            idempotency_key=f"fund:{job_id}:{failed}",
            metadata={
                "job_id": job.id,
                "agency_id": job.agency_id,
                "business_id": job.business_id,
                "platform": self.config.platform_name,
            },
            transfer_group=f"job_{job.id}",
        )

        existing = self.payments.get_payment_by_intent(result.payment_intent_id)
        if existing is not None:
            return existing

        record = PaymentRecord(
            job_id=job_id,
            payment_intent_id=result.payment_intent_id,
            amount=job.amount,
            currency=job.currency,
            client_secret=result.client_secret,
        )
        self.payments.save_payment(record)
        logger.info(
            f"Funding initiated | job={job_id} | intent={result.payment_intent_id} "
            f"| attempt={failed + 1}"
        )
        return record

    def request_refund(self, job_id: str, business_id: str) -> RefundResult:
        """Ask the processor to refund a funded job.

        The job moves to ``refunded`` when the processor confirms with a
        ``charge.refunded`` event, not here.

        Raises:
            ForbiddenError: Caller is not the job's business
            InvalidTransitionError: Job is not in a refundable status
            ValidationError: No captured payment to refund
            PaymentProcessorError: The processor call failed
        """
        job = self._as_business(job_id, business_id)
        if job.status not in REFUNDABLE_STATUSES:
            raise InvalidTransitionError(
                job_id, job.status, JobTrigger.REFUND.value, "refunds are available until approval"
            )

        payment = next(
            (
                p
                for p in self.payments.list_payments(job_id)
                if p.status == PaymentStatus.SUCCEEDED.value
            ),
            None,
        )
        if payment is None:
            raise ValidationError(f"Job {job_id} has no captured payment")

        result = self._require_processor().create_refund(
            payment.payment_intent_id,
            idempotency_key=f"refund:{job_id}",
            metadata={"job_id": job_id, "platform": self.config.platform_name},
        )
        logger.info(f"Refund requested | job={job_id} | refund={result.refund_id}")
        return result

    def link_payout_account(self, agency_id: str, account_id: str) -> AgencyPayoutAccount:
        """Register an agency's connected account at the processor.

        Payouts stay disabled until the processor reports the account as
        ready through an ``account.updated`` event.
        """
        if not agency_id or not account_id or not account_id.strip():
            raise ValidationError("Agency and account id are required")
        account_id = account_id.strip()

        owner = self.payments.get_payout_account_by_account_id(account_id)
        if owner is not None and owner.agency_id != agency_id:
            raise ValidationError("Payout account is linked to another agency")

        current = self.payments.get_payout_account(agency_id)
        if current is not None and current.account_id == account_id:
            return current

        account = AgencyPayoutAccount(agency_id=agency_id, account_id=account_id)
        self.payments.save_payout_account(account)
        logger.info(f"Payout account linked | agency={agency_id} | account={account_id}")
        return account

    # =========================================================================
    # Queries
    # =========================================================================

    def get_job(self, job_id: str, actor_id: Optional[str] = None) -> Job:
        """Get a job. With ``actor_id``, only the job's two parties may read it."""
        job = self.engine.get_job(job_id)
        if actor_id is not None and actor_id not in (job.business_id, job.agency_id):
            raise ForbiddenError(f"Not a party to job {job_id}")
        return job

    def list_jobs(
        self,
        status: Optional[str] = None,
        business_id: Optional[str] = None,
        agency_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        if status is not None:
            try:
                JobStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown status: {status}")
        return self.jobs.list_jobs(
            status=status,
            business_id=business_id,
            agency_id=agency_id,
            limit=limit,
            offset=offset,
        )

    def list_payments(self, job_id: str) -> List[PaymentRecord]:
        return self.payments.list_payments(job_id)

    def list_payouts(self, job_id: str) -> List[PayoutRecord]:
        return self.payments.list_payouts(job_id=job_id)

    def list_ledger(self, job_id: Optional[str] = None, limit: int = 100) -> List[LedgerEntry]:
        return self.payments.list_ledger(job_id=job_id, limit=limit)

    def get_transitions(self, job_id: str) -> List[JobStateTransition]:
        return self.jobs.get_transitions(job_id)

    def get_payout_account(self, agency_id: str) -> Optional[AgencyPayoutAccount]:
        return self.payments.get_payout_account(agency_id)
