"""Payout issuance for approved jobs.

``approve`` commits the job to ``approved`` first and only then asks the
dispatcher for a payout via :meth:`PayoutDispatcher.request`, which just
queues the job id. The transfer itself is issued later, from
:meth:`PayoutDispatcher.drain` (background worker) or
:meth:`PayoutDispatcher.sweep` (periodic, picks up anything still owed).

Retry policy:
- Each payout attempt has its own idempotency key ``payout:{job_id}:{n}``.
  Re-issuing the same attempt after a timeout or 5xx reuses that key, so the
  processor returns the original transfer instead of creating a second one.
- ``n`` only advances after a transfer is confirmed failed (a
  ``transfer.failed`` event or a non-retryable rejection).
- Confirmed failures back off exponentially. After
  ``payout_max_attempts`` failures the job stays ``approved``, an ERROR is
  logged and a :class:`~scalingad.notifications.PayoutEscalation` is
  published for operators.
"""

import logging
import threading
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Deque, List, Optional

from scalingad.config import EscrowConfig
from scalingad.errors import DuplicatePayoutError, JobNotFoundError, PaymentProcessorError
from scalingad.jobs.models import Job, JobStatus
from scalingad.jobs.storage import JobStorage
from scalingad.notifications import NotificationOutbox, PayoutEscalation
from scalingad.payments.models import PaymentStatus, PayoutRecord, PayoutStatus
from scalingad.payments.processor import PaymentProcessor
from scalingad.payments.storage import PaymentStorage

logger = logging.getLogger(__name__)

MAX_BACKOFF = timedelta(hours=6)
SWEEP_PAGE_SIZE = 100


def payout_idempotency_key(job_id: str, attempt: int) -> str:
    return f"payout:{job_id}:{attempt}"


class PayoutDispatcher:
    """Issues transfers to agencies for approved jobs."""

    def __init__(
        self,
        jobs: JobStorage,
        payments: PaymentStorage,
        processor: PaymentProcessor,
        config: Optional[EscrowConfig] = None,
        outbox: Optional[NotificationOutbox] = None,
    ):
        self.jobs = jobs
        self.payments = payments
        self.processor = processor
        self.config = config or EscrowConfig()
        self.outbox = outbox
        self._queue: Deque[str] = deque()
        self._lock = threading.Lock()

    def _utc_now(self) -> datetime:
        return datetime.now(timezone.utc)

    def backoff(self, attempt: int) -> timedelta:
        """Delay before the attempt after ``attempt``."""
        delay = timedelta(seconds=self.config.payout_retry_backoff_seconds * (2 ** max(attempt - 1, 0)))
        return min(delay, MAX_BACKOFF)

    # === Queue ===

    def request(self, job_id: str) -> None:
        """Queue a payout for a job. Never blocks on the processor."""
        with self._lock:
            if job_id not in self._queue:
                self._queue.append(job_id)

    @property
    def queued_count(self) -> int:
        with self._lock:
            return len(self._queue)

    def drain(self, limit: Optional[int] = None) -> int:
        """Dispatch queued payout requests. Returns how many were processed.

        Processor failures are recorded on the payout and left for
        :meth:`sweep`; they never escape from here.
        """
        processed = 0
        while limit is None or processed < limit:
            with self._lock:
                if not self._queue:
                    break
                job_id = self._queue.popleft()
            try:
                self.dispatch(job_id)
            except JobNotFoundError:
                logger.warning(f"Payout requested for unknown job {job_id}")
            except PaymentProcessorError as e:
                logger.warning(f"Payout for job {job_id} deferred: {e}")
            processed += 1
        return processed

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Dispatch every approved job whose payout is due. Returns dispatch count."""
        now = now or self._utc_now()
        approved: List[Job] = []
        offset = 0
        while True:
            page = self.jobs.list_jobs(
                status=JobStatus.APPROVED, limit=SWEEP_PAGE_SIZE, offset=offset
            )
            approved.extend(page)
            if len(page) < SWEEP_PAGE_SIZE:
                break
            offset += SWEEP_PAGE_SIZE

        dispatched = 0
        for job in approved:
            try:
                if self.dispatch(job.id, now=now) is not None:
                    dispatched += 1
            except PaymentProcessorError as e:
                logger.warning(f"Payout sweep: job {job.id} deferred: {e}")
        if dispatched:
            logger.info(f"Payout sweep dispatched {dispatched} of {len(approved)} approved jobs")
        return dispatched

    # === Issuance ===

    def dispatch(self, job_id: str, now: Optional[datetime] = None) -> Optional[PayoutRecord]:
        """Issue (or re-issue) the payout for one job if it is due.

        Returns:
            The payout that was issued or re-issued, or None if nothing was
            due (job not approved, already paid, transfer awaiting
            confirmation, backing off, or retries exhausted).

        Raises:
            JobNotFoundError: If the job doesn't exist
        """
        now = now or self._utc_now()
        job = self.jobs.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != JobStatus.APPROVED.value:
            logger.debug(f"Skipping payout for job {job_id}: status is {job.status}")
            return None

        history = self.payments.list_payouts(job_id=job_id)
        if any(p.status == PayoutStatus.PAID.value for p in history):
            return None

        active = next((p for p in history if p.status == PayoutStatus.PENDING.value), None)
        if active is not None:
            if active.transfer_id:
                return None
            if active.next_attempt_at and active.next_attempt_at > now:
                return None
            return self._issue(job, active, now)

        failed = [p for p in history if p.status == PayoutStatus.FAILED.value]
        if len(failed) >= self.config.payout_max_attempts:
            logger.debug(f"Payout retries exhausted for job {job_id}")
            return None
        if failed:
            last = failed[-1]
            if last.next_attempt_at is None or last.next_attempt_at > now:
                return None

        attempt = len(failed) + 1
        payout = PayoutRecord(
            job_id=job_id,
            amount=job.agency_receives,
            currency=job.currency,
            attempt=attempt,
            idempotency_key=payout_idempotency_key(job_id, attempt),
        )
        try:
            self.payments.save_payout(payout)
        except DuplicatePayoutError:
            logger.info(f"Payout for job {job_id} already in flight")
            return None
        return self._issue(job, payout, now)

    def _issue(self, job: Job, payout: PayoutRecord, now: datetime) -> PayoutRecord:
        account = self.payments.get_payout_account(job.agency_id)
        if account is None or not account.account_id or not account.payouts_enabled:
            logger.warning(
                f"Payout for job {job.id} held: agency {job.agency_id} has no payout-enabled account"
            )
            return self.payments.update_payout(
                payout.id,
                last_error="agency payout account not enabled",
                next_attempt_at=now + self.backoff(payout.attempt),
            )

        charge = next(
            (
                p
                for p in self.payments.list_payments(job.id)
                if p.status == PaymentStatus.SUCCEEDED.value
            ),
            None,
        )

        try:
            result = self.processor.create_transfer(
                amount=payout.amount,
                currency=payout.currency,
                destination=account.account_id,
                idempotency_key=payout.idempotency_key,
                metadata={"job_id": job.id, "payout_id": payout.id, "platform": self.config.platform_name},
                source_transaction=charge.charge_id if charge else None,
                transfer_group=f"job_{job.id}",
            )
        except PaymentProcessorError as e:
            if e.retryable:
                logger.warning(
                    f"Payout issuance for job {job.id} failed, will retry with the same key "
                    f"| attempt={payout.attempt} | {e}"
                )
                self.payments.update_payout(
                    payout.id,
                    last_error=str(e),
                    next_attempt_at=now + self.backoff(payout.attempt),
                )
                raise
            failed = self.payments.update_payout(
                payout.id, status=PayoutStatus.FAILED, last_error=str(e)
            )
            self.schedule_retry(failed, now=now)
            raise

        logger.info(
            f"Payout issued | job={job.id} | transfer={result.transfer_id} "
            f"| amount={payout.amount} {payout.currency} | attempt={payout.attempt}"
        )
        return self.payments.update_payout(payout.id, transfer_id=result.transfer_id)

    def schedule_retry(self, payout: PayoutRecord, now: Optional[datetime] = None) -> bool:
        """Plan the next attempt after a confirmed-failed payout.

        Returns:
            True if another attempt was scheduled, False if retries are
            exhausted and the payout was escalated.
        """
        now = now or self._utc_now()
        if payout.attempt >= self.config.payout_max_attempts:
            logger.error(
                f"Payout retries exhausted | job={payout.job_id} | attempts={payout.attempt} "
                f"| last_error={payout.last_error}"
            )
            if self.outbox is not None:
                self.outbox.publish(
                    PayoutEscalation(
                        job_id=payout.job_id,
                        attempts=payout.attempt,
                        last_error=payout.last_error,
                    )
                )
            return False

        next_at = now + self.backoff(payout.attempt)
        self.payments.update_payout(payout.id, next_attempt_at=next_at)
        logger.warning(
            f"Payout attempt {payout.attempt} failed for job {payout.job_id}; "
            f"next attempt at {next_at.isoformat()}"
        )
        return True
