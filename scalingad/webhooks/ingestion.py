"""Webhook ingestion: processor events in, exactly-once effects out.

Deliveries are at-least-once and unordered. Each one goes through:

1. Signature verification over the raw body (no state touched on failure).
2. Strict decoding into a :mod:`scalingad.webhooks.events` value.
3. A ledger check by processor event id. The ledger is append-only; an
   event's trail is a sequence of rows, each tagged with an attempt number
   and an outcome:

   - ends in ``applied``/``ignored``/``rejected``: duplicate, acknowledged
   - ends in ``received``: another worker is on it, or a process died
     mid-dispatch; acknowledged with a warning (``ledger replay`` recovers)
   - ends in ``failed``: our own earlier failure; dispatched again as the
     next attempt

4. A ``received`` row is appended *before* dispatch, then the type-specific
   handler runs, then the closing outcome is appended. An unexpected
   exception appends ``failed`` and propagates so the HTTP layer answers
   5xx and the processor redelivers. A handler may also close an attempt
   as ``failed`` when it can't match the event yet (a transfer for a known
   job with no payout on record); that too is retried.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Dict, NamedTuple, Optional, Type, Union

from scalingad.config import EscrowConfig
from scalingad.errors import (
    DoubleFundingError,
    DuplicateEventError,
    DuplicatePayoutError,
    InvalidTransitionError,
    ValidationError,
)
from scalingad.jobs.engine import JobEngine
from scalingad.jobs.models import ActorRole, Job, JobStatus, JobTrigger, from_minor_units
from scalingad.payments.models import (
    CLOSING_OUTCOMES,
    LedgerEntry,
    LedgerOutcome,
    PaymentRecord,
    PaymentStatus,
    PayoutRecord,
    PayoutStatus,
)
from scalingad.payments.payouts import PayoutDispatcher
from scalingad.payments.processor import PaymentProcessor
from scalingad.payments.storage import PaymentStorage
from scalingad.webhooks.events import (
    AccountDeauthorized,
    AccountUpdated,
    ChargeRefunded,
    PaymentFailed,
    PaymentSucceeded,
    ProcessorEvent,
    ProcessorEventParser,
    TransferFailed,
    TransferPaid,
    UnknownEvent,
)
from scalingad.webhooks.signature import verify_signature

logger = logging.getLogger(__name__)

# Statuses where money arriving late has nowhere to go and is sent back
UNFUNDABLE_STATUSES = frozenset({JobStatus.CANCELLED.value, JobStatus.DECLINED.value})


@dataclass
class IngestionResult:
    """What happened to one delivery."""

    event_id: str
    event_type: str
    outcome: str
    attempt: int = 1
    duplicate: bool = False
    job_id: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "outcome": self.outcome,
            "attempt": self.attempt,
            "duplicate": self.duplicate,
            "job_id": self.job_id,
            "detail": self.detail,
        }


class _Handled(NamedTuple):
    outcome: LedgerOutcome
    job_id: Optional[str] = None
    detail: Optional[str] = None


class WebhookIngestionService:
    """Verifies, deduplicates and applies payment processor events."""

    def __init__(
        self,
        engine: JobEngine,
        payments: PaymentStorage,
        webhook_secret: str,
        config: Optional[EscrowConfig] = None,
        dispatcher: Optional[PayoutDispatcher] = None,
        parser: Optional[ProcessorEventParser] = None,
        processor: Optional[PaymentProcessor] = None,
    ):
        self.engine = engine
        self.payments = payments
        self.webhook_secret = webhook_secret
        self.config = config or EscrowConfig()
        self.dispatcher = dispatcher
        self.parser = parser or ProcessorEventParser()
        self.processor = processor
        self._handlers: Dict[Type[ProcessorEvent], Callable[..., _Handled]] = {
            PaymentSucceeded: self._on_payment_succeeded,
            PaymentFailed: self._on_payment_failed,
            TransferPaid: self._on_transfer_paid,
            TransferFailed: self._on_transfer_failed,
            ChargeRefunded: self._on_charge_refunded,
            AccountUpdated: self._on_account_updated,
            AccountDeauthorized: self._on_account_deauthorized,
        }

    def _utc_now(self) -> datetime:
        return datetime.now(timezone.utc)

    # =========================================================================
    # Entry points
    # =========================================================================

    def ingest(
        self,
        payload: Union[bytes, str],
        signature_header: Optional[str],
        now: Optional[float] = None,
    ) -> IngestionResult:
        """Handle one raw delivery.

        Raises:
            SignatureInvalidError: Bad or missing signature. Nothing was written.
            ValidationError: The body could not be decoded. Nothing was written.
            Exception: Anything unexpected during dispatch, after a ``failed``
                ledger row has been appended
        """
        raw = payload.encode("utf-8") if isinstance(payload, str) else payload
        verify_signature(
            raw,
            signature_header,
            self.webhook_secret,
            tolerance_seconds=self.config.webhook_tolerance_seconds,
            now=now,
        )
        event = self.parser.parse(raw)
        return self.process(event, raw.decode("utf-8"))

    def process(self, event: ProcessorEvent, payload: Optional[str] = None) -> IngestionResult:
        """Deduplicate and apply an already-verified event."""
        trail = self.payments.get_ledger_entries(event.event_id)
        attempt = 1
        if trail:
            last = trail[-1]
            if last.outcome in CLOSING_OUTCOMES:
                logger.info(
                    f"Duplicate webhook event {event.event_id} ({event.event_type}); "
                    f"already {last.outcome}"
                )
                return self._duplicate(event, last)
            if last.outcome == LedgerOutcome.RECEIVED.value:
                logger.warning(
                    f"Webhook event {event.event_id} ({event.event_type}) has an open attempt "
                    f"{last.attempt}; acknowledging without dispatch (use ledger replay if stuck)"
                )
                return self._duplicate(event, last)
            attempt = last.attempt + 1
            logger.info(f"Retrying webhook event {event.event_id} as attempt {attempt}")
        return self._run(event, payload, attempt)

    def replay(self, event_id: str) -> IngestionResult:
        """Re-dispatch an event whose trail ended in ``received`` or ``failed``.

        Raises:
            ValidationError: If the event is unknown or its payload wasn't kept
        """
        trail = self.payments.get_ledger_entries(event_id)
        if not trail:
            raise ValidationError(f"No ledger entries for event {event_id}")
        last = trail[-1]
        raw = next((e.payload for e in trail if e.payload), None)
        if raw is None:
            raise ValidationError(f"No stored payload for event {event_id}")
        event = self.parser.parse(raw)
        if last.outcome in CLOSING_OUTCOMES:
            logger.info(f"Replay of {event_id} skipped; already {last.outcome}")
            return self._duplicate(event, last)
        logger.warning(f"Replaying webhook event {event_id} as attempt {last.attempt + 1}")
        return self._run(event, raw, last.attempt + 1)

    # =========================================================================
    # Ledger bookkeeping
    # =========================================================================

    def _duplicate(self, event: ProcessorEvent, last: LedgerEntry) -> IngestionResult:
        return IngestionResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=last.outcome,
            attempt=last.attempt,
            duplicate=True,
            job_id=last.job_id,
            detail=last.detail,
        )

    def _append(
        self,
        event: ProcessorEvent,
        outcome: LedgerOutcome,
        attempt: int,
        job_id: Optional[str] = None,
        payload: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> None:
        self.payments.append_ledger_entry(
            LedgerEntry(
                event_id=event.event_id,
                event_type=event.event_type,
                outcome=outcome.value,
                attempt=attempt,
                job_id=job_id or event.job_id,
                object_id=event.object_id or None,
                livemode=event.livemode,
                payload=payload,
                detail=detail,
            )
        )

    def _run(self, event: ProcessorEvent, payload: Optional[str], attempt: int) -> IngestionResult:
        try:
            self._append(event, LedgerOutcome.RECEIVED, attempt, payload=payload)
        except DuplicateEventError:
            # A concurrent delivery of the same event claimed this attempt
            logger.info(f"Webhook event {event.event_id} attempt {attempt} already claimed")
            return IngestionResult(
                event_id=event.event_id,
                event_type=event.event_type,
                outcome=LedgerOutcome.RECEIVED.value,
                attempt=attempt,
                duplicate=True,
                job_id=event.job_id,
            )

        try:
            handled = self._dispatch(event)
        except Exception as e:
            logger.exception(f"Webhook event {event.event_id} ({event.event_type}) failed: {e}")
            self._append(event, LedgerOutcome.FAILED, attempt, detail=f"{type(e).__name__}: {e}")
            raise

        self._append(event, handled.outcome, attempt, job_id=handled.job_id, detail=handled.detail)
        logger.info(
            f"Webhook event processed | event={event.event_id} | type={event.event_type} "
            f"| outcome={handled.outcome.value} | job={handled.job_id or event.job_id}"
        )
        return IngestionResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=handled.outcome.value,
            attempt=attempt,
            job_id=handled.job_id or event.job_id,
            detail=handled.detail,
        )

    def _dispatch(self, event: ProcessorEvent) -> _Handled:
        handler = self._handlers.get(type(event))
        if handler is None:
            if not isinstance(event, UnknownEvent):
                logger.warning(f"No handler for {type(event).__name__}")
            logger.info(f"Ignoring unhandled event type {event.event_type} ({event.event_id})")
            return _Handled(LedgerOutcome.IGNORED, detail="unhandled event type")
        return handler(event)

    def _transition(self, job_id: str, trigger: JobTrigger) -> Optional[_Handled]:
        """Apply a processor-driven transition. Returns a rejection or None."""
        try:
            self.engine.apply_transition(job_id, trigger, ActorRole.SYSTEM)
        except InvalidTransitionError as e:
            logger.warning(f"Processor event rejected by state machine: {e}")
            return _Handled(LedgerOutcome.REJECTED, job_id, str(e))
        return None

    def _unknown_job(self, job_id: Optional[str], what: str) -> _Handled:
        logger.info(f"Ignoring {what}: job {job_id!r} not found")
        return _Handled(LedgerOutcome.IGNORED, job_id, "job not found")

    # =========================================================================
    # Handlers
    # =========================================================================

    def _on_payment_succeeded(self, event: PaymentSucceeded) -> _Handled:
        record = self.payments.get_payment_by_intent(event.payment_intent_id)
        job_id = record.job_id if record else event.job_id
        job = self.engine.storage.get_job(job_id) if job_id else None
        if job is None:
            return self._unknown_job(job_id, f"payment {event.payment_intent_id}")

        paid = from_minor_units(event.amount_minor, event.currency)
        if event.currency != job.currency or paid != job.amount:
            logger.error(
                f"Payment amount mismatch | job={job.id} | intent={event.payment_intent_id} "
                f"| paid={paid} {event.currency} | expected={job.amount} {job.currency}"
            )
            return _Handled(LedgerOutcome.REJECTED, job.id, "amount mismatch")

        if record is None:
            # Funding initiated outside initiate_funding; track it from here on
            record = PaymentRecord(
                job_id=job.id,
                payment_intent_id=event.payment_intent_id,
                amount=paid,
                currency=event.currency,
            )
            self.payments.save_payment(record)
        elif record.status == PaymentStatus.REFUNDED.value:
            # The refund overtook the success; the money is already back with the business
            logger.warning(
                f"Success for refunded payment rejected | job={job.id} "
                f"| intent={event.payment_intent_id}"
            )
            return _Handled(LedgerOutcome.REJECTED, job.id, "payment already refunded")

        try:
            self.payments.update_payment_status(
                event.payment_intent_id, PaymentStatus.SUCCEEDED, charge_id=event.charge_id
            )
        except DoubleFundingError as e:
            logger.error(f"Double funding rejected | intent={event.payment_intent_id} | {e}")
            return _Handled(LedgerOutcome.REJECTED, job.id, "job already funded")

        rejected = self._transition(job.id, JobTrigger.FUND)
        if rejected is not None:
            current = self.engine.storage.get_job(job.id)
            if current is not None and current.status in UNFUNDABLE_STATUSES:
                return self._return_funds(current, event.payment_intent_id)
        return rejected or _Handled(LedgerOutcome.APPLIED, job.id)

    def _return_funds(self, job: Job, payment_intent_id: str) -> _Handled:
        """Refund money captured for a job that was cancelled or declined meanwhile.

        Uses the job's refund key, so redeliveries never refund twice. A
        processor error propagates and the event is retried.
        """
        if self.processor is None:
            logger.error(
                f"Captured payment needs a manual refund | job={job.id} | status={job.status} "
                f"| intent={payment_intent_id}"
            )
            return _Handled(LedgerOutcome.REJECTED, job.id, f"job {job.status}; manual refund required")

        result = self.processor.create_refund(
            payment_intent_id,
            idempotency_key=f"refund:{job.id}",
            metadata={"job_id": job.id, "platform": self.config.platform_name},
        )
        logger.warning(
            f"Payment captured after {job.status}; refund requested | job={job.id} "
            f"| intent={payment_intent_id} | refund={result.refund_id}"
        )
        return _Handled(LedgerOutcome.APPLIED, job.id, f"job {job.status}; refund requested")

    def _on_payment_failed(self, event: PaymentFailed) -> _Handled:
        record = self.payments.get_payment_by_intent(event.payment_intent_id)
        if record is None:
            logger.info(f"Ignoring failure of untracked payment intent {event.payment_intent_id}")
            return _Handled(LedgerOutcome.IGNORED, event.job_id, "payment record not found")
        if record.status == PaymentStatus.SUCCEEDED.value:
            logger.warning(
                f"Payment failure after success ignored | intent={event.payment_intent_id}"
            )
            return _Handled(LedgerOutcome.REJECTED, record.job_id, "payment already succeeded")

        self.payments.update_payment_status(event.payment_intent_id, PaymentStatus.FAILED)
        logger.info(
            f"Funding attempt failed | job={record.job_id} | intent={event.payment_intent_id} "
            f"| reason={event.failure_message}"
        )
        return _Handled(LedgerOutcome.APPLIED, record.job_id, event.failure_message)

    def _find_payout(self, event: Union[TransferPaid, TransferFailed]) -> Optional[PayoutRecord]:
        """Match a transfer event to its payout, linking the transfer id if it was never stored.

        Issuance can time out after the processor created the transfer, so
        the payout id and job id the dispatcher sends as metadata are tried
        when the transfer id is unknown.
        """
        payout = self.payments.get_payout_by_transfer(event.transfer_id)
        if payout is not None:
            return payout

        if event.payout_id:
            payout = self.payments.get_payout(event.payout_id)
        if payout is None and event.job_id:
            payout = next(
                (
                    p
                    for p in self.payments.list_payouts(job_id=event.job_id)
                    if p.status == PayoutStatus.PENDING.value and not p.transfer_id
                ),
                None,
            )
        if payout is None:
            return None
        if (event.job_id and payout.job_id != event.job_id) or (
            payout.transfer_id and payout.transfer_id != event.transfer_id
        ):
            logger.warning(
                f"Transfer {event.transfer_id} metadata points at payout {payout.id} "
                f"(job={payout.job_id}, transfer={payout.transfer_id}); not matching"
            )
            return None

        logger.info(f"Linked transfer {event.transfer_id} to payout {payout.id} | job={payout.job_id}")
        return self.payments.update_payout(payout.id, transfer_id=event.transfer_id)

    def _unmatched_transfer(self, event: Union[TransferPaid, TransferFailed]) -> _Handled:
        if event.job_id and self.engine.storage.get_job(event.job_id) is not None:
            # Leave the trail open so a redelivery or ledger replay can finish it
            logger.error(
                f"Transfer {event.transfer_id} for job {event.job_id} matches no payout; "
                f"left open for retry"
            )
            return _Handled(LedgerOutcome.FAILED, event.job_id, "payout not found")
        logger.info(f"Ignoring transfer {event.transfer_id}: no matching payout")
        return _Handled(LedgerOutcome.IGNORED, event.job_id, "payout not found")

    def _on_transfer_paid(self, event: TransferPaid) -> _Handled:
        payout = self._find_payout(event)
        if payout is None:
            return self._unmatched_transfer(event)
        if self.engine.storage.get_job(payout.job_id) is None:
            return self._unknown_job(payout.job_id, f"transfer {event.transfer_id}")

        if payout.status != PayoutStatus.PAID.value:
            try:
                self.payments.update_payout(payout.id, status=PayoutStatus.PAID)
            except DuplicatePayoutError as e:
                logger.error(f"Second paid payout rejected | transfer={event.transfer_id} | {e}")
                return _Handled(LedgerOutcome.REJECTED, payout.job_id, "job already paid out")

        rejected = self._transition(payout.job_id, JobTrigger.PAY_OUT)
        return rejected or _Handled(LedgerOutcome.APPLIED, payout.job_id)

    def _on_transfer_failed(self, event: TransferFailed) -> _Handled:
        payout = self._find_payout(event)
        if payout is None:
            return self._unmatched_transfer(event)
        if payout.status == PayoutStatus.PAID.value:
            logger.warning(f"Transfer failure after payout ignored | transfer={event.transfer_id}")
            return _Handled(LedgerOutcome.REJECTED, payout.job_id, "payout already paid")
        if payout.status == PayoutStatus.FAILED.value:
            return _Handled(LedgerOutcome.IGNORED, payout.job_id, "payout already failed")

        failed = self.payments.update_payout(
            payout.id, status=PayoutStatus.FAILED, last_error="transfer failed"
        )
        logger.warning(
            f"Payout transfer failed | job={payout.job_id} | transfer={event.transfer_id} "
            f"| attempt={payout.attempt}"
        )
        if self.dispatcher is not None:
            self.dispatcher.schedule_retry(failed)
        return _Handled(LedgerOutcome.APPLIED, payout.job_id, "transfer failed")

    def _on_charge_refunded(self, event: ChargeRefunded) -> _Handled:
        record = None
        if event.payment_intent_id:
            record = self.payments.get_payment_by_intent(event.payment_intent_id)
        if record is None:
            logger.info(f"Ignoring refund of untracked charge {event.charge_id}")
            return _Handled(LedgerOutcome.IGNORED, event.job_id, "payment record not found")
        job = self.engine.storage.get_job(record.job_id)
        if job is None:
            return self._unknown_job(record.job_id, f"refund of {event.charge_id}")
        if not event.fully_refunded:
            logger.info(
                f"Partial refund on job {record.job_id} ({event.amount_refunded} minor units); "
                f"status unchanged"
            )
            return _Handled(LedgerOutcome.IGNORED, record.job_id, "partial refund")

        self.payments.update_payment_status(record.payment_intent_id, PaymentStatus.REFUNDED)
        if job.status in UNFUNDABLE_STATUSES:
            logger.info(
                f"Late payment returned | job={job.id} | status={job.status} | charge={event.charge_id}"
            )
            return _Handled(LedgerOutcome.APPLIED, job.id, f"refund of payment for {job.status} job")
        rejected = self._transition(record.job_id, JobTrigger.REFUND)
        return rejected or _Handled(LedgerOutcome.APPLIED, record.job_id)

    def _on_account_updated(self, event: AccountUpdated) -> _Handled:
        account = self.payments.get_payout_account_by_account_id(event.account_id)
        if account is None:
            logger.info(f"Ignoring update for unlinked account {event.account_id}")
            return _Handled(LedgerOutcome.IGNORED, detail="account not linked")

        self.payments.save_payout_account(
            replace(
                account,
                onboarding_complete=event.details_submitted,
                payouts_enabled=event.payouts_enabled and event.charges_enabled,
                updated_at=self._utc_now(),
            )
        )
        logger.info(
            f"Payout account updated | agency={account.agency_id} | account={event.account_id} "
            f"| payouts={event.payouts_enabled} | charges={event.charges_enabled}"
        )
        return _Handled(LedgerOutcome.APPLIED)

    def _on_account_deauthorized(self, event: AccountDeauthorized) -> _Handled:
        account = self.payments.get_payout_account_by_account_id(event.account_id)
        if account is None:
            logger.info(f"Ignoring deauthorization of unlinked account {event.account_id}")
            return _Handled(LedgerOutcome.IGNORED, detail="account not linked")

        self.payments.save_payout_account(
            replace(
                account,
                account_id=None,
                onboarding_complete=False,
                payouts_enabled=False,
                updated_at=self._utc_now(),
            )
        )
        logger.warning(f"Payout account deauthorized | agency={account.agency_id}")
        return _Handled(LedgerOutcome.APPLIED)
