"""
Payments storage layer.

One protocol covers the payment-side stores: funding attempts
(PaymentRecord), payouts (PayoutRecord), the append-only event ledger
(LedgerEntry) and agency payout accounts. The invariants that need
atomicity live here, behind the protocol:

- at most one succeeded PaymentRecord per job
- at most one active (pending or paid) PayoutRecord per job
- ledger rows are unique on (event_id, attempt, outcome) and never change
"""

import copy
import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import List, Optional, Protocol

from scalingad.errors import DoubleFundingError, DuplicateEventError, DuplicatePayoutError
from scalingad.payments.models import (
    AgencyPayoutAccount,
    LedgerEntry,
    PaymentRecord,
    PaymentStatus,
    PayoutRecord,
    PayoutStatus,
)

logger = logging.getLogger(__name__)

ACTIVE_PAYOUT_STATUSES = frozenset({PayoutStatus.PENDING.value, PayoutStatus.PAID.value})


class PaymentStorage(Protocol):
    """Protocol for payment, payout, ledger and payout-account persistence."""

    # Payments
    def save_payment(self, record: PaymentRecord) -> str:
        """Insert a funding attempt. Returns the record ID."""
        ...

    def get_payment_by_intent(self, payment_intent_id: str) -> Optional[PaymentRecord]:
        """Find a funding attempt by processor payment-intent id."""
        ...

    def list_payments(self, job_id: str) -> List[PaymentRecord]:
        """All funding attempts for a job, oldest first."""
        ...

    def update_payment_status(
        self,
        payment_intent_id: str,
        status: PaymentStatus,
        charge_id: Optional[str] = None,
    ) -> Optional[PaymentRecord]:
        """Set a funding attempt's status. Returns None if not found.

        Raises:
            DoubleFundingError: If marking succeeded while another attempt
                for the same job is already succeeded
        """
        ...

    # Payouts
    def save_payout(self, record: PayoutRecord) -> str:
        """Insert a payout.

        Raises:
            DuplicatePayoutError: If the job already has a pending or paid payout
        """
        ...

    def get_payout(self, payout_id: str) -> Optional[PayoutRecord]:
        """Get a payout by ID."""
        ...

    def get_payout_by_transfer(self, transfer_id: str) -> Optional[PayoutRecord]:
        """Find a payout by processor transfer id."""
        ...

    def list_payouts(
        self,
        job_id: Optional[str] = None,
        status: Optional[PayoutStatus] = None,
    ) -> List[PayoutRecord]:
        """List payouts, oldest first."""
        ...

    def update_payout(
        self,
        payout_id: str,
        status: Optional[PayoutStatus] = None,
        transfer_id: Optional[str] = None,
        last_error: Optional[str] = None,
        next_attempt_at: Optional[datetime] = None,
    ) -> Optional[PayoutRecord]:
        """Update a payout. Returns None if not found.

        Raises:
            DuplicatePayoutError: If marking paid while another payout for
                the same job is already paid
        """
        ...

    # Ledger
    def append_ledger_entry(self, entry: LedgerEntry) -> str:
        """Append a ledger row.

        Raises:
            DuplicateEventError: If a row with the same (event_id, attempt,
                outcome) already exists
        """
        ...

    def get_ledger_entries(self, event_id: str) -> List[LedgerEntry]:
        """All ledger rows for one processor event, oldest first."""
        ...

    def list_ledger(self, job_id: Optional[str] = None, limit: int = 100) -> List[LedgerEntry]:
        """Ledger rows, newest first."""
        ...

    # Payout accounts
    def save_payout_account(self, account: AgencyPayoutAccount) -> None:
        """Insert or replace an agency's payout account."""
        ...

    def get_payout_account(self, agency_id: str) -> Optional[AgencyPayoutAccount]:
        """Get an agency's payout account."""
        ...

    def get_payout_account_by_account_id(self, account_id: str) -> Optional[AgencyPayoutAccount]:
        """Find a payout account by processor account id."""
        ...


class InMemoryPaymentStorage:
    """In-memory payment storage for testing and local development."""

    def __init__(self):
        """Initialize empty storage."""
        self._payments: dict[str, PaymentRecord] = {}  # payment_intent_id -> record
        self._payouts: dict[str, PayoutRecord] = {}  # id -> record
        self._ledger: list[LedgerEntry] = []
        self._accounts: dict[str, AgencyPayoutAccount] = {}  # agency_id -> account
        self._lock = threading.Lock()

    def _utc_now(self) -> datetime:
        """Get current UTC timestamp."""
        return datetime.now(timezone.utc)

    # === Payments ===

    def save_payment(self, record: PaymentRecord) -> str:
        """Insert a funding attempt."""
        with self._lock:
            if record.payment_intent_id in self._payments:
                raise ValueError(f"Payment intent already recorded: {record.payment_intent_id}")
            self._payments[record.payment_intent_id] = copy.copy(record)
        return record.id

    def get_payment_by_intent(self, payment_intent_id: str) -> Optional[PaymentRecord]:
        """Find a funding attempt by payment-intent id."""
        with self._lock:
            record = self._payments.get(payment_intent_id)
            return copy.copy(record) if record else None

    def list_payments(self, job_id: str) -> List[PaymentRecord]:
        """All funding attempts for a job."""
        with self._lock:
            records = [copy.copy(p) for p in self._payments.values() if p.job_id == job_id]
        return sorted(records, key=lambda p: p.created_at)

    def update_payment_status(
        self,
        payment_intent_id: str,
        status: PaymentStatus,
        charge_id: Optional[str] = None,
    ) -> Optional[PaymentRecord]:
        """Set a funding attempt's status."""
        status_val = status.value if isinstance(status, PaymentStatus) else status
        with self._lock:
            record = self._payments.get(payment_intent_id)
            if record is None:
                return None
            if status_val == PaymentStatus.SUCCEEDED.value:
                for other in self._payments.values():
                    if (
                        other.job_id == record.job_id
                        and other.payment_intent_id != payment_intent_id
                        and other.status == PaymentStatus.SUCCEEDED.value
                    ):
                        raise DoubleFundingError(record.job_id)
            updated = replace(
                record,
                status=status_val,
                charge_id=charge_id or record.charge_id,
                updated_at=self._utc_now(),
            )
            self._payments[payment_intent_id] = updated
            return copy.copy(updated)

    # === Payouts ===

    def save_payout(self, record: PayoutRecord) -> str:
        """Insert a payout."""
        with self._lock:
            for other in self._payouts.values():
                if other.job_id == record.job_id and other.status in ACTIVE_PAYOUT_STATUSES:
                    raise DuplicatePayoutError(record.job_id)
            self._payouts[record.id] = copy.copy(record)
        return record.id

    def get_payout(self, payout_id: str) -> Optional[PayoutRecord]:
        """Get a payout by ID."""
        with self._lock:
            record = self._payouts.get(payout_id)
            return copy.copy(record) if record else None

    def get_payout_by_transfer(self, transfer_id: str) -> Optional[PayoutRecord]:
        """Find a payout by transfer id."""
        with self._lock:
            for record in self._payouts.values():
                if record.transfer_id == transfer_id:
                    return copy.copy(record)
        return None

    def list_payouts(
        self,
        job_id: Optional[str] = None,
        status: Optional[PayoutStatus] = None,
    ) -> List[PayoutRecord]:
        """List payouts."""
        with self._lock:
            records = [copy.copy(p) for p in self._payouts.values()]
        if job_id is not None:
            records = [p for p in records if p.job_id == job_id]
        if status is not None:
            status_val = status.value if isinstance(status, PayoutStatus) else status
            records = [p for p in records if p.status == status_val]
        return sorted(records, key=lambda p: p.created_at)

    def update_payout(
        self,
        payout_id: str,
        status: Optional[PayoutStatus] = None,
        transfer_id: Optional[str] = None,
        last_error: Optional[str] = None,
        next_attempt_at: Optional[datetime] = None,
    ) -> Optional[PayoutRecord]:
        """Update a payout."""
        status_val = status.value if isinstance(status, PayoutStatus) else status
        with self._lock:
            record = self._payouts.get(payout_id)
            if record is None:
                return None
            if status_val == PayoutStatus.PAID.value:
                for other in self._payouts.values():
                    if (
                        other.job_id == record.job_id
                        and other.id != payout_id
                        and other.status == PayoutStatus.PAID.value
                    ):
                        raise DuplicatePayoutError(record.job_id)
            updated = replace(
                record,
                status=status_val or record.status,
                transfer_id=transfer_id or record.transfer_id,
                last_error=last_error if last_error is not None else record.last_error,
                next_attempt_at=next_attempt_at,
                updated_at=self._utc_now(),
            )
            self._payouts[payout_id] = updated
            return copy.copy(updated)

    # === Ledger ===

    def append_ledger_entry(self, entry: LedgerEntry) -> str:
        """Append a ledger row."""
        with self._lock:
            for existing in self._ledger:
                if (
                    existing.event_id == entry.event_id
                    and existing.attempt == entry.attempt
                    and existing.outcome == entry.outcome
                ):
                    raise DuplicateEventError(entry.event_id)
            self._ledger.append(copy.copy(entry))
        return entry.id

    def get_ledger_entries(self, event_id: str) -> List[LedgerEntry]:
        """All ledger rows for one event."""
        with self._lock:
            return [copy.copy(e) for e in self._ledger if e.event_id == event_id]

    def list_ledger(self, job_id: Optional[str] = None, limit: int = 100) -> List[LedgerEntry]:
        """Ledger rows, newest first."""
        with self._lock:
            entries = [copy.copy(e) for e in self._ledger]
        if job_id is not None:
            entries = [e for e in entries if e.job_id == job_id]
        entries.reverse()
        return entries[:limit]

    # === Payout accounts ===

    def save_payout_account(self, account: AgencyPayoutAccount) -> None:
        """Insert or replace an agency's payout account."""
        with self._lock:
            self._accounts[account.agency_id] = copy.copy(account)

    def get_payout_account(self, agency_id: str) -> Optional[AgencyPayoutAccount]:
        """Get an agency's payout account."""
        with self._lock:
            account = self._accounts.get(agency_id)
            return copy.copy(account) if account else None

    def get_payout_account_by_account_id(self, account_id: str) -> Optional[AgencyPayoutAccount]:
        """Find a payout account by processor account id."""
        with self._lock:
            for account in self._accounts.values():
                if account.account_id == account_id:
                    return copy.copy(account)
        return None
