"""Payment-side records: funding attempts, payouts, the event ledger.

All monetary values are Decimal in the job's currency. Processor
identifiers (payment intent, charge, transfer, account ids) are opaque
strings used as lookup keys and never parsed.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class PaymentStatus(Enum):
    """Funding attempt states."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class PayoutStatus(Enum):
    """Transfer-to-agency states."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class LedgerOutcome(Enum):
    """What happened to a received processor event."""

    RECEIVED = "received"  # appended before dispatch
    APPLIED = "applied"  # effects written
    IGNORED = "ignored"  # acknowledged with nothing to do (unknown type, unknown job)
    REJECTED = "rejected"  # semantically final refusal (illegal transition, double funding)
    FAILED = "failed"  # internal error; the processor will redeliver


# Outcomes that close an attempt
CLOSING_OUTCOMES = frozenset(
    {LedgerOutcome.APPLIED.value, LedgerOutcome.IGNORED.value, LedgerOutcome.REJECTED.value}
)


@dataclass
class PaymentRecord:
    """One funding attempt (a payment intent) against a job."""

    job_id: str
    payment_intent_id: str
    amount: Decimal
    currency: str = "USD"
    status: str = PaymentStatus.PENDING.value
    charge_id: Optional[str] = None
    client_secret: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = Decimal(str(self.amount))
        if self.amount <= 0:
            raise ValueError("Payment amount must be positive")
        valid = {s.value for s in PaymentStatus}
        if self.status not in valid:
            raise ValueError(f"Invalid payment status: {self.status}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "payment_intent_id": self.payment_intent_id,
            "charge_id": self.charge_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentRecord":
        return cls(
            id=data["id"],
            job_id=data["job_id"],
            payment_intent_id=data["payment_intent_id"],
            charge_id=data.get("charge_id"),
            client_secret=data.get("client_secret"),
            amount=Decimal(str(data["amount"])),
            currency=data.get("currency") or "USD",
            status=data["status"],
            created_at=_parse_datetime(data["created_at"]),
            updated_at=_parse_datetime(data.get("updated_at")),
        )


@dataclass
class PayoutRecord:
    """One transfer of the agency's share after approval."""

    job_id: str
    amount: Decimal
    idempotency_key: str
    currency: str = "USD"
    attempt: int = 1
    status: str = PayoutStatus.PENDING.value
    transfer_id: Optional[str] = None
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = Decimal(str(self.amount))
        if self.amount <= 0:
            raise ValueError("Payout amount must be positive")
        valid = {s.value for s in PayoutStatus}
        if self.status not in valid:
            raise ValueError(f"Invalid payout status: {self.status}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "transfer_id": self.transfer_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status,
            "attempt": self.attempt,
            "idempotency_key": self.idempotency_key,
            "last_error": self.last_error,
            "next_attempt_at": _iso(self.next_attempt_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PayoutRecord":
        return cls(
            id=data["id"],
            job_id=data["job_id"],
            transfer_id=data.get("transfer_id"),
            amount=Decimal(str(data["amount"])),
            currency=data.get("currency") or "USD",
            status=data["status"],
            attempt=int(data.get("attempt") or 1),
            idempotency_key=data["idempotency_key"],
            last_error=data.get("last_error"),
            next_attempt_at=_parse_datetime(data.get("next_attempt_at")),
            created_at=_parse_datetime(data["created_at"]),
            updated_at=_parse_datetime(data.get("updated_at")),
        )


@dataclass
class LedgerEntry:
    """Append-only row for a processor event. Never updated or deleted."""

    event_id: str
    event_type: str
    outcome: str = LedgerOutcome.RECEIVED.value
    attempt: int = 1
    job_id: Optional[str] = None
    object_id: Optional[str] = None
    livemode: bool = False
    payload: Optional[str] = None  # raw JSON body, kept for replay
    detail: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utc_now)

    def __post_init__(self):
        valid = {o.value for o in LedgerOutcome}
        if self.outcome not in valid:
            raise ValueError(f"Invalid ledger outcome: {self.outcome}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "outcome": self.outcome,
            "attempt": self.attempt,
            "job_id": self.job_id,
            "object_id": self.object_id,
            "livemode": self.livemode,
            "payload": self.payload,
            "detail": self.detail,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerEntry":
        return cls(
            id=data["id"],
            event_id=data["event_id"],
            event_type=data["event_type"],
            outcome=data["outcome"],
            attempt=int(data.get("attempt") or 1),
            job_id=data.get("job_id"),
            object_id=data.get("object_id"),
            livemode=bool(data.get("livemode")),
            payload=data.get("payload"),
            detail=data.get("detail"),
            created_at=_parse_datetime(data["created_at"]),
        )


@dataclass
class AgencyPayoutAccount:
    """An agency's connected account at the payment processor."""

    agency_id: str
    account_id: Optional[str] = None
    onboarding_complete: bool = False
    payouts_enabled: bool = False
    updated_at: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agency_id": self.agency_id,
            "account_id": self.account_id,
            "onboarding_complete": self.onboarding_complete,
            "payouts_enabled": self.payouts_enabled,
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgencyPayoutAccount":
        return cls(
            agency_id=data["agency_id"],
            account_id=data.get("account_id"),
            onboarding_complete=bool(data.get("onboarding_complete")),
            payouts_enabled=bool(data.get("payouts_enabled")),
            updated_at=_parse_datetime(data.get("updated_at")) or _utc_now(),
        )
