"""Job data models and the lifecycle state table.

A job is one commissioned unit of work between a business and an agency.
Its ``status`` is the single source of truth for which actions are legal;
the legal moves are listed once, in :data:`TRANSITION_TABLE`.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, NamedTuple, Optional, Set, Tuple

MAX_TITLE_LENGTH = 200

# ISO 4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset({"BIF", "CLP", "JPY", "KRW", "PYG", "UGX", "VND", "XAF", "XOF"})


class JobStatus(Enum):
    """Job lifecycle status."""

    DRAFT = "draft"  # edit session, not yet submitted to the agency
    PENDING = "pending"  # waiting for agency acceptance
    DECLINED = "declined"
    UNFUNDED = "unfunded"  # accepted, awaiting payment
    FUNDED = "funded"  # business paid, funds held by the platform
    IN_PROGRESS = "in_progress"
    REVIEW = "review"  # submitted, awaiting business approval
    REVISION = "revision"  # business requested changes
    APPROVED = "approved"  # payout to the agency requested
    PAID_OUT = "paid_out"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class JobTrigger(Enum):
    """Events that move a job between statuses."""

    ACCEPT = "accept"
    DECLINE = "decline"
    FUND = "fund"
    START_WORK = "start_work"
    SUBMIT = "submit"
    REQUEST_REVISION = "request_revision"
    RESUBMIT = "resubmit"
    APPROVE = "approve"
    PAY_OUT = "pay_out"
    CANCEL = "cancel"
    REFUND = "refund"


class ActorRole(Enum):
    """Who is asking for a transition."""

    BUSINESS = "business"
    AGENCY = "agency"
    SYSTEM = "system"  # payment processor callbacks


TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.DECLINED, JobStatus.PAID_OUT, JobStatus.CANCELLED, JobStatus.REFUNDED}
)

# Funds are captured and held by the platform in these statuses
FUNDED_STATUSES: FrozenSet[JobStatus] = frozenset(
    {
        JobStatus.FUNDED,
        JobStatus.IN_PROGRESS,
        JobStatus.REVIEW,
        JobStatus.REVISION,
        JobStatus.APPROVED,
    }
)


class TransitionRule(NamedTuple):
    """Target status of an edge and the roles allowed to take it."""

    to_status: JobStatus
    roles: FrozenSet[ActorRole]


def _rule(to_status: JobStatus, *roles: ActorRole) -> TransitionRule:
    return TransitionRule(to_status, frozenset(roles))


_B = ActorRole.BUSINESS
_A = ActorRole.AGENCY
_S = ActorRole.SYSTEM

TRANSITION_TABLE: Dict[Tuple[JobStatus, JobTrigger], TransitionRule] = {
    (JobStatus.PENDING, JobTrigger.ACCEPT): _rule(JobStatus.UNFUNDED, _A),
    (JobStatus.PENDING, JobTrigger.DECLINE): _rule(JobStatus.DECLINED, _A),
    (JobStatus.PENDING, JobTrigger.CANCEL): _rule(JobStatus.CANCELLED, _B),
    (JobStatus.UNFUNDED, JobTrigger.FUND): _rule(JobStatus.FUNDED, _S),
    (JobStatus.UNFUNDED, JobTrigger.CANCEL): _rule(JobStatus.CANCELLED, _B),
    (JobStatus.FUNDED, JobTrigger.START_WORK): _rule(JobStatus.IN_PROGRESS, _A),
    (JobStatus.IN_PROGRESS, JobTrigger.SUBMIT): _rule(JobStatus.REVIEW, _A),
    (JobStatus.REVIEW, JobTrigger.APPROVE): _rule(JobStatus.APPROVED, _B),
    (JobStatus.REVIEW, JobTrigger.REQUEST_REVISION): _rule(JobStatus.REVISION, _B),
    (JobStatus.REVISION, JobTrigger.RESUBMIT): _rule(JobStatus.REVIEW, _A),
    (JobStatus.APPROVED, JobTrigger.PAY_OUT): _rule(JobStatus.PAID_OUT, _S),
}

# A refund confirmed by the processor lands from any funded status
for _status in FUNDED_STATUSES:
    TRANSITION_TABLE[(_status, JobTrigger.REFUND)] = _rule(JobStatus.REFUNDED, _S)

# Status-level view of the table: from_status -> reachable statuses
VALID_JOB_TRANSITIONS: Dict[str, Set[str]] = {}
for (_from, _trigger), _r in TRANSITION_TABLE.items():
    VALID_JOB_TRANSITIONS.setdefault(_from.value, set()).add(_r.to_status.value)


def lookup_transition(status: str, trigger: str, role: str) -> Optional[JobStatus]:
    """Return the target status for (status, trigger, role), or None if illegal."""
    try:
        key = (JobStatus(status), JobTrigger(trigger))
        actor = ActorRole(role)
    except ValueError:
        return None
    rule = TRANSITION_TABLE.get(key)
    if rule is None or actor not in rule.roles:
        return None
    return rule.to_status


def is_terminal(status: str) -> bool:
    """Check whether a status is terminal."""
    return JobStatus(status) in TERMINAL_STATUSES


# =============================================================================
# Money
# =============================================================================


def currency_exponent(currency: str) -> int:
    """Number of minor-unit digits for a currency (2 for USD, 0 for JPY)."""
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def quantize_amount(amount: Decimal, currency: str) -> Decimal:
    """Round an amount to the currency's minor unit, half up."""
    exp = Decimal(1).scaleb(-currency_exponent(currency))
    return amount.quantize(exp, rounding=ROUND_HALF_UP)


def compute_platform_fee(amount: Decimal, rate: Decimal, currency: str) -> Decimal:
    """Platform fee for a job amount. Computed once, at job creation."""
    return quantize_amount(Decimal(amount) * Decimal(rate), currency)


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a decimal amount to integer minor units (cents)."""
    return int(quantize_amount(amount, currency).scaleb(currency_exponent(currency)))


def from_minor_units(value: int, currency: str) -> Decimal:
    """Convert integer minor units back to a decimal amount."""
    return quantize_amount(Decimal(value).scaleb(-currency_exponent(currency)), currency)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


# =============================================================================
# Entities
# =============================================================================


@dataclass
class Job:
    """A commissioned unit of work between a business and an agency.

    ``amount`` and ``platform_fee`` are fixed at creation. The agency's share
    is derived from them on demand and never stored.
    """

    id: str
    business_id: str
    agency_id: str
    title: str
    amount: Decimal
    platform_fee: Decimal
    currency: str = "USD"
    deal_id: Optional[str] = None
    description: str = ""
    status: str = JobStatus.PENDING.value
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = Decimal(str(self.amount))
        self.platform_fee = Decimal(str(self.platform_fee))
        self.currency = self.currency.upper()

        if self.amount <= 0:
            raise ValueError("Amount must be positive")
        if self.platform_fee < 0 or self.platform_fee > self.amount:
            raise ValueError("Platform fee must be between zero and the amount")
        if not self.title or not self.title.strip():
            raise ValueError("Title is required")
        if len(self.title) > MAX_TITLE_LENGTH:
            raise ValueError(f"Title too long (max {MAX_TITLE_LENGTH} characters)")

        valid = {s.value for s in JobStatus}
        if self.status not in valid:
            raise ValueError(f"Invalid status: {self.status}")

    @property
    def agency_receives(self) -> Decimal:
        """What the agency is paid out: amount minus the platform fee."""
        return self.amount - self.platform_fee

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for storage and API responses. Money as strings."""
        return {
            "id": self.id,
            "deal_id": self.deal_id,
            "business_id": self.business_id,
            "agency_id": self.agency_id,
            "title": self.title,
            "description": self.description,
            "amount": str(self.amount),
            "currency": self.currency,
            "platform_fee": str(self.platform_fee),
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        """Build a Job from a storage row."""
        return cls(
            id=data["id"],
            deal_id=data.get("deal_id"),
            business_id=data["business_id"],
            agency_id=data["agency_id"],
            title=data["title"],
            description=data.get("description") or "",
            amount=Decimal(str(data["amount"])),
            currency=data.get("currency") or "USD",
            platform_fee=Decimal(str(data["platform_fee"])),
            status=data.get("status") or JobStatus.PENDING.value,
            created_at=_parse_datetime(data.get("created_at")),
            updated_at=_parse_datetime(data.get("updated_at")),
        )


@dataclass
class JobStateTransition:
    """Audit log entry for a committed status change."""

    job_id: str
    from_status: Optional[str]
    to_status: str
    trigger: str
    actor_role: str
    actor_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "trigger": self.trigger,
            "actor_role": self.actor_role,
            "actor_id": self.actor_id,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobStateTransition":
        return cls(
            id=data["id"],
            job_id=data["job_id"],
            from_status=data.get("from_status"),
            to_status=data["to_status"],
            trigger=data["trigger"],
            actor_role=data["actor_role"],
            actor_id=data.get("actor_id"),
            created_at=_parse_datetime(data["created_at"]),
        )
