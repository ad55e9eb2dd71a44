"""Payment records, payouts, the event ledger and the processor client."""

from scalingad.payments.models import (
    AgencyPayoutAccount,
    LedgerEntry,
    LedgerOutcome,
    PaymentRecord,
    PaymentStatus,
    PayoutRecord,
    PayoutStatus,
)
from scalingad.payments.storage import InMemoryPaymentStorage, PaymentStorage

__all__ = [
    "AgencyPayoutAccount",
    "LedgerEntry",
    "LedgerOutcome",
    "PaymentRecord",
    "PaymentStatus",
    "PayoutRecord",
    "PayoutStatus",
    "PaymentStorage",
    "InMemoryPaymentStorage",
]
