"""SQLite storage backend.

One database file holds jobs, the transition audit log, payments, payouts,
the ledger and payout accounts. :class:`SQLiteStorage` satisfies both
:class:`~scalingad.jobs.storage.JobStorage` and
:class:`~scalingad.payments.storage.PaymentStorage`.

Connections are opened per operation; each operation is one transaction.
Job status changes are a compare-and-swap::

    UPDATE jobs SET status = ?, updated_at = ? WHERE id = ? AND status = ?
"""

import contextlib
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple, Union

from scalingad.errors import DoubleFundingError, DuplicateEventError, DuplicatePayoutError
from scalingad.jobs.models import Job, JobStateTransition, JobStatus
from scalingad.jobs.storage import CONFLICT, NOT_FOUND
from scalingad.payments.models import (
    AgencyPayoutAccount,
    LedgerEntry,
    PaymentRecord,
    PaymentStatus,
    PayoutRecord,
    PayoutStatus,
)
from scalingad.storage.schema import init_db

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _enum_value(value):
    return value.value if hasattr(value, "value") else value


class SQLiteStorage:
    """SQLite-backed job and payment storage."""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _utc_now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """One transaction: commit on success, roll back on error, always close."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        with self._connect() as conn:
            init_db(conn)

    # =========================================================================
    # Jobs
    # =========================================================================

    def save_job(self, job: Job) -> str:
        now = self._utc_now()
        data = job.to_dict()
        with self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO jobs (id, deal_id, business_id, agency_id, title, description,
                                      amount, currency, platform_fee, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        data["id"],
                        data["deal_id"],
                        data["business_id"],
                        data["agency_id"],
                        data["title"],
                        data["description"],
                        data["amount"],
                        data["currency"],
                        data["platform_fee"],
                        data["status"],
                        data["created_at"] or now.isoformat(),
                        data["updated_at"] or now.isoformat(),
                    ),
                )
            except sqlite3.IntegrityError:
                raise ValueError(f"Job already exists: {job.id}")
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return Job.from_dict(dict(row)) if row else None

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        business_id: Optional[str] = None,
        agency_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        clauses = []
        params: list = []
        if status is not None:
            clauses.append("status = ?")
            params.append(_enum_value(status))
        if business_id is not None:
            clauses.append("business_id = ?")
            params.append(business_id)
        if agency_id is not None:
            clauses.append("agency_id = ?")
            params.append(agency_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([limit, offset])
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM jobs {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                params,
            ).fetchall()
        return [Job.from_dict(dict(r)) for r in rows]

    def update_job_status(
        self,
        job_id: str,
        expected_status: str,
        new_status: str,
        updated_at: datetime,
    ) -> Tuple[Optional[Job], Optional[str]]:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE jobs SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (new_status, updated_at.isoformat(), job_id, expected_status),
            )
            if cur.rowcount == 0:
                row = conn.execute("SELECT status FROM jobs WHERE id = ?", (job_id,)).fetchone()
                if row is None:
                    return None, NOT_FOUND
                logger.warning(
                    f"Job status conflict | job={job_id} | expected={expected_status} "
                    f"| actual={row['status']}"
                )
                return None, CONFLICT
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return Job.from_dict(dict(row)), None

    def save_transition(self, transition: JobStateTransition) -> str:
        data = transition.to_dict()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO job_transitions (id, job_id, from_status, to_status, "trigger",
                                             actor_role, actor_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    data["id"],
                    data["job_id"],
                    data["from_status"],
                    data["to_status"],
                    data["trigger"],
                    data["actor_role"],
                    data["actor_id"],
                    data["created_at"],
                ),
            )
        return transition.id

    def get_transitions(self, job_id: str) -> List[JobStateTransition]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM job_transitions WHERE job_id = ? ORDER BY created_at, rowid",
                (job_id,),
            ).fetchall()
        return [JobStateTransition.from_dict(dict(r)) for r in rows]

    # =========================================================================
    # Payments
    # =========================================================================

    def save_payment(self, record: PaymentRecord) -> str:
        with self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO payments (id, job_id, payment_intent_id, charge_id, client_secret,
                                          amount, currency, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        record.job_id,
                        record.payment_intent_id,
                        record.charge_id,
                        record.client_secret,
                        str(record.amount),
                        record.currency,
                        record.status,
                        _iso(record.created_at),
                        _iso(record.updated_at),
                    ),
                )
            except sqlite3.IntegrityError as e:
                if "uq_payments_one_succeeded" in str(e) or record.status == PaymentStatus.SUCCEEDED.value:
                    raise DoubleFundingError(record.job_id)
                raise ValueError(f"Payment intent already recorded: {record.payment_intent_id}")
        return record.id

    def get_payment_by_intent(self, payment_intent_id: str) -> Optional[PaymentRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM payments WHERE payment_intent_id = ?", (payment_intent_id,)
            ).fetchone()
        return PaymentRecord.from_dict(dict(row)) if row else None

    def list_payments(self, job_id: str) -> List[PaymentRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM payments WHERE job_id = ? ORDER BY created_at, rowid", (job_id,)
            ).fetchall()
        return [PaymentRecord.from_dict(dict(r)) for r in rows]

    def update_payment_status(
        self,
        payment_intent_id: str,
        status: PaymentStatus,
        charge_id: Optional[str] = None,
    ) -> Optional[PaymentRecord]:
        status_val = _enum_value(status)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT job_id FROM payments WHERE payment_intent_id = ?", (payment_intent_id,)
            ).fetchone()
            if row is None:
                return None
            try:
                conn.execute(
                    """
                    UPDATE payments
                    SET status = ?, charge_id = COALESCE(?, charge_id), updated_at = ?
                    WHERE payment_intent_id = ?
                    """,
                    (status_val, charge_id, self._utc_now().isoformat(), payment_intent_id),
                )
            except sqlite3.IntegrityError:
                raise DoubleFundingError(row["job_id"])
            row = conn.execute(
                "SELECT * FROM payments WHERE payment_intent_id = ?", (payment_intent_id,)
            ).fetchone()
        return PaymentRecord.from_dict(dict(row))

    # =========================================================================
    # Payouts
    # =========================================================================

    def save_payout(self, record: PayoutRecord) -> str:
        with self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO payouts (id, job_id, transfer_id, amount, currency, status, attempt,
                                         idempotency_key, last_error, next_attempt_at,
                                         created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        record.job_id,
                        record.transfer_id,
                        str(record.amount),
                        record.currency,
                        record.status,
                        record.attempt,
                        record.idempotency_key,
                        record.last_error,
                        _iso(record.next_attempt_at),
                        _iso(record.created_at),
                        _iso(record.updated_at),
                    ),
                )
            except sqlite3.IntegrityError:
                raise DuplicatePayoutError(record.job_id)
        return record.id

    def get_payout(self, payout_id: str) -> Optional[PayoutRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM payouts WHERE id = ?", (payout_id,)).fetchone()
        return PayoutRecord.from_dict(dict(row)) if row else None

    def get_payout_by_transfer(self, transfer_id: str) -> Optional[PayoutRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM payouts WHERE transfer_id = ?", (transfer_id,)
            ).fetchone()
        return PayoutRecord.from_dict(dict(row)) if row else None

    def list_payouts(
        self,
        job_id: Optional[str] = None,
        status: Optional[PayoutStatus] = None,
    ) -> List[PayoutRecord]:
        clauses = []
        params: list = []
        if job_id is not None:
            clauses.append("job_id = ?")
            params.append(job_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(_enum_value(status))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM payouts {where} ORDER BY created_at, rowid", params
            ).fetchall()
        return [PayoutRecord.from_dict(dict(r)) for r in rows]

    def update_payout(
        self,
        payout_id: str,
        status: Optional[PayoutStatus] = None,
        transfer_id: Optional[str] = None,
        last_error: Optional[str] = None,
        next_attempt_at: Optional[datetime] = None,
    ) -> Optional[PayoutRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT job_id FROM payouts WHERE id = ?", (payout_id,)).fetchone()
            if row is None:
                return None
            try:
                conn.execute(
                    """
                    UPDATE payouts
                    SET status = COALESCE(?, status),
                        transfer_id = COALESCE(?, transfer_id),
                        last_error = COALESCE(?, last_error),
                        next_attempt_at = ?,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        _enum_value(status) if status is not None else None,
                        transfer_id,
                        last_error,
                        _iso(next_attempt_at),
                        self._utc_now().isoformat(),
                        payout_id,
                    ),
                )
            except sqlite3.IntegrityError:
                raise DuplicatePayoutError(row["job_id"])
            row = conn.execute("SELECT * FROM payouts WHERE id = ?", (payout_id,)).fetchone()
        return PayoutRecord.from_dict(dict(row))

    # =========================================================================
    # Ledger
    # =========================================================================

    def append_ledger_entry(self, entry: LedgerEntry) -> str:
        with self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO ledger_entries (id, event_id, event_type, outcome, attempt, job_id,
                                                object_id, livemode, payload, detail, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.id,
                        entry.event_id,
                        entry.event_type,
                        entry.outcome,
                        entry.attempt,
                        entry.job_id,
                        entry.object_id,
                        1 if entry.livemode else 0,
                        entry.payload,
                        entry.detail,
                        _iso(entry.created_at),
                    ),
                )
            except sqlite3.IntegrityError:
                raise DuplicateEventError(entry.event_id)
        return entry.id

    def get_ledger_entries(self, event_id: str) -> List[LedgerEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM ledger_entries WHERE event_id = ? ORDER BY rowid", (event_id,)
            ).fetchall()
        return [LedgerEntry.from_dict(dict(r)) for r in rows]

    def list_ledger(self, job_id: Optional[str] = None, limit: int = 100) -> List[LedgerEntry]:
        with self._connect() as conn:
            if job_id is not None:
                rows = conn.execute(
                    "SELECT * FROM ledger_entries WHERE job_id = ? ORDER BY rowid DESC LIMIT ?",
                    (job_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM ledger_entries ORDER BY rowid DESC LIMIT ?", (limit,)
                ).fetchall()
        return [LedgerEntry.from_dict(dict(r)) for r in rows]

    # =========================================================================
    # Payout accounts
    # =========================================================================

    def save_payout_account(self, account: AgencyPayoutAccount) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO payout_accounts (agency_id, account_id, onboarding_complete,
                                             payouts_enabled, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(agency_id) DO UPDATE SET
                    account_id = excluded.account_id,
                    onboarding_complete = excluded.onboarding_complete,
                    payouts_enabled = excluded.payouts_enabled,
                    updated_at = excluded.updated_at
                """,
                (
                    account.agency_id,
                    account.account_id,
                    1 if account.onboarding_complete else 0,
                    1 if account.payouts_enabled else 0,
                    _iso(account.updated_at),
                ),
            )

    def get_payout_account(self, agency_id: str) -> Optional[AgencyPayoutAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM payout_accounts WHERE agency_id = ?", (agency_id,)
            ).fetchone()
        return AgencyPayoutAccount.from_dict(dict(row)) if row else None

    def get_payout_account_by_account_id(self, account_id: str) -> Optional[AgencyPayoutAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM payout_accounts WHERE account_id = ?", (account_id,)
            ).fetchone()
        return AgencyPayoutAccount.from_dict(dict(row)) if row else None
