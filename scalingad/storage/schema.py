"""Database schema for scalingad SQLite storage.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Database initialization (init_db)

The money invariants are enforced by the database itself through partial
unique indexes, so they hold even with several writer processes:
- one succeeded payment per job
- one pending-or-paid payout per job
- one ledger row per (event_id, attempt, outcome)
"""

import logging
import sqlite3

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    deal_id TEXT,
    business_id TEXT NOT NULL,
    agency_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    platform_fee TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_business ON jobs(business_id);
CREATE INDEX IF NOT EXISTS idx_jobs_agency ON jobs(agency_id);

CREATE TABLE IF NOT EXISTS job_transitions (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES jobs(id),
    from_status TEXT,
    to_status TEXT NOT NULL,
    "trigger" TEXT NOT NULL,
    actor_role TEXT NOT NULL,
    actor_id TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_transitions_job ON job_transitions(job_id, created_at);

CREATE TABLE IF NOT EXISTS payments (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES jobs(id),
    payment_intent_id TEXT NOT NULL UNIQUE,
    charge_id TEXT,
    client_secret TEXT,
    amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_payments_job ON payments(job_id);
CREATE UNIQUE INDEX IF NOT EXISTS uq_payments_one_succeeded
    ON payments(job_id) WHERE status = 'succeeded';

CREATE TABLE IF NOT EXISTS payouts (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES jobs(id),
    transfer_id TEXT,
    amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    status TEXT NOT NULL,
    attempt INTEGER NOT NULL DEFAULT 1,
    idempotency_key TEXT NOT NULL UNIQUE,
    last_error TEXT,
    next_attempt_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_payouts_job ON payouts(job_id);
CREATE INDEX IF NOT EXISTS idx_payouts_transfer ON payouts(transfer_id);
CREATE UNIQUE INDEX IF NOT EXISTS uq_payouts_one_active
    ON payouts(job_id) WHERE status IN ('pending', 'paid');

CREATE TABLE IF NOT EXISTS ledger_entries (
    id TEXT PRIMARY KEY,
    event_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    outcome TEXT NOT NULL,
    attempt INTEGER NOT NULL DEFAULT 1,
    job_id TEXT,
    object_id TEXT,
    livemode INTEGER NOT NULL DEFAULT 0,
    payload TEXT,
    detail TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (event_id, attempt, outcome)
);
CREATE INDEX IF NOT EXISTS idx_ledger_job ON ledger_entries(job_id);

CREATE TABLE IF NOT EXISTS payout_accounts (
    agency_id TEXT PRIMARY KEY,
    account_id TEXT UNIQUE,
    onboarding_complete INTEGER NOT NULL DEFAULT 0,
    payouts_enabled INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

-- Ledger rows are never updated or deleted
CREATE TRIGGER IF NOT EXISTS ledger_no_update
    BEFORE UPDATE ON ledger_entries
    BEGIN SELECT RAISE(ABORT, 'ledger entries are append-only'); END;
CREATE TRIGGER IF NOT EXISTS ledger_no_delete
    BEFORE DELETE ON ledger_entries
    BEGIN SELECT RAISE(ABORT, 'ledger entries are append-only'); END;
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create tables if missing and record the schema version."""
    conn.executescript(SCHEMA)

    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif row[0] > SCHEMA_VERSION:
        logger.warning(
            f"Database schema version {row[0]} is newer than this code ({SCHEMA_VERSION})"
        )
    elif row[0] < SCHEMA_VERSION:
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
