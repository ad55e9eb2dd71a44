"""
Jobs storage layer.

Defines the persistence protocol for jobs and their transition audit log,
plus an in-memory backend for tests and local development. Durable
backends live in :mod:`scalingad.storage.sqlite` and the HTTP backend's
Supabase adapter.
"""

import copy
import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Tuple

from scalingad.jobs.models import Job, JobStateTransition, JobStatus

logger = logging.getLogger(__name__)

# Reasons returned by update_job_status when the conditional write misses
NOT_FOUND = "not_found"
CONFLICT = "conflict"


class JobStorage(Protocol):
    """Protocol for job persistence backends."""

    def save_job(self, job: Job) -> str:
        """Insert a new job. Returns the job ID."""
        ...

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        ...

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        business_id: Optional[str] = None,
        agency_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        """List jobs with optional filters, newest first."""
        ...

    def update_job_status(
        self,
        job_id: str,
        expected_status: str,
        new_status: str,
        updated_at: datetime,
    ) -> Tuple[Optional[Job], Optional[str]]:
        """Atomically move a job from ``expected_status`` to ``new_status``.

        Returns:
            Tuple of (updated_job, error).
            - If successful: (job, None)
            - If the job does not exist: (None, "not_found")
            - If the stored status is no longer ``expected_status``: (None, "conflict")
        """
        ...

    # Transitions (audit log)
    def save_transition(self, transition: JobStateTransition) -> str:
        """Save a state transition record. Returns the transition ID."""
        ...

    def get_transitions(self, job_id: str) -> List[JobStateTransition]:
        """Get all state transitions for a job, oldest first."""
        ...


class InMemoryJobStorage:
    """In-memory job storage for testing and local development.

    A single lock makes the compare-and-swap in :meth:`update_job_status`
    atomic across threads. Stored jobs are never handed out directly; callers
    get copies so a stale read can't be mutated into the store.
    """

    def __init__(self):
        """Initialize empty storage."""
        self._jobs: dict[str, Job] = {}
        self._transitions: dict[str, list[JobStateTransition]] = {}  # job_id -> list
        self._lock = threading.Lock()

    def _utc_now(self) -> datetime:
        """Get current UTC timestamp."""
        return datetime.now(timezone.utc)

    # === Jobs ===

    def save_job(self, job: Job) -> str:
        """Insert a new job."""
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job already exists: {job.id}")
            self._jobs[job.id] = copy.copy(job)
            self._transitions.setdefault(job.id, [])
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.copy(job) if job else None

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        business_id: Optional[str] = None,
        agency_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        """List jobs with optional filters."""
        with self._lock:
            jobs = [copy.copy(j) for j in self._jobs.values()]

        if status is not None:
            status_val = status.value if isinstance(status, JobStatus) else status
            jobs = [j for j in jobs if j.status == status_val]
        if business_id is not None:
            jobs = [j for j in jobs if j.business_id == business_id]
        if agency_id is not None:
            jobs = [j for j in jobs if j.agency_id == agency_id]

        # Sort by created_at desc
        jobs.sort(key=lambda j: j.created_at or self._utc_now(), reverse=True)

        return jobs[offset : offset + limit]

    def update_job_status(
        self,
        job_id: str,
        expected_status: str,
        new_status: str,
        updated_at: datetime,
    ) -> Tuple[Optional[Job], Optional[str]]:
        """Compare-and-swap the job status."""
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                return None, NOT_FOUND
            if current.status != expected_status:
                logger.warning(
                    f"Status conflict on job {job_id}: "
                    f"expected '{expected_status}', found '{current.status}'"
                )
                return None, CONFLICT
            updated = replace(current, status=new_status, updated_at=updated_at)
            self._jobs[job_id] = updated
            return copy.copy(updated), None

    # === Transitions ===

    def save_transition(self, transition: JobStateTransition) -> str:
        """Save a state transition record."""
        with self._lock:
            self._transitions.setdefault(transition.job_id, []).append(transition)
        return transition.id

    def get_transitions(self, job_id: str) -> List[JobStateTransition]:
        """Get all state transitions for a job."""
        with self._lock:
            transitions = list(self._transitions.get(job_id, []))
        # Sort by created_at asc
        return sorted(transitions, key=lambda t: t.created_at)
