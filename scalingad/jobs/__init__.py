"""Job lifecycle subsystem.

Models:
- Job: A commissioned unit of work between a business and an agency
- JobStatus / JobTrigger / ActorRole: The state machine vocabulary
- TRANSITION_TABLE: Every legal (status, trigger) edge and who may take it
- JobStateTransition: Audit log entry for state changes

Engine:
- JobEngine: The only writer of job status (optimistic compare-and-swap)

The command API, JobService, lives in ``scalingad.jobs.service``.
"""

from scalingad.jobs.engine import JobEngine
from scalingad.jobs.models import (
    FUNDED_STATUSES,
    TERMINAL_STATUSES,
    TRANSITION_TABLE,
    VALID_JOB_TRANSITIONS,
    ActorRole,
    Job,
    JobStateTransition,
    JobStatus,
    JobTrigger,
    compute_platform_fee,
)
from scalingad.jobs.storage import InMemoryJobStorage, JobStorage

__all__ = [
    # Models
    "Job",
    "JobStatus",
    "JobTrigger",
    "ActorRole",
    "JobStateTransition",
    "TRANSITION_TABLE",
    "VALID_JOB_TRANSITIONS",
    "TERMINAL_STATUSES",
    "FUNDED_STATUSES",
    "compute_platform_fee",
    # Storage
    "JobStorage",
    "InMemoryJobStorage",
    # Engine
    "JobEngine",
]
