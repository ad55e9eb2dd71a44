"""Job state machine.

:class:`JobEngine` is the only writer of ``Job.status``. Both the command
service (user actions) and webhook ingestion (processor callbacks) funnel
into :meth:`JobEngine.apply_transition`, so the legality rules in
:data:`~scalingad.jobs.models.TRANSITION_TABLE` are enforced in one place.

Writes are optimistic: the engine reads the job, computes the next status,
and asks storage for a conditional update keyed on the status it read. If
another writer got there first the update misses and the caller receives
:class:`~scalingad.errors.StaleStateError`.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Union

from scalingad.errors import InvalidTransitionError, JobNotFoundError, StaleStateError
from scalingad.jobs.models import ActorRole, Job, JobStateTransition, JobTrigger, lookup_transition
from scalingad.jobs.storage import CONFLICT, NOT_FOUND, JobStorage
from scalingad.notifications import NotificationOutbox, StatusChangeEvent

logger = logging.getLogger(__name__)


class JobEngine:
    """Validates and commits job status transitions."""

    def __init__(self, storage: JobStorage, outbox: Optional[NotificationOutbox] = None):
        self.storage = storage
        self.outbox = outbox

    def _utc_now(self) -> datetime:
        return datetime.now(timezone.utc)

    def get_job(self, job_id: str) -> Job:
        """Get a job or raise JobNotFoundError."""
        job = self.storage.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def can_apply(self, job: Job, trigger: Union[JobTrigger, str], actor_role: Union[ActorRole, str]) -> bool:
        """Check whether a trigger is legal for a job without writing anything."""
        trigger_val = trigger.value if isinstance(trigger, JobTrigger) else trigger
        role_val = actor_role.value if isinstance(actor_role, ActorRole) else actor_role
        return lookup_transition(job.status, trigger_val, role_val) is not None

    def apply_transition(
        self,
        job_id: str,
        trigger: Union[JobTrigger, str],
        actor_role: Union[ActorRole, str],
        actor_id: Optional[str] = None,
    ) -> Job:
        """Apply a trigger to a job and commit the resulting status.

        Args:
            job_id: Job to transition
            trigger: Requested trigger
            actor_role: Role of the caller (business, agency, system)
            actor_id: Identity of the caller, recorded in the audit log

        Returns:
            The job as committed

        Raises:
            JobNotFoundError: If the job doesn't exist
            InvalidTransitionError: If the current status has no edge for
                this trigger and role. Nothing is written.
            StaleStateError: If the status changed between read and write
        """
        trigger_val = trigger.value if isinstance(trigger, JobTrigger) else trigger
        role_val = actor_role.value if isinstance(actor_role, ActorRole) else actor_role

        job = self.get_job(job_id)
        from_status = job.status

        target = lookup_transition(from_status, trigger_val, role_val)
        if target is None:
            logger.info(
                f"Rejected transition | job={job_id} | status={from_status} "
                f"| trigger={trigger_val} | role={role_val}"
            )
            raise InvalidTransitionError(job_id, from_status, trigger_val)

        updated, error = self.storage.update_job_status(
            job_id,
            expected_status=from_status,
            new_status=target.value,
            updated_at=self._utc_now(),
        )
        if error == NOT_FOUND:
            raise JobNotFoundError(job_id)
        if error == CONFLICT or updated is None:
            current = self.storage.get_job(job_id)
            raise StaleStateError(job_id, from_status, current.status if current else None)

        self.storage.save_transition(
            JobStateTransition(
                job_id=job_id,
                from_status=from_status,
                to_status=updated.status,
                trigger=trigger_val,
                actor_role=role_val,
                actor_id=actor_id,
                created_at=updated.updated_at,
            )
        )

        logger.info(
            f"Job transitioned | job={job_id} | {from_status} -> {updated.status} "
            f"| trigger={trigger_val} | role={role_val}"
        )

        if self.outbox is not None:
            self.outbox.publish(
                StatusChangeEvent(
                    job_id=job_id,
                    old_status=from_status,
                    new_status=updated.status,
                    trigger=trigger_val,
                )
            )

        return updated
