"""Error taxonomy for the job escrow engine.

Every error raised by the engine, the command service and the webhook
ingestion path derives from :class:`EscrowError`, so callers (the HTTP
backend, the CLI) can map the whole family in one place.
"""

from typing import Optional


class EscrowError(Exception):
    """Base exception for escrow engine errors."""

    pass


class ValidationError(EscrowError):
    """Bad input. Nothing was written."""

    pass


class ForbiddenError(EscrowError):
    """The caller is not the party allowed to perform the action."""

    pass


class JobNotFoundError(EscrowError):
    """Referenced job does not exist."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidTransitionError(EscrowError):
    """The trigger has no edge out of the job's current status."""

    def __init__(self, job_id: str, current_status: str, trigger: str, reason: Optional[str] = None):
        message = f"Cannot {trigger} job {job_id} in status '{current_status}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.job_id = job_id
        self.current_status = current_status
        self.trigger = trigger


class StaleStateError(EscrowError):
    """Optimistic-concurrency conflict; the caller must re-read and retry."""

    def __init__(self, job_id: str, expected_status: str, actual_status: Optional[str] = None):
        super().__init__(
            f"Job {job_id} changed concurrently: expected status '{expected_status}', "
            f"found '{actual_status}'"
        )
        self.job_id = job_id
        self.expected_status = expected_status
        self.actual_status = actual_status


class SignatureInvalidError(EscrowError):
    """Webhook payload failed signature verification."""

    pass


class DuplicateEventError(EscrowError):
    """Processor event was already received. Handled internally as a no-op."""

    def __init__(self, event_id: str):
        super().__init__(f"Event already received: {event_id}")
        self.event_id = event_id


class DoubleFundingError(EscrowError):
    """A job already has a succeeded payment record."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} already has a succeeded payment")
        self.job_id = job_id


class PaymentProcessorError(EscrowError):
    """An outbound call to the payment processor failed."""

    def __init__(self, message: str, retryable: bool = False, status_code: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class DuplicatePayoutError(EscrowError):
    """A job already has an active or paid payout."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} already has an active payout")
        self.job_id = job_id
