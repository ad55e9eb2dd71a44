"""Job routes: the command API for businesses and agencies.

Domain errors raised by the services propagate to the ``EscrowError``
handler in ``app.main``, which maps them to HTTP status codes.
"""

from decimal import Decimal
from typing import Callable

from fastapi import APIRouter, Query, Request, status
from pydantic import BaseModel, Field

from scalingad.errors import EscrowError
from scalingad.jobs.models import Job, JobStateTransition, JobStatus
from scalingad.payments.models import PaymentRecord, PayoutRecord

from ..auth import AgencyActor, BusinessActor, CurrentActor, ROLE_AGENCY, ROLE_BUSINESS
from ..database import Escrow
from ..logging_config import get_logger, log_transition
from ..rate_limit import COMMAND_LIMIT, MONEY_LIMIT, QUERY_LIMIT, limiter

logger = get_logger("scalingad.api.jobs")
router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])


# =============================================================================
# Request/Response Models
# =============================================================================


class JobCreate(BaseModel):
    """Request to create a job for an agency."""

    agency_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., gt=0)
    currency: str | None = Field(None, min_length=3, max_length=3)
    description: str = ""
    deal_id: str | None = None


class JobResponse(BaseModel):
    """Job details response. Money is serialized as decimal strings."""

    id: str
    deal_id: str | None = None
    business_id: str
    agency_id: str
    title: str
    description: str
    amount: str
    currency: str
    platform_fee: str
    agency_receives: str
    status: str
    created_at: str
    updated_at: str | None = None


class JobListResponse(BaseModel):
    """Page of jobs, newest first."""

    jobs: list[JobResponse]
    limit: int
    offset: int


class TransitionResponse(BaseModel):
    id: str
    from_status: str | None = None
    to_status: str
    trigger: str
    actor_role: str
    actor_id: str | None = None
    created_at: str


class PaymentResponse(BaseModel):
    """A funding attempt. ``client_secret`` is only returned to the paying business."""

    id: str
    payment_intent_id: str
    amount: str
    currency: str
    status: str
    charge_id: str | None = None
    client_secret: str | None = None
    created_at: str


class PayoutResponse(BaseModel):
    id: str
    transfer_id: str | None = None
    amount: str
    currency: str
    status: str
    attempt: int
    last_error: str | None = None
    next_attempt_at: str | None = None
    created_at: str


class RefundResponse(BaseModel):
    job_id: str
    refund_id: str
    status: str


# =============================================================================
# Helper Functions
# =============================================================================


def to_job_response(job: Job) -> JobResponse:
    data = job.to_dict()
    data["agency_receives"] = str(job.agency_receives)
    return JobResponse(**data)


def to_payment_response(record: PaymentRecord, include_secret: bool = False) -> PaymentResponse:
    data = record.to_dict()
    return PaymentResponse(
        id=data["id"],
        payment_intent_id=data["payment_intent_id"],
        amount=data["amount"],
        currency=data["currency"],
        status=data["status"],
        charge_id=data["charge_id"],
        client_secret=record.client_secret if include_secret else None,
        created_at=data["created_at"],
    )


def to_payout_response(record: PayoutRecord) -> PayoutResponse:
    data = record.to_dict()
    return PayoutResponse(
        id=data["id"],
        transfer_id=data["transfer_id"],
        amount=data["amount"],
        currency=data["currency"],
        status=data["status"],
        attempt=data["attempt"],
        last_error=data["last_error"],
        next_attempt_at=data["next_attempt_at"],
        created_at=data["created_at"],
    )


def to_transition_response(transition: JobStateTransition) -> TransitionResponse:
    return TransitionResponse(**{k: v for k, v in transition.to_dict().items() if k != "job_id"})


def _run_command(actor_id: str, job_id: str, trigger: str, command: Callable[[], Job]) -> Job:
    """Run one job command, logging the outcome either way."""
    try:
        job = command()
    except EscrowError as e:
        log_transition(actor_id, job_id, trigger, None, False, str(e))
        raise
    log_transition(actor_id, job_id, trigger, job.status, True)
    return job


def _readable_job(services, job_id: str, actor) -> Job:
    """Fetch a job the caller may see: its two parties, or an admin."""
    return services.jobs.get_job(job_id, actor_id=None if actor.is_admin else actor.user_id)


# =============================================================================
# Routes
# =============================================================================


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(COMMAND_LIMIT)
async def create_job(
    request: Request,
    job: JobCreate,
    actor: BusinessActor,
    services: Escrow,
):
    """
    Create a job for an agency.

    The authenticated business is the payer. Jobs start in 'pending' and
    wait for the agency to accept.
    """
    logger.info(f"POST /jobs | business={actor.user_id} | agency={job.agency_id}")
    created = services.jobs.create_job(
        business_id=actor.user_id,
        agency_id=job.agency_id,
        title=job.title,
        amount=job.amount,
        currency=job.currency,
        description=job.description,
        deal_id=job.deal_id,
    )
    logger.info(f"Job created | id={created.id} | business={actor.user_id}")
    return to_job_response(created)


@router.get("", response_model=JobListResponse)
@limiter.limit(QUERY_LIMIT)
async def list_jobs(
    request: Request,
    actor: CurrentActor,
    services: Escrow,
    status_filter: JobStatus | None = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """
    List jobs, newest first.

    Businesses see the jobs they pay for, agencies the jobs they work on,
    admins everything.
    """
    business_id = actor.user_id if actor.role == ROLE_BUSINESS else None
    agency_id = actor.user_id if actor.role == ROLE_AGENCY else None
    jobs = services.jobs.list_jobs(
        status=status_filter.value if status_filter else None,
        business_id=business_id,
        agency_id=agency_id,
        limit=limit,
        offset=offset,
    )
    return JobListResponse(
        jobs=[to_job_response(j) for j in jobs],
        limit=limit,
        offset=offset,
    )


@router.get("/{job_id}", response_model=JobResponse)
@limiter.limit(QUERY_LIMIT)
async def get_job(request: Request, job_id: str, actor: CurrentActor, services: Escrow):
    """Get details of a specific job."""
    return to_job_response(_readable_job(services, job_id, actor))


@router.get("/{job_id}/transitions", response_model=list[TransitionResponse])
@limiter.limit(QUERY_LIMIT)
async def get_job_transitions(request: Request, job_id: str, actor: CurrentActor, services: Escrow):
    """Status history for a job, oldest first."""
    _readable_job(services, job_id, actor)
    return [to_transition_response(t) for t in services.jobs.get_transitions(job_id)]


@router.get("/{job_id}/payments", response_model=list[PaymentResponse])
@limiter.limit(QUERY_LIMIT)
async def get_job_payments(request: Request, job_id: str, actor: CurrentActor, services: Escrow):
    """Funding attempts for a job, oldest first."""
    _readable_job(services, job_id, actor)
    return [to_payment_response(p) for p in services.jobs.list_payments(job_id)]


@router.get("/{job_id}/payouts", response_model=list[PayoutResponse])
@limiter.limit(QUERY_LIMIT)
async def get_job_payouts(request: Request, job_id: str, actor: CurrentActor, services: Escrow):
    """Payout attempts for a job, oldest first."""
    _readable_job(services, job_id, actor)
    return [to_payout_response(p) for p in services.jobs.list_payouts(job_id)]


# --- Agency commands ---------------------------------------------------------


@router.post("/{job_id}/accept", response_model=JobResponse)
@limiter.limit(COMMAND_LIMIT)
async def accept_job(request: Request, job_id: str, actor: AgencyActor, services: Escrow):
    """Accept a pending job. It then waits for the business to fund it."""
    job = _run_command(
        actor.user_id, job_id, "accept", lambda: services.jobs.accept(job_id, actor.user_id)
    )
    return to_job_response(job)


@router.post("/{job_id}/decline", response_model=JobResponse)
@limiter.limit(COMMAND_LIMIT)
async def decline_job(request: Request, job_id: str, actor: AgencyActor, services: Escrow):
    """Decline a pending job."""
    job = _run_command(
        actor.user_id, job_id, "decline", lambda: services.jobs.decline(job_id, actor.user_id)
    )
    return to_job_response(job)


@router.post("/{job_id}/start", response_model=JobResponse)
@limiter.limit(COMMAND_LIMIT)
async def start_job(request: Request, job_id: str, actor: AgencyActor, services: Escrow):
    """Start work on a funded job."""
    job = _run_command(
        actor.user_id, job_id, "start_work", lambda: services.jobs.start_work(job_id, actor.user_id)
    )
    return to_job_response(job)


@router.post("/{job_id}/submit", response_model=JobResponse)
@limiter.limit(COMMAND_LIMIT)
async def submit_job(request: Request, job_id: str, actor: AgencyActor, services: Escrow):
    """Submit work for the business to review."""
    job = _run_command(
        actor.user_id,
        job_id,
        "submit",
        lambda: services.jobs.submit_for_review(job_id, actor.user_id),
    )
    return to_job_response(job)


@router.post("/{job_id}/resubmit", response_model=JobResponse)
@limiter.limit(COMMAND_LIMIT)
async def resubmit_job(request: Request, job_id: str, actor: AgencyActor, services: Escrow):
    """Resubmit work after a revision request."""
    job = _run_command(
        actor.user_id, job_id, "resubmit", lambda: services.jobs.resubmit(job_id, actor.user_id)
    )
    return to_job_response(job)


# --- Business commands -------------------------------------------------------


@router.post("/{job_id}/approve", response_model=JobResponse)
@limiter.limit(COMMAND_LIMIT)
async def approve_job(request: Request, job_id: str, actor: BusinessActor, services: Escrow):
    """
    Approve submitted work.

    The agency's payout is queued for the background worker; the job moves
    to 'paid_out' once the processor confirms the transfer.
    """
    job = _run_command(
        actor.user_id, job_id, "approve", lambda: services.jobs.approve(job_id, actor.user_id)
    )
    return to_job_response(job)


@router.post("/{job_id}/request-revision", response_model=JobResponse)
@limiter.limit(COMMAND_LIMIT)
async def request_revision(request: Request, job_id: str, actor: BusinessActor, services: Escrow):
    """Send submitted work back to the agency."""
    job = _run_command(
        actor.user_id,
        job_id,
        "request_revision",
        lambda: services.jobs.request_revision(job_id, actor.user_id),
    )
    return to_job_response(job)


@router.post("/{job_id}/cancel", response_model=JobResponse)
@limiter.limit(COMMAND_LIMIT)
async def cancel_job(request: Request, job_id: str, actor: BusinessActor, services: Escrow):
    """Cancel a job that has not been funded. Funded jobs are refunded instead."""
    job = _run_command(
        actor.user_id, job_id, "cancel", lambda: services.jobs.cancel(job_id, actor.user_id)
    )
    return to_job_response(job)


@router.post("/{job_id}/fund", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(MONEY_LIMIT)
async def fund_job(request: Request, job_id: str, actor: BusinessActor, services: Escrow):
    """
    Open a payment for an accepted job.

    Returns the payment intent's client secret for the browser to confirm
    the payment. The job becomes 'funded' when the processor reports the
    payment as succeeded.
    """
    logger.info(f"POST /jobs/{job_id}/fund | business={actor.user_id}")
    record = services.jobs.initiate_funding(job_id, actor.user_id)
    return to_payment_response(record, include_secret=True)


@router.post("/{job_id}/refund", response_model=RefundResponse, status_code=status.HTTP_202_ACCEPTED)
@limiter.limit(MONEY_LIMIT)
async def refund_job(request: Request, job_id: str, actor: BusinessActor, services: Escrow):
    """
    Ask for a refund of a funded job.

    The job becomes 'refunded' when the processor confirms the refund.
    """
    logger.info(f"POST /jobs/{job_id}/refund | business={actor.user_id}")
    result = services.jobs.request_refund(job_id, actor.user_id)
    return RefundResponse(job_id=job_id, refund_id=result.refund_id, status=result.status)
