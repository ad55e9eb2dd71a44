"""Admin routes for operating the escrow engine.

These routes require a token with the ``admin`` role.
"""

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel

from scalingad.payments.models import LedgerEntry, PayoutStatus

from ..auth import AdminActor
from ..database import Escrow
from ..logging_config import get_logger, log_webhook_event
from ..rate_limit import ADMIN_LIMIT, QUERY_LIMIT, limiter
from .jobs import PayoutResponse, to_payout_response

logger = get_logger("scalingad.api.admin")

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


# =============================================================================
# Models
# =============================================================================


class SweepResponse(BaseModel):
    """Result of a manual payout sweep."""

    queued: int
    dispatched: int


class LedgerEntryResponse(BaseModel):
    """One ledger row. The raw payload is omitted."""

    id: str
    event_id: str
    event_type: str
    outcome: str
    attempt: int
    job_id: str | None = None
    object_id: str | None = None
    livemode: bool
    detail: str | None = None
    created_at: str


class LedgerListResponse(BaseModel):
    entries: list[LedgerEntryResponse]
    total: int


class ReplayResponse(BaseModel):
    event_id: str
    event_type: str
    outcome: str
    attempt: int
    duplicate: bool
    job_id: str | None = None
    detail: str | None = None


def to_ledger_response(entry: LedgerEntry) -> LedgerEntryResponse:
    data = entry.to_dict()
    data.pop("payload", None)
    return LedgerEntryResponse(**data)


# =============================================================================
# Routes
# =============================================================================


@router.post("/payouts/sweep", response_model=SweepResponse)
@limiter.limit(ADMIN_LIMIT)
async def sweep_payouts(request: Request, actor: AdminActor, services: Escrow):
    """
    Issue every payout that is due now.

    Drains queued payout requests first, then retries failed payouts whose
    backoff has elapsed. The background worker does the same on a timer.
    """
    if services.dispatcher is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payouts are not configured",
        )
    logger.info(f"POST /admin/payouts/sweep | admin={actor.user_id}")
    queued = services.dispatcher.drain()
    dispatched = services.dispatcher.sweep()
    return SweepResponse(queued=queued, dispatched=dispatched)


@router.get("/payouts", response_model=list[PayoutResponse])
@limiter.limit(QUERY_LIMIT)
async def list_payouts(
    request: Request,
    actor: AdminActor,
    services: Escrow,
    payout_status: PayoutStatus | None = Query(None, alias="status"),
    job_id: str | None = Query(None),
):
    """List payout attempts across jobs."""
    records = services.jobs.payments.list_payouts(job_id=job_id, status=payout_status)
    return [to_payout_response(p) for p in records]


@router.get("/ledger", response_model=LedgerListResponse)
@limiter.limit(QUERY_LIMIT)
async def list_ledger(
    request: Request,
    actor: AdminActor,
    services: Escrow,
    job_id: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
):
    """Webhook ledger rows, newest first."""
    entries = services.jobs.list_ledger(job_id=job_id, limit=limit)
    return LedgerListResponse(
        entries=[to_ledger_response(e) for e in entries],
        total=len(entries),
    )


@router.post("/ledger/{event_id}/replay", response_model=ReplayResponse)
@limiter.limit(ADMIN_LIMIT)
async def replay_event(request: Request, event_id: str, actor: AdminActor, services: Escrow):
    """
    Re-dispatch an event whose ledger trail was left open or failed.

    Events that already reached a closing outcome come back as duplicates.
    """
    logger.info(f"POST /admin/ledger/{event_id}/replay | admin={actor.user_id}")
    result = services.ingestion.replay(event_id)
    log_webhook_event(
        result.event_id, result.event_type, result.outcome, result.duplicate, result.job_id
    )
    return ReplayResponse(**result.to_dict())
