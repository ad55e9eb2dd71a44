"""Agency payout account routes."""

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field

from scalingad.payments.models import AgencyPayoutAccount

from ..auth import AgencyActor
from ..database import Escrow
from ..logging_config import get_logger
from ..rate_limit import COMMAND_LIMIT, QUERY_LIMIT, limiter

logger = get_logger("scalingad.api.agencies")
router = APIRouter(prefix="/api/v1/agencies", tags=["agencies"])


class PayoutAccountLink(BaseModel):
    """Request to link the agency's connected account at the processor."""

    account_id: str = Field(..., min_length=1, max_length=255)


class PayoutAccountResponse(BaseModel):
    agency_id: str
    account_id: str | None = None
    onboarding_complete: bool
    payouts_enabled: bool
    updated_at: str | None = None


def to_account_response(account: AgencyPayoutAccount) -> PayoutAccountResponse:
    return PayoutAccountResponse(**account.to_dict())


@router.post("/me/payout-account", response_model=PayoutAccountResponse)
@limiter.limit(COMMAND_LIMIT)
async def link_payout_account(
    request: Request,
    body: PayoutAccountLink,
    actor: AgencyActor,
    services: Escrow,
):
    """
    Link the calling agency's processor account.

    Payouts stay disabled until the processor reports the account as
    onboarded.
    """
    logger.info(f"POST /agencies/me/payout-account | agency={actor.user_id}")
    account = services.jobs.link_payout_account(actor.user_id, body.account_id)
    return to_account_response(account)


@router.get("/me/payout-account", response_model=PayoutAccountResponse)
@limiter.limit(QUERY_LIMIT)
async def get_payout_account(request: Request, actor: AgencyActor, services: Escrow):
    """Get the calling agency's payout account and its readiness."""
    account = services.jobs.get_payout_account(actor.user_id)
    if account is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="No payout account linked"
        )
    return to_account_response(account)
