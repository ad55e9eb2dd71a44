"""Inbound payment processor webhooks.

The processor retries any delivery that doesn't get a 2xx, so:
- 200 for every event we have durably decided on (applied, duplicate,
  ignored, rejected)
- 400 when the signature or the body is bad (a retry can't fix it)
- 500 on internal failure, or when an event was left open because it
  can't be matched yet (the retry is wanted)
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from scalingad.errors import SignatureInvalidError, ValidationError

from ..database import Escrow
from ..logging_config import get_logger, log_webhook_event
from ..rate_limit import WEBHOOK_LIMIT, limiter

logger = get_logger("scalingad.api.webhooks")
router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "Stripe-Signature"


@router.post("/stripe")
@limiter.limit(WEBHOOK_LIMIT)
async def stripe_webhook(request: Request, services: Escrow):
    """Receive one signed Stripe event."""
    # Signature covers the exact bytes; read the body once, unparsed
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    try:
        result = services.ingestion.ingest(body, signature)
    except SignatureInvalidError as e:
        logger.warning(f"Webhook rejected | reason={e} | body_len={len(body)}")
        return JSONResponse(status_code=400, content={"ok": False, "reason": "invalid_signature"})
    except ValidationError as e:
        logger.warning(f"Webhook payload invalid | error={e}")
        return JSONResponse(
            status_code=400, content={"ok": False, "reason": "invalid_payload", "error": str(e)}
        )
    except Exception as e:
        logger.error(f"Webhook processing failed: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"ok": False, "reason": "internal_error"})

    log_webhook_event(
        result.event_id, result.event_type, result.outcome, result.duplicate, result.job_id
    )
    if result.outcome == "failed":
        # Left open on purpose; ask the processor to deliver it again
        return JSONResponse(status_code=500, content={"ok": False, **result.to_dict()})
    return JSONResponse({"ok": True, **result.to_dict()})
