"""Background worker for out-of-band escrow work.

Runs on the application's event loop and, every tick:
- delivers pending status-change notifications from the outbox
  (logged through :func:`subscribe_notifications`)
- dispatches payouts queued by approvals
- sweeps approved jobs for payouts whose retry backoff has elapsed

The engine is synchronous, so each tick runs in a worker thread.
"""

import asyncio

from scalingad.notifications import PayoutEscalation, StatusChangeEvent

from .database import EscrowServices
from .logging_config import get_logger, log_payout_escalation, log_status_change

logger = get_logger("scalingad.worker")

_worker_task: asyncio.Task | None = None


def subscribe_notifications(services: EscrowServices) -> None:
    """Attach the backend's outbox consumers. Calling again does not add duplicates."""
    outbox = services.outbox
    for handler, event_type in (
        (log_status_change, StatusChangeEvent),
        (log_payout_escalation, PayoutEscalation),
    ):
        outbox.unsubscribe(handler, event_type)
        outbox.subscribe(handler, event_type)


def run_once(services: EscrowServices) -> dict:
    """One worker tick. Returns counts for logging and tests."""
    delivered = services.outbox.drain()
    queued = 0
    swept = 0
    if services.dispatcher is not None:
        queued = services.dispatcher.drain()
        swept = services.dispatcher.sweep()
    if delivered or queued or swept:
        logger.info(f"Worker tick | notifications={delivered} | queued={queued} | swept={swept}")
    return {"notifications": delivered, "queued": queued, "swept": swept}


async def _worker_loop(services: EscrowServices, interval_seconds: float) -> None:
    while True:
        try:
            await asyncio.to_thread(run_once, services)
        except Exception as exc:
            logger.error(f"Worker tick failed: {exc}", exc_info=True)
        await asyncio.sleep(interval_seconds)


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Worker task died: {exc}", exc_info=exc)


def start_worker(services: EscrowServices, interval_seconds: float) -> None:
    """Start the worker loop on the running event loop. No-op if already running."""
    global _worker_task
    if _worker_task is not None and not _worker_task.done():
        return
    _worker_task = asyncio.get_running_loop().create_task(
        _worker_loop(services, interval_seconds)
    )
    _worker_task.add_done_callback(_log_task_failure)
    logger.info(f"Worker started | interval={interval_seconds}s")


async def stop_worker() -> None:
    """Cancel the worker loop and wait for it to finish."""
    global _worker_task
    if _worker_task is None:
        return
    _worker_task.cancel()
    try:
        await _worker_task
    except asyncio.CancelledError:
        pass
    _worker_task = None
    logger.info("Worker stopped")
