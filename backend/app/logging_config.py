"""Logging setup for the scalingad backend.

Everything logs through the standard library with a single stream handler
installed at startup. Route and worker modules get their logger from
:func:`get_logger`; structured lines use ``key=value`` pairs separated by
``|`` so they grep well in hosted log viewers.
"""

import logging
import sys

from scalingad.notifications import PayoutEscalation, StatusChangeEvent

LOG_LINE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LOGGING_CONFIGURED = False


def configure_logging(level: str = "INFO") -> None:
    """Install the stream handler on the root logger. Safe to call twice."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_LINE_FORMAT, datefmt=LOG_DATE_FORMAT))

    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        log = logging.getLogger(logger_name)
        log.handlers = [handler]
        log.propagate = False

    logging.basicConfig(level=resolved, handlers=[handler], force=True)
    # Library loggers follow the app level
    logging.getLogger("scalingad").setLevel(resolved)
    _LOGGING_CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    """Get a named logger."""
    return logging.getLogger(name)


_transition_logger = logging.getLogger("scalingad.api.transitions")
_webhook_logger = logging.getLogger("scalingad.api.webhooks")
_notification_logger = logging.getLogger("scalingad.api.notifications")


def log_transition(
    actor: str,
    job_id: str,
    trigger: str,
    new_status: str | None,
    success: bool,
    error: str | None = None,
) -> None:
    """Log one command-driven transition attempt."""
    if success:
        _transition_logger.info(
            f"TRANSITION | actor={actor} | job={job_id} | trigger={trigger} | status={new_status}"
        )
    else:
        _transition_logger.warning(
            f"TRANSITION FAILED | actor={actor} | job={job_id} | trigger={trigger} | error={error}"
        )


def log_webhook_event(
    event_id: str,
    event_type: str,
    outcome: str,
    duplicate: bool = False,
    job_id: str | None = None,
) -> None:
    """Log the result of one inbound processor event."""
    _webhook_logger.info(
        f"WEBHOOK | event={event_id} | type={event_type} | outcome={outcome} "
        f"| duplicate={duplicate} | job={job_id}"
    )


def log_status_change(event: StatusChangeEvent) -> None:
    """Outbox subscriber: one line per committed status change."""
    _notification_logger.info(
        f"STATUS | job={event.job_id} | {event.old_status} -> {event.new_status} "
        f"| trigger={event.trigger}"
    )


def log_payout_escalation(event: PayoutEscalation) -> None:
    """Outbox subscriber: a payout ran out of retries and needs an operator."""
    _notification_logger.error(
        f"PAYOUT ESCALATION | job={event.job_id} | attempts={event.attempts} "
        f"| last_error={event.last_error}"
    )
