"""Inbound payment processor webhooks.

Modules:
- signature.py: HMAC signature verification of raw deliveries
- events.py: Closed set of decoded event types and the strict parser
- ingestion.py: Ledger-backed deduplication and dispatch to the job engine
"""

from scalingad.webhooks.events import ProcessorEvent, ProcessorEventParser, UnknownEvent
from scalingad.webhooks.signature import sign_payload, verify_signature

__all__ = [
    "ProcessorEvent",
    "ProcessorEventParser",
    "UnknownEvent",
    "sign_payload",
    "verify_signature",
]
