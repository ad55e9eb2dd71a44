"""Processor event types and the strict decoder.

Inbound payloads are decoded in two steps: the envelope (id, type,
livemode, data.object) is validated first, then the object is validated
against the schema for its event type. The result is one of a closed set
of frozen dataclasses; anything with an unrecognised type becomes
:class:`UnknownEvent` so the caller can acknowledge it.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from scalingad.errors import ValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# Wire schemas
# =============================================================================


class _StrictModel(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore")


class EventData(_StrictModel):
    object: Dict[str, Any]


class EventEnvelope(_StrictModel):
    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    livemode: bool = False
    created: Optional[int] = None
    account: Optional[str] = None
    data: EventData


class PaymentIntentObject(_StrictModel):
    id: str
    amount: int
    currency: str
    metadata: Dict[str, str] = Field(default_factory=dict)
    latest_charge: Optional[str] = None
    last_payment_error: Optional[Dict[str, Any]] = None


class TransferObject(_StrictModel):
    id: str
    amount: int
    currency: str
    metadata: Dict[str, str] = Field(default_factory=dict)


class ChargeObject(_StrictModel):
    id: str
    payment_intent: Optional[str] = None
    amount: int = 0
    amount_refunded: int = 0
    refunded: bool = False
    metadata: Dict[str, str] = Field(default_factory=dict)


class AccountObject(_StrictModel):
    id: str
    details_submitted: bool = False
    payouts_enabled: bool = False
    charges_enabled: bool = False


class ApplicationObject(_StrictModel):
    id: str


# =============================================================================
# Decoded events
# =============================================================================


@dataclass(frozen=True, kw_only=True)
class ProcessorEvent:
    """Fields every decoded event carries."""

    event_id: str
    event_type: str
    object_id: str
    livemode: bool = False
    job_id: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class PaymentSucceeded(ProcessorEvent):
    payment_intent_id: str
    amount_minor: int
    currency: str
    charge_id: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class PaymentFailed(ProcessorEvent):
    payment_intent_id: str
    failure_message: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class TransferPaid(ProcessorEvent):
    transfer_id: str
    amount_minor: int
    currency: str
    payout_id: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class TransferFailed(ProcessorEvent):
    transfer_id: str
    payout_id: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class ChargeRefunded(ProcessorEvent):
    charge_id: str
    payment_intent_id: Optional[str]
    amount_refunded: int
    fully_refunded: bool


@dataclass(frozen=True, kw_only=True)
class AccountUpdated(ProcessorEvent):
    account_id: str
    details_submitted: bool
    payouts_enabled: bool
    charges_enabled: bool


@dataclass(frozen=True, kw_only=True)
class AccountDeauthorized(ProcessorEvent):
    account_id: str


@dataclass(frozen=True, kw_only=True)
class UnknownEvent(ProcessorEvent):
    """An event type this system does not handle. Acknowledged, never applied."""


KnownEvent = Union[
    PaymentSucceeded,
    PaymentFailed,
    TransferPaid,
    TransferFailed,
    ChargeRefunded,
    AccountUpdated,
    AccountDeauthorized,
]


# =============================================================================
# Decoder
# =============================================================================


def _payment_succeeded(env: EventEnvelope, obj: PaymentIntentObject) -> PaymentSucceeded:
    return PaymentSucceeded(
        event_id=env.id,
        event_type=env.type,
        object_id=obj.id,
        livemode=env.livemode,
        job_id=obj.metadata.get("job_id"),
        payment_intent_id=obj.id,
        amount_minor=obj.amount,
        currency=obj.currency.upper(),
        charge_id=obj.latest_charge,
    )


def _payment_failed(env: EventEnvelope, obj: PaymentIntentObject) -> PaymentFailed:
    message = (obj.last_payment_error or {}).get("message")
    return PaymentFailed(
        event_id=env.id,
        event_type=env.type,
        object_id=obj.id,
        livemode=env.livemode,
        job_id=obj.metadata.get("job_id"),
        payment_intent_id=obj.id,
        failure_message=str(message) if message else None,
    )


def _transfer_paid(env: EventEnvelope, obj: TransferObject) -> TransferPaid:
    return TransferPaid(
        event_id=env.id,
        event_type=env.type,
        object_id=obj.id,
        livemode=env.livemode,
        job_id=obj.metadata.get("job_id"),
        transfer_id=obj.id,
        amount_minor=obj.amount,
        currency=obj.currency.upper(),
        payout_id=obj.metadata.get("payout_id"),
    )


def _transfer_failed(env: EventEnvelope, obj: TransferObject) -> TransferFailed:
    return TransferFailed(
        event_id=env.id,
        event_type=env.type,
        object_id=obj.id,
        livemode=env.livemode,
        job_id=obj.metadata.get("job_id"),
        transfer_id=obj.id,
        payout_id=obj.metadata.get("payout_id"),
    )


def _charge_refunded(env: EventEnvelope, obj: ChargeObject) -> ChargeRefunded:
    return ChargeRefunded(
        event_id=env.id,
        event_type=env.type,
        object_id=obj.id,
        livemode=env.livemode,
        job_id=obj.metadata.get("job_id"),
        charge_id=obj.id,
        payment_intent_id=obj.payment_intent,
        amount_refunded=obj.amount_refunded,
        fully_refunded=obj.refunded,
    )


def _account_updated(env: EventEnvelope, obj: AccountObject) -> AccountUpdated:
    return AccountUpdated(
        event_id=env.id,
        event_type=env.type,
        object_id=obj.id,
        livemode=env.livemode,
        account_id=obj.id,
        details_submitted=obj.details_submitted,
        payouts_enabled=obj.payouts_enabled,
        charges_enabled=obj.charges_enabled,
    )


def _account_deauthorized(env: EventEnvelope, obj: ApplicationObject) -> AccountDeauthorized:
    # The deauthorized account is on the envelope; the object is our application
    return AccountDeauthorized(
        event_id=env.id,
        event_type=env.type,
        object_id=obj.id,
        livemode=env.livemode,
        account_id=env.account or obj.id,
    )


# event type -> (object schema, builder)
EVENT_DECODERS: Dict[str, tuple] = {
    "payment_intent.succeeded": (PaymentIntentObject, _payment_succeeded),
    "payment_intent.payment_failed": (PaymentIntentObject, _payment_failed),
    "transfer.paid": (TransferObject, _transfer_paid),
    "transfer.failed": (TransferObject, _transfer_failed),
    "charge.refunded": (ChargeObject, _charge_refunded),
    "account.updated": (AccountObject, _account_updated),
    "account.application.deauthorized": (ApplicationObject, _account_deauthorized),
}


class ProcessorEventParser:
    """Decodes raw webhook bodies into :class:`ProcessorEvent` values."""

    def parse(self, payload: Union[bytes, str]) -> ProcessorEvent:
        """Decode a raw payload.

        Raises:
            ValidationError: If the body is not JSON, the envelope is
                malformed, or a known event type has a malformed object
        """
        try:
            raw = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValidationError(f"Webhook body is not valid JSON: {e}")
        if not isinstance(raw, dict):
            raise ValidationError("Webhook body must be a JSON object")
        return self.parse_dict(raw)

    def parse_dict(self, raw: Dict[str, Any]) -> ProcessorEvent:
        try:
            envelope = EventEnvelope.model_validate(raw)
        except PydanticValidationError as e:
            raise ValidationError(f"Malformed event envelope: {e.error_count()} error(s)")

        decoder = EVENT_DECODERS.get(envelope.type)
        if decoder is None:
            return UnknownEvent(
                event_id=envelope.id,
                event_type=envelope.type,
                object_id=str(envelope.data.object.get("id") or ""),
                livemode=envelope.livemode,
            )

        schema: Type[BaseModel]
        schema, build = decoder
        try:
            obj = schema.model_validate(envelope.data.object)
        except PydanticValidationError as e:
            logger.warning(f"Malformed {envelope.type} object in event {envelope.id}")
            raise ValidationError(
                f"Malformed {envelope.type} object: {e.error_count()} error(s)"
            )
        return build(envelope, obj)
