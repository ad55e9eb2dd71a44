"""Outbound calls to the payment processor.

The engine talks to the processor through the :class:`PaymentProcessor`
protocol. :class:`StripeProcessor` implements it against the Stripe REST
API (form-encoded requests, amounts in minor units). Every mutating call
carries an ``Idempotency-Key`` header, so retrying a request with the same
key can never produce a second charge, refund or transfer.

Funds use the separate-charges-and-transfers model: the business pays the
platform, and the agency's share is transferred only after approval.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import httpx

from scalingad.errors import PaymentProcessorError
from scalingad.jobs.models import to_minor_units

logger = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com/v1"


@dataclass
class PaymentIntentResult:
    """A payment intent created for a job."""

    payment_intent_id: str
    client_secret: Optional[str]
    status: str


@dataclass
class TransferResult:
    """A transfer created toward an agency's connected account."""

    transfer_id: str
    amount_minor: int
    destination: str


@dataclass
class RefundResult:
    """A refund issued against a captured charge."""

    refund_id: str
    status: str


class PaymentProcessor(Protocol):
    """Outbound processor operations used by the engine."""

    def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: Dict[str, str],
        transfer_group: Optional[str] = None,
    ) -> PaymentIntentResult:
        ...

    def create_transfer(
        self,
        amount: Decimal,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: Dict[str, str],
        source_transaction: Optional[str] = None,
        transfer_group: Optional[str] = None,
    ) -> TransferResult:
        ...

    def create_refund(
        self,
        payment_intent_id: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> RefundResult:
        ...


def _flatten(params: Dict[str, Any]) -> Dict[str, str]:
    """Flatten nested dicts into Stripe's bracketed form keys."""
    flat: Dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                if sub_value is not None:
                    flat[f"{key}[{sub_key}]"] = str(sub_value)
        elif isinstance(value, bool):
            flat[key] = "true" if value else "false"
        else:
            flat[key] = str(value)
    return flat


class StripeProcessor:
    """Stripe REST client.

    Args:
        secret_key: Stripe secret API key
        client: Optional pre-built httpx client (tests, connection reuse)
        api_base: API root, overridable for a mock server
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        secret_key: str,
        client: Optional[httpx.Client] = None,
        api_base: str = STRIPE_API_BASE,
        timeout: float = 30.0,
    ):
        if not secret_key:
            raise ValueError("Stripe secret key is required")
        self._secret_key = secret_key
        self._api_base = api_base.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def _post(self, path: str, params: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        """POST a form-encoded request and return the decoded JSON body.

        Raises:
            PaymentProcessorError: On network failure or a non-2xx response.
                ``retryable`` is set for network errors, 429 and 5xx.
        """
        url = f"{self._api_base}{path}"
        headers = {
            "Authorization": f"Bearer {self._secret_key}",
            "Idempotency-Key": idempotency_key,
        }
        try:
            response = self._client.request("POST", url, data=_flatten(params), headers=headers)
        except httpx.TimeoutException as e:
            logger.warning(f"Processor request timed out | path={path} | key={idempotency_key}")
            raise PaymentProcessorError(f"Processor request timed out: {e}", retryable=True)
        except httpx.HTTPError as e:
            logger.warning(f"Processor request failed | path={path} | key={idempotency_key} | {e}")
            raise PaymentProcessorError(f"Processor unreachable: {e}", retryable=True)

        if response.status_code >= 400:
            try:
                message = response.json().get("error", {}).get("message") or response.text
            except ValueError:
                message = response.text
            retryable = response.status_code == 429 or response.status_code >= 500
            logger.warning(
                f"Processor error | path={path} | status={response.status_code} "
                f"| retryable={retryable} | {message}"
            )
            raise PaymentProcessorError(
                f"Processor returned {response.status_code}: {message}",
                retryable=retryable,
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError:
            raise PaymentProcessorError("Processor returned a non-JSON body", retryable=True)

    def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: Dict[str, str],
        transfer_group: Optional[str] = None,
    ) -> PaymentIntentResult:
        body = self._post(
            "/payment_intents",
            {
                "amount": to_minor_units(amount, currency),
                "currency": currency.lower(),
                "transfer_group": transfer_group,
                "metadata": metadata,
                "automatic_payment_methods": {"enabled": "true"},
            },
            idempotency_key,
        )
        return PaymentIntentResult(
            payment_intent_id=body["id"],
            client_secret=body.get("client_secret"),
            status=body.get("status", "requires_payment_method"),
        )

    def create_transfer(
        self,
        amount: Decimal,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: Dict[str, str],
        source_transaction: Optional[str] = None,
        transfer_group: Optional[str] = None,
    ) -> TransferResult:
        amount_minor = to_minor_units(amount, currency)
        body = self._post(
            "/transfers",
            {
                "amount": amount_minor,
                "currency": currency.lower(),
                "destination": destination,
                "source_transaction": source_transaction,
                "transfer_group": transfer_group,
                "metadata": metadata,
            },
            idempotency_key,
        )
        return TransferResult(
            transfer_id=body["id"],
            amount_minor=int(body.get("amount", amount_minor)),
            destination=body.get("destination", destination),
        )

    def create_refund(
        self,
        payment_intent_id: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> RefundResult:
        body = self._post(
            "/refunds",
            {"payment_intent": payment_intent_id, "metadata": metadata or {}},
            idempotency_key,
        )
        return RefundResult(refund_id=body["id"], status=body.get("status", "pending"))
