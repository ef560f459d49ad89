"""
Payment provider boundary.

The order engine talks to the payment processor only through the
PaymentProvider protocol; StripePaymentProvider is the production
implementation and tests substitute a fake.

Stripe notes:
    - The SDK is synchronous, so every call goes through run_blocking()
    - api_key is passed per call; the global stripe.api_key is never set
    - Webhooks are verified with stripe.Webhook.construct_event (HMAC-SHA256
      over "<timestamp>.<payload>", with a replay tolerance window)
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import stripe

from domain.enums import PaymentEventKind
from exceptions import PaymentProviderError, WebhookVerificationError
from services.async_executor import run_blocking

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentIntentHandle:
    """Processor-side handle for an in-progress one-time charge."""
    id: str
    client_secret: Optional[str]
    status: str
    amount: int
    currency: str


@dataclass(frozen=True)
class PaymentEvent:
    """A verified payment notification, normalized away from Stripe's shape."""
    event_id: str
    event_type: str
    kind: PaymentEventKind
    payment_intent_id: Optional[str] = None
    amount: int = 0
    currency: Optional[str] = None
    failure_message: Optional[str] = None
    metadata: dict = field(default_factory=dict)


class PaymentProvider(Protocol):
    async def create_customer(self, *, email: str, name: Optional[str], metadata: dict) -> str: ...

    async def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        customer_id: Optional[str],
        metadata: dict,
        idempotency_key: str,
    ) -> PaymentIntentHandle: ...

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentHandle: ...

    async def cancel_payment_intent(self, payment_intent_id: str) -> bool: ...

    def construct_event(self, payload: bytes, signature_header: Optional[str]) -> PaymentEvent: ...


_EVENT_KINDS = {
    "payment_intent.succeeded": PaymentEventKind.SUCCEEDED,
    "payment_intent.payment_failed": PaymentEventKind.FAILED,
    "payment_intent.canceled": PaymentEventKind.CANCELED,
}


def parse_event(data: dict[str, Any]) -> PaymentEvent:
    """
    Normalize a Stripe event payload (already verified) into a PaymentEvent.

    Only payment_intent.* events carry a payment intent; anything else is
    returned with kind=IGNORED so the webhook can acknowledge it.
    """
    event_type = data.get("type", "")
    kind = _EVENT_KINDS.get(event_type, PaymentEventKind.IGNORED)
    obj = (data.get("data") or {}).get("object") or {}

    if kind is PaymentEventKind.IGNORED or obj.get("object") not in (None, "payment_intent"):
        return PaymentEvent(
            event_id=data.get("id", ""),
            event_type=event_type,
            kind=PaymentEventKind.IGNORED,
        )

    if kind is PaymentEventKind.SUCCEEDED:
        amount = obj.get("amount_received") or obj.get("amount") or 0
    else:
        amount = obj.get("amount") or 0

    failure_message = None
    if kind is PaymentEventKind.FAILED:
        failure_message = (obj.get("last_payment_error") or {}).get("message") or "payment_failed"
    elif kind is PaymentEventKind.CANCELED:
        failure_message = obj.get("cancellation_reason") or "payment_canceled"

    return PaymentEvent(
        event_id=data.get("id", ""),
        event_type=event_type,
        kind=kind,
        payment_intent_id=obj.get("id"),
        amount=int(amount),
        currency=(obj.get("currency") or "").lower() or None,
        failure_message=failure_message,
        metadata=dict(obj.get("metadata") or {}),
    )


def _to_handle(intent) -> PaymentIntentHandle:
    return PaymentIntentHandle(
        id=intent.id,
        client_secret=getattr(intent, "client_secret", None),
        status=intent.status,
        amount=int(intent.amount),
        currency=str(intent.currency).lower(),
    )


class StripePaymentProvider:
    """PaymentProvider backed by the official Stripe SDK."""

    def __init__(self, *, api_key: str, webhook_secret: str, tolerance_seconds: int = 300):
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._tolerance = tolerance_seconds

    def _require_key(self) -> None:
        if not self._api_key:
            raise PaymentProviderError("STRIPE_SECRET_KEY not configured")

    async def create_customer(self, *, email: str, name: Optional[str], metadata: dict) -> str:
        self._require_key()
        try:
            customer = await run_blocking(
                stripe.Customer.create,
                api_key=self._api_key,
                email=email,
                name=name,
                metadata=metadata,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe customer creation failed for {email}: {e}")
            raise PaymentProviderError(str(e)) from e
        return customer.id

    async def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        customer_id: Optional[str],
        metadata: dict,
        idempotency_key: str,
    ) -> PaymentIntentHandle:
        self._require_key()
        params = {
            "amount": amount,
            "currency": currency,
            "metadata": {k: str(v) for k, v in metadata.items()},
            "automatic_payment_methods": {"enabled": True},
        }
        if customer_id:
            params["customer"] = customer_id
        try:
            intent = await run_blocking(
                stripe.PaymentIntent.create,
                api_key=self._api_key,
                idempotency_key=idempotency_key,
                **params,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe PaymentIntent creation failed ({idempotency_key}): {e}")
            raise PaymentProviderError(str(e)) from e

        logger.info(f"  💳 PaymentIntent {intent.id} created for {amount} {currency}")
        return _to_handle(intent)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentHandle:
        self._require_key()
        try:
            intent = await run_blocking(
                stripe.PaymentIntent.retrieve, payment_intent_id, api_key=self._api_key
            )
        except stripe.StripeError as e:
            raise PaymentProviderError(str(e)) from e
        return _to_handle(intent)

    async def cancel_payment_intent(self, payment_intent_id: str) -> bool:
        """
        Cancel an intent that has not been paid.

        Returns False when Stripe refuses (e.g. the intent already succeeded
        or is processing); the caller must then wait for the webhook.
        """
        self._require_key()
        try:
            await run_blocking(
                stripe.PaymentIntent.cancel, payment_intent_id, api_key=self._api_key
            )
        except stripe.InvalidRequestError as e:
            logger.info(f"PaymentIntent {payment_intent_id} not cancellable: {e}")
            return False
        except stripe.StripeError as e:
            raise PaymentProviderError(str(e)) from e
        return True

    def construct_event(self, payload: bytes, signature_header: Optional[str]) -> PaymentEvent:
        """
        Verify the Stripe-Signature header and parse the event.

        Fails closed when the webhook secret is not configured.
        """
        if not self._webhook_secret:
            logger.error(
                "STRIPE_WEBHOOK_SECRET not configured, rejecting webhook. "
                "Set STRIPE_WEBHOOK_SECRET in .env to accept Stripe webhooks."
            )
            raise WebhookVerificationError("webhook secret not configured")
        if not signature_header:
            raise WebhookVerificationError("missing Stripe-Signature header")

        try:
            stripe.Webhook.construct_event(
                payload, signature_header, self._webhook_secret, tolerance=self._tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(f"signature mismatch: {e}") from e
        except ValueError as e:
            raise WebhookVerificationError(f"invalid payload: {e}") from e

        # Signature covers the raw bytes; parse them ourselves into plain dicts
        return parse_event(json.loads(payload))
