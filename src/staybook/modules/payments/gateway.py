"""Payment gateway adapter (Stripe)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import stripe

from staybook.config import get_env
from staybook.errors import PaymentGatewayError

logger = logging.getLogger(__name__)

INTENT_SUCCEEDED = "succeeded"
EVENT_PAYMENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_PAYMENT_FAILED = "payment_intent.payment_failed"


class InvalidWebhook(Exception):
    """Webhook body could not be parsed or its signature did not verify."""


@dataclass
class GatewayIntent:
    id: str
    status: str
    amount: int
    client_secret: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == INTENT_SUCCEEDED


@dataclass
class GatewayRefund:
    id: str
    status: str
    amount: int


@dataclass
class GatewayEvent:
    id: str
    type: str
    data: dict[str, Any]

    @property
    def metadata(self) -> dict[str, Any]:
        return dict(self.data.get("metadata") or {})


class PaymentGateway:
    """Operations the engine needs from a payment provider."""

    def create_intent(
        self, amount: int, currency: str, metadata: dict[str, str], description: str | None = None
    ) -> GatewayIntent:
        raise NotImplementedError

    def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        raise NotImplementedError

    def refund(self, intent_id: str, amount: int | None = None, reason: str | None = None) -> GatewayRefund:
        raise NotImplementedError

    def construct_event(self, payload: bytes, signature: str | None) -> GatewayEvent:
        raise NotImplementedError


def _intent_from_stripe(obj: Any) -> GatewayIntent:
    values = obj.to_dict()
    return GatewayIntent(
        id=values["id"],
        status=values["status"],
        amount=values.get("amount") or 0,
        client_secret=values.get("client_secret"),
        metadata=dict(values.get("metadata") or {}),
    )


class StripeGateway(PaymentGateway):
    """Stripe PaymentIntents, Refunds and signed webhooks.

    Every SDK failure, including network timeouts and responses of an
    unexpected shape, surfaces as PaymentGatewayError so callers can leave
    the booking untouched.
    """

    def __init__(self, api_key: str | None = None, webhook_secret: str | None = None) -> None:
        self._api_key = api_key or get_env("STRIPE_SECRET_KEY")
        self._webhook_secret = webhook_secret or get_env("STRIPE_WEBHOOK_SECRET")

    def _key(self) -> str:
        if not self._api_key:
            raise PaymentGatewayError("Stripe secret key not configured")
        return self._api_key

    def create_intent(
        self, amount: int, currency: str, metadata: dict[str, str], description: str | None = None
    ) -> GatewayIntent:
        try:
            intent = _intent_from_stripe(stripe.PaymentIntent.create(
                api_key=self._key(),
                amount=amount,
                currency=currency,
                metadata=metadata,
                description=description,
                automatic_payment_methods={"enabled": True},
            ))
        except stripe.StripeError as exc:
            logger.error("Stripe PaymentIntent create failed: %s", exc)
            raise PaymentGatewayError("Failed to create payment intent") from exc
        except (KeyError, AttributeError) as exc:
            logger.error("Unexpected PaymentIntent from Stripe: %s", exc)
            raise PaymentGatewayError("Failed to create payment intent") from exc
        logger.info("Created payment intent %s for %s %s", intent.id, amount, currency)
        return intent

    def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        try:
            return _intent_from_stripe(stripe.PaymentIntent.retrieve(intent_id, api_key=self._key()))
        except stripe.StripeError as exc:
            logger.error("Stripe PaymentIntent retrieve failed for %s: %s", intent_id, exc)
            raise PaymentGatewayError("Invalid payment intent") from exc
        except (KeyError, AttributeError) as exc:
            logger.error("Unexpected PaymentIntent %s from Stripe: %s", intent_id, exc)
            raise PaymentGatewayError("Invalid payment intent") from exc

    def refund(self, intent_id: str, amount: int | None = None, reason: str | None = None) -> GatewayRefund:
        params: dict[str, Any] = {"payment_intent": intent_id}
        if amount is not None:
            params["amount"] = amount
        if reason:
            params["metadata"] = {"reason": reason}
        try:
            refund = stripe.Refund.create(api_key=self._key(), **params)
        except stripe.StripeError as exc:
            logger.error("Stripe refund failed for %s: %s", intent_id, exc)
            raise PaymentGatewayError("Refund failed. Please contact support.") from exc
        # Refund is already issued upstream; read the response leniently
        values = refund.to_dict()
        return GatewayRefund(
            id=values.get("id") or "",
            status=values.get("status") or "pending",
            amount=values.get("amount") or amount or 0,
        )

    def construct_event(self, payload: bytes, signature: str | None) -> GatewayEvent:
        if not self._webhook_secret:
            raise InvalidWebhook("Webhook secret not configured")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except ValueError as exc:
            raise InvalidWebhook("Invalid payload") from exc
        except stripe.SignatureVerificationError as exc:
            raise InvalidWebhook("Invalid signature") from exc
        try:
            values = event.to_dict()
            obj = values["data"]["object"]
            return GatewayEvent(id=values["id"], type=values["type"], data=dict(obj))
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidWebhook("Unexpected event shape") from exc
