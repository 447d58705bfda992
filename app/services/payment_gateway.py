"""Stateless facade over the Stripe payment processor.

Only references and client secrets cross this boundary; card data never
does. Nothing here retries: every Stripe failure becomes a ``GatewayError``
and retry policy lives in ``payment_service.retry_payment``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import stripe

from app.core.config import settings
from app.core.errors import GatewayError, InvalidSignature, MissingSignature

logger = logging.getLogger(__name__)

STRIPE_REFUND_REASONS: set[str] = {"duplicate", "fraudulent", "requested_by_customer"}


@dataclass(frozen=True)
class IntentSnapshot:
    reference: str
    status: str
    amount_cents: int
    currency: str
    client_secret: str | None = None
    charge_reference: str | None = None


@dataclass(frozen=True)
class RefundReceipt:
    refund_reference: str
    status: str
    amount_cents: int


@dataclass(frozen=True)
class WebhookEvent:
    event_id: str
    event_type: str
    intent_reference: str | None
    intent_status: str | None = None


def _charge_reference(intent: Any) -> str | None:
    latest_charge = getattr(intent, "latest_charge", None)
    if latest_charge is None:
        return None
    if isinstance(latest_charge, str):
        return latest_charge
    return getattr(latest_charge, "id", None)


def _snapshot(intent: Any) -> IntentSnapshot:
    return IntentSnapshot(
        reference=intent.id,
        status=intent.status,
        amount_cents=int(intent.amount),
        currency=intent.currency,
        client_secret=getattr(intent, "client_secret", None),
        charge_reference=_charge_reference(intent),
    )


class PaymentGateway:
    """Payment intents, refunds and webhook verification via Stripe."""

    def __init__(self, api_key: str | None = None, webhook_secret: str | None = None) -> None:
        self._api_key: str = api_key or settings.stripe_secret_key
        self._webhook_secret: str = webhook_secret or settings.stripe_webhook_secret

    def _request_options(self, idempotency_key: str | None = None) -> dict[str, Any]:
        options: dict[str, Any] = {"api_key": self._api_key}
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        return options

    def create_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> IntentSnapshot:
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency.lower(),
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                **self._request_options(idempotency_key),
            )
        except stripe.StripeError as exc:
            logger.warning("[PAYMENT] Intent creation failed: %s", type(exc).__name__)
            raise GatewayError("Failed to create payment intent", details={"operation": "create_intent"}) from exc
        return _snapshot(intent)

    def confirm_intent(self, reference: str) -> IntentSnapshot:
        try:
            intent = stripe.PaymentIntent.confirm(reference, **self._request_options())
        except stripe.StripeError as exc:
            logger.warning("[PAYMENT] Intent confirmation failed reference=%s: %s", reference, type(exc).__name__)
            raise GatewayError("Failed to confirm payment", details={"operation": "confirm_intent"}) from exc
        return _snapshot(intent)

    def retrieve_intent(self, reference: str) -> IntentSnapshot:
        try:
            intent = stripe.PaymentIntent.retrieve(reference, **self._request_options())
        except stripe.StripeError as exc:
            logger.warning("[PAYMENT] Intent retrieval failed reference=%s: %s", reference, type(exc).__name__)
            raise GatewayError("Failed to retrieve payment details", details={"operation": "retrieve_intent"}) from exc
        return _snapshot(intent)

    def create_refund(
        self,
        charge_reference: str,
        amount_cents: int,
        reason: str,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> RefundReceipt:
        stripe_reason = reason if reason in STRIPE_REFUND_REASONS else "requested_by_customer"
        refund_metadata: dict[str, str] = {**(metadata or {}), "reason": reason[:200]}
        try:
            refund = stripe.Refund.create(
                charge=charge_reference,
                amount=amount_cents,
                reason=stripe_reason,
                metadata=refund_metadata,
                **self._request_options(idempotency_key),
            )
        except stripe.StripeError as exc:
            logger.warning("[PAYMENT] Refund failed charge=%s: %s", charge_reference, type(exc).__name__)
            raise GatewayError("Failed to create refund", details={"operation": "create_refund"}) from exc
        return RefundReceipt(refund_reference=refund.id, status=refund.status, amount_cents=int(refund.amount))

    def verify_and_parse_webhook(self, payload: bytes | str, signature: str | None) -> WebhookEvent:
        if not signature:
            raise MissingSignature()
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("[WEBHOOK] Signature verification failed")
            raise InvalidSignature() from exc
        except ValueError as exc:
            logger.warning("[WEBHOOK] Payload could not be parsed")
            raise InvalidSignature("Webhook payload could not be parsed") from exc

        intent = event.data.object
        return WebhookEvent(
            event_id=event.id,
            event_type=event.type,
            intent_reference=getattr(intent, "id", None),
            intent_status=getattr(intent, "status", None),
        )


def get_payment_gateway() -> PaymentGateway:
    """FastAPI dependency returning the configured gateway."""
    return PaymentGateway()
