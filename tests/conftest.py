"""Shared test doubles for the payment gateway."""

import hashlib
import hmac
import json
import time
from collections.abc import Callable
from dataclasses import replace

import pytest

from app.core.errors import GatewayError
from app.services.payment_gateway import IntentSnapshot, PaymentGateway, RefundReceipt

WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway(PaymentGateway):
    """In-memory Stripe stand-in; webhook verification stays real."""

    def __init__(self) -> None:
        super().__init__(api_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET)
        self.intents: dict[str, IntentSnapshot] = {}
        self.refunds: list[RefundReceipt] = []
        self.confirm_results: list[str] = []
        self.confirm_calls: int = 0
        self.created: int = 0
        self.fail_refunds: bool = False
        self.confirm_errors: int = 0

    def add_intent(self, amount_cents: int, status: str = "requires_payment_method", reference: str | None = None) -> str:
        reference = reference or f"pi_test_{len(self.intents) + 1}"
        self.intents[reference] = IntentSnapshot(
            reference=reference,
            status=status,
            amount_cents=amount_cents,
            currency="usd",
            client_secret=f"{reference}_secret",
            charge_reference=f"ch_{reference}" if status == "succeeded" else None,
        )
        return reference

    def set_status(self, reference: str, status: str) -> None:
        charge = f"ch_{reference}" if status == "succeeded" else self.intents[reference].charge_reference
        self.intents[reference] = replace(self.intents[reference], status=status, charge_reference=charge)

    def create_intent(self, amount_cents, currency, metadata, idempotency_key=None) -> IntentSnapshot:
        self.created += 1
        reference = self.add_intent(amount_cents)
        return self.intents[reference]

    def retrieve_intent(self, reference: str) -> IntentSnapshot:
        if reference not in self.intents:
            raise GatewayError("Failed to retrieve payment details", details={"operation": "retrieve_intent"})
        return self.intents[reference]

    def confirm_intent(self, reference: str) -> IntentSnapshot:
        self.confirm_calls += 1
        if self.confirm_errors > 0:
            self.confirm_errors -= 1
            raise GatewayError("Failed to confirm payment", details={"operation": "confirm_intent"})
        status = self.confirm_results.pop(0) if self.confirm_results else "succeeded"
        self.set_status(reference, status)
        return self.intents[reference]

    def create_refund(self, charge_reference, amount_cents, reason, metadata=None, idempotency_key=None) -> RefundReceipt:
        if self.fail_refunds:
            raise GatewayError("Failed to create refund", details={"operation": "create_refund"})
        receipt = RefundReceipt(
            refund_reference=f"re_test_{len(self.refunds) + 1}",
            status="succeeded",
            amount_cents=amount_cents,
        )
        self.refunds.append(receipt)
        return receipt


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def build_event(event_id: str, event_type: str, reference: str, status: str) -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {"object": {"id": reference, "object": "payment_intent", "status": status}},
        }
    ).encode("utf-8")


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def signed_event() -> Callable[..., tuple[bytes, str]]:
    def _signed(event_id: str, event_type: str, reference: str, status: str) -> tuple[bytes, str]:
        payload = build_event(event_id, event_type, reference, status)
        return payload, sign_payload(payload)

    return _signed
