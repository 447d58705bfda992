"""Payment reconciliation tests: confirmation, webhooks, refunds and retries."""

import asyncio
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings
from app.core.errors import ConcurrentModification, PaymentRetryExhausted, ValidationFailed
from app.db import session as db_session
from app.db.base import Base
from app.main import app
from app.models.chef import Chef
from app.models.meal import Meal
from app.models.order import Order, OrderItem, OrderStatusHistory
from app.models.webhook_event import ProcessedWebhookEvent
from app.services import order_service, order_status, payment_service
from app.services.payment_gateway import get_payment_gateway


def _build_test_engine(db_file: Path) -> Engine:
    return create_engine(
        f"sqlite:///{db_file}",
        connect_args={"check_same_thread": False},
    )


def _setup(tmp_path: Path, monkeypatch, gateway, name: str) -> sessionmaker:
    engine = _build_test_engine(tmp_path / name)
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    monkeypatch.setattr(db_session, "engine", engine)
    monkeypatch.setattr(db_session, "SessionLocal", testing_session_local)
    monkeypatch.setitem(app.dependency_overrides, get_payment_gateway, lambda: gateway)
    return testing_session_local


def _seed_order(
    session_factory,
    reference: str | None,
    status: str = "pending",
    payment_status: str = "pending",
) -> tuple[int, int]:
    """Create an order of 2 x 1200 (final 2592) with 3 of 5 meals left in stock."""
    setup_session: Session = session_factory()
    try:
        chef = Chef(business_name="Payment Kitchen", latitude=40.0, longitude=-74.0)
        setup_session.add(chef)
        setup_session.flush()
        meal = Meal(chef_id=chef.id, name="Dumplings", price_cents=1200, total_quantity=5, remaining_quantity=3)
        setup_session.add(meal)
        setup_session.flush()
        order = Order(
            customer_id=11,
            chef_id=chef.id,
            delivery_mode="pickup",
            total_cents=2400,
            delivery_fee_cents=0,
            tax_cents=192,
            discount_cents=0,
            final_cents=2592,
            status=status,
            payment_status=payment_status,
            payment_intent_reference=reference,
        )
        order.items = [OrderItem(meal_id=meal.id, chef_id=chef.id, quantity=2, unit_price_cents=1200)]
        setup_session.add(order)
        setup_session.commit()
        return order.id, meal.id
    finally:
        setup_session.close()


def _load_order(session_factory, order_id: int) -> Order:
    verify_session: Session = session_factory()
    try:
        order = verify_session.get(Order, order_id)
        verify_session.expunge(order)
        return order
    finally:
        verify_session.close()


def test_create_intent_is_reused_for_same_order(tmp_path: Path, monkeypatch, gateway) -> None:
    testing_session_local = _setup(tmp_path, monkeypatch, gateway, "test_intent_reuse.db")
    order_id, _ = _seed_order(testing_session_local, reference=None)

    with TestClient(app) as client:
        mismatch = client.post("/api/v1/payments/intents", json={"order_id": order_id, "amount_cents": 2500})
        first = client.post("/api/v1/payments/intents", json={"order_id": order_id, "amount_cents": 2592})
        second = client.post("/api/v1/payments/intents", json={"order_id": order_id, "amount_cents": 2592})

    assert mismatch.status_code == 400
    assert mismatch.json()["error"]["code"] == "AMOUNT_MISMATCH"
    assert first.status_code == 200, first.text
    assert first.json()["client_secret"]
    assert second.json()["reference"] == first.json()["reference"]
    assert gateway.created == 1
    assert _load_order(testing_session_local, order_id).payment_intent_reference == first.json()["reference"]


def test_confirm_payment_is_idempotent(tmp_path: Path, monkeypatch, gateway) -> None:
    testing_session_local = _setup(tmp_path, monkeypatch, gateway, "test_confirm_idempotent.db")
    reference = gateway.add_intent(2592, status="succeeded")
    order_id, _ = _seed_order(testing_session_local, reference=reference)

    with TestClient(app) as client:
        first = client.post("/api/v1/payments/confirm", json={"reference": reference})
        second = client.post("/api/v1/payments/confirm", json={"reference": reference})

    for response in (first, second):
        assert response.status_code == 200, response.text
        assert response.json()["payment_status"] == "paid"
        assert response.json()["order_status"] == "confirmed"

    order = _load_order(testing_session_local, order_id)
    assert order.version == 2
    assert order.confirmed_at is not None

    verify_session: Session = testing_session_local()
    try:
        notes = [row.note for row in verify_session.query(OrderStatusHistory).filter(OrderStatusHistory.order_id == order_id)]
        assert notes == ["payment received"]
    finally:
        verify_session.close()


def test_confirm_payment_reports_incomplete_and_failed(tmp_path: Path, monkeypatch, gateway) -> None:
    testing_session_local = _setup(tmp_path, monkeypatch, gateway, "test_confirm_states.db")
    reference = gateway.add_intent(2592, status="requires_action")
    order_id, _ = _seed_order(testing_session_local, reference=reference)

    with TestClient(app) as client:
        incomplete = client.post("/api/v1/payments/confirm", json={"reference": reference})
        assert _load_order(testing_session_local, order_id).payment_status == "pending"

        gateway.set_status(reference, "payment_failed")
        failed = client.post("/api/v1/payments/confirm", json={"reference": reference})
        unknown = client.post("/api/v1/payments/confirm", json={"reference": "pi_unknown"})

    assert incomplete.status_code == 402
    assert incomplete.json()["error"]["code"] == "PAYMENT_INCOMPLETE"
    assert failed.status_code == 402
    assert failed.json()["error"]["code"] == "PAYMENT_FAILED"
    assert _load_order(testing_session_local, order_id).payment_status == "failed"
    assert unknown.status_code == 404


def test_webhook_success_applies_once(tmp_path: Path, monkeypatch, gateway, signed_event) -> None:
    testing_session_local = _setup(tmp_path, monkeypatch, gateway, "test_webhook_replay.db")
    reference = gateway.add_intent(2592, status="succeeded")
    order_id, _ = _seed_order(testing_session_local, reference=reference)
    payload, signature = signed_event("evt_1", "payment_intent.succeeded", reference, "succeeded")

    with TestClient(app) as client:
        first = client.post("/api/v1/payments/webhook", content=payload, headers={"Stripe-Signature": signature})
        replay = client.post("/api/v1/payments/webhook", content=payload, headers={"Stripe-Signature": signature})

    assert first.status_code == 200, first.text
    assert first.json() == {"accepted": True, "duplicate": False}
    assert replay.status_code == 200
    assert replay.json() == {"accepted": True, "duplicate": True}

    order = _load_order(testing_session_local, order_id)
    assert order.payment_status == "paid"
    assert order.status == "confirmed"
    assert order.version == 2

    verify_session: Session = testing_session_local()
    try:
        assert verify_session.query(ProcessedWebhookEvent).count() == 1
    finally:
        verify_session.close()


def test_webhook_is_processed_off_the_event_loop(tmp_path: Path, monkeypatch, gateway, signed_event) -> None:
    testing_session_local = _setup(tmp_path, monkeypatch, gateway, "test_webhook_threadpool.db")
    reference = gateway.add_intent(2592, status="succeeded")
    order_id, _ = _seed_order(testing_session_local, reference=reference)
    payload, signature = signed_event("evt_thread", "payment_intent.succeeded", reference, "succeeded")
    loop_seen: list[bool] = []
    verify = gateway.verify_and_parse_webhook

    def _recording_verify(body, header):
        try:
            asyncio.get_running_loop()
            loop_seen.append(True)
        except RuntimeError:
            loop_seen.append(False)
        return verify(body, header)

    monkeypatch.setattr(gateway, "verify_and_parse_webhook", _recording_verify)

    with TestClient(app) as client:
        response = client.post("/api/v1/payments/webhook", content=payload, headers={"Stripe-Signature": signature})

    assert response.status_code == 200, response.text
    assert loop_seen == [False]
    assert _load_order(testing_session_local, order_id).payment_status == "paid"

def test_webhook_rejects_missing_or_bad_signature(tmp_path: Path, monkeypatch, gateway, signed_event) -> None:
    testing_session_local = _setup(tmp_path, monkeypatch, gateway, "test_webhook_signature.db")
    reference = gateway.add_intent(2592, status="succeeded")
    order_id, _ = _seed_order(testing_session_local, reference=reference)
    payload, signature = signed_event("evt_2", "payment_intent.succeeded", reference, "succeeded")
    tampered = payload.replace(b"evt_2", b"evt_3")

    with TestClient(app) as client:
        missing = client.post("/api/v1/payments/webhook", content=payload)
        invalid = client.post("/api/v1/payments/webhook", content=tampered, headers={"Stripe-Signature": signature})

    assert missing.status_code == 400
    assert missing.json()["error"]["code"] == "MISSING_SIGNATURE"
    assert invalid.status_code == 400
    assert invalid.json()["error"]["code"] == "INVALID_SIGNATURE"
    assert _load_order(testing_session_local, order_id).payment_status == "pending"


def test_late_failure_never_overrides_success(tmp_path: Path, monkeypatch, gateway, signed_event) -> None:
    testing_session_local = _setup(tmp_path, monkeypatch, gateway, "test_webhook_late_failure.db")
    reference = gateway.add_intent(2592, status="succeeded")
    order_id, _ = _seed_order(testing_session_local, reference=reference, status="confirmed", payment_status="paid")
    payload, signature = signed_event("evt_4", "payment_intent.payment_failed", reference, "requires_payment_method")

    with TestClient(app) as client:
        response = client.post("/api/v1/payments/webhook", content=payload, headers={"Stripe-Signature": signature})

    assert response.status_code == 200
    order = _load_order(testing_session_local, order_id)
    assert order.payment_status == "paid"
    assert order.status == "confirmed"


def test_webhook_canceled_intent_cancels_order(tmp_path: Path, monkeypatch, gateway, signed_event) -> None:
    testing_session_local = _setup(tmp_path, monkeypatch, gateway, "test_webhook_canceled.db")
    reference = gateway.add_intent(2592, status="canceled")
    order_id, meal_id = _seed_order(testing_session_local, reference=reference)
    payload, signature = signed_event("evt_5", "payment_intent.canceled", reference, "canceled")

    with TestClient(app) as client:
        response = client.post("/api/v1/payments/webhook", content=payload, headers={"Stripe-Signature": signature})

    assert response.status_code == 200
    order = _load_order(testing_session_local, order_id)
    assert order.payment_status == "failed"
    assert order.status == "cancelled"
    assert order.cancellation_reason == "payment_canceled"

    verify_session: Session = testing_session_local()
    try:
        assert verify_session.get(Meal, meal_id).remaining_quantity == 5
    finally:
        verify_session.close()


def test_refund_boundaries(tmp_path: Path, monkeypatch, gateway) -> None:
    testing_session_local = _setup(tmp_path, monkeypatch, gateway, "test_refund_boundaries.db")
    reference = gateway.add_intent(2592, status="succeeded")
    order_id, meal_id = _seed_order(testing_session_local, reference=reference, status="confirmed", payment_status="paid")
    unpaid_id, _ = _seed_order(testing_session_local, reference=None)

    with TestClient(app) as client:
        partial = client.post("/api/v1/payments/refunds", json={"order_id": order_id, "amount_cents": 1000, "reason": "cold food"})
        over = client.post("/api/v1/payments/refunds", json={"order_id": order_id, "amount_cents": 1593, "reason": "cold food"})
        rest = client.post("/api/v1/payments/refunds", json={"order_id": order_id, "reason": "cold food"})
        again = client.post("/api/v1/payments/refunds", json={"order_id": order_id, "amount_cents": 1, "reason": "cold food"})
        unpaid = client.post("/api/v1/payments/refunds", json={"order_id": unpaid_id, "reason": "cold food"})

    assert partial.status_code == 200, partial.text
    assert partial.json()["payment_status"] == "partially_refunded"
    assert partial.json()["order_status"] == "confirmed"
    assert partial.json()["refund_cents"] == 1000

    assert over.status_code == 400
    assert over.json()["error"]["code"] == "INVALID_REFUND_AMOUNT"

    assert rest.status_code == 200, rest.text
    assert rest.json()["refund_cents"] == 2592
    assert rest.json()["payment_status"] == "refunded"
    assert rest.json()["order_status"] == "cancelled"

    assert again.status_code == 409
    assert again.json()["error"]["code"] == "INVALID_PAYMENT_STATUS"
    assert unpaid.status_code == 409

    assert [receipt.amount_cents for receipt in gateway.refunds] == [1000, 1592]
    verify_session: Session = testing_session_local()
    try:
        assert verify_session.get(Meal, meal_id).remaining_quantity == 5
    finally:
        verify_session.close()


def test_retry_backs_off_and_gives_up(tmp_path: Path, monkeypatch, gateway) -> None:
    engine = _build_test_engine(tmp_path / "test_retry_exhausted.db")
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(settings, "payment_retry_base_seconds", 1.0)

    reference = gateway.add_intent(2592, status="requires_payment_method")
    gateway.confirm_results = ["requires_payment_method"] * 3
    order_id, _ = _seed_order(testing_session_local, reference=reference, payment_status="failed")
    delays: list[float] = []

    with testing_session_local() as session:
        with pytest.raises(PaymentRetryExhausted) as exc_info:
            payment_service.retry_payment(session, gateway, order_id, max_attempts=3, sleep=delays.append)

    assert exc_info.value.details == {"attempts": 3}
    assert delays == [2.0, 4.0, 8.0]
    assert gateway.confirm_calls == 3

    order = _load_order(testing_session_local, order_id)
    assert order.payment_status == "failed"
    assert order.payment_attempts == 3


def test_retry_succeeds_on_later_attempt(tmp_path: Path, monkeypatch, gateway) -> None:
    testing_session_local = _setup(tmp_path, monkeypatch, gateway, "test_retry_success.db")
    monkeypatch.setattr(settings, "payment_retry_base_seconds", 0.0)
    reference = gateway.add_intent(2592, status="requires_payment_method")
    gateway.confirm_results = ["requires_payment_method", "succeeded"]
    order_id, _ = _seed_order(testing_session_local, reference=reference, payment_status="failed")
    paid_id, _ = _seed_order(
        testing_session_local,
        reference=gateway.add_intent(2592, status="succeeded"),
        status="confirmed",
        payment_status="paid",
    )

    with TestClient(app) as client:
        response = client.post("/api/v1/payments/retry", json={"order_id": order_id, "max_attempts": 3})
        already_paid = client.post("/api/v1/payments/retry", json={"order_id": paid_id})

    assert response.status_code == 200, response.text
    assert response.json() == {
        "order_id": order_id,
        "payment_status": "paid",
        "order_status": "confirmed",
        "retries_used": 2,
    }
    assert gateway.confirm_calls == 2
    assert already_paid.status_code == 409
    assert already_paid.json()["error"]["code"] == "PAYMENT_ALREADY_SUCCESSFUL"


def test_failed_refund_after_cancellation_is_retried_later(tmp_path: Path, monkeypatch, gateway) -> None:
    engine = _build_test_engine(tmp_path / "test_pending_refund.db")
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    reference = gateway.add_intent(2592, status="succeeded")
    order_id, _ = _seed_order(testing_session_local, reference=reference, status="confirmed", payment_status="paid")
    gateway.fail_refunds = True

    with testing_session_local() as session:
        order = order_service.cancel_order(session, gateway, order_id, "changed plans")
        assert order.status == "cancelled"

    order = _load_order(testing_session_local, order_id)
    assert order.refund_pending is True
    assert order.payment_status == "paid"

    gateway.fail_refunds = False
    with testing_session_local() as session:
        assert payment_service.process_pending_refunds(session, gateway) == 1

    order = _load_order(testing_session_local, order_id)
    assert order.refund_pending is False
    assert order.payment_status == "refunded"
    assert order.refund_cents == 2592


def test_retry_survives_gateway_errors(tmp_path: Path, monkeypatch, gateway) -> None:
    engine = _build_test_engine(tmp_path / "test_retry_gateway_errors.db")
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(settings, "payment_retry_base_seconds", 1.0)

    reference = gateway.add_intent(2592, status="requires_payment_method")
    gateway.confirm_errors = 2
    order_id, _ = _seed_order(testing_session_local, reference=reference, payment_status="failed")
    delays: list[float] = []

    with testing_session_local() as session:
        outcome = payment_service.retry_payment(session, gateway, order_id, max_attempts=3, sleep=delays.append)
        assert outcome.retries_used == 3

    assert delays == [2.0, 4.0, 8.0]
    assert gateway.confirm_calls == 3

    order = _load_order(testing_session_local, order_id)
    assert order.payment_status == "paid"
    assert order.status == "confirmed"
    assert order.payment_attempts == 3


def test_retry_rejects_zero_attempts(tmp_path: Path, gateway) -> None:
    engine = _build_test_engine(tmp_path / "test_retry_zero_attempts.db")
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    reference = gateway.add_intent(2592, status="requires_payment_method")
    order_id, _ = _seed_order(testing_session_local, reference=reference, payment_status="failed")
    delays: list[float] = []

    with testing_session_local() as session:
        with pytest.raises(ValidationFailed):
            payment_service.retry_payment(session, gateway, order_id, max_attempts=0, sleep=delays.append)

    assert delays == []
    assert gateway.confirm_calls == 0
    assert _load_order(testing_session_local, order_id).payment_attempts == 0


def test_full_refund_is_kept_when_cancellation_conflicts(tmp_path: Path, monkeypatch, gateway) -> None:
    engine = _build_test_engine(tmp_path / "test_refund_cancel_conflict.db")
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    reference = gateway.add_intent(2592, status="succeeded")
    order_id, _ = _seed_order(testing_session_local, reference=reference, status="confirmed", payment_status="paid")

    def _conflicting_transition(db, order, new_status, now, note=None):
        raise ConcurrentModification(details={"order_id": order.id})

    monkeypatch.setattr(order_status, "apply_transition", _conflicting_transition)

    with testing_session_local() as session:
        outcome = payment_service.refund(session, gateway, order_id, None, "kitchen closed")
        assert outcome.receipt.amount_cents == 2592

    assert [receipt.amount_cents for receipt in gateway.refunds] == [2592]
    order = _load_order(testing_session_local, order_id)
    assert order.refund_cents == 2592
    assert order.payment_status == "refunded"
    assert order.refund_reason == "kitchen closed"
    assert order.status == "confirmed"
