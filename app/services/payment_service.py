"""Payment reconciliation: keeps order payment state in line with Stripe.

Webhooks and client-driven confirmation may race for the same order. Both go
through ``_mark_paid``/``_mark_failed``, which read the order's current
state and write with a compare-and-swap, so applying either path twice is a
no-op and a late failure never overrides a recorded success.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import (
    AmountMismatch,
    ConcurrentModification,
    GatewayError,
    InvalidOrderStatus,
    InvalidPaymentStatus,
    InvalidRefundAmount,
    MissingPaymentIntent,
    OrderNotFound,
    PaymentAlreadySuccessful,
    PaymentFailed,
    PaymentIncomplete,
    PaymentRetryExhausted,
    ValidationFailed,
)
from app.models.order import Order
from app.models.webhook_event import ProcessedWebhookEvent
from app.services import order_status
from app.services.notifications import dispatcher
from app.services.payment_gateway import IntentSnapshot, PaymentGateway, RefundReceipt
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

FAILED_INTENT_STATUSES: set[str] = {"canceled", "payment_failed"}
CONFIRMABLE_INTENT_STATUSES: set[str] = {"requires_payment_method", "requires_confirmation"}
SETTLED_PAYMENT_STATUSES: set[str] = {"paid", "refunded", "partially_refunded"}


@dataclass
class RetryOutcome:
    order: Order
    retries_used: int


@dataclass
class RefundOutcome:
    order: Order
    receipt: RefundReceipt


def refund_payment_status(refund_cents: int, final_cents: int) -> str:
    """Payment status after ``refund_cents`` of ``final_cents`` were returned."""
    return "refunded" if refund_cents >= final_cents else "partially_refunded"


def _get_order(db: Session, order_id: int) -> Order:
    order: Order | None = db.get(Order, order_id)
    if order is None:
        raise OrderNotFound(details={"order_id": order_id})
    return order


def _orders_for_reference(db: Session, reference: str) -> list[Order]:
    return list(
        db.scalars(
            select(Order).where(Order.payment_intent_reference == reference).order_by(Order.id.asc())
        ).all()
    )


def _mark_paid(db: Session, order: Order, now: datetime) -> bool:
    """Record a successful payment; confirms pending orders. False if already applied."""
    if order.payment_status in SETTLED_PAYMENT_STATUSES:
        return False

    previous_status: str = order.status
    changes: dict = {"payment_status": "paid"}
    if order.status == "pending":
        changes.update(order_status.plan_transition(order, "confirmed", now))
    elif order.status == "cancelled":
        # Money arrived for an order that no longer exists: give it back.
        changes["refund_pending"] = True

    try:
        order_status.persist_changes(db, order, changes)
    except ConcurrentModification:
        db.refresh(order)
        if order.payment_status in SETTLED_PAYMENT_STATUSES:
            return False
        raise

    if changes.get("status") == "confirmed":
        order_status.record_history(db, order.id, previous_status, "confirmed", "payment received", now)
    logger.info("[PAYMENT] Payment succeeded order_id=%s", order.id)
    return True


def _mark_failed(db: Session, order: Order) -> bool:
    """Record a failed payment unless a success or failure is already recorded."""
    if order.payment_status != "pending":
        return False
    try:
        order_status.persist_changes(db, order, {"payment_status": "failed"})
    except ConcurrentModification:
        db.refresh(order)
        if order.payment_status != "pending":
            return False
        raise
    logger.info("[PAYMENT] Payment failed order_id=%s", order.id)
    return True


def _notify_all(orders: list[Order], event: str) -> None:
    for order in orders:
        dispatcher.notify(event, order)


def _settle_flagged(db: Session, gateway: PaymentGateway, orders: list[Order]) -> None:
    for order in orders:
        if order.refund_pending:
            settle_pending_refund(db, gateway, order)


def create_payment_intent(
    db: Session,
    gateway: PaymentGateway,
    order_id: int,
    amount_cents: int,
    currency: str | None = None,
) -> IntentSnapshot:
    """Create (or reuse) the single payment intent for an order."""
    order = _get_order(db, order_id)
    if order.status == "cancelled" or order.payment_status not in {"pending", "failed"}:
        raise InvalidOrderStatus(details={"status": order.status, "payment_status": order.payment_status})
    if amount_cents != order.final_cents:
        raise AmountMismatch(details={"expected_cents": order.final_cents, "received_cents": amount_cents})

    if order.payment_intent_reference:
        existing = gateway.retrieve_intent(order.payment_intent_reference)
        if existing.status == "succeeded":
            if _mark_paid(db, order, utcnow()):
                db.commit()
                dispatcher.notify("payment.succeeded", order)
            raise PaymentAlreadySuccessful()
        if existing.status not in FAILED_INTENT_STATUSES and existing.amount_cents == order.final_cents:
            logger.info("[PAYMENT] Reusing intent for order_id=%s", order.id)
            return existing

    intent = gateway.create_intent(
        order.final_cents,
        currency or settings.payment_currency,
        metadata={
            "order_id": str(order.id),
            "customer_id": str(order.customer_id),
            "chef_id": str(order.chef_id),
        },
        idempotency_key=f"order-{order.id}-v{order.version}",
    )
    order_status.persist_changes(db, order, {"payment_intent_reference": intent.reference})
    db.commit()
    logger.info("[PAYMENT] Intent created order_id=%s reference=%s", order_id, intent.reference)
    return intent


def confirm_payment(db: Session, gateway: PaymentGateway, reference: str) -> list[Order]:
    """Pull the intent status from Stripe and apply it to every order it pays for."""
    orders = _orders_for_reference(db, reference)
    if not orders:
        raise OrderNotFound(details={"reference": reference})

    intent = gateway.retrieve_intent(reference)
    now = utcnow()
    if intent.status == "succeeded":
        changed = [order for order in orders if _mark_paid(db, order, now)]
        db.commit()
        _notify_all(changed, "payment.succeeded")
        _settle_flagged(db, gateway, changed)
        return orders

    if intent.status in FAILED_INTENT_STATUSES:
        changed = [order for order in orders if _mark_failed(db, order)]
        db.commit()
        _notify_all(changed, "payment.failed")
        raise PaymentFailed(details={"status": intent.status})

    raise PaymentIncomplete(details={"status": intent.status})


def handle_webhook(db: Session, gateway: PaymentGateway, payload: bytes, signature: str | None) -> dict:
    """Verify a Stripe webhook, then apply it at most once per event id."""
    event = gateway.verify_and_parse_webhook(payload, signature)

    db.add(
        ProcessedWebhookEvent(
            event_id=event.event_id,
            event_type=event.event_type,
            intent_reference=event.intent_reference,
        )
    )
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.info("[WEBHOOK] Duplicate event ignored event_id=%s", event.event_id)
        return {"accepted": True, "duplicate": True}

    orders: list[Order] = []
    if event.intent_reference:
        orders = _orders_for_reference(db, event.intent_reference)
    if event.event_type.startswith("payment_intent.") and not orders:
        logger.warning("[WEBHOOK] No order for reference=%s event_id=%s", event.intent_reference, event.event_id)

    now = utcnow()
    notifications: list[tuple[Order, str]] = []
    if event.event_type == "payment_intent.succeeded":
        notifications = [(order, "payment.succeeded") for order in orders if _mark_paid(db, order, now)]
    elif event.event_type == "payment_intent.payment_failed":
        notifications = [(order, "payment.failed") for order in orders if _mark_failed(db, order)]
    elif event.event_type == "payment_intent.canceled":
        for order in orders:
            _mark_failed(db, order)
            if order.status not in order_status.TERMINAL_STATUSES and order.payment_status == "failed":
                order_status.apply_transition(db, order, "cancelled", now, note="payment_canceled")
                notifications.append((order, "order.cancelled"))
    else:
        logger.info("[WEBHOOK] Unhandled event type %s", event.event_type)

    db.commit()
    for order, name in notifications:
        dispatcher.notify(name, order)
    if event.event_type == "payment_intent.succeeded":
        _settle_flagged(db, gateway, [order for order, _ in notifications])
    logger.info("[WEBHOOK] Processed event_id=%s type=%s", event.event_id, event.event_type)
    return {"accepted": True, "duplicate": False}


def _record_attempt(db: Session, order: Order) -> None:
    db.execute(
        update(Order)
        .where(Order.id == order.id)
        .values(payment_attempts=Order.payment_attempts + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def retry_payment(
    db: Session,
    gateway: PaymentGateway,
    order_id: int,
    max_attempts: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RetryOutcome:
    """Re-drive a failed payment with exponential backoff.

    The delay before attempt ``k`` is ``base * 2**k`` seconds. Each attempt is
    committed before the next delay, so abandoning the loop at any point
    leaves the order consistent.
    """
    order = _get_order(db, order_id)
    if order.payment_status == "paid":
        raise PaymentAlreadySuccessful()
    if order.payment_status not in {"pending", "failed"}:
        raise InvalidPaymentStatus(details={"payment_status": order.payment_status})
    if not order.payment_intent_reference:
        raise MissingPaymentIntent()
    attempts: int = settings.payment_retry_max_attempts if max_attempts is None else max_attempts
    if attempts < 1:
        raise ValidationFailed("max_attempts must be at least 1")
    reference: str = order.payment_intent_reference

    try:
        current = gateway.retrieve_intent(reference)
    except GatewayError:
        logger.warning("[PAYMENT] Pre-retry status check failed for order_id=%s", order_id)
        current = None
    if current is not None and current.status == "succeeded":
        if _mark_paid(db, order, utcnow()):
            db.commit()
            dispatcher.notify("payment.succeeded", order)
        return RetryOutcome(order=order, retries_used=0)

    for attempt in range(1, attempts + 1):
        delay = settings.payment_retry_base_seconds * 2**attempt
        logger.info("[PAYMENT] Retry %s/%s for order_id=%s in %.1fs", attempt, attempts, order_id, delay)
        sleep(delay)
        _record_attempt(db, order)
        try:
            intent = gateway.retrieve_intent(reference)
            if intent.status in CONFIRMABLE_INTENT_STATUSES:
                intent = gateway.confirm_intent(reference)
        except GatewayError as exc:
            logger.warning("[PAYMENT] Retry %s/%s for order_id=%s raised %s", attempt, attempts, order_id, exc.code)
            continue
        if intent.status == "succeeded":
            if _mark_paid(db, order, utcnow()):
                db.commit()
                dispatcher.notify("payment.succeeded", order)
            return RetryOutcome(order=order, retries_used=attempt)

    db.refresh(order)
    if _mark_failed(db, order):
        db.commit()
    logger.warning("[PAYMENT] Retries exhausted for order_id=%s after %s attempts", order_id, attempts)
    raise PaymentRetryExhausted(
        f"Payment retry failed after {attempts} attempts",
        details={"attempts": attempts},
    )


def refund(
    db: Session,
    gateway: PaymentGateway,
    order_id: int,
    amount_cents: int | None,
    reason: str,
) -> RefundOutcome:
    """Refund part or all of an order's payment.

    A refund that brings the total refunded to the full amount also cancels
    the order if it is still open.
    """
    order = _get_order(db, order_id)
    if order.payment_status not in order_status.REFUNDABLE_PAYMENT_STATUSES:
        raise InvalidPaymentStatus(
            "Order payment is not eligible for refund",
            details={"payment_status": order.payment_status},
        )
    if not order.payment_intent_reference:
        raise MissingPaymentIntent()

    refundable: int = order.final_cents - order.refund_cents
    amount: int = refundable if amount_cents is None else amount_cents
    if amount <= 0 or amount > refundable:
        raise InvalidRefundAmount(details={"requested_cents": amount, "refundable_cents": refundable})

    intent = gateway.retrieve_intent(order.payment_intent_reference)
    if not intent.charge_reference:
        raise GatewayError("No charge found for this payment intent", details={"operation": "create_refund"})
    receipt = gateway.create_refund(
        intent.charge_reference,
        amount,
        reason,
        metadata={"order_id": str(order.id), "customer_id": str(order.customer_id)},
        idempotency_key=f"order-{order.id}-refund-{order.refund_cents}-{amount}",
    )

    # The money has moved; record it even if another writer got in first.
    for _ in range(3):
        total_refunded = min(order.refund_cents + amount, order.final_cents)
        payment_status = refund_payment_status(total_refunded, order.final_cents)
        changes = {
            "refund_cents": total_refunded,
            "refund_reason": reason,
            "payment_status": payment_status,
        }
        if payment_status == "refunded":
            changes["refund_pending"] = False
        try:
            order_status.persist_changes(db, order, changes)
            break
        except ConcurrentModification:
            db.refresh(order)
    else:
        db.rollback()
        logger.error("[PAYMENT] Refund %s not recorded for order_id=%s", receipt.refund_reference, order.id)
        raise ConcurrentModification(details={"order_id": order.id, "refund_reference": receipt.refund_reference})

    db.commit()
    dispatcher.notify(f"payment.{order.payment_status}", order)
    logger.info("[PAYMENT] Refunded %s cents order_id=%s", amount, order.id)

    if order.payment_status == "refunded":
        _cancel_after_full_refund(db, order, reason)
    return RefundOutcome(order=order, receipt=receipt)


def _cancel_after_full_refund(db: Session, order: Order, reason: str) -> None:
    """Close an order whose payment has been returned in full.

    The refund is already committed; losing the race here only leaves the
    order open for an operator to cancel.
    """
    for _ in range(2):
        if order.status in order_status.TERMINAL_STATUSES:
            return
        try:
            order_status.apply_transition(db, order, "cancelled", utcnow(), note=reason)
        except ConcurrentModification:
            db.rollback()
            db.refresh(order)
            continue
        db.commit()
        dispatcher.notify("order.cancelled", order)
        return
    logger.warning("[PAYMENT] Refunded order_id=%s left in status %s after conflicting updates", order.id, order.status)


def settle_pending_refund(db: Session, gateway: PaymentGateway, order: Order) -> RefundOutcome | None:
    """Return the remaining balance of a cancelled order flagged for refund.

    A gateway failure leaves ``refund_pending`` set for
    ``process_pending_refunds`` to pick up later.
    """
    if not order.refund_pending:
        return None
    try:
        return refund(db, gateway, order.id, None, order.cancellation_reason or "order_cancelled")
    except (GatewayError, MissingPaymentIntent) as exc:
        db.rollback()
        logger.warning("[PAYMENT] Deferred refund for order_id=%s: %s", order.id, exc.code)
        return None


def process_pending_refunds(db: Session, gateway: PaymentGateway) -> int:
    """Retry refunds for cancelled orders whose refund request has not gone through."""
    orders = list(
        db.scalars(
            select(Order).where(Order.refund_pending.is_(True), Order.status == "cancelled").order_by(Order.id.asc())
        ).all()
    )
    settled = 0
    for order in orders:
        if settle_pending_refund(db, gateway, order) is not None:
            settled += 1
    logger.info("[PAYMENT] Pending refunds settled: %s/%s", settled, len(orders))
    return settled
