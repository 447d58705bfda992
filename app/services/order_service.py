"""Order lookups and fulfilment status changes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.errors import MarketplaceError, OrderNotCancellable, OrderNotFound
from app.models.order import Order
from app.services import order_status, payment_service
from app.services.notifications import dispatcher
from app.services.payment_gateway import PaymentGateway
from app.utils.time import as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class OrderTracking:
    order: Order
    estimated_delivery_at: datetime | None
    time_remaining_minutes: int | None


def get_order(db: Session, order_id: int) -> Order:
    order: Order | None = db.get(Order, order_id)
    if order is None:
        raise OrderNotFound(details={"order_id": order_id})
    return order


def list_customer_orders(db: Session, customer_id: int, status: str | None = None) -> list[Order]:
    """Return a customer's orders, newest first."""
    query = select(Order).where(Order.customer_id == customer_id)
    if status is not None:
        query = query.where(Order.status == status)
    return list(db.scalars(query.order_by(Order.created_at.desc(), Order.id.desc())).all())


def order_tracking(db: Session, order_id: int, now: datetime | None = None) -> OrderTracking:
    """Current order state plus minutes left until the estimated delivery."""
    order = get_order(db, order_id)
    estimated = as_utc(order.estimated_delivery_at)
    remaining: int | None = None
    if estimated is not None and order.status not in order_status.TERMINAL_STATUSES:
        seconds = (estimated - (now or utcnow())).total_seconds()
        remaining = max(0, int(seconds // 60))
    return OrderTracking(order=order, estimated_delivery_at=estimated, time_remaining_minutes=remaining)


def transition_order_status(
    db: Session,
    gateway: PaymentGateway,
    order_id: int,
    new_status: str,
    note: str | None = None,
    now: datetime | None = None,
) -> Order:
    """Move an order along the status graph and run cancellation side effects."""
    order = get_order(db, order_id)
    try:
        applied = order_status.apply_transition(db, order, new_status, now or utcnow(), note=note)
    except MarketplaceError:
        db.rollback()
        raise
    if not applied:
        return order

    db.commit()
    dispatcher.notify(f"order.{new_status}", order)
    if new_status == "cancelled":
        payment_service.settle_pending_refund(db, gateway, order)
    return order


def cancel_order(
    db: Session,
    gateway: PaymentGateway,
    order_id: int,
    reason: str,
    now: datetime | None = None,
) -> Order:
    """Customer-initiated cancellation, allowed only before preparation starts."""
    order = get_order(db, order_id)
    if order.status not in order_status.CUSTOMER_CANCELLABLE_STATUSES:
        logger.warning("[ORDER] Cancellation refused order_id=%s status=%s", order_id, order.status)
        raise OrderNotCancellable(
            f"Order cannot be cancelled when status is {order.status}",
            details={"status": order.status},
        )
    return transition_order_status(db, gateway, order_id, "cancelled", note=reason, now=now)
