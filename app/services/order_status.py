"""Order status transition helpers.

``plan_transition`` is pure: it validates an edge and returns the column
changes. ``persist_changes`` is the only place orders are written, as a
compare-and-swap on ``Order.version``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.errors import ConcurrentModification, InvalidTransition
from app.models.order import ORDER_STATUSES, Order, OrderStatusHistory
from app.services import inventory_service

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"preparing", "cancelled"},
    "preparing": {"ready", "cancelled"},
    "ready": {"out_for_delivery", "delivered", "cancelled"},
    "out_for_delivery": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
}
TERMINAL_STATUSES: set[str] = {"delivered", "cancelled"}
CUSTOMER_CANCELLABLE_STATUSES: set[str] = {"pending", "confirmed"}
REFUNDABLE_PAYMENT_STATUSES: set[str] = {"paid", "partially_refunded"}

STATUS_TIMESTAMP_FIELDS: dict[str, str] = {
    "confirmed": "confirmed_at",
    "preparing": "preparing_at",
    "ready": "ready_at",
    "out_for_delivery": "out_for_delivery_at",
    "delivered": "delivered_at",
    "cancelled": "cancelled_at",
}


def can_transition(current: str, new: str) -> bool:
    """Return whether order can move from current to new status."""
    if new not in ALLOWED_TRANSITIONS:
        return False
    return new == current or new in ALLOWED_TRANSITIONS.get(current, set())


def plan_transition(order: Order, new_status: str, now: datetime, note: str | None = None) -> dict[str, Any]:
    """Return the column changes for moving ``order`` to ``new_status``.

    An empty dict means the transition is a self-transition and nothing
    changes. Raises ``InvalidTransition`` for any edge not in the table.
    """
    if not can_transition(order.status, new_status):
        raise InvalidTransition(order.status, new_status)
    if new_status == order.status:
        return {}

    changes: dict[str, Any] = {"status": new_status, "status_updated_at": now}
    timestamp_field: str | None = STATUS_TIMESTAMP_FIELDS.get(new_status)
    if timestamp_field is not None:
        changes[timestamp_field] = now
    if note:
        if new_status == "cancelled":
            changes["cancellation_reason"] = note
        else:
            changes["chef_notes"] = note
    return changes


def persist_changes(db: Session, order: Order, changes: dict[str, Any]) -> None:
    """Write ``changes`` only if nobody else updated the order since it was read."""
    seen_version: int = order.version
    result = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.version == seen_version)
        .values(**changes, version=Order.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("[ORDER] Stale write rejected order_id=%s version=%s", order.id, seen_version)
        raise ConcurrentModification(details={"order_id": order.id})
    db.expire(order)


def record_history(db: Session, order_id: int, from_status: str | None, to_status: str, note: str | None, now: datetime) -> None:
    db.add(
        OrderStatusHistory(
            order_id=order_id,
            from_status=from_status,
            to_status=to_status,
            note=note,
            created_at=now,
        )
    )


def apply_transition(
    db: Session,
    order: Order,
    new_status: str,
    now: datetime,
    note: str | None = None,
    extra_changes: dict[str, Any] | None = None,
) -> bool:
    """Validate and persist a transition in the caller's transaction.

    Entering ``cancelled`` releases the order's reservations and, when money
    was taken, flags the order for a refund. Payment status is never changed
    here. Returns False for a self-transition.
    """
    if new_status not in ORDER_STATUSES:
        raise InvalidTransition(order.status, new_status)
    previous_status: str = order.status
    changes: dict[str, Any] = plan_transition(order, new_status, now, note)
    if not changes:
        return False

    if extra_changes:
        changes.update(extra_changes)
    items = list(order.items)
    if new_status == "cancelled" and order.payment_status in REFUNDABLE_PAYMENT_STATUSES:
        changes["refund_pending"] = True

    persist_changes(db, order, changes)
    record_history(db, order.id, previous_status, new_status, note, now)
    if new_status == "cancelled":
        inventory_service.release_items(db, items)

    logger.info("[ORDER] order_id=%s %s -> %s", order.id, previous_status, new_status)
    return True
