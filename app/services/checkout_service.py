"""Checkout: turns one cart into one order per chef.

All stock reservations and order rows for a cart are written in a single
transaction. If any reservation is refused the transaction is rolled back,
so a failed checkout leaves no orders behind and every meal's remaining
quantity exactly where it was.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.errors import (
    AmountMismatch,
    CartExpired,
    CartNotFound,
    EmptyCart,
    IncompleteDeliveryAddress,
    InvalidPaymentStatus,
    ItemsUnavailable,
)
from app.models.cart import Cart, CartItem
from app.models.chef import Chef
from app.models.meal import Meal
from app.models.order import Order, OrderItem
from app.services import inventory_service, order_status, pricing
from app.services.cart_service import group_items_by_chef, has_complete_address
from app.services.notifications import dispatcher
from app.services.payment_gateway import PaymentGateway
from app.utils.time import as_utc, utcnow

logger = logging.getLogger(__name__)

DELIVERY_BUFFER_MINUTES: int = 30


@dataclass
class CheckoutResult:
    orders: list[Order]
    summary: dict = field(default_factory=dict)


def _seed_payment_status(db: Session, gateway: PaymentGateway, reference: str | None) -> tuple[str, int | None]:
    """Return the initial payment status and the amount the reference paid."""
    if not reference:
        return "pending", None
    already_used = db.scalars(select(Order.id).where(Order.payment_intent_reference == reference)).first()
    if already_used is not None:
        raise InvalidPaymentStatus(
            "Payment reference is already attached to other orders",
            details={"reference": reference},
        )
    intent = gateway.retrieve_intent(reference)
    if intent.status == "succeeded":
        return "paid", intent.amount_cents
    return "pending", None


def _build_order(
    cart: Cart,
    chef: Chef | None,
    chef_id: int,
    items: list[CartItem],
    discount: int,
    payment_status: str,
    reference: str | None,
    customer_notes: str | None,
    estimated_delivery_at: datetime,
) -> Order:
    subtotal = pricing.subtotal_cents((item.unit_price_cents, item.quantity) for item in items)
    delivery_fee = pricing.delivery_fee_cents(chef, cart.delivery_mode, cart.latitude, cart.longitude)
    tax = pricing.tax_cents(subtotal)
    order = Order(
        customer_id=cart.customer_id,
        chef_id=chef_id,
        delivery_mode=cart.delivery_mode,
        street=cart.street,
        city=cart.city,
        state=cart.state,
        postal_code=cart.postal_code,
        latitude=cart.latitude,
        longitude=cart.longitude,
        total_cents=subtotal,
        delivery_fee_cents=delivery_fee,
        tax_cents=tax,
        discount_cents=discount,
        final_cents=subtotal + delivery_fee + tax - discount,
        refund_cents=0,
        status="pending",
        payment_status=payment_status,
        payment_intent_reference=reference,
        customer_notes=customer_notes or cart.notes,
        estimated_delivery_at=estimated_delivery_at,
        version=1,
    )
    order.items = [
        OrderItem(
            meal_id=item.meal_id,
            chef_id=item.chef_id,
            quantity=item.quantity,
            unit_price_cents=item.unit_price_cents,
            note=item.note,
        )
        for item in items
    ]
    return order


def checkout(
    db: Session,
    gateway: PaymentGateway,
    cart_id: int,
    payment_intent_reference: str | None = None,
    customer_notes: str | None = None,
    now: datetime | None = None,
) -> CheckoutResult:
    """Convert a cart into one pending order per chef, reserving stock."""
    now = now or utcnow()
    cart: Cart | None = db.get(Cart, cart_id)
    if cart is None:
        raise CartNotFound(details={"cart_id": cart_id})
    if not cart.items:
        raise EmptyCart()
    if as_utc(cart.expires_at) < now:
        raise CartExpired()
    if cart.delivery_mode == "delivery" and not has_complete_address(cart):
        raise IncompleteDeliveryAddress()

    lines = list(cart.items)
    unavailable = inventory_service.find_unavailable(db, [(line.meal_id, line.quantity) for line in lines], now)
    if unavailable:
        logger.info("[CHECKOUT] cart_id=%s rejected, %s item(s) unavailable", cart_id, len(unavailable))
        raise ItemsUnavailable(details=unavailable)

    payment_status, paid_cents = _seed_payment_status(db, gateway, payment_intent_reference)

    groups = group_items_by_chef(lines)
    subtotals = [
        pricing.subtotal_cents((item.unit_price_cents, item.quantity) for item in items) for items in groups.values()
    ]
    discounts = pricing.allocate_discount(cart.discount_cents, subtotals)

    orders: list[Order] = []
    try:
        for (chef_id, items), discount in zip(groups.items(), discounts):
            for item in items:
                if not inventory_service.reserve(db, item.meal_id, item.quantity):
                    raise ItemsUnavailable(
                        details=[{"meal_id": item.meal_id, "requested": item.quantity, "reason": "insufficient_quantity"}]
                    )
            prep_minutes = max(
                (meal.preparation_minutes for meal in (db.get(Meal, item.meal_id) for item in items) if meal is not None),
                default=DELIVERY_BUFFER_MINUTES,
            )
            order = _build_order(
                cart,
                db.get(Chef, chef_id),
                chef_id,
                items,
                discount,
                payment_status,
                payment_intent_reference,
                customer_notes,
                now + timedelta(minutes=prep_minutes + DELIVERY_BUFFER_MINUTES),
            )
            db.add(order)
            orders.append(order)

        total_charged = sum(order.final_cents for order in orders)
        if paid_cents is not None and paid_cents != total_charged:
            raise AmountMismatch(details={"expected_cents": total_charged, "received_cents": paid_cents})

        db.flush()
        for order in orders:
            order_status.record_history(db, order.id, None, "pending", None, now)
        cart.items.clear()
        cart.promo_code = None
        cart.discount_cents = 0
        cart.updated_at = now
        db.commit()
    except Exception:
        db.rollback()
        logger.info("[CHECKOUT] cart_id=%s rolled back", cart_id)
        raise

    for order in orders:
        db.refresh(order)
        dispatcher.notify("order.created", order)
    logger.info(
        "[CHECKOUT] cart_id=%s produced %s order(s), total %s cents, payment_status=%s",
        cart_id,
        len(orders),
        total_charged,
        payment_status,
    )
    return CheckoutResult(
        orders=orders,
        summary={
            "order_count": len(orders),
            "total_charged_cents": total_charged,
            "estimated_delivery_at": max(order.estimated_delivery_at for order in orders),
        },
    )
