"""Cart aggregate operations.

Every mutation pushes the cart's expiry forward by the configured TTL.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import (
    CartItemNotFound,
    CartNotFound,
    EmptyCart,
    IncompleteDeliveryAddress,
    InvalidPromoCode,
    InvalidQuantity,
    ItemsUnavailable,
    MealNotFound,
)
from app.models.cart import Cart, CartItem
from app.models.chef import Chef
from app.models.meal import Meal
from app.schemas.cart import DeliveryAddress
from app.services import inventory_service, pricing
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

# Fixed promotional discounts in cents.
PROMO_CODES: dict[str, int] = {
    "WELCOME10": 1000,
    "SAVE5": 500,
    "FIRST20": 2000,
}


def _touch(cart: Cart, now: datetime) -> None:
    cart.updated_at = now
    cart.expires_at = now + timedelta(hours=settings.cart_ttl_hours)


def get_cart(db: Session, customer_id: int) -> Cart:
    cart: Cart | None = db.scalars(select(Cart).where(Cart.customer_id == customer_id)).first()
    if cart is None:
        raise CartNotFound(details={"customer_id": customer_id})
    return cart


def get_or_create_cart(db: Session, customer_id: int, now: datetime | None = None) -> Cart:
    """Return the customer's cart, creating an empty one on first use."""
    cart: Cart | None = db.scalars(select(Cart).where(Cart.customer_id == customer_id)).first()
    if cart is None:
        cart = Cart(customer_id=customer_id, delivery_mode="delivery", discount_cents=0)
        _touch(cart, now or utcnow())
        db.add(cart)
        db.flush()
    return cart


def _find_line(cart: Cart, meal_id: int) -> CartItem | None:
    for item in cart.items:
        if item.meal_id == meal_id:
            return item
    return None


def _check_quantity(quantity: int) -> None:
    if quantity < 1 or quantity > settings.max_item_quantity:
        raise InvalidQuantity(
            f"Quantity must be between 1 and {settings.max_item_quantity}",
            details={"quantity": quantity},
        )


def add_item(
    db: Session,
    customer_id: int,
    meal_id: int,
    quantity: int,
    note: str | None = None,
    now: datetime | None = None,
) -> Cart:
    """Add a meal to the cart, merging with an existing line for the same meal."""
    now = now or utcnow()
    meal: Meal | None = db.get(Meal, meal_id)
    if meal is None:
        raise MealNotFound(details={"meal_id": meal_id})

    cart = get_or_create_cart(db, customer_id, now)
    line = _find_line(cart, meal_id)
    new_quantity = quantity + (line.quantity if line is not None else 0)
    _check_quantity(new_quantity)

    reason = inventory_service.unavailability_reason(meal, new_quantity, now)
    if reason is not None:
        raise ItemsUnavailable(
            details=[
                {
                    "meal_id": meal_id,
                    "requested": new_quantity,
                    "remaining": meal.remaining_quantity,
                    "reason": reason,
                }
            ]
        )

    if line is None:
        cart.items.append(
            CartItem(
                meal_id=meal.id,
                chef_id=meal.chef_id,
                quantity=quantity,
                unit_price_cents=meal.price_cents,
                note=note,
            )
        )
    else:
        line.quantity = new_quantity
        if note:
            line.note = note
    _touch(cart, now)
    db.commit()
    db.refresh(cart)
    return cart


def update_item_quantity(
    db: Session,
    customer_id: int,
    meal_id: int,
    quantity: int,
    now: datetime | None = None,
) -> Cart:
    _check_quantity(quantity)
    cart = get_cart(db, customer_id)
    line = _find_line(cart, meal_id)
    if line is None:
        raise CartItemNotFound(details={"meal_id": meal_id})
    line.quantity = quantity
    _touch(cart, now or utcnow())
    db.commit()
    db.refresh(cart)
    return cart


def remove_item(db: Session, customer_id: int, meal_id: int, now: datetime | None = None) -> Cart:
    cart = get_cart(db, customer_id)
    line = _find_line(cart, meal_id)
    if line is None:
        raise CartItemNotFound(details={"meal_id": meal_id})
    cart.items.remove(line)
    _touch(cart, now or utcnow())
    db.commit()
    db.refresh(cart)
    return cart


def clear_cart(db: Session, customer_id: int, now: datetime | None = None) -> Cart:
    """Remove every item and any promo from the cart."""
    cart = get_cart(db, customer_id)
    cart.items.clear()
    cart.promo_code = None
    cart.discount_cents = 0
    _touch(cart, now or utcnow())
    db.commit()
    db.refresh(cart)
    return cart


def set_delivery(
    db: Session,
    customer_id: int,
    delivery_mode: str,
    address: DeliveryAddress | None,
    now: datetime | None = None,
) -> Cart:
    """Set delivery mode; a delivery needs a complete address."""
    now = now or utcnow()
    cart = get_or_create_cart(db, customer_id, now)
    if delivery_mode == "delivery" and address is None and not has_complete_address(cart):
        db.rollback()
        raise IncompleteDeliveryAddress()

    cart.delivery_mode = delivery_mode
    if address is not None:
        cart.street = address.street
        cart.city = address.city
        cart.state = address.state
        cart.postal_code = address.postal_code
        cart.latitude = address.latitude
        cart.longitude = address.longitude
    _touch(cart, now)
    db.commit()
    db.refresh(cart)
    return cart


def apply_promo(db: Session, customer_id: int, promo_code: str, now: datetime | None = None) -> Cart:
    """Apply a fixed discount, never more than the current subtotal."""
    cart = get_cart(db, customer_id)
    if not cart.items:
        raise EmptyCart("Cannot apply promo code to empty cart")
    code = promo_code.strip().upper()
    if code not in PROMO_CODES:
        raise InvalidPromoCode("Invalid or expired promo code", details={"promo_code": promo_code})

    subtotal = pricing.subtotal_cents((item.unit_price_cents, item.quantity) for item in cart.items)
    cart.promo_code = code
    cart.discount_cents = min(PROMO_CODES[code], subtotal)
    _touch(cart, now or utcnow())
    db.commit()
    db.refresh(cart)
    return cart


def remove_promo(db: Session, customer_id: int, now: datetime | None = None) -> Cart:
    cart = get_cart(db, customer_id)
    cart.promo_code = None
    cart.discount_cents = 0
    _touch(cart, now or utcnow())
    db.commit()
    db.refresh(cart)
    return cart


def has_complete_address(cart: Cart) -> bool:
    required = (cart.street, cart.city, cart.state, cart.postal_code, cart.latitude, cart.longitude)
    return all(value is not None and value != "" for value in required)


def group_items_by_chef(items: list[CartItem]) -> dict[int, list[CartItem]]:
    """Partition cart lines per chef, keeping the order items were added in."""
    groups: dict[int, list[CartItem]] = defaultdict(list)
    for item in items:
        groups[item.chef_id].append(item)
    return dict(groups)


def cart_summary(db: Session, customer_id: int) -> dict:
    """Preview the amounts checkout would charge for this cart."""
    cart = get_cart(db, customer_id)
    groups = group_items_by_chef(list(cart.items))
    subtotal = 0
    tax = 0
    fees: dict[int, int] = {}
    for chef_id, items in groups.items():
        chef_subtotal = pricing.subtotal_cents((item.unit_price_cents, item.quantity) for item in items)
        subtotal += chef_subtotal
        tax += pricing.tax_cents(chef_subtotal)
        fees[chef_id] = pricing.delivery_fee_cents(
            db.get(Chef, chef_id), cart.delivery_mode, cart.latitude, cart.longitude
        )
    discount = min(cart.discount_cents, subtotal)
    return {
        "subtotal_cents": subtotal,
        "delivery_fees_cents": fees,
        "tax_cents": tax,
        "discount_cents": discount,
        "total_cents": subtotal + sum(fees.values()) + tax - discount,
        "item_count": sum(item.quantity for item in cart.items),
    }


def cleanup_expired_carts(db: Session, now: datetime | None = None) -> int:
    """Delete carts past their expiry; returns how many were removed."""
    now = now or utcnow()
    expired_ids = list(db.scalars(select(Cart.id).where(Cart.expires_at < now)).all())
    if not expired_ids:
        return 0
    db.execute(delete(CartItem).where(CartItem.cart_id.in_(expired_ids)))
    db.execute(delete(Cart).where(Cart.id.in_(expired_ids)))
    db.commit()
    logger.info("[CART] Cleaned up %s expired carts", len(expired_ids))
    return len(expired_ids)
