"""Inventory ledger for meal availability windows.

Reservations and releases are single conditional UPDATE statements so that
two concurrent checkouts racing for the last portion cannot both succeed.
Callers own the surrounding transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from app.models.meal import Meal
from app.utils.time import as_utc

logger = logging.getLogger(__name__)


def reserve(db: Session, meal_id: int, quantity: int) -> bool:
    """Decrement remaining quantity only if enough stock is left."""
    if quantity < 1:
        raise ValueError("quantity must be >= 1")
    result = db.execute(
        update(Meal)
        .where(
            Meal.id == meal_id,
            Meal.is_active.is_(True),
            Meal.remaining_quantity >= quantity,
        )
        .values(remaining_quantity=Meal.remaining_quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    reserved: bool = result.rowcount == 1
    if not reserved:
        logger.info("[INVENTORY] Reservation refused meal_id=%s quantity=%s", meal_id, quantity)
    return reserved


def release(db: Session, meal_id: int, quantity: int) -> bool:
    """Restore quantity from a cancelled reservation, never above the total."""
    if quantity < 1:
        raise ValueError("quantity must be >= 1")
    restored = Meal.remaining_quantity + quantity
    result = db.execute(
        update(Meal)
        .where(Meal.id == meal_id)
        .values(
            remaining_quantity=case(
                (restored > Meal.total_quantity, Meal.total_quantity),
                else_=restored,
            )
        )
        .execution_options(synchronize_session=False)
    )
    released: bool = result.rowcount == 1
    if not released:
        logger.warning("[INVENTORY] Release skipped, meal_id=%s no longer exists", meal_id)
    return released


def release_items(db: Session, items: Iterable[Any]) -> None:
    """Release every (meal_id, quantity) pair held by order line items."""
    for item in items:
        release(db, item.meal_id, item.quantity)


def unavailability_reason(meal: Meal | None, quantity: int, now: datetime) -> str | None:
    """Return why a meal cannot satisfy ``quantity`` right now, or None."""
    if meal is None:
        return "not_found"
    if not meal.is_active:
        return "inactive"
    available_from = as_utc(meal.available_from)
    available_until = as_utc(meal.available_until)
    if (available_from is not None and now < available_from) or (
        available_until is not None and now > available_until
    ):
        return "outside_window"
    if meal.remaining_quantity < quantity:
        return "insufficient_quantity"
    return None


def find_unavailable(db: Session, requested: Iterable[tuple[int, int]], now: datetime) -> list[dict[str, Any]]:
    """Check (meal_id, quantity) pairs against current stock without mutating it."""
    unavailable: list[dict[str, Any]] = []
    for meal_id, quantity in requested:
        meal: Meal | None = db.get(Meal, meal_id)
        reason = unavailability_reason(meal, quantity, now)
        if reason is not None:
            unavailable.append(
                {
                    "meal_id": meal_id,
                    "requested": quantity,
                    "remaining": meal.remaining_quantity if meal is not None else 0,
                    "reason": reason,
                }
            )
    return unavailable
