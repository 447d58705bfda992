"""Order pricing in integer cents."""

from __future__ import annotations

import math
from collections.abc import Iterable

from app.core.config import settings
from app.models.chef import Chef

EARTH_RADIUS_KM: float = 6371.0


def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def subtotal_cents(lines: Iterable[tuple[int, int]]) -> int:
    """Sum of unit price times quantity for (unit_price_cents, quantity) pairs."""
    return sum(unit_price * quantity for unit_price, quantity in lines)


def tax_cents(subtotal: int) -> int:
    """Tax on ``subtotal``, rounded half up to the cent."""
    return (subtotal * settings.tax_rate_bps + 5000) // 10000


def delivery_fee_cents(chef: Chef | None, delivery_mode: str, latitude: float | None, longitude: float | None) -> int:
    """Base fee plus a per-kilometre charge from the chef's kitchen."""
    if delivery_mode != "delivery":
        return 0
    if chef is None or None in (chef.latitude, chef.longitude, latitude, longitude):
        return settings.delivery_base_fee_cents
    km = distance_km(chef.latitude, chef.longitude, latitude, longitude)
    return settings.delivery_base_fee_cents + round(km * settings.delivery_fee_per_km_cents)


def allocate_discount(discount: int, subtotals: list[int]) -> list[int]:
    """Consume a cart-level discount across orders, capped by each subtotal."""
    remaining = max(discount, 0)
    allocations: list[int] = []
    for subtotal in subtotals:
        portion = min(remaining, subtotal)
        allocations.append(portion)
        remaining -= portion
    return allocations
