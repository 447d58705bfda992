"""Cart API schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

DeliveryMode = Literal["delivery", "pickup"]


class DeliveryAddress(BaseModel):
    """Complete street address with coordinates, validated on construction."""

    street: str = Field(min_length=1, max_length=100)
    city: str = Field(min_length=1, max_length=50)
    state: str = Field(min_length=1, max_length=50)
    postal_code: str = Field(pattern=r"^\d{5}(-\d{4})?$")
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)

    model_config = ConfigDict(frozen=True)


class CartItemAdd(BaseModel):
    """Meal to add to the cart."""

    meal_id: int
    quantity: int = Field(default=1, ge=1, le=100)
    note: str | None = Field(default=None, max_length=500)


class CartItemUpdate(BaseModel):
    """New quantity for an existing cart line."""

    quantity: int = Field(ge=1, le=100)


class DeliveryUpdate(BaseModel):
    """Delivery mode and, for deliveries, the destination address."""

    delivery_mode: DeliveryMode
    address: DeliveryAddress | None = None


class PromoCodeApply(BaseModel):
    promo_code: str = Field(min_length=1, max_length=20)


class CartItemResponse(BaseModel):
    """Serialized cart line."""

    meal_id: int
    chef_id: int
    quantity: int
    unit_price_cents: int
    note: str | None = None

    model_config = ConfigDict(from_attributes=True)


class CartResponse(BaseModel):
    """Serialized cart."""

    id: int
    customer_id: int
    delivery_mode: str
    street: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    promo_code: str | None = None
    discount_cents: int
    expires_at: datetime
    items: list[CartItemResponse]

    model_config = ConfigDict(from_attributes=True)


class CartSummaryResponse(BaseModel):
    """Price preview for the cart, split per chef for delivery fees."""

    subtotal_cents: int
    delivery_fees_cents: dict[int, int]
    tax_cents: int
    discount_cents: int
    total_cents: int
    item_count: int
