"""Order API schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class CheckoutRequest(BaseModel):
    """Check out a cart, optionally with an already-completed payment."""

    cart_id: int
    payment_intent_reference: str | None = Field(default=None, max_length=255)
    customer_notes: str | None = Field(default=None, max_length=500)


class StatusUpdateRequest(BaseModel):
    status: str = Field(min_length=1, max_length=32)
    note: str | None = Field(default=None, max_length=500)


class CancelRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=200)


class OrderItemResponse(BaseModel):
    """Serialized order item."""

    meal_id: int
    chef_id: int
    quantity: int
    unit_price_cents: int
    note: str | None = None

    model_config = ConfigDict(from_attributes=True)


class OrderHistoryResponse(BaseModel):
    from_status: str | None = None
    to_status: str
    note: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OrderResponse(BaseModel):
    """Serialized order."""

    id: int
    customer_id: int
    chef_id: int
    status: str
    payment_status: str
    payment_intent_reference: str | None = None
    delivery_mode: str
    street: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    total_cents: int
    delivery_fee_cents: int
    tax_cents: int
    discount_cents: int
    final_cents: int
    refund_cents: int
    created_at: datetime
    confirmed_at: datetime | None = None
    preparing_at: datetime | None = None
    ready_at: datetime | None = None
    out_for_delivery_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    estimated_delivery_at: datetime | None = None
    customer_notes: str | None = None
    chef_notes: str | None = None
    cancellation_reason: str | None = None
    refund_reason: str | None = None
    items: list[OrderItemResponse]
    history: list[OrderHistoryResponse] = []

    model_config = ConfigDict(from_attributes=True)


class CheckoutSummary(BaseModel):
    order_count: int
    total_charged_cents: int
    estimated_delivery_at: datetime | None = None


class CheckoutResponse(BaseModel):
    orders: list[OrderResponse]
    summary: CheckoutSummary


class OrderTimestamps(BaseModel):
    status_updated_at: datetime | None = None
    confirmed_at: datetime | None = None
    preparing_at: datetime | None = None
    ready_at: datetime | None = None
    out_for_delivery_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class StatusUpdateResponse(BaseModel):
    order_id: int
    status: str
    timestamps: OrderTimestamps


class CancelResponse(BaseModel):
    order_id: int
    status: str
    payment_status: str


class OrderTrackingResponse(BaseModel):
    """Live view of an order for the customer."""

    order_id: int
    status: str
    payment_status: str
    timestamps: OrderTimestamps
    estimated_delivery_at: datetime | None = None
    time_remaining_minutes: int | None = None
