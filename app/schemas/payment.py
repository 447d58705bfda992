"""Payment API schemas."""

from pydantic import BaseModel, Field


class PaymentIntentCreate(BaseModel):
    order_id: int
    amount_cents: int = Field(gt=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)


class PaymentIntentResponse(BaseModel):
    reference: str
    client_secret: str | None = None
    amount_cents: int
    currency: str
    status: str


class PaymentConfirmRequest(BaseModel):
    reference: str = Field(min_length=1)


class OrderPaymentState(BaseModel):
    order_id: int
    payment_status: str
    order_status: str


class PaymentConfirmResponse(BaseModel):
    """Result of reconciling a payment intent.

    ``payment_status``/``order_status`` describe the first order; ``orders``
    lists every order paid by the same intent.
    """

    reference: str
    payment_status: str
    order_status: str
    orders: list[OrderPaymentState]


class RefundRequest(BaseModel):
    order_id: int
    amount_cents: int | None = Field(default=None, gt=0)
    reason: str = Field(min_length=1, max_length=200)


class RefundResponse(BaseModel):
    order_id: int
    refund_reference: str
    refund_cents: int
    payment_status: str
    order_status: str


class RetryPaymentRequest(BaseModel):
    order_id: int
    max_attempts: int | None = Field(default=None, ge=1, le=10)


class RetryPaymentResponse(BaseModel):
    order_id: int
    payment_status: str
    order_status: str
    retries_used: int


class WebhookResponse(BaseModel):
    accepted: bool
    duplicate: bool = False
