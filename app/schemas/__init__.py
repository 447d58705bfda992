"""Schema exports."""

from app.schemas.cart import (
    CartItemAdd,
    CartItemResponse,
    CartItemUpdate,
    CartResponse,
    CartSummaryResponse,
    DeliveryAddress,
    DeliveryUpdate,
    PromoCodeApply,
)
from app.schemas.order import (
    CancelRequest,
    CancelResponse,
    CheckoutRequest,
    CheckoutResponse,
    CheckoutSummary,
    OrderItemResponse,
    OrderResponse,
    StatusUpdateRequest,
    StatusUpdateResponse,
)
from app.schemas.payment import (
    PaymentConfirmRequest,
    PaymentConfirmResponse,
    PaymentIntentCreate,
    PaymentIntentResponse,
    RefundRequest,
    RefundResponse,
    RetryPaymentRequest,
    RetryPaymentResponse,
    WebhookResponse,
)

__all__ = [
    "CartItemAdd",
    "CartItemResponse",
    "CartItemUpdate",
    "CartResponse",
    "CartSummaryResponse",
    "DeliveryAddress",
    "DeliveryUpdate",
    "PromoCodeApply",
    "CancelRequest",
    "CancelResponse",
    "CheckoutRequest",
    "CheckoutResponse",
    "CheckoutSummary",
    "OrderItemResponse",
    "OrderResponse",
    "StatusUpdateRequest",
    "StatusUpdateResponse",
    "PaymentConfirmRequest",
    "PaymentConfirmResponse",
    "PaymentIntentCreate",
    "PaymentIntentResponse",
    "RefundRequest",
    "RefundResponse",
    "RetryPaymentRequest",
    "RetryPaymentResponse",
    "WebhookResponse",
]
