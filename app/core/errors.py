"""Domain errors with stable machine-readable codes.

Every error raised by the order and payment services derives from
``MarketplaceError``. The API layer renders them as
``{"error": {"code": ..., "message": ..., "details": ...}}`` using the
class-level ``status_code``; nothing else about the exception is exposed.
"""

from __future__ import annotations

from typing import Any


class MarketplaceError(Exception):
    """Base class for errors surfaced to API callers."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    default_message: str = "Unexpected error"

    def __init__(self, message: str | None = None, *, details: Any = None) -> None:
        self.message: str = message or self.default_message
        self.details: Any = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


# Validation errors: caller mistakes, no state change.


class ValidationFailed(MarketplaceError):
    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Request is invalid"


class EmptyCart(ValidationFailed):
    code = "EMPTY_CART"
    default_message = "Cannot create order from empty cart"


class CartExpired(ValidationFailed):
    code = "CART_EXPIRED"
    default_message = "Cart has expired"


class IncompleteDeliveryAddress(ValidationFailed):
    code = "INCOMPLETE_DELIVERY_ADDRESS"
    default_message = "Complete delivery address is required for delivery orders"


class AmountMismatch(ValidationFailed):
    code = "AMOUNT_MISMATCH"
    default_message = "Payment amount does not match order total"


class InvalidRefundAmount(ValidationFailed):
    code = "INVALID_REFUND_AMOUNT"
    default_message = "Refund amount exceeds the refundable balance"


class InvalidQuantity(ValidationFailed):
    code = "INVALID_QUANTITY"
    default_message = "Quantity is out of range"


class InvalidPromoCode(ValidationFailed):
    code = "INVALID_PROMO_CODE"
    default_message = "Promo code is not valid"


# Lookups.


class NotFound(MarketplaceError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Resource not found"


class OrderNotFound(NotFound):
    code = "ORDER_NOT_FOUND"
    default_message = "Order not found"


class CartNotFound(NotFound):
    code = "CART_NOT_FOUND"
    default_message = "Cart not found"


class MealNotFound(NotFound):
    code = "MEAL_NOT_FOUND"
    default_message = "Meal not found"


class CartItemNotFound(NotFound):
    code = "CART_ITEM_NOT_FOUND"
    default_message = "Item is not in the cart"


# Conflict errors: state races or business-rule violations.


class ConflictError(MarketplaceError):
    code = "CONFLICT"
    status_code = 409
    default_message = "Request conflicts with current state"


class ItemsUnavailable(ConflictError):
    code = "ITEMS_UNAVAILABLE"
    default_message = "Some items in cart are no longer available"


class InvalidTransition(ConflictError):
    code = "INVALID_TRANSITION"

    def __init__(self, from_status: str, to_status: str) -> None:
        self.from_status: str = from_status
        self.to_status: str = to_status
        super().__init__(
            f"Invalid status transition from {from_status} to {to_status}",
            details={"from": from_status, "to": to_status},
        )


class OrderNotCancellable(ConflictError):
    code = "ORDER_NOT_CANCELLABLE"
    default_message = "Order cannot be cancelled in its current status"


class ConcurrentModification(ConflictError):
    code = "CONCURRENT_MODIFICATION"
    default_message = "Order was modified concurrently; reload and retry"


class InvalidPaymentStatus(ConflictError):
    code = "INVALID_PAYMENT_STATUS"
    default_message = "Order payment status does not allow this operation"


class InvalidOrderStatus(ConflictError):
    code = "INVALID_ORDER_STATUS"
    default_message = "Order is not eligible for payment"


class PaymentAlreadySuccessful(ConflictError):
    code = "PAYMENT_ALREADY_SUCCESSFUL"
    default_message = "Payment has already been completed"


class MissingPaymentIntent(ConflictError):
    code = "MISSING_PAYMENT_INTENT"
    default_message = "No payment intent found for this order"


# Payment outcomes.


class PaymentFailed(MarketplaceError):
    code = "PAYMENT_FAILED"
    status_code = 402
    default_message = "Payment was unsuccessful"


class PaymentIncomplete(MarketplaceError):
    code = "PAYMENT_INCOMPLETE"
    status_code = 402
    default_message = "Payment requires additional action"


class PaymentRetryExhausted(MarketplaceError):
    code = "PAYMENT_RETRY_EXHAUSTED"
    status_code = 402
    default_message = "Payment retry attempts exhausted"


# Upstream errors: the only class retried automatically, and only by retry_payment.


class GatewayError(MarketplaceError):
    code = "GATEWAY_ERROR"
    status_code = 502
    default_message = "Payment processor request failed"


# Integrity errors: webhook rejected without any state change.


class MissingSignature(MarketplaceError):
    code = "MISSING_SIGNATURE"
    status_code = 400
    default_message = "Webhook signature header is missing"


class InvalidSignature(MarketplaceError):
    code = "INVALID_SIGNATURE"
    status_code = 400
    default_message = "Webhook signature verification failed"
