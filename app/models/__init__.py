"""Application models package."""

from app.models.cart import Cart, CartItem
from app.models.chef import Chef
from app.models.meal import Meal
from app.models.order import Order, OrderItem, OrderStatusHistory
from app.models.webhook_event import ProcessedWebhookEvent

__all__ = [
    "Cart", "CartItem", "Chef", "Meal", "Order", "OrderItem", "OrderStatusHistory", "ProcessedWebhookEvent",
]
