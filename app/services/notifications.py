"""Fire-and-forget notifications for order and payment events."""

from __future__ import annotations

import logging
from typing import Protocol

from app.models.order import Order

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def send(self, event: str, order: Order) -> None: ...


class LoggingNotifier:
    """Default notifier: records the event in the application log."""

    def send(self, event: str, order: Order) -> None:
        logger.info(
            "[NOTIFY] %s order_id=%s customer_id=%s chef_id=%s status=%s payment_status=%s",
            event,
            order.id,
            order.customer_id,
            order.chef_id,
            order.status,
            order.payment_status,
        )


class NotificationDispatcher:
    """Delivers events without letting delivery failures reach the caller."""

    def __init__(self, notifier: Notifier | None = None) -> None:
        self._notifier: Notifier = notifier or LoggingNotifier()

    def notify(self, event: str, order: Order) -> None:
        try:
            self._notifier.send(event, order)
        except Exception:
            logger.exception("[NOTIFY] Delivery failed for %s order_id=%s", event, order.id)


dispatcher: NotificationDispatcher = NotificationDispatcher()
