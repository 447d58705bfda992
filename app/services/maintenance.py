"""Periodic job removing expired carts and settling deferred refunds.

Run from cron, e.g. hourly: ``python -m app.services.maintenance``.
"""

import logging

from app.core.config import configure_logging
from app.db import session as db_session
from app.services.cart_service import cleanup_expired_carts
from app.services.payment_gateway import PaymentGateway
from app.services.payment_service import process_pending_refunds

logger = logging.getLogger(__name__)


def run_maintenance() -> tuple[int, int]:
    with db_session.SessionLocal() as db:
        removed = cleanup_expired_carts(db)
        settled = process_pending_refunds(db, PaymentGateway())
    logger.info("[MAINTENANCE] expired carts removed=%s, pending refunds settled=%s", removed, settled)
    return removed, settled


if __name__ == "__main__":
    configure_logging()
    run_maintenance()
