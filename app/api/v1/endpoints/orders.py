"""Order endpoints: checkout and fulfilment status."""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.models.order import Order
from app.schemas.order import (
    CancelRequest,
    CancelResponse,
    CheckoutRequest,
    CheckoutResponse,
    CheckoutSummary,
    OrderResponse,
    OrderTimestamps,
    OrderTrackingResponse,
    StatusUpdateRequest,
    StatusUpdateResponse,
)
from app.services import checkout_service, order_service
from app.services.payment_gateway import PaymentGateway, get_payment_gateway

router: APIRouter = APIRouter()


@router.post("/checkout", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
def checkout(
    payload: CheckoutRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> CheckoutResponse:
    """Split a cart into one order per chef and reserve the meals."""
    result = checkout_service.checkout(
        db,
        gateway,
        cart_id=payload.cart_id,
        payment_intent_reference=payload.payment_intent_reference,
        customer_notes=payload.customer_notes,
    )
    return CheckoutResponse(
        orders=[OrderResponse.model_validate(order) for order in result.orders],
        summary=CheckoutSummary(**result.summary),
    )


@router.get("", response_model=list[OrderResponse])
def list_orders(
    customer_id: int = Query(...),
    status_value: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
) -> list[Order]:
    return order_service.list_customer_orders(db, customer_id, status=status_value)


@router.get("/{order_id}", response_model=OrderResponse)
def get_order(order_id: int, db: Session = Depends(get_db)) -> Order:
    return order_service.get_order(db, order_id)


@router.get("/{order_id}/tracking", response_model=OrderTrackingResponse)
def track_order(order_id: int, db: Session = Depends(get_db)) -> OrderTrackingResponse:
    tracking = order_service.order_tracking(db, order_id)
    order = tracking.order
    return OrderTrackingResponse(
        order_id=order.id,
        status=order.status,
        payment_status=order.payment_status,
        timestamps=OrderTimestamps.model_validate(order),
        estimated_delivery_at=tracking.estimated_delivery_at,
        time_remaining_minutes=tracking.time_remaining_minutes,
    )


@router.post("/{order_id}/status", response_model=StatusUpdateResponse)
def update_order_status(
    order_id: int,
    payload: StatusUpdateRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> StatusUpdateResponse:
    """Move an order along the fulfilment graph."""
    order = order_service.transition_order_status(db, gateway, order_id, payload.status, note=payload.note)
    return StatusUpdateResponse(
        order_id=order.id,
        status=order.status,
        timestamps=OrderTimestamps.model_validate(order),
    )


@router.post("/{order_id}/cancel", response_model=CancelResponse)
def cancel_order(
    order_id: int,
    payload: CancelRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> CancelResponse:
    """Cancel an order before preparation starts; paid orders are refunded."""
    order = order_service.cancel_order(db, gateway, order_id, payload.reason)
    return CancelResponse(order_id=order.id, status=order.status, payment_status=order.payment_status)
