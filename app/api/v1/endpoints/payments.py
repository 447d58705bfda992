"""Payment endpoints: intents, confirmation, refunds, retries and webhooks."""

from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.schemas.payment import (
    OrderPaymentState,
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
from app.services import payment_service
from app.services.payment_gateway import PaymentGateway, get_payment_gateway

router: APIRouter = APIRouter()


@router.post("/intents", response_model=PaymentIntentResponse)
def create_payment_intent(
    payload: PaymentIntentCreate,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentIntentResponse:
    intent = payment_service.create_payment_intent(
        db, gateway, payload.order_id, payload.amount_cents, payload.currency
    )
    return PaymentIntentResponse(
        reference=intent.reference,
        client_secret=intent.client_secret,
        amount_cents=intent.amount_cents,
        currency=intent.currency,
        status=intent.status,
    )


@router.post("/confirm", response_model=PaymentConfirmResponse)
def confirm_payment(
    payload: PaymentConfirmRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentConfirmResponse:
    orders = payment_service.confirm_payment(db, gateway, payload.reference)
    states = [
        OrderPaymentState(order_id=order.id, payment_status=order.payment_status, order_status=order.status)
        for order in orders
    ]
    return PaymentConfirmResponse(
        reference=payload.reference,
        payment_status=states[0].payment_status,
        order_status=states[0].order_status,
        orders=states,
    )


@router.post("/refunds", response_model=RefundResponse)
def create_refund(
    payload: RefundRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> RefundResponse:
    outcome = payment_service.refund(db, gateway, payload.order_id, payload.amount_cents, payload.reason)
    return RefundResponse(
        order_id=outcome.order.id,
        refund_reference=outcome.receipt.refund_reference,
        refund_cents=outcome.order.refund_cents,
        payment_status=outcome.order.payment_status,
        order_status=outcome.order.status,
    )


@router.post("/retry", response_model=RetryPaymentResponse)
def retry_payment(
    payload: RetryPaymentRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> RetryPaymentResponse:
    outcome = payment_service.retry_payment(db, gateway, payload.order_id, payload.max_attempts)
    return RetryPaymentResponse(
        order_id=outcome.order.id,
        payment_status=outcome.order.payment_status,
        order_status=outcome.order.status,
        retries_used=outcome.retries_used,
    )


@router.post("/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> WebhookResponse:
    """Receive Stripe events; the raw body is needed for signature checks."""
    payload: bytes = await request.body()
    result = await run_in_threadpool(payment_service.handle_webhook, db, gateway, payload, stripe_signature)
    return WebhookResponse(**result)
