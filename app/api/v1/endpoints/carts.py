"""Cart endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.models.cart import Cart
from app.schemas.cart import (
    CartItemAdd,
    CartItemUpdate,
    CartResponse,
    CartSummaryResponse,
    DeliveryUpdate,
    PromoCodeApply,
)
from app.services import cart_service

router: APIRouter = APIRouter()


@router.get("/{customer_id}", response_model=CartResponse)
def get_cart(customer_id: int, db: Session = Depends(get_db)) -> Cart:
    return cart_service.get_cart(db, customer_id)


@router.get("/{customer_id}/summary", response_model=CartSummaryResponse)
def get_cart_summary(customer_id: int, db: Session = Depends(get_db)) -> CartSummaryResponse:
    return CartSummaryResponse(**cart_service.cart_summary(db, customer_id))


@router.post("/{customer_id}/items", response_model=CartResponse)
def add_cart_item(customer_id: int, payload: CartItemAdd, db: Session = Depends(get_db)) -> Cart:
    return cart_service.add_item(db, customer_id, payload.meal_id, payload.quantity, payload.note)


@router.patch("/{customer_id}/items/{meal_id}", response_model=CartResponse)
def update_cart_item(customer_id: int, meal_id: int, payload: CartItemUpdate, db: Session = Depends(get_db)) -> Cart:
    return cart_service.update_item_quantity(db, customer_id, meal_id, payload.quantity)


@router.delete("/{customer_id}/items/{meal_id}", response_model=CartResponse)
def remove_cart_item(customer_id: int, meal_id: int, db: Session = Depends(get_db)) -> Cart:
    return cart_service.remove_item(db, customer_id, meal_id)


@router.delete("/{customer_id}/items", response_model=CartResponse)
def clear_cart(customer_id: int, db: Session = Depends(get_db)) -> Cart:
    return cart_service.clear_cart(db, customer_id)


@router.put("/{customer_id}/delivery", response_model=CartResponse)
def set_delivery(customer_id: int, payload: DeliveryUpdate, db: Session = Depends(get_db)) -> Cart:
    return cart_service.set_delivery(db, customer_id, payload.delivery_mode, payload.address)


@router.post("/{customer_id}/promo", response_model=CartResponse)
def apply_promo(customer_id: int, payload: PromoCodeApply, db: Session = Depends(get_db)) -> Cart:
    return cart_service.apply_promo(db, customer_id, payload.promo_code)


@router.delete("/{customer_id}/promo", response_model=CartResponse)
def remove_promo(customer_id: int, db: Session = Depends(get_db)) -> Cart:
    return cart_service.remove_promo(db, customer_id)
