"""
Checkout routes.

- POST /purchase/cart:   cart checkout (Paystack for NGN when configured)
- POST /purchase:        legacy single product purchase, manual approval
- GET  /purchase/verify: Paystack redirect callback; approves once when paid
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from adlm.api.dependencies.auth import get_current_user
from adlm.api.dependencies.services import get_purchase_service
from adlm.entitlements.expiry import MAX_GRANT_MONTHS
from adlm.entitlements.grants import MAX_SEATS
from adlm.models.user import User
from adlm.services.purchase_service import CartItem, PurchaseService, purchase_to_dict

router = APIRouter(prefix="/purchase", tags=["purchases"])


class CartItemBody(BaseModel):
    product_key: str = Field(..., min_length=1)
    qty: int = Field(1, ge=1, le=MAX_SEATS, description="Seats")
    periods: int = Field(1, ge=1, le=MAX_GRANT_MONTHS, description="Billing periods")
    billing_interval: Optional[str] = Field(None, description="monthly | yearly; product default when omitted")
    first_time: bool = Field(False, description="Adds the product install fee")
    license_type: Optional[str] = Field(None, description="personal | organization")


class CartBody(BaseModel):
    items: list[CartItemBody] = Field(..., min_length=1)
    currency: str = Field("NGN", description="NGN | USD")
    coupon_code: Optional[str] = None


class LegacyPurchaseBody(BaseModel):
    product_key: str = Field(..., min_length=1)
    months: int = Field(..., ge=1, le=MAX_GRANT_MONTHS)


@router.post("/cart")
def checkout_cart(
    body: CartBody,
    user: User = Depends(get_current_user),
    purchases: PurchaseService = Depends(get_purchase_service),
) -> dict:
    items = [CartItem(**item.model_dump()) for item in body.items]
    return purchases.checkout_cart(user, items, currency=body.currency, coupon_code=body.coupon_code)


@router.post("")
def legacy_purchase(
    body: LegacyPurchaseBody,
    user: User = Depends(get_current_user),
    purchases: PurchaseService = Depends(get_purchase_service),
) -> dict:
    purchase = purchases.create_legacy(user, body.product_key, body.months)
    return {
        "ok": True,
        "purchase": purchase_to_dict(purchase),
        "message": "Purchase submitted and pending admin review.",
    }


@router.get("/verify")
def verify(
    reference: str = Query(..., description="Paystack transaction reference"),
    purchases: PurchaseService = Depends(get_purchase_service),
) -> dict:
    return purchases.verify_payment(reference)
