"""
Coupon routes: public validation and admin management.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from adlm.api.dependencies.auth import require_admin
from adlm.database.session import get_db_session
from adlm.models.user import User
from adlm.services.coupon_service import CouponService, coupon_to_dict

router = APIRouter(tags=["coupons"])


class CouponLine(BaseModel):
    product_key: str
    subtotal: Decimal = Field(..., ge=0)


class ValidateBody(BaseModel):
    code: str = Field(..., min_length=1)
    currency: str = Field("NGN", description="NGN | USD")
    subtotal: Decimal = Field(..., ge=0)
    product_keys: list[str] = Field(default_factory=list, description="Products in the cart")
    lines: Optional[list[CouponLine]] = Field(None, description="Per-product subtotals, when known")


class CouponCreateBody(BaseModel):
    code: str = Field(..., min_length=1)
    type: str = Field("percent", description="percent | fixed")
    value: Decimal = Field(..., ge=0)
    currency: Optional[str] = Field(None, description="Required for fixed coupons")
    active: bool = True
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    max_redemptions: Optional[int] = Field(None, ge=1)
    min_subtotal: Optional[Decimal] = Field(None, ge=0)
    applies_to_mode: str = Field("all", pattern="^(all|include)$")
    applies_to_product_keys: list[str] = Field(default_factory=list)


class CouponUpdateBody(BaseModel):
    code: Optional[str] = Field(None, min_length=1)
    type: Optional[str] = None
    value: Optional[Decimal] = Field(None, ge=0)
    currency: Optional[str] = None
    active: Optional[bool] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    max_redemptions: Optional[int] = Field(None, ge=1)
    min_subtotal: Optional[Decimal] = Field(None, ge=0)
    applies_to_mode: Optional[str] = Field(None, pattern="^(all|include)$")
    applies_to_product_keys: Optional[list[str]] = None


@router.post("/coupons/validate")
def validate_coupon(body: ValidateBody, db: Session = Depends(get_db_session)) -> dict:
    """Quote a coupon against a cart; 400 COUPON_INVALID when it does not apply."""
    if body.lines:
        line_subtotals = {line.product_key: line.subtotal for line in body.lines}
    else:
        line_subtotals = {key: body.subtotal for key in body.product_keys}
    quote = CouponService(db).quote(body.code, body.currency, body.subtotal, line_subtotals)
    return {
        "valid": True,
        "currency": quote.currency,
        "subtotal": float(quote.subtotal),
        "discount": float(quote.discount),
        "total": float(quote.total),
        "coupon": coupon_to_dict(quote.coupon) if quote.coupon else None,
    }


@router.get("/admin/coupons")
def list_coupons(admin: User = Depends(require_admin), db: Session = Depends(get_db_session)) -> dict:
    return {"coupons": [coupon_to_dict(c) for c in CouponService(db).list_coupons()]}


@router.post("/admin/coupons", status_code=201)
def create_coupon(
    body: CouponCreateBody,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db_session),
) -> dict:
    coupon = CouponService(db).create(**body.model_dump())
    return {"coupon": coupon_to_dict(coupon)}


@router.patch("/admin/coupons/{coupon_id}")
def update_coupon(
    coupon_id: str,
    body: CouponUpdateBody,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db_session),
) -> dict:
    coupon = CouponService(db).update(coupon_id, **body.model_dump(exclude_unset=True))
    return {"coupon": coupon_to_dict(coupon)}
