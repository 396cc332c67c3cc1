"""
Admin routes for purchase decisions and installation tracking.

Approval and rejection are one-way: a purchase that is no longer pending
answers 400 PURCHASE_NOT_PENDING and nothing is granted again.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from adlm.api.dependencies.auth import require_admin, require_staff
from adlm.api.dependencies.services import get_purchase_service
from adlm.entitlements.expiry import MAX_GRANT_MONTHS
from adlm.models.user import User
from adlm.services.purchase_service import PurchaseService, purchase_to_dict

router = APIRouter(prefix="/admin", tags=["admin", "purchases"])


class ApproveBody(BaseModel):
    months: Optional[int] = Field(
        None, ge=1, le=MAX_GRANT_MONTHS, description="Override requested months (legacy purchases)",
    )


class RejectBody(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


@router.get("/purchases")
def list_purchases(
    status: Optional[str] = Query(None, description="pending | approved | rejected"),
    staff: User = Depends(require_staff),
    purchases: PurchaseService = Depends(get_purchase_service),
) -> dict:
    return {"purchases": [purchase_to_dict(p) for p in purchases.list_purchases(status)]}


@router.post("/purchases/{purchase_id}/approve")
def approve_purchase(
    purchase_id: str,
    request: Request,
    body: Optional[ApproveBody] = None,
    admin: User = Depends(require_admin),
    purchases: PurchaseService = Depends(get_purchase_service),
) -> dict:
    months = body.months if body else None
    purchase = purchases.approve(purchase_id, admin.id, months=months, request=request)
    return {"ok": True, "purchase": purchase_to_dict(purchase)}


@router.post("/purchases/{purchase_id}/reject")
def reject_purchase(
    purchase_id: str,
    request: Request,
    body: Optional[RejectBody] = None,
    admin: User = Depends(require_admin),
    purchases: PurchaseService = Depends(get_purchase_service),
) -> dict:
    reason = body.reason if body else None
    purchase = purchases.reject(purchase_id, admin.id, reason=reason, request=request)
    return {"ok": True, "purchase": purchase_to_dict(purchase)}


@router.get("/installations")
def list_installations(
    staff: User = Depends(require_staff),
    purchases: PurchaseService = Depends(get_purchase_service),
) -> dict:
    return {"purchases": [purchase_to_dict(p) for p in purchases.list_pending_installations()]}


@router.post("/installations/{purchase_id}/complete")
def complete_installation(
    purchase_id: str,
    request: Request,
    admin: User = Depends(require_admin),
    purchases: PurchaseService = Depends(get_purchase_service),
) -> dict:
    purchase = purchases.complete_installation(purchase_id, admin.id, request=request)
    return {"ok": True, "purchase": purchase_to_dict(purchase)}
