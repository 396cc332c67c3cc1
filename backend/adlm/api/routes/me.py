"""
Caller-scoped reads: profile, raw entitlements, license token, purchases.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from adlm.api.dependencies.auth import get_current_user, get_token_service
from adlm.api.dependencies.services import get_purchase_service
from adlm.auth.tokens import TokenService, license_claims
from adlm.database.session import get_db_session
from adlm.entitlements.service import EntitlementService
from adlm.models.user import User
from adlm.services.purchase_service import PurchaseService, purchase_to_dict
from adlm.services.user_service import user_to_dict

router = APIRouter(prefix="/me", tags=["me"])


@router.get("")
def me(user: User = Depends(get_current_user)) -> dict:
    return {"user": user_to_dict(user)}


@router.get("/entitlements")
def my_entitlements(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db_session),
) -> dict:
    """Raw entitlement list including revoked device history."""
    return {"entitlements": EntitlementService(db).list_raw(user)}


@router.get("/license")
def my_license(
    user: User = Depends(get_current_user),
    tokens: TokenService = Depends(get_token_service),
) -> dict:
    """Signed license token a desktop client verifies offline."""
    issued = tokens.issue_license_token(user)
    return {
        "license_token": issued.token,
        "expires_at": issued.expires_at.isoformat(),
        "entitlements": license_claims(user),
    }


@router.get("/purchases")
def my_purchases(
    user: User = Depends(get_current_user),
    purchases: PurchaseService = Depends(get_purchase_service),
) -> dict:
    return {"purchases": [purchase_to_dict(p) for p in purchases.list_for_user(user)]}
