"""
Entitlement check dependencies.

FastAPI dependencies that block access when the caller's entitlement for a
product is missing, not active, or expired. Access is evaluated against
the database row with the wall clock at request time, never against
claims baked into a token.

Usage:
    @router.get("/rategen/library", dependencies=[Depends(require_entitlement("rategen"))])
    def library(): ...

    @router.get("/products/{product_key}/downloads")
    def downloads(entitlement = Depends(require_entitlement_from_path())): ...
"""

import logging
from typing import Callable

from fastapi import Depends, Request

from adlm.api.dependencies.auth import get_current_user
from adlm.entitlements.audit import log_entitlement_denied
from adlm.entitlements.errors import NoSubscriptionError, SubscriptionExpiredError
from adlm.entitlements.expiry import AccessState, access_state
from adlm.models.entitlement import Entitlement
from adlm.models.user import User, normalize_product_key
from adlm.platform.errors import ValidationError

logger = logging.getLogger(__name__)


def check_access(request: Request, user: User, product_key: str) -> Entitlement:
    """
    Return the caller's entitlement for product_key or raise.

    Raises:
        NoSubscriptionError: entitlement missing, inactive or disabled
        SubscriptionExpiredError: entitlement active but expired
    """
    product_key = normalize_product_key(product_key)
    entitlement = user.entitlements.get(product_key)
    state = access_state(entitlement)
    if state is AccessState.GRANTED:
        return entitlement

    correlation_id = getattr(request.state, "correlation_id", None)
    if state is AccessState.EXPIRED:
        log_entitlement_denied(user.id, product_key, "SUBSCRIPTION_EXPIRED", request.url.path, correlation_id)
        raise SubscriptionExpiredError(product_key, entitlement.expires_at.isoformat())

    log_entitlement_denied(user.id, product_key, "NO_SUBSCRIPTION", request.url.path, correlation_id)
    raise NoSubscriptionError(product_key)


def require_entitlement(product_key: str) -> Callable:
    """
    Dependency factory for a fixed product.

    Returns a dependency that yields the caller's Entitlement.
    """
    fixed_key = normalize_product_key(product_key)
    if not fixed_key:
        raise ValueError("require_entitlement needs a product key")

    def check_entitlement(
        request: Request,
        user: User = Depends(get_current_user),
    ) -> Entitlement:
        return check_access(request, user, fixed_key)

    return check_entitlement


def require_entitlement_from_path(param: str = "product_key") -> Callable:
    """Dependency factory reading the product key from a path parameter."""

    def check_entitlement(
        request: Request,
        user: User = Depends(get_current_user),
    ) -> Entitlement:
        product_key = request.path_params.get(param)
        if not product_key:
            raise ValidationError(f"Missing path parameter '{param}'", {"field": param})
        return check_access(request, user, product_key)

    return check_entitlement
