"""
Structured logging for entitlement enforcement.

Denials are expected outcomes: they are logged at WARNING with enough context
to trace a support ticket, never as errors.
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


def log_entitlement_denied(
    user_id: str,
    product_key: str,
    reason: str,
    path: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> None:
    """
    Log an access guard rejection.

    Args:
        user_id: Caller
        product_key: Product the route requires
        reason: Machine-readable reason (NO_SUBSCRIPTION, SUBSCRIPTION_EXPIRED)
        path: Request path
        correlation_id: Optional correlation ID for tracing
    """
    logger.warning(
        "Entitlement denied",
        extra={
            "action": "entitlement.denied",
            "user_id": user_id,
            "product_key": product_key,
            "reason": reason,
            "path": path,
            "correlation_id": correlation_id,
        }
    )
