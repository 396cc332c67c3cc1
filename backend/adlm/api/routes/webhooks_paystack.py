"""
Paystack webhook handler.

SECURITY:
- No bearer auth; every request must carry X-Paystack-Signature, the
  HMAC-SHA512 of the raw body keyed with the Paystack secret
- The signature is checked before the body is parsed

charge.success approves the matching purchase through the same one-way
transition as admin approval, so redelivered events grant nothing twice.
"""

import json
import logging

from fastapi import APIRouter, Depends, Request

from adlm.api.dependencies.auth import get_settings
from adlm.api.dependencies.services import get_purchase_service
from adlm.config.settings import Settings
from adlm.platform.errors import AuthenticationError, ServiceUnavailableError, ValidationError
from adlm.services.paystack_client import verify_signature
from adlm.services.purchase_service import PurchaseService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/paystack")
async def paystack_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    purchases: PurchaseService = Depends(get_purchase_service),
) -> dict:
    if not settings.paystack_enabled:
        raise ServiceUnavailableError("Paystack not configured")

    body = await request.body()
    signature = request.headers.get("X-Paystack-Signature")
    if not verify_signature(settings.paystack_secret_key, body, signature):
        logger.warning(
            "Paystack webhook signature verification failed",
            extra={"has_signature": bool(signature)},
        )
        raise AuthenticationError("Invalid signature", {"reason": "invalid_signature"})

    try:
        event = json.loads(body)
    except json.JSONDecodeError:
        raise ValidationError("Invalid JSON payload")
    if not isinstance(event, dict):
        raise ValidationError("Invalid JSON payload")

    logger.info(
        "Paystack webhook received",
        extra={"event": event.get("event"), "reference": (event.get("data") or {}).get("reference")},
    )
    return purchases.handle_webhook(event)
