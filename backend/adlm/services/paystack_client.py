"""
Paystack API client.

Handles:
- Transaction initialisation for NGN checkouts (amounts in kobo)
- Transaction verification by reference
- Webhook signature verification (HMAC-SHA512 of the raw body)

SECURITY:
- The secret key comes from settings (PAYSTACK_SECRET_KEY), never from requests
- Signatures are compared with hmac.compare_digest
"""

import hashlib
import hmac
import logging
from decimal import Decimal
from typing import Any, Optional

import httpx

from adlm.config.settings import Settings
from adlm.platform.errors import PaymentGatewayError

logger = logging.getLogger(__name__)

PAYSTACK_API_BASE = "https://api.paystack.co"


def to_kobo(amount: Decimal) -> int:
    """Paystack amounts are integers in the minor unit."""
    return int((Decimal(amount) * 100).to_integral_value())


def verify_signature(secret_key: str, body: bytes, signature: Optional[str]) -> bool:
    """
    Verify a Paystack webhook signature.

    Paystack signs the raw request body with HMAC-SHA512 using the secret key
    and sends the hex digest in X-Paystack-Signature.
    """
    if not secret_key or not signature:
        return False
    computed = hmac.new(
        secret_key.encode("utf-8"),
        body,
        hashlib.sha512,
    ).hexdigest()
    return hmac.compare_digest(computed, signature.strip())


class PaystackClient:
    """
    Client for the Paystack transaction API.

    Every gateway failure (transport error, non-2xx, status=false) surfaces
    as PaymentGatewayError so callers never see raw httpx exceptions.
    """

    def __init__(
        self,
        secret_key: str,
        base_url: str = PAYSTACK_API_BASE,
        callback_url: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        """
        Initialize client with Paystack credentials.

        Args:
            secret_key: Paystack secret key (sk_...)
            base_url: API base URL
            callback_url: Default redirect after checkout
            http_client: Injected httpx client (tests)
        """
        if not secret_key:
            raise ValueError("Paystack secret key is required")
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.callback_url = callback_url
        self._http_client = http_client or httpx.Client(timeout=30.0)

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["PaystackClient"]:
        """Return a client, or None when Paystack is not configured."""
        if not settings.paystack_enabled:
            return None
        return cls(
            secret_key=settings.paystack_secret_key,
            base_url=settings.paystack_base_url,
            callback_url=settings.paystack_callback_url,
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self._http_client.request(method, url, headers=self._headers(), **kwargs)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Paystack request failed",
                extra={
                    "path": path,
                    "status_code": e.response.status_code,
                }
            )
            raise PaymentGatewayError(
                "Payment provider rejected the request",
                {"status_code": e.response.status_code},
            )
        except httpx.HTTPError as e:
            logger.error(
                "Paystack request error",
                extra={"path": path, "error": str(e)},
            )
            raise PaymentGatewayError()
        except ValueError:
            logger.error("Paystack returned invalid JSON", extra={"path": path})
            raise PaymentGatewayError("Payment provider returned an invalid response")

        if not data.get("status"):
            logger.warning(
                "Paystack returned status=false",
                extra={"path": path, "message": data.get("message")},
            )
            raise PaymentGatewayError(
                data.get("message") or "Payment provider rejected the request"
            )
        return data.get("data") or {}

    def initialize_transaction(
        self,
        email: str,
        amount_kobo: int,
        reference: str,
        metadata: Optional[dict[str, Any]] = None,
        callback_url: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Start a checkout.

        Returns:
            Paystack data with authorization_url, access_code and reference
        """
        payload: dict[str, Any] = {
            "email": email,
            "amount": int(amount_kobo),
            "reference": reference,
            "currency": "NGN",
            "metadata": metadata or {},
        }
        callback = callback_url or self.callback_url
        if callback:
            payload["callback_url"] = callback

        data = self._request("POST", "/transaction/initialize", json=payload)
        logger.info(
            "Paystack transaction initialised",
            extra={"reference": reference, "amount_kobo": int(amount_kobo)},
        )
        return data

    def verify_transaction(self, reference: str) -> dict[str, Any]:
        """
        Look up a transaction.

        Returns:
            Paystack data; data["status"] == "success" means paid
        """
        return self._request("GET", f"/transaction/verify/{reference}")

    def verify_signature(self, body: bytes, signature: Optional[str]) -> bool:
        return verify_signature(self.secret_key, body, signature)

    def close(self) -> None:
        self._http_client.close()
