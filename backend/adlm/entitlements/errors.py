"""
Entitlement error hierarchy.

Every error here is an expected, recoverable condition: it is surfaced to
the caller as a 4xx with a machine-checkable code and never logged as a
server fault.

Provides:
- EntitlementError: base for all entitlement failures
- EntitlementNotFoundError / EntitlementInactiveError / EntitlementExpiredError:
  device activation refused because the caller has no usable entitlement
- SeatLimitReachedError: every seat is bound to another device
- DeviceNotActiveError: deactivation target not bound
- VersionConflictError: optimistic-lock mismatch, re-fetch and retry
- NoSubscriptionError / SubscriptionExpiredError: access guard rejections
- ExpiryOutOfRangeError: an extension too long to represent
"""

from typing import Any, Optional

from fastapi import status

from adlm.platform.errors import AppError

NO_ACTIVE_SUBSCRIPTION = "No active subscription."
SUBSCRIPTION_EXPIRED = "Subscription expired."


class EntitlementError(AppError):
    """Base exception for entitlement-related failures."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_403_FORBIDDEN,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(code=code, message=message, status_code=status_code, details=details)

    @property
    def error_code(self) -> str:
        return self.code


class EntitlementNotFoundError(EntitlementError):
    """No entitlement record exists for the product."""

    def __init__(self, product_key: str):
        self.product_key = product_key
        super().__init__(
            code="ENTITLEMENT_NOT_FOUND",
            message=NO_ACTIVE_SUBSCRIPTION,
            details={"product_key": product_key},
        )


class EntitlementInactiveError(EntitlementError):
    """Entitlement exists but its status is inactive or disabled."""

    def __init__(self, product_key: str, entitlement_status: str):
        self.product_key = product_key
        self.entitlement_status = entitlement_status
        super().__init__(
            code="ENTITLEMENT_INACTIVE",
            message=NO_ACTIVE_SUBSCRIPTION,
            details={"product_key": product_key, "status": entitlement_status},
        )


class EntitlementExpiredError(EntitlementError):
    """Entitlement is active but past its expiry."""

    def __init__(self, product_key: str, expires_at: Optional[str] = None):
        self.product_key = product_key
        super().__init__(
            code="ENTITLEMENT_EXPIRED",
            message=SUBSCRIPTION_EXPIRED,
            details={"product_key": product_key, "expires_at": expires_at},
        )


class SeatLimitReachedError(EntitlementError):
    """
    Device activation blocked: all seats are bound.

    Details carry the active devices so the client can offer to free one.
    """

    def __init__(self, product_key: str, seats: int, seats_used: int, devices: list[dict]):
        self.product_key = product_key
        self.seats = seats
        self.seats_used = seats_used
        self.devices = devices
        super().__init__(
            code="SEAT_LIMIT_REACHED",
            message=(
                f"Seat limit reached ({seats_used}/{seats}). "
                "Deactivate another device to continue."
            ),
            status_code=status.HTTP_409_CONFLICT,
            details={
                "product_key": product_key,
                "seats": seats,
                "seats_used": seats_used,
                "devices": devices,
            },
        )


class DeviceNotActiveError(EntitlementError):
    """No unrevoked binding matches the fingerprint."""

    def __init__(self, product_key: str, fingerprint: str):
        self.product_key = product_key
        self.fingerprint = fingerprint
        super().__init__(
            code="DEVICE_NOT_ACTIVE",
            message="Device is not active for this product",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"product_key": product_key},
        )


class VersionConflictError(EntitlementError):
    """The entitlement changed since the caller read it."""

    def __init__(
        self,
        product_key: Optional[str] = None,
        expected_version: Optional[int] = None,
        current_version: Optional[int] = None,
    ):
        self.product_key = product_key
        super().__init__(
            code="VERSION_CONFLICT",
            message="The entitlement was modified concurrently. Re-fetch and retry.",
            status_code=status.HTTP_409_CONFLICT,
            details={
                "product_key": product_key,
                "expected_version": expected_version,
                "current_version": current_version,
            },
        )


class NoSubscriptionError(EntitlementError):
    """Access guard: entitlement missing or not active."""

    def __init__(self, product_key: str):
        self.product_key = product_key
        super().__init__(
            code="NO_SUBSCRIPTION",
            message=NO_ACTIVE_SUBSCRIPTION,
            details={"product_key": product_key},
        )


class SubscriptionExpiredError(EntitlementError):
    """Access guard: entitlement active but expired."""

    def __init__(self, product_key: str, expires_at: Optional[str] = None):
        self.product_key = product_key
        super().__init__(
            code="SUBSCRIPTION_EXPIRED",
            message=SUBSCRIPTION_EXPIRED,
            details={"product_key": product_key, "expires_at": expires_at},
        )


class ExpiryOutOfRangeError(EntitlementError):
    """An extension would push the expiry past the supported range."""

    def __init__(self, months: int, max_months: int):
        super().__init__(
            code="EXPIRY_OUT_OF_RANGE",
            message=f"Cannot extend by {months} months (at most {max_months}).",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"months": months, "max_months": max_months},
        )
