"""
Purchase orchestration: checkout, approval, rejection and installation.

Lifecycle:

    pending -> approved | rejected        (one-way)

Approval is a conditional UPDATE on status='pending'. Only the caller whose
UPDATE transitioned exactly one row applies the grants, inside the same
transaction, so admin approval, the Paystack verify callback and the
Paystack webhook can race without granting twice.

Grants for products flagged requires_installation are staged on the
purchase and applied once by complete_installation(); every other grant is
applied at approval.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from fastapi import Request, status
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from adlm.config.settings import Settings
from adlm.entitlements.applier import apply_grants
from adlm.entitlements.expiry import MAX_GRANT_MONTHS
from adlm.entitlements.grants import MAX_SEATS, MONTHS_PER_INTERVAL, Grant, grants_from_purchase
from adlm.entitlements.store import commit_entitlement_changes
from adlm.models.base import utcnow
from adlm.models.purchase import (
    BillingInterval,
    InstallationStatus,
    Purchase,
    PurchaseLine,
    PurchaseStatus,
)
from adlm.models.user import User, normalize_product_key
from adlm.platform.audit import AuditAction, record_audit_event
from adlm.platform.errors import AppError, NotFoundError, ValidationError
from adlm.services.catalog_service import CatalogService, install_fee, unit_price
from adlm.services.coupon_service import CouponService, line_subtotals_of, round_money
from adlm.services.paystack_client import PaystackClient, to_kobo

logger = logging.getLogger(__name__)

PAYSTACK_ACTOR = "paystack"


class PurchaseNotPendingError(AppError):
    """Purchase already decided (400)."""

    def __init__(self, purchase_id: str, current_status: str):
        super().__init__(
            code="PURCHASE_NOT_PENDING",
            message="Purchase is not pending.",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"purchase_id": purchase_id, "status": current_status},
        )


@dataclass
class CartItem:
    product_key: str
    qty: int = 1
    periods: int = 1
    billing_interval: Optional[str] = None
    first_time: bool = False
    license_type: Optional[str] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def line_to_dict(line: PurchaseLine) -> dict[str, Any]:
    return {
        "product_key": line.product_key,
        "product_name": line.product_name,
        "billing_interval": line.billing_interval,
        "qty": line.qty,
        "periods": line.periods,
        "license_type": line.license_type,
        "unit_price": float(line.unit_price or 0),
        "install_fee": float(line.install_fee or 0),
        "subtotal": float(line.subtotal or 0),
    }


def purchase_to_dict(purchase: Purchase) -> dict[str, Any]:
    return {
        "id": purchase.id,
        "user_id": purchase.user_id,
        "email": purchase.email,
        "currency": purchase.currency,
        "subtotal": float(purchase.subtotal or 0),
        "discount": float(purchase.discount or 0),
        "total_amount": float(purchase.total_amount or 0),
        "coupon_code": purchase.coupon_code,
        "product_key": purchase.product_key,
        "requested_months": purchase.requested_months,
        "approved_months": purchase.approved_months,
        "lines": [line_to_dict(line) for line in purchase.lines],
        "payment_reference": purchase.payment_reference,
        "paid": purchase.paid,
        "paid_at": _iso(purchase.paid_at),
        "status": purchase.status.value,
        "decided_at": _iso(purchase.decided_at),
        "decided_by": purchase.decided_by,
        "decision_note": purchase.decision_note,
        "installation": {
            "status": purchase.installation_status.value,
            "staged_grants": list(purchase.staged_grants or []),
            "entitlements_applied": purchase.entitlements_applied,
            "completed_at": _iso(purchase.installation_completed_at),
        },
        "created_at": _iso(purchase.created_at),
    }


def new_reference() -> str:
    return f"adlm_{uuid.uuid4().hex}"


class PurchaseService:
    """Checkout and purchase decisions bound to one session."""

    def __init__(
        self,
        db: Session,
        settings: Settings,
        paystack: Optional[PaystackClient] = None,
    ):
        self.db = db
        self.settings = settings
        self.paystack = paystack
        self.catalog = CatalogService(db)
        self.coupons = CouponService(db)

    # ----- Checkout -----

    def _price_lines(self, items: list[CartItem], currency: str) -> list[PurchaseLine]:
        products = self.catalog.get_published(i.product_key for i in items)
        lines = []
        for position, item in enumerate(items):
            key = normalize_product_key(item.product_key)
            product = products.get(key)
            if product is None:
                raise ValidationError(f"Invalid product: {item.product_key}", {"product_key": key})
            if item.qty < 1 or item.periods < 1:
                raise ValidationError("qty and periods must be at least 1", {"product_key": key})

            interval = (item.billing_interval or product.billing_interval or "monthly").lower()
            if interval not in (BillingInterval.MONTHLY.value, BillingInterval.YEARLY.value):
                raise ValidationError("billing_interval must be monthly or yearly", {"product_key": key})
            months = item.periods * MONTHS_PER_INTERVAL[interval]
            if months > MAX_GRANT_MONTHS or item.qty > MAX_SEATS:
                raise ValidationError(
                    f"A line may cover at most {MAX_GRANT_MONTHS} months and {MAX_SEATS} seats",
                    {"product_key": key, "months": months, "qty": item.qty},
                )

            unit = unit_price(product, interval, currency, self.settings.fx_ngn_per_usd)
            install = install_fee(product, currency, self.settings.fx_ngn_per_usd) if item.first_time else Decimal("0")
            subtotal = round_money(unit * item.periods * item.qty + install, currency)

            lines.append(PurchaseLine(
                position=position,
                product_key=key,
                product_name=product.name,
                billing_interval=interval,
                qty=item.qty,
                periods=item.periods,
                license_type=item.license_type or "personal",
                unit_price=unit,
                install_fee=install,
                subtotal=subtotal,
            ))
        return lines

    def checkout_cart(
        self,
        user: User,
        items: list[CartItem],
        currency: str = "NGN",
        coupon_code: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """
        Create a pending cart purchase and start payment.

        NGN checkouts go through Paystack when it is configured; everything
        else is a manual checkout an admin approves from the bank transfer.

        Raises:
            ValidationError: empty cart, unknown product, bad quantities
            CouponInvalidError: coupon cannot be applied
            PaymentGatewayError: Paystack initialisation failed
        """
        currency = (currency or "NGN").upper()
        if not items:
            raise ValidationError("items required", {"field": "items"})

        lines = self._price_lines(items, currency)
        subtotal = sum((Decimal(line.subtotal) for line in lines), Decimal("0"))
        quote = self.coupons.quote(
            coupon_code,
            currency,
            subtotal,
            line_subtotals_of((line.product_key, line.subtotal) for line in lines),
            now,
        )

        purchase = Purchase(
            user_id=user.id,
            email=user.email,
            currency=currency,
            subtotal=subtotal,
            discount=quote.discount,
            total_amount=quote.total,
            coupon_code=quote.coupon.code if quote.coupon else None,
            coupon_id=quote.coupon.id if quote.coupon else None,
            payment_reference=new_reference(),
            status=PurchaseStatus.PENDING,
            lines=lines,
        )
        self.db.add(purchase)
        self.db.commit()

        logger.info(
            "Cart purchase created",
            extra={
                "purchase_id": purchase.id,
                "user_id": user.id,
                "currency": currency,
                "total": str(purchase.total_amount),
                "coupon": purchase.coupon_code,
            }
        )

        authorization_url = None
        payment_mode = "manual"
        if currency == "NGN" and self.paystack is not None and quote.total > 0:
            data = self.paystack.initialize_transaction(
                email=user.email,
                amount_kobo=to_kobo(quote.total),
                reference=purchase.payment_reference,
                metadata={"purchase_id": purchase.id},
            )
            authorization_url = data.get("authorization_url")
            payment_mode = "paystack"

        return {
            "ok": True,
            "purchase_id": purchase.id,
            "reference": purchase.payment_reference,
            "currency": currency,
            "lines": [line_to_dict(line) for line in purchase.lines],
            "subtotal": float(subtotal),
            "discount": float(quote.discount),
            "total": float(quote.total),
            "payment_mode": payment_mode,
            "authorization_url": authorization_url,
            "message": (
                "Proceed to Paystack to complete payment."
                if payment_mode == "paystack"
                else "Purchase submitted and pending admin review."
            ),
        }

    def create_legacy(self, user: User, product_key: str, months: int) -> Purchase:
        """Single product purchase awaiting manual approval."""
        product = self.catalog.get(product_key)
        if product is None or not product.is_published:
            raise ValidationError(f"Invalid product: {product_key}", {"product_key": product_key})
        if months is None or not 1 <= months <= MAX_GRANT_MONTHS:
            raise ValidationError(f"months must be between 1 and {MAX_GRANT_MONTHS}", {"field": "months"})

        amount = Decimal(product.price_monthly_ngn or 0) * months
        purchase = Purchase(
            user_id=user.id,
            email=user.email,
            currency="NGN",
            subtotal=amount,
            discount=Decimal("0"),
            total_amount=amount,
            product_key=product.key,
            requested_months=months,
            status=PurchaseStatus.PENDING,
        )
        self.db.add(purchase)
        self.db.commit()
        logger.info(
            "Legacy purchase created",
            extra={"purchase_id": purchase.id, "user_id": user.id, "product_key": product.key, "months": months},
        )
        return purchase

    # ----- Reads -----

    def get(self, purchase_id: str) -> Purchase:
        purchase = self.db.get(Purchase, purchase_id)
        if purchase is None:
            raise NotFoundError("Purchase", purchase_id)
        return purchase

    def list_for_user(self, user: User) -> list[Purchase]:
        return list(self.db.execute(
            select(Purchase).where(Purchase.user_id == user.id).order_by(Purchase.created_at.desc())
        ).scalars())

    def list_purchases(self, status_filter: Optional[str] = None) -> list[Purchase]:
        query = select(Purchase).order_by(Purchase.created_at.desc())
        if status_filter:
            try:
                query = query.where(Purchase.status == PurchaseStatus(status_filter.lower()))
            except ValueError:
                raise ValidationError(
                    "status must be pending, approved or rejected",
                    {"field": "status", "value": status_filter},
                )
        return list(self.db.execute(query).scalars())

    def list_pending_installations(self) -> list[Purchase]:
        return list(self.db.execute(
            select(Purchase)
            .where(Purchase.status == PurchaseStatus.APPROVED)
            .where(Purchase.installation_status == InstallationStatus.PENDING)
            .order_by(Purchase.decided_at)
        ).scalars())

    # ----- Decisions -----

    def _transition(self, purchase_id: str, new_status: PurchaseStatus, **values) -> Purchase:
        """Move a pending purchase to new_status; exactly one caller wins."""
        result = self.db.execute(
            update(Purchase)
            .where(Purchase.id == purchase_id)
            .where(Purchase.status == PurchaseStatus.PENDING)
            .values(status=new_status, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            purchase = self.get(purchase_id)
            raise PurchaseNotPendingError(purchase_id, purchase.status.value)
        return self.db.get(Purchase, purchase_id, populate_existing=True)

    def _load_owner(self, purchase: Purchase) -> User:
        user = self.db.get(User, purchase.user_id)
        if user is None:
            raise NotFoundError("User", purchase.user_id)
        return user

    def approve(
        self,
        purchase_id: str,
        actor_id: str,
        months: Optional[int] = None,
        request: Optional[Request] = None,
        now: Optional[datetime] = None,
    ) -> Purchase:
        """
        Approve a pending purchase and apply or stage its grants.

        Raises:
            NotFoundError: unknown purchase
            PurchaseNotPendingError: already approved or rejected
            ValidationError: a grant would run longer than MAX_GRANT_MONTHS
            VersionConflictError: a concurrent entitlement write won
        """
        now = now or utcnow()
        if months is not None and not 1 <= months <= MAX_GRANT_MONTHS:
            raise ValidationError(f"months must be between 1 and {MAX_GRANT_MONTHS}", {"field": "months"})
        pending = self.get(purchase_id)
        if pending.status == PurchaseStatus.PENDING:
            for grant in grants_from_purchase(pending, months):
                if grant.months > MAX_GRANT_MONTHS:
                    raise ValidationError(
                        f"Purchase grants more than {MAX_GRANT_MONTHS} months of {grant.product_key}",
                        {"product_key": grant.product_key, "months": grant.months},
                    )

        values: dict[str, Any] = {"decided_at": now, "decided_by": actor_id}
        if months is not None:
            values["approved_months"] = months
        purchase = self._transition(purchase_id, PurchaseStatus.APPROVED, **values)
        user = self._load_owner(purchase)

        grants = grants_from_purchase(purchase, months)
        staged_keys = self.catalog.requiring_installation(g.product_key for g in grants)
        staged = [g for g in grants if g.product_key in staged_keys]
        immediate = [g for g in grants if g.product_key not in staged_keys]

        apply_grants(user, immediate, now=now, reactivate_disabled=self.settings.grants_reactivate_disabled)

        if staged:
            purchase.installation_status = InstallationStatus.PENDING
            purchase.staged_grants = [g.to_dict() for g in staged]
            purchase.entitlements_applied = False
        else:
            purchase.installation_status = InstallationStatus.NONE
            purchase.staged_grants = []
            purchase.entitlements_applied = True

        if purchase.coupon_id:
            self.coupons.redeem(purchase.coupon_id)

        record_audit_event(
            self.db,
            request,
            AuditAction.PURCHASE_APPROVED,
            actor_id=actor_id if actor_id != PAYSTACK_ACTOR else None,
            resource_type="purchase",
            resource_id=purchase.id,
            metadata={
                "user_id": user.id,
                "email": user.email,
                "applied": [g.product_key for g in immediate],
                "staged": [g.product_key for g in staged],
                "months_override": months,
            },
            source="paystack" if actor_id == PAYSTACK_ACTOR else "api",
        )
        commit_entitlement_changes(self.db)

        logger.info(
            "Purchase approved",
            extra={
                "purchase_id": purchase.id,
                "user_id": user.id,
                "decided_by": actor_id,
                "applied": [g.product_key for g in immediate],
                "staged": [g.product_key for g in staged],
            }
        )
        logger.info(
            "Purchase approval email queued",
            extra={"purchase_id": purchase.id, "installation_pending": bool(staged)},
        )
        return purchase

    def reject(
        self,
        purchase_id: str,
        actor_id: str,
        reason: Optional[str] = None,
        request: Optional[Request] = None,
        now: Optional[datetime] = None,
    ) -> Purchase:
        """
        Reject a pending purchase. No entitlement changes.

        Raises:
            NotFoundError: unknown purchase
            PurchaseNotPendingError: already approved or rejected
        """
        now = now or utcnow()
        self.get(purchase_id)
        purchase = self._transition(
            purchase_id,
            PurchaseStatus.REJECTED,
            decided_at=now,
            decided_by=actor_id,
            decision_note=(reason or "").strip() or None,
        )
        record_audit_event(
            self.db,
            request,
            AuditAction.PURCHASE_REJECTED,
            actor_id=actor_id,
            resource_type="purchase",
            resource_id=purchase.id,
            metadata={"reason": purchase.decision_note},
        )
        self.db.commit()
        logger.info("Purchase rejected", extra={"purchase_id": purchase.id, "decided_by": actor_id})
        return purchase

    def complete_installation(
        self,
        purchase_id: str,
        actor_id: str,
        request: Optional[Request] = None,
        now: Optional[datetime] = None,
    ) -> Purchase:
        """
        Apply staged grants once and mark the installation complete.

        A repeat call returns the purchase unchanged.

        Raises:
            NotFoundError: unknown purchase
            ValidationError: purchase is not approved with a pending installation
        """
        now = now or utcnow()
        purchase = self.get(purchase_id)

        result = self.db.execute(
            update(Purchase)
            .where(Purchase.id == purchase_id)
            .where(Purchase.status == PurchaseStatus.APPROVED)
            .where(Purchase.entitlements_applied.is_(False))
            .values(
                entitlements_applied=True,
                installation_status=InstallationStatus.COMPLETE,
                installation_completed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            purchase = self.db.get(Purchase, purchase_id, populate_existing=True)
            if purchase.status == PurchaseStatus.APPROVED and purchase.entitlements_applied:
                logger.info("Installation already completed", extra={"purchase_id": purchase_id})
                return purchase
            raise ValidationError(
                "Purchase has no pending installation",
                {"purchase_id": purchase_id, "status": purchase.status.value},
            )

        purchase = self.db.get(Purchase, purchase_id, populate_existing=True)
        user = self._load_owner(purchase)
        grants = [Grant.from_dict(g) for g in (purchase.staged_grants or [])]
        apply_grants(user, grants, now=now, reactivate_disabled=self.settings.grants_reactivate_disabled)
        purchase.staged_grants = []

        record_audit_event(
            self.db,
            request,
            AuditAction.PURCHASE_INSTALLATION_COMPLETED,
            actor_id=actor_id,
            resource_type="purchase",
            resource_id=purchase.id,
            metadata={"user_id": user.id, "applied": [g.product_key for g in grants]},
        )
        commit_entitlement_changes(self.db)
        logger.info(
            "Purchase installation completed",
            extra={"purchase_id": purchase.id, "user_id": user.id, "applied": [g.product_key for g in grants]},
        )
        return purchase

    # ----- Payment confirmation -----

    def confirm_payment(self, reference: str, amount_kobo: Optional[int] = None, now: Optional[datetime] = None) -> dict[str, Any]:
        """
        Mark a purchase paid and approve it through the one-way transition.

        Shared by the verify callback and the webhook. An already approved
        purchase is reported as success.
        """
        now = now or utcnow()
        purchase = self.db.execute(
            select(Purchase).where(Purchase.payment_reference == reference)
        ).scalar_one_or_none()
        if purchase is None:
            logger.warning("Payment for unknown reference", extra={"reference": reference})
            return {"ok": False, "message": "Purchase not found"}

        if amount_kobo is not None and int(amount_kobo) < to_kobo(purchase.total_amount):
            logger.warning(
                "Paid amount below purchase total",
                extra={
                    "purchase_id": purchase.id,
                    "paid_kobo": int(amount_kobo),
                    "expected_kobo": to_kobo(purchase.total_amount),
                }
            )
            return {"ok": False, "status": "amount_mismatch", "purchase_id": purchase.id}

        if not purchase.paid:
            self.db.execute(
                update(Purchase)
                .where(Purchase.id == purchase.id)
                .where(Purchase.paid.is_(False))
                .values(paid=True, paid_at=now)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()

        try:
            self.approve(purchase.id, PAYSTACK_ACTOR, now=now)
        except PurchaseNotPendingError as exc:
            if exc.details.get("status") != PurchaseStatus.APPROVED.value:
                logger.warning(
                    "Payment received for a decided purchase",
                    extra={"purchase_id": purchase.id, "status": exc.details.get("status")},
                )
                return {"ok": False, "status": exc.details.get("status"), "purchase_id": purchase.id}
        return {"ok": True, "status": "success", "purchase_id": purchase.id}

    def verify_payment(self, reference: str) -> dict[str, Any]:
        """
        Verify a Paystack transaction and confirm the purchase when paid.

        Raises:
            ValidationError: missing reference or Paystack not configured
            PaymentGatewayError: Paystack lookup failed
        """
        reference = (reference or "").strip()
        if not reference:
            raise ValidationError("reference required", {"field": "reference"})
        if self.paystack is None:
            raise ValidationError("Paystack not configured")

        data = self.paystack.verify_transaction(reference)
        if data.get("status") != "success":
            return {"ok": False, "status": data.get("status")}
        return self.confirm_payment(reference, data.get("amount"))

    def handle_webhook(self, event: dict[str, Any]) -> dict[str, Any]:
        """Process a signature-verified Paystack event."""
        event_type = event.get("event")
        data = event.get("data") or {}
        if event_type != "charge.success":
            logger.info("Ignoring Paystack event", extra={"event": event_type})
            return {"ok": True, "ignored": True}

        reference = (data.get("reference") or "").strip()
        if not reference:
            logger.warning("Paystack charge.success without reference")
            return {"ok": False, "message": "reference missing"}
        return self.confirm_payment(reference, data.get("amount"))
