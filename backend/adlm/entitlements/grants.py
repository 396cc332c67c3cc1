"""
Grant building: turning purchases and trainings into entitlement grants.

Purchases exist in two shapes (cart purchases with lines, legacy single
product purchases). normalize_purchase() turns either into a tagged
variant once; nothing downstream branches on the stored shape.

Cart rule: per line months = periods * (12 if yearly else 1) and seats =
qty. Lines naming the same product are merged by taking the max months and
the max seats, never the sum.
"""

from dataclasses import asdict, dataclass
from typing import Any, Iterable, Optional, Union

from adlm.entitlements.expiry import MAX_GRANT_MONTHS
from adlm.models.purchase import BillingInterval, Purchase
from adlm.models.training import TrainingEvent
from adlm.models.user import normalize_product_key
from adlm.platform.errors import ValidationError

MAX_SEATS = 1000

MONTHS_PER_INTERVAL = {
    BillingInterval.MONTHLY.value: 1,
    BillingInterval.YEARLY.value: 12,
}


@dataclass(frozen=True)
class Grant:
    """One create-or-extend instruction for a single product."""
    product_key: str
    months: int
    seats: int = 1
    license_type: Optional[str] = None
    organization_name: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Grant":
        months = int(data["months"])
        seats = max(int(data.get("seats") or 1), 1)
        if not 1 <= months <= MAX_GRANT_MONTHS or seats > MAX_SEATS:
            raise ValidationError(
                "Grant months or seats out of range",
                {"months": months, "seats": seats, "max_months": MAX_GRANT_MONTHS, "max_seats": MAX_SEATS},
            )
        return cls(
            product_key=normalize_product_key(data["product_key"]),
            months=months,
            seats=seats,
            license_type=data.get("license_type"),
            organization_name=data.get("organization_name"),
        )


@dataclass(frozen=True)
class OrderLine:
    product_key: str
    qty: int
    periods: int
    billing_interval: str
    license_type: Optional[str] = None

    @property
    def months(self) -> int:
        return self.periods * MONTHS_PER_INTERVAL.get(self.billing_interval, 1)


@dataclass(frozen=True)
class CartOrder:
    lines: tuple[OrderLine, ...]


@dataclass(frozen=True)
class LegacyOrder:
    product_key: str
    months: int


Order = Union[CartOrder, LegacyOrder]


def normalize_purchase(purchase: Purchase, months_override: Optional[int] = None) -> Order:
    """
    Normalise a stored purchase into its canonical order shape.

    months_override is the admin's approved_months for a legacy purchase;
    it is ignored for cart purchases.
    """
    if purchase.lines:
        return CartOrder(
            lines=tuple(
                OrderLine(
                    product_key=normalize_product_key(line.product_key),
                    qty=max(int(line.qty or 1), 1),
                    periods=max(int(line.periods or 1), 1),
                    billing_interval=(line.billing_interval or BillingInterval.MONTHLY.value).lower(),
                    license_type=line.license_type,
                )
                for line in purchase.lines
            )
        )

    months = months_override or purchase.approved_months or purchase.requested_months or 0
    return LegacyOrder(
        product_key=normalize_product_key(purchase.product_key or ""),
        months=int(months),
    )


def merge_grants(grants: Iterable[Grant]) -> list[Grant]:
    """
    Collapse grants for the same product into one, keeping first-seen order.

    Months and seats are merged with max().
    """
    merged: dict[str, Grant] = {}
    for grant in grants:
        existing = merged.get(grant.product_key)
        if existing is None:
            merged[grant.product_key] = grant
            continue
        merged[grant.product_key] = Grant(
            product_key=grant.product_key,
            months=max(existing.months, grant.months),
            seats=max(existing.seats, grant.seats),
            license_type=existing.license_type or grant.license_type,
            organization_name=existing.organization_name or grant.organization_name,
        )
    return list(merged.values())


def grants_from_order(order: Order) -> list[Grant]:
    if isinstance(order, LegacyOrder):
        if not order.product_key or order.months < 1:
            return []
        return [Grant(product_key=order.product_key, months=order.months, seats=1)]

    return merge_grants(
        Grant(
            product_key=line.product_key,
            months=line.months,
            seats=line.qty,
            license_type=line.license_type,
        )
        for line in order.lines
        if line.product_key and line.months >= 1
    )


def grants_from_purchase(purchase: Purchase, months_override: Optional[int] = None) -> list[Grant]:
    """Grants an approved purchase confers."""
    return grants_from_order(normalize_purchase(purchase, months_override))


def grants_from_training(event: TrainingEvent) -> list[Grant]:
    """
    Grants a completed training confers, one per configured grant row.

    Rows are not merged: a training may grant several products.
    """
    grants = []
    for row in event.grants:
        product_key = normalize_product_key(row.product_key)
        months = int(row.months or 0)
        if not product_key or months < 1:
            continue
        grants.append(
            Grant(
                product_key=product_key,
                months=months,
                seats=max(int(row.seats or 1), 1),
                license_type=row.license_type,
                organization_name=row.organization_name,
            )
        )
    return grants
