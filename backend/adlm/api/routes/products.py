"""
Product catalogue routes and the per-product access probe.
"""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from adlm.api.dependencies.auth import get_settings, require_admin
from adlm.api.dependencies.require_entitlement import require_entitlement_from_path
from adlm.config.settings import Settings
from adlm.database.session import get_db_session
from adlm.entitlements.service import entitlement_to_dict
from adlm.models.entitlement import Entitlement
from adlm.models.user import User
from adlm.services.catalog_service import CatalogService, product_to_dict

router = APIRouter(tags=["products"])


class ProductCreateBody(BaseModel):
    key: str = Field(..., min_length=1, description="Stable product key")
    name: str = Field(..., min_length=1)
    billing_interval: str = Field("monthly", description="monthly | yearly")
    price_monthly_ngn: Decimal = Field(Decimal("0"), ge=0)
    price_yearly_ngn: Decimal = Field(Decimal("0"), ge=0)
    install_fee_ngn: Decimal = Field(Decimal("0"), ge=0)
    price_monthly_usd: Optional[Decimal] = Field(None, ge=0)
    price_yearly_usd: Optional[Decimal] = Field(None, ge=0)
    install_fee_usd: Optional[Decimal] = Field(None, ge=0)
    is_course: bool = False
    requires_installation: bool = False
    is_published: bool = True


class ProductUpdateBody(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    billing_interval: Optional[str] = None
    price_monthly_ngn: Optional[Decimal] = Field(None, ge=0)
    price_yearly_ngn: Optional[Decimal] = Field(None, ge=0)
    install_fee_ngn: Optional[Decimal] = Field(None, ge=0)
    price_monthly_usd: Optional[Decimal] = Field(None, ge=0)
    price_yearly_usd: Optional[Decimal] = Field(None, ge=0)
    install_fee_usd: Optional[Decimal] = Field(None, ge=0)
    is_course: Optional[bool] = None
    requires_installation: Optional[bool] = None
    is_published: Optional[bool] = None


@router.get("/products")
def list_products(
    db: Session = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    products = CatalogService(db).list_products()
    return {"products": [product_to_dict(p, settings.fx_ngn_per_usd) for p in products]}


@router.get("/products/{product_key}/access")
def product_access(
    product_key: str,
    entitlement: Entitlement = Depends(require_entitlement_from_path()),
) -> dict:
    """200 with the entitlement when the caller may use the product."""
    return {"ok": True, "entitlement": entitlement_to_dict(entitlement)}


@router.post("/admin/products", status_code=201)
def create_product(
    body: ProductCreateBody,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    product = CatalogService(db).create(**body.model_dump())
    return {"product": product_to_dict(product, settings.fx_ngn_per_usd)}


@router.patch("/admin/products/{product_key}")
def update_product(
    product_key: str,
    body: ProductUpdateBody,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    product = CatalogService(db).update(product_key, **body.model_dump(exclude_unset=True))
    return {"product": product_to_dict(product, settings.fx_ngn_per_usd)}
