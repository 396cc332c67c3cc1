"""
Service dependencies.

Services are bound to the request's session. The Paystack client is resolved
from settings and can be swapped with app.dependency_overrides in tests.
"""

from typing import Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from adlm.api.dependencies.auth import get_settings
from adlm.config.settings import Settings
from adlm.database.session import get_db_session
from adlm.services.paystack_client import PaystackClient
from adlm.services.purchase_service import PurchaseService
from adlm.services.training_service import TrainingService


def get_paystack_client(settings: Settings = Depends(get_settings)) -> Optional[PaystackClient]:
    return PaystackClient.from_settings(settings)


def get_purchase_service(
    db: Session = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    paystack: Optional[PaystackClient] = Depends(get_paystack_client),
) -> PurchaseService:
    return PurchaseService(db, settings, paystack)


def get_training_service(
    db: Session = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> TrainingService:
    return TrainingService(db, settings)
