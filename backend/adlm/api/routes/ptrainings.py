"""
Physical training routes for visitors and signed-in users.
"""

from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from adlm.api.dependencies.auth import get_current_user
from adlm.api.dependencies.services import get_training_service
from adlm.models.user import User
from adlm.services.training_service import TrainingService, enrollment_to_dict, event_to_dict

router = APIRouter(tags=["trainings"])


class PaymentBody(BaseModel):
    payer_name: str = Field(..., min_length=1)
    bank_name: Optional[str] = Field(None, max_length=255)
    reference: Optional[str] = Field(None, max_length=100)
    note: Optional[str] = Field(None, max_length=2000)


@router.get("/ptrainings/events")
def list_events(trainings: TrainingService = Depends(get_training_service)) -> dict:
    return {"events": [event_to_dict(e) for e in trainings.list_events()]}


@router.get("/ptrainings/events/{event_id}")
def get_event(event_id: str, trainings: TrainingService = Depends(get_training_service)) -> dict:
    return {"event": event_to_dict(trainings.get_event(event_id))}


@router.post("/ptrainings/events/{event_id}/enroll", status_code=status.HTTP_201_CREATED)
def enroll(
    event_id: str,
    user: User = Depends(get_current_user),
    trainings: TrainingService = Depends(get_training_service),
) -> dict:
    enrollment = trainings.enroll(user, event_id)
    return {"ok": True, "enrollment": enrollment_to_dict(enrollment)}


@router.post("/me/ptrainings/enrollments/{enrollment_id}/payment")
def submit_payment(
    enrollment_id: str,
    body: PaymentBody,
    user: User = Depends(get_current_user),
    trainings: TrainingService = Depends(get_training_service),
) -> dict:
    enrollment = trainings.submit_payment(
        user,
        enrollment_id,
        payer_name=body.payer_name,
        bank_name=body.bank_name,
        reference=body.reference,
        note=body.note,
    )
    return {"ok": True, "enrollment": enrollment_to_dict(enrollment)}


@router.get("/me/ptrainings")
def my_enrollments(
    user: User = Depends(get_current_user),
    trainings: TrainingService = Depends(get_training_service),
) -> dict:
    return {"enrollments": [enrollment_to_dict(e) for e in trainings.list_for_user(user)]}
