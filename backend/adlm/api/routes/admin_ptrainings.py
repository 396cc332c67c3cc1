"""
Admin routes for physical training events and enrollments.

Approval reserves a seat (409 TRAINING_FULL when none are left).
Installation completion applies the event grants to the attendee once.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field

from adlm.api.dependencies.auth import require_admin, require_staff
from adlm.api.dependencies.services import get_training_service
from adlm.entitlements.expiry import MAX_GRANT_MONTHS
from adlm.entitlements.grants import MAX_SEATS
from adlm.models.user import User
from adlm.services.training_service import TrainingService, enrollment_to_dict, event_to_dict

router = APIRouter(prefix="/admin/ptrainings", tags=["admin", "trainings"])


class GrantBody(BaseModel):
    product_key: str = Field(..., min_length=1)
    months: int = Field(..., ge=1, le=MAX_GRANT_MONTHS)
    seats: int = Field(1, ge=1, le=MAX_SEATS)
    license_type: Optional[str] = Field(None, description="personal | organization")
    organization_name: Optional[str] = None


class EventCreateBody(BaseModel):
    title: str = Field(..., min_length=1)
    location: Optional[str] = None
    starts_at: Optional[datetime] = None
    price_ngn: Decimal = Field(Decimal("0"), ge=0)
    capacity_approved: Optional[int] = Field(None, ge=1, description="Defaults to DEFAULT_TRAINING_CAPACITY")
    open: bool = True
    grants: list[GrantBody] = Field(default_factory=list)


class EventUpdateBody(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    location: Optional[str] = None
    starts_at: Optional[datetime] = None
    price_ngn: Optional[Decimal] = Field(None, ge=0)
    capacity_approved: Optional[int] = Field(None, ge=1)
    open: Optional[bool] = None
    grants: Optional[list[GrantBody]] = None


@router.get("/events")
def list_events(
    staff: User = Depends(require_staff),
    trainings: TrainingService = Depends(get_training_service),
) -> dict:
    return {"events": [event_to_dict(e) for e in trainings.list_events(include_closed=True)]}


@router.post("/events", status_code=status.HTTP_201_CREATED)
def create_event(
    body: EventCreateBody,
    admin: User = Depends(require_admin),
    trainings: TrainingService = Depends(get_training_service),
) -> dict:
    event = trainings.create_event(**body.model_dump())
    return {"event": event_to_dict(event)}


@router.patch("/events/{event_id}")
def update_event(
    event_id: str,
    body: EventUpdateBody,
    admin: User = Depends(require_admin),
    trainings: TrainingService = Depends(get_training_service),
) -> dict:
    event = trainings.update_event(event_id, **body.model_dump(exclude_unset=True))
    return {"event": event_to_dict(event)}


@router.get("/enrollments")
def list_enrollments(
    event_id: Optional[str] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    staff: User = Depends(require_staff),
    trainings: TrainingService = Depends(get_training_service),
) -> dict:
    enrollments = trainings.list_enrollments(event_id=event_id, status_filter=status_filter)
    return {"enrollments": [enrollment_to_dict(e) for e in enrollments]}


@router.patch("/enrollments/{enrollment_id}/approve")
def approve_enrollment(
    enrollment_id: str,
    request: Request,
    admin: User = Depends(require_admin),
    trainings: TrainingService = Depends(get_training_service),
) -> dict:
    enrollment, changed = trainings.approve(enrollment_id, admin.id, request=request)
    event = enrollment.event
    return {
        "ok": True,
        "enrollment": enrollment_to_dict(enrollment),
        "approved_count": event.approved_count,
        "seats_left": event.seats_left,
        "message": "Enrollment approved, seat reserved." if changed else "Enrollment already approved (no changes).",
    }


@router.patch("/enrollments/{enrollment_id}/reject")
def reject_enrollment(
    enrollment_id: str,
    request: Request,
    admin: User = Depends(require_admin),
    trainings: TrainingService = Depends(get_training_service),
) -> dict:
    enrollment = trainings.reject(enrollment_id, admin.id, request=request)
    return {"ok": True, "enrollment": enrollment_to_dict(enrollment)}


@router.patch("/enrollments/{enrollment_id}/installation-complete")
def installation_complete(
    enrollment_id: str,
    request: Request,
    admin: User = Depends(require_admin),
    trainings: TrainingService = Depends(get_training_service),
) -> dict:
    enrollment, granted = trainings.complete_installation(enrollment_id, admin.id, request=request)
    return {
        "ok": True,
        "enrollment": enrollment_to_dict(enrollment),
        "grants_applied": granted,
        "message": (
            "Installation complete and entitlements granted."
            if granted
            else "Installation marked complete. (Entitlements were already granted.)"
        ),
    }
