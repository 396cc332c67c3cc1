"""
Physical training events and enrollments.

Enrollment lifecycle:

    pending -> submitted -> approved | rejected

Approval reserves one seat with a conditional UPDATE on the event's
approved_count, so concurrent approvals never exceed capacity_approved.
The event grants are applied when an admin confirms the installation done
at the training, guarded by a conditional UPDATE on entitlements_applied so
they are applied exactly once.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import Request, status
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from adlm.config.settings import Settings
from adlm.entitlements.applier import apply_grants
from adlm.entitlements.grants import grants_from_training
from adlm.entitlements.store import commit_entitlement_changes
from adlm.models.base import utcnow
from adlm.models.training import (
    EnrollmentStatus,
    TrainingEnrollment,
    TrainingEvent,
    TrainingGrant,
)
from adlm.models.user import User, normalize_product_key
from adlm.platform.audit import AuditAction, record_audit_event
from adlm.platform.errors import (
    AppError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class TrainingFullError(AppError):
    """No approved seats left on the event (409)."""

    def __init__(self, capacity: int, approved_count: int):
        super().__init__(
            code="TRAINING_FULL",
            message="Cannot approve: capacity reached.",
            status_code=status.HTTP_409_CONFLICT,
            details={
                "capacity": capacity,
                "approved_count": approved_count,
                "seats_left": max(capacity - approved_count, 0),
            },
        )


class EnrollmentStateError(AppError):
    """Enrollment is in a state that does not allow the operation (400)."""

    def __init__(self, message: str, current_status: str):
        super().__init__(
            code="ENROLLMENT_STATE_INVALID",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"status": current_status},
        )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def event_to_dict(event: TrainingEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "title": event.title,
        "location": event.location,
        "starts_at": _iso(event.starts_at),
        "price_ngn": float(event.price_ngn or 0),
        "capacity_approved": event.capacity_approved,
        "approved_count": event.approved_count,
        "seats_left": event.seats_left,
        "open": event.open,
        "grants": [
            {
                "product_key": g.product_key,
                "months": g.months,
                "seats": g.seats,
                "license_type": g.license_type,
                "organization_name": g.organization_name,
            }
            for g in event.grants
        ],
    }


def enrollment_to_dict(enrollment: TrainingEnrollment) -> dict[str, Any]:
    return {
        "id": enrollment.id,
        "event_id": enrollment.event_id,
        "event_title": enrollment.event.title if enrollment.event else None,
        "user_id": enrollment.user_id,
        "email": enrollment.email,
        "status": enrollment.status.value,
        "payment": {
            "payer_name": enrollment.payer_name,
            "bank_name": enrollment.bank_name,
            "reference": enrollment.payment_reference,
            "note": enrollment.payment_note,
            "submitted_at": _iso(enrollment.payment_submitted_at),
        },
        "decided_at": _iso(enrollment.decided_at),
        "decided_by": enrollment.decided_by,
        "installation_complete": enrollment.installation_complete,
        "entitlements_applied": enrollment.entitlements_applied,
        "entitlements_applied_at": _iso(enrollment.entitlements_applied_at),
        "created_at": _iso(enrollment.created_at),
    }


class TrainingService:
    """Training events and enrollment decisions bound to one session."""

    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings

    # ----- Events -----

    def get_event(self, event_id: str) -> TrainingEvent:
        event = self.db.get(TrainingEvent, event_id)
        if event is None:
            raise NotFoundError("Training", event_id)
        return event

    def list_events(self, include_closed: bool = False) -> list[TrainingEvent]:
        query = select(TrainingEvent).order_by(TrainingEvent.starts_at)
        if not include_closed:
            query = query.where(TrainingEvent.open.is_(True))
        return list(self.db.execute(query).scalars())

    @staticmethod
    def _grant_rows(grants: list[dict[str, Any]]) -> list[TrainingGrant]:
        rows = []
        for position, grant in enumerate(grants):
            product_key = normalize_product_key(grant.get("product_key"))
            months = int(grant.get("months") or 0)
            if not product_key or months < 1:
                raise ValidationError(
                    "each grant needs a product_key and months >= 1",
                    {"field": "grants", "index": position},
                )
            rows.append(TrainingGrant(
                position=position,
                product_key=product_key,
                months=months,
                seats=max(int(grant.get("seats") or 1), 1),
                license_type=grant.get("license_type") or "personal",
                organization_name=grant.get("organization_name"),
            ))
        return rows

    def create_event(self, **fields) -> TrainingEvent:
        if not (fields.get("title") or "").strip():
            raise ValidationError("title is required", {"field": "title"})
        grants = fields.pop("grants", None) or []
        if fields.get("capacity_approved") is None:
            fields["capacity_approved"] = self.settings.default_training_capacity
        event = TrainingEvent(**{k: v for k, v in fields.items() if v is not None})
        event.grants = self._grant_rows(grants)
        self.db.add(event)
        self.db.commit()
        logger.info(
            "Training event created",
            extra={"event_id": event.id, "capacity": event.capacity_approved},
        )
        return event

    def update_event(self, event_id: str, **fields) -> TrainingEvent:
        event = self.get_event(event_id)
        grants = fields.pop("grants", None)
        capacity = fields.get("capacity_approved")
        if capacity is not None and capacity < (event.approved_count or 0):
            raise ValidationError(
                "capacity_approved cannot drop below approved_count",
                {"approved_count": event.approved_count},
            )
        for name, value in fields.items():
            if value is not None:
                setattr(event, name, value)
        if grants is not None:
            event.grants = self._grant_rows(grants)
        self.db.commit()
        logger.info("Training event updated", extra={"event_id": event.id, "fields": sorted(fields)})
        return event

    # ----- Enrollments (user) -----

    def get_enrollment(self, enrollment_id: str) -> TrainingEnrollment:
        enrollment = self.db.get(TrainingEnrollment, enrollment_id)
        if enrollment is None:
            raise NotFoundError("Enrollment", enrollment_id)
        return enrollment

    def enroll(self, user: User, event_id: str) -> TrainingEnrollment:
        """
        Raises:
            NotFoundError: unknown event
            ValidationError: event closed
            ConflictError: user already enrolled
        """
        event = self.get_event(event_id)
        if not event.open:
            raise ValidationError("Training is not open for enrollment", {"event_id": event_id})

        existing = self.db.execute(
            select(TrainingEnrollment)
            .where(TrainingEnrollment.event_id == event_id)
            .where(TrainingEnrollment.user_id == user.id)
        ).scalar_one_or_none()
        if existing is not None:
            raise ConflictError("Already enrolled", {"enrollment_id": existing.id})

        enrollment = TrainingEnrollment(
            event_id=event.id,
            user_id=user.id,
            email=user.email,
            status=EnrollmentStatus.PENDING,
        )
        self.db.add(enrollment)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("Already enrolled", {"event_id": event_id})
        logger.info("Training enrollment created", extra={"enrollment_id": enrollment.id, "user_id": user.id})
        return enrollment

    def submit_payment(
        self,
        user: User,
        enrollment_id: str,
        payer_name: str,
        bank_name: Optional[str] = None,
        reference: Optional[str] = None,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TrainingEnrollment:
        """Attach bank transfer proof; moves the enrollment to submitted."""
        now = now or utcnow()
        enrollment = self.get_enrollment(enrollment_id)
        if enrollment.user_id != user.id:
            raise PermissionDeniedError("Not your enrollment")
        if enrollment.status not in (EnrollmentStatus.PENDING, EnrollmentStatus.SUBMITTED):
            raise EnrollmentStateError("Enrollment already decided.", enrollment.status.value)
        if not (payer_name or "").strip():
            raise ValidationError("payer_name is required", {"field": "payer_name"})

        enrollment.payer_name = payer_name.strip()
        enrollment.bank_name = bank_name
        enrollment.payment_reference = reference
        enrollment.payment_note = note
        enrollment.payment_submitted_at = now
        enrollment.status = EnrollmentStatus.SUBMITTED
        self.db.commit()
        logger.info("Training payment submitted", extra={"enrollment_id": enrollment.id})
        return enrollment

    def list_for_user(self, user: User) -> list[TrainingEnrollment]:
        return list(self.db.execute(
            select(TrainingEnrollment)
            .where(TrainingEnrollment.user_id == user.id)
            .order_by(TrainingEnrollment.created_at.desc())
        ).scalars())

    # ----- Enrollments (admin) -----

    def list_enrollments(
        self,
        event_id: Optional[str] = None,
        status_filter: Optional[str] = None,
    ) -> list[TrainingEnrollment]:
        query = select(TrainingEnrollment).order_by(TrainingEnrollment.created_at.desc())
        if event_id:
            query = query.where(TrainingEnrollment.event_id == event_id)
        if status_filter:
            try:
                query = query.where(TrainingEnrollment.status == EnrollmentStatus(status_filter.lower()))
            except ValueError:
                raise ValidationError("Unknown enrollment status", {"field": "status", "value": status_filter})
        return list(self.db.execute(query).scalars())

    def approve(
        self,
        enrollment_id: str,
        actor_id: str,
        request: Optional[Request] = None,
        now: Optional[datetime] = None,
    ) -> tuple[TrainingEnrollment, bool]:
        """
        Approve an enrollment and reserve a seat.

        Returns:
            (enrollment, changed); changed is False for an already approved one

        Raises:
            EnrollmentStateError: enrollment was rejected
            TrainingFullError: no seats left
        """
        now = now or utcnow()
        enrollment = self.get_enrollment(enrollment_id)
        if enrollment.status == EnrollmentStatus.APPROVED:
            return enrollment, False
        if enrollment.status == EnrollmentStatus.REJECTED:
            raise EnrollmentStateError("Cannot approve: enrollment was rejected.", enrollment.status.value)

        transitioned = self.db.execute(
            update(TrainingEnrollment)
            .where(TrainingEnrollment.id == enrollment_id)
            .where(TrainingEnrollment.status.in_([EnrollmentStatus.PENDING, EnrollmentStatus.SUBMITTED]))
            .values(status=EnrollmentStatus.APPROVED, decided_at=now, decided_by=actor_id)
            .execution_options(synchronize_session=False)
        )
        if transitioned.rowcount != 1:
            self.db.rollback()
            enrollment = self.db.get(TrainingEnrollment, enrollment_id, populate_existing=True)
            if enrollment.status == EnrollmentStatus.APPROVED:
                return enrollment, False
            raise EnrollmentStateError("Cannot approve: enrollment was rejected.", enrollment.status.value)

        reserved = self.db.execute(
            update(TrainingEvent)
            .where(TrainingEvent.id == enrollment.event_id)
            .where(TrainingEvent.approved_count < TrainingEvent.capacity_approved)
            .values(approved_count=TrainingEvent.approved_count + 1)
            .execution_options(synchronize_session=False)
        )
        if reserved.rowcount != 1:
            self.db.rollback()
            event = self.db.get(TrainingEvent, enrollment.event_id, populate_existing=True)
            logger.warning(
                "Training capacity reached",
                extra={
                    "event_id": event.id,
                    "enrollment_id": enrollment_id,
                    "capacity": event.capacity_approved,
                    "approved_count": event.approved_count,
                },
            )
            raise TrainingFullError(event.capacity_approved, event.approved_count)

        record_audit_event(
            self.db,
            request,
            AuditAction.TRAINING_ENROLLMENT_APPROVED,
            actor_id=actor_id,
            resource_type="training_enrollment",
            resource_id=enrollment_id,
            metadata={"event_id": enrollment.event_id, "user_id": enrollment.user_id},
        )
        self.db.commit()

        enrollment = self.db.get(TrainingEnrollment, enrollment_id, populate_existing=True)
        self.db.refresh(enrollment.event)
        logger.info(
            "Training enrollment approved",
            extra={
                "enrollment_id": enrollment_id,
                "event_id": enrollment.event_id,
                "seats_left": enrollment.event.seats_left,
            }
        )
        return enrollment, True

    def reject(
        self,
        enrollment_id: str,
        actor_id: str,
        request: Optional[Request] = None,
        now: Optional[datetime] = None,
    ) -> TrainingEnrollment:
        """Reject an enrollment; rejecting twice is a no-op, approved ones are final."""
        now = now or utcnow()
        enrollment = self.get_enrollment(enrollment_id)
        if enrollment.status == EnrollmentStatus.REJECTED:
            return enrollment
        if enrollment.status == EnrollmentStatus.APPROVED:
            raise EnrollmentStateError("Cannot reject: enrollment already approved.", enrollment.status.value)

        result = self.db.execute(
            update(TrainingEnrollment)
            .where(TrainingEnrollment.id == enrollment_id)
            .where(TrainingEnrollment.status.in_([EnrollmentStatus.PENDING, EnrollmentStatus.SUBMITTED]))
            .values(status=EnrollmentStatus.REJECTED, decided_at=now, decided_by=actor_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            enrollment = self.db.get(TrainingEnrollment, enrollment_id, populate_existing=True)
            if enrollment.status == EnrollmentStatus.REJECTED:
                return enrollment
            raise EnrollmentStateError("Cannot reject: enrollment already approved.", enrollment.status.value)

        record_audit_event(
            self.db,
            request,
            AuditAction.TRAINING_ENROLLMENT_REJECTED,
            actor_id=actor_id,
            resource_type="training_enrollment",
            resource_id=enrollment_id,
            metadata={"event_id": enrollment.event_id, "user_id": enrollment.user_id},
        )
        self.db.commit()
        logger.info("Training enrollment rejected", extra={"enrollment_id": enrollment_id})
        return self.db.get(TrainingEnrollment, enrollment_id, populate_existing=True)

    def complete_installation(
        self,
        enrollment_id: str,
        actor_id: str,
        request: Optional[Request] = None,
        now: Optional[datetime] = None,
    ) -> tuple[TrainingEnrollment, list[str]]:
        """
        Confirm installation and apply the event grants once.

        Returns:
            (enrollment, product keys granted by this call)

        Raises:
            EnrollmentStateError: enrollment is not approved
            VersionConflictError: a concurrent entitlement write won
        """
        now = now or utcnow()
        enrollment = self.get_enrollment(enrollment_id)
        if enrollment.status != EnrollmentStatus.APPROVED:
            raise EnrollmentStateError(
                "Installation can only be completed for approved enrollments.",
                enrollment.status.value,
            )

        result = self.db.execute(
            update(TrainingEnrollment)
            .where(TrainingEnrollment.id == enrollment_id)
            .where(TrainingEnrollment.entitlements_applied.is_(False))
            .values(
                entitlements_applied=True,
                entitlements_applied_at=now,
                installation_complete=True,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            logger.info("Training grants already applied", extra={"enrollment_id": enrollment_id})
            return self.db.get(TrainingEnrollment, enrollment_id, populate_existing=True), []

        user = self.db.get(User, enrollment.user_id)
        if user is None:
            raise NotFoundError("User", enrollment.user_id)

        grants = grants_from_training(enrollment.event)
        apply_grants(user, grants, now=now, reactivate_disabled=self.settings.grants_reactivate_disabled)
        user.bump_refresh_version()

        record_audit_event(
            self.db,
            request,
            AuditAction.TRAINING_INSTALLATION_COMPLETED,
            actor_id=actor_id,
            resource_type="training_enrollment",
            resource_id=enrollment_id,
            metadata={"user_id": user.id, "applied": [g.product_key for g in grants]},
        )
        commit_entitlement_changes(self.db)

        logger.info(
            "Training grants applied",
            extra={
                "enrollment_id": enrollment_id,
                "user_id": user.id,
                "applied": [g.product_key for g in grants],
            }
        )
        return self.db.get(TrainingEnrollment, enrollment_id, populate_existing=True), [g.product_key for g in grants]
