"""
Physical training events and enrollments.

An event has a capacity of approved seats and a list of entitlement grants
(the trained software plus any bundled course). Enrollment lifecycle:

    pending -> submitted (payment proof) -> approved | rejected

Approval reserves capacity with a conditional UPDATE on approved_count.
Once the installation at the training is confirmed the event grants are
applied to the enrolled user exactly once (entitlements_applied guard).
"""

import enum

from sqlalchemy import (
    Boolean,
    Column,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from adlm.db_base import Base
from adlm.models.base import TimestampMixin, UTCDateTime, generate_uuid

DEFAULT_TRAINING_CAPACITY = 14


class TrainingEvent(Base, TimestampMixin):
    """Scheduled in-person training."""

    __tablename__ = "training_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    title = Column(String(255), nullable=False)
    location = Column(String(255), nullable=True)
    starts_at = Column(UTCDateTime(), nullable=True)

    price_ngn = Column(Numeric(14, 2), nullable=False, default=0)

    capacity_approved = Column(
        Integer,
        nullable=False,
        default=DEFAULT_TRAINING_CAPACITY,
        comment="Maximum approved enrollments"
    )

    approved_count = Column(Integer, nullable=False, default=0)

    open = Column(Boolean, nullable=False, default=True, comment="Accepting enrollments")

    grants = relationship(
        "TrainingGrant",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="TrainingGrant.position",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<TrainingEvent(id={self.id}, title={self.title})>"

    @property
    def seats_left(self) -> int:
        return max(0, (self.capacity_approved or 0) - (self.approved_count or 0))


class TrainingGrant(Base):
    """Entitlement granted to every attendee once installation completes."""

    __tablename__ = "training_grants"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    event_id = Column(
        String(36),
        ForeignKey("training_events.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    position = Column(Integer, nullable=False, default=0)

    product_key = Column(String(100), nullable=False)
    months = Column(Integer, nullable=False, default=1)
    seats = Column(Integer, nullable=False, default=1)
    license_type = Column(String(20), nullable=False, default="personal")
    organization_name = Column(String(255), nullable=True)

    event = relationship("TrainingEvent", back_populates="grants")


class EnrollmentStatus(str, enum.Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


class TrainingEnrollment(Base, TimestampMixin):
    """A user's seat request for a training event."""

    __tablename__ = "training_enrollments"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    event_id = Column(
        String(36),
        ForeignKey("training_events.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    email = Column(String(255), nullable=False)

    status = Column(
        SAEnum(EnrollmentStatus, name="enrollment_status", create_constraint=True),
        nullable=False,
        default=EnrollmentStatus.PENDING,
        index=True,
    )

    payer_name = Column(String(255), nullable=True)
    bank_name = Column(String(255), nullable=True)
    payment_reference = Column(String(100), nullable=True)
    payment_note = Column(Text, nullable=True)
    payment_submitted_at = Column(UTCDateTime(), nullable=True)

    decided_at = Column(UTCDateTime(), nullable=True)
    decided_by = Column(String(36), nullable=True)

    installation_complete = Column(Boolean, nullable=False, default=False)
    entitlements_applied = Column(Boolean, nullable=False, default=False)
    entitlements_applied_at = Column(UTCDateTime(), nullable=True)

    event = relationship("TrainingEvent", lazy="joined")

    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_training_enrollments_event_user"),
    )

    def __repr__(self) -> str:
        return (
            f"<TrainingEnrollment(id={self.id}, event_id={self.event_id}, "
            f"status={self.status.value})>"
        )
