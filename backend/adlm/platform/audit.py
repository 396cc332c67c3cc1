"""
Audit trail for admin and licensing decisions.

Rows are append-only and join the caller's transaction, so an audit entry
commits or rolls back together with the change it describes. Contact
details and credentials in metadata are masked before they are stored.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from fastapi import Request
from sqlalchemy import Column, Index, JSON, String, Text
from sqlalchemy.orm import Session

from adlm.db_base import Base
from adlm.models.base import UTCDateTime, utcnow

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    # Accounts
    AUTH_SIGNUP = "auth.signup"
    AUTH_PASSWORD_CHANGE = "auth.password_change"
    USER_DISABLED = "user.disabled"
    USER_ENABLED = "user.enabled"

    # Entitlements
    ENTITLEMENT_ADMIN_SET = "entitlement.admin_set"
    ENTITLEMENT_DEVICE_RESET = "entitlement.device_reset"

    # Purchases
    PURCHASE_APPROVED = "purchase.approved"
    PURCHASE_REJECTED = "purchase.rejected"
    PURCHASE_INSTALLATION_COMPLETED = "purchase.installation_completed"

    # Trainings
    TRAINING_ENROLLMENT_APPROVED = "training.enrollment_approved"
    TRAINING_ENROLLMENT_REJECTED = "training.enrollment_rejected"
    TRAINING_INSTALLATION_COMPLETED = "training.installation_completed"


MASK = "[REDACTED]"

SENSITIVE_KEYS = frozenset({
    "email",
    "phone",
    "whatsapp",
    "password",
    "access_token",
    "refresh_token",
    "license_token",
    "bank_account",
})


def mask_value(key: str, value: Any) -> str:
    """Emails keep their domain and phone numbers their last four digits."""
    if key == "email" and isinstance(value, str) and "@" in value:
        return "***@" + value.rsplit("@", 1)[1]
    if key in ("phone", "whatsapp") and value is not None and len(str(value)) >= 4:
        return "***" + str(value)[-4:]
    return MASK


def redact(data: Any) -> Any:
    """Return a copy of metadata with sensitive keys masked at any depth."""
    if isinstance(data, dict):
        return {
            key: mask_value(key.lower(), value) if key.lower() in SENSITIVE_KEYS else redact(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [redact(item) for item in data]
    return data


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    actor_id = Column(String(36), nullable=True, index=True)  # NULL for Paystack decisions
    action = Column(String(100), nullable=False, index=True)
    timestamp = Column(UTCDateTime(), nullable=False, default=utcnow)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    resource_type = Column(String(100), nullable=True)
    resource_id = Column(String(255), nullable=True)
    event_metadata = Column(JSON, nullable=False, default=dict)
    correlation_id = Column(String(36), nullable=True)
    source = Column(String(50), nullable=False, default="api")  # api | paystack

    __table_args__ = (
        Index("ix_audit_logs_resource", "resource_type", "resource_id"),
        Index("ix_audit_logs_action_timestamp", "action", "timestamp"),
    )


@dataclass
class AuditEvent:
    action: AuditAction
    actor_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    correlation_id: Optional[str] = None
    source: str = "api"
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def from_request(cls, request: Optional[Request], action: AuditAction, **fields) -> "AuditEvent":
        """Fill client address, user agent and correlation id from the request."""
        if request is not None:
            forwarded_for = request.headers.get("X-Forwarded-For")
            if forwarded_for:
                fields["ip_address"] = forwarded_for.split(",")[0].strip()
            elif request.client:
                fields["ip_address"] = request.client.host
            fields["user_agent"] = request.headers.get("User-Agent")
            fields["correlation_id"] = getattr(request.state, "correlation_id", None)
        return cls(action=action, **fields)

    def to_row(self) -> AuditLog:
        return AuditLog(
            actor_id=self.actor_id,
            action=AuditAction(self.action).value,
            timestamp=self.timestamp,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            resource_type=self.resource_type,
            resource_id=self.resource_id,
            event_metadata=redact(self.metadata),
            correlation_id=self.correlation_id,
            source=self.source,
        )


def record_audit_event(
    db: Session,
    request: Optional[Request],
    action: AuditAction,
    actor_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
    source: str = "api",
) -> AuditLog:
    """Add an audit row to the session; the caller commits."""
    event = AuditEvent.from_request(
        request,
        action,
        actor_id=actor_id,
        resource_type=resource_type,
        resource_id=resource_id,
        metadata=metadata or {},
        source=source,
    )
    row = event.to_row()
    db.add(row)
    logger.info(
        "Audit event recorded",
        extra={
            "action": row.action,
            "actor_id": actor_id,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "correlation_id": event.correlation_id,
        },
    )
    return row
