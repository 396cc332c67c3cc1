"""
Tests for the audit trail.
"""

from sqlalchemy import select

from adlm.platform.audit import AuditAction, AuditLog, record_audit_event, redact


class TestRedact:

    def test_masks_contact_details_and_credentials(self):
        data = {
            "user_id": "u1",
            "email": "ada@example.com",
            "phone": "08031234567",
            "nested": {"refresh_token": "abc", "applied": ["revit"]},
            "rows": [{"password": "x"}],
        }
        assert redact(data) == {
            "user_id": "u1",
            "email": "***@example.com",
            "phone": "***4567",
            "nested": {"refresh_token": "[REDACTED]", "applied": ["revit"]},
            "rows": [{"password": "[REDACTED]"}],
        }

    def test_leaves_input_untouched(self):
        data = {"email": "ada@example.com"}
        redact(data)
        assert data == {"email": "ada@example.com"}


class TestRecordAuditEvent:

    def test_row_joins_caller_transaction(self, db_session):
        record_audit_event(
            db_session,
            None,
            AuditAction.USER_DISABLED,
            actor_id="admin-1",
            resource_type="user",
            resource_id="u1",
            metadata={"email": "ada@example.com"},
        )
        db_session.rollback()
        assert db_session.execute(select(AuditLog)).scalars().all() == []

        row = record_audit_event(db_session, None, AuditAction.USER_ENABLED, resource_id="u1")
        db_session.commit()
        assert row.action == "user.enabled"
        assert row.source == "api"
        assert row.actor_id is None
