"""
Tests for training events, enrollments, capacity and installation grants.
"""

import pytest

from adlm.models.training import EnrollmentStatus, TrainingEnrollment
from adlm.models.user import User

from conftest import make_user


@pytest.fixture
def admin_headers(admin, auth_headers):
    return auth_headers(admin)


@pytest.fixture
def event(client, admin_headers) -> dict:
    response = client.post(
        "/admin/ptrainings/events",
        json={
            "title": "Revit for Quantity Surveyors",
            "location": "Lagos",
            "price_ngn": 150000,
            "capacity_approved": 2,
            "grants": [
                {"product_key": "Revit", "months": 6},
                {"product_key": "rategen", "months": 3, "seats": 2},
            ],
        },
        headers=admin_headers,
    )
    assert response.status_code == 201
    return response.json()["event"]


def enroll(client, headers, event_id) -> dict:
    response = client.post(f"/ptrainings/events/{event_id}/enroll", headers=headers)
    assert response.status_code == 201
    return response.json()["enrollment"]


# =============================================================================
# Events
# =============================================================================

class TestEvents:

    def test_created_event_is_listed_publicly(self, client, event):
        events = client.get("/ptrainings/events").json()["events"]
        assert [e["id"] for e in events] == [event["id"]]
        assert event["seats_left"] == 2
        assert [g["product_key"] for g in event["grants"]] == ["revit", "rategen"]

    def test_default_capacity(self, client, admin_headers):
        response = client.post("/admin/ptrainings/events", json={"title": "BIM Basics"}, headers=admin_headers)
        assert response.json()["event"]["capacity_approved"] == 14

    def test_closed_event_is_hidden_and_refuses_enrollment(self, client, event, user, auth_headers, admin_headers):
        client.patch(f"/admin/ptrainings/events/{event['id']}", json={"open": False}, headers=admin_headers)
        assert client.get("/ptrainings/events").json()["events"] == []

        response = client.post(f"/ptrainings/events/{event['id']}/enroll", headers=auth_headers(user))
        assert response.status_code == 400

    def test_invalid_grant_rows(self, client, admin_headers):
        response = client.post(
            "/admin/ptrainings/events",
            json={"title": "Bad", "grants": [{"product_key": "revit", "months": 0}]},
            headers=admin_headers,
        )
        assert response.status_code == 422

    @pytest.mark.parametrize("row", [{"months": 5000}, {"months": 6, "seats": 100000}])
    def test_grant_rows_are_capped(self, client, admin_headers, row):
        response = client.post(
            "/admin/ptrainings/events",
            json={"title": "Too long", "grants": [{"product_key": "revit", **row}]},
            headers=admin_headers,
        )
        assert response.status_code == 422


# =============================================================================
# Enrollment lifecycle
# =============================================================================

class TestEnrollment:

    def test_enroll_and_submit_payment(self, client, event, user, auth_headers):
        headers = auth_headers(user)
        enrollment = enroll(client, headers, event["id"])
        assert enrollment["status"] == "pending"

        response = client.post(
            f"/me/ptrainings/enrollments/{enrollment['id']}/payment",
            json={"payer_name": "Ada Obi", "bank_name": "GTBank", "reference": "TRF-001"},
            headers=headers,
        )
        assert response.status_code == 200
        assert response.json()["enrollment"]["status"] == "submitted"
        assert response.json()["enrollment"]["payment"]["reference"] == "TRF-001"

        mine = client.get("/me/ptrainings", headers=headers).json()["enrollments"]
        assert [e["id"] for e in mine] == [enrollment["id"]]

    def test_duplicate_enrollment(self, client, event, user, auth_headers):
        enroll(client, auth_headers(user), event["id"])
        response = client.post(f"/ptrainings/events/{event['id']}/enroll", headers=auth_headers(user))
        assert response.status_code == 409

    def test_cannot_pay_for_someone_else(self, client, db_session, event, user, auth_headers):
        other = make_user(db_session, email="other@example.com")
        enrollment = enroll(client, auth_headers(user), event["id"])
        response = client.post(
            f"/me/ptrainings/enrollments/{enrollment['id']}/payment",
            json={"payer_name": "Someone"},
            headers=auth_headers(other),
        )
        assert response.status_code == 403


class TestApproval:
    """Approval reserves a seat; capacity is never exceeded."""

    def test_capacity_is_enforced(self, client, db_session, event, auth_headers, admin_headers):
        enrollments = [
            enroll(client, auth_headers(make_user(db_session, email=f"u{i}@example.com")), event["id"])
            for i in range(3)
        ]

        for enrollment in enrollments[:2]:
            response = client.patch(
                f"/admin/ptrainings/enrollments/{enrollment['id']}/approve", headers=admin_headers,
            )
            assert response.status_code == 200
        assert response.json()["seats_left"] == 0

        full = client.patch(f"/admin/ptrainings/enrollments/{enrollments[2]['id']}/approve", headers=admin_headers)
        assert full.status_code == 409
        error = full.json()["error"]
        assert error["code"] == "TRAINING_FULL"
        assert error["details"] == {"capacity": 2, "approved_count": 2, "seats_left": 0}

        db_session.expire_all()
        assert db_session.get(TrainingEnrollment, enrollments[2]["id"]).status == EnrollmentStatus.PENDING

    def test_approve_twice_reserves_one_seat(self, client, event, user, auth_headers, admin_headers):
        enrollment = enroll(client, auth_headers(user), event["id"])
        first = client.patch(f"/admin/ptrainings/enrollments/{enrollment['id']}/approve", headers=admin_headers)
        second = client.patch(f"/admin/ptrainings/enrollments/{enrollment['id']}/approve", headers=admin_headers)
        assert first.json()["approved_count"] == 1
        assert second.status_code == 200
        assert second.json()["approved_count"] == 1

    def test_approval_grants_nothing_yet(self, client, db_session, event, user, auth_headers, admin_headers):
        enrollment = enroll(client, auth_headers(user), event["id"])
        client.patch(f"/admin/ptrainings/enrollments/{enrollment['id']}/approve", headers=admin_headers)
        db_session.expire_all()
        assert dict(user.entitlements) == {}

    def test_reject_after_approve_is_refused(self, client, event, user, auth_headers, admin_headers):
        enrollment = enroll(client, auth_headers(user), event["id"])
        client.patch(f"/admin/ptrainings/enrollments/{enrollment['id']}/approve", headers=admin_headers)

        response = client.patch(f"/admin/ptrainings/enrollments/{enrollment['id']}/reject", headers=admin_headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ENROLLMENT_STATE_INVALID"

    def test_rejected_cannot_be_approved(self, client, event, user, auth_headers, admin_headers):
        enrollment = enroll(client, auth_headers(user), event["id"])
        assert client.patch(
            f"/admin/ptrainings/enrollments/{enrollment['id']}/reject", headers=admin_headers,
        ).json()["enrollment"]["status"] == "rejected"

        response = client.patch(f"/admin/ptrainings/enrollments/{enrollment['id']}/approve", headers=admin_headers)
        assert response.status_code == 400

    def test_capacity_cannot_drop_below_approved(self, client, db_session, event, auth_headers, admin_headers):
        for i in range(2):
            enrollment = enroll(client, auth_headers(make_user(db_session, email=f"c{i}@example.com")), event["id"])
            client.patch(f"/admin/ptrainings/enrollments/{enrollment['id']}/approve", headers=admin_headers)

        response = client.patch(
            f"/admin/ptrainings/events/{event['id']}", json={"capacity_approved": 1}, headers=admin_headers,
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"approved_count": 2}

        raised = client.patch(
            f"/admin/ptrainings/events/{event['id']}", json={"capacity_approved": 3}, headers=admin_headers,
        )
        assert raised.json()["event"]["seats_left"] == 1


class TestInstallationComplete:
    """Training grants are applied once, at installation-complete."""

    def test_grants_applied_once(self, client, db_session, event, user, auth_headers, admin_headers):
        enrollment = enroll(client, auth_headers(user), event["id"])
        client.patch(f"/admin/ptrainings/enrollments/{enrollment['id']}/approve", headers=admin_headers)

        done = client.patch(
            f"/admin/ptrainings/enrollments/{enrollment['id']}/installation-complete", headers=admin_headers,
        )
        assert done.status_code == 200
        assert done.json()["grants_applied"] == ["revit", "rategen"]
        assert done.json()["enrollment"]["entitlements_applied"] is True

        db_session.expire_all()
        fresh = db_session.get(User, user.id)
        assert set(fresh.entitlements) == {"revit", "rategen"}
        assert fresh.entitlements["rategen"].seats == 2
        assert fresh.refresh_version == 2
        expires_at = fresh.entitlements["revit"].expires_at

        again = client.patch(
            f"/admin/ptrainings/enrollments/{enrollment['id']}/installation-complete", headers=admin_headers,
        )
        assert again.status_code == 200
        assert again.json()["grants_applied"] == []

        db_session.expire_all()
        assert db_session.get(User, user.id).entitlements["revit"].expires_at == expires_at

    def test_requires_approval(self, client, event, user, auth_headers, admin_headers):
        enrollment = enroll(client, auth_headers(user), event["id"])
        response = client.patch(
            f"/admin/ptrainings/enrollments/{enrollment['id']}/installation-complete", headers=admin_headers,
        )
        assert response.status_code == 400

    def test_admin_lists_enrollments_by_status(self, client, event, user, auth_headers, admin_headers):
        enrollment = enroll(client, auth_headers(user), event["id"])
        client.patch(f"/admin/ptrainings/enrollments/{enrollment['id']}/approve", headers=admin_headers)

        approved = client.get(
            "/admin/ptrainings/enrollments",
            params={"event_id": event["id"], "status": "approved"},
            headers=admin_headers,
        ).json()["enrollments"]
        assert [e["id"] for e in approved] == [enrollment["id"]]
