"""
Tests for device seat enforcement and legacy binding migration.
"""

from datetime import timedelta

import pytest

from adlm.entitlements.errors import (
    DeviceNotActiveError,
    EntitlementExpiredError,
    EntitlementInactiveError,
    EntitlementNotFoundError,
    SeatLimitReachedError,
    VersionConflictError,
)
from adlm.entitlements.legacy import migrate_legacy_binding
from adlm.entitlements.seats import DeviceSeatEnforcer
from adlm.entitlements.service import EntitlementService
from adlm.models.base import utcnow
from adlm.models.entitlement import DeviceBinding, Entitlement, EntitlementStatus
from adlm.models.user import User
from adlm.platform.errors import NotFoundError, ValidationError

from conftest import grant, make_user


@pytest.fixture
def enforcer(db_session):
    return DeviceSeatEnforcer(db_session)


# =============================================================================
# Activation
# =============================================================================

class TestActivate:
    """Binding devices to seats."""

    def test_fills_seats_then_refuses(self, db_session, user, enforcer):
        """Two seats take two devices; the third is refused with the active list."""
        ent = grant(db_session, user, "rategen", months=1, seats=2)
        assert ent.seats == 2
        assert ent.expires_at > utcnow() + timedelta(days=27)

        first = enforcer.activate(user, "rategen", "fp-1", name="Office PC")
        second = enforcer.activate(user, "rategen", "fp-2")
        assert first.already_active is False
        assert second.usage.seats_used == 2

        with pytest.raises(SeatLimitReachedError) as exc_info:
            enforcer.activate(user, "rategen", "fp-3")
        error = exc_info.value
        assert error.status_code == 409
        assert error.details["seats"] == 2
        assert error.details["seats_used"] == 2
        assert {d["fingerprint"] for d in error.details["devices"]} == {"fp-1", "fp-2"}

    def test_revoked_bindings_do_not_count(self, db_session, user, enforcer):
        ent = grant(db_session, user, "rategen", seats=2)
        now = utcnow()
        ent.devices.append(DeviceBinding(fingerprint="old", bound_at=now, last_seen_at=now, revoked_at=now))
        ent.devices.append(DeviceBinding(fingerprint="fp-1", bound_at=now, last_seen_at=now))
        ent.touch()
        db_session.commit()

        result = enforcer.activate(user, "rategen", "fp-new")
        assert result.usage.seats_used == 2
        assert len(ent.devices) == 3

    def test_same_device_is_idempotent(self, db_session, user, enforcer):
        grant(db_session, user, "rategen", seats=1)
        enforcer.activate(user, "rategen", "fp-1")
        again = enforcer.activate(user, "rategen", "fp-1", name="Renamed")

        assert again.already_active is True
        assert again.usage.seats_used == 1
        assert user.entitlements["rategen"].active_devices[0].name == "Renamed"

    def test_product_key_is_case_insensitive(self, db_session, user, enforcer):
        grant(db_session, user, "rategen")
        assert enforcer.activate(user, " RateGen ", "fp-1").usage.product_key == "rategen"

    def test_missing_entitlement(self, user, enforcer):
        with pytest.raises(EntitlementNotFoundError):
            enforcer.activate(user, "revit", "fp-1")

    def test_expired_entitlement(self, db_session, user, enforcer):
        ent = grant(db_session, user, "rategen")
        ent.expires_at = utcnow() - timedelta(days=1)
        db_session.commit()
        with pytest.raises(EntitlementExpiredError):
            enforcer.activate(user, "rategen", "fp-1")

    @pytest.mark.parametrize("status", [EntitlementStatus.INACTIVE, EntitlementStatus.DISABLED])
    def test_non_active_entitlement(self, db_session, user, enforcer, status):
        ent = grant(db_session, user, "rategen")
        ent.status = status
        db_session.commit()
        with pytest.raises(EntitlementInactiveError):
            enforcer.activate(user, "rategen", "fp-1")

    def test_blank_fingerprint(self, db_session, user, enforcer):
        grant(db_session, user, "rategen")
        with pytest.raises(ValidationError):
            enforcer.activate(user, "rategen", "   ")

    def test_stale_base_version(self, db_session, user, enforcer):
        ent = grant(db_session, user, "rategen", seats=2)
        with pytest.raises(VersionConflictError) as exc_info:
            enforcer.activate(user, "rategen", "fp-1", base_version=ent.version - 1)
        assert exc_info.value.details["current_version"] == ent.version

    def test_matching_base_version(self, db_session, user, enforcer):
        ent = grant(db_session, user, "rategen")
        result = enforcer.activate(user, "rategen", "fp-1", base_version=ent.version)
        assert result.usage.version == ent.version


class TestConcurrentActivation:
    """Two writers racing for the last seat."""

    def test_stale_session_loses(self, database, db_session, user):
        grant(db_session, user, "rategen", seats=1)

        first = database.session()
        second = database.session()
        try:
            user_a = first.get(User, user.id)
            user_b = second.get(User, user.id)
            assert user_a.entitlements["rategen"].seats_used == 0
            assert user_b.entitlements["rategen"].seats_used == 0

            DeviceSeatEnforcer(first).activate(user_a, "rategen", "fp-a")

            with pytest.raises(VersionConflictError):
                DeviceSeatEnforcer(second).activate(user_b, "rategen", "fp-b")
        finally:
            first.close()
            second.close()

        check = database.session()
        try:
            ent = check.get(User, user.id).entitlements["rategen"]
            assert [d.fingerprint for d in ent.active_devices] == ["fp-a"]
        finally:
            check.close()


class TestSeatInvariant:
    """Active bindings never exceed seats across any mix of operations."""

    STEPS = [
        ("activate", "fp-a"), ("activate", "fp-b"), ("activate", "fp-c"),
        ("deactivate", "fp-a"), ("activate", "fp-c"), ("activate", "fp-a"),
        ("activate", "fp-b"), ("deactivate", "fp-b"), ("deactivate", "fp-b"),
        ("activate", "fp-a"), ("activate", "fp-b"), ("deactivate", "fp-c"),
        ("activate", "fp-c"), ("deactivate", "fp-a"), ("activate", "fp-a"),
    ]

    def test_mixed_sequence_stays_within_seats(self, db_session, user, enforcer):
        grant(db_session, user, "rategen", seats=2)
        active = set()

        for action, fingerprint in self.STEPS:
            if action == "activate":
                try:
                    usage = enforcer.activate(user, "rategen", fingerprint).usage
                    active.add(fingerprint)
                except SeatLimitReachedError:
                    assert fingerprint not in active
                    assert len(active) == 2
                    usage = None
            else:
                try:
                    usage = enforcer.deactivate(user, "rategen", fingerprint)
                    active.discard(fingerprint)
                except DeviceNotActiveError:
                    assert fingerprint not in active
                    usage = None

            ent = user.entitlements["rategen"]
            bound = {d.fingerprint for d in ent.devices if d.revoked_at is None}
            assert bound == active
            assert len(bound) <= ent.seats
            if usage is not None:
                assert usage.seats_used == len(bound)
                assert usage.seats_used <= usage.seats

        assert active == {"fp-c", "fp-a"}


# =============================================================================
# Deactivation and reset
# =============================================================================

class TestDeactivate:

    def test_frees_the_seat_and_keeps_history(self, db_session, user, enforcer):
        grant(db_session, user, "rategen", seats=1)
        enforcer.activate(user, "rategen", "fp-1")

        usage = enforcer.deactivate(user, "rategen", "fp-1")
        assert usage.seats_used == 0
        assert usage.seats == 1
        ent = user.entitlements["rategen"]
        assert len(ent.devices) == 1
        assert ent.devices[0].revoked_at is not None

        assert enforcer.activate(user, "rategen", "fp-2").usage.seats_used == 1

    def test_unknown_device(self, db_session, user, enforcer):
        grant(db_session, user, "rategen")
        with pytest.raises(DeviceNotActiveError):
            enforcer.deactivate(user, "rategen", "nope")

    def test_missing_entitlement_is_not_found(self, user, enforcer):
        with pytest.raises(NotFoundError) as exc_info:
            enforcer.deactivate(user, "revit", "fp-1")
        assert exc_info.value.message == "Entitlement not found"


class TestAdminResetDevice:

    def test_revokes_everything_and_bumps_refresh_version(self, db_session, user, enforcer):
        grant(db_session, user, "rategen", seats=3)
        enforcer.activate(user, "rategen", "fp-1")
        enforcer.activate(user, "rategen", "fp-2")
        before = user.refresh_version

        ent = enforcer.admin_reset_device(user, "rategen")
        db_session.commit()

        assert ent.seats_used == 0
        assert ent.seats == 3
        assert ent.status == EntitlementStatus.ACTIVE
        assert len(ent.devices) == 2
        assert user.refresh_version == before + 1

    def test_missing_entitlement_is_not_found(self, user, enforcer):
        with pytest.raises(NotFoundError) as exc_info:
            enforcer.admin_reset_device(user, "revit")
        assert exc_info.value.status_code == 404


# =============================================================================
# Legacy bindings
# =============================================================================

class TestLegacyMigration:

    def _legacy(self, db_session, user) -> Entitlement:
        now = utcnow()
        ent = Entitlement(
            product_key="revit",
            status=EntitlementStatus.ACTIVE,
            expires_at=now + timedelta(days=30),
            seats=0,
            version=1,
            legacy_device_fingerprint="legacy-fp",
            legacy_device_bound_at=now - timedelta(days=3),
        )
        user.entitlements["revit"] = ent
        db_session.commit()
        return ent

    def test_migration_is_idempotent(self, db_session, user):
        ent = self._legacy(db_session, user)
        assert migrate_legacy_binding(ent) is True
        assert migrate_legacy_binding(ent) is False
        assert ent.seats == 1
        assert ent.legacy_device_fingerprint is None
        assert [d.fingerprint for d in ent.devices] == ["legacy-fp"]

    def test_legacy_device_occupies_its_seat(self, db_session, user, enforcer):
        self._legacy(db_session, user)
        with pytest.raises(SeatLimitReachedError):
            enforcer.activate(user, "revit", "new-fp")
        db_session.rollback()

    def test_legacy_device_reactivates(self, db_session, user, enforcer):
        self._legacy(db_session, user)
        assert enforcer.activate(user, "revit", "legacy-fp").already_active is True

    def test_reads_persist_the_migration(self, database, db_session, user):
        self._legacy(db_session, user)
        EntitlementService(db_session).list_raw(user)

        check = database.session()
        try:
            ent = check.get(User, user.id).entitlements["revit"]
            assert ent.legacy_device_fingerprint is None
            assert len(ent.devices) == 1
        finally:
            check.close()


class TestSeatsPerUser:

    def test_entitlements_are_isolated_between_users(self, db_session, user, enforcer):
        other = make_user(db_session, email="other@example.com")
        grant(db_session, user, "rategen", seats=1)
        grant(db_session, other, "rategen", seats=1)

        enforcer.activate(user, "rategen", "fp-shared")
        assert enforcer.activate(other, "rategen", "fp-shared").already_active is False
