"""
Tests for passwords, tokens and the authentication routes.
"""

from datetime import timedelta

import pytest

from adlm.auth.passwords import hash_password, password_problem, verify_password
from adlm.auth.tokens import TokenExpiredError, TokenValidationError
from adlm.models.base import utcnow
from adlm.models.user import User

from conftest import TEST_PASSWORD, grant, make_user


# =============================================================================
# Passwords
# =============================================================================

class TestPasswords:

    def test_hash_round_trip(self):
        hashed = hash_password("s3cret-pass")
        assert hashed.startswith("bcrypt:")
        assert verify_password("s3cret-pass", hashed) is True
        assert verify_password("wrong-pass", hashed) is False

    def test_unknown_scheme_never_matches(self):
        assert verify_password("anything", "plain:anything") is False
        assert verify_password("anything", "") is False

    @pytest.mark.parametrize("password,ok", [
        ("short", False),
        ("long-enough", True),
        ("x" * 73, False),
    ])
    def test_password_rules(self, password, ok):
        assert (password_problem(password) is None) is ok


# =============================================================================
# Tokens
# =============================================================================

class TestTokenService:

    def test_type_is_enforced(self, token_service, user):
        refresh = token_service.issue_refresh_token(user).token
        with pytest.raises(TokenValidationError):
            token_service.validate(refresh, "access")
        assert token_service.validate(refresh, "refresh").v == user.refresh_version

    def test_expired(self, token_service, user):
        issued = token_service.issue_access_token(user, now=utcnow() - timedelta(hours=1))
        with pytest.raises(TokenExpiredError):
            token_service.validate(issued.token, "access")

    def test_tampered(self, token_service, user):
        token = token_service.issue_access_token(user).token
        with pytest.raises(TokenValidationError):
            token_service.validate(token[:-4] + "abcd", "access")


# =============================================================================
# Routes
# =============================================================================

class TestSignupAndLogin:

    def test_signup_returns_tokens_and_no_entitlements(self, client, database):
        response = client.post(
            "/auth/signup",
            json={"email": "New@Example.com", "password": "long-enough", "first_name": "Ngozi"},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["user"]["email"] == "new@example.com"
        assert body["token_type"] == "bearer"
        assert body["access_token"] and body["refresh_token"]

        session = database.session()
        try:
            user = session.get(User, body["user"]["id"])
            assert dict(user.entitlements) == {}
        finally:
            session.close()

    def test_signup_duplicate_email(self, client, user):
        response = client.post("/auth/signup", json={"email": user.email, "password": "long-enough"})
        assert response.status_code == 409

    def test_signup_weak_password(self, client):
        response = client.post("/auth/signup", json={"email": "a@example.com", "password": "short"})
        assert response.status_code == 400
        assert response.json()["error"]["details"]["field"] == "password"

    def test_login_with_email_or_username(self, client, db_session):
        make_user(db_session, email="kemi@example.com", username="Kemi")
        by_email = client.post("/auth/login", json={"identifier": "KEMI@example.com", "password": TEST_PASSWORD})
        by_username = client.post("/auth/login", json={"identifier": "kemi", "password": TEST_PASSWORD})
        assert by_email.status_code == 200
        assert by_username.status_code == 200
        assert "license_token" not in by_email.json()

    def test_login_wrong_password(self, client, user):
        response = client.post("/auth/login", json={"identifier": user.email, "password": "nope-nope"})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid credentials"

    def test_login_disabled_account(self, client, db_session, user):
        user.disabled = True
        db_session.commit()
        response = client.post("/auth/login", json={"identifier": user.email, "password": TEST_PASSWORD})
        assert response.status_code == 403


class TestPluginLogin:
    """Desktop plugin login activates a seat and returns a license token."""

    def test_activates_device_and_issues_license(self, client, db_session, user):
        grant(db_session, user, "rategen", seats=1)
        response = client.post(
            "/auth/login",
            json={
                "identifier": user.email,
                "password": TEST_PASSWORD,
                "product_key": "rategen",
                "device_fingerprint": "fp-1",
            },
        )
        assert response.status_code == 200
        body = response.json()
        assert body["activation"]["seats_used"] == 1
        assert body["license_token"]
        assert body["license_expires_at"]

    def test_requires_fingerprint(self, client, db_session, user):
        grant(db_session, user, "rategen")
        response = client.post(
            "/auth/login",
            json={"identifier": user.email, "password": TEST_PASSWORD, "product_key": "rategen"},
        )
        assert response.status_code == 400

    def test_seat_limit_blocks_login(self, client, db_session, user):
        grant(db_session, user, "rategen", seats=1)
        payload = {"identifier": user.email, "password": TEST_PASSWORD, "product_key": "rategen"}
        client.post("/auth/login", json={**payload, "device_fingerprint": "fp-1"})
        response = client.post("/auth/login", json={**payload, "device_fingerprint": "fp-2"})
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "SEAT_LIMIT_REACHED"


class TestRefresh:

    def _login(self, client, user) -> dict:
        return client.post("/auth/login", json={"identifier": user.email, "password": TEST_PASSWORD}).json()

    def test_refresh_rotates_tokens(self, client, user):
        tokens = self._login(client, user)
        response = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert response.status_code == 200
        assert response.json()["access_token"]

    def test_refresh_dies_after_version_bump(self, client, db_session, user):
        tokens = self._login(client, user)
        user.bump_refresh_version()
        db_session.commit()

        response = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert response.status_code == 401
        assert response.json()["error"]["details"]["reason"] == "token_revoked"

    def test_access_token_cannot_refresh(self, client, user):
        tokens = self._login(client, user)
        response = client.post("/auth/refresh", json={"refresh_token": tokens["access_token"]})
        assert response.status_code == 401
        assert response.json()["error"]["details"]["reason"] == "token_invalid"

    def test_password_change_revokes_old_refresh_tokens(self, client, user, auth_headers):
        tokens = self._login(client, user)
        response = client.post(
            "/auth/password",
            json={"current_password": TEST_PASSWORD, "new_password": "brand-new-pass"},
            headers=auth_headers(user),
        )
        assert response.status_code == 200
        new_refresh = response.json()["refresh_token"]

        assert client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]}).status_code == 401
        assert client.post("/auth/refresh", json={"refresh_token": new_refresh}).status_code == 200

    def test_logout(self, client):
        assert client.post("/auth/logout").status_code == 204
