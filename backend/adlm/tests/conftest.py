"""
Shared fixtures.

Every test gets its own in-memory SQLite database. StaticPool keeps a single
connection so the TestClient thread and the test body see the same data.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from adlm.auth.passwords import hash_password
from adlm.auth.tokens import TokenConfig, TokenService
from adlm.config.settings import Settings
from adlm.database.session import Database
from adlm.entitlements.applier import apply_grant
from adlm.entitlements.grants import Grant
from adlm.main import create_app
from adlm.models.catalog import Product
from adlm.models.user import User, UserRole

TEST_PASSWORD = "correct-horse-1"
NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _test_env(monkeypatch):
    """Fast bcrypt and no Redis."""
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
    monkeypatch.setenv("BCRYPT_ROUNDS", "4")


@pytest.fixture
def settings():
    return Settings(jwt_secret="test-secret-key-for-tokens", database_url="sqlite://")


@pytest.fixture
def database():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    db = Database(engine=engine)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def db_session(database):
    session = database.session()
    yield session
    session.close()


@pytest.fixture
def app(settings, database):
    return create_app(settings=settings, database=database)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def token_service(settings):
    return TokenService(TokenConfig.from_settings(settings))


def make_user(
    session,
    email: str = "user@example.com",
    role: str = UserRole.USER.value,
    password: str = TEST_PASSWORD,
    username: Optional[str] = None,
) -> User:
    user = User(
        email=email,
        username=username,
        password_hash=hash_password(password),
        first_name="Ada",
        last_name="Obi",
        role=role,
    )
    session.add(user)
    session.commit()
    return user


def grant(session, user: User, product_key: str, months: int = 1, seats: int = 1, now: Optional[datetime] = None):
    entitlement = apply_grant(user, Grant(product_key=product_key, months=months, seats=seats), now=now)
    session.commit()
    return entitlement


def make_product(session, key: str, **fields) -> Product:
    defaults = dict(
        name=key.title(),
        billing_interval="monthly",
        price_monthly_ngn=10000,
        price_yearly_ngn=100000,
        install_fee_ngn=5000,
    )
    defaults.update(fields)
    product = Product(key=key, **defaults)
    session.add(product)
    session.commit()
    return product


@pytest.fixture
def user(db_session):
    return make_user(db_session)


@pytest.fixture
def admin(db_session):
    return make_user(db_session, email="admin@example.com", role=UserRole.ADMIN.value)


@pytest.fixture
def auth_headers(token_service):
    def _headers(u: User) -> dict:
        return {"Authorization": f"Bearer {token_service.issue_access_token(u).token}"}
    return _headers


def days_ago(days: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=days)
