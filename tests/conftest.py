"""
Root test configuration and fixtures.

The environment is populated before any ``licensing`` module that reads it
is imported: ``licensing.database`` needs DATABASE_URL and
``licensing.main`` builds the app (and so the settings) at import time.

Each test gets its own in-memory SQLite database so services are free to
commit and roll back.
"""

import os
import uuid
from dataclasses import replace
from datetime import timedelta
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from licensing.utils.crypto import generate_rsa_keypair

TEST_KEYS = generate_rsa_keypair()
CUSTOMER_JWT_SECRET = "test-customer-secret-with-enough-length-for-hs256"
ADMIN_TOKEN = "test-admin-token"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_PRIVATE_KEY"] = TEST_KEYS.private_pem
os.environ["CUSTOMER_JWT_SECRET"] = CUSTOMER_JWT_SECRET
os.environ["ADMIN_TOKEN"] = ADMIN_TOKEN
os.environ["STRIPE_WEBHOOK_SECRET"] = STRIPE_WEBHOOK_SECRET
os.environ["LICENSE_RATE_LIMIT"] = "1000"
for name in ("JWT_PUBLIC_KEY", "STRIPE_SECRET_KEY", "FOUNDERS_SALE_START_ISO", "FOUNDERS_SALE_END_ISO"):
    os.environ.pop(name, None)

from licensing.auth import issue_customer_token  # noqa: E402
from licensing.config import load_settings  # noqa: E402
from licensing.models import Base, Customer, Entitlement  # noqa: E402
from licensing.services.tokens import TokenService  # noqa: E402
from licensing.utils.timeutil import utcnow  # noqa: E402


@pytest.fixture(scope="session")
def settings():
    return load_settings(os.environ)


@pytest.fixture
def tokens(settings):
    return TokenService(settings)


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_customer(db_session):
    def _make(email: str | None = None, stripe_customer_id: str | None = None) -> Customer:
        customer = Customer(
            email=email or f"user-{uuid.uuid4().hex[:8]}@example.com",
            stripe_customer_id=stripe_customer_id,
        )
        db_session.add(customer)
        db_session.commit()
        return customer

    return _make


@pytest.fixture
def make_entitlement(db_session):
    def _make(customer: Customer | None, **overrides) -> Entitlement:
        values = {
            "customer_id": customer.id if customer else None,
            "tier": "pro",
            "status": "active",
            "is_lifetime": False,
            "max_devices": 1,
            "source": "purchase",
            "metadata_": {},
        }
        values.update(overrides)
        entitlement = Entitlement(**values)
        db_session.add(entitlement)
        db_session.commit()
        return entitlement

    return _make


@pytest.fixture
def customer(make_customer):
    return make_customer("buyer@example.com")


@pytest.fixture
def entitlement(make_entitlement, customer):
    return make_entitlement(customer)


@pytest.fixture
def lifetime_entitlement(make_entitlement, customer):
    return make_entitlement(customer, is_lifetime=True, metadata_={"isFoundersLifetime": True})


@pytest.fixture
def trial_entitlement(make_entitlement, customer):
    return make_entitlement(customer, source="trial", expires_at=utcnow() + timedelta(days=14))


@pytest.fixture
def app(settings, session_factory):
    from licensing.database import get_db
    from licensing.main import create_app

    application = create_app(settings)

    def _get_test_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    application.dependency_overrides[get_db] = _get_test_db
    return application


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    def _headers(customer_id: int) -> dict:
        return {"Authorization": f"Bearer {issue_customer_token(customer_id, CUSTOMER_JWT_SECRET)}"}

    return _headers


@pytest.fixture
def admin_headers():
    return {"x-admin-token": ADMIN_TOKEN}


@pytest.fixture
def settings_with(settings):
    def _with(**changes):
        return replace(settings, **changes)

    return _with
