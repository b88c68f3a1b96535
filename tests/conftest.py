"""
Pytest configuration.

Environment is set BEFORE any veridie import so config constants pick up
test values; every test gets a fresh in-memory SQLite database.
"""

import os

from cryptography.fernet import Fernet

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["TOKEN_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["CALENDLY_CLIENT_ID"] = "test-client-id"
os.environ["CALENDLY_CLIENT_SECRET"] = "test-client-secret"
os.environ["CALENDLY_REDIRECT_URI"] = "http://testserver/calendly/callback"
os.environ["CALENDLY_WEBHOOK_SECRET"] = "calendly-signing-key"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_veridie"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_veridie"
os.environ.pop("REDIS_URL", None)

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from veridie import rate_limiter
from veridie.config import CalendlyOAuthConfig
from veridie.database import Base, get_db
from veridie.domain.scheduling.credential_store import CredentialStore
from veridie.main import app
from veridie.models import Mentor, Profile, Service
from veridie.security_utils import TokenCipher
from veridie.services.calendly_service import CalendlyService, TokenGrant

MENTOR_CALENDLY_URI = "https://api.calendly.com/users/MENTOR1"
EVENT_TYPE_URI = "https://api.calendly.com/event_types/ET1"


@pytest.fixture
def engine():
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
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_rate_limits():
    rate_limiter.memory_cache.clear()
    yield
    rate_limiter.memory_cache.clear()


@pytest.fixture
def cipher():
    return TokenCipher(os.environ["TOKEN_ENCRYPTION_KEY"])


@pytest.fixture
def store(db, cipher):
    return CredentialStore(db, cipher)


@pytest.fixture
def oauth_config():
    return CalendlyOAuthConfig(
        client_id="test-client-id",
        client_secret="test-client-secret",
        redirect_uri="http://testserver/calendly/callback",
    )


@pytest.fixture
def calendly(oauth_config):
    return CalendlyService(oauth_config)


@pytest.fixture
def mentor(db):
    mentor = Mentor(
        name="Dana Mentor",
        email="dana@veridie.test",
        timezone="UTC",
        stripe_connect_account_id="acct_mentor1",
        stripe_details_submitted=True,
        stripe_charges_enabled=True,
        stripe_payouts_enabled=True,
    )
    db.add(mentor)
    db.commit()
    db.refresh(mentor)
    return mentor


@pytest.fixture
def service(db, mentor):
    service = Service(
        mentor_id=mentor.id,
        name="Essay review",
        price_cents=10000,
        calendly_event_type_uri=EVENT_TYPE_URI,
        calendly_scheduling_url="https://calendly.com/dana/essay-review",
    )
    db.add(service)
    db.commit()
    db.refresh(service)
    return service


@pytest.fixture
def profile(db):
    profile = Profile(full_name="Casey Client", email="casey@example.com")
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return profile


def make_grant(
    access_token="access-1",
    refresh_token="refresh-1",
    expires_in=timedelta(hours=2),
):
    return TokenGrant(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=datetime.now(timezone.utc) + expires_in,
    )


@pytest.fixture
def connect_mentor(store, mentor):
    """Store a credential for the mentor; returns the saved snapshot"""

    def _connect(**grant_kwargs):
        return store.save_new_credential(
            mentor.id, make_grant(**grant_kwargs), MENTOR_CALENDLY_URI, "https://api.calendly.com/organizations/ORG1"
        )

    return _connect
