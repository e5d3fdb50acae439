import json
import os

# Must be set before payflow reads its settings.
os.environ["DATABASE_URL"] = "sqlite:///./test_payflow.db"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["FRONTEND_URL"] = "https://app.test"
os.environ["WEBHOOK_BASE_URL"] = "https://api.test"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from payflow.auth import Caller, verify_token
from payflow.config import get_settings
from payflow.database import Base, get_db
from payflow.errors import ProviderError, WebhookAuthError
from payflow.main import app as fastapi_app
from payflow.providers import PreferenceResult, WebhookNotification
from payflow.service import PaymentService

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_payflow.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


class FakeProvider:
    """In-memory provider: records preferences and serves canned payments."""

    name = "fake"

    def __init__(self):
        self.preferences = []
        self.payments = {}
        self.create_error = None
        self.fetch_calls = 0

    def create_preference(self, payload):
        if self.create_error is not None:
            raise self.create_error
        self.preferences.append(payload)
        preference_id = f"pref_{len(self.preferences)}"
        return PreferenceResult(
            preference_id=preference_id,
            redirect_url=f"https://checkout.test/{preference_id}",
            sandbox_redirect_url=f"https://sandbox.checkout.test/{preference_id}",
        )

    def verify_webhook(self, raw_body, headers, query=None):
        if headers.get("x-signature") != "valid":
            raise WebhookAuthError("bad signature")
        body = json.loads(raw_body)
        return WebhookNotification(kind=body.get("type"), resource_id=(body.get("data") or {}).get("id"), raw=body)

    def fetch_payment(self, resource_id):
        self.fetch_calls += 1
        if resource_id not in self.payments:
            raise ProviderError(f"payment {resource_id} not found upstream")
        return self.payments[resource_id]


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def service(provider, settings):
    return PaymentService(provider, settings)


@pytest.fixture
def login():
    """Switch the authenticated caller for subsequent requests."""
    def _login(user_id, email=None):
        fastapi_app.dependency_overrides[verify_token] = lambda: Caller(id=user_id, email=email)
    return _login


@pytest.fixture
def client(service, login):
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = override_get_db
    login("u1", "u1@x.com")
    fastapi_app.state.payment_service = service

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()
    fastapi_app.state.payment_service = None


@pytest.fixture
def session_factory():
    """Fresh sessions for reading what the app committed."""
    return TestingSessionLocal


@pytest.fixture
def send_webhook(client):
    def _send(resource_id, signature="valid", kind="payment"):
        return client.post(
            "/payments/webhook",
            content=json.dumps({"type": kind, "data": {"id": resource_id}}),
            headers={"x-signature": signature},
        )
    return _send
