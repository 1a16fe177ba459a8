# tests/conftest.py
"""
Pytest configuration and shared fixtures.

Every test runs against a throwaway SQLite file shared by the test session
and the Flask app, so API tests and service tests see the same data.
"""

import os
import tempfile
from decimal import Decimal
from itertools import count

import pytest

_TEST_DB_PATH = os.path.join(tempfile.mkdtemp(prefix="storefront-tests-"), "test.db")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DB_PATH}"
os.environ["DEFAULT_TIMEZONE"] = "UTC"
os.environ["PAYMENT_WEBHOOK_SECRET"] = ""
os.environ.setdefault("STRUCTURED_LOGS_ENABLED", "false")

from storefront.database import Base, SessionLocal, engine  # noqa: E402
from storefront.errors import PaymentProcessingError  # noqa: E402
from storefront.models import Inventory, Role, User  # noqa: E402
from storefront.observability import reset_metrics  # noqa: E402

Base.metadata.create_all(bind=engine)


class StubPaypackClient:
    """Stands in for the provider: records cash-in calls and hands out refs."""

    def __init__(self, should_fail: bool = False):
        self.should_fail = should_fail
        self.calls = []
        self._refs = count(1)

    def cashin(self, number, amount):
        self.calls.append({"number": number, "amount": amount})
        if self.should_fail:
            raise PaymentProcessingError("Payment provider rejected the request")
        return {"ref": f"PP-REF-{next(self._refs)}", "status": "pending", "amount": float(amount)}


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_metrics()
    yield


@pytest.fixture
def db_session():
    """Create a fresh database session for each test"""
    session = SessionLocal()
    try:
        yield session
    finally:
        # Clean up test data to prevent test interference
        session.rollback()
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()
        session.close()


@pytest.fixture
def stub_paypack():
    return StubPaypackClient()


@pytest.fixture
def failing_paypack():
    return StubPaypackClient(should_fail=True)


@pytest.fixture
def make_inventory(db_session):
    def _make(quantity=5, price="1000.00", variant_reference=None):
        inventory = Inventory(
            variant_reference=variant_reference or f"VAR-{quantity}-{price}",
            quantity=quantity,
            price=Decimal(str(price)),
        )
        db_session.add(inventory)
        db_session.commit()
        return inventory

    return _make


@pytest.fixture
def make_user(db_session):
    sequence = count(1)

    def _make(email=None, privileges=(), name="Test User"):
        number = next(sequence)
        role = Role(name=f"role_{number}")
        role.privileges = privileges
        user = User(name=name, email=email or f"user{number}@example.com", role=role)
        db_session.add_all([role, user])
        db_session.commit()
        return user

    return _make


@pytest.fixture
def client_payload():
    def _payload(email="buyer@example.com", account="+250780000001", **overrides):
        payload = {
            "name": "Aline Buyer",
            "email": email,
            "phone": "+250780000001",
            "address": "KG 11 Ave",
            "city": "Kigali",
            "state": "Kigali",
            "country": "Rwanda",
            "payment_info": {"accountNumber": account} if account else None,
        }
        payload.update(overrides)
        return payload

    return _payload


@pytest.fixture
def app(stub_paypack):
    from storefront.main import app as flask_app

    flask_app.config["TESTING"] = True
    flask_app.config["PAYMENT_WEBHOOK_SECRET"] = ""
    flask_app.config["NOTIFICATIONS_DISPATCH_INLINE"] = True
    flask_app.extensions["paypack_client"] = stub_paypack
    try:
        yield flask_app
    finally:
        flask_app.extensions.pop("paypack_client", None)


@pytest.fixture
def client(app, db_session):
    with app.test_client() as test_client:
        yield test_client


@pytest.fixture
def auth_headers(app):
    from storefront.auth import generate_token

    def _headers(user):
        with app.app_context():
            token = generate_token(user)
        return {"Authorization": f"Bearer {token}"}

    return _headers
