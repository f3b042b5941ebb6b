from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from learnpay import database, events, main, models
from learnpay.config import PaymentPolicy
from learnpay.durations import AccessDuration, DurationUnit
from learnpay.enrollments import EnrollmentManager
from learnpay.gateway import GatewayOrder, RazorpayGateway, to_minor_units
from learnpay.payments import PaymentLifecycle

SECRET = "test_secret_key"

SECTIONS = [
    {
        "title": "Getting started",
        "topics": [
            {"title": "Welcome", "is_free": True},
            {"title": "Setup", "is_free": False},
        ],
    },
    {
        "title": "Core ideas",
        "topics": [
            {"title": "Variables", "is_free": False},
            {"title": "Functions", "is_free": False},
        ],
    },
]


class FakeGateway(RazorpayGateway):
    """Real signature scheme, canned orders."""

    def __init__(self):
        super().__init__("rzp_test_key", SECRET)
        self.orders = []
        self.error = None

    def create_order(self, amount, currency, receipt, notes=None):
        if self.error is not None:
            raise self.error
        order = GatewayOrder(
            id=f"order_{len(self.orders) + 1:04d}",
            amount=to_minor_units(amount),
            currency=currency,
            receipt=receipt,
            notes=notes or {},
        )
        self.orders.append(order)
        return order


@pytest.fixture
def engine():
    engine = database.create_db_engine("sqlite://")
    database.create_tables(engine)
    yield engine
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
def policy():
    return PaymentPolicy(
        registration_fee_amount=Decimal("699"),
        default_currency="INR",
        default_access_duration=AccessDuration(1, DurationUnit.YEAR),
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def enrollments(policy):
    return EnrollmentManager(policy)


@pytest.fixture
def lifecycle(gateway, policy, enrollments):
    return PaymentLifecycle(gateway, policy, enrollments)


@pytest.fixture
def make_user(db):
    def _make(role="student", registration_fee_paid=False, is_active=True):
        user = models.User(role=role, registration_fee_paid=registration_fee_paid, is_active=is_active)
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def make_course(db):
    def _make(price="500", status=models.PUBLISHED, duration=AccessDuration(1, DurationUnit.YEAR), sections=None, title="Python from scratch"):
        course = models.Course(
            title=title,
            price=Decimal(price),
            currency="INR",
            status=status,
            sections=SECTIONS if sections is None else sections,
        )
        course.access_duration = duration
        db.add(course)
        db.commit()
        return course

    return _make


@pytest.fixture
def sign():
    def _sign(order_id, gateway_payment_id):
        return FakeGateway().compute_signature(order_id, gateway_payment_id)

    return _sign


@pytest.fixture
def as_current(db):
    from learnpay.identity import load_user

    def _current(user):
        return load_user(db, user.id)

    return _current


@pytest.fixture
def published(monkeypatch):
    sent = []
    monkeypatch.setattr(events, "publish_event", lambda url, key, event: sent.append((key, event)))
    return sent


@pytest.fixture
def client(session_factory, gateway, policy, published):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    main.app.dependency_overrides[main.get_db] = override_get_db
    main.app.dependency_overrides[main.get_gateway] = lambda: gateway
    main.app.dependency_overrides[main.get_policy] = lambda: policy
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)
