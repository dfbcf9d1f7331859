import hashlib
import hmac
import os
import tempfile
from datetime import timedelta
from decimal import Decimal
from itertools import count

# Settings are read at import time, so the environment goes first.
_DB_DIR = tempfile.mkdtemp(prefix="enrollment-engine-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/test.db"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "rzp_test_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "whsec_test"
os.environ["JWT_SECRET"] = "test-jwt-secret"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app.core.database import Base, SessionLocal, engine  # noqa: E402
from app.core.dependencies import get_payment_gateway  # noqa: E402
from app.core.exceptions import GatewayUnavailable  # noqa: E402
from app.core.security import jwt_manager  # noqa: E402
from app.models import Course  # noqa: E402
from app.models.enums import BillingCycle, EnrollmentType, PricingModel  # noqa: E402
from app.schemas.auth import Principal, Role  # noqa: E402
from app.schemas.enrollment import ConfirmEnrollmentRequest  # noqa: E402
from app.services.enrollment import EnrollmentService  # noqa: E402
from app.utils.razorpay_client import (  # noqa: E402
    GatewayOrder,
    to_minor_units,
    verify_payment_signature,
    verify_webhook_signature,
)

GURU_ID = 50

STUDENT = Principal(id=1, role=Role.STUDENT)
OTHER_STUDENT = Principal(id=2, role=Role.STUDENT)
GURU = Principal(id=GURU_ID, role=Role.GURU)
OTHER_GURU = Principal(id=51, role=Role.GURU)
ADMIN = Principal(id=900, role=Role.ADMIN)


def hmac_hex(message, secret):
    """Sign the way Razorpay does: hex HMAC-SHA256."""
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class FakeGateway:
    """In-memory stand-in for the Razorpay adapter."""

    key_id = "rzp_test_key"

    def __init__(self, secret="rzp_test_secret", webhook_secret="whsec_test"):
        self.secret = secret
        self.webhook_secret = webhook_secret
        self.orders = []
        self.unavailable = False
        self._ids = count(1)

    def create_order(self, amount, currency, receipt, notes=None):
        if self.unavailable:
            raise GatewayUnavailable()
        order = GatewayOrder(
            order_id=f"order_{next(self._ids):06d}",
            amount_minor=to_minor_units(amount),
            currency=currency,
            receipt=receipt,
        )
        self.orders.append(order)
        return order

    def verify_signature(self, order_id, payment_id, signature):
        return verify_payment_signature(order_id, payment_id, signature, self.secret)

    def verify_webhook(self, body, signature):
        return verify_webhook_signature(body, signature, self.webhook_secret)

    def sign(self, order_id, payment_id):
        return hmac_hex(f"{order_id}|{payment_id}", self.secret)

    def sign_webhook(self, body):
        return hmac_hex(body, self.webhook_secret)


@pytest.fixture(autouse=True)
def setup_database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(gateway):
    from main import app

    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(principal: Principal) -> dict:
    token = jwt_manager.create_access_token(principal.id, principal.role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_course(db):
    def _make_course(**overrides):
        values = dict(
            title="Python for Data Science",
            instructor_id=GURU_ID,
            pricing_model=PricingModel.BOTH,
            currency="INR",
            one_time_amount=Decimal("999.00"),
            monthly_rate=Decimal("299.00"),
            quarterly_rate=Decimal("799.00"),
            yearly_rate=Decimal("2999.00"),
            default_billing_cycle=BillingCycle.MONTHLY,
            trial_days=0,
            is_open_for_enrollment=True,
            device_limit=3,
            total_lectures=4,
        )
        values.update(overrides)
        course = Course(**values)
        db.add(course)
        db.commit()
        db.refresh(course)
        return course

    return _make_course


@pytest.fixture
def course(make_course):
    return make_course()


@pytest.fixture
def enroll(db, gateway):
    """Initiate and confirm a purchase; returns the ConfirmResult."""

    def _enroll(
        principal,
        course,
        enrollment_type=EnrollmentType.ONE_TIME,
        billing_cycle=None,
        device_id="device-0001",
    ):
        service = EnrollmentService(db, gateway)
        initiated = service.initiate(
            principal, course.id, enrollment_type, billing_cycle=billing_cycle
        )
        payment_id = f"pay_{initiated.order_id}"
        proof = ConfirmEnrollmentRequest(
            transaction_id=initiated.transaction_id,
            order_id=initiated.order_id,
            payment_id=payment_id,
            signature=gateway.sign(initiated.order_id, payment_id),
        )
        return service.confirm(principal, proof, device_id=device_id)

    return _enroll


@pytest.fixture
def rewind(db):
    """Move every timestamp of an enrollment's access window into the past."""

    def _rewind(enrollment, days):
        delta = timedelta(days=days)
        subscription = enrollment.subscription
        if subscription is not None:
            subscription.current_period_start -= delta
            subscription.current_period_end -= delta
            for attr in ("renewal_date", "trial_end", "pause_end_date", "paused_at"):
                value = getattr(subscription, attr)
                if value is not None:
                    setattr(subscription, attr, value - delta)
        if enrollment.expires_at is not None:
            enrollment.expires_at -= delta
        db.commit()
        db.refresh(enrollment)
        return enrollment

    return _rewind
