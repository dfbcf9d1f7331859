import json
from decimal import Decimal

import pytest

from app.core.exceptions import WebhookSignatureInvalid
from app.models import Enrollment, PaymentTransaction
from app.models.enums import (
    EnrollmentStatus,
    EnrollmentType,
    PaymentEventType,
    SubscriptionStatus,
    TransactionStatus,
)
from app.models.payment_event import WebhookDelivery
from app.schemas.enrollment import ConfirmEnrollmentRequest
from app.schemas.payment import AmountBreakdown
from app.services.enrollment import EnrollmentService, open_order
from app.services.subscription import SubscriptionService
from app.services.webhook import WebhookService
from tests.conftest import STUDENT


@pytest.fixture
def deliver(db, gateway):
    def _deliver(event, entities, event_id=None, signature=None):
        payload = {
            "event": event,
            "payload": {name: {"entity": entity} for name, entity in entities.items()},
        }
        body = json.dumps(payload).encode()
        return WebhookService(db, gateway).process(
            body, signature or gateway.sign_webhook(body), event_id
        )

    return _deliver


@pytest.fixture
def initiated(db, gateway, course):
    return EnrollmentService(db, gateway).initiate(
        STUDENT, course.id, EnrollmentType.ONE_TIME
    )


def _captured(order_id, payment_id="pay_wh_1"):
    return {"payment": {"id": payment_id, "order_id": order_id, "method": "upi"}}


def test_captured_payment_activates_enrollment(db, gateway, deliver, initiated):
    result = deliver("payment.captured", _captured(initiated.order_id), "evt_1")

    assert result == {"event_id": "evt_1", "event": "payment.captured", "outcome": "activated"}
    txn = db.query(PaymentTransaction).one()
    assert txn.status == TransactionStatus.SUCCESS
    assert txn.payment_method == "upi"
    enrollment = db.query(Enrollment).one()
    assert enrollment.status == EnrollmentStatus.ACTIVE
    assert txn.enrollment_id == enrollment.id
    assert PaymentEventType.WEBHOOK_RECEIVED in [e.event for e in txn.events]

    # the client's own confirmation arrives afterwards
    proof = ConfirmEnrollmentRequest(
        transaction_id=initiated.transaction_id,
        order_id=initiated.order_id,
        payment_id="pay_wh_1",
        signature=gateway.sign(initiated.order_id, "pay_wh_1"),
    )
    confirmed = EnrollmentService(db, gateway).confirm(STUDENT, proof)
    assert confirmed.already_confirmed
    assert confirmed.enrollment.id == enrollment.id


def test_replayed_event_is_acknowledged_once(db, deliver, initiated):
    deliver("payment.captured", _captured(initiated.order_id), "evt_1")
    again = deliver("payment.captured", _captured(initiated.order_id), "evt_1")

    assert again["outcome"] == "duplicate"
    assert db.query(WebhookDelivery).count() == 1
    assert db.query(Enrollment).count() == 1


def test_same_capture_under_new_event_id(deliver, initiated):
    deliver("payment.captured", _captured(initiated.order_id), "evt_1")
    again = deliver("payment.captured", _captured(initiated.order_id), "evt_2")
    assert again["outcome"] == "already_processed"


def test_event_id_falls_back_to_entity(deliver, initiated):
    result = deliver("payment.captured", _captured(initiated.order_id, "pay_x"))
    assert result["event_id"] == "payment.captured:pay_x"


def test_invalid_signature_is_rejected(db, deliver, initiated):
    with pytest.raises(WebhookSignatureInvalid):
        deliver("payment.captured", _captured(initiated.order_id), "evt_1", "bad")
    assert db.query(WebhookDelivery).count() == 0
    assert db.query(Enrollment).count() == 0


def test_failed_payment(db, deliver, initiated):
    result = deliver(
        "payment.failed",
        {
            "payment": {
                "id": "pay_wh_1",
                "order_id": initiated.order_id,
                "error_code": "BAD_REQUEST_ERROR",
                "error_description": "Card declined by issuer",
            }
        },
        "evt_fail",
    )

    assert result["outcome"] == "failed"
    txn = db.query(PaymentTransaction).one()
    assert txn.status == TransactionStatus.FAILED
    assert txn.failure_code == "BAD_REQUEST_ERROR"
    assert txn.failure_reason == "Card declined by issuer"


def test_capture_after_local_failure_is_not_applied(db, deliver, initiated):
    deliver(
        "payment.failed",
        {"payment": {"id": "pay_wh_1", "order_id": initiated.order_id}},
        "evt_fail",
    )
    result = deliver("payment.captured", _captured(initiated.order_id), "evt_late")

    assert result["outcome"] == "ignored_terminal"
    assert db.query(Enrollment).count() == 0
    txn = db.query(PaymentTransaction).one()
    assert txn.status == TransactionStatus.FAILED
    assert txn.review_required


def test_capture_that_cannot_be_applied_is_held_for_review(
    db, gateway, deliver, course, enroll
):
    enroll(STUDENT, course)
    ledger = EnrollmentService(db, gateway).ledger
    # an order left over from a checkout that raced the first one
    stray = ledger.create_pending_transaction(
        learner_id=STUDENT.id,
        course_id=course.id,
        guru_id=course.instructor_id,
        enrollment_type=EnrollmentType.ONE_TIME,
        amount=AmountBreakdown(base_price=Decimal("999.00")),
    )
    stray = open_order(ledger, gateway, stray)

    result = deliver(
        "payment.captured", _captured(stray.gateway_order_id, "pay_dup"), "evt_dup"
    )

    assert result["outcome"] == "needs_review"
    stray = ledger.get(stray.transaction_id)
    assert stray.status == TransactionStatus.SUCCESS
    assert stray.review_required
    assert PaymentEventType.REVIEW_REQUIRED in [e.event for e in stray.events]
    assert db.query(Enrollment).count() == 1


def test_failed_renewal_marks_subscription_past_due(
    db, gateway, deliver, course, enroll, rewind
):
    enrollment = enroll(
        STUDENT, course, enrollment_type=EnrollmentType.SUBSCRIPTION
    ).enrollment
    rewind(enrollment, 40)
    subscriptions = SubscriptionService(db, gateway)
    subscriptions.expire_due()
    renewal = subscriptions.renew(STUDENT, enrollment.id)

    result = deliver(
        "payment.failed",
        {"payment": {"id": "pay_r1", "order_id": renewal.order_id}},
        "evt_renewal_failed",
    )

    assert result["outcome"] == "renewal_past_due"
    db.refresh(enrollment)
    assert enrollment.subscription.status == SubscriptionStatus.PAST_DUE
    assert not enrollment.access_active

    # a later renewal out of past_due restores access
    retry = subscriptions.renew(STUDENT, enrollment.id)
    deliver("payment.captured", _captured(retry.order_id, "pay_r2"), "evt_retry")
    db.refresh(enrollment)
    assert enrollment.subscription.status == SubscriptionStatus.ACTIVE
    assert enrollment.status == EnrollmentStatus.ACTIVE


def test_full_refund_cancels_enrollment(db, deliver, course, enroll):
    result = enroll(STUDENT, course)
    payment_id = result.transaction.gateway_payment_id
    refund = {
        "refund": {
            "id": "rfnd_1",
            "payment_id": payment_id,
            "amount": 99900,
            "notes": {"reason": "Duplicate purchase"},
        }
    }

    outcome = deliver("refund.processed", refund, "evt_refund_1")
    assert outcome["outcome"] == "refunded"

    enrollment = db.get(Enrollment, result.enrollment.id)
    db.refresh(enrollment)
    assert enrollment.status == EnrollmentStatus.CANCELLED
    assert not enrollment.access_active
    txn = db.get(PaymentTransaction, result.transaction.id)
    db.refresh(txn)
    assert txn.status == TransactionStatus.REFUNDED
    assert txn.refund_reason == "Duplicate purchase"

    # same refund id reported through another event
    replay = deliver("refund.created", refund, "evt_refund_2")
    assert replay["outcome"] == "already_processed"


def test_refund_beyond_what_remains_is_rejected(deliver, course, enroll):
    result = enroll(STUDENT, course)
    refund = {
        "refund": {
            "id": "rfnd_big",
            "payment_id": result.transaction.gateway_payment_id,
            "amount": 150000,
        }
    }
    assert deliver("refund.processed", refund, "evt_big")["outcome"] == "rejected"


def test_unmatched_and_unhandled_events(deliver):
    assert deliver("payment.captured", _captured("order_unknown"))["outcome"] == (
        "unknown_order"
    )
    refund = {"refund": {"id": "rfnd_x", "payment_id": "pay_unknown", "amount": 100}}
    assert deliver("refund.processed", refund)["outcome"] == "unknown_payment"
    assert deliver("order.paid", {"order": {"id": "order_x"}}, "evt_x")["outcome"] == (
        "ignored"
    )
