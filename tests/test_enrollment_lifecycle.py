from datetime import timedelta
from decimal import Decimal

import pytest

from app.core.exceptions import (
    AccessExpired,
    AlreadyEnrolled,
    CertificateNotEligible,
    CourseNotAvailable,
    DeviceNotRegistered,
    GatewayUnavailable,
    InvalidState,
    NotActive,
    PaymentVerificationFailed,
    PermissionDenied,
    UnsupportedEnrollmentType,
)
from app.models import Enrollment, PaymentTransaction
from app.models.enums import (
    AuditAction,
    BillingCycle,
    EnrollmentStatus,
    EnrollmentType,
    PricingModel,
    SubscriptionStatus,
    TransactionStatus,
)
from app.schemas.enrollment import ConfirmEnrollmentRequest
from app.schemas.payment import AmountBreakdown
from app.services.enrollment import (
    GATEWAY_ERROR,
    SIGNATURE_MISMATCH,
    EnrollmentService,
    open_order,
)
from app.utils.datetime_utils import add_months, utcnow
from tests.conftest import ADMIN, GURU, OTHER_GURU, OTHER_STUDENT, STUDENT


def _actions(enrollment):
    return [e.action for e in enrollment.audit_events]


def _proof(gateway, initiated, payment_id="pay_001", signature=None, order_id=None):
    order_id = order_id or initiated.order_id
    return ConfirmEnrollmentRequest(
        transaction_id=initiated.transaction_id,
        order_id=order_id,
        payment_id=payment_id,
        signature=signature or gateway.sign(order_id, payment_id),
    )


# ==================== Purchase ====================


def test_one_time_purchase_activates_enrollment(db, course, enroll):
    result = enroll(STUDENT, course)
    enrollment, txn = result.enrollment, result.transaction

    assert not result.already_confirmed
    assert enrollment.status == EnrollmentStatus.ACTIVE
    assert enrollment.access_active
    assert enrollment.expires_at is None
    assert enrollment.subscription is None
    assert enrollment.guru_id == course.instructor_id
    assert enrollment.payment_amount == Decimal("999.00")
    assert enrollment.guru_share == Decimal("799.20")
    assert enrollment.platform_share == Decimal("199.80")
    assert enrollment.activating_transaction_id == txn.id
    assert enrollment.active_device_count == 1

    assert txn.status == TransactionStatus.SUCCESS
    assert txn.enrollment_id == enrollment.id
    assert _actions(enrollment) == [
        AuditAction.CREATED,
        AuditAction.PAYMENT_COMPLETED,
        AuditAction.DEVICE_ADDED,
    ]


def test_initiate_records_pending_transaction_with_order(db, gateway, course):
    service = EnrollmentService(db, gateway)
    initiated = service.initiate(STUDENT, course.id, EnrollmentType.ONE_TIME, country="IN")

    assert initiated.amount == Decimal("999.00")
    assert initiated.amount_minor == 99900
    assert initiated.gateway_key_id == gateway.key_id
    assert gateway.orders[0].receipt == initiated.transaction_id

    txn = service.ledger.get(initiated.transaction_id)
    assert txn.status == TransactionStatus.PENDING
    assert txn.gateway_order_id == initiated.order_id
    # no enrollment exists before payment is confirmed
    assert db.query(Enrollment).count() == 0


def test_subscription_purchase_opens_first_period(course, enroll):
    before = utcnow()
    result = enroll(
        STUDENT,
        course,
        enrollment_type=EnrollmentType.SUBSCRIPTION,
        billing_cycle=BillingCycle.QUARTERLY,
    )
    enrollment = result.enrollment
    subscription = enrollment.subscription

    assert result.transaction.amount_total == Decimal("799.00")
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.billing_cycle == BillingCycle.QUARTERLY
    assert subscription.auto_renew
    assert add_months(before, 3) <= subscription.current_period_end
    assert subscription.current_period_end <= add_months(utcnow(), 3)
    assert enrollment.expires_at == subscription.current_period_end


def test_subscription_uses_course_default_cycle(make_course, enroll):
    course = make_course(default_billing_cycle=BillingCycle.YEARLY)
    result = enroll(STUDENT, course, enrollment_type=EnrollmentType.SUBSCRIPTION)

    assert result.enrollment.subscription.billing_cycle == BillingCycle.YEARLY
    assert result.transaction.amount_total == Decimal("2999.00")


def test_trial_starts_in_trialing_state(make_course, enroll):
    course = make_course(trial_days=7)
    result = enroll(STUDENT, course, enrollment_type=EnrollmentType.SUBSCRIPTION)
    subscription = result.enrollment.subscription

    assert subscription.status == SubscriptionStatus.TRIALING
    assert subscription.trial_end is not None
    assert subscription.trial_end < subscription.current_period_end


def test_closed_or_unknown_course_is_rejected(db, gateway, make_course):
    closed = make_course(is_open_for_enrollment=False)
    service = EnrollmentService(db, gateway)

    with pytest.raises(CourseNotAvailable):
        service.initiate(STUDENT, closed.id, EnrollmentType.ONE_TIME)
    with pytest.raises(CourseNotAvailable):
        service.initiate(STUDENT, 4242, EnrollmentType.ONE_TIME)


def test_unsupported_enrollment_type(db, gateway, make_course):
    course = make_course(pricing_model=PricingModel.ONE_TIME, monthly_rate=None)
    service = EnrollmentService(db, gateway)

    with pytest.raises(UnsupportedEnrollmentType):
        service.initiate(STUDENT, course.id, EnrollmentType.SUBSCRIPTION)
    assert db.query(PaymentTransaction).count() == 0


def test_gateway_outage_fails_the_transaction(db, gateway, course):
    gateway.unavailable = True
    service = EnrollmentService(db, gateway)

    with pytest.raises(GatewayUnavailable):
        service.initiate(STUDENT, course.id, EnrollmentType.ONE_TIME)

    txn = db.query(PaymentTransaction).one()
    assert txn.status == TransactionStatus.FAILED
    assert txn.failure_code == GATEWAY_ERROR


def test_already_enrolled(db, gateway, course, enroll):
    enrollment = enroll(STUDENT, course).enrollment
    service = EnrollmentService(db, gateway)

    with pytest.raises(AlreadyEnrolled) as exc_info:
        service.initiate(STUDENT, course.id, EnrollmentType.ONE_TIME)
    assert exc_info.value.data["enrollment_id"] == enrollment.id

    # a different learner is unaffected
    service.initiate(OTHER_STUDENT, course.id, EnrollmentType.ONE_TIME)


def test_repeated_initiate_resumes_the_open_order(db, gateway, course):
    service = EnrollmentService(db, gateway)
    first = service.initiate(STUDENT, course.id, EnrollmentType.ONE_TIME)
    again = service.initiate(STUDENT, course.id, EnrollmentType.ONE_TIME)

    assert again.transaction_id == first.transaction_id
    assert again.order_id == first.order_id
    assert db.query(PaymentTransaction).count() == 1
    assert len(gateway.orders) == 1

    with pytest.raises(InvalidState) as exc_info:
        service.initiate(STUDENT, course.id, EnrollmentType.SUBSCRIPTION)
    assert exc_info.value.data["transaction_id"] == first.transaction_id


def test_stale_open_order_is_superseded(db, gateway, course):
    service = EnrollmentService(db, gateway)
    first = service.initiate(STUDENT, course.id, EnrollmentType.ONE_TIME)
    txn = service.ledger.get(first.transaction_id)
    txn.created_at = utcnow() - timedelta(hours=2)
    db.commit()

    second = service.initiate(
        STUDENT, course.id, EnrollmentType.SUBSCRIPTION, billing_cycle=BillingCycle.YEARLY
    )

    assert second.transaction_id != first.transaction_id
    assert second.amount == Decimal("2999.00")
    txn = service.ledger.get(first.transaction_id)
    assert txn.status == TransactionStatus.CANCELLED
    assert txn.failure_code == "SUPERSEDED"


def test_second_paid_checkout_is_kept_for_review(db, gateway, course):
    service = EnrollmentService(db, gateway)
    first = service.initiate(STUDENT, course.id, EnrollmentType.ONE_TIME)
    # two checkouts racing past the open-order check
    stray = service.ledger.create_pending_transaction(
        learner_id=STUDENT.id,
        course_id=course.id,
        guru_id=course.instructor_id,
        enrollment_type=EnrollmentType.ONE_TIME,
        amount=AmountBreakdown(base_price=Decimal("999.00")),
    )
    stray = open_order(service.ledger, gateway, stray)
    enrollment = service.confirm(STUDENT, _proof(gateway, first)).enrollment

    stray_proof = ConfirmEnrollmentRequest(
        transaction_id=stray.transaction_id,
        order_id=stray.gateway_order_id,
        payment_id="pay_002",
        signature=gateway.sign(stray.gateway_order_id, "pay_002"),
    )
    with pytest.raises(AlreadyEnrolled) as exc_info:
        service.confirm(STUDENT, stray_proof)
    assert exc_info.value.data["review_required"]
    assert exc_info.value.data["transaction_id"] == stray.transaction_id

    stray = service.ledger.get(stray.transaction_id)
    assert stray.status == TransactionStatus.SUCCESS
    assert stray.gateway_payment_id == "pay_002"
    assert stray.review_required
    assert stray.is_unapplied
    assert stray.enrollment_id is None

    # retrying the same proof does not pretend it was applied
    with pytest.raises(InvalidState):
        service.confirm(STUDENT, stray_proof)

    refunded = service.apply_refund(stray.transaction_id, None, "Paid twice", actor=ADMIN)
    assert refunded.status == TransactionStatus.REFUNDED
    db.refresh(enrollment)
    assert enrollment.status == EnrollmentStatus.ACTIVE


# ==================== Confirm ====================


def test_confirm_is_idempotent_for_the_same_proof(db, gateway, course):
    service = EnrollmentService(db, gateway)
    initiated = service.initiate(STUDENT, course.id, EnrollmentType.ONE_TIME)
    proof = _proof(gateway, initiated)

    first = service.confirm(STUDENT, proof, device_id="device-0001")
    second = service.confirm(STUDENT, proof, device_id="device-0001")

    assert second.already_confirmed
    assert second.enrollment.id == first.enrollment.id
    assert db.query(Enrollment).count() == 1

    other = _proof(gateway, initiated, payment_id="pay_other")
    with pytest.raises(InvalidState):
        service.confirm(STUDENT, other)


def test_signature_mismatch_fails_the_transaction(db, gateway, course):
    service = EnrollmentService(db, gateway)
    initiated = service.initiate(STUDENT, course.id, EnrollmentType.ONE_TIME)

    with pytest.raises(PaymentVerificationFailed):
        service.confirm(STUDENT, _proof(gateway, initiated, signature="0" * 64))

    txn = service.ledger.get(initiated.transaction_id)
    assert txn.status == TransactionStatus.FAILED
    assert txn.failure_code == SIGNATURE_MISMATCH
    assert db.query(Enrollment).count() == 0

    # the failed transaction cannot be confirmed afterwards
    with pytest.raises(InvalidState):
        service.confirm(STUDENT, _proof(gateway, initiated))


def test_proof_for_another_order_is_rejected(db, gateway, course):
    service = EnrollmentService(db, gateway)
    initiated = service.initiate(STUDENT, course.id, EnrollmentType.ONE_TIME)

    with pytest.raises(PaymentVerificationFailed):
        service.confirm(STUDENT, _proof(gateway, initiated, order_id="order_forged"))


def test_only_the_payer_can_confirm(db, gateway, course):
    service = EnrollmentService(db, gateway)
    initiated = service.initiate(STUDENT, course.id, EnrollmentType.ONE_TIME)

    with pytest.raises(PermissionDenied):
        service.confirm(OTHER_STUDENT, _proof(gateway, initiated))


# ==================== Reads & access ====================


def test_enrollment_visible_to_owner_and_admin_only(db, course, enroll):
    enrollment = enroll(STUDENT, course).enrollment
    service = EnrollmentService(db)

    assert service.get_enrollment(STUDENT, enrollment.id).id == enrollment.id
    assert service.get_enrollment(ADMIN, enrollment.id).id == enrollment.id
    with pytest.raises(PermissionDenied):
        service.get_enrollment(OTHER_STUDENT, enrollment.id)


def test_list_for_guru(db, course, make_course, enroll):
    enroll(STUDENT, course)
    enroll(OTHER_STUDENT, course)
    other_course = make_course(instructor_id=OTHER_GURU.id)
    enroll(STUDENT, other_course)

    items, pagination = EnrollmentService(db).list_for_guru(GURU.id)

    assert pagination["total"] == 2
    assert {e.learner_id for e in items} == {STUDENT.id, OTHER_STUDENT.id}


def test_validate_access_checks_device(db, course, enroll):
    enrollment = enroll(STUDENT, course, device_id="device-0001").enrollment
    service = EnrollmentService(db)

    result = service.validate_access(STUDENT, enrollment.id, device_id="device-0001")
    assert result.valid
    assert result.days_until_expiry is None

    with pytest.raises(DeviceNotRegistered):
        service.validate_access(STUDENT, enrollment.id, device_id="device-9999")


def test_validate_access_reports_expiry(db, course, enroll, rewind):
    enrollment = enroll(
        STUDENT, course, enrollment_type=EnrollmentType.SUBSCRIPTION
    ).enrollment
    rewind(enrollment, 40)

    with pytest.raises(AccessExpired):
        EnrollmentService(db).validate_access(STUDENT, enrollment.id)

    db.refresh(enrollment)
    assert enrollment.status == EnrollmentStatus.EXPIRED
    assert not enrollment.access_active
    assert enrollment.subscription.status == SubscriptionStatus.EXPIRED
    assert _actions(enrollment)[-1] == AuditAction.EXPIRED


# ==================== Progress & certificates ====================


def test_progress_reaches_completion_and_certificate(db, course, enroll):
    enrollment = enroll(STUDENT, course).enrollment
    service = EnrollmentService(db)

    with pytest.raises(CertificateNotEligible):
        service.issue_certificate(GURU, enrollment.id)

    service.update_progress(STUDENT, enrollment.id, "lecture-1", 300)
    enrollment = service.update_progress(STUDENT, enrollment.id, "lecture-1", 120)
    assert enrollment.overall_progress == 25
    assert enrollment.total_time_spent == 420
    assert len(enrollment.completed_lectures) == 1

    for lecture in ("lecture-2", "lecture-3", "lecture-4"):
        enrollment = service.update_progress(STUDENT, enrollment.id, lecture, 60)
    assert enrollment.overall_progress == 100
    assert enrollment.certificate_eligible
    assert enrollment.completed_at is not None

    with pytest.raises(PermissionDenied):
        service.issue_certificate(OTHER_GURU, enrollment.id)
    enrollment = service.issue_certificate(GURU, enrollment.id)
    assert enrollment.certificate_issued
    assert _actions(enrollment)[-1] == AuditAction.CERTIFICATE_ISSUED


def test_progress_requires_active_enrollment(db, course, enroll):
    enrollment = enroll(STUDENT, course).enrollment
    service = EnrollmentService(db)
    service.suspend(ADMIN, enrollment.id, "Chargeback investigation")

    with pytest.raises(NotActive):
        service.update_progress(STUDENT, enrollment.id, "lecture-1")


# ==================== Administration ====================


def test_suspend_and_reinstate(db, course, enroll):
    enrollment = enroll(STUDENT, course).enrollment
    service = EnrollmentService(db)

    enrollment = service.suspend(ADMIN, enrollment.id, "Policy violation")
    assert enrollment.status == EnrollmentStatus.SUSPENDED
    assert not enrollment.access_active
    with pytest.raises(NotActive):
        service.validate_access(STUDENT, enrollment.id)

    enrollment = service.reinstate(ADMIN, enrollment.id)
    assert enrollment.status == EnrollmentStatus.ACTIVE
    assert enrollment.access_active
    assert enrollment.suspension_reason is None

    with pytest.raises(InvalidState):
        service.reinstate(ADMIN, enrollment.id)


# ==================== Refunds ====================


def test_partial_refund_keeps_access(db, course, enroll):
    result = enroll(STUDENT, course)
    service = EnrollmentService(db)

    txn = service.apply_refund(
        result.transaction.transaction_id, Decimal("99.90"), "Late start", actor=ADMIN
    )

    assert txn.status == TransactionStatus.PARTIALLY_REFUNDED
    enrollment = service.get_enrollment(STUDENT, result.enrollment.id)
    assert enrollment.status == EnrollmentStatus.ACTIVE


def test_full_refund_cancels_and_allows_repurchase(db, gateway, course, enroll):
    result = enroll(STUDENT, course)
    service = EnrollmentService(db, gateway)

    txn = service.apply_refund(
        result.transaction.transaction_id, None, "Requested by learner", actor=ADMIN
    )
    assert txn.status == TransactionStatus.REFUNDED

    enrollment = service.get_enrollment(STUDENT, result.enrollment.id)
    assert enrollment.status == EnrollmentStatus.CANCELLED
    assert not enrollment.access_active
    assert _actions(enrollment)[-1] == AuditAction.REFUNDED

    again = enroll(STUDENT, course, device_id="device-0002")
    assert again.enrollment.id == enrollment.id
    assert again.enrollment.status == EnrollmentStatus.ACTIVE
    assert again.enrollment.activating_transaction_id == again.transaction.id
    assert AuditAction.REACTIVATED in _actions(again.enrollment)
