# app/services/enrollment.py
import logging
import math
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session, joinedload

from app.core.config import Settings, settings
from app.core.decorator import db_exception
from app.core.exceptions import (
    AccessExpired,
    AlreadyEnrolled,
    CertificateNotEligible,
    ConfigurationError,
    CourseNotAvailable,
    DeviceNotRegistered,
    GatewayUnavailable,
    InvalidState,
    NotActive,
    PaymentVerificationFailed,
    PermissionDenied,
    ServiceError,
)
from app.models.enrollment import Enrollment
from app.models.enums import (
    AuditAction,
    EnrollmentStatus,
    EnrollmentType,
    EventSource,
    SubscriptionStatus,
    TransactionKind,
    TransactionStatus,
)
from app.models.lecture_completion import LectureCompletion
from app.models.payment_transaction import PaymentTransaction
from app.models.subscription import Subscription
from app.schemas.auth import Principal
from app.schemas.device import DeviceInfo
from app.schemas.enrollment import (
    AccessValidationResponse,
    ConfirmEnrollmentRequest,
    InitiateEnrollmentResponse,
)
from app.schemas.payment import AmountBreakdown
from app.services.audit import record_audit
from app.services.course_catalog import CourseCatalog, SqlCourseCatalog
from app.services.device_access import DeviceAccessService
from app.services.lifecycle import authorize, load_enrollment, refresh_lifecycle
from app.services.payment_transaction import PaymentLedgerService
from app.services.transitions import (
    TERMINAL_SUBSCRIPTION_STATES,
    can_transition_subscription,
    ensure_enrollment_transition,
    ensure_subscription_transition,
)
from app.utils.datetime_utils import add_months, utcnow
from app.utils.razorpay_client import PaymentGateway, to_minor_units

logger = logging.getLogger(__name__)

SIGNATURE_MISMATCH = "SIGNATURE_MISMATCH"
GATEWAY_ERROR = "GATEWAY_ERROR"


@dataclass
class ConfirmResult:
    enrollment: Enrollment
    transaction: PaymentTransaction
    device_id: Optional[str] = None
    already_confirmed: bool = False


def open_order(
    ledger: PaymentLedgerService,
    gateway: Optional[PaymentGateway],
    txn: PaymentTransaction,
) -> PaymentTransaction:
    """
    Create the remote order for a committed pending transaction.

    The transaction id doubles as the receipt so a retried order creation
    is recognisable on the gateway side. A gateway failure terminates the
    transaction and surfaces as a retryable error.
    """
    if gateway is None:
        raise ConfigurationError("Payment gateway is not configured")
    try:
        order = gateway.create_order(
            amount=txn.amount_total,
            currency=txn.currency,
            receipt=txn.transaction_id,
            notes={
                "transaction_id": txn.transaction_id,
                "learner_id": str(txn.learner_id),
                "course_id": str(txn.course_id),
                "kind": txn.kind.value,
            },
        )
    except GatewayUnavailable:
        ledger.mark_failed(
            txn, "Payment gateway order creation failed", code=GATEWAY_ERROR
        )
        raise
    return ledger.attach_order(txn, order)


def resume_open_checkout(
    ledger: PaymentLedgerService,
    gateway: Optional[PaymentGateway],
    learner_id: int,
    course_id: int,
    kind: TransactionKind,
    billing_cycle,
    base_price: Decimal,
    enrollment_id: Optional[int] = None,
) -> Optional[PaymentTransaction]:
    """
    Return the checkout already open for this learner and course, if any.

    Asking again for the same purchase hands back the open order, so a
    learner never holds two payable orders for one thing. A different
    purchase is refused until the open one settles or goes stale; a stale
    one is cancelled and a fresh checkout may start.
    """
    txn = ledger.find_open_transaction(
        learner_id, course_id, kind, enrollment_id=enrollment_id
    )
    if txn is None:
        return None
    if ledger.is_stale(txn):
        ledger.cancel_pending(txn, "Superseded by a new checkout", code="SUPERSEDED")
        return None

    if txn.billing_cycle == billing_cycle and txn.base_price == base_price:
        logger.info(
            f"Resuming open {kind.value} checkout {txn.transaction_id} "
            f"for learner {learner_id} / course {course_id}"
        )
        if txn.gateway_order_id is None:
            txn = open_order(ledger, gateway, txn)
        return txn

    raise InvalidState(
        "A payment for this course is already in progress",
        data={
            "transaction_id": txn.transaction_id,
            "order_id": txn.gateway_order_id,
            "billing_cycle": txn.billing_cycle.value if txn.billing_cycle else None,
        },
    )


class EnrollmentService:
    def __init__(
        self,
        db: Session,
        gateway: Optional[PaymentGateway] = None,
        catalog: Optional[CourseCatalog] = None,
        config: Settings = settings,
    ):
        self.db = db
        self.gateway = gateway
        self.catalog = catalog or SqlCourseCatalog(db)
        self.config = config
        self.ledger = PaymentLedgerService(db, config)
        self.devices = DeviceAccessService(db, config)

    # ==================== Helpers ====================

    def _find_existing(self, learner_id: int, course_id: int, lock: bool = False):
        query = self.db.query(Enrollment).filter(
            Enrollment.learner_id == learner_id,
            Enrollment.course_id == course_id,
        )
        if lock:
            query = query.with_for_update()
        return query.first()

    def _device_limit_for(self, course_device_limit: Optional[int]) -> int:
        limit = course_device_limit or self.config.default_device_limit
        return max(1, min(limit, self.config.max_device_limit))

    @staticmethod
    def _copy_payment_summary(enrollment: Enrollment, txn: PaymentTransaction) -> None:
        enrollment.activating_transaction_id = txn.id
        enrollment.payment_method = txn.payment_method
        enrollment.payment_amount = txn.amount_total
        enrollment.payment_currency = txn.currency
        enrollment.payment_status = txn.status.value
        enrollment.gateway_order_id = txn.gateway_order_id
        enrollment.gateway_payment_id = txn.gateway_payment_id
        enrollment.payment_signature = txn.gateway_signature
        enrollment.paid_at = txn.completed_at
        enrollment.guru_share = txn.guru_share
        enrollment.platform_share = txn.platform_share

    # ==================== Initiate ====================

    @db_exception
    def initiate(
        self,
        principal: Principal,
        course_id: int,
        enrollment_type: EnrollmentType,
        billing_cycle=None,
        country: Optional[str] = None,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> InitiateEnrollmentResponse:
        pricing = self.catalog.get_pricing(course_id)
        if not pricing or not pricing.is_open_for_enrollment:
            raise CourseNotAvailable(data={"course_id": course_id})

        existing = self._find_existing(principal.id, course_id)
        if existing is not None:
            if refresh_lifecycle(existing):
                self.db.commit()
            # a lapsed one-time purchase may be bought again; subscriptions renew
            can_repurchase = (
                existing.enrollment_type == EnrollmentType.ONE_TIME
                and enrollment_type == EnrollmentType.ONE_TIME
                and existing.status
                in (EnrollmentStatus.CANCELLED, EnrollmentStatus.EXPIRED)
            )
            if not can_repurchase:
                logger.info(
                    f"Learner {principal.id} already enrolled in course {course_id} "
                    f"(enrollment {existing.id}, {existing.status.value})"
                )
                raise AlreadyEnrolled(
                    data={
                        "enrollment_id": existing.id,
                        "status": existing.status.value,
                    }
                )

        cycle = None
        if enrollment_type == EnrollmentType.SUBSCRIPTION:
            cycle = billing_cycle or pricing.default_billing_cycle
        price = pricing.price_for(enrollment_type, cycle)

        txn = resume_open_checkout(
            self.ledger,
            self.gateway,
            principal.id,
            pricing.course_id,
            TransactionKind.PURCHASE,
            cycle,
            price,
        )
        if txn is None:
            txn = self.ledger.create_pending_transaction(
                learner_id=principal.id,
                course_id=pricing.course_id,
                guru_id=pricing.guru_id,
                enrollment_type=enrollment_type,
                amount=AmountBreakdown(
                    base_price=price,
                    currency=pricing.currency or self.config.payment_currency,
                ),
                billing_cycle=cycle,
                kind=TransactionKind.PURCHASE,
                country=country,
                client_ip=client_ip,
                user_agent=user_agent,
            )
            txn = open_order(self.ledger, self.gateway, txn)

        return InitiateEnrollmentResponse(
            transaction_id=txn.transaction_id,
            order_id=txn.gateway_order_id,
            amount=txn.amount_total,
            amount_minor=to_minor_units(txn.amount_total),
            currency=txn.currency,
            gateway_key_id=self.gateway.key_id,
            course_id=txn.course_id,
            enrollment_type=txn.enrollment_type,
            billing_cycle=txn.billing_cycle,
        )

    # ==================== Confirm ====================

    @db_exception
    def confirm(
        self,
        principal: Principal,
        proof: ConfirmEnrollmentRequest,
        device_id: Optional[str] = None,
        device_info: Optional[DeviceInfo] = None,
    ) -> ConfirmResult:
        """
        Verify the gateway proof and activate the enrollment.

        Either the transaction and the enrollment both reach their new
        state or neither does. A retry with the same proof after success
        returns the existing enrollment.
        """
        txn = self.ledger.get(proof.transaction_id, lock=True)
        if txn.learner_id != principal.id and not principal.is_admin:
            raise PermissionDenied("Transaction belongs to another learner")

        if txn.status == TransactionStatus.SUCCESS:
            same_proof = (
                txn.gateway_payment_id == proof.payment_id
                and txn.gateway_order_id == proof.order_id
            )
            if same_proof and txn.is_unapplied:
                raise InvalidState(
                    "Payment was received but is held for review",
                    data={"transaction_id": txn.transaction_id, "review_required": True},
                )
            if same_proof and txn.enrollment_id is not None:
                enrollment = load_enrollment(self.db, txn.enrollment_id)
                return ConfirmResult(
                    enrollment=enrollment,
                    transaction=txn,
                    device_id=device_id,
                    already_confirmed=True,
                )
            raise InvalidState(
                "Transaction was already confirmed with a different payment",
                data={"status": txn.status.value},
            )

        if not txn.is_pending:
            raise InvalidState(
                f"Transaction is already {txn.status.value}",
                data={"status": txn.status.value, "failure_reason": txn.failure_reason},
            )
        if self.gateway is None:
            raise ConfigurationError("Payment gateway is not configured")

        verified = (
            txn.gateway_order_id is not None
            and proof.order_id == txn.gateway_order_id
            and self.gateway.verify_signature(
                txn.gateway_order_id, proof.payment_id, proof.signature
            )
        )
        if not verified:
            logger.warning(
                f"Signature mismatch on transaction {txn.transaction_id} "
                f"(order {proof.order_id}, payment {proof.payment_id})"
            )
            self.ledger.mark_failed(
                txn,
                SIGNATURE_MISMATCH,
                code=SIGNATURE_MISMATCH,
                source=EventSource.USER,
            )
            raise PaymentVerificationFailed(
                data={"transaction_id": txn.transaction_id, "reason": SIGNATURE_MISMATCH}
            )

        self.ledger.mark_success(
            txn,
            proof.payment_id,
            proof.signature,
            payment_method=proof.payment_method,
            source=EventSource.USER,
            commit=False,
        )
        conflict = self.activation_conflict(txn)
        if conflict is not None:
            # the money is in; keep it on the books and refundable
            self.ledger.flag_for_review(
                txn,
                f"Paid but not applied: {conflict.message}",
                details={"code": conflict.code},
                source=EventSource.USER,
            )
            conflict.data = {
                **(conflict.data or {}),
                "transaction_id": txn.transaction_id,
                "review_required": True,
            }
            raise conflict

        enrollment = self.activate(txn, actor=principal)
        if device_id:
            self.devices.register(enrollment, device_id, device_info, actor=principal)

        self.db.commit()
        self.db.refresh(enrollment)
        self.db.refresh(txn)
        logger.info(
            f"Confirmed {txn.transaction_id}: enrollment {enrollment.id} "
            f"is {enrollment.status.value}"
        )
        return ConfirmResult(enrollment=enrollment, transaction=txn, device_id=device_id)

    def activation_conflict(self, txn: PaymentTransaction) -> Optional[ServiceError]:
        """The error ``activate`` would raise for this payment, or None."""
        if txn.kind == TransactionKind.RENEWAL:
            enrollment = load_enrollment(self.db, txn.enrollment_id, lock=True)
            refresh_lifecycle(enrollment)
            subscription = enrollment.subscription
            if subscription is None or not can_transition_subscription(
                subscription.status, SubscriptionStatus.ACTIVE
            ):
                status = subscription.status.value if subscription else None
                return InvalidState(
                    f"Subscription is {status}; renewal cannot be applied",
                    data={"enrollment_id": enrollment.id, "status": status},
                )
            return None

        enrollment = self._find_existing(txn.learner_id, txn.course_id, lock=True)
        if enrollment is None:
            return None
        refresh_lifecycle(enrollment)
        if enrollment.status in (EnrollmentStatus.ACTIVE, EnrollmentStatus.SUSPENDED):
            return AlreadyEnrolled(
                data={"enrollment_id": enrollment.id, "status": enrollment.status.value}
            )
        return None

    def activate(
        self,
        txn: PaymentTransaction,
        actor: Optional[Principal] = None,
    ) -> Enrollment:
        """
        Bring the enrollment paid for by a successful transaction to active,
        within the current unit of work.
        """
        if txn.kind == TransactionKind.RENEWAL:
            return self._activate_renewal(txn, actor)

        now = utcnow()
        pricing = self.catalog.get_pricing(txn.course_id)
        enrollment = self._find_existing(txn.learner_id, txn.course_id, lock=True)

        if enrollment is None:
            enrollment = Enrollment(
                learner_id=txn.learner_id,
                course_id=txn.course_id,
                guru_id=txn.guru_id,
                enrollment_type=txn.enrollment_type,
                status=EnrollmentStatus.ACTIVE,
                enrolled_at=now,
                device_limit=self._device_limit_for(
                    pricing.device_limit if pricing else None
                ),
                access_active=True,
            )
            self.db.add(enrollment)
            action = AuditAction.CREATED
            previous_status = EnrollmentStatus.PENDING
        else:
            refresh_lifecycle(enrollment, now)
            if enrollment.status in (EnrollmentStatus.ACTIVE, EnrollmentStatus.SUSPENDED):
                raise AlreadyEnrolled(
                    data={"enrollment_id": enrollment.id, "status": enrollment.status.value}
                )
            previous_status = enrollment.status
            ensure_enrollment_transition(enrollment.status, EnrollmentStatus.ACTIVE)
            enrollment.status = EnrollmentStatus.ACTIVE
            enrollment.access_active = True
            enrollment.suspension_reason = None
            action = AuditAction.REACTIVATED

        self._copy_payment_summary(enrollment, txn)

        if txn.enrollment_type == EnrollmentType.SUBSCRIPTION:
            trial_days = pricing.trial_days if pricing else 0
            start = now
            trial_end = now + timedelta(days=trial_days) if trial_days > 0 else None
            end = add_months(start, txn.billing_cycle.months)
            if trial_end is not None:
                end = end + timedelta(days=trial_days)
            enrollment.subscription = Subscription(
                status=(
                    SubscriptionStatus.TRIALING if trial_end else SubscriptionStatus.ACTIVE
                ),
                billing_cycle=txn.billing_cycle,
                current_period_start=start,
                current_period_end=end,
                renewal_date=end,
                trial_end=trial_end,
                auto_renew=True,
                cancel_at_period_end=False,
                discount_percentage=(
                    pricing.renewal_discount_percentage if pricing else Decimal("0")
                ),
                renewal_count=0,
            )
            enrollment.expires_at = end
        else:
            enrollment.expires_at = None

        self.db.flush()
        txn.enrollment_id = enrollment.id

        record_audit(
            enrollment,
            action,
            actor=actor,
            previous_status=previous_status,
            new_status=EnrollmentStatus.ACTIVE,
            details={
                "transaction_id": txn.transaction_id,
                "amount": str(txn.amount_total),
                "enrollment_type": txn.enrollment_type.value,
                "billing_cycle": txn.billing_cycle.value if txn.billing_cycle else None,
            },
        )
        record_audit(
            enrollment,
            AuditAction.PAYMENT_COMPLETED,
            actor=actor,
            details={
                "transaction_id": txn.transaction_id,
                "payment_id": txn.gateway_payment_id,
                "guru_share": str(txn.guru_share),
                "platform_share": str(txn.platform_share),
            },
        )
        self.db.flush()
        return enrollment

    def _activate_renewal(
        self, txn: PaymentTransaction, actor: Optional[Principal]
    ) -> Enrollment:
        now = utcnow()
        enrollment = load_enrollment(self.db, txn.enrollment_id, lock=True)
        subscription = enrollment.subscription
        refresh_lifecycle(enrollment, now)

        previous_subscription = subscription.status
        ensure_subscription_transition(
            previous_subscription,
            SubscriptionStatus.ACTIVE,
            f"Subscription is {previous_subscription.value}; renewal cannot be applied",
        )
        previous_status = enrollment.status
        if enrollment.status != EnrollmentStatus.ACTIVE:
            ensure_enrollment_transition(enrollment.status, EnrollmentStatus.ACTIVE)
            enrollment.status = EnrollmentStatus.ACTIVE

        cycle = txn.billing_cycle or subscription.billing_cycle
        end = add_months(now, cycle.months)
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.billing_cycle = cycle
        subscription.next_billing_cycle = None
        subscription.current_period_start = now
        subscription.current_period_end = end
        subscription.renewal_date = end
        subscription.trial_end = None
        subscription.auto_renew = True
        subscription.cancel_at_period_end = False
        subscription.paused_at = None
        subscription.pause_end_date = None
        subscription.pause_reason = None
        subscription.cancelled_at = None
        subscription.cancel_reason = None
        subscription.renewal_count = (subscription.renewal_count or 0) + 1

        enrollment.expires_at = end
        enrollment.access_active = True
        self._copy_payment_summary(enrollment, txn)
        enrollment.touch()

        record_audit(
            enrollment,
            AuditAction.SUBSCRIPTION_RENEWED,
            actor=actor,
            previous_status=previous_subscription,
            new_status=SubscriptionStatus.ACTIVE,
            details={
                "transaction_id": txn.transaction_id,
                "billing_cycle": cycle.value,
                "period_end": end.isoformat(),
                "enrollment_status": previous_status.value,
            },
        )
        self.db.flush()
        return enrollment

    # ==================== Reads ====================

    def get_enrollment(self, principal: Principal, enrollment_id: int) -> Enrollment:
        enrollment = load_enrollment(self.db, enrollment_id)
        authorize(enrollment, principal, allow_guru=True)
        if refresh_lifecycle(enrollment):
            self.db.commit()
            self.db.refresh(enrollment)
        return enrollment

    def _paginated(self, query, page: int, size: int) -> Tuple[List[Enrollment], dict]:
        total = query.count()
        enrollments = (
            query.options(joinedload(Enrollment.course))
            .order_by(Enrollment.enrolled_at.desc(), Enrollment.id.desc())
            .offset((page - 1) * size)
            .limit(size)
            .all()
        )
        if any([refresh_lifecycle(e) for e in enrollments]):
            self.db.commit()
        pagination = {
            "total": total,
            "page": page,
            "size": size,
            "total_pages": math.ceil(total / size) if size > 0 else 0,
        }
        return enrollments, pagination

    def list_for_learner(
        self,
        learner_id: int,
        status: Optional[EnrollmentStatus] = None,
        enrollment_type: Optional[EnrollmentType] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[Enrollment], dict]:
        query = self.db.query(Enrollment).filter(Enrollment.learner_id == learner_id)
        if status:
            query = query.filter(Enrollment.status == status)
        if enrollment_type:
            query = query.filter(Enrollment.enrollment_type == enrollment_type)
        return self._paginated(query, page, size)

    def list_for_guru(
        self,
        guru_id: int,
        course_id: Optional[int] = None,
        status: Optional[EnrollmentStatus] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[Enrollment], dict]:
        query = self.db.query(Enrollment).filter(Enrollment.guru_id == guru_id)
        if course_id:
            query = query.filter(Enrollment.course_id == course_id)
        if status:
            query = query.filter(Enrollment.status == status)
        return self._paginated(query, page, size)

    # ==================== Access ====================

    @db_exception
    def validate_access(
        self,
        principal: Principal,
        enrollment_id: int,
        device_id: Optional[str] = None,
    ) -> AccessValidationResponse:
        enrollment = load_enrollment(self.db, enrollment_id, lock=True)
        authorize(enrollment, principal)

        now = utcnow()
        if refresh_lifecycle(enrollment, now):
            self.db.commit()

        if enrollment.status == EnrollmentStatus.EXPIRED or (
            enrollment.expires_at is not None and enrollment.expires_at <= now
        ):
            raise AccessExpired(
                data={
                    "expires_at": (
                        enrollment.expires_at.isoformat() if enrollment.expires_at else None
                    )
                }
            )
        if enrollment.status != EnrollmentStatus.ACTIVE or not enrollment.access_active:
            raise NotActive(data={"status": enrollment.status.value})
        subscription = enrollment.subscription
        if subscription is not None and subscription.status == SubscriptionStatus.PAUSED:
            raise NotActive("Subscription is paused", data={"status": "paused"})

        if device_id:
            device = next(
                (d for d in enrollment.active_devices if d.device_id == device_id),
                None,
            )
            if device is None:
                raise DeviceNotRegistered(data={"device_id": device_id})
            device.last_seen_at = now

        enrollment.last_accessed_at = now
        self.db.commit()

        days_until_expiry = None
        if enrollment.expires_at is not None:
            days_until_expiry = max(0, (enrollment.expires_at - now).days)
        return AccessValidationResponse(
            valid=True,
            enrollment_id=enrollment.id,
            status=enrollment.status,
            expires_at=enrollment.expires_at,
            days_until_expiry=days_until_expiry,
            device_id=device_id,
        )

    # ==================== Progress ====================

    @db_exception
    def update_progress(
        self,
        principal: Principal,
        enrollment_id: int,
        lecture_id: str,
        time_spent: int = 0,
    ) -> Enrollment:
        enrollment = load_enrollment(self.db, enrollment_id, lock=True)
        authorize(enrollment, principal)
        now = utcnow()
        if refresh_lifecycle(enrollment, now):
            self.db.commit()
        if enrollment.status == EnrollmentStatus.EXPIRED:
            raise AccessExpired()
        if enrollment.status != EnrollmentStatus.ACTIVE or not enrollment.access_active:
            raise NotActive()

        completion = next(
            (c for c in enrollment.completed_lectures if c.lecture_id == lecture_id),
            None,
        )
        newly_completed = completion is None
        if newly_completed:
            completion = LectureCompletion(
                lecture_id=lecture_id, time_spent=time_spent, completed_at=now
            )
            enrollment.completed_lectures.append(completion)
        else:
            completion.time_spent = (completion.time_spent or 0) + time_spent

        enrollment.total_time_spent = (enrollment.total_time_spent or 0) + time_spent
        enrollment.last_accessed_at = now

        pricing = self.catalog.get_pricing(enrollment.course_id)
        total_lectures = pricing.total_lectures if pricing else 0
        if total_lectures > 0:
            completed = len(enrollment.completed_lectures)
            enrollment.overall_progress = min(100, round(completed * 100 / total_lectures))
        if enrollment.overall_progress >= 100:
            enrollment.certificate_eligible = True
            if enrollment.completed_at is None:
                enrollment.completed_at = now
        enrollment.touch()

        if newly_completed:
            record_audit(
                enrollment,
                AuditAction.PROGRESS_UPDATED,
                actor=principal,
                details={
                    "lecture_id": lecture_id,
                    "overall_progress": enrollment.overall_progress,
                },
            )
        self.db.commit()
        self.db.refresh(enrollment)
        return enrollment

    @db_exception
    def issue_certificate(self, principal: Principal, enrollment_id: int) -> Enrollment:
        enrollment = load_enrollment(self.db, enrollment_id, lock=True)
        if not principal.is_admin and not (
            principal.is_guru and enrollment.guru_id == principal.id
        ):
            raise PermissionDenied("Only the course guru or an admin can issue certificates")
        if enrollment.certificate_issued:
            return enrollment
        if not enrollment.certificate_eligible:
            raise CertificateNotEligible(
                data={"overall_progress": enrollment.overall_progress}
            )
        enrollment.certificate_issued = True
        enrollment.certificate_issued_at = utcnow()
        record_audit(enrollment, AuditAction.CERTIFICATE_ISSUED, actor=principal)
        self.db.commit()
        self.db.refresh(enrollment)
        return enrollment

    # ==================== Administration ====================

    @db_exception
    def suspend(
        self,
        principal: Principal,
        enrollment_id: int,
        reason: str,
        ip_address: Optional[str] = None,
    ) -> Enrollment:
        enrollment = load_enrollment(self.db, enrollment_id, lock=True)
        refresh_lifecycle(enrollment)
        previous = enrollment.status
        ensure_enrollment_transition(previous, EnrollmentStatus.SUSPENDED)
        enrollment.status = EnrollmentStatus.SUSPENDED
        enrollment.access_active = False
        enrollment.suspension_reason = reason
        record_audit(
            enrollment,
            AuditAction.SUSPENDED,
            actor=principal,
            previous_status=previous,
            new_status=EnrollmentStatus.SUSPENDED,
            reason=reason,
            ip_address=ip_address,
        )
        self.db.commit()
        self.db.refresh(enrollment)
        logger.info(f"Enrollment {enrollment_id} suspended by {principal.id}: {reason}")
        return enrollment

    @db_exception
    def reinstate(
        self,
        principal: Principal,
        enrollment_id: int,
        ip_address: Optional[str] = None,
    ) -> Enrollment:
        enrollment = load_enrollment(self.db, enrollment_id, lock=True)
        if refresh_lifecycle(enrollment):
            # access lapsed while suspended
            self.db.commit()
        if enrollment.status != EnrollmentStatus.SUSPENDED:
            raise InvalidState(
                f"Enrollment is {enrollment.status.value}; only suspended enrollments "
                "can be reinstated"
            )
        ensure_enrollment_transition(enrollment.status, EnrollmentStatus.ACTIVE)
        enrollment.status = EnrollmentStatus.ACTIVE
        enrollment.access_active = True
        enrollment.suspension_reason = None
        record_audit(
            enrollment,
            AuditAction.REACTIVATED,
            actor=principal,
            previous_status=EnrollmentStatus.SUSPENDED,
            new_status=EnrollmentStatus.ACTIVE,
            ip_address=ip_address,
        )
        self.db.commit()
        self.db.refresh(enrollment)
        return enrollment

    # ==================== Refunds ====================

    @db_exception
    def apply_refund(
        self,
        transaction_id: str,
        amount: Optional[Decimal],
        reason: str,
        actor: Optional[Principal] = None,
        reference: Optional[str] = None,
        source: EventSource = EventSource.ADMIN,
        commit: bool = True,
    ) -> PaymentTransaction:
        """
        Refund through the ledger; a full refund of the payment that
        activated an enrollment also revokes its access.
        """
        txn = self.ledger.process_refund(
            transaction_id,
            amount,
            reason,
            actor_id=actor.id if actor else None,
            reference=reference,
            source=source,
            commit=False,
        )

        if txn.status == TransactionStatus.REFUNDED and txn.enrollment_id is not None:
            enrollment = load_enrollment(self.db, txn.enrollment_id, lock=True)
            if (
                enrollment.activating_transaction_id == txn.id
                and enrollment.status
                in (EnrollmentStatus.ACTIVE, EnrollmentStatus.SUSPENDED)
            ):
                previous = enrollment.status
                ensure_enrollment_transition(previous, EnrollmentStatus.CANCELLED)
                enrollment.status = EnrollmentStatus.CANCELLED
                enrollment.access_active = False
                enrollment.payment_status = txn.status.value
                subscription = enrollment.subscription
                if (
                    subscription is not None
                    and subscription.status not in TERMINAL_SUBSCRIPTION_STATES
                    and can_transition_subscription(
                        subscription.status, SubscriptionStatus.CANCELLED
                    )
                ):
                    subscription.status = SubscriptionStatus.CANCELLED
                    subscription.auto_renew = False
                    subscription.cancelled_at = utcnow()
                    subscription.cancel_reason = "Refunded"
                record_audit(
                    enrollment,
                    AuditAction.REFUNDED,
                    actor=actor,
                    previous_status=previous,
                    new_status=EnrollmentStatus.CANCELLED,
                    reason=reason,
                    details={
                        "transaction_id": txn.transaction_id,
                        "refunded_amount": str(txn.refunded_amount),
                    },
                )
                logger.info(
                    f"Enrollment {enrollment.id} cancelled after full refund of "
                    f"{txn.transaction_id}"
                )

        if commit:
            self.db.commit()
            self.db.refresh(txn)
        else:
            self.db.flush()
        return txn
