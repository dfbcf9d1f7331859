# app/services/subscription.py
import logging
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

from app.core.config import Settings, settings
from app.core.decorator import db_exception
from app.core.exceptions import (
    AlreadyCancelled,
    ConcurrentModification,
    CourseNotAvailable,
    InvalidState,
    NotASubscription,
    RenewalNotNeeded,
)
from app.models.enrollment import Enrollment
from app.models.enums import (
    AuditAction,
    BillingCycle,
    EnrollmentStatus,
    EnrollmentType,
    SubscriptionStatus,
    TransactionKind,
)
from app.models.subscription import Subscription
from app.schemas.auth import Principal
from app.schemas.payment import AmountBreakdown
from app.schemas.subscription import (
    MySubscriptionsResponse,
    PreferencesRequest,
    RenewalResponse,
    SubscriptionCounts,
    SubscriptionListItem,
)
from app.services.audit import record_audit
from app.services.course_catalog import CourseCatalog, SqlCourseCatalog
from app.services.enrollment import open_order, resume_open_checkout
from app.services.lifecycle import authorize, load_enrollment, refresh_lifecycle
from app.services.payment_transaction import PaymentLedgerService, quantize
from app.services.transitions import (
    PAUSABLE_SUBSCRIPTION_STATES,
    RENEWABLE_SUBSCRIPTION_STATES,
    TERMINAL_SUBSCRIPTION_STATES,
    ensure_enrollment_transition,
    ensure_subscription_transition,
)
from app.utils.datetime_utils import utcnow
from app.utils.razorpay_client import PaymentGateway, to_minor_units

logger = logging.getLogger(__name__)


class SubscriptionService:
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

    def _load(self, principal: Principal, enrollment_id: int):
        enrollment = load_enrollment(self.db, enrollment_id, lock=True)
        authorize(enrollment, principal)
        if enrollment.enrollment_type != EnrollmentType.SUBSCRIPTION or (
            enrollment.subscription is None
        ):
            raise NotASubscription(data={"enrollment_id": enrollment_id})
        if refresh_lifecycle(enrollment):
            self.db.commit()
        return enrollment, enrollment.subscription

    # ==================== Pause / Resume ====================

    @db_exception
    def pause(
        self,
        principal: Principal,
        enrollment_id: int,
        reason: Optional[str] = None,
        duration_days: Optional[int] = None,
        ip_address: Optional[str] = None,
    ) -> Enrollment:
        enrollment, subscription = self._load(principal, enrollment_id)
        previous = subscription.status
        if previous not in PAUSABLE_SUBSCRIPTION_STATES:
            raise InvalidState(
                f"Cannot pause a subscription that is {previous.value}",
                data={"status": previous.value},
            )
        ensure_subscription_transition(previous, SubscriptionStatus.PAUSED)

        now = utcnow()
        subscription.status = SubscriptionStatus.PAUSED
        subscription.auto_renew = False
        subscription.paused_at = now
        subscription.pause_end_date = (
            now + timedelta(days=duration_days) if duration_days else None
        )
        subscription.pause_reason = reason
        enrollment.touch()
        record_audit(
            enrollment,
            AuditAction.SUBSCRIPTION_PAUSED,
            actor=principal,
            previous_status=previous,
            new_status=SubscriptionStatus.PAUSED,
            reason=reason,
            details={"duration_days": duration_days},
            ip_address=ip_address,
        )
        self.db.commit()
        self.db.refresh(enrollment)
        logger.info(f"Subscription of enrollment {enrollment_id} paused")
        return enrollment

    @db_exception
    def resume(
        self,
        principal: Principal,
        enrollment_id: int,
        ip_address: Optional[str] = None,
    ) -> Enrollment:
        enrollment, subscription = self._load(principal, enrollment_id)
        if subscription.status != SubscriptionStatus.PAUSED:
            raise InvalidState(
                f"Cannot resume a subscription that is {subscription.status.value}",
                data={"status": subscription.status.value},
            )
        ensure_subscription_transition(subscription.status, SubscriptionStatus.ACTIVE)

        paused_for = None
        if subscription.paused_at:
            paused_for = (utcnow() - subscription.paused_at).days
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.auto_renew = True
        subscription.cancel_at_period_end = False
        subscription.paused_at = None
        subscription.pause_end_date = None
        subscription.pause_reason = None
        enrollment.touch()
        record_audit(
            enrollment,
            AuditAction.SUBSCRIPTION_RESUMED,
            actor=principal,
            previous_status=SubscriptionStatus.PAUSED,
            new_status=SubscriptionStatus.ACTIVE,
            details={"paused_days": paused_for},
            ip_address=ip_address,
        )
        self.db.commit()
        self.db.refresh(enrollment)
        logger.info(f"Subscription of enrollment {enrollment_id} resumed")
        return enrollment

    # ==================== Cancel ====================

    @db_exception
    def cancel(
        self,
        principal: Principal,
        enrollment_id: int,
        reason: Optional[str] = None,
        immediate: bool = False,
        feedback: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Enrollment:
        enrollment, subscription = self._load(principal, enrollment_id)
        previous = subscription.status
        if previous in TERMINAL_SUBSCRIPTION_STATES:
            logger.info(f"Cancel on enrollment {enrollment_id} ignored: already {previous.value}")
            raise AlreadyCancelled(data={"status": previous.value})

        now = utcnow()
        subscription.auto_renew = False
        subscription.cancelled_at = now
        subscription.cancel_reason = reason
        subscription.cancel_feedback = feedback

        if immediate:
            ensure_subscription_transition(previous, SubscriptionStatus.CANCELLED)
            previous_status = enrollment.status
            subscription.status = SubscriptionStatus.CANCELLED
            subscription.cancel_at_period_end = False
            subscription.renewal_date = None
            if previous_status != EnrollmentStatus.CANCELLED:
                ensure_enrollment_transition(previous_status, EnrollmentStatus.CANCELLED)
                enrollment.status = EnrollmentStatus.CANCELLED
            enrollment.access_active = False
            new_status = SubscriptionStatus.CANCELLED
        else:
            # access continues until the period ends; lazy expiry finalizes it
            subscription.cancel_at_period_end = True
            new_status = previous

        enrollment.touch()
        record_audit(
            enrollment,
            AuditAction.SUBSCRIPTION_CANCELLED,
            actor=principal,
            previous_status=previous,
            new_status=new_status,
            reason=reason,
            details={
                "immediate": immediate,
                "effective_at": (
                    now.isoformat()
                    if immediate
                    else subscription.current_period_end.isoformat()
                ),
            },
            ip_address=ip_address,
        )
        self.db.commit()
        self.db.refresh(enrollment)
        logger.info(
            f"Subscription of enrollment {enrollment_id} cancelled "
            f"({'immediately' if immediate else 'at period end'})"
        )
        return enrollment

    # ==================== Renew ====================

    @db_exception
    def renew(
        self,
        principal: Principal,
        enrollment_id: int,
        billing_cycle: Optional[BillingCycle] = None,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RenewalResponse:
        """
        Open a renewal payment. The subscription keeps its status until
        the renewal transaction is confirmed.
        """
        enrollment, subscription = self._load(principal, enrollment_id)
        status = subscription.status
        if status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            raise RenewalNotNeeded(data={"status": status.value})
        if status not in RENEWABLE_SUBSCRIPTION_STATES:
            raise InvalidState(
                f"Cannot renew a subscription that is {status.value}",
                data={"status": status.value},
            )

        pricing = self.catalog.get_pricing(enrollment.course_id)
        if not pricing:
            raise CourseNotAvailable(data={"course_id": enrollment.course_id})

        cycle = billing_cycle or subscription.next_billing_cycle or subscription.billing_cycle
        base_price = pricing.price_for(EnrollmentType.SUBSCRIPTION, cycle)
        discount_pct = Decimal(subscription.discount_percentage or 0)
        discount = quantize(base_price * discount_pct / Decimal("100"))

        txn = resume_open_checkout(
            self.ledger,
            self.gateway,
            enrollment.learner_id,
            enrollment.course_id,
            TransactionKind.RENEWAL,
            cycle,
            base_price,
            enrollment_id=enrollment.id,
        )
        if txn is None:
            txn = self.ledger.create_pending_transaction(
                learner_id=enrollment.learner_id,
                course_id=enrollment.course_id,
                guru_id=enrollment.guru_id,
                enrollment_type=EnrollmentType.SUBSCRIPTION,
                amount=AmountBreakdown(
                    base_price=base_price,
                    discount=discount,
                    currency=pricing.currency or self.config.payment_currency,
                ),
                billing_cycle=cycle,
                kind=TransactionKind.RENEWAL,
                enrollment_id=enrollment.id,
                client_ip=client_ip,
                user_agent=user_agent,
                commit=False,
            )
            record_audit(
                enrollment,
                AuditAction.SUBSCRIPTION_RENEWAL_REQUESTED,
                actor=principal,
                previous_status=status,
                new_status=status,
                details={
                    "transaction_id": txn.transaction_id,
                    "billing_cycle": cycle.value,
                    "amount": str(txn.amount_total),
                },
                ip_address=client_ip,
            )
            self.db.commit()
            self.db.refresh(txn)

            txn = open_order(self.ledger, self.gateway, txn)
            logger.info(
                f"Renewal {txn.transaction_id} opened for enrollment {enrollment_id} "
                f"({cycle.value}, {txn.amount_total} {txn.currency})"
            )
        return RenewalResponse(
            enrollment_id=enrollment.id,
            transaction_id=txn.transaction_id,
            order_id=txn.gateway_order_id,
            amount=txn.amount_total,
            amount_minor=to_minor_units(txn.amount_total),
            currency=txn.currency,
            gateway_key_id=self.gateway.key_id,
            billing_cycle=cycle,
            discount_percentage=discount_pct,
        )

    # ==================== Preferences ====================

    @db_exception
    def update_preferences(
        self,
        principal: Principal,
        enrollment_id: int,
        preferences: PreferencesRequest,
        ip_address: Optional[str] = None,
    ) -> Enrollment:
        enrollment, subscription = self._load(principal, enrollment_id)
        changes = {}

        if preferences.billing_cycle is not None or preferences.auto_renew is not None:
            if subscription.status in TERMINAL_SUBSCRIPTION_STATES:
                raise AlreadyCancelled(data={"status": subscription.status.value})

        if preferences.billing_cycle is not None:
            pricing = self.catalog.get_pricing(enrollment.course_id)
            if not pricing:
                raise CourseNotAvailable(data={"course_id": enrollment.course_id})
            # validates that the course actually sells this cycle
            pricing.price_for(EnrollmentType.SUBSCRIPTION, preferences.billing_cycle)
            subscription.next_billing_cycle = (
                None
                if preferences.billing_cycle == subscription.billing_cycle
                else preferences.billing_cycle
            )
            changes["billing_cycle"] = preferences.billing_cycle.value

        if preferences.auto_renew is not None:
            subscription.auto_renew = preferences.auto_renew
            subscription.cancel_at_period_end = not preferences.auto_renew
            if preferences.auto_renew:
                subscription.cancelled_at = None
                subscription.cancel_reason = None
            changes["auto_renew"] = preferences.auto_renew

        if preferences.device_limit is not None:
            limit = preferences.device_limit
            if limit > self.config.max_device_limit:
                raise InvalidState(
                    f"Device limit cannot exceed {self.config.max_device_limit}",
                    field="device_limit",
                )
            if limit < enrollment.active_device_count:
                raise InvalidState(
                    f"{enrollment.active_device_count} devices are active; "
                    "remove devices before lowering the limit",
                    data={"active_devices": enrollment.active_device_count},
                    field="device_limit",
                )
            enrollment.device_limit = limit
            changes["device_limit"] = limit

        enrollment.touch()
        record_audit(
            enrollment,
            AuditAction.PREFERENCES_UPDATED,
            actor=principal,
            details=changes,
            ip_address=ip_address,
        )
        self.db.commit()
        self.db.refresh(enrollment)
        return enrollment

    # ==================== Listing ====================

    def list_for_learner(
        self, learner_id: int, status: Optional[SubscriptionStatus] = None
    ) -> MySubscriptionsResponse:
        enrollments = (
            self.db.query(Enrollment)
            .options(joinedload(Enrollment.course), joinedload(Enrollment.subscription))
            .filter(
                Enrollment.learner_id == learner_id,
                Enrollment.enrollment_type == EnrollmentType.SUBSCRIPTION,
            )
            .all()
        )
        if any([refresh_lifecycle(e) for e in enrollments]):
            self.db.commit()

        now = utcnow()
        counts = SubscriptionCounts()
        items: List[SubscriptionListItem] = []
        for enrollment in enrollments:
            subscription = enrollment.subscription
            if subscription is None:
                continue
            counts.total += 1
            setattr(
                counts,
                subscription.status.value,
                getattr(counts, subscription.status.value) + 1,
            )
            if status and subscription.status != status:
                continue
            days_until_renewal = None
            if subscription.renewal_date and subscription.renewal_date > now:
                days_until_renewal = (subscription.renewal_date - now).days
            items.append(
                SubscriptionListItem(
                    enrollment_id=enrollment.id,
                    course_id=enrollment.course_id,
                    course_title=enrollment.course.title if enrollment.course else None,
                    status=subscription.status,
                    billing_cycle=subscription.billing_cycle,
                    current_period_end=subscription.current_period_end,
                    renewal_date=subscription.renewal_date,
                    auto_renew=subscription.auto_renew,
                    cancel_at_period_end=subscription.cancel_at_period_end,
                    days_until_renewal=days_until_renewal,
                )
            )
        items.sort(key=lambda item: item.current_period_end)
        return MySubscriptionsResponse(subscriptions=items, summary=counts)

    # ==================== Sweep ====================

    def due_enrollment_ids(self) -> List[int]:
        now = utcnow()
        live = [
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.TRIALING,
            SubscriptionStatus.PAUSED,
        ]
        subscription_due = (
            self.db.query(Subscription.enrollment_id)
            .filter(
                or_(
                    Subscription.status.in_(live) & (Subscription.current_period_end <= now),
                    (Subscription.status == SubscriptionStatus.PAUSED)
                    & (Subscription.pause_end_date <= now),
                    (Subscription.status == SubscriptionStatus.TRIALING)
                    & (Subscription.trial_end <= now),
                )
            )
            .all()
        )
        access_due = (
            self.db.query(Enrollment.id)
            .filter(
                Enrollment.status.in_(
                    [EnrollmentStatus.ACTIVE, EnrollmentStatus.SUSPENDED]
                ),
                Enrollment.expires_at.isnot(None),
                Enrollment.expires_at <= now,
            )
            .all()
        )
        return sorted({row[0] for row in subscription_due} | {row[0] for row in access_due})

    @db_exception
    def _refresh_one(self, enrollment_id: int) -> bool:
        enrollment = load_enrollment(self.db, enrollment_id, lock=True)
        changed = refresh_lifecycle(enrollment)
        self.db.commit()
        return changed

    def expire_due(self) -> int:
        """
        Apply due lifecycle transitions to every enrollment that needs one.
        Runs the same routine as the lazy check; each enrollment commits on
        its own.
        """
        updated = 0
        for enrollment_id in self.due_enrollment_ids():
            try:
                if self._refresh_one(enrollment_id):
                    updated += 1
            except ConcurrentModification:
                logger.info(f"Enrollment {enrollment_id} changed concurrently; skipped")
        if updated:
            logger.info(f"Lifecycle sweep updated {updated} enrollments")
        return updated
