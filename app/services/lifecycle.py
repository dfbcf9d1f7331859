# app/services/lifecycle.py
"""
Lazy lifecycle evaluation shared by the enrollment, subscription and device
services.

No timer drives status changes: every load of an enrollment for a read or
a write first runs ``refresh_lifecycle`` so that trial ends, timed pauses
and period expiry are applied before anything else looks at the state.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.core.exceptions import EnrollmentNotFound, PermissionDenied
from app.models.enrollment import Enrollment
from app.models.enums import AuditAction, EnrollmentStatus, SubscriptionStatus
from app.schemas.auth import Principal
from app.services.audit import record_audit
from app.services.transitions import (
    can_transition_enrollment,
    ensure_subscription_transition,
)
from app.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

LIVE_SUBSCRIPTION_STATES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAUSED,
)


def load_enrollment(db: Session, enrollment_id: int, lock: bool = False) -> Enrollment:
    query = db.query(Enrollment).filter(Enrollment.id == enrollment_id)
    if lock:
        query = query.with_for_update()
    enrollment = query.first()
    if not enrollment:
        raise EnrollmentNotFound(data={"enrollment_id": enrollment_id})
    return enrollment


def authorize(
    enrollment: Enrollment, principal: Principal, allow_guru: bool = False
) -> None:
    """Owner or admin; the course's guru too when ``allow_guru`` is set."""
    if principal.is_admin or enrollment.learner_id == principal.id:
        return
    if allow_guru and principal.is_guru and enrollment.guru_id == principal.id:
        return
    raise PermissionDenied("You do not have access to this enrollment")


def _expire(enrollment: Enrollment, now: datetime) -> None:
    subscription = enrollment.subscription
    previous_subscription = subscription.status if subscription else None

    if subscription and subscription.status in LIVE_SUBSCRIPTION_STATES:
        ensure_subscription_transition(subscription.status, SubscriptionStatus.EXPIRED)
        subscription.status = SubscriptionStatus.EXPIRED
        subscription.auto_renew = False
        subscription.renewal_date = None

    previous_status = enrollment.status
    if can_transition_enrollment(enrollment.status, EnrollmentStatus.EXPIRED):
        enrollment.status = EnrollmentStatus.EXPIRED
    enrollment.access_active = False
    enrollment.touch()

    record_audit(
        enrollment,
        AuditAction.EXPIRED,
        previous_status=previous_status,
        new_status=enrollment.status,
        reason=(
            "Cancelled at period end"
            if subscription and subscription.cancel_at_period_end
            else "Access period ended"
        ),
        details={
            "subscription_status": (
                previous_subscription.value if previous_subscription else None
            ),
            "expired_at": now.isoformat(),
        },
    )
    logger.info(f"Enrollment {enrollment.id} expired ({previous_status.value} -> expired)")


def refresh_lifecycle(enrollment: Enrollment, now: Optional[datetime] = None) -> bool:
    """
    Apply time-based transitions that are due. Returns True when anything
    changed; the caller owns the commit.
    """
    now = now or utcnow()
    changed = False
    subscription = enrollment.subscription

    if subscription is not None and subscription.current_period_end > now:
        if (
            subscription.status == SubscriptionStatus.PAUSED
            and subscription.pause_end_date
            and subscription.pause_end_date <= now
        ):
            ensure_subscription_transition(subscription.status, SubscriptionStatus.ACTIVE)
            subscription.status = SubscriptionStatus.ACTIVE
            subscription.auto_renew = not subscription.cancel_at_period_end
            subscription.paused_at = None
            subscription.pause_end_date = None
            subscription.pause_reason = None
            enrollment.touch()
            record_audit(
                enrollment,
                AuditAction.SUBSCRIPTION_RESUMED,
                previous_status=SubscriptionStatus.PAUSED,
                new_status=SubscriptionStatus.ACTIVE,
                reason="Pause period ended",
            )
            changed = True

        if (
            subscription.status == SubscriptionStatus.TRIALING
            and subscription.trial_end
            and subscription.trial_end <= now
        ):
            ensure_subscription_transition(subscription.status, SubscriptionStatus.ACTIVE)
            subscription.status = SubscriptionStatus.ACTIVE
            enrollment.touch()
            record_audit(
                enrollment,
                AuditAction.SUBSCRIPTION_ACTIVATED,
                previous_status=SubscriptionStatus.TRIALING,
                new_status=SubscriptionStatus.ACTIVE,
                reason="Trial ended",
            )
            changed = True

    subscription_due = (
        subscription is not None
        and subscription.status in LIVE_SUBSCRIPTION_STATES
        and subscription.current_period_end <= now
    )
    access_due = (
        enrollment.status in (EnrollmentStatus.ACTIVE, EnrollmentStatus.SUSPENDED)
        and enrollment.expires_at is not None
        and enrollment.expires_at <= now
    )
    if subscription_due or access_due:
        _expire(enrollment, now)
        changed = True

    return changed
