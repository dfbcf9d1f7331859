# app/services/transitions.py
"""
Transition tables for the two state machines of an enrollment.

Every status change goes through ``ensure_*_transition``; a move that is
not listed here is rejected with ``InvalidState``.
"""

from typing import Dict, FrozenSet, Optional

from app.core.exceptions import InvalidState
from app.models.enums import EnrollmentStatus, SubscriptionStatus

ENROLLMENT_TRANSITIONS: Dict[EnrollmentStatus, FrozenSet[EnrollmentStatus]] = {
    EnrollmentStatus.PENDING: frozenset(
        {EnrollmentStatus.ACTIVE, EnrollmentStatus.CANCELLED}
    ),
    EnrollmentStatus.ACTIVE: frozenset(
        {
            EnrollmentStatus.SUSPENDED,
            EnrollmentStatus.EXPIRED,
            EnrollmentStatus.CANCELLED,
        }
    ),
    EnrollmentStatus.SUSPENDED: frozenset(
        {
            EnrollmentStatus.ACTIVE,
            EnrollmentStatus.EXPIRED,
            EnrollmentStatus.CANCELLED,
        }
    ),
    # Re-purchase or renewal opens a fresh access window
    EnrollmentStatus.EXPIRED: frozenset({EnrollmentStatus.ACTIVE}),
    EnrollmentStatus.CANCELLED: frozenset({EnrollmentStatus.ACTIVE}),
}

SUBSCRIPTION_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    SubscriptionStatus.TRIALING: frozenset(
        {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAUSED,
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.EXPIRED,
        }
    ),
    SubscriptionStatus.ACTIVE: frozenset(
        {
            SubscriptionStatus.PAUSED,
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.EXPIRED,
        }
    ),
    SubscriptionStatus.PAUSED: frozenset(
        {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.EXPIRED,
        }
    ),
    SubscriptionStatus.PAST_DUE: frozenset(
        {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.EXPIRED,
        }
    ),
    # Only an explicit renewal leaves a terminal state; a declined renewal
    # payment parks the subscription in past_due until the retry succeeds.
    SubscriptionStatus.CANCELLED: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}
    ),
    SubscriptionStatus.EXPIRED: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}
    ),
}

TERMINAL_SUBSCRIPTION_STATES = frozenset(
    {SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED}
)
RENEWABLE_SUBSCRIPTION_STATES = frozenset(
    {
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELLED,
    }
)
PAUSABLE_SUBSCRIPTION_STATES = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}
)


def can_transition_enrollment(
    current: EnrollmentStatus, target: EnrollmentStatus
) -> bool:
    return target in ENROLLMENT_TRANSITIONS.get(current, frozenset())


def can_transition_subscription(
    current: SubscriptionStatus, target: SubscriptionStatus
) -> bool:
    return target in SUBSCRIPTION_TRANSITIONS.get(current, frozenset())


def ensure_enrollment_transition(
    current: EnrollmentStatus, target: EnrollmentStatus, message: Optional[str] = None
) -> None:
    if not can_transition_enrollment(current, target):
        raise InvalidState(
            message
            or f"Enrollment cannot move from '{current.value}' to '{target.value}'",
            data={"current_status": current.value, "target_status": target.value},
        )


def ensure_subscription_transition(
    current: SubscriptionStatus,
    target: SubscriptionStatus,
    message: Optional[str] = None,
) -> None:
    if not can_transition_subscription(current, target):
        raise InvalidState(
            message
            or f"Subscription cannot move from '{current.value}' to '{target.value}'",
            data={"current_status": current.value, "target_status": target.value},
        )
