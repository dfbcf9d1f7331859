import pytest

from app.core.exceptions import InvalidState
from app.models.enums import EnrollmentStatus, SubscriptionStatus
from app.services.transitions import (
    ENROLLMENT_TRANSITIONS,
    SUBSCRIPTION_TRANSITIONS,
    can_transition_enrollment,
    can_transition_subscription,
    ensure_enrollment_transition,
    ensure_subscription_transition,
)


def test_every_status_has_a_transition_entry():
    assert set(ENROLLMENT_TRANSITIONS) == set(EnrollmentStatus)
    assert set(SUBSCRIPTION_TRANSITIONS) == set(SubscriptionStatus)


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        (EnrollmentStatus.PENDING, EnrollmentStatus.ACTIVE, True),
        (EnrollmentStatus.ACTIVE, EnrollmentStatus.SUSPENDED, True),
        (EnrollmentStatus.SUSPENDED, EnrollmentStatus.ACTIVE, True),
        (EnrollmentStatus.EXPIRED, EnrollmentStatus.ACTIVE, True),
        (EnrollmentStatus.EXPIRED, EnrollmentStatus.SUSPENDED, False),
        (EnrollmentStatus.CANCELLED, EnrollmentStatus.EXPIRED, False),
        (EnrollmentStatus.PENDING, EnrollmentStatus.EXPIRED, False),
    ],
)
def test_enrollment_transitions(current, target, allowed):
    assert can_transition_enrollment(current, target) is allowed


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        (SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, True),
        (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED, True),
        (SubscriptionStatus.PAUSED, SubscriptionStatus.ACTIVE, True),
        (SubscriptionStatus.PAST_DUE, SubscriptionStatus.ACTIVE, True),
        (SubscriptionStatus.EXPIRED, SubscriptionStatus.PAST_DUE, True),
        (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE, False),
        (SubscriptionStatus.CANCELLED, SubscriptionStatus.PAUSED, False),
        (SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED, False),
    ],
)
def test_subscription_transitions(current, target, allowed):
    assert can_transition_subscription(current, target) is allowed


def test_rejected_transition_raises_invalid_state():
    with pytest.raises(InvalidState) as exc_info:
        ensure_enrollment_transition(EnrollmentStatus.EXPIRED, EnrollmentStatus.SUSPENDED)
    assert exc_info.value.data == {
        "current_status": "expired",
        "target_status": "suspended",
    }

    with pytest.raises(InvalidState, match="custom"):
        ensure_subscription_transition(
            SubscriptionStatus.CANCELLED, SubscriptionStatus.PAUSED, "custom message"
        )


def test_allowed_transition_passes_silently():
    ensure_enrollment_transition(EnrollmentStatus.PENDING, EnrollmentStatus.ACTIVE)
    ensure_subscription_transition(SubscriptionStatus.PAUSED, SubscriptionStatus.ACTIVE)
