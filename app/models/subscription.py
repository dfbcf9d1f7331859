# app/models/subscription.py
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)

from app.core.database import Base
from app.models.enums import BillingCycle, SubscriptionStatus
from app.utils.datetime_utils import utcnow


class Subscription(Base):
    """Billing schedule of a subscription enrollment (one-to-one)."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint(
            "current_period_end > current_period_start",
            name="ck_subscription_period_order",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    enrollment_id = Column(
        Integer,
        ForeignKey("enrollments.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    status = Column(
        Enum(SubscriptionStatus, native_enum=False, length=20),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
        index=True,
    )
    billing_cycle = Column(
        Enum(BillingCycle, native_enum=False, length=20), nullable=False
    )
    # Cycle to bill at the next period if changed through preferences
    next_billing_cycle = Column(
        Enum(BillingCycle, native_enum=False, length=20), nullable=True
    )

    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    renewal_date = Column(DateTime, nullable=True, index=True)
    trial_end = Column(DateTime, nullable=True)

    auto_renew = Column(Boolean, nullable=False, default=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    discount_percentage = Column(Numeric(5, 2), nullable=False, default=0)

    # Pause metadata
    paused_at = Column(DateTime, nullable=True)
    pause_end_date = Column(DateTime, nullable=True)
    pause_reason = Column(String(500), nullable=True)

    # Cancel metadata
    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String(500), nullable=True)
    cancel_feedback = Column(Text, nullable=True)

    renewal_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return (
            f"<Subscription(enrollment_id={self.enrollment_id}, status={self.status}, "
            f"cycle={self.billing_cycle})>"
        )
