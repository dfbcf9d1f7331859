# app/models/payment_transaction.py
from sqlalchemy import (
    JSON,
    Boolean,
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
from app.models.enums import (
    BillingCycle,
    EnrollmentType,
    PaymentEventType,
    RiskLevel,
    TransactionKind,
    TransactionStatus,
)
from app.utils.datetime_utils import utcnow


class PaymentTransaction(Base):
    """
    One payment attempt (purchase, retry or renewal).

    Immutable history once ``completed_at`` is set, except for the refund
    and revenue-distribution columns.
    """

    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(String(40), unique=True, nullable=False, index=True)
    kind = Column(
        Enum(TransactionKind, native_enum=False, length=20),
        nullable=False,
        default=TransactionKind.PURCHASE,
    )

    # References
    learner_id = Column(Integer, nullable=False, index=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    guru_id = Column(Integer, nullable=False, index=True)
    enrollment_id = Column(
        Integer, ForeignKey("enrollments.id"), nullable=True, index=True
    )
    enrollment_type = Column(
        Enum(EnrollmentType, native_enum=False, length=20), nullable=False
    )
    billing_cycle = Column(
        Enum(BillingCycle, native_enum=False, length=20), nullable=True
    )

    # Amount breakdown: total = base_price - discount + tax + processing_fee
    amount_total = Column(Numeric(10, 2), nullable=False)
    base_price = Column(Numeric(10, 2), nullable=False)
    discount = Column(Numeric(10, 2), nullable=False, default=0)
    discount_code = Column(String(50), nullable=True)
    tax = Column(Numeric(10, 2), nullable=False, default=0)
    processing_fee = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="INR")

    # Revenue split
    guru_share = Column(Numeric(10, 2), nullable=False)
    platform_share = Column(Numeric(10, 2), nullable=False)
    guru_share_percentage = Column(Numeric(5, 2), nullable=False, default=80)
    platform_share_percentage = Column(Numeric(5, 2), nullable=False, default=20)
    is_distributed = Column(Boolean, nullable=False, default=False, index=True)
    distributed_at = Column(DateTime, nullable=True)

    status = Column(
        Enum(TransactionStatus, native_enum=False, length=20),
        nullable=False,
        default=TransactionStatus.PENDING,
        index=True,
    )
    payment_method = Column(String(30), nullable=True)

    # Gateway references
    receipt = Column(String(40), nullable=True)
    gateway_order_id = Column(String(100), nullable=True, unique=True, index=True)
    gateway_payment_id = Column(String(100), nullable=True, index=True)
    gateway_signature = Column(String(255), nullable=True)

    failure_reason = Column(String(255), nullable=True)
    failure_code = Column(String(50), nullable=True)

    # Refunds (cumulative)
    refunded_amount = Column(Numeric(10, 2), nullable=False, default=0)
    refund_reason = Column(String(500), nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    refunded_by = Column(Integer, nullable=True)

    # Risk
    risk_score = Column(Integer, nullable=False, default=0)
    risk_level = Column(
        Enum(RiskLevel, native_enum=False, length=20),
        nullable=False,
        default=RiskLevel.LOW,
    )
    risk_factors = Column(JSON, nullable=False, default=list)
    review_required = Column(Boolean, nullable=False, default=False)

    # Client context
    country = Column(String(2), nullable=True)
    client_ip = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    initiated_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True, index=True)
    failed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_pending(self) -> bool:
        return self.status in (TransactionStatus.PENDING, TransactionStatus.PROCESSING)

    @property
    def is_unapplied(self) -> bool:
        """Paid, but the enrollment it paid for could not be activated."""
        return any(e.event == PaymentEventType.REVIEW_REQUIRED for e in self.events)

    @property
    def refundable_amount(self):
        return self.amount_total - (self.refunded_amount or 0)

    def __repr__(self):
        return (
            f"<PaymentTransaction(transaction_id='{self.transaction_id}', "
            f"status={self.status}, total={self.amount_total})>"
        )
