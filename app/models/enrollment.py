# app/models/enrollment.py
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)

from app.core.database import Base
from app.models.enums import EnrollmentStatus, EnrollmentType
from app.utils.datetime_utils import utcnow


class Enrollment(Base):
    """
    The aggregate binding a learner to a course.

    Devices, completed lectures and audit entries live in their own tables
    keyed by ``enrollment_id``; ``version`` is the optimistic lock that every
    mutation of the aggregate (including its child rows) bumps.
    """

    __tablename__ = "enrollments"
    __table_args__ = (
        UniqueConstraint("learner_id", "course_id", name="uq_enrollment_learner_course"),
    )

    id = Column(Integer, primary_key=True, index=True)

    # Identity
    learner_id = Column(Integer, nullable=False, index=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    guru_id = Column(Integer, nullable=False, index=True)
    enrollment_type = Column(
        Enum(EnrollmentType, native_enum=False, length=20), nullable=False
    )
    status = Column(
        Enum(EnrollmentStatus, native_enum=False, length=20),
        nullable=False,
        default=EnrollmentStatus.PENDING,
        index=True,
    )
    enrolled_at = Column(DateTime, default=utcnow, nullable=False)

    # Payment summary (denormalized from the activating transaction)
    activating_transaction_id = Column(Integer, nullable=True)  # payment_transactions.id
    payment_method = Column(String(30), nullable=True)
    payment_amount = Column(Numeric(10, 2), nullable=True)
    payment_currency = Column(String(3), nullable=True)
    payment_status = Column(String(20), nullable=False, default="pending")
    gateway_order_id = Column(String(100), nullable=True)
    gateway_payment_id = Column(String(100), nullable=True)
    payment_signature = Column(String(255), nullable=True)
    paid_at = Column(DateTime, nullable=True)
    guru_share = Column(Numeric(10, 2), nullable=True)
    platform_share = Column(Numeric(10, 2), nullable=True)

    # Access
    device_limit = Column(Integer, nullable=False, default=3)
    expires_at = Column(DateTime, nullable=True, index=True)  # NULL for one-time
    access_active = Column(Boolean, nullable=False, default=False, index=True)
    access_notes = Column(String(500), nullable=True)

    # Progress snapshot
    overall_progress = Column(Integer, nullable=False, default=0)
    total_time_spent = Column(Integer, nullable=False, default=0)  # seconds
    last_accessed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    certificate_eligible = Column(Boolean, nullable=False, default=False)
    certificate_issued = Column(Boolean, nullable=False, default=False)
    certificate_issued_at = Column(DateTime, nullable=True)

    suspension_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_subscription(self) -> bool:
        return self.enrollment_type == EnrollmentType.SUBSCRIPTION

    @property
    def active_devices(self):
        return [device for device in self.devices if device.is_active]

    @property
    def active_device_count(self) -> int:
        return len(self.active_devices)

    def touch(self):
        """Force an UPDATE of the aggregate row so its version is bumped."""
        self.updated_at = utcnow()

    def __repr__(self):
        return (
            f"<Enrollment(id={self.id}, learner_id={self.learner_id}, "
            f"course_id={self.course_id}, status={self.status})>"
        )
