# app/models/relations.py

from sqlalchemy.orm import relationship

from .course import Course
from .enrollment import Enrollment
from .enrollment_audit import EnrollmentAuditEvent
from .enrollment_device import EnrollmentDevice
from .lecture_completion import LectureCompletion
from .payment_event import PaymentEvent
from .payment_transaction import PaymentTransaction
from .subscription import Subscription


def setup_relationships():
    """
    Configure all SQLAlchemy relationships between models.
    """

    # --- Enrollment aggregate ---

    # 1. Course to Enrollments (One-to-Many)
    Enrollment.course = relationship("Course", back_populates="enrollments")
    Course.enrollments = relationship("Enrollment", back_populates="course")

    # 2. Enrollment to Subscription (One-to-One)
    Enrollment.subscription = relationship(
        "Subscription",
        back_populates="enrollment",
        uselist=False,
        cascade="all, delete-orphan",
    )
    Subscription.enrollment = relationship("Enrollment", back_populates="subscription")

    # 3. Enrollment to Devices (One-to-Many)
    Enrollment.devices = relationship(
        "EnrollmentDevice",
        back_populates="enrollment",
        cascade="all, delete-orphan",
        order_by=EnrollmentDevice.registered_at,
    )
    EnrollmentDevice.enrollment = relationship("Enrollment", back_populates="devices")

    # 4. Enrollment to Completed Lectures (One-to-Many)
    Enrollment.completed_lectures = relationship(
        "LectureCompletion",
        back_populates="enrollment",
        cascade="all, delete-orphan",
        order_by=LectureCompletion.completed_at,
    )
    LectureCompletion.enrollment = relationship(
        "Enrollment", back_populates="completed_lectures"
    )

    # 5. Enrollment to Audit Trail (One-to-Many, append-only)
    Enrollment.audit_events = relationship(
        "EnrollmentAuditEvent",
        back_populates="enrollment",
        cascade="all, delete-orphan",
        order_by=EnrollmentAuditEvent.id,
    )
    EnrollmentAuditEvent.enrollment = relationship(
        "Enrollment", back_populates="audit_events"
    )

    # --- Payment ledger ---

    # 6. Enrollment to Transactions (One-to-Many)
    Enrollment.transactions = relationship(
        "PaymentTransaction",
        back_populates="enrollment",
        order_by=PaymentTransaction.created_at,
    )
    PaymentTransaction.enrollment = relationship(
        "Enrollment", back_populates="transactions"
    )

    # 7. Transaction to Events (One-to-Many, append-only)
    PaymentTransaction.events = relationship(
        "PaymentEvent",
        back_populates="transaction",
        cascade="all, delete-orphan",
        order_by=PaymentEvent.id,
    )
    PaymentEvent.transaction = relationship(
        "PaymentTransaction", back_populates="events"
    )

    PaymentTransaction.course = relationship("Course")
