# app/models/course.py
from sqlalchemy import Boolean, Column, DateTime, Enum, Integer, Numeric, String

from app.core.database import Base
from app.models.enums import BillingCycle, PricingModel
from app.utils.datetime_utils import utcnow


class Course(Base):
    """
    Read-only pricing projection of the course catalog.

    Course authoring lives elsewhere; the engine only reads what it needs
    to price and gate an enrollment.
    """

    __tablename__ = "courses"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    instructor_id = Column(Integer, nullable=False, index=True)

    # Pricing
    pricing_model = Column(
        Enum(PricingModel, native_enum=False, length=20),
        nullable=False,
        default=PricingModel.ONE_TIME,
    )
    currency = Column(String(3), nullable=False, default="INR")
    one_time_amount = Column(Numeric(10, 2), nullable=True)
    monthly_rate = Column(Numeric(10, 2), nullable=True)
    quarterly_rate = Column(Numeric(10, 2), nullable=True)
    yearly_rate = Column(Numeric(10, 2), nullable=True)
    default_billing_cycle = Column(
        Enum(BillingCycle, native_enum=False, length=20),
        nullable=False,
        default=BillingCycle.MONTHLY,
    )
    trial_days = Column(Integer, nullable=False, default=0)
    # standing discount carried onto subscriptions and applied at renewal
    renewal_discount_percentage = Column(Numeric(5, 2), nullable=False, default=0)

    # Access
    is_open_for_enrollment = Column(Boolean, nullable=False, default=True)
    device_limit = Column(Integer, nullable=True)  # falls back to settings
    total_lectures = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<Course(id={self.id}, title='{self.title}', pricing={self.pricing_model})>"
