# app/services/course_catalog.py
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional, Protocol

from sqlalchemy.orm import Session

from app.core.exceptions import InvalidBillingCycle, UnsupportedEnrollmentType
from app.models.course import Course
from app.models.enums import BillingCycle, EnrollmentType, PricingModel


@dataclass
class CoursePricing:
    course_id: int
    title: str
    guru_id: int
    pricing_model: PricingModel
    currency: str
    is_open_for_enrollment: bool
    one_time_amount: Optional[Decimal] = None
    subscription_rates: Dict[BillingCycle, Decimal] = field(default_factory=dict)
    default_billing_cycle: BillingCycle = BillingCycle.MONTHLY
    trial_days: int = 0
    renewal_discount_percentage: Decimal = Decimal("0")
    device_limit: Optional[int] = None
    total_lectures: int = 0

    def supports(self, enrollment_type: EnrollmentType) -> bool:
        if enrollment_type == EnrollmentType.ONE_TIME:
            return (
                self.pricing_model in (PricingModel.ONE_TIME, PricingModel.BOTH)
                and self.one_time_amount is not None
                and self.one_time_amount > 0
            )
        return self.pricing_model in (
            PricingModel.SUBSCRIPTION,
            PricingModel.BOTH,
        ) and bool(self.subscription_rates)

    def price_for(
        self,
        enrollment_type: EnrollmentType,
        billing_cycle: Optional[BillingCycle] = None,
    ) -> Decimal:
        if not self.supports(enrollment_type):
            raise UnsupportedEnrollmentType(
                f"Course does not support {enrollment_type.value} enrollment",
                data={"pricing_model": self.pricing_model.value},
                field="enrollment_type",
            )
        if enrollment_type == EnrollmentType.ONE_TIME:
            return self.one_time_amount

        cycle = billing_cycle or self.default_billing_cycle
        rate = self.subscription_rates.get(cycle)
        if rate is None or rate <= 0:
            raise InvalidBillingCycle(
                f"Course has no {cycle.value} subscription rate",
                data={"available": [c.value for c in self.subscription_rates]},
                field="billing_cycle",
            )
        return rate


class CourseCatalog(Protocol):
    def get_pricing(self, course_id: int) -> Optional[CoursePricing]: ...


class SqlCourseCatalog:
    """Reads pricing from the local ``courses`` projection."""

    def __init__(self, db: Session):
        self.db = db

    def get_pricing(self, course_id: int) -> Optional[CoursePricing]:
        course = self.db.query(Course).filter(Course.id == course_id).first()
        if not course:
            return None

        rates = {}
        for cycle, amount in (
            (BillingCycle.MONTHLY, course.monthly_rate),
            (BillingCycle.QUARTERLY, course.quarterly_rate),
            (BillingCycle.YEARLY, course.yearly_rate),
        ):
            if amount is not None and amount > 0:
                rates[cycle] = Decimal(amount)

        return CoursePricing(
            course_id=course.id,
            title=course.title,
            guru_id=course.instructor_id,
            pricing_model=course.pricing_model,
            currency=course.currency,
            is_open_for_enrollment=course.is_open_for_enrollment,
            one_time_amount=(
                Decimal(course.one_time_amount)
                if course.one_time_amount is not None
                else None
            ),
            subscription_rates=rates,
            default_billing_cycle=course.default_billing_cycle,
            trial_days=course.trial_days or 0,
            renewal_discount_percentage=Decimal(course.renewal_discount_percentage or 0),
            device_limit=course.device_limit,
            total_lectures=course.total_lectures or 0,
        )
