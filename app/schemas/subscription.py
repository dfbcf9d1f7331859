# app/schemas/subscription.py
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from app.core.exceptions import InvalidBillingCycle
from app.models.enums import BillingCycle, SubscriptionStatus

# ==================== Requests ====================


class PauseRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)
    duration_days: Optional[int] = Field(
        None, ge=1, le=365, description="Resume automatically after this many days"
    )


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)
    feedback: Optional[str] = Field(None, max_length=2000)
    immediate: bool = False


class RenewRequest(BaseModel):
    # Kept as a raw string so unknown cycles surface as INVALID_BILLING_CYCLE
    billing_cycle: Optional[str] = None

    def parsed_cycle(self) -> Optional[BillingCycle]:
        return parse_billing_cycle(self.billing_cycle)


class PreferencesRequest(BaseModel):
    billing_cycle: Optional[BillingCycle] = None
    auto_renew: Optional[bool] = None
    device_limit: Optional[int] = Field(None, ge=1, le=10)

    @model_validator(mode="after")
    def check_not_empty(self):
        if (
            self.billing_cycle is None
            and self.auto_renew is None
            and self.device_limit is None
        ):
            raise ValueError("At least one preference must be provided")
        return self


def parse_billing_cycle(value: Optional[str]) -> Optional[BillingCycle]:
    if value is None:
        return None
    try:
        return BillingCycle(value.strip().lower())
    except ValueError:
        raise InvalidBillingCycle(
            f"Invalid billing cycle '{value}'. Use monthly, quarterly or yearly",
            field="billing_cycle",
        )


# ==================== Responses ====================


class RenewalResponse(BaseModel):
    enrollment_id: int
    transaction_id: str
    order_id: str
    amount: Decimal
    amount_minor: int
    currency: str
    gateway_key_id: str
    billing_cycle: BillingCycle
    discount_percentage: Decimal


class SubscriptionListItem(BaseModel):
    enrollment_id: int
    course_id: int
    course_title: Optional[str] = None
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    current_period_end: datetime
    renewal_date: Optional[datetime] = None
    auto_renew: bool
    cancel_at_period_end: bool
    days_until_renewal: Optional[int] = None


class SubscriptionCounts(BaseModel):
    total: int = 0
    active: int = 0
    trialing: int = 0
    paused: int = 0
    past_due: int = 0
    cancelled: int = 0
    expired: int = 0


class MySubscriptionsResponse(BaseModel):
    subscriptions: List[SubscriptionListItem]
    summary: SubscriptionCounts
