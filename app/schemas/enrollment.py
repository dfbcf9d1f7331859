# app/schemas/enrollment.py
from datetime import datetime
from decimal import Decimal
from typing import Annotated, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from app.models.enums import (
    BillingCycle,
    EnrollmentStatus,
    EnrollmentType,
    SubscriptionStatus,
)
from app.schemas.device import DeviceResponse

# ==================== Requests ====================


class _InitiateBase(BaseModel):
    course_id: int = Field(..., gt=0, description="Course ID to enroll in")
    country: Optional[str] = Field(
        None, min_length=2, max_length=2, description="ISO country of the payer"
    )


class OneTimeEnrollmentRequest(_InitiateBase):
    enrollment_type: Literal["one_time"]


class SubscriptionEnrollmentRequest(_InitiateBase):
    enrollment_type: Literal["subscription"]
    billing_cycle: Optional[BillingCycle] = Field(
        None, description="Defaults to the course's billing cycle"
    )


InitiateEnrollmentRequest = Annotated[
    Union[OneTimeEnrollmentRequest, SubscriptionEnrollmentRequest],
    Field(discriminator="enrollment_type"),
]


class ConfirmEnrollmentRequest(BaseModel):
    """Gateway proof returned to the client after checkout"""

    transaction_id: str = Field(..., min_length=1, max_length=40)
    order_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        validation_alias=AliasChoices("order_id", "razorpay_order_id"),
    )
    payment_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        validation_alias=AliasChoices("payment_id", "razorpay_payment_id"),
    )
    signature: str = Field(
        ...,
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("signature", "razorpay_signature"),
    )
    payment_method: Optional[str] = Field(None, max_length=30)


class ValidateAccessRequest(BaseModel):
    device_id: Optional[str] = Field(None, min_length=8, max_length=128)


class ProgressUpdateRequest(BaseModel):
    lecture_id: str = Field(..., min_length=1, max_length=100)
    time_spent: int = Field(0, ge=0, le=24 * 60 * 60, description="Seconds")


class SuspendRequest(BaseModel):
    reason: str = Field(..., min_length=3, max_length=500)


# ==================== Responses ====================


class InitiateEnrollmentResponse(BaseModel):
    transaction_id: str
    order_id: str
    amount: Decimal
    amount_minor: int
    currency: str
    gateway_key_id: str
    course_id: int
    enrollment_type: EnrollmentType
    billing_cycle: Optional[BillingCycle] = None


class SubscriptionSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: SubscriptionStatus
    billing_cycle: BillingCycle
    next_billing_cycle: Optional[BillingCycle] = None
    current_period_start: datetime
    current_period_end: datetime
    renewal_date: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    auto_renew: bool
    cancel_at_period_end: bool
    discount_percentage: Decimal
    paused_at: Optional[datetime] = None
    pause_end_date: Optional[datetime] = None
    pause_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None


class PaymentSummary(BaseModel):
    method: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    status: str
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    guru_share: Optional[Decimal] = None
    platform_share: Optional[Decimal] = None


class AccessSummary(BaseModel):
    device_limit: int
    is_active: bool
    expires_at: Optional[datetime] = None
    active_device_count: int
    devices: List[DeviceResponse] = []


class ProgressSummary(BaseModel):
    overall_progress: int
    completed_lectures: List[str]
    total_time_spent: int
    last_accessed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    certificate_eligible: bool
    certificate_issued: bool


class EnrollmentResponse(BaseModel):
    id: int
    learner_id: int
    course_id: int
    guru_id: int
    course_title: Optional[str] = None
    enrollment_type: EnrollmentType
    status: EnrollmentStatus
    enrolled_at: datetime
    payment: PaymentSummary
    subscription: Optional[SubscriptionSummary] = None
    access: AccessSummary
    progress: ProgressSummary

    @classmethod
    def from_model(cls, enrollment) -> "EnrollmentResponse":
        return cls(
            id=enrollment.id,
            learner_id=enrollment.learner_id,
            course_id=enrollment.course_id,
            guru_id=enrollment.guru_id,
            course_title=enrollment.course.title if enrollment.course else None,
            enrollment_type=enrollment.enrollment_type,
            status=enrollment.status,
            enrolled_at=enrollment.enrolled_at,
            payment=PaymentSummary(
                method=enrollment.payment_method,
                amount=enrollment.payment_amount,
                currency=enrollment.payment_currency,
                status=enrollment.payment_status,
                order_id=enrollment.gateway_order_id,
                payment_id=enrollment.gateway_payment_id,
                paid_at=enrollment.paid_at,
                guru_share=enrollment.guru_share,
                platform_share=enrollment.platform_share,
            ),
            subscription=(
                SubscriptionSummary.model_validate(enrollment.subscription)
                if enrollment.subscription is not None
                else None
            ),
            access=AccessSummary(
                device_limit=enrollment.device_limit,
                is_active=enrollment.access_active,
                expires_at=enrollment.expires_at,
                active_device_count=enrollment.active_device_count,
                devices=[
                    DeviceResponse.model_validate(d) for d in enrollment.devices
                ],
            ),
            progress=ProgressSummary(
                overall_progress=enrollment.overall_progress,
                completed_lectures=[c.lecture_id for c in enrollment.completed_lectures],
                total_time_spent=enrollment.total_time_spent,
                last_accessed_at=enrollment.last_accessed_at,
                completed_at=enrollment.completed_at,
                certificate_eligible=enrollment.certificate_eligible,
                certificate_issued=enrollment.certificate_issued,
            ),
        )


class ConfirmEnrollmentResponse(BaseModel):
    enrollment: EnrollmentResponse
    transaction_id: str
    transaction_status: str
    device_id: Optional[str] = None
    already_confirmed: bool = False


class AccessValidationResponse(BaseModel):
    valid: bool
    enrollment_id: int
    status: EnrollmentStatus
    expires_at: Optional[datetime] = None
    days_until_expiry: Optional[int] = None
    device_id: Optional[str] = None


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    action: str
    actor_id: Optional[int] = None
    actor_role: str
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    reason: Optional[str] = None
    details: Optional[dict] = None
    ip_address: Optional[str] = None
    created_at: datetime
