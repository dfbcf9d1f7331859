# app/schemas/payment.py
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.enums import (
    BillingCycle,
    EnrollmentType,
    EventSource,
    PaymentEventType,
    RiskLevel,
    TransactionKind,
    TransactionStatus,
)

# ==================== Ledger Inputs ====================


class AmountBreakdown(BaseModel):
    """total = base_price - discount + tax + processing_fee"""

    base_price: Decimal = Field(..., ge=0, decimal_places=2)
    discount: Decimal = Field(Decimal("0"), ge=0, decimal_places=2)
    discount_code: Optional[str] = Field(None, max_length=50)
    tax: Decimal = Field(Decimal("0"), ge=0, decimal_places=2)
    processing_fee: Decimal = Field(Decimal("0"), ge=0, decimal_places=2)
    currency: str = Field("INR", min_length=3, max_length=3)
    # Optional client-side total; must reconcile with the parts when given
    total: Optional[Decimal] = Field(None, decimal_places=2)

    @property
    def computed_total(self) -> Decimal:
        return self.base_price - self.discount + self.tax + self.processing_fee


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(
        None, gt=0, decimal_places=2, description="Defaults to the full refundable balance"
    )
    reason: str = Field(..., min_length=3, max_length=500)
    # Replaying a request with the same reference does not refund twice
    refund_reference: Optional[str] = Field(None, max_length=100)


class RevenueStatsQuery(BaseModel):
    period: Literal["day", "week", "month", "year"] = "month"
    guru_id: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @model_validator(mode="after")
    def check_range(self):
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


# ==================== Ledger Outputs ====================


class PaymentEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event: PaymentEventType
    source: EventSource
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime


class AmountResponse(BaseModel):
    total: Decimal
    base_price: Decimal
    discount: Decimal
    tax: Decimal
    processing_fee: Decimal
    currency: str


class RevenueResponse(BaseModel):
    guru_share: Decimal
    platform_share: Decimal
    guru_share_percentage: Decimal
    platform_share_percentage: Decimal
    is_distributed: bool
    distributed_at: Optional[datetime] = None


class RefundResponse(BaseModel):
    refunded_amount: Decimal
    reason: Optional[str] = None
    refunded_at: Optional[datetime] = None
    refunded_by: Optional[int] = None


class RiskResponse(BaseModel):
    score: int
    level: RiskLevel
    factors: List[str]
    review_required: bool


class TransactionResponse(BaseModel):
    transaction_id: str
    kind: TransactionKind
    status: TransactionStatus
    learner_id: int
    course_id: int
    guru_id: int
    enrollment_id: Optional[int] = None
    enrollment_type: EnrollmentType
    billing_cycle: Optional[BillingCycle] = None
    amount: AmountResponse
    revenue: RevenueResponse
    refund: Optional[RefundResponse] = None
    risk: RiskResponse
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_code: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    events: Optional[List[PaymentEventResponse]] = None

    @classmethod
    def from_model(cls, txn, include_events: bool = False) -> "TransactionResponse":
        refund = None
        if txn.refunded_amount and txn.refunded_amount > 0:
            refund = RefundResponse(
                refunded_amount=txn.refunded_amount,
                reason=txn.refund_reason,
                refunded_at=txn.refunded_at,
                refunded_by=txn.refunded_by,
            )
        return cls(
            transaction_id=txn.transaction_id,
            kind=txn.kind,
            status=txn.status,
            learner_id=txn.learner_id,
            course_id=txn.course_id,
            guru_id=txn.guru_id,
            enrollment_id=txn.enrollment_id,
            enrollment_type=txn.enrollment_type,
            billing_cycle=txn.billing_cycle,
            amount=AmountResponse(
                total=txn.amount_total,
                base_price=txn.base_price,
                discount=txn.discount,
                tax=txn.tax,
                processing_fee=txn.processing_fee,
                currency=txn.currency,
            ),
            revenue=RevenueResponse(
                guru_share=txn.guru_share,
                platform_share=txn.platform_share,
                guru_share_percentage=txn.guru_share_percentage,
                platform_share_percentage=txn.platform_share_percentage,
                is_distributed=txn.is_distributed,
                distributed_at=txn.distributed_at,
            ),
            refund=refund,
            risk=RiskResponse(
                score=txn.risk_score,
                level=txn.risk_level,
                factors=list(txn.risk_factors or []),
                review_required=txn.review_required,
            ),
            gateway_order_id=txn.gateway_order_id,
            gateway_payment_id=txn.gateway_payment_id,
            failure_reason=txn.failure_reason,
            failure_code=txn.failure_code,
            created_at=txn.created_at,
            completed_at=txn.completed_at,
            events=(
                [PaymentEventResponse.model_validate(e) for e in txn.events]
                if include_events
                else None
            ),
        )


class RevenueBucket(BaseModel):
    period: str
    total_revenue: Decimal
    guru_revenue: Decimal
    platform_revenue: Decimal
    transaction_count: int
    average_transaction_value: Decimal
