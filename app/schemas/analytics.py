from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel

from app.schemas.payment import RevenueBucket


class EnrollmentStats(BaseModel):
    total_enrollments: int
    by_status: Dict[str, int]
    by_type: Dict[str, int]
    total_revenue: Decimal
    guru_revenue: Decimal
    platform_revenue: Decimal
    average_progress: float
    completed_count: int
    certificates_issued: int


class SubscriptionAnalytics(BaseModel):
    total_subscriptions: int
    by_status: Dict[str, int]
    by_billing_cycle: Dict[str, int]
    cancel_at_period_end_count: int
    renewals_due_next_7_days: int
    # cancelled + expired over all subscriptions ever created
    churn_rate: float


class RevenueStats(BaseModel):
    period: str
    guru_id: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    buckets: List[RevenueBucket]
    total_revenue: Decimal
    total_transactions: int
    refunded_amount: Decimal
    pending_distribution: Decimal
