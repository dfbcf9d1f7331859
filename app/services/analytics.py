from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.enrollment import Enrollment
from app.models.enums import (
    BillingCycle,
    EnrollmentStatus,
    EnrollmentType,
    SubscriptionStatus,
)
from app.models.subscription import Subscription
from app.schemas.analytics import EnrollmentStats, RevenueStats, SubscriptionAnalytics
from app.services.payment_transaction import PaymentLedgerService, quantize
from app.utils.datetime_utils import utcnow


class AnalyticsService:
    def __init__(self, db: Session):
        self.db = db

    def get_enrollment_stats(
        self, guru_id: Optional[int] = None, course_id: Optional[int] = None
    ) -> EnrollmentStats:
        """
        Enrollment counts and revenue, platform-wide or for one guru.
        """
        query = self.db.query(Enrollment)
        if guru_id is not None:
            query = query.filter(Enrollment.guru_id == guru_id)
        if course_id is not None:
            query = query.filter(Enrollment.course_id == course_id)

        by_status = {s.value: 0 for s in EnrollmentStatus}
        for status, count in (
            query.with_entities(Enrollment.status, func.count(Enrollment.id))
            .group_by(Enrollment.status)
            .all()
        ):
            by_status[status.value] = count

        by_type = {t.value: 0 for t in EnrollmentType}
        for enrollment_type, count in (
            query.with_entities(Enrollment.enrollment_type, func.count(Enrollment.id))
            .group_by(Enrollment.enrollment_type)
            .all()
        ):
            by_type[enrollment_type.value] = count

        total_revenue, guru_revenue, platform_revenue, avg_progress = query.with_entities(
            func.coalesce(func.sum(Enrollment.payment_amount), 0),
            func.coalesce(func.sum(Enrollment.guru_share), 0),
            func.coalesce(func.sum(Enrollment.platform_share), 0),
            func.avg(Enrollment.overall_progress),
        ).one()

        return EnrollmentStats(
            total_enrollments=sum(by_status.values()),
            by_status=by_status,
            by_type=by_type,
            total_revenue=quantize(Decimal(str(total_revenue))),
            guru_revenue=quantize(Decimal(str(guru_revenue))),
            platform_revenue=quantize(Decimal(str(platform_revenue))),
            average_progress=round(float(avg_progress or 0), 2),
            completed_count=query.filter(Enrollment.completed_at.isnot(None)).count(),
            certificates_issued=query.filter(
                Enrollment.certificate_issued.is_(True)
            ).count(),
        )

    def get_subscription_analytics(
        self, guru_id: Optional[int] = None
    ) -> SubscriptionAnalytics:
        query = self.db.query(Subscription).join(
            Enrollment, Enrollment.id == Subscription.enrollment_id
        )
        if guru_id is not None:
            query = query.filter(Enrollment.guru_id == guru_id)

        by_status = {s.value: 0 for s in SubscriptionStatus}
        for status, count in (
            query.with_entities(Subscription.status, func.count(Subscription.id))
            .group_by(Subscription.status)
            .all()
        ):
            by_status[status.value] = count

        by_cycle = {c.value: 0 for c in BillingCycle}
        for cycle, count in (
            query.with_entities(Subscription.billing_cycle, func.count(Subscription.id))
            .group_by(Subscription.billing_cycle)
            .all()
        ):
            by_cycle[cycle.value] = count

        now = utcnow()
        renewals_due = query.filter(
            Subscription.status.in_(
                [SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING]
            ),
            Subscription.renewal_date.isnot(None),
            Subscription.renewal_date >= now,
            Subscription.renewal_date <= now + timedelta(days=7),
        ).count()

        total = sum(by_status.values())
        churned = by_status["cancelled"] + by_status["expired"]
        return SubscriptionAnalytics(
            total_subscriptions=total,
            by_status=by_status,
            by_billing_cycle=by_cycle,
            cancel_at_period_end_count=query.filter(
                Subscription.cancel_at_period_end.is_(True)
            ).count(),
            renewals_due_next_7_days=renewals_due,
            churn_rate=round(churned / total, 4) if total else 0.0,
        )

    def get_revenue_stats(
        self,
        period: str = "month",
        guru_id: Optional[int] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> RevenueStats:
        return PaymentLedgerService(self.db).revenue_stats(
            period=period, guru_id=guru_id, start_date=start_date, end_date=end_date
        )
