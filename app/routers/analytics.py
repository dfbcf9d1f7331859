# app/routers/analytics.py
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.dependencies import require_roles
from app.schemas.analytics import EnrollmentStats, RevenueStats, SubscriptionAnalytics
from app.schemas.auth import Principal, Role
from app.schemas.common import ApiResponse, ok
from app.schemas.payment import RevenueStatsQuery
from app.services.analytics import AnalyticsService

router = APIRouter(
    prefix="/analytics",
    tags=["Analytics"],
    responses={403: {"description": "Gurus and admins only"}},
)

staff_only = require_roles(Role.GURU, Role.ADMIN)


def _scoped_guru(principal: Principal, guru_id: Optional[int]) -> Optional[int]:
    """Admins may look at any guru (or everyone); gurus only at themselves."""
    if principal.is_admin:
        return guru_id
    return principal.id


@router.get("/enrollments", response_model=ApiResponse[EnrollmentStats])
def get_enrollment_stats(
    guru_id: Optional[int] = Query(None),
    course_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    principal: Principal = Depends(staff_only),
):
    service = AnalyticsService(db)
    return ok(
        service.get_enrollment_stats(
            guru_id=_scoped_guru(principal, guru_id), course_id=course_id
        )
    )


@router.get("/subscriptions", response_model=ApiResponse[SubscriptionAnalytics])
def get_subscription_analytics(
    guru_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    principal: Principal = Depends(staff_only),
):
    service = AnalyticsService(db)
    return ok(service.get_subscription_analytics(_scoped_guru(principal, guru_id)))


@router.get("/revenue", response_model=ApiResponse[RevenueStats])
def get_revenue_stats(
    period: Literal["day", "week", "month", "year"] = Query("month"),
    guru_id: Optional[int] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
    principal: Principal = Depends(staff_only),
):
    """Revenue grouped by day, week, month or year of completion."""
    try:
        query = RevenueStatsQuery(
            period=period,
            guru_id=_scoped_guru(principal, guru_id),
            start_date=start_date,
            end_date=end_date,
        )
    except ValidationError as e:
        raise RequestValidationError(e.errors())
    service = AnalyticsService(db)
    return ok(
        service.get_revenue_stats(
            period=query.period,
            guru_id=query.guru_id,
            start_date=query.start_date,
            end_date=query.end_date,
        )
    )
