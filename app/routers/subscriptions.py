# app/routers/subscriptions.py
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.dependencies import get_current_principal, get_payment_gateway
from app.models.enums import SubscriptionStatus
from app.schemas.auth import Principal
from app.schemas.common import ApiResponse, ok
from app.schemas.enrollment import EnrollmentResponse
from app.schemas.subscription import (
    CancelRequest,
    MySubscriptionsResponse,
    PauseRequest,
    PreferencesRequest,
    RenewalResponse,
    RenewRequest,
)
from app.services.subscription import SubscriptionService
from app.utils.device_fingerprint import client_ip
from app.utils.razorpay_client import PaymentGateway

router = APIRouter(
    prefix="/subscriptions",
    tags=["Subscriptions"],
    responses={404: {"description": "Not found"}},
)


@router.get("/me", response_model=ApiResponse[MySubscriptionsResponse])
def get_my_subscriptions(
    status_filter: Optional[SubscriptionStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    """All subscriptions of the caller with a per-status summary."""
    service = SubscriptionService(db)
    return ok(service.list_for_learner(principal.id, status_filter))


@router.post("/{enrollment_id}/pause", response_model=ApiResponse[EnrollmentResponse])
def pause_subscription(
    enrollment_id: int,
    request: Request,
    payload: Optional[PauseRequest] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    payload = payload or PauseRequest()
    service = SubscriptionService(db)
    enrollment = service.pause(
        principal,
        enrollment_id,
        reason=payload.reason,
        duration_days=payload.duration_days,
        ip_address=client_ip(request),
    )
    return ok(EnrollmentResponse.from_model(enrollment), "Subscription paused")


@router.post("/{enrollment_id}/resume", response_model=ApiResponse[EnrollmentResponse])
def resume_subscription(
    enrollment_id: int,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    service = SubscriptionService(db)
    enrollment = service.resume(
        principal, enrollment_id, ip_address=client_ip(request)
    )
    return ok(EnrollmentResponse.from_model(enrollment), "Subscription resumed")


@router.post("/{enrollment_id}/cancel", response_model=ApiResponse[EnrollmentResponse])
def cancel_subscription(
    enrollment_id: int,
    request: Request,
    payload: Optional[CancelRequest] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    """
    Cancel at the end of the current period, or right away with
    ``immediate=true``.
    """
    payload = payload or CancelRequest()
    service = SubscriptionService(db)
    enrollment = service.cancel(
        principal,
        enrollment_id,
        reason=payload.reason,
        immediate=payload.immediate,
        feedback=payload.feedback,
        ip_address=client_ip(request),
    )
    message = (
        "Subscription cancelled"
        if payload.immediate
        else "Subscription will end with the current period"
    )
    return ok(EnrollmentResponse.from_model(enrollment), message)


@router.post("/{enrollment_id}/renew", response_model=ApiResponse[RenewalResponse])
def renew_subscription(
    enrollment_id: int,
    request: Request,
    payload: Optional[RenewRequest] = None,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    principal: Principal = Depends(get_current_principal),
):
    """
    Open a renewal order. The subscription becomes active again once
    the payment is confirmed through /enrollments/confirm or the webhook.
    """
    payload = payload or RenewRequest()
    service = SubscriptionService(db, gateway)
    result = service.renew(
        principal,
        enrollment_id,
        billing_cycle=payload.parsed_cycle(),
        client_ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ok(result, "Renewal order created")


@router.patch(
    "/{enrollment_id}/preferences", response_model=ApiResponse[EnrollmentResponse]
)
def update_preferences(
    enrollment_id: int,
    payload: PreferencesRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    service = SubscriptionService(db)
    enrollment = service.update_preferences(
        principal, enrollment_id, payload, ip_address=client_ip(request)
    )
    return ok(EnrollmentResponse.from_model(enrollment), "Preferences updated")
