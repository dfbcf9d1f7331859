# app/routers/enrollments.py
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query, Request, status
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db
from app.core.dependencies import (
    get_current_admin,
    get_current_principal,
    get_payment_gateway,
    require_roles,
)
from app.core.limiter import limiter
from app.models.enums import AuditAction, EnrollmentStatus, EnrollmentType
from app.schemas.auth import Principal, Role
from app.schemas.common import ApiResponse, PaginatedData, ok
from app.schemas.device import (
    DeviceInfo,
    DeviceListResponse,
    DeviceRegisterRequest,
    DeviceResponse,
)
from app.schemas.enrollment import (
    AccessValidationResponse,
    AuditEventResponse,
    ConfirmEnrollmentRequest,
    ConfirmEnrollmentResponse,
    EnrollmentResponse,
    InitiateEnrollmentRequest,
    InitiateEnrollmentResponse,
    ProgressUpdateRequest,
    SuspendRequest,
    ValidateAccessRequest,
)
from app.services.audit import AuditLogService
from app.services.device_access import DeviceAccessService
from app.services.enrollment import EnrollmentService
from app.services.lifecycle import authorize, load_enrollment
from app.utils.device_fingerprint import (
    client_ip,
    extract_device_info,
    generate_device_fingerprint,
)
from app.utils.razorpay_client import PaymentGateway

router = APIRouter(
    prefix="/enrollments",
    tags=["Enrollments"],
    responses={404: {"description": "Not found"}},
)


def _page_size(size: Optional[int]) -> int:
    return min(size or settings.default_page_size, settings.max_page_size)


# ==================== Purchase flow ====================


@router.post(
    "/initiate",
    response_model=ApiResponse[InitiateEnrollmentResponse],
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(settings.enrollment_initiate_rate_limit)
def initiate_enrollment(
    request: Request,
    payload: InitiateEnrollmentRequest = Body(...),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    principal: Principal = Depends(get_current_principal),
):
    """
    Start a purchase: records a pending transaction and opens a gateway order.

    The client completes checkout with the returned order id and key.
    """
    service = EnrollmentService(db, gateway)
    result = service.initiate(
        principal,
        course_id=payload.course_id,
        enrollment_type=EnrollmentType(payload.enrollment_type),
        billing_cycle=getattr(payload, "billing_cycle", None),
        country=payload.country,
        client_ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ok(result, "Payment order created")


@router.post("/confirm", response_model=ApiResponse[ConfirmEnrollmentResponse])
def confirm_enrollment(
    request: Request,
    payload: ConfirmEnrollmentRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    principal: Principal = Depends(get_current_principal),
):
    """
    Verify the gateway proof and activate the enrollment.

    Safe to retry with the same proof: the existing enrollment is returned.
    """
    service = EnrollmentService(db, gateway)
    result = service.confirm(
        principal,
        payload,
        device_id=generate_device_fingerprint(request),
        device_info=extract_device_info(request),
    )
    message = (
        "Enrollment already confirmed"
        if result.already_confirmed
        else "Enrollment activated"
    )
    return ok(
        ConfirmEnrollmentResponse(
            enrollment=EnrollmentResponse.from_model(result.enrollment),
            transaction_id=result.transaction.transaction_id,
            transaction_status=result.transaction.status.value,
            device_id=result.device_id,
            already_confirmed=result.already_confirmed,
        ),
        message,
    )


# ==================== Listing ====================


@router.get("/me", response_model=ApiResponse[PaginatedData[EnrollmentResponse]])
def get_my_enrollments(
    status_filter: Optional[EnrollmentStatus] = Query(None, alias="status"),
    enrollment_type: Optional[EnrollmentType] = Query(None),
    page: int = Query(1, ge=1),
    size: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    service = EnrollmentService(db)
    enrollments, pagination = service.list_for_learner(
        principal.id,
        status=status_filter,
        enrollment_type=enrollment_type,
        page=page,
        size=_page_size(size),
    )
    return ok(
        {
            "items": [EnrollmentResponse.from_model(e) for e in enrollments],
            "pagination": pagination,
        }
    )


@router.get("/guru", response_model=ApiResponse[PaginatedData[EnrollmentResponse]])
def get_guru_enrollments(
    guru_id: Optional[int] = Query(None, description="Admins only"),
    course_id: Optional[int] = Query(None),
    status_filter: Optional[EnrollmentStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    size: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles(Role.GURU, Role.ADMIN)),
):
    """Enrollments in the caller's courses (admins may pick any guru)."""
    target = guru_id if principal.is_admin and guru_id else principal.id
    service = EnrollmentService(db)
    enrollments, pagination = service.list_for_guru(
        target,
        course_id=course_id,
        status=status_filter,
        page=page,
        size=_page_size(size),
    )
    return ok(
        {
            "items": [EnrollmentResponse.from_model(e) for e in enrollments],
            "pagination": pagination,
        }
    )


@router.get("/{enrollment_id}", response_model=ApiResponse[EnrollmentResponse])
def get_enrollment(
    enrollment_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    service = EnrollmentService(db)
    enrollment = service.get_enrollment(principal, enrollment_id)
    return ok(EnrollmentResponse.from_model(enrollment))


# ==================== Access ====================


@router.post(
    "/{enrollment_id}/validate-access",
    response_model=ApiResponse[AccessValidationResponse],
)
def validate_access(
    enrollment_id: int,
    request: Request,
    payload: Optional[ValidateAccessRequest] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    """
    Gate for content requests. Checks status, expiry and, when a device
    id is given (body or ``X-Device-ID``), that the device is registered.
    """
    device_id = (payload.device_id if payload else None) or request.headers.get(
        "x-device-id"
    )
    service = EnrollmentService(db)
    result = service.validate_access(principal, enrollment_id, device_id=device_id)
    return ok(result, "Access granted")


@router.post("/{enrollment_id}/progress", response_model=ApiResponse[EnrollmentResponse])
def update_progress(
    enrollment_id: int,
    payload: ProgressUpdateRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    service = EnrollmentService(db)
    enrollment = service.update_progress(
        principal, enrollment_id, payload.lecture_id, payload.time_spent
    )
    return ok(EnrollmentResponse.from_model(enrollment), "Progress updated")


@router.post(
    "/{enrollment_id}/certificate", response_model=ApiResponse[EnrollmentResponse]
)
def issue_certificate(
    enrollment_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles(Role.GURU, Role.ADMIN)),
):
    service = EnrollmentService(db)
    enrollment = service.issue_certificate(principal, enrollment_id)
    return ok(EnrollmentResponse.from_model(enrollment), "Certificate issued")


# ==================== Devices ====================


@router.get("/{enrollment_id}/devices", response_model=ApiResponse[DeviceListResponse])
def list_devices(
    enrollment_id: int,
    include_inactive: bool = Query(False),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    service = DeviceAccessService(db)
    return ok(service.list_devices(principal, enrollment_id, include_inactive))


@router.post(
    "/{enrollment_id}/devices",
    response_model=ApiResponse[DeviceResponse],
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(settings.device_registration_rate_limit)
def add_device(
    enrollment_id: int,
    request: Request,
    payload: Optional[DeviceRegisterRequest] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    """
    Register the calling device. Without an explicit ``device_id`` the
    fingerprint is derived from the request headers.
    """
    payload = payload or DeviceRegisterRequest()
    detected = extract_device_info(request)
    info = DeviceInfo(
        platform=payload.platform or detected.platform,
        browser=payload.browser,
        os=payload.os,
        user_agent=detected.user_agent,
        ip_address=detected.ip_address,
        locale=detected.locale,
    )
    device_id = payload.device_id or generate_device_fingerprint(request)

    service = DeviceAccessService(db)
    device, added = service.add_device(principal, enrollment_id, device_id, info)
    return ok(
        DeviceResponse.model_validate(device),
        "Device registered" if added else "Device already registered",
    )


@router.delete(
    "/{enrollment_id}/devices/{device_id}", response_model=ApiResponse[DeviceResponse]
)
def remove_device(
    enrollment_id: int,
    device_id: str,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    service = DeviceAccessService(db)
    device = service.remove_device(
        principal, enrollment_id, device_id, ip_address=client_ip(request)
    )
    return ok(DeviceResponse.model_validate(device), "Device removed")


# ==================== Audit & administration ====================


@router.get(
    "/{enrollment_id}/audit", response_model=ApiResponse[List[AuditEventResponse]]
)
def get_audit_trail(
    enrollment_id: int,
    action: Optional[AuditAction] = Query(None),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    enrollment = load_enrollment(db, enrollment_id)
    authorize(enrollment, principal, allow_guru=True)
    events = AuditLogService(db).list_for_enrollment(enrollment_id, action)
    return ok([AuditEventResponse.model_validate(e) for e in events])


@router.post("/{enrollment_id}/suspend", response_model=ApiResponse[EnrollmentResponse])
def suspend_enrollment(
    enrollment_id: int,
    payload: SuspendRequest,
    request: Request,
    db: Session = Depends(get_db),
    admin: Principal = Depends(get_current_admin),
):
    service = EnrollmentService(db)
    enrollment = service.suspend(
        admin, enrollment_id, payload.reason, ip_address=client_ip(request)
    )
    return ok(EnrollmentResponse.from_model(enrollment), "Enrollment suspended")


@router.post(
    "/{enrollment_id}/reinstate", response_model=ApiResponse[EnrollmentResponse]
)
def reinstate_enrollment(
    enrollment_id: int,
    request: Request,
    db: Session = Depends(get_db),
    admin: Principal = Depends(get_current_admin),
):
    service = EnrollmentService(db)
    enrollment = service.reinstate(admin, enrollment_id, ip_address=client_ip(request))
    return ok(EnrollmentResponse.from_model(enrollment), "Enrollment reinstated")
