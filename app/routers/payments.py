# app/routers/payments.py
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.core.config import settings
from app.core.database import get_db
from app.core.dependencies import (
    get_current_admin,
    get_current_principal,
    get_payment_gateway,
)
from app.core.exceptions import PermissionDenied
from app.models.enums import TransactionStatus
from app.schemas.auth import Principal
from app.schemas.common import ApiResponse, PaginatedData, ok
from app.schemas.payment import RefundRequest, TransactionResponse
from app.services.enrollment import EnrollmentService
from app.services.payment_transaction import PaymentLedgerService
from app.services.webhook import WebhookService
from app.utils.razorpay_client import PaymentGateway

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/payments",
    tags=["Payments"],
    responses={404: {"description": "Not found"}},
)


def _page_size(size: Optional[int]) -> int:
    return min(size or settings.default_page_size, settings.max_page_size)


@router.get("/me", response_model=ApiResponse[PaginatedData[TransactionResponse]])
def get_my_transactions(
    status_filter: Optional[TransactionStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    size: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    ledger = PaymentLedgerService(db)
    transactions, pagination = ledger.list_for_learner(
        principal.id, status=status_filter, page=page, size=_page_size(size)
    )
    return ok(
        {
            "items": [TransactionResponse.from_model(t) for t in transactions],
            "pagination": pagination,
        }
    )


@router.get(
    "/pending-distributions",
    response_model=ApiResponse[PaginatedData[TransactionResponse]],
)
def get_pending_distributions(
    guru_id: Optional[int] = Query(None),
    page: int = Query(1, ge=1),
    size: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    admin: Principal = Depends(get_current_admin),
):
    """Successful payments whose guru share has not been paid out yet."""
    ledger = PaymentLedgerService(db)
    transactions, pagination = ledger.pending_distributions(
        guru_id=guru_id, page=page, size=_page_size(size)
    )
    return ok(
        {
            "items": [TransactionResponse.from_model(t) for t in transactions],
            "pagination": pagination,
        }
    )


@router.post("/webhook", response_model=ApiResponse[Dict[str, Any]])
async def payment_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None),
    x_razorpay_event_id: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Gateway callback. The signature covers the raw body, so it is read
    before any parsing.
    """
    body = await request.body()
    service = WebhookService(db, gateway)
    result = await run_in_threadpool(
        service.process, body, x_razorpay_signature, x_razorpay_event_id
    )
    return ok(result, "Webhook processed")


@router.post("/stale/cancel", response_model=ApiResponse[List[str]])
def cancel_stale_transactions(
    older_than_minutes: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    admin: Principal = Depends(get_current_admin),
):
    ledger = PaymentLedgerService(db)
    cancelled = ledger.cancel_stale_pending(older_than_minutes)
    return ok(cancelled, f"Cancelled {len(cancelled)} stale transactions")


@router.get("/{transaction_id}", response_model=ApiResponse[TransactionResponse])
def get_transaction(
    transaction_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    """Transaction with its event history (payer, course guru or admin)."""
    txn = PaymentLedgerService(db).get(transaction_id)
    if not (
        principal.is_admin
        or txn.learner_id == principal.id
        or (principal.is_guru and txn.guru_id == principal.id)
    ):
        raise PermissionDenied(data={"transaction_id": transaction_id})
    return ok(TransactionResponse.from_model(txn, include_events=True))


@router.post(
    "/{transaction_id}/refund", response_model=ApiResponse[TransactionResponse]
)
def refund_transaction(
    transaction_id: str,
    payload: RefundRequest,
    db: Session = Depends(get_db),
    admin: Principal = Depends(get_current_admin),
):
    """
    Full or partial refund. A full refund of the activating payment also
    cancels the enrollment.
    """
    service = EnrollmentService(db)
    txn = service.apply_refund(
        transaction_id,
        payload.amount,
        payload.reason,
        actor=admin,
        reference=payload.refund_reference,
    )
    return ok(TransactionResponse.from_model(txn), "Refund processed")


@router.post(
    "/{transaction_id}/distribute", response_model=ApiResponse[TransactionResponse]
)
def distribute_revenue(
    transaction_id: str,
    db: Session = Depends(get_db),
    admin: Principal = Depends(get_current_admin),
):
    ledger = PaymentLedgerService(db)
    txn = ledger.distribute_revenue(transaction_id, actor_id=admin.id)
    return ok(TransactionResponse.from_model(txn), "Revenue distributed")
