# app/services/webhook.py
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.core.config import Settings, settings
from app.core.decorator import db_exception
from app.core.exceptions import (
    InvalidRefundAmount,
    InvalidState,
    WebhookSignatureInvalid,
)
from app.models.enums import (
    AuditAction,
    EventSource,
    PaymentEventType,
    SubscriptionStatus,
    TransactionKind,
    TransactionStatus,
)
from app.models.payment_event import WebhookDelivery
from app.services.audit import record_audit
from app.services.course_catalog import CourseCatalog
from app.services.enrollment import EnrollmentService
from app.services.lifecycle import load_enrollment
from app.services.payment_transaction import PaymentLedgerService
from app.services.transitions import can_transition_subscription
from app.utils.razorpay_client import PaymentGateway

logger = logging.getLogger(__name__)


def _entity(payload: Dict[str, Any], name: str) -> Dict[str, Any]:
    return ((payload.get("payload") or {}).get(name) or {}).get("entity") or {}


class WebhookService:
    """
    Applies gateway webhooks to the ledger.

    Deliveries are at-least-once: each event id is recorded once in
    ``webhook_deliveries`` and replays are acknowledged without effect.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        catalog: Optional[CourseCatalog] = None,
        config: Settings = settings,
    ):
        self.db = db
        self.gateway = gateway
        self.ledger = PaymentLedgerService(db, config)
        self.enrollments = EnrollmentService(db, gateway, catalog, config)

    @db_exception
    def process(
        self, body: bytes, signature: Optional[str], event_id: Optional[str] = None
    ) -> Dict[str, Any]:
        if not self.gateway.verify_webhook(body, signature):
            logger.warning("Rejected webhook with an invalid signature")
            raise WebhookSignatureInvalid()

        try:
            payload = json.loads(body)
        except ValueError:
            logger.warning("Rejected webhook with a malformed body")
            raise WebhookSignatureInvalid("Webhook body is not valid JSON")

        event_type = payload.get("event", "unknown")
        event_id = event_id or payload.get("id")
        if not event_id:
            # no delivery id: fall back to the entity id + event name
            entity_id = (
                _entity(payload, "refund").get("id")
                or _entity(payload, "payment").get("id")
                or "none"
            )
            event_id = f"{event_type}:{entity_id}"

        if (
            self.db.query(WebhookDelivery)
            .filter(WebhookDelivery.event_id == event_id)
            .first()
        ):
            logger.info(f"Duplicate webhook {event_id} ({event_type}) acknowledged")
            return {"event_id": event_id, "event": event_type, "outcome": "duplicate"}

        handler = {
            "payment.captured": self._payment_captured,
            "payment.failed": self._payment_failed,
            "refund.created": self._refund_created,
            "refund.processed": self._refund_created,
        }.get(event_type)
        outcome = handler(payload, event_id) if handler else "ignored"

        self.db.add(
            WebhookDelivery(event_id=event_id, event_type=event_type, outcome=outcome)
        )
        self.db.commit()
        logger.info(f"Webhook {event_id} ({event_type}) processed: {outcome}")
        return {"event_id": event_id, "event": event_type, "outcome": outcome}

    def _record_received(self, txn, event_type: str, event_id: str) -> None:
        self.ledger.append_event(
            txn,
            PaymentEventType.WEBHOOK_RECEIVED,
            source=EventSource.WEBHOOK,
            details={"event": event_type},
            gateway_event_id=event_id,
        )

    def _payment_captured(self, payload: Dict[str, Any], event_id: str) -> str:
        payment = _entity(payload, "payment")
        txn = self.ledger.get_by_order_id(payment.get("order_id", ""), lock=True)
        if txn is None:
            logger.warning(f"payment.captured for unknown order {payment.get('order_id')}")
            return "unknown_order"

        self._record_received(txn, "payment.captured", event_id)
        if txn.status == TransactionStatus.SUCCESS:
            return "already_processed"
        if not txn.is_pending:
            # money captured for a transaction we already terminated
            self.ledger.flag_for_review(
                txn,
                f"Payment {payment.get('id')} captured after the transaction "
                f"was {txn.status.value}",
                details={"payment_id": payment.get("id")},
                source=EventSource.WEBHOOK,
                gateway_event_id=event_id,
                commit=False,
            )
            return "ignored_terminal"

        self.ledger.mark_success(
            txn,
            payment.get("id"),
            None,
            payment_method=payment.get("method"),
            source=EventSource.WEBHOOK,
            gateway_event_id=event_id,
            commit=False,
        )
        conflict = self.enrollments.activation_conflict(txn)
        if conflict is not None:
            self.ledger.flag_for_review(
                txn,
                f"Paid but not applied: {conflict.message}",
                details={"code": conflict.code},
                source=EventSource.WEBHOOK,
                gateway_event_id=event_id,
                commit=False,
            )
            return "needs_review"

        self.enrollments.activate(txn)
        return "activated"

    def _payment_failed(self, payload: Dict[str, Any], event_id: str) -> str:
        payment = _entity(payload, "payment")
        txn = self.ledger.get_by_order_id(payment.get("order_id", ""), lock=True)
        if txn is None:
            return "unknown_order"

        self._record_received(txn, "payment.failed", event_id)
        if not txn.is_pending:
            return "already_processed"

        self.ledger.mark_failed(
            txn,
            payment.get("error_description") or "Payment failed at gateway",
            code=payment.get("error_code"),
            source=EventSource.WEBHOOK,
            gateway_event_id=event_id,
            commit=False,
        )

        if txn.kind == TransactionKind.RENEWAL and txn.enrollment_id is not None:
            enrollment = load_enrollment(self.db, txn.enrollment_id, lock=True)
            subscription = enrollment.subscription
            if subscription is not None and can_transition_subscription(
                subscription.status, SubscriptionStatus.PAST_DUE
            ):
                previous = subscription.status
                subscription.status = SubscriptionStatus.PAST_DUE
                enrollment.touch()
                record_audit(
                    enrollment,
                    AuditAction.SUBSCRIPTION_PAST_DUE,
                    previous_status=previous,
                    new_status=SubscriptionStatus.PAST_DUE,
                    reason="Renewal payment failed",
                    details={"transaction_id": txn.transaction_id},
                )
                return "renewal_past_due"
        return "failed"

    def _refund_created(self, payload: Dict[str, Any], event_id: str) -> str:
        refund = _entity(payload, "refund")
        payment_id = refund.get("payment_id")
        txn = self.ledger.get_by_payment_id(payment_id) if payment_id else None
        if txn is None:
            return "unknown_payment"

        reference = refund.get("id") or event_id
        if self.ledger.has_refund_reference(txn, reference):
            return "already_processed"

        amount_minor = refund.get("amount")
        amount = (
            (Decimal(amount_minor) / Decimal("100")) if amount_minor is not None else None
        )
        try:
            self.enrollments.apply_refund(
                txn.transaction_id,
                amount,
                (refund.get("notes") or {}).get("reason") or "Refund issued at gateway",
                reference=reference,
                source=EventSource.WEBHOOK,
                commit=False,
            )
        except (InvalidRefundAmount, InvalidState) as e:
            # the ledger already reflects this money, e.g. an admin refund without a reference
            logger.warning(
                f"Refund {reference} on {txn.transaction_id} not applied: {e.message}"
            )
            return "rejected"
        return "refunded"
