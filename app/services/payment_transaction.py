# app/services/payment_transaction.py
import logging
import math
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import Settings, settings
from app.core.decorator import db_exception
from app.core.exceptions import (
    AlreadyDistributed,
    InvalidAmount,
    InvalidRefundAmount,
    InvalidState,
    NotSuccessful,
    TransactionNotFound,
)
from app.models.enums import (
    BillingCycle,
    EnrollmentType,
    EventSource,
    PaymentEventType,
    RiskLevel,
    TransactionKind,
    TransactionStatus,
)
from app.models.payment_event import PaymentEvent
from app.models.payment_transaction import PaymentTransaction
from app.schemas.analytics import RevenueStats
from app.schemas.payment import AmountBreakdown, RevenueBucket
from app.utils.datetime_utils import utcnow
from app.utils.razorpay_client import GatewayOrder, verify_payment_signature

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ROUNDING_TOLERANCE = Decimal("0.01")
TXN_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits

TERMINAL_STATUSES = frozenset(
    {
        TransactionStatus.FAILED,
        TransactionStatus.REFUNDED,
        TransactionStatus.CANCELLED,
    }
)
OPEN_STATUSES = (TransactionStatus.PENDING, TransactionStatus.PROCESSING)
REFUNDABLE_STATUSES = frozenset(
    {TransactionStatus.SUCCESS, TransactionStatus.PARTIALLY_REFUNDED}
)
# Statuses that count as money received for revenue reporting
SETTLED_STATUSES = (
    TransactionStatus.SUCCESS,
    TransactionStatus.PARTIALLY_REFUNDED,
    TransactionStatus.REFUNDED,
)


def quantize(amount) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def generate_transaction_id() -> str:
    """TXN_<epoch millis>_<6 uppercase alphanumerics>"""
    suffix = "".join(secrets.choice(TXN_SUFFIX_ALPHABET) for _ in range(6))
    return f"TXN_{int(time.time() * 1000)}_{suffix}"


def calculate_revenue_split(
    total: Decimal, guru_percentage
) -> Tuple[Decimal, Decimal]:
    """
    Split ``total`` into (guru_share, platform_share).

    The platform share is the remainder, so the two always add back up to
    the total exactly.
    """
    total = quantize(total)
    guru_share = quantize(total * Decimal(str(guru_percentage)) / Decimal("100"))
    return guru_share, total - guru_share


def verify_signature(
    order_id: str, payment_id: str, signature: Optional[str], shared_secret: str
) -> bool:
    return verify_payment_signature(order_id, payment_id, signature, shared_secret)


@dataclass
class RiskAssessment:
    score: int = 0
    level: RiskLevel = RiskLevel.LOW
    factors: List[str] = field(default_factory=list)
    review_required: bool = False


def risk_level_for(score: int) -> RiskLevel:
    if score < 25:
        return RiskLevel.LOW
    if score < 50:
        return RiskLevel.MEDIUM
    if score < 75:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


def assess_risk(
    amount: Decimal,
    country: Optional[str] = None,
    recent_failures: int = 0,
    config: Settings = settings,
) -> RiskAssessment:
    score = 0
    factors = []

    if amount > Decimal(str(config.risk_high_amount_threshold)):
        score += 20
        factors.append("high_amount")

    if country and country.upper() != config.risk_home_country:
        score += 15
        factors.append("international_payment")

    if recent_failures >= config.risk_failed_attempts_threshold:
        score += 25
        factors.append("multiple_failed_attempts")

    score = min(score, 100)
    return RiskAssessment(
        score=score,
        level=risk_level_for(score),
        factors=factors,
        review_required=score >= 50,
    )


def _json_safe(details: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if details is None:
        return None
    safe = {}
    for key, value in details.items():
        if isinstance(value, Decimal):
            safe[key] = str(value)
        elif isinstance(value, datetime):
            safe[key] = value.isoformat()
        elif hasattr(value, "value"):
            safe[key] = value.value
        else:
            safe[key] = value
    return safe


class PaymentLedgerService:
    """
    Append-only ledger of payment attempts.

    Mutating methods accept ``commit=False`` so that an orchestrating
    service can apply the ledger change and its own changes as one unit.
    """

    def __init__(self, db: Session, config: Settings = settings):
        self.db = db
        self.config = config

    # ==================== Internals ====================

    def append_event(
        self,
        txn: PaymentTransaction,
        event: PaymentEventType,
        source: EventSource = EventSource.SYSTEM,
        previous_status: Optional[TransactionStatus] = None,
        new_status: Optional[TransactionStatus] = None,
        details: Optional[Dict[str, Any]] = None,
        gateway_event_id: Optional[str] = None,
    ) -> PaymentEvent:
        entry = PaymentEvent(
            event=event,
            source=source,
            previous_status=previous_status.value if previous_status else None,
            new_status=new_status.value if new_status else None,
            details=_json_safe(details),
            gateway_event_id=gateway_event_id,
        )
        txn.events.append(entry)
        return entry

    def _finish(self, txn: PaymentTransaction, commit: bool) -> PaymentTransaction:
        if commit:
            self.db.commit()
            self.db.refresh(txn)
        else:
            self.db.flush()
        return txn

    def count_recent_failures(self, learner_id: int) -> int:
        since = utcnow() - timedelta(hours=self.config.risk_failed_attempts_window_hours)
        return (
            self.db.query(PaymentTransaction)
            .filter(
                PaymentTransaction.learner_id == learner_id,
                PaymentTransaction.status == TransactionStatus.FAILED,
                PaymentTransaction.failed_at >= since,
            )
            .count()
        )

    # ==================== Lookups ====================

    def get(self, transaction_id: str, lock: bool = False) -> PaymentTransaction:
        query = self.db.query(PaymentTransaction).filter(
            PaymentTransaction.transaction_id == transaction_id
        )
        if lock:
            query = query.with_for_update()
        txn = query.first()
        if not txn:
            raise TransactionNotFound(data={"transaction_id": transaction_id})
        return txn

    def get_by_order_id(
        self, order_id: str, lock: bool = False
    ) -> Optional[PaymentTransaction]:
        query = self.db.query(PaymentTransaction).filter(
            PaymentTransaction.gateway_order_id == order_id
        )
        if lock:
            query = query.with_for_update()
        return query.first()

    def get_by_payment_id(self, payment_id: str) -> Optional[PaymentTransaction]:
        return (
            self.db.query(PaymentTransaction)
            .filter(PaymentTransaction.gateway_payment_id == payment_id)
            .first()
        )

    def find_open_transaction(
        self,
        learner_id: int,
        course_id: int,
        kind: TransactionKind,
        enrollment_id: Optional[int] = None,
    ) -> Optional[PaymentTransaction]:
        """Latest checkout of ``kind`` still awaiting payment."""
        query = self.db.query(PaymentTransaction).filter(
            PaymentTransaction.learner_id == learner_id,
            PaymentTransaction.course_id == course_id,
            PaymentTransaction.kind == kind,
            PaymentTransaction.status.in_(OPEN_STATUSES),
        )
        if enrollment_id is not None:
            query = query.filter(PaymentTransaction.enrollment_id == enrollment_id)
        return (
            query.order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
            .with_for_update()
            .first()
        )

    def is_stale(self, txn: PaymentTransaction) -> bool:
        cutoff = utcnow() - timedelta(minutes=self.config.stale_pending_minutes)
        return txn.created_at < cutoff

    def list_for_learner(
        self,
        learner_id: int,
        status: Optional[TransactionStatus] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[PaymentTransaction], dict]:
        query = self.db.query(PaymentTransaction).filter(
            PaymentTransaction.learner_id == learner_id
        )
        if status:
            query = query.filter(PaymentTransaction.status == status)
        return self._paginate(query, page, size)

    def pending_distributions(
        self, guru_id: Optional[int] = None, page: int = 1, size: int = 20
    ) -> Tuple[List[PaymentTransaction], dict]:
        query = self.db.query(PaymentTransaction).filter(
            PaymentTransaction.status == TransactionStatus.SUCCESS,
            PaymentTransaction.is_distributed.is_(False),
        )
        if guru_id is not None:
            query = query.filter(PaymentTransaction.guru_id == guru_id)
        return self._paginate(query, page, size)

    def find_stale_pending(
        self, older_than_minutes: Optional[int] = None
    ) -> List[PaymentTransaction]:
        minutes = older_than_minutes or self.config.stale_pending_minutes
        cutoff = utcnow() - timedelta(minutes=minutes)
        return (
            self.db.query(PaymentTransaction)
            .filter(
                PaymentTransaction.status.in_(OPEN_STATUSES),
                PaymentTransaction.created_at < cutoff,
            )
            .order_by(PaymentTransaction.created_at.asc())
            .all()
        )

    def _paginate(self, query, page: int, size: int):
        total = query.count()
        items = (
            query.order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
            .offset((page - 1) * size)
            .limit(size)
            .all()
        )
        pagination = {
            "total": total,
            "page": page,
            "size": size,
            "total_pages": math.ceil(total / size) if size > 0 else 0,
        }
        return items, pagination

    # ==================== Mutations ====================

    @db_exception
    def create_pending_transaction(
        self,
        learner_id: int,
        course_id: int,
        guru_id: int,
        enrollment_type: EnrollmentType,
        amount: AmountBreakdown,
        billing_cycle: Optional[BillingCycle] = None,
        kind: TransactionKind = TransactionKind.PURCHASE,
        enrollment_id: Optional[int] = None,
        country: Optional[str] = None,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        commit: bool = True,
    ) -> PaymentTransaction:
        total = quantize(amount.computed_total)
        if amount.total is not None and abs(quantize(amount.total) - total) > ROUNDING_TOLERANCE:
            logger.warning(
                f"Amount breakdown for learner {learner_id} / course {course_id} "
                f"does not reconcile: {amount.total} != {total}"
            )
            raise InvalidAmount(
                "Amount total does not equal base - discount + tax + fee",
                data={"expected_total": str(total), "total": str(amount.total)},
                field="total",
            )
        if total <= 0:
            logger.warning(
                f"Rejected non-positive amount {total} for learner {learner_id} / course {course_id}"
            )
            raise InvalidAmount("Amount total must be greater than zero", field="total")

        guru_pct = Decimal(str(self.config.guru_share_percentage))
        platform_pct = Decimal(str(self.config.platform_share_percentage))
        guru_share, platform_share = calculate_revenue_split(total, guru_pct)

        risk = assess_risk(
            total,
            country=country,
            recent_failures=self.count_recent_failures(learner_id),
            config=self.config,
        )
        if risk.review_required:
            logger.warning(
                f"Transaction for learner {learner_id} flagged for review: "
                f"score={risk.score} factors={risk.factors}"
            )

        txn = PaymentTransaction(
            transaction_id=generate_transaction_id(),
            kind=kind,
            learner_id=learner_id,
            course_id=course_id,
            guru_id=guru_id,
            enrollment_id=enrollment_id,
            enrollment_type=enrollment_type,
            billing_cycle=billing_cycle,
            amount_total=total,
            base_price=quantize(amount.base_price),
            discount=quantize(amount.discount),
            discount_code=amount.discount_code,
            tax=quantize(amount.tax),
            processing_fee=quantize(amount.processing_fee),
            currency=amount.currency.upper(),
            guru_share=guru_share,
            platform_share=platform_share,
            guru_share_percentage=guru_pct,
            platform_share_percentage=platform_pct,
            status=TransactionStatus.PENDING,
            refunded_amount=Decimal("0"),
            risk_score=risk.score,
            risk_level=risk.level,
            risk_factors=risk.factors,
            review_required=risk.review_required,
            country=country.upper() if country else None,
            client_ip=client_ip,
            user_agent=user_agent[:500] if user_agent else None,
        )
        self.db.add(txn)
        self.append_event(
            txn,
            PaymentEventType.TRANSACTION_CREATED,
            new_status=TransactionStatus.PENDING,
            details={"amount": total, "currency": txn.currency, "kind": kind},
        )
        txn = self._finish(txn, commit)
        logger.info(
            f"Created {kind.value} transaction {txn.transaction_id} for learner "
            f"{learner_id} / course {course_id}: {total} {txn.currency}"
        )
        return txn

    @db_exception
    def attach_order(
        self, txn: PaymentTransaction, order: GatewayOrder, commit: bool = True
    ) -> PaymentTransaction:
        if txn.status != TransactionStatus.PENDING:
            raise InvalidState("Order can only be attached to a pending transaction")
        txn.gateway_order_id = order.order_id
        txn.receipt = order.receipt
        txn.initiated_at = utcnow()
        self.append_event(
            txn,
            PaymentEventType.ORDER_CREATED,
            details={"order_id": order.order_id, "amount_minor": order.amount_minor},
        )
        return self._finish(txn, commit)

    @db_exception
    def mark_processing(
        self,
        txn: PaymentTransaction,
        source: EventSource = EventSource.USER,
        commit: bool = True,
    ) -> PaymentTransaction:
        if txn.status == TransactionStatus.PROCESSING:
            return txn
        if txn.status != TransactionStatus.PENDING:
            raise InvalidState(
                f"Transaction is {txn.status.value} and cannot start processing"
            )
        txn.status = TransactionStatus.PROCESSING
        self.append_event(
            txn,
            PaymentEventType.PAYMENT_PROCESSING,
            source=source,
            previous_status=TransactionStatus.PENDING,
            new_status=TransactionStatus.PROCESSING,
        )
        return self._finish(txn, commit)

    @db_exception
    def mark_success(
        self,
        txn: PaymentTransaction,
        payment_id: str,
        signature: Optional[str],
        payment_method: Optional[str] = None,
        source: EventSource = EventSource.SYSTEM,
        gateway_event_id: Optional[str] = None,
        commit: bool = True,
    ) -> PaymentTransaction:
        if not txn.is_pending:
            raise InvalidState(
                f"Transaction {txn.transaction_id} is already {txn.status.value}",
                data={"status": txn.status.value},
            )
        previous = txn.status
        now = utcnow()
        txn.status = TransactionStatus.SUCCESS
        txn.gateway_payment_id = payment_id
        txn.gateway_signature = signature
        txn.payment_method = payment_method or txn.payment_method
        txn.completed_at = now
        self.append_event(
            txn,
            PaymentEventType.PAYMENT_SUCCESS,
            source=source,
            previous_status=previous,
            new_status=TransactionStatus.SUCCESS,
            details={"payment_id": payment_id, "payment_method": payment_method},
            gateway_event_id=gateway_event_id,
        )
        txn = self._finish(txn, commit)
        logger.info(f"Transaction {txn.transaction_id} succeeded (payment {payment_id})")
        return txn

    @db_exception
    def mark_failed(
        self,
        txn: PaymentTransaction,
        reason: str,
        code: Optional[str] = None,
        source: EventSource = EventSource.SYSTEM,
        gateway_event_id: Optional[str] = None,
        commit: bool = True,
    ) -> PaymentTransaction:
        if txn.status == TransactionStatus.FAILED:
            return txn
        if not txn.is_pending:
            raise InvalidState(
                f"Transaction {txn.transaction_id} is already {txn.status.value}",
                data={"status": txn.status.value},
            )
        previous = txn.status
        txn.status = TransactionStatus.FAILED
        txn.failure_reason = reason[:255]
        txn.failure_code = code
        txn.failed_at = utcnow()
        self.append_event(
            txn,
            PaymentEventType.PAYMENT_FAILED,
            source=source,
            previous_status=previous,
            new_status=TransactionStatus.FAILED,
            details={"reason": reason, "code": code},
            gateway_event_id=gateway_event_id,
        )
        txn = self._finish(txn, commit)
        logger.warning(f"Transaction {txn.transaction_id} failed: {reason} ({code})")
        return txn

    @db_exception
    def flag_for_review(
        self,
        txn: PaymentTransaction,
        reason: str,
        details: Optional[Dict[str, Any]] = None,
        source: EventSource = EventSource.SYSTEM,
        gateway_event_id: Optional[str] = None,
        commit: bool = True,
    ) -> PaymentTransaction:
        """
        Hold a settled payment for an operator.

        Used when money was received but could not be applied, so the
        payment stays refundable instead of lingering as pending.
        """
        txn.review_required = True
        txn.notes = f"{txn.notes}\n{reason}" if txn.notes else reason
        self.append_event(
            txn,
            PaymentEventType.REVIEW_REQUIRED,
            source=source,
            details={"reason": reason, **(details or {})},
            gateway_event_id=gateway_event_id,
        )
        txn = self._finish(txn, commit)
        logger.warning(f"Transaction {txn.transaction_id} held for review: {reason}")
        return txn

    def has_refund_reference(self, txn: PaymentTransaction, reference: str) -> bool:
        return any(
            e.event == PaymentEventType.REFUND_PROCESSED
            and (e.details or {}).get("reference") == reference
            for e in txn.events
        )

    @db_exception
    def process_refund(
        self,
        transaction_id: str,
        amount: Optional[Decimal],
        reason: str,
        actor_id: Optional[int] = None,
        reference: Optional[str] = None,
        source: EventSource = EventSource.ADMIN,
        commit: bool = True,
    ) -> PaymentTransaction:
        txn = self.get(transaction_id, lock=True)

        if reference and self.has_refund_reference(txn, reference):
            logger.info(f"Refund {reference} already applied to {transaction_id}")
            return txn

        if txn.status not in REFUNDABLE_STATUSES:
            raise InvalidState(
                f"Transaction is {txn.status.value}; only successful payments can be refunded",
                data={"status": txn.status.value},
            )

        refundable = quantize(txn.refundable_amount)
        amount = refundable if amount is None else quantize(amount)
        if amount <= 0 or amount > refundable:
            raise InvalidRefundAmount(
                data={"requested": str(amount), "refundable": str(refundable)},
                field="amount",
            )

        previous = txn.status
        txn.refunded_amount = quantize((txn.refunded_amount or 0) + amount)
        txn.status = (
            TransactionStatus.REFUNDED
            if txn.refunded_amount >= txn.amount_total
            else TransactionStatus.PARTIALLY_REFUNDED
        )
        txn.refund_reason = reason
        txn.refunded_at = utcnow()
        txn.refunded_by = actor_id
        self.append_event(
            txn,
            PaymentEventType.REFUND_PROCESSED,
            source=source,
            previous_status=previous,
            new_status=txn.status,
            details={
                "amount": amount,
                "total_refunded": txn.refunded_amount,
                "reason": reason,
                "reference": reference,
                "actor_id": actor_id,
            },
        )
        txn = self._finish(txn, commit)
        logger.info(
            f"Refunded {amount} on {transaction_id} "
            f"(total refunded {txn.refunded_amount}, status {txn.status.value})"
        )
        return txn

    @db_exception
    def distribute_revenue(
        self, transaction_id: str, actor_id: Optional[int] = None, commit: bool = True
    ) -> PaymentTransaction:
        txn = self.get(transaction_id, lock=True)
        if txn.is_distributed:
            raise AlreadyDistributed(
                data={"distributed_at": txn.distributed_at.isoformat()}
                if txn.distributed_at
                else None
            )
        if txn.status != TransactionStatus.SUCCESS:
            raise NotSuccessful(
                f"Transaction is {txn.status.value}; revenue cannot be distributed",
                data={"status": txn.status.value},
            )
        txn.is_distributed = True
        txn.distributed_at = utcnow()
        self.append_event(
            txn,
            PaymentEventType.REVENUE_DISTRIBUTED,
            source=EventSource.ADMIN,
            details={
                "guru_id": txn.guru_id,
                "guru_share": txn.guru_share,
                "platform_share": txn.platform_share,
                "actor_id": actor_id,
            },
        )
        txn = self._finish(txn, commit)
        logger.info(
            f"Revenue distributed for {transaction_id}: guru {txn.guru_share}, "
            f"platform {txn.platform_share}"
        )
        return txn

    @db_exception
    def cancel_pending(
        self,
        txn: PaymentTransaction,
        reason: str = "Stale pending transaction",
        code: str = "STALE_PENDING",
        commit: bool = True,
    ) -> PaymentTransaction:
        if not txn.is_pending:
            raise InvalidState(
                f"Transaction {txn.transaction_id} is already {txn.status.value}",
                data={"status": txn.status.value},
            )
        previous = txn.status
        txn.status = TransactionStatus.CANCELLED
        txn.failure_reason = reason
        txn.failure_code = code
        self.append_event(
            txn,
            PaymentEventType.CANCELLED,
            previous_status=previous,
            new_status=TransactionStatus.CANCELLED,
            details={"created_at": txn.created_at, "code": code},
        )
        return self._finish(txn, commit)

    @db_exception
    def cancel_stale_pending(self, older_than_minutes: Optional[int] = None) -> List[str]:
        """Terminate pending transactions older than the stale window."""
        cancelled = []
        for txn in self.find_stale_pending(older_than_minutes):
            self.cancel_pending(txn, commit=False)
            cancelled.append(txn.transaction_id)
        self.db.commit()
        if cancelled:
            logger.info(f"Cancelled {len(cancelled)} stale pending transactions")
        return cancelled

    # ==================== Reporting ====================

    @staticmethod
    def _bucket_key(moment: datetime, period: str) -> str:
        if period == "day":
            return moment.strftime("%Y-%m-%d")
        if period == "week":
            year, week, _ = moment.isocalendar()
            return f"{year}-W{week:02d}"
        if period == "year":
            return moment.strftime("%Y")
        return moment.strftime("%Y-%m")

    def revenue_stats(
        self,
        period: str = "month",
        guru_id: Optional[int] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> RevenueStats:
        query = self.db.query(PaymentTransaction).filter(
            PaymentTransaction.status.in_(SETTLED_STATUSES),
            PaymentTransaction.completed_at.isnot(None),
        )
        if guru_id is not None:
            query = query.filter(PaymentTransaction.guru_id == guru_id)
        if start_date:
            query = query.filter(PaymentTransaction.completed_at >= start_date)
        if end_date:
            query = query.filter(PaymentTransaction.completed_at <= end_date)

        buckets: Dict[str, Dict[str, Any]] = {}
        total_revenue = Decimal("0")
        refunded = Decimal("0")
        pending_distribution = Decimal("0")
        transactions = query.order_by(PaymentTransaction.completed_at.asc()).all()

        for txn in transactions:
            key = self._bucket_key(txn.completed_at, period)
            bucket = buckets.setdefault(
                key,
                {
                    "total": Decimal("0"),
                    "guru": Decimal("0"),
                    "platform": Decimal("0"),
                    "count": 0,
                },
            )
            bucket["total"] += txn.amount_total
            bucket["guru"] += txn.guru_share
            bucket["platform"] += txn.platform_share
            bucket["count"] += 1
            total_revenue += txn.amount_total
            refunded += txn.refunded_amount or 0
            if txn.status == TransactionStatus.SUCCESS and not txn.is_distributed:
                pending_distribution += txn.guru_share

        return RevenueStats(
            period=period,
            guru_id=guru_id,
            start_date=start_date,
            end_date=end_date,
            buckets=[
                RevenueBucket(
                    period=key,
                    total_revenue=quantize(b["total"]),
                    guru_revenue=quantize(b["guru"]),
                    platform_revenue=quantize(b["platform"]),
                    transaction_count=b["count"],
                    average_transaction_value=quantize(b["total"] / b["count"]),
                )
                for key, b in buckets.items()
            ],
            total_revenue=quantize(total_revenue),
            total_transactions=len(transactions),
            refunded_amount=quantize(refunded),
            pending_distribution=quantize(pending_distribution),
        )
