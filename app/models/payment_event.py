from sqlalchemy import JSON, Column, DateTime, Enum, ForeignKey, Integer, String

from app.core.database import Base
from app.models.enums import EventSource, PaymentEventType
from app.utils.datetime_utils import utcnow


class PaymentEvent(Base):
    """Append-only event log of a payment transaction."""

    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, index=True)
    transaction_pk = Column(
        Integer,
        ForeignKey("payment_transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event = Column(Enum(PaymentEventType, native_enum=False, length=40), nullable=False)
    source = Column(
        Enum(EventSource, native_enum=False, length=20),
        nullable=False,
        default=EventSource.SYSTEM,
    )
    previous_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=True)
    details = Column(JSON, nullable=True)
    gateway_event_id = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class WebhookDelivery(Base):
    """Processed gateway webhook ids; deliveries are at-least-once."""

    __tablename__ = "webhook_deliveries"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(100), nullable=False, unique=True)
    event_type = Column(String(60), nullable=False)
    outcome = Column(String(60), nullable=True)
    received_at = Column(DateTime, default=utcnow, nullable=False)
