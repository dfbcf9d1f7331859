from sqlalchemy import JSON, Column, DateTime, Enum, ForeignKey, Integer, String

from app.core.database import Base
from app.models.enums import AuditAction
from app.utils.datetime_utils import utcnow


class EnrollmentAuditEvent(Base):
    """Append-only audit trail of an enrollment; rows are never updated."""

    __tablename__ = "enrollment_audit_events"

    id = Column(Integer, primary_key=True, index=True)
    enrollment_id = Column(
        Integer,
        ForeignKey("enrollments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action = Column(Enum(AuditAction, native_enum=False, length=50), nullable=False)

    # NULL actor means the engine itself (lazy expiry, webhooks)
    actor_id = Column(Integer, nullable=True)
    actor_role = Column(String(20), nullable=False, default="system")

    previous_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=True)
    reason = Column(String(500), nullable=True)
    details = Column(JSON, nullable=True)
    ip_address = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
