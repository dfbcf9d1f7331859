# app/services/audit.py
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.models.enrollment import Enrollment
from app.models.enrollment_audit import EnrollmentAuditEvent
from app.models.enums import AuditAction
from app.schemas.auth import Principal

logger = logging.getLogger(__name__)


def _status_value(status) -> Optional[str]:
    if status is None:
        return None
    return getattr(status, "value", status)


def record_audit(
    enrollment: Enrollment,
    action: AuditAction,
    actor: Optional[Principal] = None,
    previous_status=None,
    new_status=None,
    reason: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
) -> EnrollmentAuditEvent:
    """
    Append an entry to the enrollment's audit trail.

    The entry is attached to the enrollment in the current unit of work and
    is persisted by the caller's commit. ``actor=None`` records the engine
    itself as the actor.
    """
    entry = EnrollmentAuditEvent(
        action=action,
        actor_id=actor.id if actor else None,
        actor_role=actor.role.value if actor else "system",
        previous_status=_status_value(previous_status),
        new_status=_status_value(new_status),
        reason=reason,
        details=details,
        ip_address=ip_address,
    )
    enrollment.audit_events.append(entry)
    logger.debug(
        f"Audit {action.value} on enrollment {enrollment.id} "
        f"({entry.previous_status} -> {entry.new_status})"
    )
    return entry


class AuditLogService:
    def __init__(self, db: Session):
        self.db = db

    def list_for_enrollment(
        self, enrollment_id: int, action: Optional[AuditAction] = None
    ) -> List[EnrollmentAuditEvent]:
        query = self.db.query(EnrollmentAuditEvent).filter(
            EnrollmentAuditEvent.enrollment_id == enrollment_id
        )
        if action:
            query = query.filter(EnrollmentAuditEvent.action == action)
        return query.order_by(EnrollmentAuditEvent.id.asc()).all()
