from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)

from app.core.database import Base
from app.utils.datetime_utils import utcnow


class EnrollmentDevice(Base):
    __tablename__ = "enrollment_devices"
    __table_args__ = (
        UniqueConstraint("enrollment_id", "device_id", name="uq_enrollment_device"),
    )

    id = Column(Integer, primary_key=True, index=True)
    enrollment_id = Column(
        Integer,
        ForeignKey("enrollments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Opaque fingerprint supplied by the calling layer
    device_id = Column(String(128), nullable=False)

    platform = Column(String(20), nullable=False, default="web")
    browser = Column(String(100), nullable=True)
    os = Column(String(100), nullable=True)
    user_agent = Column(String(500), nullable=True)
    ip_address = Column(String(64), nullable=True)
    locale = Column(String(64), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    registered_at = Column(DateTime, default=utcnow, nullable=False)
    last_seen_at = Column(DateTime, default=utcnow, nullable=False)
    deactivated_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return (
            f"<EnrollmentDevice(enrollment_id={self.enrollment_id}, "
            f"device_id='{self.device_id}', active={self.is_active})>"
        )
