from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint

from app.core.database import Base
from app.utils.datetime_utils import utcnow


class LectureCompletion(Base):
    __tablename__ = "lecture_completions"
    __table_args__ = (
        UniqueConstraint("enrollment_id", "lecture_id", name="uq_lecture_completion"),
    )

    id = Column(Integer, primary_key=True, index=True)
    enrollment_id = Column(
        Integer,
        ForeignKey("enrollments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    lecture_id = Column(String(100), nullable=False)
    time_spent = Column(Integer, nullable=False, default=0)  # seconds
    completed_at = Column(DateTime, default=utcnow, nullable=False)
