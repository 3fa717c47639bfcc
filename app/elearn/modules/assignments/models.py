from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.elearn.models import Base

if TYPE_CHECKING:
    from app.elearn.modules.courses.models import Course
    from app.elearn.modules.submissions.models import Submission


class Assignment(Base):
    __tablename__ = "assignments"
    __table_args__ = (
        Index("idx_assignments_course", "course_id"),
        Index("idx_assignments_due_at", "due_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    course_id: Mapped[int] = mapped_column(ForeignKey("courses.id", ondelete="CASCADE"), nullable=False)
    instructor_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    max_points: Mapped[int] = mapped_column(Integer, nullable=False, default=100)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    course: Mapped["Course"] = relationship("Course", back_populates="assignments", lazy="selectin")
    submissions: Mapped[list["Submission"]] = relationship(
        "Submission",
        back_populates="assignment",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Submission.submitted_at",
    )

    def is_past_due(self, when: datetime | None = None) -> bool:
        if self.due_at is None:
            return False
        return (when or datetime.utcnow()) > self.due_at

    def submission_for(self, student_id: int) -> "Submission | None":
        return next((sub for sub in self.submissions if sub.student_id == student_id), None)
