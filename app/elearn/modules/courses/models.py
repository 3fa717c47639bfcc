from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.elearn.models import Base, User

if TYPE_CHECKING:
    from app.elearn.modules.assignments.models import Assignment
    from app.elearn.modules.quizzes.models import Quiz


class Enrollment(Base):
    __tablename__ = "enrollments"

    course_id: Mapped[int] = mapped_column(ForeignKey("courses.id", ondelete="CASCADE"), primary_key=True)
    student_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    enrolled_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Course(Base):
    __tablename__ = "courses"
    __table_args__ = (
        Index("idx_courses_instructor", "instructor_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # e.g. "CS101"
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    instructor_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    instructor: Mapped[User] = relationship("User", foreign_keys=[instructor_id], lazy="selectin")
    students: Mapped[list[User]] = relationship(
        "User",
        secondary="enrollments",
        lazy="selectin",
        order_by="User.name",
        viewonly=True,
    )
    assignments: Mapped[list["Assignment"]] = relationship(
        "Assignment",
        back_populates="course",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Assignment.due_at",
    )
    quizzes: Mapped[list["Quiz"]] = relationship(
        "Quiz",
        back_populates="course",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Quiz.created_at",
    )
    enrollments: Mapped[list[Enrollment]] = relationship(
        "Enrollment",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def has_student(self, user: User | None) -> bool:
        if user is None:
            return False
        return any(e.student_id == user.id for e in self.enrollments)
