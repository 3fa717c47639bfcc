from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.elearn.models import Base, User

if TYPE_CHECKING:
    from app.elearn.modules.courses.models import Course


class Quiz(Base):
    __tablename__ = "quizzes"
    __table_args__ = (
        Index("idx_quizzes_course", "course_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    course_id: Mapped[int] = mapped_column(ForeignKey("courses.id", ondelete="CASCADE"), nullable=False)
    instructor_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    questions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    course: Mapped["Course"] = relationship("Course", back_populates="quizzes", lazy="selectin")
    attempts: Mapped[list["QuizAttempt"]] = relationship(
        "QuizAttempt",
        back_populates="quiz",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="QuizAttempt.submitted_at",
    )

    @property
    def max_score(self) -> float:
        return float(sum(q.get("points", 1) for q in self.questions or []))

    def attempts_for(self, student_id: int) -> list["QuizAttempt"]:
        return [a for a in self.attempts if a.student_id == student_id]


class QuizAttempt(Base):
    __tablename__ = "quiz_attempts"
    __table_args__ = (
        UniqueConstraint("quiz_id", "student_id", "attempt_number", name="uq_quiz_attempt_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    quiz_id: Mapped[int] = mapped_column(ForeignKey("quizzes.id", ondelete="CASCADE"), nullable=False)
    student_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    answers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)  # option index per question, None if blank
    score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    max_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    quiz: Mapped[Quiz] = relationship("Quiz", back_populates="attempts", lazy="selectin")
    student: Mapped[User] = relationship("User", lazy="selectin")

    @property
    def percentage(self) -> float:
        if not self.max_score:
            return 0.0
        return round(self.score / self.max_score * 100, 2)
