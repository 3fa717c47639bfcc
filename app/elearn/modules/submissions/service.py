from __future__ import annotations

import hashlib
import math
from datetime import date, datetime
from typing import TYPE_CHECKING

from werkzeug.utils import secure_filename

from app.elearn.audit import record_event

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.elearn.models import User
    from app.elearn.modules.assignments.models import Assignment
    from app.elearn.modules.submissions.models import Submission
    from app.elearn.storage import Storage


def build_submission_storage_key(assignment_id: int, student_id: int, filename: str, upload_date: date | None = None) -> str:
    """Build deterministic storage key for a submission attachment."""
    if upload_date is None:
        upload_date = date.today()
    safe_filename = secure_filename(filename) or "submission.bin"
    return f"submissions/{assignment_id}/{student_id}/{upload_date.isoformat()}/{safe_filename}"


def file_digest_and_bytes(file_bytes: bytes) -> tuple[str, int]:
    """Compute SHA256 digest and size."""
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def parse_grade(raw: str | None, max_points: int) -> float:
    """Parse and bound-check a grade; raises ValueError with a user-facing message."""
    s = (raw or "").strip()
    if not s:
        raise ValueError("Grade is required.")
    try:
        grade = float(s)
    except ValueError:
        raise ValueError("Grade must be a number.") from None
    if not math.isfinite(grade) or grade < 0 or grade > max_points:
        raise ValueError(f"Grade must be between 0 and {max_points}.")
    return grade


def submit_assignment(
    s: "Session",
    assignment: "Assignment",
    student: "User",
    *,
    content: str,
    file_bytes: bytes | None = None,
    filename: str | None = None,
    content_type: str | None = None,
    storage: "Storage | None" = None,
) -> tuple["Submission", bool]:
    """
    Create or replace the student's submission for an assignment.

    Returns (submission, created). Raises ValueError when the student is not
    enrolled, the submission is empty, or it has already been graded.
    """
    from app.elearn.modules.submissions.models import Submission

    if not student.is_student:
        raise ValueError("Only students can submit assignments.")
    if not assignment.course.has_student(student):
        raise ValueError("You must be enrolled in the course to submit.")

    content = (content or "").strip()
    has_file = bool(file_bytes) and bool(filename)
    if not content and not has_file:
        raise ValueError("Submission needs text content or a file.")

    now = datetime.utcnow()
    existing = (
        s.query(Submission)
        .filter(Submission.assignment_id == assignment.id, Submission.student_id == student.id)
        .one_or_none()
    )
    if existing is not None and existing.is_graded:
        raise ValueError("This submission has already been graded and can no longer be changed.")

    created = existing is None
    sub = existing or Submission(assignment_id=assignment.id, student_id=student.id, revision_count=0)
    previous_key = sub.storage_key
    if (has_file or previous_key) and storage is None:
        raise RuntimeError("storage is required to save attachments")

    sub.content = content
    sub.submitted_at = now
    sub.is_late = assignment.is_past_due(now)
    sub.revision_count = (sub.revision_count or 0) + 1

    # A resubmission replaces the whole submission, attachment included.
    sha256 = None
    if has_file:
        sha256, size_bytes = file_digest_and_bytes(file_bytes or b"")
        storage_key = build_submission_storage_key(assignment.id, student.id, filename or "")
        storage.put_bytes(storage_key, file_bytes or b"", content_type=content_type)
        sub.storage_key = storage_key
        sub.filename = secure_filename(filename or "") or "submission.bin"
        sub.content_type = (content_type or "application/octet-stream").strip()
        sub.size_bytes = size_bytes
    else:
        sub.storage_key = None
        sub.filename = None
        sub.content_type = None
        sub.size_bytes = None
    if created:
        s.add(sub)
    s.flush()

    replaced_key = previous_key if previous_key and previous_key != sub.storage_key else None
    if replaced_key:
        storage.delete(replaced_key)

    record_event(
        s,
        actor=student,
        action="submission.create" if created else "submission.update",
        entity_type="Submission",
        entity_id=str(sub.id),
        metadata={
            "assignment_id": assignment.id,
            "is_late": sub.is_late,
            "revision": sub.revision_count,
            "filename": sub.filename,
            "sha256": sha256,
            "replaced_attachment": replaced_key,
        },
    )
    return sub, created


def grade_submission(s: "Session", submission: "Submission", raw_grade: str | None, feedback: str | None, grader: "User") -> "Submission":
    """Record (or overwrite) the grade on a submission."""
    assignment = submission.assignment
    grade = parse_grade(raw_grade, assignment.max_points)
    previous = submission.grade

    submission.grade = grade
    submission.feedback = (feedback or "").strip() or None
    submission.graded_at = datetime.utcnow()
    submission.graded_by_user_id = grader.id

    record_event(
        s,
        actor=grader,
        action="submission.grade" if previous is None else "submission.regrade",
        entity_type="Submission",
        entity_id=str(submission.id),
        metadata={
            "assignment_id": assignment.id,
            "student_id": submission.student_id,
            "grade": grade,
            "previous_grade": previous,
        },
    )
    return submission


def submissions_for_student(s: "Session", student: "User") -> list["Submission"]:
    from app.elearn.modules.submissions.models import Submission

    return (
        s.query(Submission)
        .filter(Submission.student_id == student.id)
        .order_by(Submission.submitted_at.desc())
        .all()
    )


def ungraded_count(s: "Session", course_ids: list[int]) -> int:
    from app.elearn.modules.assignments.models import Assignment
    from app.elearn.modules.submissions.models import Submission

    if not course_ids:
        return 0
    return (
        s.query(Submission)
        .join(Assignment, Assignment.id == Submission.assignment_id)
        .filter(Assignment.course_id.in_(course_ids))
        .filter(Submission.grade.is_(None))
        .count()
    )
