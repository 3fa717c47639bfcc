from __future__ import annotations

import re
from datetime import datetime
from typing import TYPE_CHECKING

from app.elearn.audit import record_event

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.elearn.models import User
    from app.elearn.modules.courses.models import Course, Enrollment


_CODE_RE = re.compile(r"^[A-Z0-9][A-Z0-9_-]{1,31}$")


def normalize_course_code(code: str | None) -> str:
    return (code or "").strip().upper()


def validate_course_payload(payload: dict) -> list[str]:
    """Validate course creation/update payload. Returns list of errors."""
    errors = []
    code = normalize_course_code(payload.get("code"))
    if not code:
        errors.append("Course code is required.")
    elif not _CODE_RE.match(code):
        errors.append("Course code must be 2-32 letters, digits, '-' or '_'.")
    title = (payload.get("title") or "").strip()
    if not title:
        errors.append("Title is required.")
    return errors


def code_taken(s: "Session", code: str, *, exclude_id: int | None = None) -> bool:
    from app.elearn.modules.courses.models import Course

    q = s.query(Course).filter(Course.code == normalize_course_code(code))
    if exclude_id is not None:
        q = q.filter(Course.id != exclude_id)
    return q.first() is not None


def create_course(s: "Session", payload: dict, user: "User") -> "Course":
    """Create a course owned by the given instructor."""
    from app.elearn.modules.courses.models import Course

    now = datetime.utcnow()
    course = Course(
        code=normalize_course_code(payload.get("code")),
        title=(payload.get("title") or "").strip(),
        description=(payload.get("description") or "").strip() or None,
        instructor_id=user.id,
        created_at=now,
        updated_at=now,
    )
    s.add(course)
    s.flush()

    record_event(
        s,
        actor=user,
        action="course.create",
        entity_type="Course",
        entity_id=str(course.id),
        metadata={"code": course.code, "title": course.title},
    )
    return course


def update_course(s: "Session", course: "Course", payload: dict, user: "User") -> "Course":
    """Update an existing course."""
    changes = {}

    new_code = normalize_course_code(payload.get("code"))
    if new_code and new_code != course.code:
        changes["code"] = {"old": course.code, "new": new_code}
        course.code = new_code

    new_title = (payload.get("title") or "").strip()
    if new_title and new_title != course.title:
        changes["title"] = {"old": course.title, "new": new_title}
        course.title = new_title

    new_description = (payload.get("description") or "").strip() or None
    if new_description != course.description:
        changes["description"] = {"old": course.description, "new": new_description}
        course.description = new_description

    course.updated_at = datetime.utcnow()

    record_event(
        s,
        actor=user,
        action="course.edit",
        entity_type="Course",
        entity_id=str(course.id),
        metadata={"code": course.code, "changes": changes},
    )
    return course


def delete_course(s: "Session", course: "Course", user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="course.delete",
        entity_type="Course",
        entity_id=str(course.id),
        metadata={"code": course.code, "title": course.title},
    )
    s.delete(course)


def enroll_student(s: "Session", course: "Course", student: "User") -> "Enrollment":
    """Enroll a student; raises ValueError if already enrolled or not a student."""
    from app.elearn.modules.courses.models import Enrollment

    if not student.is_student:
        raise ValueError("Only students can enroll in courses.")
    if course.has_student(student):
        raise ValueError("You are already enrolled in this course.")

    enrollment = Enrollment(course_id=course.id, student_id=student.id, enrolled_at=datetime.utcnow())
    course.enrollments.append(enrollment)

    record_event(
        s,
        actor=student,
        action="course.enroll",
        entity_type="Course",
        entity_id=str(course.id),
        metadata={"code": course.code, "student_id": student.id},
    )
    return enrollment


def unenroll_student(s: "Session", course: "Course", student: "User", *, actor: "User | None" = None) -> None:
    """Remove a student from a course; raises ValueError if not enrolled."""
    enrollment = next((e for e in course.enrollments if e.student_id == student.id), None)
    if enrollment is None:
        raise ValueError("Student is not enrolled in this course.")
    course.enrollments.remove(enrollment)

    record_event(
        s,
        actor=actor or student,
        action="course.unenroll",
        entity_type="Course",
        entity_id=str(course.id),
        metadata={"code": course.code, "student_id": student.id},
    )


def courses_for_student(s: "Session", student: "User") -> list["Course"]:
    from app.elearn.modules.courses.models import Course, Enrollment

    return (
        s.query(Course)
        .join(Enrollment, Enrollment.course_id == Course.id)
        .filter(Enrollment.student_id == student.id)
        .order_by(Course.code.asc())
        .all()
    )


def courses_for_instructor(s: "Session", instructor: "User") -> list["Course"]:
    from app.elearn.modules.courses.models import Course

    return s.query(Course).filter(Course.instructor_id == instructor.id).order_by(Course.code.asc()).all()
