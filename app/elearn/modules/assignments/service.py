from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import TYPE_CHECKING

from app.elearn.audit import record_event

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.elearn.models import User
    from app.elearn.modules.assignments.models import Assignment
    from app.elearn.modules.courses.models import Course


DEFAULT_MAX_POINTS = 100


def parse_due_at(s: str | None) -> datetime | None:
    """
    Parse a due date from form input.

    Accepts HTML <input type="datetime-local"> (YYYY-MM-DDTHH:MM) and plain
    dates (YYYY-MM-DD, due at the end of that day).
    """
    if not s:
        return None
    s = s.strip()
    if not s:
        return None
    if "T" in s or " " in s:
        dt = datetime.fromisoformat(s)
        # Stored due dates are naive UTC.
        if dt.tzinfo is not None:
            dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
        return dt
    return datetime.combine(date.fromisoformat(s), time(23, 59))


def parse_max_points(s: str | None) -> int:
    raw = (s or "").strip()
    if not raw:
        return DEFAULT_MAX_POINTS
    return int(raw)


def validate_assignment_payload(payload: dict) -> list[str]:
    """Validate assignment creation/update payload. Returns list of errors."""
    errors = []
    title = (payload.get("title") or "").strip()
    if not title:
        errors.append("Title is required.")
    try:
        parse_due_at(payload.get("due_at"))
    except ValueError:
        errors.append("Due date is not a valid date/time.")
    try:
        points = parse_max_points(payload.get("max_points"))
        if points <= 0:
            errors.append("Max points must be greater than zero.")
    except ValueError:
        errors.append("Max points must be a whole number.")
    return errors


def create_assignment(s: "Session", course: "Course", payload: dict, user: "User") -> "Assignment":
    from app.elearn.modules.assignments.models import Assignment

    now = datetime.utcnow()
    assignment = Assignment(
        course_id=course.id,
        instructor_id=user.id,
        title=(payload.get("title") or "").strip(),
        description=(payload.get("description") or "").strip() or None,
        due_at=parse_due_at(payload.get("due_at")),
        max_points=parse_max_points(payload.get("max_points")),
        created_at=now,
        updated_at=now,
    )
    s.add(assignment)
    s.flush()

    record_event(
        s,
        actor=user,
        action="assignment.create",
        entity_type="Assignment",
        entity_id=str(assignment.id),
        metadata={"course_id": course.id, "title": assignment.title},
    )
    return assignment


def update_assignment(s: "Session", assignment: "Assignment", payload: dict, user: "User") -> "Assignment":
    changes = {}

    new_title = (payload.get("title") or "").strip()
    if new_title and new_title != assignment.title:
        changes["title"] = {"old": assignment.title, "new": new_title}
        assignment.title = new_title

    new_description = (payload.get("description") or "").strip() or None
    if new_description != assignment.description:
        changes["description"] = {"old": assignment.description, "new": new_description}
        assignment.description = new_description

    new_due = parse_due_at(payload.get("due_at"))
    if new_due != assignment.due_at:
        changes["due_at"] = {"old": str(assignment.due_at), "new": str(new_due)}
        assignment.due_at = new_due

    new_points = parse_max_points(payload.get("max_points"))
    if new_points != assignment.max_points:
        graded_above = [sub.id for sub in assignment.submissions if sub.grade is not None and sub.grade > new_points]
        if graded_above:
            raise ValueError("Max points cannot drop below an existing grade.")
        changes["max_points"] = {"old": assignment.max_points, "new": new_points}
        assignment.max_points = new_points

    assignment.updated_at = datetime.utcnow()

    record_event(
        s,
        actor=user,
        action="assignment.edit",
        entity_type="Assignment",
        entity_id=str(assignment.id),
        metadata={"title": assignment.title, "changes": changes},
    )
    return assignment


def delete_assignment(s: "Session", assignment: "Assignment", user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="assignment.delete",
        entity_type="Assignment",
        entity_id=str(assignment.id),
        metadata={"course_id": assignment.course_id, "title": assignment.title},
    )
    s.delete(assignment)


def upcoming_for_courses(s: "Session", course_ids: list[int], *, limit: int = 10) -> list["Assignment"]:
    """Assignments not yet due across the given courses, soonest first."""
    from app.elearn.modules.assignments.models import Assignment

    if not course_ids:
        return []
    return (
        s.query(Assignment)
        .filter(Assignment.course_id.in_(course_ids))
        .filter(Assignment.due_at.is_not(None))
        .filter(Assignment.due_at >= datetime.utcnow())
        .order_by(Assignment.due_at.asc())
        .limit(limit)
        .all()
    )
