from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, url_for
from sqlalchemy.orm import Session

from app.elearn.constants import ROLE_STUDENT
from app.elearn.db import db_session
from app.elearn.models import User
from app.elearn.modules.assignments.models import Assignment
from app.elearn.modules.assignments.service import upcoming_for_courses
from app.elearn.modules.courses.models import Course
from app.elearn.modules.courses.service import courses_for_student, enroll_student, unenroll_student
from app.elearn.modules.quizzes.models import Quiz
from app.elearn.modules.quizzes.service import best_attempt, collect_answers, public_questions, record_attempt
from app.elearn.modules.submissions.service import submissions_for_student, submit_assignment
from app.elearn.rbac import require_role
from app.elearn.storage import storage_from_config

bp = Blueprint("student", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_course_or_404(s: Session, course_id: int) -> Course:
    c = s.get(Course, course_id)
    if not c:
        abort(404)
    return c


def _enrolled_course_or_redirect(s: Session, course_id: int, user: User):
    """Returns (course, None) when enrolled, else (None, redirect response)."""
    c = _get_course_or_404(s, course_id)
    if not c.has_student(user):
        flash("Enroll in this course to see its content.", "danger")
        return None, redirect(url_for("student.list_courses"))
    return c, None


@bp.get("/")
@require_role(ROLE_STUDENT)
def dashboard():
    s = db_session()
    u = _current_user()
    courses = courses_for_student(s, u)
    upcoming = upcoming_for_courses(s, [c.id for c in courses])
    submissions = submissions_for_student(s, u)
    submitted_ids = {sub.assignment_id for sub in submissions}
    recent_grades = [sub for sub in submissions if sub.is_graded][:5]
    return render_template(
        "student/dashboard.html",
        courses=courses,
        upcoming=upcoming,
        submitted_ids=submitted_ids,
        recent_grades=recent_grades,
    )


@bp.get("/courses")
@require_role(ROLE_STUDENT)
def list_courses():
    s = db_session()
    u = _current_user()
    courses = s.query(Course).order_by(Course.code.asc()).all()
    enrolled_ids = {c.id for c in courses if c.has_student(u)}
    return render_template("student/courses.html", courses=courses, enrolled_ids=enrolled_ids)


@bp.post("/courses/<int:course_id>/enroll")
@require_role(ROLE_STUDENT)
def enroll(course_id: int):
    s = db_session()
    u = _current_user()
    c = _get_course_or_404(s, course_id)
    try:
        enroll_student(s, c, u)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("student.list_courses"))
    s.commit()
    flash(f"Enrolled in {c.code}.", "success")
    return redirect(url_for("student.course_detail", course_id=c.id))


@bp.post("/courses/<int:course_id>/unenroll")
@require_role(ROLE_STUDENT)
def unenroll(course_id: int):
    s = db_session()
    u = _current_user()
    c = _get_course_or_404(s, course_id)
    try:
        unenroll_student(s, c, u)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("student.list_courses"))
    s.commit()
    flash(f"Left {c.code}.", "success")
    return redirect(url_for("student.list_courses"))


@bp.get("/courses/<int:course_id>")
@require_role(ROLE_STUDENT)
def course_detail(course_id: int):
    s = db_session()
    u = _current_user()
    c, resp = _enrolled_course_or_redirect(s, course_id, u)
    if resp is not None:
        return resp
    submissions = {a.id: a.submission_for(u.id) for a in c.assignments}
    attempts = {q.id: q.attempts_for(u.id) for q in c.quizzes}
    return render_template("student/course_detail.html", course=c, submissions=submissions, attempts=attempts)


@bp.get("/assignments/<int:assignment_id>")
@require_role(ROLE_STUDENT)
def assignment_detail(assignment_id: int):
    s = db_session()
    u = _current_user()
    a = s.get(Assignment, assignment_id)
    if not a:
        abort(404)
    _, resp = _enrolled_course_or_redirect(s, a.course_id, u)
    if resp is not None:
        return resp
    return render_template("student/assignment_detail.html", assignment=a, submission=a.submission_for(u.id))


@bp.post("/assignments/<int:assignment_id>/submit")
@require_role(ROLE_STUDENT)
def submit(assignment_id: int):
    s = db_session()
    u = _current_user()
    a = s.get(Assignment, assignment_id)
    if not a:
        abort(404)

    f = request.files.get("file")
    file_bytes = f.read() if f and f.filename else None
    try:
        sub, created = submit_assignment(
            s,
            a,
            u,
            content=request.form.get("content") or "",
            file_bytes=file_bytes,
            filename=f.filename if f else None,
            content_type=f.mimetype if f else None,
            storage=storage_from_config(current_app.config),
        )
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("student.assignment_detail", assignment_id=a.id))
    s.commit()

    msg = "Assignment submitted." if created else "Submission updated."
    if sub.is_late:
        msg += " (late)"
    flash(msg, "success")
    return redirect(url_for("student.assignment_detail", assignment_id=a.id))


@bp.get("/submissions")
@require_role(ROLE_STUDENT)
def list_submissions():
    s = db_session()
    u = _current_user()
    return render_template("student/submissions.html", submissions=submissions_for_student(s, u))


@bp.get("/quizzes/<int:quiz_id>")
@require_role(ROLE_STUDENT)
def take_quiz(quiz_id: int):
    s = db_session()
    u = _current_user()
    q = s.get(Quiz, quiz_id)
    if not q:
        abort(404)
    _, resp = _enrolled_course_or_redirect(s, q.course_id, u)
    if resp is not None:
        return resp
    attempts = q.attempts_for(u.id)
    return render_template(
        "student/quiz.html",
        quiz=q,
        questions=public_questions(q),
        attempts=attempts,
        best=best_attempt(attempts),
        remaining=max(q.max_attempts - len(attempts), 0),
    )


@bp.post("/quizzes/<int:quiz_id>")
@require_role(ROLE_STUDENT)
def submit_quiz(quiz_id: int):
    s = db_session()
    u = _current_user()
    q = s.get(Quiz, quiz_id)
    if not q:
        abort(404)

    answers = collect_answers(request.form, len(q.questions or []))
    try:
        attempt = record_attempt(s, q, u, answers)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("student.take_quiz", quiz_id=q.id))
    s.commit()
    flash(f"Quiz submitted: {attempt.score:g} / {attempt.max_score:g} ({attempt.percentage:g}%).", "success")
    return redirect(url_for("student.take_quiz", quiz_id=q.id))
