from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, send_file, url_for
from sqlalchemy.orm import Session

from app.elearn.constants import ROLE_INSTRUCTOR
from app.elearn.db import db_session
from app.elearn.models import User
from app.elearn.modules.assignments.models import Assignment
from app.elearn.modules.assignments.service import (
    create_assignment,
    delete_assignment,
    update_assignment,
    validate_assignment_payload,
)
from app.elearn.modules.courses.models import Course
from app.elearn.modules.courses.service import (
    code_taken,
    courses_for_instructor,
    create_course,
    delete_course,
    unenroll_student,
    update_course,
    validate_course_payload,
)
from app.elearn.modules.quizzes.models import Quiz
from app.elearn.modules.quizzes.service import create_quiz, delete_quiz, parse_max_attempts, parse_questions
from app.elearn.modules.submissions.models import Submission
from app.elearn.modules.submissions.service import grade_submission, ungraded_count
from app.elearn.rbac import require_role
from app.elearn.storage import storage_from_config

bp = Blueprint("instructor", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


# Ownership lookups: another instructor's entities are reported as missing.


def _own_course_or_404(s: Session, course_id: int) -> Course:
    c = s.get(Course, course_id)
    if not c or c.instructor_id != _current_user().id:
        abort(404)
    return c


def _own_assignment_or_404(s: Session, assignment_id: int) -> Assignment:
    a = s.get(Assignment, assignment_id)
    if not a or a.course.instructor_id != _current_user().id:
        abort(404)
    return a


def _own_quiz_or_404(s: Session, quiz_id: int) -> Quiz:
    q = s.get(Quiz, quiz_id)
    if not q or q.course.instructor_id != _current_user().id:
        abort(404)
    return q


def _own_submission_or_404(s: Session, submission_id: int) -> Submission:
    sub = s.get(Submission, submission_id)
    if not sub or sub.assignment.course.instructor_id != _current_user().id:
        abort(404)
    return sub


@bp.get("/")
@require_role(ROLE_INSTRUCTOR)
def dashboard():
    s = db_session()
    u = _current_user()
    courses = courses_for_instructor(s, u)
    return render_template(
        "instructor/dashboard.html",
        courses=courses,
        ungraded=ungraded_count(s, [c.id for c in courses]),
    )


# ---------------- COURSES ----------------


@bp.get("/courses/new")
@require_role(ROLE_INSTRUCTOR)
def new_course_get():
    return render_template("instructor/course_form.html", course=None)


@bp.post("/courses/new")
@require_role(ROLE_INSTRUCTOR)
def new_course_post():
    s = db_session()
    u = _current_user()
    payload = request.form.to_dict()

    errors = validate_course_payload(payload)
    if not errors and code_taken(s, payload["code"]):
        errors.append("Course code already exists.")
    if errors:
        for err in errors:
            flash(err, "danger")
        return redirect(url_for("instructor.new_course_get"))

    c = create_course(s, payload, u)
    s.commit()
    flash(f"Course {c.code} created.", "success")
    return redirect(url_for("instructor.course_detail", course_id=c.id))


@bp.get("/courses/<int:course_id>")
@require_role(ROLE_INSTRUCTOR)
def course_detail(course_id: int):
    s = db_session()
    c = _own_course_or_404(s, course_id)
    return render_template("instructor/course_detail.html", course=c)


@bp.get("/courses/<int:course_id>/edit")
@require_role(ROLE_INSTRUCTOR)
def edit_course_get(course_id: int):
    s = db_session()
    c = _own_course_or_404(s, course_id)
    return render_template("instructor/course_form.html", course=c)


@bp.post("/courses/<int:course_id>/edit")
@require_role(ROLE_INSTRUCTOR)
def edit_course_post(course_id: int):
    s = db_session()
    u = _current_user()
    c = _own_course_or_404(s, course_id)
    payload = request.form.to_dict()

    errors = validate_course_payload(payload)
    if not errors and code_taken(s, payload["code"], exclude_id=c.id):
        errors.append("Course code already exists.")
    if errors:
        for err in errors:
            flash(err, "danger")
        return redirect(url_for("instructor.edit_course_get", course_id=c.id))

    update_course(s, c, payload, u)
    s.commit()
    flash("Course updated.", "success")
    return redirect(url_for("instructor.course_detail", course_id=c.id))


@bp.post("/courses/<int:course_id>/delete")
@require_role(ROLE_INSTRUCTOR)
def delete_course_post(course_id: int):
    s = db_session()
    u = _current_user()
    c = _own_course_or_404(s, course_id)
    code = c.code
    delete_course(s, c, u)
    s.commit()
    flash(f"Course {code} deleted.", "success")
    return redirect(url_for("instructor.dashboard"))


@bp.post("/courses/<int:course_id>/students/<int:student_id>/remove")
@require_role(ROLE_INSTRUCTOR)
def remove_student(course_id: int, student_id: int):
    s = db_session()
    u = _current_user()
    c = _own_course_or_404(s, course_id)
    student = s.get(User, student_id)
    if not student:
        abort(404)
    try:
        unenroll_student(s, c, student, actor=u)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("instructor.course_detail", course_id=c.id))
    s.commit()
    flash(f"Removed {student.display_name} from {c.code}.", "success")
    return redirect(url_for("instructor.course_detail", course_id=c.id))


# ---------------- ASSIGNMENTS ----------------


@bp.get("/courses/<int:course_id>/assignments/new")
@require_role(ROLE_INSTRUCTOR)
def new_assignment_get(course_id: int):
    s = db_session()
    c = _own_course_or_404(s, course_id)
    return render_template("instructor/assignment_form.html", course=c, assignment=None)


@bp.post("/courses/<int:course_id>/assignments/new")
@require_role(ROLE_INSTRUCTOR)
def new_assignment_post(course_id: int):
    s = db_session()
    u = _current_user()
    c = _own_course_or_404(s, course_id)
    payload = request.form.to_dict()

    errors = validate_assignment_payload(payload)
    if errors:
        for err in errors:
            flash(err, "danger")
        return redirect(url_for("instructor.new_assignment_get", course_id=c.id))

    a = create_assignment(s, c, payload, u)
    s.commit()
    flash("Assignment created.", "success")
    return redirect(url_for("instructor.assignment_detail", assignment_id=a.id))


@bp.get("/assignments/<int:assignment_id>")
@require_role(ROLE_INSTRUCTOR)
def assignment_detail(assignment_id: int):
    s = db_session()
    a = _own_assignment_or_404(s, assignment_id)
    submitted = {sub.student_id for sub in a.submissions}
    missing = [st for st in a.course.students if st.id not in submitted]
    return render_template("instructor/assignment_detail.html", assignment=a, missing=missing)


@bp.get("/assignments/<int:assignment_id>/edit")
@require_role(ROLE_INSTRUCTOR)
def edit_assignment_get(assignment_id: int):
    s = db_session()
    a = _own_assignment_or_404(s, assignment_id)
    return render_template("instructor/assignment_form.html", course=a.course, assignment=a)


@bp.post("/assignments/<int:assignment_id>/edit")
@require_role(ROLE_INSTRUCTOR)
def edit_assignment_post(assignment_id: int):
    s = db_session()
    u = _current_user()
    a = _own_assignment_or_404(s, assignment_id)
    payload = request.form.to_dict()

    errors = validate_assignment_payload(payload)
    if errors:
        for err in errors:
            flash(err, "danger")
        return redirect(url_for("instructor.edit_assignment_get", assignment_id=a.id))

    try:
        update_assignment(s, a, payload, u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("instructor.edit_assignment_get", assignment_id=a.id))
    s.commit()
    flash("Assignment updated.", "success")
    return redirect(url_for("instructor.assignment_detail", assignment_id=a.id))


@bp.post("/assignments/<int:assignment_id>/delete")
@require_role(ROLE_INSTRUCTOR)
def delete_assignment_post(assignment_id: int):
    s = db_session()
    u = _current_user()
    a = _own_assignment_or_404(s, assignment_id)
    course_id = a.course_id
    delete_assignment(s, a, u)
    s.commit()
    flash("Assignment deleted.", "success")
    return redirect(url_for("instructor.course_detail", course_id=course_id))


# ---------------- GRADING ----------------


@bp.post("/submissions/<int:submission_id>/grade")
@require_role(ROLE_INSTRUCTOR)
def grade(submission_id: int):
    s = db_session()
    u = _current_user()
    sub = _own_submission_or_404(s, submission_id)
    try:
        grade_submission(s, sub, request.form.get("grade"), request.form.get("feedback"), u)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("instructor.assignment_detail", assignment_id=sub.assignment_id))
    s.commit()
    flash(f"Graded {sub.student.display_name}: {sub.grade:g} / {sub.assignment.max_points}.", "success")
    return redirect(url_for("instructor.assignment_detail", assignment_id=sub.assignment_id))


@bp.get("/submissions/<int:submission_id>/download")
@require_role(ROLE_INSTRUCTOR)
def download_submission(submission_id: int):
    s = db_session()
    sub = _own_submission_or_404(s, submission_id)
    if not sub.storage_key:
        abort(404)

    storage = storage_from_config(current_app.config)
    if not storage.exists(sub.storage_key):
        current_app.logger.warning("Attachment missing from storage: %s", sub.storage_key)
        abort(404)
    fobj = storage.open(sub.storage_key)
    return send_file(
        fobj,
        mimetype=sub.content_type or "application/octet-stream",
        as_attachment=True,
        download_name=sub.filename or "submission.bin",
        max_age=0,
    )


# ---------------- QUIZZES ----------------


@bp.get("/courses/<int:course_id>/quizzes/new")
@require_role(ROLE_INSTRUCTOR)
def new_quiz_get(course_id: int):
    s = db_session()
    c = _own_course_or_404(s, course_id)
    return render_template("instructor/quiz_form.html", course=c)


@bp.post("/courses/<int:course_id>/quizzes/new")
@require_role(ROLE_INSTRUCTOR)
def new_quiz_post(course_id: int):
    s = db_session()
    u = _current_user()
    c = _own_course_or_404(s, course_id)
    payload = request.form.to_dict()

    errors = []
    if not (payload.get("title") or "").strip():
        errors.append("Title is required.")
    questions, err = parse_questions(payload.get("questions_json"))
    if err:
        errors.append(err)
    try:
        parse_max_attempts(payload.get("max_attempts"))
    except ValueError:
        errors.append("Max attempts must be a whole number of at least 1.")
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("instructor/quiz_form.html", course=c, form=payload), 400

    q = create_quiz(s, c, payload, questions or [], u)
    s.commit()
    flash("Quiz created.", "success")
    return redirect(url_for("instructor.quiz_detail", quiz_id=q.id))


@bp.get("/quizzes/<int:quiz_id>")
@require_role(ROLE_INSTRUCTOR)
def quiz_detail(quiz_id: int):
    s = db_session()
    q = _own_quiz_or_404(s, quiz_id)
    return render_template("instructor/quiz_detail.html", quiz=q)


@bp.post("/quizzes/<int:quiz_id>/delete")
@require_role(ROLE_INSTRUCTOR)
def delete_quiz_post(quiz_id: int):
    s = db_session()
    u = _current_user()
    q = _own_quiz_or_404(s, quiz_id)
    course_id = q.course_id
    delete_quiz(s, q, u)
    s.commit()
    flash("Quiz deleted.", "success")
    return redirect(url_for("instructor.course_detail", course_id=course_id))
