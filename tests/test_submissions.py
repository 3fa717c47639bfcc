"""Tests for assignment submission and grading."""
import io
from datetime import datetime, timedelta

import pytest
from werkzeug.security import generate_password_hash

from app.elearn import auth, create_app
from app.elearn.db import get_engine, session_scope
from app.elearn.models import AuditEvent, Base, User
from app.elearn.modules.assignments.models import Assignment
from app.elearn.modules.assignments.service import parse_due_at
from app.elearn.modules.courses.models import Course, Enrollment
from app.elearn.modules.submissions.models import Submission
from app.elearn.modules.submissions.service import parse_grade


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for k in ("SERVERLESS", "VERCEL", "STORAGE_BACKEND", "SESSION_SECRET"):
        monkeypatch.delenv(k, raising=False)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    auth._login_attempts.clear()

    app = create_app()
    Base.metadata.create_all(bind=get_engine(app))

    with session_scope(app) as s:
        ada = User(email="ada@example.com", password_hash=generate_password_hash("pw"), role="instructor", name="Ada")
        bob = User(email="bob@example.com", password_hash=generate_password_hash("pw"), role="instructor", name="Bob")
        sam = User(email="sam@example.com", password_hash=generate_password_hash("pw"), role="student", name="Sam")
        kim = User(email="kim@example.com", password_hash=generate_password_hash("pw"), role="student", name="Kim")
        s.add_all([ada, bob, sam, kim])
        s.flush()
        c = Course(code="CS101", title="Intro", instructor_id=ada.id)
        s.add(c)
        s.flush()
        s.add(Enrollment(course_id=c.id, student_id=sam.id))
        s.add_all(
            [
                Assignment(
                    course_id=c.id,
                    instructor_id=ada.id,
                    title="Essay",
                    max_points=10,
                    due_at=datetime.utcnow() + timedelta(days=7),
                ),
                Assignment(
                    course_id=c.id,
                    instructor_id=ada.id,
                    title="Overdue",
                    max_points=10,
                    due_at=datetime.utcnow() - timedelta(days=1),
                ),
            ]
        )

    return app.test_client()


def _login(client, email):
    client.post("/login", data={"email": email, "password": "pw"})


def _csrf(client) -> str:
    with client.session_transaction() as sess:
        sess.setdefault("csrf_token", "test-csrf-token")
        return sess["csrf_token"]


def _assignment_id(client, title):
    with session_scope(client.application) as s:
        return s.query(Assignment).filter(Assignment.title == title).one().id


def _submissions(client, assignment_id):
    with session_scope(client.application) as s:
        return s.query(Submission).filter(Submission.assignment_id == assignment_id).all()


def test_submit_then_resubmit_updates_single_record(client):
    aid = _assignment_id(client, "Essay")
    _login(client, "sam@example.com")

    r = client.post(f"/student/assignments/{aid}/submit", data={"csrf_token": _csrf(client), "content": "first draft"}, follow_redirects=True)
    assert b"Assignment submitted." in r.data

    r = client.post(f"/student/assignments/{aid}/submit", data={"csrf_token": _csrf(client), "content": "final draft"}, follow_redirects=True)
    assert b"Submission updated." in r.data

    subs = _submissions(client, aid)
    assert len(subs) == 1
    assert subs[0].content == "final draft"
    assert subs[0].revision_count == 2
    assert subs[0].is_late is False
    assert subs[0].grade is None


def test_resubmission_after_grading_is_rejected(client):
    aid = _assignment_id(client, "Essay")
    _login(client, "sam@example.com")
    client.post(f"/student/assignments/{aid}/submit", data={"csrf_token": _csrf(client), "content": "my answer"})
    sub_id = _submissions(client, aid)[0].id

    _login(client, "ada@example.com")
    r = client.post(
        f"/instructor/submissions/{sub_id}/grade",
        data={"csrf_token": _csrf(client), "grade": "8.5", "feedback": "Good work"},
        follow_redirects=True,
    )
    assert r.status_code == 200
    assert b"Graded Sam" in r.data

    _login(client, "sam@example.com")
    r = client.post(f"/student/assignments/{aid}/submit", data={"csrf_token": _csrf(client), "content": "sneaky edit"}, follow_redirects=True)
    assert b"already been graded" in r.data

    subs = _submissions(client, aid)
    assert len(subs) == 1
    assert subs[0].content == "my answer"
    assert subs[0].grade == 8.5
    assert subs[0].feedback == "Good work"


def test_regrade_overwrites_grade(client):
    aid = _assignment_id(client, "Essay")
    _login(client, "sam@example.com")
    client.post(f"/student/assignments/{aid}/submit", data={"csrf_token": _csrf(client), "content": "answer"})
    sub_id = _submissions(client, aid)[0].id

    _login(client, "ada@example.com")
    client.post(f"/instructor/submissions/{sub_id}/grade", data={"csrf_token": _csrf(client), "grade": "5"})
    client.post(f"/instructor/submissions/{sub_id}/grade", data={"csrf_token": _csrf(client), "grade": "7"})

    subs = _submissions(client, aid)
    assert len(subs) == 1
    assert subs[0].grade == 7
    with session_scope(client.application) as s:
        actions = [e.action for e in s.query(AuditEvent).order_by(AuditEvent.id.asc()).all()]
        assert "submission.grade" in actions
        assert "submission.regrade" in actions


def test_grade_out_of_range_rejected(client):
    aid = _assignment_id(client, "Essay")
    _login(client, "sam@example.com")
    client.post(f"/student/assignments/{aid}/submit", data={"csrf_token": _csrf(client), "content": "answer"})
    sub_id = _submissions(client, aid)[0].id

    _login(client, "ada@example.com")
    r = client.post(f"/instructor/submissions/{sub_id}/grade", data={"csrf_token": _csrf(client), "grade": "11"}, follow_redirects=True)
    assert b"Grade must be between 0 and 10." in r.data
    assert _submissions(client, aid)[0].grade is None


def test_other_instructor_cannot_grade(client):
    aid = _assignment_id(client, "Essay")
    _login(client, "sam@example.com")
    client.post(f"/student/assignments/{aid}/submit", data={"csrf_token": _csrf(client), "content": "answer"})
    sub_id = _submissions(client, aid)[0].id

    _login(client, "bob@example.com")
    r = client.post(f"/instructor/submissions/{sub_id}/grade", data={"csrf_token": _csrf(client), "grade": "1"})
    assert r.status_code == 404
    assert client.get(f"/instructor/assignments/{aid}").status_code == 404
    assert _submissions(client, aid)[0].grade is None


def test_unenrolled_student_cannot_submit(client):
    aid = _assignment_id(client, "Essay")
    _login(client, "kim@example.com")
    assert client.get(f"/student/assignments/{aid}").status_code == 302
    r = client.post(f"/student/assignments/{aid}/submit", data={"csrf_token": _csrf(client), "content": "hi"}, follow_redirects=True)
    assert b"must be enrolled" in r.data
    assert _submissions(client, aid) == []


def test_empty_submission_rejected(client):
    aid = _assignment_id(client, "Essay")
    _login(client, "sam@example.com")
    r = client.post(f"/student/assignments/{aid}/submit", data={"csrf_token": _csrf(client), "content": "   "}, follow_redirects=True)
    assert b"needs text content or a file" in r.data
    assert _submissions(client, aid) == []


def test_late_submission_is_flagged(client):
    aid = _assignment_id(client, "Overdue")
    _login(client, "sam@example.com")
    r = client.post(f"/student/assignments/{aid}/submit", data={"csrf_token": _csrf(client), "content": "sorry"}, follow_redirects=True)
    assert b"(late)" in r.data
    assert _submissions(client, aid)[0].is_late is True


def test_file_submission_is_stored_and_downloadable(client):
    aid = _assignment_id(client, "Essay")
    _login(client, "sam@example.com")
    r = client.post(
        f"/student/assignments/{aid}/submit",
        data={"csrf_token": _csrf(client), "content": "", "file": (io.BytesIO(b"print('hi')"), "solution.py")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 302
    sub = _submissions(client, aid)[0]
    assert sub.filename == "solution.py"
    assert sub.size_bytes == len(b"print('hi')")

    _login(client, "ada@example.com")
    r = client.get(f"/instructor/submissions/{sub.id}/download")
    assert r.status_code == 200
    assert r.data == b"print('hi')"


def test_student_lists_own_submissions(client):
    aid = _assignment_id(client, "Essay")
    _login(client, "sam@example.com")
    client.post(f"/student/assignments/{aid}/submit", data={"csrf_token": _csrf(client), "content": "answer"})
    r = client.get("/student/submissions")
    assert r.status_code == 200
    assert b"Essay" in r.data
    assert b"Pending" in r.data


def test_parse_grade_and_due_at():
    assert parse_grade("7.5", 10) == 7.5
    with pytest.raises(ValueError):
        parse_grade("", 10)
    with pytest.raises(ValueError):
        parse_grade("ten", 10)
    with pytest.raises(ValueError):
        parse_grade("-1", 10)
    with pytest.raises(ValueError):
        parse_grade("nan", 10)
    with pytest.raises(ValueError):
        parse_grade("inf", 10)

    assert parse_due_at("") is None
    assert parse_due_at("2026-05-01T09:30") == datetime(2026, 5, 1, 9, 30)
    assert parse_due_at("2026-05-01") == datetime(2026, 5, 1, 23, 59)
    # Offsets are normalized to naive UTC
    due = parse_due_at("2026-05-01T09:30+05:00")
    assert due == datetime(2026, 5, 1, 4, 30)
    assert due.tzinfo is None


def test_non_numeric_grade_values_are_rejected(client):
    aid = _assignment_id(client, "Essay")
    _login(client, "sam@example.com")
    client.post(f"/student/assignments/{aid}/submit", data={"csrf_token": _csrf(client), "content": "answer"})
    sub_id = _submissions(client, aid)[0].id

    _login(client, "ada@example.com")
    for raw in ("nan", "inf"):
        r = client.post(f"/instructor/submissions/{sub_id}/grade", data={"csrf_token": _csrf(client), "grade": raw}, follow_redirects=True)
        assert b"Grade must be between 0 and 10." in r.data

    sub = _submissions(client, aid)[0]
    assert sub.grade is None
    assert sub.graded_at is None
    assert sub.graded_by_user_id is None
    with session_scope(client.application) as s:
        assert s.query(AuditEvent).filter(AuditEvent.action == "submission.grade").count() == 0


def test_resubmission_replaces_previous_attachment(client, tmp_path):
    aid = _assignment_id(client, "Essay")
    _login(client, "sam@example.com")
    client.post(
        f"/student/assignments/{aid}/submit",
        data={"csrf_token": _csrf(client), "content": "", "file": (io.BytesIO(b"v1"), "draft.txt")},
        content_type="multipart/form-data",
    )
    first_key = _submissions(client, aid)[0].storage_key
    first_path = tmp_path / "uploads" / first_key
    assert first_path.read_bytes() == b"v1"

    client.post(
        f"/student/assignments/{aid}/submit",
        data={"csrf_token": _csrf(client), "content": "", "file": (io.BytesIO(b"v2"), "final.txt")},
        content_type="multipart/form-data",
    )
    sub = _submissions(client, aid)[0]
    assert sub.filename == "final.txt"
    assert (tmp_path / "uploads" / sub.storage_key).read_bytes() == b"v2"
    assert not first_path.exists()

    # Text-only resubmission drops the attachment entirely
    client.post(f"/student/assignments/{aid}/submit", data={"csrf_token": _csrf(client), "content": "typed instead"})
    sub_after = _submissions(client, aid)[0]
    assert sub_after.storage_key is None
    assert sub_after.filename is None
    assert not (tmp_path / "uploads" / sub.storage_key).exists()
    assert sub_after.revision_count == 3
