"""Tests for course management, enrollment and role separation."""
import pytest
from werkzeug.security import generate_password_hash

from app.elearn import auth, create_app
from app.elearn.db import get_engine, session_scope
from app.elearn.models import Base, User
from app.elearn.modules.courses.models import Course, Enrollment


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for k in ("SERVERLESS", "VERCEL", "STORAGE_BACKEND", "SESSION_SECRET"):
        monkeypatch.delenv(k, raising=False)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    auth._login_attempts.clear()

    app = create_app()
    Base.metadata.create_all(bind=get_engine(app))

    with session_scope(app) as s:
        ada = User(email="ada@example.com", password_hash=generate_password_hash("pw"), role="instructor", name="Ada")
        bob = User(email="bob@example.com", password_hash=generate_password_hash("pw"), role="instructor", name="Bob")
        sam = User(email="sam@example.com", password_hash=generate_password_hash("pw"), role="student", name="Sam")
        s.add_all([ada, bob, sam])
        s.flush()
        s.add(Course(code="BOB100", title="Bob's course", instructor_id=bob.id))

    return app.test_client()


def _login(client, email):
    client.post("/login", data={"email": email, "password": "pw"})


def _csrf(client) -> str:
    with client.session_transaction() as sess:
        sess.setdefault("csrf_token", "test-csrf-token")
        return sess["csrf_token"]


def _course_id(client, code):
    with session_scope(client.application) as s:
        return s.query(Course).filter(Course.code == code).one().id


def test_anonymous_redirected_to_login(client):
    for path in ("/student/", "/instructor/", "/student/courses", "/instructor/courses/new"):
        r = client.get(path)
        assert r.status_code == 302
        assert "/login" in r.headers["Location"]


def test_student_cannot_access_instructor_routes(client):
    _login(client, "sam@example.com")
    assert client.get("/instructor/").status_code == 403
    assert client.get("/instructor/courses/new").status_code == 403
    r = client.post("/instructor/courses/new", data={"csrf_token": _csrf(client), "code": "X100", "title": "Nope"})
    assert r.status_code == 403
    with session_scope(client.application) as s:
        assert s.query(Course).filter(Course.code == "X100").count() == 0


def test_instructor_cannot_access_student_routes(client):
    _login(client, "ada@example.com")
    assert client.get("/student/").status_code == 403
    assert client.get("/student/courses").status_code == 403
    cid = _course_id(client, "BOB100")
    r = client.post(f"/student/courses/{cid}/enroll", data={"csrf_token": _csrf(client)})
    assert r.status_code == 403


def test_instructor_creates_edits_and_deletes_course(client):
    _login(client, "ada@example.com")
    r = client.post(
        "/instructor/courses/new",
        data={"csrf_token": _csrf(client), "code": "cs101", "title": "Intro to CS", "description": "Basics"},
    )
    assert r.status_code == 302
    cid = _course_id(client, "CS101")

    r = client.get(f"/instructor/courses/{cid}")
    assert r.status_code == 200
    assert b"Intro to CS" in r.data

    r = client.post(
        f"/instructor/courses/{cid}/edit",
        data={"csrf_token": _csrf(client), "code": "CS101", "title": "Intro to Computing", "description": ""},
        follow_redirects=True,
    )
    assert b"Course updated." in r.data
    with session_scope(client.application) as s:
        c = s.get(Course, cid)
        assert c.title == "Intro to Computing"
        assert c.description is None

    r = client.post(f"/instructor/courses/{cid}/delete", data={"csrf_token": _csrf(client)})
    assert r.status_code == 302
    with session_scope(client.application) as s:
        assert s.get(Course, cid) is None


def test_course_code_must_be_unique(client):
    _login(client, "ada@example.com")
    r = client.post(
        "/instructor/courses/new",
        data={"csrf_token": _csrf(client), "code": "bob100", "title": "Copycat"},
        follow_redirects=True,
    )
    assert b"Course code already exists." in r.data
    with session_scope(client.application) as s:
        assert s.query(Course).filter(Course.code == "BOB100").count() == 1


def test_instructor_cannot_see_other_instructors_course(client):
    _login(client, "ada@example.com")
    cid = _course_id(client, "BOB100")
    assert client.get(f"/instructor/courses/{cid}").status_code == 404
    r = client.post(f"/instructor/courses/{cid}/delete", data={"csrf_token": _csrf(client)})
    assert r.status_code == 404
    with session_scope(client.application) as s:
        assert s.get(Course, cid) is not None


def test_student_enrolls_and_unenrolls(client):
    _login(client, "sam@example.com")
    cid = _course_id(client, "BOB100")

    # Content is hidden before enrolling
    r = client.get(f"/student/courses/{cid}")
    assert r.status_code == 302

    r = client.post(f"/student/courses/{cid}/enroll", data={"csrf_token": _csrf(client)}, follow_redirects=True)
    assert b"Enrolled in BOB100." in r.data
    assert client.get(f"/student/courses/{cid}").status_code == 200

    # Enrolling twice is refused and does not duplicate
    r = client.post(f"/student/courses/{cid}/enroll", data={"csrf_token": _csrf(client)}, follow_redirects=True)
    assert b"already enrolled" in r.data
    with session_scope(client.application) as s:
        assert s.query(Enrollment).filter(Enrollment.course_id == cid).count() == 1

    r = client.post(f"/student/courses/{cid}/unenroll", data={"csrf_token": _csrf(client)}, follow_redirects=True)
    assert b"Left BOB100." in r.data
    with session_scope(client.application) as s:
        assert s.query(Enrollment).filter(Enrollment.course_id == cid).count() == 0


def test_instructor_removes_student_from_own_course(client):
    cid = _course_id(client, "BOB100")
    _login(client, "sam@example.com")
    client.post(f"/student/courses/{cid}/enroll", data={"csrf_token": _csrf(client)})

    _login(client, "bob@example.com")
    r = client.get(f"/instructor/courses/{cid}")
    assert b"sam@example.com" in r.data

    with session_scope(client.application) as s:
        sam_id = s.query(User).filter(User.email == "sam@example.com").one().id
    r = client.post(f"/instructor/courses/{cid}/students/{sam_id}/remove", data={"csrf_token": _csrf(client)})
    assert r.status_code == 302
    with session_scope(client.application) as s:
        assert s.query(Enrollment).filter(Enrollment.course_id == cid).count() == 0


def test_catalog_lists_courses(client):
    _login(client, "sam@example.com")
    r = client.get("/student/courses")
    assert r.status_code == 200
    assert b"BOB100" in r.data
    assert b"Enroll" in r.data
