"""Tests for quiz authoring, attempts and scoring."""
import json

import pytest
from werkzeug.security import generate_password_hash

from app.elearn import auth, create_app
from app.elearn.db import get_engine, session_scope
from app.elearn.models import Base, User
from app.elearn.modules.courses.models import Course, Enrollment
from app.elearn.modules.quizzes.models import Quiz, QuizAttempt
from app.elearn.modules.quizzes.service import collect_answers, parse_questions, score_quiz


QUESTIONS = [
    {"prompt": "2 + 2 = ?", "options": ["3", "4", "5"], "answer": 1, "points": 2},
    {"question": "Capital of France?", "options": ["Paris", "Rome"], "answer": 0},
]


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
        sam = User(email="sam@example.com", password_hash=generate_password_hash("pw"), role="student", name="Sam")
        kim = User(email="kim@example.com", password_hash=generate_password_hash("pw"), role="student", name="Kim")
        s.add_all([ada, sam, kim])
        s.flush()
        c = Course(code="CS101", title="Intro", instructor_id=ada.id)
        s.add(c)
        s.flush()
        s.add(Enrollment(course_id=c.id, student_id=sam.id))

    return app.test_client()


def _login(client, email):
    client.post("/login", data={"email": email, "password": "pw"})


def _csrf(client) -> str:
    with client.session_transaction() as sess:
        sess.setdefault("csrf_token", "test-csrf-token")
        return sess["csrf_token"]


def _course_id(client):
    with session_scope(client.application) as s:
        return s.query(Course).filter(Course.code == "CS101").one().id


def _create_quiz(client, max_attempts="1"):
    cid = _course_id(client)
    _login(client, "ada@example.com")
    r = client.post(
        f"/instructor/courses/{cid}/quizzes/new",
        data={
            "csrf_token": _csrf(client),
            "title": "Warm-up",
            "questions_json": json.dumps(QUESTIONS),
            "max_attempts": max_attempts,
        },
    )
    assert r.status_code == 302
    with session_scope(client.application) as s:
        return s.query(Quiz).filter(Quiz.title == "Warm-up").one().id


def _attempts(client, quiz_id):
    with session_scope(client.application) as s:
        return s.query(QuizAttempt).filter(QuizAttempt.quiz_id == quiz_id).order_by(QuizAttempt.attempt_number.asc()).all()


def test_parse_questions_normalizes_input():
    questions, err = parse_questions(json.dumps(QUESTIONS))
    assert err is None
    assert questions[1] == {"prompt": "Capital of France?", "options": ["Paris", "Rome"], "answer": 0, "points": 1}


@pytest.mark.parametrize(
    "raw, fragment",
    [
        ("", "At least one question"),
        ("not json", "Questions JSON is invalid"),
        ("[]", "non-empty JSON list"),
        (json.dumps([{"prompt": "Q", "options": ["only"], "answer": 0}]), "at least two options"),
        (json.dumps([{"prompt": "Q", "options": ["a", "b"], "answer": 2}]), "answer must be an option index"),
        (json.dumps([{"prompt": "Q", "options": ["a", "b"], "answer": True}]), "answer must be an option index"),
        (json.dumps([{"prompt": "Q", "options": ["a", "b"], "answer": 0, "points": 0}]), "points must be a positive"),
        ('[{"prompt": "Q", "options": ["a", "b"], "answer": 0, "points": NaN}]', "points must be a positive"),
        ('[{"prompt": "Q", "options": ["a", "b"], "answer": 0, "points": Infinity}]', "points must be a positive"),
    ],
)
def test_parse_questions_rejects_bad_input(raw, fragment):
    questions, err = parse_questions(raw)
    assert questions is None
    assert fragment in err


def test_score_quiz_counts_points_for_correct_answers():
    questions, _ = parse_questions(json.dumps(QUESTIONS))
    score, max_score, breakdown = score_quiz(questions, [1, 1])
    assert (score, max_score) == (2.0, 3.0)
    assert [b["is_correct"] for b in breakdown] == [True, False]

    score, _, _ = score_quiz(questions, [None])
    assert score == 0.0


def test_collect_answers_ignores_garbage():
    assert collect_answers({"q0": "2", "q1": "x"}, 3) == [2, None, None]


def test_instructor_quiz_form_rejects_invalid_questions(client):
    cid = _course_id(client)
    _login(client, "ada@example.com")
    r = client.post(
        f"/instructor/courses/{cid}/quizzes/new",
        data={"csrf_token": _csrf(client), "title": "Broken", "questions_json": "{"},
    )
    assert r.status_code == 400
    assert b"Questions JSON is invalid" in r.data
    with session_scope(client.application) as s:
        assert s.query(Quiz).count() == 0


def test_student_attempt_is_scored_and_recorded(client):
    qid = _create_quiz(client)

    _login(client, "sam@example.com")
    r = client.post(f"/student/quizzes/{qid}", data={"csrf_token": _csrf(client), "q0": "1", "q1": "1"}, follow_redirects=True)
    assert b"Quiz submitted: 2 / 3 (66.67%)." in r.data

    attempts = _attempts(client, qid)
    assert len(attempts) == 1
    assert attempts[0].attempt_number == 1
    assert attempts[0].answers == [1, 1]
    assert attempts[0].score == 2.0


def test_max_attempts_is_enforced(client):
    qid = _create_quiz(client, max_attempts="1")

    _login(client, "sam@example.com")
    client.post(f"/student/quizzes/{qid}", data={"csrf_token": _csrf(client), "q0": "0", "q1": "0"})
    r = client.post(f"/student/quizzes/{qid}", data={"csrf_token": _csrf(client), "q0": "1", "q1": "0"}, follow_redirects=True)
    assert b"No attempts remaining" in r.data
    assert len(_attempts(client, qid)) == 1


def test_multiple_attempts_are_numbered(client):
    qid = _create_quiz(client, max_attempts="2")

    _login(client, "sam@example.com")
    client.post(f"/student/quizzes/{qid}", data={"csrf_token": _csrf(client), "q1": "0"})
    client.post(f"/student/quizzes/{qid}", data={"csrf_token": _csrf(client), "q0": "1", "q1": "0"})
    attempts = _attempts(client, qid)
    assert [a.attempt_number for a in attempts] == [1, 2]
    assert [a.score for a in attempts] == [1.0, 3.0]


def test_answers_not_shown_to_students(client):
    qid = _create_quiz(client)

    # Instructor view marks the correct option
    r = client.get(f"/instructor/quizzes/{qid}")
    assert "✓".encode() in r.data

    _login(client, "sam@example.com")
    r = client.get(f"/student/quizzes/{qid}")
    assert r.status_code == 200
    assert b"2 + 2 = ?" in r.data
    assert "✓".encode() not in r.data


def test_unenrolled_student_cannot_attempt(client):
    qid = _create_quiz(client)

    _login(client, "kim@example.com")
    assert client.get(f"/student/quizzes/{qid}").status_code == 302
    r = client.post(f"/student/quizzes/{qid}", data={"csrf_token": _csrf(client), "q0": "1"}, follow_redirects=True)
    assert b"must be enrolled" in r.data
    assert _attempts(client, qid) == []
