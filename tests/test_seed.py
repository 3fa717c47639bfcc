from werkzeug.security import check_password_hash

from app.elearn.models import Base, User
from scripts.init_db import _session_scope, seed_only


def test_seed_creates_instructor_once(tmp_path, monkeypatch):
    db_url = f"sqlite:///{tmp_path/'seed.db'}"
    monkeypatch.setenv("INSTRUCTOR_EMAIL", "Lead@Example.com")
    monkeypatch.setenv("INSTRUCTOR_PASSWORD", "first-pw")

    with _session_scope(db_url) as s:
        Base.metadata.create_all(bind=s.get_bind())

    seed_only(database_url=db_url)
    # A second run must not reset the password
    monkeypatch.setenv("INSTRUCTOR_PASSWORD", "second-pw")
    seed_only(database_url=db_url)

    with _session_scope(db_url) as s:
        users = s.query(User).all()
        assert len(users) == 1
        assert users[0].email == "lead@example.com"
        assert users[0].role == "instructor"
        assert check_password_hash(users[0].password_hash, "first-pw")
