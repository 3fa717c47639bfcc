import sys
from pathlib import Path
import os

from werkzeug.security import generate_password_hash
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from contextlib import contextmanager

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.elearn.constants import ROLE_INSTRUCTOR
from app.elearn.models import User


@contextmanager
def _session_scope(database_url: str):
    engine = create_engine(database_url, future=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the first instructor account in an idempotent way.
    Does NOT overwrite an existing user's password or role.
    """
    email = (os.environ.get("INSTRUCTOR_EMAIL") or "instructor@example.com").strip().lower()
    password = os.environ.get("INSTRUCTOR_PASSWORD") or "change-me"
    name = (os.environ.get("INSTRUCTOR_NAME") or "Course Instructor").strip()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///elearn.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with _session_scope(db_url) as s:
        user = s.query(User).filter(User.email == email).one_or_none()
        if not user:
            user = User(
                email=email,
                password_hash=generate_password_hash(password),
                role=ROLE_INSTRUCTOR,
                name=name,
                is_active=True,
            )
            s.add(user)
            print(f"Created instructor: {email}")
        else:
            print(f"Instructor already present: {email} (role={user.role}); left unchanged")

    print("Initialized database (seed_only).")
    print("Instructor password: (from INSTRUCTOR_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
