from __future__ import annotations

from contextlib import contextmanager
from collections.abc import Generator

from flask import Flask, g
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker


class DatabaseUnavailable(RuntimeError):
    pass


def _engine_kwargs(db_url: str, *, serverless: bool) -> dict[str, object]:
    is_postgres = db_url.startswith("postgres")
    engine_kwargs: dict[str, object] = {
        "future": True,
        "pool_pre_ping": True,
    }
    if is_postgres and serverless:
        # One connection per function instance, fail fast instead of queueing.
        engine_kwargs.update(
            {
                "pool_size": 1,
                "max_overflow": 0,
                "pool_timeout": 3,
                "pool_recycle": 300,
                "connect_args": {"connect_timeout": 3},
            }
        )
    elif is_postgres:
        engine_kwargs.update(
            {
                "pool_recycle": 1800,
                "pool_size": 5,
                "max_overflow": 10,
                "pool_timeout": 30,
            }
        )
    return engine_kwargs


def init_db(app: Flask) -> None:
    """
    Register the process-wide engine slot. The engine itself is built on
    first use so a missing or unreachable database never blocks app startup.
    """
    app.extensions["sqlalchemy_engine"] = None
    app.extensions["sqlalchemy_sessionmaker"] = None
    app.extensions["db_connected"] = False


def get_engine(app: Flask) -> Engine:
    engine = app.extensions.get("sqlalchemy_engine")
    if engine is not None:
        return engine

    db_url = (app.config.get("DATABASE_URL") or "").strip()
    if not db_url:
        app.logger.error("Database URL not found. Set DATABASE_URL in the environment or .env")
        raise DatabaseUnavailable("Database URL not configured")

    engine = create_engine(db_url, **_engine_kwargs(db_url, serverless=bool(app.config.get("SERVERLESS"))))
    if app.config.get("ENV") != "production":
        @event.listens_for(engine, "checkout")
        def _receive_checkout(dbapi_connection, connection_record, connection_proxy):  # type: ignore[no-redef]
            app.logger.debug("DB connection checkout from pool")
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )
    return engine


def connect_db(app: Flask) -> None:
    """
    Establish (or confirm) the database connection. Reuses the existing
    engine when a previous call already succeeded.
    """
    if app.extensions.get("db_connected") and app.extensions.get("sqlalchemy_engine") is not None:
        return

    try:
        engine = get_engine(app)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        app.extensions["db_connected"] = False
        app.logger.error("Database connection error: %s", e)
        raise DatabaseUnavailable(str(e)) from e

    app.extensions["db_connected"] = True
    app.logger.info("Connected to database")


def db_session(app: Flask | None = None) -> Session:
    """
    Request-scoped session. Use inside request handlers.
    """
    if hasattr(g, "db_session") and g.db_session is not None:
        return g.db_session
    if app is None:
        from flask import current_app

        app = current_app
    if not app.extensions.get("db_connected"):
        # Startup connect failed or never ran; retry before handing out a session.
        connect_db(app)
    sm = app.extensions["sqlalchemy_sessionmaker"]
    g.db_session = sm()  # type: ignore[assignment]
    return g.db_session


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = getattr(g, "db_session", None)
    if s is not None:
        try:
            s.close()
        except SQLAlchemyError:
            pass
        g.db_session = None


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Non-request helper for scripts and tests: yields a session and commits/rolls back.
    """
    get_engine(app)
    sm = app.extensions["sqlalchemy_sessionmaker"]
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
