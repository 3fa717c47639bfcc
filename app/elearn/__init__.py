import logging
import os
from datetime import timedelta

from flask import Flask, flash, g, redirect, render_template, request, session, url_for
from dotenv import load_dotenv

from app.elearn.config import load_config
from app.elearn.constants import UNAUTHENTICATED_PREFIXES
from app.elearn.db import DatabaseUnavailable, connect_db, init_db, teardown_db_session
from app.elearn.routes import bp as routes_bp
from app.elearn.auth import bp as auth_bp, load_current_user
from app.elearn.student import bp as student_bp
from app.elearn.instructor import bp as instructor_bp


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=24)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL") or "INFO",
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    from app.elearn.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_template_globals() -> dict:
        return {
            "csrf_token": ensure_csrf_token(),
            "current_user": getattr(g, "current_user", None),
        }

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d %H:%M") -> str:
        if value is None:
            return "—"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    if not app.config.get("SERVERLESS"):
        # Long-running server: connect eagerly, but keep booting if the DB is down.
        try:
            connect_db(app)
        except DatabaseUnavailable as e:
            app.logger.error("Failed to initialize database connection: %s", e)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Local attachment storage; read-only filesystems only get a warning.
    if app.config.get("STORAGE_BACKEND", "local") == "local":
        from app.elearn.storage import ensure_upload_dir

        try:
            ensure_upload_dir(app.config)
        except OSError as e:
            app.logger.warning("Could not create uploads directory: %s", e)

    # Middleware chain, in registration order.

    @app.before_request
    def _log_request():
        app.logger.debug("Request URL: %s %s", request.method, request.full_path.rstrip("?"))

    @app.before_request
    def _serverless_db_connect():
        if not app.config.get("SERVERLESS"):
            return None
        if request.path.startswith(UNAUTHENTICATED_PREFIXES):
            return None
        try:
            connect_db(app)
        except DatabaseUnavailable:
            app.logger.exception("Database connection failed (path=%s)", request.path)
            return "Database connection failed", 500
        return None

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(UNAUTHENTICATED_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Allow safe auth endpoints to pass through (login/register/logout)
            if request.endpoint in ("auth.login_post", "auth.register_post", "auth.logout"):
                return None
            if not validate_csrf(request):
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400
        return None

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(student_bp, url_prefix="/student")
    app.register_blueprint(instructor_bp, url_prefix="/instructor")

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return render_template("errors/500.html"), 500

    @app.errorhandler(DatabaseUnavailable)
    def _err_db(e):  # type: ignore[no-redef]
        app.logger.error("Database unavailable during request (request_id=%s): %s", getattr(g, "request_id", None), e)
        return "Database connection failed", 500

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        required = getattr(g, "required_role", None)
        user = getattr(g, "current_user", None)
        app.logger.warning(
            "Forbidden: required_role=%s user_role=%s request_id=%s",
            required,
            getattr(user, "role", None),
            getattr(g, "request_id", None),
        )
        return render_template("errors/403.html", required_role=required), 403

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return render_template("errors/404.html"), 404

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        flash("File too large. Maximum size is 10MB.", "danger")
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(url_for("routes.index")), 302

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
