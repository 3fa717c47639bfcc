from __future__ import annotations

import re
import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, session, url_for
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash, generate_password_hash

from app.elearn.audit import record_event
from app.elearn.constants import MIN_PASSWORD_LENGTH, ROLE_INSTRUCTOR, UNAUTHENTICATED_PREFIXES, VALID_ROLES
from app.elearn.db import DatabaseUnavailable, db_session
from app.elearn.models import User
from app.elearn.rbac import login_required
from app.elearn.security import is_safe_next

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def dashboard_url_for(user: User) -> str:
    if user.role == ROLE_INSTRUCTOR:
        return url_for("instructor.dashboard")
    return url_for("student.dashboard")


def login_user(user: User) -> None:
    """Start a fresh session for the user; any previous identity is discarded."""
    session.clear()
    session["user_id"] = user.id
    session.permanent = True
    g.current_user = user


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(UNAUTHENTICATED_PREFIXES):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        uid = int(user_id)
    except (TypeError, ValueError):
        session.pop("user_id", None)
        g.current_user = None
        return

    s = db_session()
    try:
        user = s.get(User, uid)
    except SQLAlchemyError as e:
        # Keep the session; the user is still signed in once the database is back.
        current_app.logger.error("load_current_user DB error: %s", e)
        raise DatabaseUnavailable(str(e)) from e
    if not user or not user.is_active:
        session.pop("user_id", None)
        g.current_user = None
        return
    g.current_user = user


@bp.get("/login")
def login_get():
    user = getattr(g, "current_user", None)
    if user:
        return redirect(dashboard_url_for(user))
    nxt = (request.args.get("next") or "").strip()
    return render_template("auth/login.html", next=nxt)


@bp.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        flash("Too many login attempts. Please wait 5 minutes.", "danger")
        return redirect(url_for("auth.login_get"))

    _record_attempt(ip)

    try:
        s = db_session()
        user = s.query(User).filter(User.email == email).one_or_none()
        failure = None
        if not user or not user.is_active:
            failure = "No user with that email address"
        elif not check_password_hash(user.password_hash, password):
            failure = "Password incorrect"

        if failure:
            record_event(
                s,
                actor=None,
                action="auth.login_failed",
                entity_type="User",
                entity_id=email,
                reason=failure,
                metadata={"email": email},
            )
            s.commit()
            flash(failure, "danger")
            return redirect(url_for("auth.login_get", next=nxt) if nxt else url_for("auth.login_get"))

        login_user(user)
        _login_attempts[ip].clear()
        record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
        s.commit()
        flash(f"Welcome back, {user.display_name}!", "success")
        if is_safe_next(nxt):
            return redirect(nxt)
        return redirect(dashboard_url_for(user))
    except Exception:
        current_app.logger.exception("Login POST crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


@bp.get("/register")
def register_get():
    user = getattr(g, "current_user", None)
    if user:
        return redirect(dashboard_url_for(user))
    return render_template("auth/register.html", roles=VALID_ROLES)


def validate_registration(form: dict) -> list[str]:
    """Validate the registration form. Returns list of errors."""
    errors = []
    if not (form.get("name") or "").strip():
        errors.append("Name is required.")
    email = (form.get("email") or "").strip().lower()
    if not _EMAIL_RE.match(email):
        errors.append("A valid email address is required.")
    password = form.get("password") or ""
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if password != (form.get("confirm_password") or ""):
        errors.append("Passwords do not match.")
    if (form.get("role") or "").strip() not in VALID_ROLES:
        errors.append("Choose a role: student or instructor.")
    return errors


@bp.post("/register")
def register_post():
    errors = validate_registration(request.form)
    if errors:
        for err in errors:
            flash(err, "danger")
        return redirect(url_for("auth.register_get"))

    s = db_session()
    email = request.form["email"].strip().lower()
    if s.query(User).filter(User.email == email).one_or_none():
        flash("An account with that email already exists.", "danger")
        return redirect(url_for("auth.register_get"))

    user = User(
        email=email,
        password_hash=generate_password_hash(request.form["password"]),
        role=request.form["role"].strip(),
        name=request.form["name"].strip(),
        is_active=True,
    )
    s.add(user)
    s.flush()
    record_event(s, actor=user, action="auth.register", entity_type="User", entity_id=str(user.id), metadata={"role": user.role})
    s.commit()

    login_user(user)
    current_app.logger.info("Registered user id=%s role=%s", user.id, user.role)
    flash("Account created. Welcome!", "success")
    return redirect(dashboard_url_for(user))


@bp.route("/logout", methods=["GET", "POST"])
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.clear()
    flash("You have been logged out.", "success")
    return redirect(url_for("routes.index"))


@bp.get("/profile")
@login_required
def profile_get():
    return render_template("auth/profile.html", user=g.current_user)


@bp.post("/profile")
@login_required
def profile_post():
    s = db_session()
    user = s.get(User, g.current_user.id)

    name = (request.form.get("name") or "").strip()
    if not name:
        flash("Name is required.", "danger")
        return redirect(url_for("auth.profile_get"))

    changes = {}
    if name != user.name:
        changes["name"] = {"old": user.name, "new": name}
        user.name = name
    bio = (request.form.get("bio") or "").strip() or None
    if bio != user.bio:
        changes["bio"] = True
        user.bio = bio

    new_password = request.form.get("new_password") or ""
    if new_password:
        if not check_password_hash(user.password_hash, request.form.get("current_password") or ""):
            flash("Current password is incorrect.", "danger")
            return redirect(url_for("auth.profile_get"))
        if len(new_password) < MIN_PASSWORD_LENGTH:
            flash(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.", "danger")
            return redirect(url_for("auth.profile_get"))
        user.password_hash = generate_password_hash(new_password)
        changes["password"] = True

    record_event(s, actor=user, action="user.profile_edit", entity_type="User", entity_id=str(user.id), metadata={"changes": changes})
    s.commit()
    flash("Profile updated.", "success")
    return redirect(url_for("auth.profile_get"))
