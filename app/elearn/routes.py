from datetime import datetime, timezone

from flask import Blueprint, jsonify, render_template

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return render_template("home.html")


@bp.get("/api/health")
def health():
    """
    Health check endpoint. No DB access, so it answers even when the
    database is unreachable.
    """
    return jsonify(status="ok", timestamp=datetime.now(timezone.utc).isoformat())
