"""
Central constants for the e-learning application.
"""
from __future__ import annotations

ROLE_STUDENT = "student"
ROLE_INSTRUCTOR = "instructor"
VALID_ROLES = (ROLE_STUDENT, ROLE_INSTRUCTOR)

MIN_PASSWORD_LENGTH = 6

# Paths that skip user loading and the serverless DB connect.
UNAUTHENTICATED_PREFIXES = ("/static/", "/api/health")
