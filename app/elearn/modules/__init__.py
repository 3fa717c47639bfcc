"""
Entity modules live under this package (one per collection).

Each module owns its models and service helpers, while reusing platform
primitives (audit, storage, DB session). Route handlers live in the role
blueprints (student/instructor) and call into these services.
"""

