"""
Courses module.

- Courses are owned by exactly one instructor
- Students join and leave through Enrollment rows (one per course/student pair)
"""

