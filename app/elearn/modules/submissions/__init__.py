"""
Submissions module.

Policy:
- One submission per (assignment, student); resubmitting updates it in place
- Graded submissions are locked against resubmission
- Late is decided against the assignment due date at submit time
"""

