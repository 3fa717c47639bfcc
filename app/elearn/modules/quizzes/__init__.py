"""
Quizzes module.

Questions are stored as a JSON document on the quiz row:
    [{"prompt": str, "options": [str, ...], "answer": int, "points": number}, ...]
Each student attempt is stored as its own QuizAttempt row.
"""

