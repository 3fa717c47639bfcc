from __future__ import annotations

import json
import math
from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.elearn.audit import record_event

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.elearn.models import User
    from app.elearn.modules.courses.models import Course
    from app.elearn.modules.quizzes.models import Quiz, QuizAttempt


def parse_questions(raw: str | None) -> tuple[list[dict] | None, str | None]:
    """
    Parse the questions JSON from form input.

    Returns (questions, None) on success or (None, error message). Each
    question is normalized to {"prompt", "options", "answer", "points"}.
    """
    if not raw or not raw.strip():
        return None, "At least one question is required."
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        return None, f"Questions JSON is invalid: {e}"
    if not isinstance(value, list) or not value:
        return None, "Questions must be a non-empty JSON list."

    questions: list[dict] = []
    for n, q in enumerate(value, start=1):
        if not isinstance(q, dict):
            return None, f"Question {n} must be a JSON object."
        prompt = str(q.get("prompt") or q.get("question") or "").strip()
        if not prompt:
            return None, f"Question {n} needs a prompt."
        options = q.get("options")
        if not isinstance(options, list) or len(options) < 2:
            return None, f"Question {n} needs at least two options."
        options = [str(o).strip() for o in options]
        if any(not o for o in options):
            return None, f"Question {n} has an empty option."
        answer = q.get("answer")
        if isinstance(answer, bool) or not isinstance(answer, int) or not 0 <= answer < len(options):
            return None, f"Question {n} answer must be an option index between 0 and {len(options) - 1}."
        points = q.get("points", 1)
        if isinstance(points, bool) or not isinstance(points, (int, float)) or not math.isfinite(points) or points <= 0:
            return None, f"Question {n} points must be a positive number."
        questions.append({"prompt": prompt, "options": options, "answer": answer, "points": points})
    return questions, None


def parse_max_attempts(raw: str | None) -> int:
    s = (raw or "").strip()
    if not s:
        return 1
    n = int(s)
    if n < 1:
        raise ValueError("Max attempts must be at least 1.")
    return n


def public_questions(quiz: "Quiz") -> list[dict]:
    """Questions without their answers, safe to render to students."""
    return [{"prompt": q["prompt"], "options": q["options"], "points": q.get("points", 1)} for q in quiz.questions or []]


def collect_answers(form: Any, question_count: int) -> list[int | None]:
    """Read answers submitted as q0, q1, ... form fields (option indexes)."""
    answers: list[int | None] = []
    for i in range(question_count):
        raw = (form.get(f"q{i}") or "").strip()
        try:
            answers.append(int(raw) if raw else None)
        except ValueError:
            answers.append(None)
    return answers


def score_quiz(questions: list[dict], answers: list[int | None]) -> tuple[float, float, list[dict]]:
    """
    Score answers against the questions.

    Returns (score, max_score, breakdown). A question earns its points only
    when the chosen option index equals the stored answer index.
    """
    score = 0.0
    max_score = 0.0
    breakdown = []
    for i, q in enumerate(questions):
        points = float(q.get("points", 1))
        chosen = answers[i] if i < len(answers) else None
        correct = chosen is not None and chosen == q["answer"]
        max_score += points
        if correct:
            score += points
        breakdown.append({"prompt": q["prompt"], "chosen": chosen, "is_correct": correct, "points": points if correct else 0.0})
    return score, max_score, breakdown


def create_quiz(s: "Session", course: "Course", payload: dict, questions: list[dict], user: "User") -> "Quiz":
    from app.elearn.modules.quizzes.models import Quiz

    quiz = Quiz(
        course_id=course.id,
        instructor_id=user.id,
        title=(payload.get("title") or "").strip(),
        description=(payload.get("description") or "").strip() or None,
        questions=questions,
        max_attempts=parse_max_attempts(payload.get("max_attempts")),
        created_at=datetime.utcnow(),
    )
    s.add(quiz)
    s.flush()

    record_event(
        s,
        actor=user,
        action="quiz.create",
        entity_type="Quiz",
        entity_id=str(quiz.id),
        metadata={"course_id": course.id, "title": quiz.title, "questions": len(questions)},
    )
    return quiz


def delete_quiz(s: "Session", quiz: "Quiz", user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="quiz.delete",
        entity_type="Quiz",
        entity_id=str(quiz.id),
        metadata={"course_id": quiz.course_id, "title": quiz.title},
    )
    s.delete(quiz)


def record_attempt(s: "Session", quiz: "Quiz", student: "User", answers: list[int | None]) -> "QuizAttempt":
    """Score and store a new attempt; raises ValueError when not allowed."""
    from app.elearn.modules.quizzes.models import QuizAttempt

    if not quiz.course.has_student(student):
        raise ValueError("You must be enrolled in the course to take this quiz.")

    previous = (
        s.query(QuizAttempt)
        .filter(QuizAttempt.quiz_id == quiz.id, QuizAttempt.student_id == student.id)
        .count()
    )
    if previous >= quiz.max_attempts:
        raise ValueError("No attempts remaining for this quiz.")

    score, max_score, _ = score_quiz(quiz.questions or [], answers)
    attempt = QuizAttempt(
        quiz_id=quiz.id,
        student_id=student.id,
        attempt_number=previous + 1,
        answers=answers,
        score=score,
        max_score=max_score,
        submitted_at=datetime.utcnow(),
    )
    s.add(attempt)
    s.flush()

    record_event(
        s,
        actor=student,
        action="quiz.attempt",
        entity_type="QuizAttempt",
        entity_id=str(attempt.id),
        metadata={"quiz_id": quiz.id, "attempt": attempt.attempt_number, "score": score, "max_score": max_score},
    )
    return attempt


def best_attempt(attempts: list["QuizAttempt"]) -> "QuizAttempt | None":
    if not attempts:
        return None
    return max(attempts, key=lambda a: (a.score, -a.attempt_number))
