"""Deterministic quiz grading.

Grading rules:
- single / true_false: full credit only for the correct option.
- multiple: if every selected option is correct, credit is the fraction of
  correct options selected; selecting any wrong option zeroes the question.
- short_answer: full credit for any non-blank answer.
"""

import math
from typing import Mapping, Sequence

from ..exceptions import IncompleteSubmissionError, ValidationError
from .schemas import Answer, QuestionKind, QuizQuestion, QuizResult


def _as_set(answer: Answer) -> set[str]:
    if isinstance(answer, str):
        return {answer}
    return set(answer)


def question_credit(question: QuizQuestion, answer: Answer) -> float:
    """Credit in [0, 1] for one answered question."""
    if question.kind == QuestionKind.MULTIPLE:
        correct = set(question.correct_options)
        given = _as_set(answer)
        if not correct or not given <= correct:
            return 0.0
        return len(given & correct) / len(correct)

    if question.kind == QuestionKind.SHORT_ANSWER:
        return 1.0 if isinstance(answer, str) and answer.strip() else 0.0

    # single choice and true/false
    if isinstance(answer, list):
        answer = answer[0] if len(answer) == 1 else None
    return 1.0 if answer is not None and answer == question.correct_option else 0.0


def _is_answered(question: QuizQuestion, answer) -> bool:
    if answer is None:
        return False
    if question.kind == QuestionKind.MULTIPLE:
        if isinstance(answer, str):
            return answer.strip() != ""
        return isinstance(answer, (list, tuple, set)) and len(answer) > 0
    if isinstance(answer, str):
        return answer.strip() != ""
    return isinstance(answer, (list, tuple)) and len(answer) > 0


def all_questions_answered(questions: Sequence[QuizQuestion],
                           answers: Mapping[str, Answer]) -> bool:
    """Check that every question has a non-empty answer."""
    if not questions:
        return False
    return all(_is_answered(q, answers.get(q.id)) for q in questions)


def validate_submission(lesson_id: str, questions: Sequence[QuizQuestion],
                        answers: Mapping[str, Answer]) -> None:
    """Reject a submission with unanswered questions.

    Raises:
        IncompleteSubmissionError: listing the unanswered question ids
    """
    if not questions:
        raise ValidationError(f"Quiz '{lesson_id}' has no questions", field='questions')
    missing = [q.id for q in questions if not _is_answered(q, answers.get(q.id))]
    if missing:
        raise IncompleteSubmissionError(lesson_id, missing)


def score(questions: Sequence[QuizQuestion], answers: Mapping[str, Answer]) -> QuizResult:
    """Grade a complete submission.

    Every question must have an answer; call :func:`validate_submission`
    first. Identical inputs always produce an identical result.
    """
    credits: dict[str, float] = {}
    for question in questions:
        credits[question.id] = question_credit(question, answers[question.id])

    total = len(questions)
    average = sum(credits.values()) / total if total else 0.0
    return QuizResult(
        score=math.floor(average * 100 + 0.5),  # half-up rounding
        total_questions=total,
        strict_correct_count=sum(1 for c in credits.values() if c == 1.0),
        per_question_credit=credits,
        average_credit=average,
    )
