import pytest

from course_engine.exceptions import IncompleteSubmissionError, ValidationError
from course_engine.quiz import (
    QuizContent,
    QuizQuestion,
    all_questions_answered,
    question_credit,
    score,
    validate_submission,
)

from conftest import QUIZ_CONTENT


def _questions():
    return QuizContent.model_validate(QUIZ_CONTENT).questions


def test_partial_credit_for_correct_subset() -> None:
    result = score(_questions(), {"q1": "a", "q2": ["x"]})
    assert result.per_question_credit == {"q1": 1.0, "q2": 0.5}
    assert result.score == 75
    assert result.strict_correct_count == 1
    assert result.total_questions == 2


def test_any_wrong_option_zeroes_multiple_choice() -> None:
    result = score(_questions(), {"q1": "a", "q2": ["x", "y", "z"]})
    assert result.per_question_credit["q2"] == 0.0
    assert result.score == 50
    assert result.strict_correct_count == 1


def test_all_correct_scores_100() -> None:
    result = score(_questions(), {"q1": "a", "q2": ["y", "x"]})
    assert result.score == 100
    assert result.strict_correct_count == 2
    assert result.average_credit == 1.0


def test_single_choice_wrong_answer() -> None:
    question = QuizQuestion(id="q", kind="single", correct_option="a")
    assert question_credit(question, "b") == 0.0
    assert question_credit(question, ["a"]) == 1.0
    assert question_credit(question, ["a", "b"]) == 0.0


def test_true_false_scored_as_single_choice() -> None:
    question = QuizQuestion(id="tf", kind="true_false", correct_option="true")
    assert question_credit(question, "true") == 1.0
    assert question_credit(question, "false") == 0.0


def test_short_answer_credit_for_non_blank() -> None:
    question = QuizQuestion(id="s", kind="short_answer", sample_answer="anything")
    assert question_credit(question, "my answer") == 1.0
    assert question_credit(question, "   ") == 0.0


def test_multiple_choice_without_correct_options_gets_no_credit() -> None:
    question = QuizQuestion(id="m", kind="multiple")
    assert question_credit(question, ["x"]) == 0.0


def test_rounding_is_half_up() -> None:
    questions = [
        QuizQuestion(id="q1", kind="single", correct_option="a"),
        QuizQuestion(id="q2", kind="multiple", correct_options=["a", "b", "c", "d"]),
    ]
    # average credit 0.625 -> 62.5 -> 63
    assert score(questions, {"q1": "a", "q2": ["a"]}).score == 63


def test_scoring_is_deterministic() -> None:
    answers = {"q1": "b", "q2": ["x"]}
    assert score(_questions(), answers) == score(_questions(), answers)


def test_all_questions_answered() -> None:
    questions = _questions()
    assert all_questions_answered(questions, {"q1": "a", "q2": ["x"]})
    assert not all_questions_answered(questions, {"q1": "a"})
    assert not all_questions_answered(questions, {"q1": "a", "q2": []})
    assert not all_questions_answered([], {})


def test_validate_submission_lists_missing_questions() -> None:
    with pytest.raises(IncompleteSubmissionError) as exc_info:
        validate_submission("quiz-1", _questions(), {"q1": "a", "q2": []})
    assert exc_info.value.missing_question_ids == ["q2"]
    assert exc_info.value.lesson_id == "quiz-1"


def test_validate_submission_rejects_empty_quiz() -> None:
    with pytest.raises(ValidationError) as exc_info:
        validate_submission("quiz-1", [], {})
    assert not isinstance(exc_info.value, IncompleteSubmissionError)
