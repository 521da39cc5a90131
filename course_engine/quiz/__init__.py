# Quiz module - question schemas and grading
from .schemas import Answer, QuestionKind, QuizOption, QuizQuestion, QuizContent, QuizResult
from .scorer import score, question_credit, all_questions_answered, validate_submission

__all__ = [
    'Answer',
    'QuestionKind',
    'QuizOption',
    'QuizQuestion',
    'QuizContent',
    'QuizResult',
    'score',
    'question_credit',
    'all_questions_answered',
    'validate_submission',
]
