"""Pydantic schemas for quiz content and grading results."""

from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field


class QuestionKind(str, Enum):
    """How a question is answered and graded."""
    SINGLE = "single"
    MULTIPLE = "multiple"
    TRUE_FALSE = "true_false"
    SHORT_ANSWER = "short_answer"


class QuizOption(BaseModel):
    """A selectable answer option."""
    id: str = Field(description="Option identifier referenced by answers")
    text: str = Field(default="", description="Option label shown to the learner")


class QuizQuestion(BaseModel):
    """A single quiz question as stored in a quiz lesson's content."""
    id: str = Field(description="Question identifier")
    kind: QuestionKind = Field(default=QuestionKind.SINGLE, description="Answering mode")
    text: str = Field(default="", description="Question prompt")
    options: list[QuizOption] = Field(default_factory=list)
    correct_option: Optional[str] = Field(
        default=None,
        description="Correct option id for single-choice and true/false questions",
    )
    correct_options: list[str] = Field(
        default_factory=list,
        description="Correct option ids for multiple-choice questions",
    )
    sample_answer: Optional[str] = Field(
        default=None,
        description="Reference answer for short-answer questions (not graded)",
    )


class QuizContent(BaseModel):
    """Content payload of a quiz lesson."""
    questions: list[QuizQuestion] = Field(default_factory=list)
    passing_score: Optional[int] = Field(default=None, ge=0, le=100)


# A learner's answer: one option id, several option ids, or free text
Answer = Union[str, list[str]]


class QuizResult(BaseModel):
    """Outcome of grading one quiz submission."""
    score: int = Field(ge=0, le=100, description="Rounded percentage")
    total_questions: int = Field(ge=0)
    strict_correct_count: int = Field(ge=0, description="Questions with full credit")
    per_question_credit: dict[str, float] = Field(default_factory=dict)
    average_credit: float = Field(ge=0.0, le=1.0)
