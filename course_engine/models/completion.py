"""Lesson completion records."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional


@dataclass
class CompletionRecord:
    """Durable marker that a learner finished a lesson.

    Unique per (user_id, lesson_id); a second write for the same pair updates
    the stored score and payload.
    """

    user_id: str = ""
    lesson_id: str = ""
    course_id: str = ""
    enrollment_id: str = ""
    completed_at: Optional[datetime] = None
    score: Optional[int] = None
    data: Optional[dict[str, Any]] = None
    id: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'user_id': self.user_id,
            'lesson_id': self.lesson_id,
            'course_id': self.course_id,
            'enrollment_id': self.enrollment_id,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'score': self.score,
            'data': self.data,
        }
