"""Course, Module, Lesson and Enrollment data models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from ..exceptions import ContentStateError


class CourseStatus(str, Enum):
    """Publication status of a course."""
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class LessonType(str, Enum):
    """Kinds of lesson a module can hold."""
    TEXT = "text"
    VIDEO = "video"
    QUIZ = "quiz"
    RESOURCE = "resource"
    ASSIGNMENT = "assignment"
    DRAG_SORT = "drag_sort"
    HOTSPOT = "hotspot"
    FRAME = "frame"
    CARD_CREATOR = "card_creator"
    SERIES_QUESTIONNAIRE = "series_questionnaire"


class ContentState(str, Enum):
    """Load state of a lesson's full content."""
    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    LOADED = "loaded"


class EnrollmentStatus(str, Enum):
    """Status of a learner's enrollment."""
    ACTIVE = "active"
    COMPLETED = "completed"
    PAUSED = "paused"


@dataclass
class Course:
    """Basic course information, without modules."""

    id: str = ""
    title: str = ""
    description: str = ""
    short_description: str = ""
    status: CourseStatus = CourseStatus.DRAFT
    author_id: str = ""
    cover_image: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'short_description': self.short_description,
            'status': self.status.value,
            'author_id': self.author_id,
            'cover_image': self.cover_image,
            'category': self.category,
            'tags': self.tags,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class Lesson:
    """A single lesson within a module.

    Metadata reads produce lessons in ``NOT_LOADED`` state; the full content
    payload is attached later by :meth:`mark_loaded`.
    """

    id: str = ""
    module_id: str = ""
    course_id: str = ""
    title: str = ""
    type: LessonType = LessonType.TEXT
    order_index: int = 0
    content_state: ContentState = ContentState.NOT_LOADED
    content: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def begin_loading(self) -> None:
        """Move NOT_LOADED -> LOADING. A no-op if already loading or loaded."""
        if self.content_state == ContentState.NOT_LOADED:
            self.content_state = ContentState.LOADING

    def mark_loaded(self, content: dict[str, Any]) -> None:
        """Attach the full content payload."""
        if self.content_state == ContentState.LOADED:
            raise ContentStateError(self.id, self.content_state.value, ContentState.LOADED.value)
        self.content = content
        self.content_state = ContentState.LOADED

    def abort_loading(self) -> None:
        """Return LOADING -> NOT_LOADED after a failed content fetch."""
        if self.content_state == ContentState.LOADING:
            self.content_state = ContentState.NOT_LOADED

    @property
    def is_loaded(self) -> bool:
        return self.content_state == ContentState.LOADED

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        data = {
            'id': self.id,
            'module_id': self.module_id,
            'title': self.title,
            'type': self.type.value,
            'order_index': self.order_index,
            'content_state': self.content_state.value,
        }
        if self.is_loaded:
            data['content'] = self.content
        return data


@dataclass
class CourseModule:
    """A module (section) within a course.

    ``lesson_ids`` is always populated by module reads; ``lessons`` only when
    the module was loaded in detail.
    """

    id: str = ""
    course_id: str = ""
    title: str = ""
    description: str = ""
    order_index: int = 0
    lesson_ids: tuple[str, ...] = ()
    lessons: list[Lesson] = field(default_factory=list)
    lessons_loaded: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'order_index': self.order_index,
            'lesson_ids': list(self.lesson_ids),
            'lessons_loaded': self.lessons_loaded,
            'lessons': [lesson.to_dict() for lesson in self.lessons],
        }


@dataclass
class Enrollment:
    """A learner's enrollment in a course."""

    id: str = ""
    user_id: str = ""
    course_id: str = ""
    progress: int = 0  # 0-100, recomputed by the backend
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    enrolled_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'user_id': self.user_id,
            'course_id': self.course_id,
            'progress': self.progress,
            'status': self.status.value,
        }
