"""Content repository: the engine's only gateway to the data service.

``ContentRepository`` is the abstract, awaitable interface the rest of the
engine depends on. ``SqliteContentRepository`` implements it on top of
:class:`ContentStore`, running blocking store calls in worker threads,
translating storage failures into the engine's error taxonomy and retrying
transient failures. No caching happens at this layer.
"""

import asyncio
import sqlite3
from abc import ABC, abstractmethod
from typing import Callable, Optional, TypeVar

from ..config import RepositoryConfig
from ..exceptions import (
    ConstraintViolationError,
    NotFoundError,
    StoreUnavailableError,
    TransientNetworkError,
    UnauthorizedError,
    ValidationError,
)
from ..logging_config import get_logger
from ..models import CompletionRecord, Course, CourseModule, Enrollment, Lesson
from ..retry import RetryPolicy, retry_with_backoff
from .store import ContentStore

logger = get_logger('repository')

T = TypeVar('T')

# SQLite operational errors that clear up on their own
_TRANSIENT_MARKERS = ("locked", "busy", "unable to open", "disk i/o")


def _is_transient(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


class ContentRepository(ABC):
    """Abstract remote data service for courses, lessons and completions.

    Every method may suspend. Implementations signal failures with
    NotFoundError, UnauthorizedError, TransientNetworkError or
    ValidationError.
    """

    @abstractmethod
    async def fetch_course_basic_info(self, course_id: str) -> Course:
        """Course without modules. Raises NotFoundError."""

    @abstractmethod
    async def fetch_modules(self, course_id: str) -> list[CourseModule]:
        """Ordered modules carrying lesson ids but no lessons."""

    @abstractmethod
    async def fetch_lessons_batch(self, module_ids: list[str]) -> dict[str, list[Lesson]]:
        """Metadata-only lessons per module id."""

    @abstractmethod
    async def fetch_lesson_content(self, lesson_id: str) -> Lesson:
        """Lesson with its full content payload. Raises NotFoundError."""

    @abstractmethod
    async def fetch_enrollment(self, course_id: str, user_id: str) -> Optional[Enrollment]:
        """The learner's enrollment, or None when not enrolled."""

    @abstractmethod
    async def fetch_completion_map(self, course_id: str, user_id: str) -> dict[str, bool]:
        """``{lesson_id: True}`` for every lesson the learner completed."""

    @abstractmethod
    async def fetch_completion(self, lesson_id: str, user_id: str) -> Optional[CompletionRecord]:
        """The single completion record for (user, lesson), if any."""

    @abstractmethod
    async def upsert_completion(self, record: CompletionRecord) -> CompletionRecord:
        """Create or update the record keyed by (user_id, lesson_id)."""

    @abstractmethod
    async def delete_completion(self, lesson_id: str, user_id: str) -> bool:
        """Remove the record for (user_id, lesson_id)."""

    @abstractmethod
    async def delete_orphaned_completions(self, course_id: str, user_id: str) -> int:
        """Remove records for lessons that no longer belong to the course."""


def validate_completion(record: CompletionRecord) -> None:
    """Reject malformed completion records before they reach storage."""
    for field_name in ('user_id', 'lesson_id', 'course_id', 'enrollment_id'):
        if not getattr(record, field_name):
            raise ValidationError(f"Completion record is missing {field_name}", field=field_name)
    if record.score is not None and not 0 <= record.score <= 100:
        raise ValidationError(
            "Completion score must be between 0 and 100", field='score', value=record.score
        )


class SqliteContentRepository(ContentRepository):
    """ContentRepository backed by a local :class:`ContentStore`."""

    def __init__(self, store: ContentStore, retry: Optional[RepositoryConfig] = None):
        self.store = store
        self.policy = RetryPolicy.from_config(retry or RepositoryConfig(), retryable=(TransientNetworkError,))

    async def _call(self, operation: str, func: Callable[..., T], *args) -> T:
        """Run a store call off the event loop with the retry budget."""
        async def attempt() -> T:
            try:
                return await asyncio.to_thread(func, *args)
            except sqlite3.OperationalError as e:
                if not _is_transient(e):
                    raise
                raise TransientNetworkError(operation, message=str(e)) from e
            except StoreUnavailableError as e:
                raise TransientNetworkError(operation, message=e.message) from e
            except ConstraintViolationError as e:
                raise ValidationError(e.message, field=operation) from e

        logger.debug(f"{operation}: {args}")
        attempt.__name__ = operation
        return await retry_with_backoff(attempt, policy=self.policy)

    @staticmethod
    def _require_user(user_id: Optional[str], operation: str) -> str:
        if not user_id:
            raise UnauthorizedError(operation, reason="no signed-in user")
        return user_id

    async def fetch_course_basic_info(self, course_id: str) -> Course:
        course = await self._call('fetch_course_basic_info', self.store.get_course, course_id)
        if course is None:
            raise NotFoundError('course', course_id)
        return course

    async def fetch_modules(self, course_id: str) -> list[CourseModule]:
        return await self._call('fetch_modules', self.store.get_modules, course_id)

    async def fetch_lessons_batch(self, module_ids: list[str]) -> dict[str, list[Lesson]]:
        return await self._call(
            'fetch_lessons_batch', self.store.get_lessons_for_modules, list(module_ids)
        )

    async def fetch_lesson_content(self, lesson_id: str) -> Lesson:
        lesson = await self._call('fetch_lesson_content', self.store.get_lesson, lesson_id)
        if lesson is None:
            raise NotFoundError('lesson', lesson_id)
        return lesson

    async def fetch_enrollment(self, course_id: str, user_id: str) -> Optional[Enrollment]:
        user_id = self._require_user(user_id, 'fetch_enrollment')
        return await self._call('fetch_enrollment', self.store.get_enrollment, course_id, user_id)

    async def fetch_completion_map(self, course_id: str, user_id: str) -> dict[str, bool]:
        user_id = self._require_user(user_id, 'fetch_completion_map')
        return await self._call(
            'fetch_completion_map', self.store.get_completion_map, course_id, user_id
        )

    async def fetch_completion(self, lesson_id: str, user_id: str) -> Optional[CompletionRecord]:
        user_id = self._require_user(user_id, 'fetch_completion')
        return await self._call('fetch_completion', self.store.get_completion, lesson_id, user_id)

    async def upsert_completion(self, record: CompletionRecord) -> CompletionRecord:
        self._require_user(record.user_id, 'upsert_completion')
        validate_completion(record)
        return await self._call('upsert_completion', self.store.upsert_completion, record)

    async def delete_completion(self, lesson_id: str, user_id: str) -> bool:
        user_id = self._require_user(user_id, 'delete_completion')
        return await self._call(
            'delete_completion', self.store.delete_completion, lesson_id, user_id
        )

    async def delete_orphaned_completions(self, course_id: str, user_id: str) -> int:
        user_id = self._require_user(user_id, 'delete_orphaned_completions')
        return await self._call(
            'delete_orphaned_completions', self.store.delete_orphaned_completions,
            course_id, user_id,
        )

