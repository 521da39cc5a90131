"""Main CourseEngine service - coordinates every course read and write.

Handles:
1. Course loading (course, modules, planned lesson metadata, enrollment,
   completion map) with deduplication and stale-while-revalidate caching
2. On-demand lesson content
3. Lesson completion with optimistic updates
4. Quiz submission and grading
"""

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Mapping, Optional

import pydantic

from ..config import Config, load_config
from ..exceptions import (
    InvalidLessonTypeError,
    MissingConfigError,
    NotEnrolledError,
    ValidationError,
)
from ..logging_config import get_logger, trace_span
from ..models import Course, CourseModule, Enrollment, Lesson, LessonType
from ..quiz import Answer, QuizContent, QuizResult, score, validate_submission
from .cache import TieredCache, policies_from_config
from .completion import CompletionMutation, CompletionTracker, UserProvider
from .dedup import RequestDeduplicator
from .planner import AccessMode, plan_detailed_modules
from .repository import ContentRepository, SqliteContentRepository
from .store import ContentStore

logger = get_logger('service')


@dataclass
class CourseSnapshot:
    """Everything a course page needs, as of one load."""
    course: Course
    modules: list[CourseModule]
    enrollment: Optional[Enrollment]
    completion_map: dict[str, bool]
    detailed_module_ids: set[str] = field(default_factory=set)
    mode: AccessMode = AccessMode.LEARNING

    def to_dict(self) -> dict:
        return {
            'course': self.course.to_dict(),
            'modules': [module.to_dict() for module in self.modules],
            'enrollment': self.enrollment.to_dict() if self.enrollment else None,
            'completion_map': dict(self.completion_map),
            'detailed_module_ids': sorted(self.detailed_module_ids),
            'mode': self.mode.value,
        }


class CourseEngineService:
    """
    Loading coordinator for courses, lessons and completions.

    The repository is the only source of data; everything above it (request
    deduplication, caching, completion tracking) is owned by this instance.
    """

    def __init__(
        self,
        repository: ContentRepository,
        config: Optional[Config] = None,
        user_provider: Optional[UserProvider] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or load_config()
        self.repository = repository
        self.user_provider = user_provider or (lambda: None)

        self.dedup = RequestDeduplicator()
        self.cache = TieredCache(self.dedup, policies_from_config(self.config.cache), clock=clock)
        self.completions = CompletionTracker(
            repository,
            self.user_provider,
            dedup=self.dedup,
            cleanup_interval=self.config.completion.cleanup_interval,
            clock=clock,
        )

    @classmethod
    def from_config(
        cls,
        config: Optional[Config] = None,
        config_path: Optional[str] = None,
        user_provider: Optional[UserProvider] = None,
    ) -> "CourseEngineService":
        """Build a service backed by the SQLite store named in the config."""
        config = config or load_config(config_path)
        if not config.database.path:
            raise MissingConfigError('database.path')
        store = ContentStore(config.database.path)
        repository = SqliteContentRepository(store, config.repository)
        return cls(repository, config=config, user_provider=user_provider)

    def close(self) -> None:
        store = getattr(self.repository, 'store', None)
        if store is not None:
            store.close()

    # ==================== CACHED READS ====================

    async def _get_course(self, course_id: str) -> Course:
        return await self.cache.get(
            ('course', course_id),
            lambda: self.repository.fetch_course_basic_info(course_id),
        )

    async def _get_modules(self, course_id: str) -> list[CourseModule]:
        return await self.cache.get(
            ('modules', course_id),
            lambda: self.repository.fetch_modules(course_id),
        )

    async def _get_lessons(self, module_ids: list[str]) -> dict[str, list[Lesson]]:
        if not module_ids:
            return {}
        return await self.cache.get_many('lessons', module_ids, self.repository.fetch_lessons_batch)

    async def _get_enrollment(self, course_id: str, user_id: Optional[str]) -> Optional[Enrollment]:
        if not user_id:
            return None
        return await self.cache.get(
            ('enrollment', (course_id, user_id)),
            lambda: self.repository.fetch_enrollment(course_id, user_id),
        )

    async def load_enrollment(self, course_id: str) -> Optional[Enrollment]:
        """The signed-in learner's enrollment, or None."""
        return await self._get_enrollment(course_id, self.user_provider())

    def _cached_lesson(self, lesson_id: str) -> Optional[Lesson]:
        """The metadata object for a lesson, if its module is cached."""
        for _, lessons in self.cache.items('lessons'):
            for lesson in lessons:
                if lesson.id == lesson_id:
                    return lesson
        return None

    # ==================== COURSE LOADING ====================

    async def load_course(
        self,
        course_id: str,
        mode: AccessMode = AccessMode.LEARNING,
        focus_module_id: Optional[str] = None,
        focus_lesson_id: Optional[str] = None,
    ) -> CourseSnapshot:
        """Load a course with lesson metadata for the planned modules.

        Enrollment and completion status load concurrently with the course
        structure. Modules outside the plan carry only their lesson ids.

        Raises:
            NotFoundError: if the course does not exist
        """
        mode = AccessMode(mode)
        user_id = self.user_provider()

        with trace_span('load_course', logger, course_id=course_id, mode=mode.value):
            side = asyncio.gather(
                self._get_enrollment(course_id, user_id),
                self.completions.load(course_id),
                return_exceptions=True,
            )
            try:
                course = await self._get_course(course_id)
                modules = await self._get_modules(course_id)
                planned = plan_detailed_modules(modules, mode, focus_module_id, focus_lesson_id)
                lessons = await self._get_lessons([m.id for m in modules if m.id in planned])
            except BaseException:
                side.cancel()
                raise

            enrollment, completion = await side
            for outcome in (enrollment, completion):
                if isinstance(outcome, BaseException):
                    raise outcome

        detailed = []
        for module in modules:
            if module.id in lessons:
                detailed.append(replace(module, lessons=list(lessons[module.id]), lessons_loaded=True))
            else:
                detailed.append(replace(module, lessons=[], lessons_loaded=False))

        return CourseSnapshot(
            course=course,
            modules=detailed,
            enrollment=enrollment,
            completion_map=self.completions.get_completion_status(course_id),
            detailed_module_ids=set(lessons),
            mode=mode,
        )

    async def load_lesson_content(
        self,
        lesson_id: str,
        mode: AccessMode = AccessMode.LEARNING,
    ) -> Lesson:
        """Return the lesson with its full content payload.

        Editors get the shorter lesson_content_editing staleness policy.

        Raises:
            NotFoundError: if the lesson does not exist
        """
        mode = AccessMode(mode)
        policy = None
        if mode == AccessMode.EDITING:
            policy = self.cache.policy_for('lesson_content_editing')

        cached = self._cached_lesson(lesson_id)
        if cached is not None:
            cached.begin_loading()

        try:
            lesson = await self.cache.get(
                ('lesson_content', lesson_id),
                lambda: self.repository.fetch_lesson_content(lesson_id),
                policy=policy,
            )
        except Exception:
            if cached is not None:
                cached.abort_loading()
            raise

        if cached is not None and not cached.is_loaded:
            cached.mark_loaded(lesson.content)
        return lesson

    def invalidate_course(self, course_id: str) -> int:
        """Drop every cached entry belonging to a course.

        Returns:
            Number of cache entries removed
        """
        modules = self.cache.entry(('modules', course_id))
        module_ids = {m.id for m in modules.value} if modules is not None else set()

        def belongs(key, value) -> bool:
            resource_type, resource_id = key
            if resource_type in ('course', 'modules'):
                return resource_id == course_id
            if resource_type == 'enrollment':
                return resource_id[0] == course_id
            if resource_type == 'lessons':
                return resource_id in module_ids or any(lesson.course_id == course_id for lesson in value)
            if resource_type == 'lesson_content':
                return value.course_id == course_id
            return False

        removed = self.cache.invalidate_where(belongs)
        self.completions.evict(course_id)
        logger.info(f"Invalidated {removed} cache entries for course {course_id}")
        return removed

    async def refresh(
        self,
        course_id: str,
        mode: AccessMode = AccessMode.LEARNING,
        focus_module_id: Optional[str] = None,
        focus_lesson_id: Optional[str] = None,
    ) -> CourseSnapshot:
        """Invalidate everything cached for a course and load it again."""
        self.invalidate_course(course_id)
        return await self.load_course(course_id, mode, focus_module_id, focus_lesson_id)

    # ==================== COMPLETION ====================

    def _invalidate_enrollment(self, course_id: str) -> None:
        user_id = self.user_provider()
        if user_id:
            self.cache.invalidate(('enrollment', (course_id, user_id)))

    def is_lesson_completed(self, course_id: str, lesson_id: str) -> bool:
        return self.completions.is_lesson_completed(course_id, lesson_id)

    async def mark_lesson_complete(
        self,
        lesson_id: str,
        course_id: str,
        enrollment_id: str,
        score: Optional[int] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> Optional[CompletionMutation]:
        """Mark a lesson complete. Returns None when no user is signed in."""
        with trace_span('mark_lesson_complete', logger, lesson_id=lesson_id, course_id=course_id):
            mutation = await self.completions.mark_complete(
                lesson_id, course_id, enrollment_id, score=score, payload=payload
            )
        if mutation is not None:
            self._invalidate_enrollment(course_id)
        return mutation

    async def unmark_lesson_complete(self, lesson_id: str, course_id: str) -> Optional[CompletionMutation]:
        """Clear a lesson's completion. Returns None when no user is signed in."""
        with trace_span('unmark_lesson_complete', logger, lesson_id=lesson_id, course_id=course_id):
            mutation = await self.completions.unmark_complete(lesson_id, course_id)
        if mutation is not None:
            self._invalidate_enrollment(course_id)
        return mutation

    # ==================== QUIZZES ====================

    async def submit_quiz(self, lesson_id: str, answers: Mapping[str, Answer]) -> QuizResult:
        """Grade a quiz submission and record the lesson as complete.

        Without a signed-in user the submission is graded but not recorded.

        Raises:
            InvalidLessonTypeError: if the lesson is not a quiz
            IncompleteSubmissionError: if any question is unanswered
            NotEnrolledError: if the learner is not enrolled in the course
        """
        lesson = await self.load_lesson_content(lesson_id)
        if lesson.type != LessonType.QUIZ:
            raise InvalidLessonTypeError(lesson_id, lesson.type.value, LessonType.QUIZ.value)

        try:
            quiz = QuizContent.model_validate(lesson.content or {})
        except pydantic.ValidationError as e:
            raise ValidationError(
                f"Quiz content for lesson '{lesson_id}' is malformed: {e}", field='content'
            ) from e

        validate_submission(lesson_id, quiz.questions, answers)

        user_id = self.user_provider()
        enrollment = await self._get_enrollment(lesson.course_id, user_id)
        if user_id and enrollment is None:
            raise NotEnrolledError(lesson.course_id, user_id)

        result = score(quiz.questions, answers)
        logger.info(
            f"Quiz {lesson_id} graded: {result.score}% "
            f"({result.strict_correct_count}/{result.total_questions} correct)"
        )

        if enrollment is not None:
            await self.mark_lesson_complete(
                lesson_id,
                lesson.course_id,
                enrollment.id,
                score=result.score,
                payload={'answers': dict(answers), 'result': result.model_dump()},
            )
        return result

    # ==================== STATS ====================

    def cache_stats(self) -> dict[str, Any]:
        return {
            'cache': self.cache.stats(),
            'requests': self.dedup.stats(),
        }
