import asyncio
from collections import Counter
from dataclasses import replace
from pathlib import Path
from typing import Optional

import pytest

from course_engine.config import Config, RepositoryConfig
from course_engine.core.repository import ContentRepository, SqliteContentRepository
from course_engine.core.service import CourseEngineService
from course_engine.core.store import ContentStore
from course_engine.exceptions import NotFoundError
from course_engine.models import (
    CompletionRecord,
    ContentState,
    Course,
    CourseModule,
    CourseStatus,
    Enrollment,
    Lesson,
    LessonType,
)

QUIZ_CONTENT = {
    "questions": [
        {
            "id": "q1",
            "kind": "single",
            "text": "Pick a",
            "options": [{"id": "a", "text": "A"}, {"id": "b", "text": "B"}],
            "correct_option": "a",
        },
        {
            "id": "q2",
            "kind": "multiple",
            "text": "Pick x and y",
            "options": [{"id": "x"}, {"id": "y"}, {"id": "z"}],
            "correct_options": ["x", "y"],
        },
    ],
    "passing_score": 70,
}


def course_document() -> dict:
    """Nested course document with four modules of two lessons each.

    Lesson ``m2-l2`` is a quiz; user ``u1`` is enrolled.
    """
    modules = []
    for m in range(1, 5):
        lessons = []
        for n in range(1, 3):
            lesson_id = f"m{m}-l{n}"
            lesson = {"id": lesson_id, "title": f"Lesson {m}.{n}", "type": "text",
                      "content": {"body": f"Body of {lesson_id}"}}
            if lesson_id == "m2-l2":
                lesson.update(type="quiz", content=QUIZ_CONTENT)
            lessons.append(lesson)
        modules.append({"id": f"m{m}", "title": f"Module {m}", "lessons": lessons})
    return {
        "id": "c1",
        "title": "Intro Course",
        "short_description": "Four short modules",
        "status": "published",
        "modules": modules,
        "enrollments": [{"id": "e1", "user_id": "u1"}],
    }


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRepository(ContentRepository):
    """In-memory repository that counts calls per operation.

    ``gates`` holds an asyncio.Event per operation that calls wait on;
    ``failures`` holds an exception per operation that calls raise.
    """

    def __init__(self):
        self.courses: dict[str, Course] = {}
        self.modules: dict[str, list[CourseModule]] = {}
        self.lessons: dict[str, Lesson] = {}
        self.contents: dict[str, dict] = {}
        self.enrollments: dict[tuple[str, str], Enrollment] = {}
        self.completions: dict[tuple[str, str], CompletionRecord] = {}
        self.calls: Counter = Counter()
        self.gates: dict[str, asyncio.Event] = {}
        self.failures: dict[str, Exception] = {}

    @classmethod
    def from_document(cls, document: dict) -> "FakeRepository":
        repo = cls()
        course_id = document["id"]
        repo.courses[course_id] = Course(
            id=course_id, title=document["title"],
            short_description=document.get("short_description", ""),
            status=CourseStatus(document.get("status", "draft")),
        )
        modules = []
        for m_index, module in enumerate(document["modules"]):
            lesson_ids = []
            for l_index, lesson in enumerate(module["lessons"]):
                repo.lessons[lesson["id"]] = Lesson(
                    id=lesson["id"], module_id=module["id"], course_id=course_id,
                    title=lesson["title"], type=LessonType(lesson["type"]),
                    order_index=l_index,
                )
                repo.contents[lesson["id"]] = lesson.get("content", {})
                lesson_ids.append(lesson["id"])
            modules.append(CourseModule(
                id=module["id"], course_id=course_id, title=module["title"],
                order_index=m_index, lesson_ids=tuple(lesson_ids),
            ))
        repo.modules[course_id] = modules
        for enrollment in document.get("enrollments", []):
            repo.enrollments[(course_id, enrollment["user_id"])] = Enrollment(
                id=enrollment["id"], user_id=enrollment["user_id"], course_id=course_id,
            )
        return repo

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        gate = self.gates.get(operation)
        if gate is not None:
            await gate.wait()
        else:
            await asyncio.sleep(0)
        error = self.failures.get(operation)
        if error is not None:
            raise error

    async def fetch_course_basic_info(self, course_id):
        await self._enter("fetch_course_basic_info")
        if course_id not in self.courses:
            raise NotFoundError("course", course_id)
        return replace(self.courses[course_id])

    async def fetch_modules(self, course_id):
        await self._enter("fetch_modules")
        return [replace(m) for m in self.modules.get(course_id, [])]

    async def fetch_lessons_batch(self, module_ids):
        await self._enter("fetch_lessons_batch")
        result = {mid: [] for mid in module_ids}
        for lesson in self.lessons.values():
            if lesson.module_id in result:
                result[lesson.module_id].append(replace(lesson))
        for lessons in result.values():
            lessons.sort(key=lambda lesson: lesson.order_index)
        return result

    async def fetch_lesson_content(self, lesson_id):
        await self._enter("fetch_lesson_content")
        if lesson_id not in self.lessons:
            raise NotFoundError("lesson", lesson_id)
        return replace(self.lessons[lesson_id], content_state=ContentState.LOADED,
                       content=dict(self.contents[lesson_id]))

    async def fetch_enrollment(self, course_id, user_id):
        await self._enter("fetch_enrollment")
        enrollment = self.enrollments.get((course_id, user_id))
        return replace(enrollment) if enrollment else None

    async def fetch_completion_map(self, course_id, user_id):
        await self._enter("fetch_completion_map")
        return {
            record.lesson_id: True
            for (uid, _), record in self.completions.items()
            if uid == user_id and record.course_id == course_id
        }

    async def fetch_completion(self, lesson_id, user_id):
        await self._enter("fetch_completion")
        return self.completions.get((user_id, lesson_id))

    async def upsert_completion(self, record):
        await self._enter("upsert_completion")
        self.completions[(record.user_id, record.lesson_id)] = record
        return record

    async def delete_completion(self, lesson_id, user_id):
        await self._enter("delete_completion")
        return self.completions.pop((user_id, lesson_id), None) is not None

    async def delete_orphaned_completions(self, course_id, user_id):
        await self._enter("delete_orphaned_completions")
        orphans = [
            key for key, record in self.completions.items()
            if key[0] == user_id and record.course_id == course_id
            and record.lesson_id not in self.lessons
        ]
        for key in orphans:
            del self.completions[key]
        return len(orphans)


class UserBox:
    """Mutable signed-in user for tests that switch users."""

    def __init__(self, user_id: Optional[str] = "u1"):
        self.user_id = user_id

    def __call__(self) -> Optional[str]:
        return self.user_id


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_repo() -> FakeRepository:
    return FakeRepository.from_document(course_document())


@pytest.fixture
def service(fake_repo: FakeRepository, clock: FakeClock) -> CourseEngineService:
    return CourseEngineService(fake_repo, config=Config(), user_provider=lambda: "u1", clock=clock)


@pytest.fixture
def store(tmp_path: Path):
    content_store = ContentStore(str(tmp_path / "engine.db"))
    content_store.import_course(course_document())
    yield content_store
    content_store.close()


@pytest.fixture
def sqlite_repo(store: ContentStore) -> SqliteContentRepository:
    return SqliteContentRepository(store, RepositoryConfig(initial_delay=0.0, jitter=False))
