"""Per-course lesson completion map with optimistic updates.

The tracker is an owned object (one per service instance) rather than
process-global state. Each mark/unmark is a :class:`CompletionMutation` that
moves PENDING -> COMMITTED when the repository write succeeds, or
PENDING -> ROLLED_BACK when it fails, restoring the previous local value.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from ..logging_config import get_logger
from ..models import CompletionRecord
from .dedup import RequestDeduplicator
from .repository import ContentRepository

logger = get_logger('completion')

UserProvider = Callable[[], Optional[str]]


class MutationState(str, Enum):
    """Lifecycle of one optimistic completion change."""
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class CompletionMutation:
    """One optimistic change to a lesson's completion flag."""
    course_id: str
    lesson_id: str
    completed: bool
    previous: Optional[bool]
    previous_version: int
    version: int
    state: MutationState = MutationState.PENDING
    error: Optional[Exception] = None
    record: Optional[CompletionRecord] = None

    def commit(self, record: Optional[CompletionRecord] = None) -> None:
        if self.state != MutationState.PENDING:
            raise RuntimeError(f"Cannot commit a {self.state.value} mutation")
        self.record = record
        self.state = MutationState.COMMITTED

    def roll_back(self, error: Exception) -> None:
        if self.state != MutationState.PENDING:
            raise RuntimeError(f"Cannot roll back a {self.state.value} mutation")
        self.error = error
        self.state = MutationState.ROLLED_BACK


class CompletionTracker:
    """Lazily loaded ``course_id -> {lesson_id: bool}`` map for the current user.

    Loads merge into the existing map. The fetched map is the full set of
    completed lessons, so it decides every lesson except those with a write
    still in flight or one applied after the load started. A load that
    straddles an :meth:`evict` is discarded.
    Operations without a signed-in user return an empty map or do nothing.
    """

    def __init__(
        self,
        repository: ContentRepository,
        user_provider: UserProvider,
        dedup: Optional[RequestDeduplicator] = None,
        cleanup_interval: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.repository = repository
        self.user_provider = user_provider
        self.dedup = dedup or RequestDeduplicator()
        self.cleanup_interval = cleanup_interval
        self.clock = clock
        self._status: dict[str, dict[str, bool]] = {}
        self._versions: dict[str, dict[str, int]] = {}
        self._last_cleanup: dict[str, float] = {}
        self._pending: dict[str, dict[str, int]] = {}
        self._epochs: dict[str, int] = {}
        self._resets = 0
        self._sequence = 0
        self._owner: Optional[str] = None

    def _current_user(self) -> Optional[str]:
        user_id = self.user_provider()
        if user_id != self._owner:
            if self._owner is not None:
                logger.info("Signed-in user changed, clearing completion cache")
            self.clear()
            self._owner = user_id
        return user_id

    # ==================== READS ====================

    def get_completion_status(self, course_id: str) -> dict[str, bool]:
        """Copy of the local map for a course."""
        return dict(self._status.get(course_id, {}))

    def is_lesson_completed(self, course_id: str, lesson_id: str) -> bool:
        return self._status.get(course_id, {}).get(lesson_id, False)

    def _epoch(self, course_id: str) -> tuple[int, int]:
        return self._resets, self._epochs.get(course_id, 0)

    async def load(self, course_id: str, force_cleanup: bool = False) -> dict[str, bool]:
        """Fetch the course's completion map and merge it into the local one.

        Concurrent loads for the same course share one fetch.
        """
        user_id = self._current_user()
        if not user_id:
            return {}
        epoch = self._epoch(course_id)
        return await self.dedup.run(
            ('completion', course_id, user_id, epoch),
            lambda: self._load(course_id, user_id, force_cleanup, epoch),
        )

    async def _load(self, course_id: str, user_id: str, force_cleanup: bool,
                    epoch: tuple[int, int]) -> dict[str, bool]:
        started = self._sequence

        now = self.clock()
        last = self._last_cleanup.get(course_id)
        if force_cleanup or last is None or now - last >= self.cleanup_interval:
            await self.repository.delete_orphaned_completions(course_id, user_id)
            self._last_cleanup[course_id] = now
        else:
            logger.debug(f"Skipping cleanup for {course_id}, last ran {now - last:.0f}s ago")

        fetched = await self.repository.fetch_completion_map(course_id, user_id)
        if self._epoch(course_id) != epoch:
            logger.debug(f"Discarding completion load for evicted course {course_id}")
            return self.get_completion_status(course_id)
        self._merge(course_id, fetched, started)
        logger.debug(f"Loaded {len(fetched)} completed lessons for course {course_id}")
        return self.get_completion_status(course_id)

    def _merge(self, course_id: str, fetched: dict[str, bool], started: int) -> None:
        status = self._status.setdefault(course_id, {})
        versions = self._versions.setdefault(course_id, {})
        pending = self._pending.get(course_id, {})
        for lesson_id in set(fetched) | set(status):
            if lesson_id in pending or versions.get(lesson_id, 0) > started:
                logger.debug(f"Keeping local value for lesson {lesson_id}")
                continue
            # Absent from the fetched map means not completed
            status[lesson_id] = bool(fetched.get(lesson_id, False))

    # ==================== MUTATIONS ====================

    def _apply(self, course_id: str, lesson_id: str, completed: bool) -> CompletionMutation:
        status = self._status.setdefault(course_id, {})
        versions = self._versions.setdefault(course_id, {})
        self._sequence += 1
        mutation = CompletionMutation(
            course_id=course_id,
            lesson_id=lesson_id,
            completed=completed,
            previous=status.get(lesson_id),
            previous_version=versions.get(lesson_id, 0),
            version=self._sequence,
        )
        status[lesson_id] = completed
        versions[lesson_id] = mutation.version
        pending = self._pending.setdefault(course_id, {})
        pending[lesson_id] = pending.get(lesson_id, 0) + 1
        return mutation

    def _settle(self, mutation: CompletionMutation, committed: bool) -> None:
        if committed:
            versions = self._versions.get(mutation.course_id, {})
            # A fetch issued before the write landed may not reflect it
            if versions.get(mutation.lesson_id) == mutation.version:
                self._sequence += 1
                versions[mutation.lesson_id] = self._sequence
                mutation.version = self._sequence
        pending = self._pending.get(mutation.course_id, {})
        remaining = pending.get(mutation.lesson_id, 0) - 1
        if remaining > 0:
            pending[mutation.lesson_id] = remaining
        else:
            pending.pop(mutation.lesson_id, None)
            if not pending:
                self._pending.pop(mutation.course_id, None)

    def _roll_back(self, mutation: CompletionMutation, error: Exception) -> None:
        self._settle(mutation, committed=False)
        status = self._status.setdefault(mutation.course_id, {})
        versions = self._versions.setdefault(mutation.course_id, {})
        # A later mutation of the same lesson owns the local value now
        if versions.get(mutation.lesson_id) == mutation.version:
            if mutation.previous is None:
                status.pop(mutation.lesson_id, None)
            else:
                status[mutation.lesson_id] = mutation.previous
            versions[mutation.lesson_id] = mutation.previous_version
        mutation.roll_back(error)
        logger.warning(
            f"Rolled back completion of lesson {mutation.lesson_id} "
            f"(course {mutation.course_id}): {error}"
        )

    async def mark_complete(
        self,
        lesson_id: str,
        course_id: str,
        enrollment_id: str,
        score: Optional[int] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> Optional[CompletionMutation]:
        """Mark a lesson complete locally, then persist it.

        Returns:
            The committed mutation, or None when no user is signed in

        Raises:
            Whatever the repository raised, after rolling back
        """
        user_id = self._current_user()
        if not user_id:
            logger.debug(f"No signed-in user, ignoring completion of {lesson_id}")
            return None

        mutation = self._apply(course_id, lesson_id, True)
        record = CompletionRecord(
            user_id=user_id,
            lesson_id=lesson_id,
            course_id=course_id,
            enrollment_id=enrollment_id,
            completed_at=datetime.now(timezone.utc),
            score=score,
            data=payload,
        )
        try:
            stored = await self.repository.upsert_completion(record)
        except Exception as e:
            self._roll_back(mutation, e)
            raise
        self._settle(mutation, committed=True)
        mutation.commit(stored)
        logger.info(f"Lesson {lesson_id} marked complete (course {course_id})")
        return mutation

    async def unmark_complete(self, lesson_id: str, course_id: str) -> Optional[CompletionMutation]:
        """Clear a lesson's completion locally, then delete the record.

        Returns:
            The committed mutation, or None when no user is signed in
        """
        user_id = self._current_user()
        if not user_id:
            logger.debug(f"No signed-in user, ignoring unmark of {lesson_id}")
            return None

        mutation = self._apply(course_id, lesson_id, False)
        try:
            await self.repository.delete_completion(lesson_id, user_id)
        except Exception as e:
            self._roll_back(mutation, e)
            raise
        self._settle(mutation, committed=True)
        mutation.commit()
        logger.info(f"Lesson {lesson_id} unmarked (course {course_id})")
        return mutation

    # ==================== EVICTION ====================

    def evict(self, course_id: str) -> None:
        """Forget everything cached for one course.

        Loads already in flight for the course are discarded when they finish.
        """
        self._epochs[course_id] = self._epochs.get(course_id, 0) + 1
        self._status.pop(course_id, None)
        self._versions.pop(course_id, None)
        self._last_cleanup.pop(course_id, None)

    def clear(self) -> None:
        """Forget every course."""
        self._resets += 1
        self._status.clear()
        self._versions.clear()
        self._last_cleanup.clear()
