"""Request deduplication for concurrent loads of the same resource."""

import asyncio
from typing import Any, Awaitable, Callable, Hashable, TypeVar

from ..logging_config import get_logger

logger = get_logger('dedup')

T = TypeVar('T')


class RequestDeduplicator:
    """Keep at most one in-flight operation per key.

    Callers that ask for a key while its operation is still running are
    attached to that operation and observe the same result or the same
    exception. The key is released as soon as the operation settles, so a
    failed load can be retried by the next caller.

    Usage:
        dedup = RequestDeduplicator()
        course = await dedup.run(('course', course_id),
                                 lambda: repo.fetch_course_basic_info(course_id))
    """

    def __init__(self):
        self._in_flight: dict[Hashable, asyncio.Task] = {}
        self.started = 0
        self.joined = 0

    def acquire(self, key: Hashable, operation: Callable[[], Awaitable[T]]) -> "asyncio.Task[T]":
        """Return the task for ``key``, starting ``operation`` if none is running.

        ``operation`` is only invoked when no task for ``key`` is in flight.
        """
        task = self._in_flight.get(key)
        if task is not None:
            self.joined += 1
            logger.debug(f"Joining in-flight request: {key}")
            return task

        task = asyncio.ensure_future(operation())
        self._in_flight[key] = task
        self.started += 1
        task.add_done_callback(lambda done, key=key: self._release(key, done))
        return task

    async def run(self, key: Hashable, operation: Callable[[], Awaitable[T]]) -> T:
        """Await the shared result for ``key``.

        Cancelling one waiter does not cancel the shared operation.
        """
        task = self.acquire(key, operation)
        return await asyncio.shield(task)

    def _release(self, key: Hashable, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Request failed, key released: {key}: {task.exception()}")

    def is_in_flight(self, key: Hashable) -> bool:
        return key in self._in_flight

    def __len__(self) -> int:
        return len(self._in_flight)

    def stats(self) -> dict[str, Any]:
        return {
            'in_flight': len(self._in_flight),
            'started': self.started,
            'joined': self.joined,
        }
