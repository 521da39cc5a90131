"""Stale-while-revalidate cache keyed by (resource_type, id).

Each resource type has a :class:`CachePolicy` with two durations:

- before ``stale_after`` an entry is fresh and served without any I/O;
- between ``stale_after`` and ``hard_expire_after`` it is served immediately
  while one background revalidation refreshes it;
- at or after ``hard_expire_after`` (or when missing) the caller waits for a
  fresh load.

All loads go through a :class:`RequestDeduplicator`, so concurrent misses for
one key share a single fetch.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Hashable, Iterable, Optional, TypeVar

from ..config import CacheConfig
from ..exceptions import ConfigurationError
from ..logging_config import get_logger
from .dedup import RequestDeduplicator

logger = get_logger('cache')

T = TypeVar('T')

CacheKey = tuple[str, Hashable]


@dataclass(frozen=True)
class CachePolicy:
    """Staleness tiers, in seconds after the fetch."""
    stale_after: float
    hard_expire_after: float

    def __post_init__(self):
        if self.stale_after < 0 or self.stale_after > self.hard_expire_after:
            raise ConfigurationError(
                f"Invalid cache policy: stale_after={self.stale_after}, "
                f"hard_expire_after={self.hard_expire_after}"
            )


@dataclass
class CacheEntry(Generic[T]):
    """A cached value with absolute staleness deadlines."""
    value: T
    fetched_at: float
    stale_after: float
    hard_expire_after: float
    revalidating: bool = False

    def is_fresh(self, now: float) -> bool:
        return now < self.stale_after

    def is_expired(self, now: float) -> bool:
        return now >= self.hard_expire_after


@dataclass
class CacheStats:
    """Counters describing cache effectiveness."""
    hits: int = 0
    stale_hits: int = 0
    misses: int = 0
    revalidations: int = 0
    revalidation_failures: int = 0
    invalidations: int = 0
    entries_by_type: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            'hits': self.hits,
            'stale_hits': self.stale_hits,
            'misses': self.misses,
            'revalidations': self.revalidations,
            'revalidation_failures': self.revalidation_failures,
            'invalidations': self.invalidations,
            'entries_by_type': dict(self.entries_by_type),
        }


def policies_from_config(config: CacheConfig) -> dict[str, CachePolicy]:
    """Build one policy per resource type from the cache config section."""
    return {
        resource: CachePolicy(stale, hard)
        for resource, (stale, hard) in config.policy_pairs().items()
    }


class TieredCache:
    """Stale-while-revalidate cache built on a RequestDeduplicator.

    Usage:
        cache = TieredCache(RequestDeduplicator(), policies_from_config(CacheConfig()))
        course = await cache.get(('course', course_id),
                                 lambda: repo.fetch_course_basic_info(course_id))
    """

    def __init__(
        self,
        dedup: RequestDeduplicator,
        policies: dict[str, CachePolicy],
        clock: Callable[[], float] = time.monotonic,
        default_policy: Optional[CachePolicy] = None,
    ):
        self.dedup = dedup
        self.policies = dict(policies)
        self.clock = clock
        self.default_policy = default_policy or CachePolicy(60.0, 300.0)
        self._entries: dict[CacheKey, CacheEntry] = {}
        # Bumped on invalidation so loads started earlier cannot repopulate
        self._generations: dict[CacheKey, int] = {}
        self._background: set[asyncio.Task] = set()
        self._stats = CacheStats()

    def policy_for(self, resource_type: str) -> CachePolicy:
        return self.policies.get(resource_type, self.default_policy)

    # ==================== READS ====================

    async def get(self, key: CacheKey, loader: Callable[[], Awaitable[T]],
                  policy: Optional[CachePolicy] = None) -> T:
        """Return the value for ``key`` according to its staleness tier."""
        now = self.clock()
        entry = self._entries.get(key)

        if entry is not None and entry.is_fresh(now):
            self._stats.hits += 1
            return entry.value

        if entry is not None and not entry.is_expired(now):
            self._stats.stale_hits += 1
            if not entry.revalidating:
                entry.revalidating = True
                self._spawn(self._revalidate(key, loader, policy, entry))
            return entry.value

        self._stats.misses += 1
        return await self._load(key, loader, policy)

    async def get_many(
        self,
        resource_type: str,
        ids: Iterable[Hashable],
        batch_loader: Callable[[list], Awaitable[dict]],
        policy: Optional[CachePolicy] = None,
    ) -> dict:
        """Return ``{id: value}`` for several ids of one resource type.

        Fresh and stale entries are served from the cache; every missing or
        expired id is fetched in a single ``batch_loader(ids)`` call. Stale
        ids share one background batch revalidation. Ids the loader does not
        return are absent from the result.
        """
        ids = list(dict.fromkeys(ids))
        now = self.clock()
        result = {}
        missing, stale = [], []

        for item_id in ids:
            entry = self._entries.get((resource_type, item_id))
            if entry is not None and entry.is_fresh(now):
                self._stats.hits += 1
                result[item_id] = entry.value
            elif entry is not None and not entry.is_expired(now):
                self._stats.stale_hits += 1
                result[item_id] = entry.value
                if not entry.revalidating:
                    entry.revalidating = True
                    stale.append(item_id)
            else:
                self._stats.misses += 1
                missing.append(item_id)

        if stale:
            self._spawn(self._revalidate_batch(resource_type, stale, batch_loader, policy))

        if missing:
            loaded = await self._load_batch(resource_type, missing, batch_loader, policy)
            result.update(loaded)

        return {item_id: result[item_id] for item_id in ids if item_id in result}

    def peek(self, key: CacheKey) -> Optional[Any]:
        """Return the cached value if present and not expired, without loading."""
        entry = self._entries.get(key)
        if entry is None or entry.is_expired(self.clock()):
            return None
        return entry.value

    def entry(self, key: CacheKey) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def items(self, resource_type: str) -> list[tuple[Hashable, Any]]:
        """(id, value) pairs of one resource type that are not yet expired."""
        now = self.clock()
        return [
            (key[1], entry.value)
            for key, entry in self._entries.items()
            if key[0] == resource_type and not entry.is_expired(now)
        ]

    # ==================== LOADING ====================

    def _store(self, key: CacheKey, value: Any, policy: Optional[CachePolicy],
               generation: int) -> None:
        if self._generations.get(key, 0) != generation:
            logger.debug(f"Discarding load for invalidated key: {key}")
            return
        policy = policy or self.policy_for(key[0])
        now = self.clock()
        self._entries[key] = CacheEntry(
            value=value,
            fetched_at=now,
            stale_after=now + policy.stale_after,
            hard_expire_after=now + policy.hard_expire_after,
        )

    async def _load(self, key: CacheKey, loader: Callable[[], Awaitable[T]],
                    policy: Optional[CachePolicy]) -> T:
        generation = self._generations.get(key, 0)

        async def fetch() -> T:
            value = await loader()
            self._store(key, value, policy, generation)
            return value

        return await self.dedup.run((key, generation), fetch)

    async def _load_batch(self, resource_type: str, ids: list,
                          batch_loader: Callable[[list], Awaitable[dict]],
                          policy: Optional[CachePolicy]) -> dict:
        generations = tuple(self._generations.get((resource_type, i), 0) for i in ids)

        async def fetch() -> dict:
            values = await batch_loader(list(ids))
            for item_id, generation in zip(ids, generations):
                if item_id in values:
                    self._store((resource_type, item_id), values[item_id], policy, generation)
            return values

        dedup_key = ('batch', resource_type, tuple(ids), generations)
        values = await self.dedup.run(dedup_key, fetch)
        return {i: values[i] for i in ids if i in values}

    async def _revalidate(self, key: CacheKey, loader: Callable[[], Awaitable[Any]],
                          policy: Optional[CachePolicy], entry: CacheEntry) -> None:
        self._stats.revalidations += 1
        try:
            await self._load(key, loader, policy)
            logger.debug(f"Revalidated {key}")
        except Exception as e:
            self._stats.revalidation_failures += 1
            logger.warning(f"Background revalidation failed for {key}: {e}")
        finally:
            entry.revalidating = False

    async def _revalidate_batch(self, resource_type: str, ids: list,
                                batch_loader: Callable[[list], Awaitable[dict]],
                                policy: Optional[CachePolicy]) -> None:
        self._stats.revalidations += 1
        try:
            await self._load_batch(resource_type, ids, batch_loader, policy)
            logger.debug(f"Revalidated {len(ids)} {resource_type} entries")
        except Exception as e:
            self._stats.revalidation_failures += 1
            logger.warning(f"Background revalidation failed for {resource_type} {ids}: {e}")
        finally:
            for item_id in ids:
                entry = self._entries.get((resource_type, item_id))
                if entry is not None:
                    entry.revalidating = False

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_for_background(self) -> None:
        """Wait until every background revalidation has settled."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ==================== INVALIDATION ====================

    def invalidate(self, key: CacheKey) -> bool:
        """Drop ``key`` so the next get blocks on a fresh load.

        Returns:
            True if an entry was removed
        """
        self._generations[key] = self._generations.get(key, 0) + 1
        removed = self._entries.pop(key, None) is not None
        if removed:
            self._stats.invalidations += 1
            logger.debug(f"Invalidated {key}")
        return removed

    def invalidate_where(self, predicate: Callable[[CacheKey, Any], bool]) -> int:
        """Invalidate every entry for which ``predicate(key, value)`` holds."""
        keys = [key for key, entry in self._entries.items() if predicate(key, entry.value)]
        for key in keys:
            self.invalidate(key)
        return len(keys)

    def purge_expired(self) -> int:
        """Drop entries past their hard expiry. Returns how many were dropped."""
        now = self.clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info(f"Purged {len(expired)} expired cache entries")
        return len(expired)

    def clear(self) -> None:
        """Drop every entry."""
        for key in list(self._entries):
            self.invalidate(key)

    def stats(self) -> dict[str, Any]:
        counts: dict[str, int] = {}
        for resource_type, _ in self._entries:
            counts[resource_type] = counts.get(resource_type, 0) + 1
        self._stats.entries_by_type = counts
        return self._stats.to_dict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries
