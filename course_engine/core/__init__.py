# Core module - repository, caching, planning, completion and the service
from .repository import ContentRepository, SqliteContentRepository
from .dedup import RequestDeduplicator
from .cache import CacheEntry, CachePolicy, TieredCache, policies_from_config
from .planner import AccessMode, plan_detailed_modules
from .completion import CompletionMutation, CompletionTracker, MutationState
from .service import CourseEngineService, CourseSnapshot
from .store import ContentStore

__all__ = [
    'ContentRepository',
    'SqliteContentRepository',
    'RequestDeduplicator',
    'CacheEntry',
    'CachePolicy',
    'TieredCache',
    'policies_from_config',
    'AccessMode',
    'plan_detailed_modules',
    'CompletionMutation',
    'CompletionTracker',
    'MutationState',
    'CourseEngineService',
    'CourseSnapshot',
    'ContentStore',
]
