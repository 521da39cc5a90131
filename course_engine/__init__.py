# Course Content Engine - course loading, caching and completion tracking
"""
Course Content Engine loads courses for learners and editors: it deduplicates
concurrent reads, caches them with stale-while-revalidate tiers, loads lesson
detail only where the learner is, tracks lesson completion optimistically and
grades quizzes.
"""

__version__ = "0.1.0"
