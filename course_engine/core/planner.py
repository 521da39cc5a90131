"""Decide which modules get their lesson metadata loaded eagerly.

Editors see the whole course, so every module is loaded in detail. Learners
move through modules in order, so only the focused module and its immediate
neighbours are loaded; the rest stay as summaries until navigation reaches
them.
"""

from enum import Enum
from typing import Optional, Sequence

from ..models import CourseModule


class AccessMode(str, Enum):
    """How the course is being consumed."""
    EDITING = "editing"
    LEARNING = "learning"
    PREVIEW = "preview"


def resolve_focus_index(
    modules: Sequence[CourseModule],
    focus_module_id: Optional[str] = None,
    focus_lesson_id: Optional[str] = None,
) -> int:
    """Index of the focused module, falling back to the first module."""
    if focus_module_id is not None:
        for index, module in enumerate(modules):
            if module.id == focus_module_id:
                return index
    if focus_lesson_id is not None:
        for index, module in enumerate(modules):
            if focus_lesson_id in module.lesson_ids:
                return index
    return 0


def plan_detailed_modules(
    modules: Sequence[CourseModule],
    mode: AccessMode,
    focus_module_id: Optional[str] = None,
    focus_lesson_id: Optional[str] = None,
) -> set[str]:
    """Return the ids of modules whose lessons should be loaded now.

    ``modules`` must be in course order. The result depends only on the
    arguments.

    Example:
        modules [A, B, C, D] in LEARNING mode focused on B -> {A, B, C}
    """
    if not modules:
        return set()

    if AccessMode(mode) == AccessMode.EDITING:
        return {module.id for module in modules}

    index = resolve_focus_index(modules, focus_module_id, focus_lesson_id)
    start = max(0, index - 1)
    end = min(len(modules) - 1, index + 1)
    return {module.id for module in modules[start:end + 1]}
