"""
Filter/Search Engine for task lists.

Text, status and story filters compose by logical AND. The story filter
matches the derived story key, so filtering by NO_STORY catches tasks whose
`story` is missing or empty. Filtered lists are meant to be re-grouped by
the aggregation engine so counts always reflect the active filter.
"""

from typing import Any, List, Optional, Sequence, Tuple

from .aggregation import group_tasks, story_key_of
from .models import FilterState, StatusFilter, StoryGroup, Task

ALL = StatusFilter.ALL.value

# Field names accepted by sort_tasks
SORTABLE_FIELDS = ("name", "status", "priority", "created_at", "updated_at", "story", "agent")

_PRIORITY_RANK = {"high": 0, "medium": 1, "low": 2}
_STATUS_RANK = {"pending": 0, "in_progress": 1, "completed": 2}


def matches_text(task: Task, text: str) -> bool:
    """Case-insensitive substring match on name or description."""
    if not text:
        return True
    needle = text.lower()
    for field in (task.name, task.description):
        if isinstance(field, str) and needle in field.lower():
            return True
    return False


def matches_status(task: Task, status_filter: str) -> bool:
    if status_filter == ALL:
        return True
    return task.status == status_filter


def matches_story(task: Task, story_filter: str) -> bool:
    if story_filter == ALL:
        return True
    return story_key_of(task) == story_filter


def filter_tasks(tasks: Sequence[Task], state: Optional[FilterState] = None) -> List[Task]:
    """
    Apply the filter state to a flat task list.

    Args:
        tasks: Tasks in display order
        state: Active filters; None behaves like the neutral FilterState()

    Returns:
        New list of matching tasks, source order preserved
    """
    state = state or FilterState()
    return [
        task for task in tasks
        if matches_text(task, state.global_filter_text)
        and matches_status(task, state.status_filter)
        and matches_story(task, state.story_filter)
    ]


def filter_and_group(tasks: Sequence[Task], state: Optional[FilterState] = None) -> List[StoryGroup]:
    """Filter, then group, so group stats cover only the visible tasks."""
    return group_tasks(filter_tasks(tasks, state))


def unique_story_keys(tasks: Sequence[Task]) -> List[str]:
    """Sorted distinct story keys, for populating the story filter."""
    return sorted({story_key_of(task) for task in tasks})


def _sort_value(task: Task, field: str) -> Any:
    if field == "priority":
        return _PRIORITY_RANK.get(task.priority) if task.priority else None
    if field == "status":
        return _STATUS_RANK.get(task.status, len(_STATUS_RANK)) if task.status else None
    if field == "story":
        return task.story or None
    if field == "agent":
        return task.agent_name
    value = getattr(task, field)
    if isinstance(value, str):
        return value.lower() if field == "name" else value
    return value


def sort_tasks(tasks: Sequence[Task], field: str = "name", descending: bool = False) -> List[Task]:
    """
    Sort tasks for the flat table view.

    Tasks lacking a value for `field` always sort after those that have one,
    whichever direction is requested. Ties keep their source order.

    Raises:
        ValueError: If `field` is not one of SORTABLE_FIELDS
    """
    if field not in SORTABLE_FIELDS:
        raise ValueError(f"Sort field must be one of: {list(SORTABLE_FIELDS)}")

    present: List[Tuple[Any, Task]] = []
    missing: List[Task] = []
    for task in tasks:
        value = _sort_value(task, field)
        if value is None:
            missing.append(task)
        else:
            present.append((value, task))

    present.sort(key=lambda pair: pair[0], reverse=descending)
    return [task for _, task in present] + missing
