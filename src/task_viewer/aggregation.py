"""
Story Aggregation Engine

Groups a flat task list into story groups keyed by the task's `story` field,
computes per-group status statistics and completion percentages, and builds
the epic → story → task hierarchy consumed by the dashboard views.

All functions are pure: they read Task models and return new derived models.
"""

import logging
import math
from typing import Dict, Iterable, List, Sequence

from .models import (
    NO_STORY,
    Epic,
    EpicNode,
    GroupStats,
    HierarchyMetrics,
    Story,
    StoryGroup,
    StoryHierarchy,
    Task,
    TaskStatus,
)

logger = logging.getLogger(__name__)


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (0.5 -> 1, 2.5 -> 3)."""
    return int(math.floor(value + 0.5))


def percentage(part: int, total: int) -> int:
    """Integer percentage of `part` in `total`; 0 when `total` is 0."""
    if total <= 0:
        return 0
    return round_half_up(part / total * 100)


def story_key_of(task: Task) -> str:
    """Derived grouping key: the task's story, or NO_STORY when missing or empty."""
    story = task.story
    if isinstance(story, str) and story != "":
        return story
    return NO_STORY


def compute_stats(tasks: Iterable[Task]) -> GroupStats:
    """
    Count tasks by status.

    Anything that is neither completed nor in progress (including a missing
    or unrecognised status) counts as pending, so the three buckets always
    add up to the total.
    """
    completed = in_progress = pending = 0
    for task in tasks:
        if task.status == TaskStatus.COMPLETED.value:
            completed += 1
        elif task.status == TaskStatus.IN_PROGRESS.value:
            in_progress += 1
        else:
            pending += 1
    return GroupStats(
        total=completed + in_progress + pending,
        completed=completed,
        in_progress=in_progress,
        pending=pending,
    )


def make_group(key: str, tasks: List[Task]) -> StoryGroup:
    """Build a StoryGroup for `tasks`, computing its stats and percentage."""
    stats = compute_stats(tasks)
    return StoryGroup(
        key=key,
        tasks=list(tasks),
        stats=stats,
        completion_percentage=percentage(stats.completed, stats.total),
    )


def group_tasks(tasks: Sequence[Task]) -> List[StoryGroup]:
    """
    Group tasks by derived story key.

    Groups are ordered by plain string comparison of their keys (NO_STORY is
    not special-cased). Within a group, tasks keep their order from `tasks`.

    Args:
        tasks: Flat task list, typically already filtered

    Returns:
        Story groups with stats recomputed over exactly their member tasks
    """
    buckets: Dict[str, List[Task]] = {}
    for task in tasks:
        buckets.setdefault(story_key_of(task), []).append(task)

    return [make_group(key, buckets[key]) for key in sorted(buckets)]


def flatten_groups(groups: Iterable[StoryGroup]) -> List[Task]:
    """Concatenate group members back into a flat list, in group order."""
    flat: List[Task] = []
    for group in groups:
        flat.extend(group.tasks)
    return flat


def _story_lookup(stories: Sequence[Story]) -> Dict[str, Story]:
    """Map both story ids and titles to their Story so either can match a group key."""
    lookup: Dict[str, Story] = {}
    for story in stories:
        if story.title:
            lookup.setdefault(story.title, story)
    for story in stories:
        lookup[story.id] = story
    return lookup


def build_hierarchy(
    tasks: Sequence[Task],
    stories: Sequence[Story] = (),
    epics: Sequence[Epic] = (),
) -> StoryHierarchy:
    """
    Build the epic → story → task hierarchy.

    Story groups are attached to an epic when their key matches the id or
    title of a story whose `epic` names a known epic. Every other group,
    NO_STORY included, lands in `unassigned`. Epics keep their input order.

    Args:
        tasks: Flat task list
        stories: Externally loaded stories
        epics: Externally loaded epics

    Returns:
        StoryHierarchy with per-epic rollups and overall metrics
    """
    groups = group_tasks(tasks)
    lookup = _story_lookup(stories)
    epic_ids = {epic.id for epic in epics}

    by_epic: Dict[str, List[StoryGroup]] = {epic.id: [] for epic in epics}
    unassigned: List[StoryGroup] = []

    for group in groups:
        story = lookup.get(group.key)
        if story is not None and story.epic in epic_ids:
            by_epic[story.epic].append(group)
        else:
            unassigned.append(group)

    nodes: List[EpicNode] = []
    for epic in epics:
        epic_groups = by_epic[epic.id]
        stats = compute_stats(flatten_groups(epic_groups))
        nodes.append(EpicNode(
            epic=epic,
            stories=epic_groups,
            stats=stats,
            completion_percentage=percentage(stats.completed, stats.total),
        ))

    story_keys_with_tasks = {group.key for group in groups if group.key != NO_STORY}
    stories_with_tasks = sum(
        1 for story in stories
        if story.id in story_keys_with_tasks or (story.title and story.title in story_keys_with_tasks)
    )
    epics_with_stories = sum(
        1 for epic in epics if any(story.epic == epic.id for story in stories)
    )

    metrics = HierarchyMetrics(
        total_epics=len(epics),
        total_stories=len(stories),
        total_tasks=len(tasks),
        tasks_with_stories=sum(1 for task in tasks if story_key_of(task) != NO_STORY),
        stories_with_tasks=stories_with_tasks,
        epics_with_stories=epics_with_stories,
    )
    logger.debug(
        f"Hierarchy built: {metrics.total_epics} epics, {len(groups)} story groups, "
        f"{len(unassigned)} unassigned"
    )
    return StoryHierarchy(epics=nodes, unassigned=unassigned, metrics=metrics)
