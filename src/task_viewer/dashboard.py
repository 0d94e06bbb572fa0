"""
Dashboard Statistics Projector

Computes the overview rollups (epics, active stories, pending tasks,
completion rate, recent verification activity, average verification score)
straight from the source collections. Independent of the story groups built
by the aggregation engine; nothing here mutates its inputs.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .aggregation import compute_stats, percentage, round_half_up
from .models import DashboardStats, Epic, Story, Task, TaskStatus, VerificationRecord

logger = logging.getLogger(__name__)

RECENT_ACTIVITY_LIMIT = 5

# Sort key used for timestamps that are missing or unparseable
_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO 8601 timestamp into an aware datetime.

    Naive timestamps are taken as UTC and a trailing "Z" is accepted.
    Returns None for anything unparseable instead of raising.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _recency_key(record: VerificationRecord) -> Tuple[int, datetime]:
    parsed = parse_timestamp(record.timestamp)
    if parsed is None:
        return (0, _OLDEST)
    return (1, parsed)


def recent_activity(
    verifications: Mapping[str, VerificationRecord], limit: int = RECENT_ACTIVITY_LIMIT
) -> List[VerificationRecord]:
    """Newest verification records first; invalid timestamps sort as oldest."""
    records = sorted(verifications.values(), key=_recency_key, reverse=True)
    return records[:limit]


def average_score(verifications: Mapping[str, VerificationRecord]) -> Optional[int]:
    """Rounded mean score, or None when no record carries a score."""
    scores = [r.score for r in verifications.values() if r.score is not None]
    if not scores:
        return None
    return round_half_up(sum(scores) / len(scores))


def project(
    epics: Sequence[Epic],
    stories: Sequence[Story],
    tasks: Sequence[Task],
    verifications: Optional[Mapping[str, VerificationRecord]] = None,
) -> DashboardStats:
    """
    Project the dashboard overview from the source collections.

    A story without a status counts as active: only an explicit
    "completed" status removes it from `active_stories`.

    Args:
        epics: Externally loaded epics
        stories: Externally loaded stories
        tasks: Flat, unfiltered task list
        verifications: Mapping of story id to verification record

    Returns:
        DashboardStats snapshot
    """
    verifications = verifications or {}
    stats = compute_stats(tasks)

    return DashboardStats(
        total_epics=len(epics),
        active_stories=sum(1 for story in stories if story.status != TaskStatus.COMPLETED.value),
        total_tasks=len(tasks),
        pending_tasks=sum(1 for task in tasks if task.status == TaskStatus.PENDING.value),
        in_progress_tasks=stats.in_progress,
        completed_tasks=stats.completed,
        completion_rate=percentage(stats.completed, len(tasks)),
        recent_activity=recent_activity(verifications),
        average_score=average_score(verifications),
    )


def compute_project_stats(
    tasks: Sequence[Task],
    stories: Sequence[Story] = (),
    epics: Sequence[Epic] = (),
) -> Dict[str, Any]:
    """
    Extended statistics for the project stats panel.

    Returns a JSON-ready dict with taskStats, storyStats, epicStats and
    agentStats sections.
    """
    stats = compute_stats(tasks)
    task_stats = {
        "total": stats.total,
        "completed": stats.completed,
        "inProgress": stats.in_progress,
        "pending": sum(1 for t in tasks if t.status == TaskStatus.PENDING.value),
        "completionRate": percentage(stats.completed, stats.total),
    }

    agents: Dict[str, Dict[str, int]] = {}
    assigned = 0
    for task in tasks:
        name = task.agent_name
        if name is None:
            continue
        assigned += 1
        entry = agents.setdefault(name, {"total": 0, "completed": 0, "inProgress": 0, "pending": 0})
        entry["total"] += 1
        if task.status == TaskStatus.COMPLETED.value:
            entry["completed"] += 1
        elif task.status == TaskStatus.IN_PROGRESS.value:
            entry["inProgress"] += 1
        else:
            entry["pending"] += 1

    story_keys = {t.story for t in tasks if t.story}
    stories_with_tasks = [
        s for s in stories if s.id in story_keys or (s.title and s.title in story_keys)
    ]
    linked_tasks = sum(1 for t in tasks if t.story)
    story_stats = {
        "total": len(stories),
        "withTasks": len(stories_with_tasks),
        "withoutTasks": len(stories) - len(stories_with_tasks),
        "avgTasksPerStory": round(linked_tasks / len(stories), 1) if stories else 0,
    }

    epics_with_stories = [e for e in epics if any(s.epic == e.id for s in stories)]
    epic_stats = {
        "total": len(epics),
        "withStories": len(epics_with_stories),
        "withoutStories": len(epics) - len(epics_with_stories),
        "avgStoriesPerEpic": round(len(stories) / len(epics), 1) if epics else 0,
    }

    return {
        "taskStats": task_stats,
        "storyStats": story_stats,
        "epicStats": epic_stats,
        "agentStats": {
            "assigned": assigned,
            "unassigned": len(tasks) - assigned,
            "agents": agents,
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
