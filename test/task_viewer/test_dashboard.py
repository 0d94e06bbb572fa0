"""
Tests for the dashboard projector and extended project statistics.
"""

from task_viewer.dashboard import (
    average_score,
    compute_project_stats,
    parse_timestamp,
    project,
    recent_activity,
)
from task_viewer.models import Epic, Story, VerificationRecord

from conftest import make_task


def verification(story_id, score=None, timestamp=None):
    return VerificationRecord(story_id=story_id, score=score, timestamp=timestamp)


class TestProject:

    def test_task_rollups(self):
        tasks = [
            make_task("1", "completed"),
            make_task("2", "completed"),
            make_task("3", "in_progress"),
            make_task("4", "pending"),
            make_task("5", "blocked"),
        ]

        stats = project([], [], tasks)

        assert stats.total_tasks == 5
        assert stats.completed_tasks == 2
        assert stats.in_progress_tasks == 1
        assert stats.pending_tasks == 1
        assert stats.completion_rate == 40

    def test_mixed_statuses(self):
        tasks = [make_task("1", "pending"), make_task("2", "completed"), make_task("3", "in_progress"), make_task("4", "completed")]

        stats = project([], [], tasks)

        assert stats.pending_tasks == 1
        assert stats.completion_rate == 50

    def test_empty_project(self):
        stats = project([], [], [])

        assert stats.total_tasks == 0
        assert stats.completion_rate == 0
        assert stats.recent_activity == []
        assert stats.average_score is None

    def test_story_without_status_counts_as_active(self):
        stories = [Story(id="1.1", status="completed"), Story(id="1.2", status="in_progress"), Story(id="1.3")]
        assert project([Epic(id="1")], stories, []).active_stories == 2

    def test_counts_epics(self):
        assert project([Epic(id="1"), Epic(id="2")], [], []).total_epics == 2

    def test_average_score_rounds_half_up(self):
        verifications = {"a": verification("a", 80), "b": verification("b", 85)}
        assert project([], [], [], verifications).average_score == 83

    def test_records_without_score_ignored_in_average(self):
        verifications = {"a": verification("a", 90), "b": verification("b")}
        assert average_score(verifications) == 90

    def test_only_unscored_records_give_no_average(self):
        assert average_score({"a": verification("a")}) is None


class TestRecentActivity:

    def test_newest_first_limited_to_five(self):
        verifications = {
            str(day): verification(str(day), 50, f"2025-01-{day:02d}T00:00:00Z") for day in range(1, 11)
        }

        recent = project([], [], [], verifications).recent_activity

        assert len(recent) == 5
        assert [r.story_id for r in recent] == ["10", "9", "8", "7", "6"]

    def test_invalid_timestamps_sort_as_oldest(self):
        verifications = {
            "bad": verification("bad", 10, "not a date"),
            "none": verification("none", 10),
            "ok": verification("ok", 10, "2025-01-01T00:00:00"),
        }

        recent = recent_activity(verifications)

        assert recent[0].story_id == "ok"
        assert {r.story_id for r in recent[1:]} == {"bad", "none"}

    def test_mixed_offsets_compare_as_instants(self):
        verifications = {
            "utc": verification("utc", 1, "2025-01-01T12:00:00Z"),
            "plus2": verification("plus2", 1, "2025-01-01T13:00:00+02:00"),
        }
        assert [r.story_id for r in recent_activity(verifications)] == ["utc", "plus2"]

    def test_parse_timestamp(self):
        assert parse_timestamp("2025-01-01T00:00:00Z").tzinfo is not None
        assert parse_timestamp("garbage") is None
        assert parse_timestamp(None) is None


class TestComputeProjectStats:

    def test_sections(self):
        tasks = [
            make_task("1", "completed", "1.1", agent="frontend"),
            make_task("2", "in_progress", "1.1", assignedAgent="backend"),
            make_task("3", "pending", "1.2", agent="frontend"),
            make_task("4", "pending"),
        ]
        stories = [Story(id="1.1", epic="1"), Story(id="1.2", epic="1"), Story(id="2.1", epic="2")]
        epics = [Epic(id="1"), Epic(id="2"), Epic(id="3")]

        stats = compute_project_stats(tasks, stories, epics)

        assert stats["taskStats"] == {
            "total": 4, "completed": 1, "inProgress": 1, "pending": 2, "completionRate": 25,
        }
        assert stats["storyStats"]["withTasks"] == 2
        assert stats["storyStats"]["withoutTasks"] == 1
        assert stats["storyStats"]["avgTasksPerStory"] == 1.0
        assert stats["epicStats"]["withStories"] == 2
        assert stats["epicStats"]["withoutStories"] == 1
        assert stats["agentStats"]["assigned"] == 3
        assert stats["agentStats"]["unassigned"] == 1
        assert stats["agentStats"]["agents"]["frontend"] == {
            "total": 2, "completed": 1, "inProgress": 0, "pending": 1,
        }
