"""
Tests for text/status/story filtering and flat table sorting.
"""

import pytest
from pydantic import ValidationError

from task_viewer.filters import filter_and_group, filter_tasks, sort_tasks, unique_story_keys
from task_viewer.models import NO_STORY, FilterState, StatusFilter

from conftest import make_task


@pytest.fixture
def tasks():
    return [
        make_task("1", "completed", "1.1", name="Add Login form", description="UI work"),
        make_task("2", "in_progress", "1.1", name="Session handling", description="Fix LOGIN timeout"),
        make_task("3", "pending", "1.2", name="API tests"),
        make_task("4", "pending", None, name="Cleanup"),
        make_task("5", "completed", "", name="Release notes"),
    ]


class TestFilterTasks:

    def test_neutral_filter_is_identity(self, tasks):
        assert filter_tasks(tasks, FilterState()) == tasks
        assert filter_tasks(tasks) == tasks

    def test_text_matches_name_or_description_case_insensitively(self, tasks):
        result = filter_tasks(tasks, FilterState(global_filter_text="login"))
        assert [t.id for t in result] == ["1", "2"]

    def test_status_filter(self, tasks):
        result = filter_tasks(tasks, FilterState(status_filter="completed"))
        assert [t.id for t in result] == ["1", "5"]

    def test_status_filter_accepts_enum(self, tasks):
        result = filter_tasks(tasks, FilterState(status_filter=StatusFilter.PENDING))
        assert [t.id for t in result] == ["3", "4"]

    def test_story_filter_no_story_matches_missing_and_empty(self, tasks):
        result = filter_tasks(tasks, FilterState(story_filter=NO_STORY))
        assert [t.id for t in result] == ["4", "5"]

    def test_filters_compose_with_and(self, tasks):
        state = FilterState(global_filter_text="login", status_filter="in_progress", story_filter="1.1")
        assert [t.id for t in filter_tasks(tasks, state)] == ["2"]

    def test_filter_is_monotone(self, tasks):
        broad = filter_tasks(tasks, FilterState(story_filter="1.1"))
        narrow = filter_tasks(tasks, FilterState(story_filter="1.1", status_filter="completed"))
        assert set(t.id for t in narrow) <= set(t.id for t in broad)

    def test_unknown_status_filter_rejected(self):
        with pytest.raises(ValidationError):
            FilterState(status_filter="blocked")

    def test_filter_then_group_counts_only_visible_tasks(self, tasks):
        groups = filter_and_group(tasks, FilterState(status_filter="completed"))
        by_key = {g.key: g for g in groups}
        assert by_key["1.1"].stats.total == 1
        assert by_key["1.1"].completion_percentage == 100
        assert "1.2" not in by_key

    def test_unique_story_keys(self, tasks):
        assert unique_story_keys(tasks) == ["1.1", "1.2", NO_STORY]


class TestSortTasks:

    def test_sort_by_name_case_insensitive(self):
        tasks = [make_task("1", name="beta"), make_task("2", name="Alpha"), make_task("3", name="gamma")]
        assert [t.id for t in sort_tasks(tasks, "name")] == ["2", "1", "3"]

    def test_priority_order_high_first(self):
        tasks = [make_task("1", priority="low"), make_task("2", priority="high"), make_task("3", priority="medium")]
        assert [t.id for t in sort_tasks(tasks, "priority")] == ["2", "3", "1"]

    def test_missing_values_sort_last_in_both_directions(self):
        tasks = [make_task("1"), make_task("2", priority="low"), make_task("3", priority="high")]
        assert [t.id for t in sort_tasks(tasks, "priority")] == ["3", "2", "1"]
        assert [t.id for t in sort_tasks(tasks, "priority", descending=True)] == ["2", "3", "1"]

    def test_sort_by_agent_uses_either_key(self):
        tasks = [make_task("1", agent="zed"), make_task("2", assignedAgent="amy"), make_task("3")]
        assert [t.id for t in sort_tasks(tasks, "agent")] == ["2", "1", "3"]

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError, match="Sort field"):
            sort_tasks([], "color")
