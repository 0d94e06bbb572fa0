"""
Shared fixtures for Shrimp Task Viewer tests.

Provides task factories, on-disk task files in temporary directories, a
profile registry pointing at them, and a TestClient wired to that registry.
"""

import json
from pathlib import Path
from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

from task_viewer import api
from task_viewer.models import Task
from task_viewer.profiles import ProfileRegistry
from task_viewer.stats_cache import reset_stats_cache


def make_task(task_id: str, status: str = "pending", story: Any = None, **extra) -> Task:
    data: Dict[str, Any] = {"id": task_id, "name": f"Task {task_id}", "status": status}
    if story is not None:
        data["story"] = story
    data.update(extra)
    return Task.model_validate(data)


@pytest.fixture
def sample_tasks() -> List[Dict[str, Any]]:
    """Five tasks across two stories plus one without a story."""
    return [
        {"id": "1", "name": "Add login form", "description": "Build the login UI", "status": "completed",
         "story": "1.1", "createdAt": "2025-01-01T10:00:00Z", "agent": "frontend"},
        {"id": "2", "name": "Fix session bug", "status": "in_progress", "story": "1.1",
         "createdAt": "2025-01-02T10:00:00Z", "assignedAgent": "backend"},
        {"id": "3", "name": "Write API tests", "status": "pending", "story": "1.2",
         "priority": "high", "createdAt": "2025-01-03T10:00:00Z"},
        {"id": "4", "name": "Update docs", "status": "completed", "story": "1.2",
         "priority": "low", "completedAt": "2025-01-04T10:00:00Z", "summary": "Docs refreshed"},
        {"id": "5", "name": "Refactor config", "status": "pending"},
    ]


def write_json(path: Path, data: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return path


@pytest.fixture
def task_file(tmp_path, sample_tasks) -> Path:
    return write_json(
        tmp_path / "project" / "data" / "tasks.json",
        {"tasks": sample_tasks, "initialRequest": "Build the auth flow", "customField": "kept"},
    )


@pytest.fixture
def project_root(tmp_path) -> Path:
    """BMAD-style project root with one epic, two stories and verifications."""
    root = tmp_path / "project"
    (root / "docs" / "epics").mkdir(parents=True)
    (root / "docs" / "epics" / "EPIC-1-authentication.md").write_text(
        "# Epic 1: Authentication\n\nLogin and sessions.\n", encoding="utf-8"
    )
    (root / "docs" / "stories").mkdir(parents=True)
    (root / "docs" / "stories" / "1.1.story.md").write_text(
        "# Story 1.1: Login form\n\n## Status\n\nDone\n", encoding="utf-8"
    )
    (root / "docs" / "stories" / "1.2.md").write_text(
        "# Story 1.2: API tests\n\n## Status: In Progress\n", encoding="utf-8"
    )
    write_json(root / ".ai" / "verification" / "1.1.json",
               {"storyId": "1.1", "score": 90, "timestamp": "2025-01-05T12:00:00Z"})
    write_json(root / ".ai" / "verification" / "1.2.json",
               {"storyId": "1.2", "score": 75, "timestamp": "2025-01-06T12:00:00Z"})
    write_json(root / ".ai" / "verification" / "1.2-failed.json",
               {"storyId": "1.2", "score": 10, "timestamp": "2025-01-07T12:00:00Z"})
    return root


@pytest.fixture
def registry(tmp_path, task_file, project_root) -> ProfileRegistry:
    profiles = ProfileRegistry(tmp_path / "settings.json", tmp_path / "global-settings.json")
    profiles.add("Demo Project", str(task_file), str(project_root))
    return profiles


@pytest.fixture
def client(registry):
    """TestClient bound to the temporary registry; the lifespan is not run."""
    reset_stats_cache()
    api.app.dependency_overrides[api.get_registry] = lambda: registry
    try:
        yield TestClient(api.app)
    finally:
        api.app.dependency_overrides.clear()
        reset_stats_cache()
