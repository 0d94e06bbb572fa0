"""
Tests for the project profile registry and global settings.
"""

import json

import pytest

from task_viewer.profiles import ProfileError, ProfileNotFoundError, ProfileRegistry, slugify

from conftest import write_json


@pytest.fixture
def settings_path(tmp_path):
    return tmp_path / "settings.json"


def test_slugify():
    assert slugify("My Project!!  v2") == "my-project-v2"
    assert slugify("already-ok") == "already-ok"


def test_missing_settings_file_gives_empty_registry(settings_path):
    registry = ProfileRegistry(settings_path)

    assert registry.list() == []
    assert not settings_path.exists()


def test_unreadable_settings_file_gives_empty_registry(settings_path):
    settings_path.write_text("{nope", encoding="utf-8")
    assert ProfileRegistry(settings_path).list() == []


def test_add_persists_whole_file(settings_path):
    registry = ProfileRegistry(settings_path)

    profile = registry.add("Demo Project", "/tmp/tasks.json", "/tmp")

    assert profile.id == "demo-project"
    data = json.loads(settings_path.read_text(encoding="utf-8"))
    assert data["version"] == "2.0.0"
    assert "lastUpdated" in data
    assert data["projects"] == [
        {"id": "demo-project", "name": "Demo Project", "path": "/tmp/tasks.json", "projectRoot": "/tmp"}
    ]
    assert ProfileRegistry(settings_path).get("demo-project").task_file == "/tmp/tasks.json"


def test_re_adding_replaces_profile(settings_path):
    registry = ProfileRegistry(settings_path)
    registry.add("Demo", "/a/tasks.json")
    registry.add("Demo", "/b/tasks.json")

    assert [p.path for p in registry.list()] == ["/b/tasks.json"]


@pytest.mark.parametrize("key", ["profiles", "agents"])
def test_legacy_keys_and_generated_ids(settings_path, key):
    write_json(settings_path, {key: [
        {"profileName": "Old Style Name", "path": "/old/tasks.json", "taskCount": 3},
        {"id": "kept", "name": "Kept", "path": "/kept/tasks.json"},
    ]})

    registry = ProfileRegistry(settings_path)

    old = registry.get("old-style-name")
    assert old.name == "Old Style Name"
    assert old.to_record()["taskCount"] == 3
    assert registry.get("kept").name == "Kept"


def test_update_and_rename(settings_path):
    registry = ProfileRegistry(settings_path)
    registry.add("Demo", "/a/tasks.json")

    registry.update("demo", task_path="/b/tasks.json", project_root="/b")
    renamed = registry.rename("demo", "Renamed")

    assert renamed.id == "demo"
    assert renamed.name == "Renamed"
    assert renamed.task_file == "/b/tasks.json"
    assert ProfileRegistry(settings_path).get("demo").project_root == "/b"


def test_update_rejects_blank_name(settings_path):
    registry = ProfileRegistry(settings_path)
    registry.add("Demo", "/a/tasks.json")

    with pytest.raises(ProfileError):
        registry.rename("demo", "   ")


def test_unknown_profile(settings_path):
    registry = ProfileRegistry(settings_path)

    with pytest.raises(ProfileNotFoundError):
        registry.get("ghost")
    with pytest.raises(ProfileNotFoundError):
        registry.update("ghost", name="x")


def test_remove(settings_path):
    registry = ProfileRegistry(settings_path)
    registry.add("One", "/1.json")
    registry.add("Two", "/2.json")

    registry.remove("one")

    assert [p.id for p in ProfileRegistry(settings_path).list()] == ["two"]


class TestGlobalSettings:

    def test_defaults_when_missing(self, tmp_path):
        registry = ProfileRegistry(tmp_path / "s.json", tmp_path / "g.json")
        assert registry.load_global_settings().claude_folder_path == ""

    def test_save_merges_and_stamps(self, tmp_path):
        registry = ProfileRegistry(tmp_path / "s.json", tmp_path / "g.json")

        saved = registry.save_global_settings({"claudeFolderPath": "/home/me/.claude"})

        assert saved.claude_folder_path == "/home/me/.claude"
        data = json.loads((tmp_path / "g.json").read_text(encoding="utf-8"))
        assert data["claudeFolderPath"] == "/home/me/.claude"
        assert data["version"] == "2.0.0"
        assert registry.load_global_settings().claude_folder_path == "/home/me/.claude"

    def test_save_without_path_configured(self, tmp_path):
        with pytest.raises(ProfileError):
            ProfileRegistry(tmp_path / "s.json").save_global_settings({"claudeFolderPath": "/x"})
