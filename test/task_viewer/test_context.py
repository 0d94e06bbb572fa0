"""
Tests for loading epics, stories and verification records from a project root.
"""

import pytest

from task_viewer.context import context_signature, load_project_context, normalize_story_status, parse_story

from conftest import write_json


def test_load_full_context(project_root):
    context = load_project_context(project_root)

    assert [(e.id, e.title) for e in context.epics] == [("1", "Authentication")]
    stories = {s.id: s for s in context.stories}
    assert stories["1.1"].title == "Login form"
    assert stories["1.1"].status == "completed"
    assert stories["1.1"].epic == "1"
    assert stories["1.2"].status == "in_progress"
    assert sorted(context.verifications) == ["1.1", "1.2"]
    # the "-failed" record must not override the passing one
    assert context.verifications["1.2"].score == 75


def test_missing_directories_give_empty_collections(tmp_path):
    context = load_project_context(tmp_path)

    assert context.epics == []
    assert context.stories == []
    assert context.verifications == {}


def test_no_project_root():
    assert load_project_context(None).stories == []


def test_malformed_verification_skipped(project_root):
    (project_root / ".ai" / "verification" / "2.1.json").write_text("{oops", encoding="utf-8")
    write_json(project_root / ".ai" / "verification" / "list.json", [1, 2])

    context = load_project_context(project_root)

    assert sorted(context.verifications) == ["1.1", "1.2"]


def test_verification_story_id_defaults_to_filename(project_root):
    write_json(project_root / ".ai" / "verification" / "3.1.json", {"score": 60})
    assert load_project_context(project_root).verifications["3.1"].score == 60


def test_bmad_core_epics(project_root):
    (project_root / ".bmad-core" / "epics").mkdir(parents=True)
    (project_root / ".bmad-core" / "epics" / "EPIC-2-billing.md").write_text("# Billing\n", encoding="utf-8")
    (project_root / ".bmad-core" / "epics" / "EPIC-1-dup.md").write_text("# Duplicate\n", encoding="utf-8")

    epics = {e.id: e.title for e in load_project_context(project_root).epics}

    assert epics == {"1": "Authentication", "2": "Billing"}


def test_story_without_status_or_heading():
    story = parse_story("4.2.md", "Just notes\n")

    assert story.id == "4.2"
    assert story.title == "4.2"
    assert story.status is None
    assert story.epic == "4"


@pytest.mark.parametrize("raw,expected", [
    ("Done", "completed"),
    ("In Progress", "in_progress"),
    ("Ready for Review", "ready_for_review"),
    ("  ", None),
    (None, None),
])
def test_normalize_story_status(raw, expected):
    assert normalize_story_status(raw) == expected


def test_context_signature_tracks_context_files(project_root):
    before = context_signature(project_root)
    assert {entry[0] for entry in before} >= {"docs/stories/1.1.story.md", ".ai/verification/1.2.json"}
    assert context_signature(project_root) == before

    (project_root / "docs" / "stories" / "1.2.md").write_text("# Story 1.2: API tests\n\n## Status: Done\n", encoding="utf-8")

    assert context_signature(project_root) != before


def test_context_signature_without_root():
    assert context_signature(None) == ()
