"""
Project context loader.

Reads the epics, stories and verification records that live beside a
project's tasks in the BMAD layout:

    docs/epics/EPIC-<n>-*.md        (also .bmad-core/epics/)
    docs/stories/<epic>.<n>*.md
    .ai/verification/*.json

Every file is loaded on its own; a malformed file is logged and skipped so
one bad story never hides the rest of the project.
"""

import json
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from .models import Epic, ProjectContext, Story, VerificationRecord

logger = logging.getLogger(__name__)

EPIC_DIRS = ("docs/epics", ".bmad-core/epics")
STORY_DIR = "docs/stories"
VERIFICATION_DIR = ".ai/verification"

_EPIC_FILE = re.compile(r"^EPIC-(\d+).*\.md$", re.IGNORECASE)
_HEADING = re.compile(r"^#\s+(.+)$", re.MULTILINE)
_EPIC_PREFIX = re.compile(r"^Epic\s*\d+:\s*", re.IGNORECASE)
_STORY_PREFIX = re.compile(r"^Story\s+[\d.]+:\s*", re.IGNORECASE)
# "## Status: Done" or "## Status" followed by the value on the next non-blank line
_STATUS = re.compile(r"^##\s*Status\s*(?::\s*(\S.*)|\s*\n\s*(\S.*))", re.IGNORECASE | re.MULTILINE)

_STATUS_ALIASES = {"done": "completed", "in progress": "in_progress"}


def normalize_story_status(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    value = raw.strip().lower()
    if not value:
        return None
    return _STATUS_ALIASES.get(value, value.replace(" ", "_"))


def _first_heading(content: str) -> Optional[str]:
    match = _HEADING.search(content)
    return match.group(1).strip() if match else None


def _read_text(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.error(f"Error reading {path}: {e}")
        return None


def load_epics(project_root: Path) -> List[Epic]:
    epics: Dict[str, Epic] = {}
    for relative in EPIC_DIRS:
        directory = project_root / relative
        if not directory.is_dir():
            continue
        for path in sorted(directory.iterdir()):
            match = _EPIC_FILE.match(path.name)
            if not match or not path.is_file():
                continue
            content = _read_text(path)
            if content is None:
                continue
            epic_id = match.group(1)
            heading = _first_heading(content)
            title = _EPIC_PREFIX.sub("", heading) if heading else f"Epic {epic_id}"
            # docs/epics wins over .bmad-core when both define the same epic
            epics.setdefault(epic_id, Epic(id=epic_id, title=title))
    return list(epics.values())


def parse_story(filename: str, content: str) -> Story:
    """
    Build a Story from a story markdown file.

    The id is the filename up to ".story" or ".md" and the epic id is the
    part of the story id before the first ".".
    """
    story_id = re.sub(r"(\.story)?\.md$", "", filename, flags=re.IGNORECASE)
    heading = _first_heading(content)
    status_match = _STATUS.search(content)
    raw_status = None
    if status_match:
        raw_status = status_match.group(1) or status_match.group(2)
    epic_id = story_id.split(".", 1)[0] if "." in story_id else None

    return Story(
        id=story_id,
        title=_STORY_PREFIX.sub("", heading) if heading else story_id,
        status=normalize_story_status(raw_status),
        epic=epic_id,
    )


def load_stories(project_root: Path) -> List[Story]:
    directory = project_root / STORY_DIR
    if not directory.is_dir():
        return []
    stories = []
    for path in sorted(directory.glob("*.md")):
        content = _read_text(path)
        if content is None:
            continue
        stories.append(parse_story(path.name, content))
    return stories


def load_verifications(project_root: Path) -> Dict[str, VerificationRecord]:
    """Verification records keyed by story id; files named "*failed*" are ignored."""
    directory = project_root / VERIFICATION_DIR
    if not directory.is_dir():
        return {}
    records: Dict[str, VerificationRecord] = {}
    for path in sorted(directory.glob("*.json")):
        if "failed" in path.name:
            continue
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("verification file must hold a JSON object")
            data.setdefault("storyId", path.stem)
            record = VerificationRecord.model_validate(data)
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"Error reading verification file {path.name}: {e}")
            continue
        records[record.story_id] = record
    return records


def load_project_context(project_root: Optional[Union[str, Path]]) -> ProjectContext:
    """
    Load epics, stories and verifications for a project root.

    Args:
        project_root: Project directory; None gives an empty context

    Returns:
        ProjectContext with whatever could be read
    """
    if not project_root:
        return ProjectContext()
    root = Path(project_root).expanduser()
    if not root.is_dir():
        logger.warning(f"Project root does not exist: {root}")
        return ProjectContext()

    context = ProjectContext(
        epics=load_epics(root),
        stories=load_stories(root),
        verifications=load_verifications(root),
    )
    logger.debug(
        f"Loaded context for {root}: {len(context.epics)} epics, "
        f"{len(context.stories)} stories, {len(context.verifications)} verifications"
    )
    return context


def context_signature(project_root: Optional[Union[str, Path]]) -> Tuple[Tuple[str, int, int], ...]:
    """
    (relative path, mtime_ns, size) of every file the context is read from.

    Adding, removing or editing an epic, story or verification file changes
    the signature.
    """
    if not project_root:
        return ()
    root = Path(project_root).expanduser()
    entries = []
    for relative in (*EPIC_DIRS, STORY_DIR, VERIFICATION_DIR):
        directory = root / relative
        if not directory.is_dir():
            continue
        for path in directory.iterdir():
            try:
                stat = path.stat()
            except OSError:
                continue
            entries.append((f"{relative}/{path.name}", stat.st_mtime_ns, stat.st_size))
    return tuple(sorted(entries))
