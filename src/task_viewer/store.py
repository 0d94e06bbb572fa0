"""
Task Store Adapter

Reads and rewrites a project's JSON task file, plus the `memory/` history
snapshots and `archives/` kept beside it.

Every write replaces the whole file through a temporary file and a rename,
so readers never observe a partially written document. Concurrent writers
are not coordinated; the last write wins.
"""

import json
import logging
import os
import re
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from pydantic import ValidationError

from .aggregation import compute_stats
from .models import (
    Archive,
    BulkUpdateResult,
    FileStats,
    HistoryEntry,
    ImportMode,
    Task,
    TaskDocument,
    TaskSnapshot,
    TaskStatus,
)

logger = logging.getLogger(__name__)

NOT_CREATED_MESSAGE = (
    "No tasks found. The tasks.json file hasn't been created yet. "
    "Run shrimp in this folder to generate tasks."
)
MEMORY_DIR_NAME = "memory"
ARCHIVE_DIR_NAME = "archives"
MAX_ARCHIVES = 50

HISTORY_FILE_PATTERN = re.compile(r"^tasks_memory_(.+)\.json$")
ARCHIVE_ID_PATTERN = re.compile(r"^[A-Za-z0-9-]{1,64}$")

# Fields dropped when a completed task is reset to pending
COMPLETION_FIELDS = ("completedAt", "summary", "completionDetails")

# (from, to) status transitions applied by bulk updates
BULK_TRANSITIONS = {
    (TaskStatus.COMPLETED.value, TaskStatus.PENDING.value),
    (TaskStatus.PENDING.value, TaskStatus.COMPLETED.value),
    (TaskStatus.IN_PROGRESS.value, TaskStatus.COMPLETED.value),
}

TaskLike = Union[Task, Dict[str, Any]]


class TaskStoreError(Exception):
    """Recoverable task file failure; the message is shown to the user."""


class TaskFileParseError(TaskStoreError):
    """Task file is not valid JSON or does not have a task document shape."""


class TaskNotFoundError(TaskStoreError):
    pass


class HistoryEntryNotFoundError(TaskStoreError):
    pass


class InvalidHistoryEntryError(TaskStoreError):
    pass


class ArchiveNotFoundError(TaskStoreError):
    pass


class EmptyArchiveError(TaskStoreError):
    pass


def local_timestamp() -> str:
    """Current local time as ISO 8601 with UTC offset, second precision."""
    return datetime.now().astimezone().isoformat(timespec="seconds")


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to `path` via a sibling temp file and os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def normalize_document(raw: Any) -> Dict[str, Any]:
    """
    Bring a decoded task file into the current object format.

    The legacy format is a bare array of tasks and is wrapped as
    `{"tasks": [...]}`. Any other top-level shape is rejected.

    Raises:
        TaskFileParseError: If the document is neither an object nor an array,
            or its `tasks` member is not an array
    """
    if isinstance(raw, list):
        return {"tasks": raw}
    if not isinstance(raw, dict):
        raise TaskFileParseError(
            f"Task file must contain a JSON object or array, got {type(raw).__name__}"
        )
    tasks = raw.get("tasks")
    if tasks is None:
        return {**raw, "tasks": []}
    if not isinstance(tasks, list):
        raise TaskFileParseError("Task file 'tasks' must be an array")
    return raw


def parse_document(raw: Any, source: str = "task file") -> TaskDocument:
    """Normalize and validate a decoded task file."""
    data = normalize_document(raw)
    try:
        return TaskDocument.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise TaskFileParseError(
            f"Malformed {source}: {location}: {first['msg']}"
        ) from e


def coerce_tasks(tasks: Iterable[TaskLike]) -> List[Task]:
    """Validate incoming task dicts; Task instances pass through untouched."""
    result = []
    for item in tasks:
        result.append(item if isinstance(item, Task) else Task.model_validate(item))
    return result


def generate_initial_request(tasks: Sequence[Task]) -> str:
    """
    Describe a task list for history snapshots that carry no initial request.

    Task names are bucketed into themes; the three most common themes and
    up to three short task names make up the description.
    """
    categories: Dict[str, int] = {}
    for task in tasks:
        name = (task.name or "").lower()
        if "test" in name:
            theme = "testing"
        elif "fix" in name or "bug" in name:
            theme = "bugfixes"
        elif "add" in name or "create" in name or "implement" in name:
            theme = "features"
        elif "update" in name or "refactor" in name:
            theme = "improvements"
        elif "document" in name:
            theme = "documentation"
        else:
            theme = "other"
        categories[theme] = categories.get(theme, 0) + 1

    descriptions = {
        "testing": "write tests",
        "bugfixes": "fix bugs",
        "features": "implement new features",
        "improvements": "improve existing functionality",
        "documentation": "update documentation",
    }
    ranked = sorted(
        ((theme, count) for theme, count in categories.items() if theme != "other"),
        key=lambda item: item[1],
        reverse=True,
    )[:3]

    parts = []
    phrases = [descriptions[theme] for theme, _ in ranked]
    if len(phrases) == 1:
        parts.append(f"Request to {phrases[0]}")
    elif len(phrases) == 2:
        parts.append(f"Request to {phrases[0]} and {phrases[1]}")
    elif phrases:
        parts.append(f"Request to {', '.join(phrases[:-1])}, and {phrases[-1]}")

    examples = [t.name for t in tasks if t.name and len(t.name) < 60][:3]
    if examples:
        parts.append(f"Tasks include: {', '.join(examples)}")

    parts.append(f"({len(tasks)} total tasks)")
    return ". ".join(parts)


class TaskStore:
    """
    File-backed task storage for a single project.

    Args:
        task_file: Path of the project's tasks.json
        project_id: Registry id of the project, recorded in archives
    """

    def __init__(self, task_file: Union[str, Path], project_id: Optional[str] = None):
        self.task_file = Path(task_file).expanduser()
        self.project_id = project_id or ""

    @property
    def memory_dir(self) -> Path:
        return self.task_file.parent / MEMORY_DIR_NAME

    @property
    def archive_dir(self) -> Path:
        return self.task_file.parent / ARCHIVE_DIR_NAME

    # Reading

    def read_document(self) -> Optional[TaskDocument]:
        """
        Read and parse the task file.

        Returns:
            The parsed document, or None when the file does not exist yet

        Raises:
            TaskFileParseError: For invalid JSON or an unexpected shape
            TaskStoreError: When the file exists but cannot be read
        """
        try:
            text = self.task_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise TaskStoreError(f"Unable to read task file {self.task_file}: {e.strerror or e}") from e

        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise TaskFileParseError(
                f"Invalid JSON in task file {self.task_file}: {e.msg} (line {e.lineno})"
            ) from e
        return parse_document(raw, source=f"task file {self.task_file}")

    def load(self) -> TaskSnapshot:
        """
        Load the project's tasks.

        A missing file is not an error: the snapshot is empty, `exists` is
        False and `message` explains that the file has not been created.
        """
        document = self.read_document()
        if document is None:
            logger.info(f"Tasks file doesn't exist yet: {self.task_file}")
            return TaskSnapshot(exists=False, message=NOT_CREATED_MESSAGE)

        logger.debug(f"Loaded {len(document.tasks)} tasks from {self.task_file}")
        return TaskSnapshot(
            tasks=document.tasks,
            initial_request=document.initial_request,
            summary=document.summary,
            summary_generated_at=document.summary_generated_at,
        )

    def _current_document(self) -> TaskDocument:
        return self.read_document() or TaskDocument()

    def _require_document(self) -> TaskDocument:
        document = self.read_document()
        if document is None:
            raise TaskNotFoundError(f"Task file not found: {self.task_file}")
        return document

    def file_stats(self) -> FileStats:
        try:
            stat = self.task_file.stat()
        except FileNotFoundError as e:
            raise TaskNotFoundError(f"Task file not found: {self.task_file}") from e
        mtime = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat()
        return FileStats(mtime=mtime, size=stat.st_size)

    # Writing

    def write_document(self, document: TaskDocument) -> None:
        try:
            atomic_write_json(self.task_file, document.to_record())
        except OSError as e:
            raise TaskStoreError(f"Unable to write task file {self.task_file}: {e.strerror or e}") from e
        logger.info(f"Wrote {len(document.tasks)} tasks to {self.task_file}")

    def save(self, tasks: Iterable[TaskLike]) -> TaskDocument:
        """Replace the task list, keeping initialRequest, summary and other metadata."""
        document = self._current_document()
        updated = document.model_copy(update={"tasks": coerce_tasks(tasks)})
        self.write_document(updated)
        return updated

    def update_task(self, task_id: str, updates: Dict[str, Any]) -> Task:
        """
        Shallow-merge `updates` (camelCase keys) into one task.

        Raises:
            TaskNotFoundError: If the file or the task does not exist
        """
        document = self._require_document()
        tasks = list(document.tasks)
        for index, task in enumerate(tasks):
            if task.id == task_id:
                record = {**task.to_record(), **updates, "id": task.id, "updatedAt": local_timestamp()}
                tasks[index] = Task.model_validate(record)
                self.write_document(document.model_copy(update={"tasks": tasks}))
                logger.info(f"Task {task_id} updated in {self.task_file}")
                return tasks[index]
        raise TaskNotFoundError(f"Task not found: {task_id}")

    def delete_task(self, task_id: str) -> None:
        document = self._require_document()
        # Only the first match is removed when ids are duplicated
        index = next((i for i, task in enumerate(document.tasks) if task.id == task_id), None)
        if index is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        tasks = list(document.tasks)
        del tasks[index]
        self.write_document(document.model_copy(update={"tasks": tasks}))
        logger.info(f"Task {task_id} deleted from {self.task_file}")

    def bulk_status_update(self, task_ids: Sequence[str], new_status: str) -> BulkUpdateResult:
        """
        Move several tasks to `new_status`.

        Only completed→pending, pending→completed and in_progress→completed
        are applied; other transitions and unknown ids are skipped. Resetting
        to pending drops the completion fields. The file is rewritten only
        when at least one task changed.
        """
        document = self._require_document()
        tasks = list(document.tasks)
        positions = {}
        for index, task in enumerate(tasks):
            positions.setdefault(task.id, index)

        updated: List[Task] = []
        for task_id in task_ids:
            index = positions.get(task_id)
            if index is None:
                logger.warning(f"Task {task_id} not found in {self.task_file}")
                continue
            task = tasks[index]
            if (task.status, new_status) not in BULK_TRANSITIONS:
                logger.info(f"Skipped task {task_id} - invalid transition from {task.status} to {new_status}")
                continue

            now = local_timestamp()
            record = task.to_record()
            record.update({"status": new_status, "updatedAt": now})
            if new_status == TaskStatus.PENDING.value:
                for key in COMPLETION_FIELDS:
                    record.pop(key, None)
            else:
                record["completedAt"] = now
            tasks[index] = Task.model_validate(record)
            updated.append(tasks[index])

        if updated:
            self.write_document(document.model_copy(update={"tasks": tasks}))
            logger.info(f"Successfully updated {len(updated)} task(s) to {new_status} status")

        return BulkUpdateResult(
            success=True,
            updated_count=len(updated),
            message=f"Updated {len(updated)} of {len(task_ids)} task(s)",
            updated_tasks=[{"id": t.id, "name": t.name, "status": t.status} for t in updated],
        )

    def import_archive(self, archive_tasks: Iterable[TaskLike], mode: Union[ImportMode, str]) -> TaskDocument:
        """
        Bring archived tasks back into the task file.

        APPEND keeps the current tasks and adds the archived ones after them;
        duplicate ids are kept as separate tasks. REPLACE discards the current
        list. Document metadata is kept in both modes.
        """
        mode = ImportMode(mode)
        imported = coerce_tasks(archive_tasks)
        document = self._current_document()
        if mode is ImportMode.APPEND:
            tasks = list(document.tasks) + imported
        else:
            tasks = imported
        updated = document.model_copy(update={"tasks": tasks})
        self.write_document(updated)
        logger.info(f"Imported {len(imported)} archived tasks into {self.task_file} ({mode.value})")
        return updated

    # History snapshots

    @staticmethod
    def validate_history_filename(filename: str) -> str:
        if ".." in filename or "/" in filename or "\\" in filename or not HISTORY_FILE_PATTERN.match(filename):
            raise InvalidHistoryEntryError(f"Invalid history filename: {filename}")
        return filename

    @staticmethod
    def history_timestamp(filename: str) -> str:
        """`tasks_memory_2025-07-31T21-54-13.json` -> `2025-07-31T21:54:13`."""
        match = HISTORY_FILE_PATTERN.match(filename)
        if not match:
            return local_timestamp()
        return re.sub(r"T(\d{2})-(\d{2})-(\d{2})$", r"T\1:\2:\3", match.group(1))

    def list_history(self) -> List[HistoryEntry]:
        """Summaries of every readable history snapshot, newest first."""
        if not self.memory_dir.is_dir():
            logger.info(f"[History] Memory directory does not exist at: {self.memory_dir}")
            return []

        entries = []
        for path in self.memory_dir.iterdir():
            if not path.is_file() or not HISTORY_FILE_PATTERN.match(path.name):
                continue
            try:
                document = parse_document(json.loads(path.read_text(encoding="utf-8")), source=path.name)
            except (OSError, json.JSONDecodeError, TaskStoreError) as e:
                logger.error(f"Error reading memory file {path.name}: {e}")
                continue
            entries.append(HistoryEntry(
                filename=path.name,
                timestamp=self.history_timestamp(path.name),
                task_count=len(document.tasks),
                stats=compute_stats(document.tasks),
                has_data=bool(document.tasks),
                initial_request=document.initial_request,
                summary=document.summary,
            ))

        entries.sort(key=lambda entry: entry.timestamp, reverse=True)
        logger.info(f"[History] Found {len(entries)} memory files in {self.memory_dir}")
        return entries

    def load_history_entry(self, filename: str) -> Dict[str, Any]:
        """
        Read one history snapshot as a task document dict.

        When the snapshot has tasks but no initial request, a description is
        generated from the task names and `generatedInitialRequest` is set.
        """
        path = self.memory_dir / self.validate_history_filename(filename)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise HistoryEntryNotFoundError(f"History file not found: {filename}") from e
        except OSError as e:
            raise TaskStoreError(f"Unable to read history file {filename}: {e.strerror or e}") from e

        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise TaskFileParseError(f"Invalid JSON in memory file {filename}") from e

        document = parse_document(raw, source=f"memory file {filename}")
        data = document.to_record()
        if not document.initial_request and document.tasks:
            data["initialRequest"] = generate_initial_request(document.tasks)
            data["generatedInitialRequest"] = True
        return data

    def delete_history_entry(self, filename: str) -> None:
        path = self.memory_dir / self.validate_history_filename(filename)
        try:
            path.unlink()
        except FileNotFoundError as e:
            raise HistoryEntryNotFoundError(f"History file not found: {filename}") from e
        except OSError as e:
            raise TaskStoreError(f"Error deleting history file: {e.strerror or e}") from e
        logger.info(f"[History] Deleted history file: {path}")

    # Archives

    def _archive_path(self, archive_id: str) -> Path:
        if not ARCHIVE_ID_PATTERN.match(archive_id):
            raise ArchiveNotFoundError(f"Archive not found: {archive_id}")
        return self.archive_dir / f"{archive_id}.json"

    def create_archive(self, name: Optional[str] = None, initial_request: str = "") -> Archive:
        """
        Snapshot the current task list into a new archive.

        Only the newest MAX_ARCHIVES archives are kept.

        Raises:
            EmptyArchiveError: If there are no tasks to archive
        """
        document = self._current_document()
        if not document.tasks:
            raise EmptyArchiveError("Cannot create archive with no tasks")

        archive = Archive(
            id=str(uuid.uuid4()),
            timestamp=datetime.now(timezone.utc).isoformat(),
            project_id=self.project_id,
            project_name=name or "Unknown Project",
            initial_request=initial_request or document.initial_request or "",
            tasks=document.tasks,
            stats=compute_stats(document.tasks),
        )
        try:
            atomic_write_json(self._archive_path(archive.id), archive.to_record())
        except OSError as e:
            raise TaskStoreError(f"Archive creation failed: {e.strerror or e}") from e
        logger.info(f"Archived {len(document.tasks)} tasks as {archive.id}")

        for stale in self.list_archives()[MAX_ARCHIVES:]:
            self.delete_archive(stale.id)
        return archive

    def list_archives(self) -> List[Archive]:
        """All readable archives, newest first."""
        if not self.archive_dir.is_dir():
            return []
        archives = []
        for path in self.archive_dir.glob("*.json"):
            try:
                archives.append(Archive.model_validate(json.loads(path.read_text(encoding="utf-8"))))
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                logger.error(f"Error reading archive {path.name}: {e}")
        archives.sort(key=lambda archive: archive.timestamp, reverse=True)
        return archives

    def get_archive(self, archive_id: str) -> Archive:
        path = self._archive_path(archive_id)
        try:
            return Archive.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except FileNotFoundError as e:
            raise ArchiveNotFoundError(f"Archive not found: {archive_id}") from e
        except (json.JSONDecodeError, ValidationError) as e:
            raise TaskFileParseError(f"Malformed archive {archive_id}") from e

    def delete_archive(self, archive_id: str) -> None:
        path = self._archive_path(archive_id)
        try:
            path.unlink()
        except FileNotFoundError as e:
            raise ArchiveNotFoundError(f"Archive not found: {archive_id}") from e
        logger.info(f"Deleted archive {archive_id}")
