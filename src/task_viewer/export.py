"""
Task export.

Renders a project's tasks as CSV, Markdown or JSON for download. Fields the
viewer does not model (notes, implementation guide, completion details,
related files, ...) are read from the task's preserved record, so whatever
the task manager wrote is exported.
"""

import csv
import io
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .dashboard import parse_timestamp
from .models import Task, TaskStatus

EXPORT_VERSION = "2.0"

CSV_HEADERS = [
    "Task Number",
    "ID",
    "Name",
    "Description",
    "Status",
    "Notes",
    "Implementation Guide",
    "Verification Criteria",
    "Summary",
    "Completion Summary",
    "Key Accomplishments",
    "Implementation Details",
    "Technical Challenges",
    "Verification Score",
    "Analysis Result",
    "Related Files",
    "Dependencies",
    "Agent",
    "Created At",
    "Updated At",
    "Completed At",
]

RELATED_FILE_ICONS = {
    "CREATE": "➕",
    "TO_MODIFY": "✏️",
    "REFERENCE": "📖",
    "DEPENDENCY": "🔗",
    "OTHER": "📄",
}

KNOWN_STATUSES = {status.value for status in TaskStatus}


class ExportFormat(str, Enum):
    CSV = "csv"
    MARKDOWN = "markdown"
    JSON = "json"


# filename extension and media type per format
EXPORT_MEDIA = {
    ExportFormat.CSV: ("csv", "text/csv"),
    ExportFormat.MARKDOWN: ("md", "text/markdown"),
    ExportFormat.JSON: ("json", "application/json"),
}


def filter_by_status(tasks: Sequence[Task], statuses: Optional[Iterable[str]]) -> List[Task]:
    """Tasks whose status is one of `statuses`; None keeps every task."""
    if statuses is None:
        return list(tasks)
    wanted = set(statuses)
    return [task for task in tasks if task.status in wanted]


def status_counts(tasks: Sequence[Task]) -> Dict[str, int]:
    counts = {"total": len(tasks), "completed": 0, "in_progress": 0, "pending": 0, "other": 0}
    for task in tasks:
        counts[task.status if task.status in KNOWN_STATUSES else "other"] += 1
    return counts


def _metadata(record: Dict[str, Any]) -> Dict[str, Any]:
    metadata = record.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def _completion_details(record: Dict[str, Any]) -> Dict[str, Any]:
    details = record.get("completionDetails")
    return details if isinstance(details, dict) else {}


def _field(record: Dict[str, Any], key: str, metadata_key: Optional[str] = None) -> Any:
    value = record.get(key)
    if not value and metadata_key:
        value = _metadata(record).get(metadata_key)
    return value or None


def _dependency_id(dependency: Any) -> str:
    if isinstance(dependency, dict):
        return str(dependency.get("taskId") or dependency.get("id") or "Unknown")
    return str(dependency) if dependency is not None else ""


def _list_items(details: Dict[str, Any], key: str) -> List[str]:
    items = details.get(key)
    return [str(item) for item in items] if isinstance(items, list) else []


def _related_files(record: Dict[str, Any]) -> List[Dict[str, Any]]:
    files = record.get("relatedFiles")
    return [f for f in files if isinstance(f, dict)] if isinstance(files, list) else []


def _status_label(status: str) -> str:
    return status.replace("_", " ", 1).title()


def _short_date(value: Any) -> str:
    if not value:
        return "N/A"
    parsed = parse_timestamp(value)
    return parsed.date().isoformat() if parsed else str(value)


def export_csv(tasks: Sequence[Task], initial_request: Optional[str] = None) -> str:
    """
    One row per task under a fixed header; the initial request, when given,
    becomes a leading "Initial Request" row with the text in the description
    column.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)

    if initial_request:
        writer.writerow(["Initial Request", "", "", initial_request] + [""] * (len(CSV_HEADERS) - 4))

    for number, task in enumerate(tasks, start=1):
        record = task.to_record()
        details = _completion_details(record)
        related = "; ".join(
            f"{f.get('path')} ({f.get('type')})" + (f": {f['description']}" if f.get("description") else "")
            for f in _related_files(record)
        )
        writer.writerow([
            f"Task {number}",
            task.id,
            task.name or "",
            task.description or "",
            task.status or "",
            record.get("notes") or "",
            _field(record, "implementationGuide", "implementationNotes") or "",
            _field(record, "verificationCriteria", "verificationCriteria") or "",
            task.summary or "",
            record.get("completionSummary") or "",
            "; ".join(_list_items(details, "keyAccomplishments")),
            "; ".join(_list_items(details, "implementationDetails")),
            "; ".join(_list_items(details, "technicalChallenges")),
            details.get("verificationScore") or "",
            record.get("analysisResult") or "",
            related,
            "; ".join(_dependency_id(d) for d in task.dependencies),
            task.agent or "",
            _field(record, "createdAt", "createdAt") or "",
            _field(record, "updatedAt", "updatedAt") or "",
            task.completed_at or "",
        ])

    return buffer.getvalue().rstrip("\n")


def _markdown_task(number: int, task: Task, status: str) -> List[str]:
    record = task.to_record()
    lines = [f"## Task {number}: {task.name or task.id}", ""]

    def block(label: str, value: Any) -> None:
        if value:
            lines.extend([f"**{label}:**  ", str(value), ""])

    def bullets(label: str, items: List[str]) -> None:
        if items:
            lines.append(f"**{label}:**")
            lines.extend(f"- {item}" for item in items)
            lines.append("")

    block("Description", task.description)
    block("Notes", record.get("notes"))
    block("Implementation Guide", _field(record, "implementationGuide", "implementationNotes"))
    block("Verification Criteria", _field(record, "verificationCriteria", "verificationCriteria"))
    if task.agent:
        lines.extend([f"**Assigned Agent:** {task.agent}", ""])
    block("Summary", task.summary)

    details = _completion_details(record)
    if record.get("completionSummary") or details:
        lines.extend(["### Completion Details", ""])
        block("Completion Summary", record.get("completionSummary"))
        bullets("Key Accomplishments", _list_items(details, "keyAccomplishments"))
        bullets("Implementation Details", _list_items(details, "implementationDetails"))
        bullets("Technical Challenges", _list_items(details, "technicalChallenges"))
        if details.get("verificationScore"):
            lines.extend([f"**Verification Score:** {details['verificationScore']}/100", ""])

    block("Analysis Result", record.get("analysisResult"))

    dependencies = []
    for dependency in task.dependencies:
        name = dependency.get("name") if isinstance(dependency, dict) else None
        dependencies.append(_dependency_id(dependency) + (f" ({name})" if name else ""))
    bullets("Dependencies", dependencies)

    files = []
    for f in _related_files(record):
        line = f"{RELATED_FILE_ICONS.get(f.get('type'), RELATED_FILE_ICONS['OTHER'])} **{f.get('path')}** ({f.get('type')})"
        if f.get("description"):
            line += f" - {f['description']}"
        if f.get("lineStart") or f.get("lineEnd"):
            line += f" [Lines: {f.get('lineStart') or '?'}-{f.get('lineEnd') or '?'}]"
        files.append(line)
    bullets("Related Files", files)

    metadata = _metadata(record)
    lines.extend([
        "**Metadata:**  ",
        f"- **ID:** {task.id}",
        f"- **Status:** {_status_label(status)}",
        f"- **Created:** {_short_date(_field(record, 'createdAt', 'createdAt'))}",
        f"- **Updated:** {_short_date(_field(record, 'updatedAt', 'updatedAt'))}",
    ])
    if task.completed_at:
        lines.append(f"- **Completed:** {_short_date(task.completed_at)}")
    if metadata.get("complexity"):
        lines.append(f"- **Complexity:** {metadata['complexity']}")
    if metadata.get("estimatedHours"):
        lines.append(f"- **Estimated Hours:** {metadata['estimatedHours']}")
    if isinstance(metadata.get("requiredSkills"), list) and metadata["requiredSkills"]:
        lines.append(f"- **Required Skills:** {', '.join(str(s) for s in metadata['requiredSkills'])}")
    lines.extend(["", "---", ""])
    return lines


def export_markdown(
    tasks: Sequence[Task],
    initial_request: Optional[str] = None,
    summary: Optional[str] = None,
    exported_at: Optional[datetime] = None,
) -> str:
    """
    Markdown report: header, initial request, overall summary, status
    counts, then the tasks grouped under their status (statuses in
    alphabetical order) and numbered by their position in `tasks`.
    """
    exported_at = exported_at or datetime.now(timezone.utc)
    lines = ["# Tasks Export", "", f"**Export Date:** {exported_at.date().isoformat()}", ""]

    if not tasks:
        if initial_request:
            lines.extend(["## Initial Request", "", initial_request, "", "---", ""])
        lines.extend(["Total tasks: 0", "", "No tasks to export."])
        return "\n".join(lines)

    counts = status_counts(tasks)
    lines.extend([f"Total tasks: {counts['total']}", ""])
    if initial_request:
        lines.extend(["## Initial Request", "", initial_request, "", "---", ""])
    if summary:
        lines.extend(["## Overall Summary", "", summary, "", "---", ""])

    lines.extend([
        "## Summary",
        "",
        f"- **Completed:** {counts['completed']}",
        f"- **In Progress:** {counts['in_progress']}",
        f"- **Pending:** {counts['pending']}",
    ])
    if counts["other"]:
        lines.append(f"- **Other:** {counts['other']}")
    lines.extend(["", "---"])

    by_status: Dict[str, List[int]] = {}
    for index, task in enumerate(tasks):
        by_status.setdefault(task.status or "unknown", []).append(index)

    for status in sorted(by_status):
        lines.extend(["", f"### Status: {_status_label(status)}", ""])
        for index in by_status[status]:
            lines.extend(_markdown_task(index + 1, tasks[index], status))

    return "\n".join(lines).strip()


def export_json(
    tasks: Sequence[Task],
    initial_request: Optional[str] = None,
    summary: Optional[str] = None,
    exported_at: Optional[datetime] = None,
) -> str:
    exported_at = exported_at or datetime.now(timezone.utc)
    entries = []
    for number, task in enumerate(tasks, start=1):
        record = task.to_record()
        entries.append({
            "taskNumber": number,
            "id": task.id,
            "name": task.name,
            "description": task.description or None,
            "status": task.status,
            "notes": record.get("notes") or None,
            "implementationGuide": _field(record, "implementationGuide", "implementationNotes"),
            "verificationCriteria": _field(record, "verificationCriteria", "verificationCriteria"),
            "summary": task.summary or None,
            "completionSummary": record.get("completionSummary") or None,
            "completionDetails": record.get("completionDetails") or None,
            "analysisResult": record.get("analysisResult") or None,
            "relatedFiles": record.get("relatedFiles") or [],
            "dependencies": task.dependencies,
            "agent": task.agent or None,
            "metadata": _metadata(record),
            "createdAt": _field(record, "createdAt", "createdAt"),
            "updatedAt": _field(record, "updatedAt", "updatedAt"),
            "completedAt": task.completed_at or None,
        })

    return json.dumps(
        {
            "exportDate": exported_at.isoformat(),
            "version": EXPORT_VERSION,
            "initialRequest": initial_request or None,
            "overallSummary": summary or None,
            "statistics": status_counts(tasks),
            "tasks": entries,
        },
        indent=2,
        ensure_ascii=False,
    )


def export_tasks(
    tasks: Sequence[Task],
    fmt: ExportFormat,
    initial_request: Optional[str] = None,
    summary: Optional[str] = None,
    statuses: Optional[Iterable[str]] = None,
) -> str:
    """
    Render tasks in the requested format.

    Args:
        tasks: Tasks in file order
        fmt: Output format
        initial_request: Request that started the planning, if any
        summary: Overall summary of the task list, if any
        statuses: Only export tasks with one of these statuses; None exports all

    Returns:
        The rendered document
    """
    selected = filter_by_status(tasks, statuses)
    fmt = ExportFormat(fmt)
    if fmt is ExportFormat.CSV:
        return export_csv(selected, initial_request)
    if fmt is ExportFormat.MARKDOWN:
        return export_markdown(selected, initial_request, summary)
    return export_json(selected, initial_request, summary)
