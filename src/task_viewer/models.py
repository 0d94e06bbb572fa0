"""
Pydantic models for Shrimp Task Viewer request/response validation.

Task records mirror the JSON written by the task manager: camelCase keys on
disk, snake_case attributes in Python. Record models keep unknown keys so a
load/save round trip never drops fields the viewer does not interpret.
"""

from typing import Optional, List, Dict, Any
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# Story key used for tasks whose `story` is missing or empty
NO_STORY = "No Story"


class TaskStatus(str, Enum):
    """Task status values written by the task manager."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class StatusFilter(str, Enum):
    """Status filter options; ALL passes every task."""

    ALL = "all"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ImportMode(str, Enum):
    """How archived tasks are merged into the current task list."""

    APPEND = "append"
    REPLACE = "replace"


class ApiModel(BaseModel):
    """Base for API payloads: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RecordModel(ApiModel):
    """Base for on-disk records; unknown keys are preserved."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_record(self) -> Dict[str, Any]:
        """Serialize back to the on-disk shape, omitting fields never set."""
        return self.model_dump(by_alias=True, exclude_unset=True)


# Task file records

def coerce_text(value: Any) -> Optional[str]:
    """Numbers become strings; any other non-text value is dropped."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


class Task(RecordModel):
    """Single task record. Only `id` is required; every display field is optional."""

    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    story: Optional[str] = None
    story_description: Optional[str] = None
    assigned_agent: Optional[str] = None
    agent: Optional[str] = None
    dependencies: List[Any] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    summary: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        """Hand-edited files sometimes carry numeric ids."""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator(
        "name", "description", "status", "priority", "story", "story_description",
        "assigned_agent", "agent", "created_at", "updated_at", "completed_at", "summary",
        mode="before",
    )
    @classmethod
    def coerce_text_fields(cls, v):
        return coerce_text(v)

    @field_validator("dependencies", mode="before")
    @classmethod
    def coerce_dependencies(cls, v):
        """`null` or a single value where a list belongs reads as no dependencies."""
        return v if isinstance(v, list) else []

    @property
    def agent_name(self) -> Optional[str]:
        """Assigned agent, accepting either key the task manager has used."""
        for value in (self.agent, self.assigned_agent):
            if value and value.strip():
                return value.strip()
        return None


class TaskDocument(RecordModel):
    """Current task file format: `{tasks, initialRequest?, summary?, ...}`."""

    tasks: List[Task] = Field(default_factory=list)
    initial_request: Optional[str] = None
    summary: Optional[str] = None
    summary_generated_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator("initial_request", "summary", "summary_generated_at", "created_at", "updated_at", mode="before")
    @classmethod
    def coerce_text_fields(cls, v):
        return coerce_text(v)


class TaskSnapshot(ApiModel):
    """Result of loading a project's task file."""

    tasks: List[Task] = Field(default_factory=list)
    initial_request: Optional[str] = None
    summary: Optional[str] = None
    summary_generated_at: Optional[str] = None
    exists: bool = True
    message: Optional[str] = None


# Externally supplied project context

class Epic(RecordModel):
    id: str
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None


class Story(RecordModel):
    id: str
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    epic: Optional[str] = None


class VerificationRecord(RecordModel):
    """Scored assessment of a story, keyed by story id."""

    story_id: str
    score: Optional[float] = None
    timestamp: Optional[str] = None


class ProjectContext(ApiModel):
    epics: List[Epic] = Field(default_factory=list)
    stories: List[Story] = Field(default_factory=list)
    verifications: Dict[str, VerificationRecord] = Field(default_factory=dict)


# Derived views

class GroupStats(ApiModel):
    """Status breakdown. completed + in_progress + pending == total."""

    total: int = 0
    completed: int = 0
    in_progress: int = 0
    pending: int = 0


class StoryGroup(ApiModel):
    """Tasks sharing a derived story key, with stats over exactly those tasks."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    key: str
    tasks: List[Task] = Field(default_factory=list)
    stats: GroupStats = Field(default_factory=GroupStats)
    completion_percentage: int = 0


class EpicNode(ApiModel):
    epic: Optional[Epic] = None
    stories: List[StoryGroup] = Field(default_factory=list)
    stats: GroupStats = Field(default_factory=GroupStats)
    completion_percentage: int = 0


class HierarchyMetrics(ApiModel):
    total_epics: int = 0
    total_stories: int = 0
    total_tasks: int = 0
    tasks_with_stories: int = 0
    stories_with_tasks: int = 0
    epics_with_stories: int = 0


class StoryHierarchy(ApiModel):
    epics: List[EpicNode] = Field(default_factory=list)
    unassigned: List[StoryGroup] = Field(default_factory=list)
    metrics: HierarchyMetrics = Field(default_factory=HierarchyMetrics)


class FilterState(ApiModel):
    """UI-session filter state. Neutral values make filtering an identity."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    global_filter_text: str = ""
    status_filter: str = StatusFilter.ALL.value
    story_filter: str = StatusFilter.ALL.value

    @field_validator("status_filter", mode="before")
    @classmethod
    def validate_status_filter(cls, v):
        """Accept enum members or their values; reject unknown statuses."""
        if isinstance(v, StatusFilter):
            return v.value
        valid = [s.value for s in StatusFilter]
        if v not in valid:
            raise ValueError(f"Status filter must be one of: {valid}")
        return v


class DashboardStats(ApiModel):
    """Top-level rollups. `average_score` is None when there is no verification data."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    total_epics: int = 0
    active_stories: int = 0
    total_tasks: int = 0
    pending_tasks: int = 0
    in_progress_tasks: int = 0
    completed_tasks: int = 0
    completion_rate: int = 0
    recent_activity: List[VerificationRecord] = Field(default_factory=list)
    average_score: Optional[int] = None


# History, archives, profiles

class HistoryEntry(ApiModel):
    filename: str
    timestamp: str
    task_count: int = 0
    stats: GroupStats = Field(default_factory=GroupStats)
    has_data: bool = False
    initial_request: Optional[str] = None
    summary: Optional[str] = None


class Archive(RecordModel):
    id: str
    timestamp: str
    project_id: str
    project_name: str = "Unknown Project"
    initial_request: str = ""
    tasks: List[Task] = Field(default_factory=list)
    stats: GroupStats = Field(default_factory=GroupStats)


class BulkUpdateResult(ApiModel):
    success: bool = True
    updated_count: int = 0
    message: str = ""
    updated_tasks: List[Dict[str, Any]] = Field(default_factory=list)


class FileStats(ApiModel):
    mtime: str
    size: int


class Profile(RecordModel):
    """A registered project: display name plus the task file it points at."""

    id: str
    name: Optional[str] = None
    path: Optional[str] = None
    project_root: Optional[str] = None
    task_path: Optional[str] = None
    file_path: Optional[str] = None

    @property
    def task_file(self) -> Optional[str]:
        return self.path or self.task_path or self.file_path


class GlobalSettings(RecordModel):
    claude_folder_path: str = ""
    last_updated: Optional[str] = None
    version: Optional[str] = None


class AgentMetadata(ApiModel):
    name: str = ""
    description: str = ""
    tools: List[str] = Field(default_factory=list)
    color: Optional[str] = None
    id: Optional[str] = None
    title: Optional[str] = None
    icon: Optional[str] = None
    when_to_use: Optional[str] = None
    is_bmad: bool = False


class AgentInfo(ApiModel):
    name: str
    path: str
    content: str = ""
    source: str = "claude"
    metadata: AgentMetadata = Field(default_factory=AgentMetadata)
    error: Optional[str] = None


# Request models

class ProfileCreateRequest(ApiModel):
    """Request model for registering a project."""

    name: str
    file_path: str
    project_root: Optional[str] = None

    @field_validator("name", "file_path")
    @classmethod
    def validate_not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError("Value cannot be empty")
        return v.strip()


class ProfileUpdateRequest(ApiModel):
    name: Optional[str] = None
    project_root: Optional[str] = None
    task_path: Optional[str] = None


class SaveTasksRequest(ApiModel):
    tasks: List[Dict[str, Any]]


class TaskUpdateRequest(ApiModel):
    updates: Dict[str, Any]

    @field_validator("updates")
    @classmethod
    def validate_updates(cls, v):
        """Task identity cannot be changed through an update."""
        if "id" in v:
            raise ValueError("Task id cannot be updated")
        return v


class BulkStatusRequest(ApiModel):
    task_ids: List[str]
    new_status: str

    @field_validator("new_status")
    @classmethod
    def validate_status(cls, v):
        valid_statuses = [s.value for s in TaskStatus]
        if v not in valid_statuses:
            raise ValueError(f"Status must be one of: {valid_statuses}")
        return v


class ImportRequest(ApiModel):
    tasks: List[Dict[str, Any]]
    mode: ImportMode = ImportMode.APPEND


class ArchiveCreateRequest(ApiModel):
    name: Optional[str] = None
    initial_request: str = ""


class CacheClearRequest(ApiModel):
    project_id: Optional[str] = None


class AgentContentUpdate(ApiModel):
    content: str


class HealthResponse(ApiModel):
    status: str
    projects: int
    active_websocket_connections: int
    timestamp: str


def create_success_response(message: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Create a standardized success response dictionary."""
    return {"success": True, "message": message, "data": data}
