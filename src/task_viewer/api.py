"""
FastAPI backend for the Shrimp Task Viewer.

Serves the dashboard page and a JSON API over the registered projects'
task files: task CRUD, grouped and flat views, dashboard statistics, exports,
history snapshots, archives, agent files and project context. A WebSocket
per project pushes `tasks.changed` events when a task file changes on disk.
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError

from .agents import (
    AgentError,
    AgentNotFoundError,
    list_global_agents,
    list_project_agents,
    read_agent_file,
    write_agent_file,
)
from .aggregation import build_hierarchy
from .context import context_signature, load_project_context
from .dashboard import compute_project_stats, project
from .export import EXPORT_MEDIA, ExportFormat, export_tasks
from .filters import filter_and_group, filter_tasks, sort_tasks, unique_story_keys
from .models import (
    AgentContentUpdate,
    AgentInfo,
    Archive,
    ArchiveCreateRequest,
    BulkStatusRequest,
    BulkUpdateResult,
    CacheClearRequest,
    DashboardStats,
    FileStats,
    FilterState,
    GlobalSettings,
    HealthResponse,
    HistoryEntry,
    ImportRequest,
    Profile,
    ProfileCreateRequest,
    ProfileUpdateRequest,
    ProjectContext,
    SaveTasksRequest,
    StoryHierarchy,
    Task,
    TaskSnapshot,
    TaskUpdateRequest,
    create_success_response,
)
from .profiles import ProfileError, ProfileNotFoundError, ProfileRegistry
from .stats_cache import get_stats_cache
from .store import (
    ArchiveNotFoundError,
    EmptyArchiveError,
    HistoryEntryNotFoundError,
    InvalidHistoryEntryError,
    TaskFileParseError,
    TaskNotFoundError,
    TaskStore,
    TaskStoreError,
)
from .watcher import ConnectionManager, TaskFileWatcher, file_signature

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_FILE = "~/.shrimp-task-viewer-settings.json"
DEFAULT_GLOBAL_SETTINGS_FILE = "~/.shrimp-task-viewer-global-settings.json"
DEFAULT_WATCH_INTERVAL = 2.0

# Status code for each domain error; subclasses not listed inherit their parent's
ERROR_STATUS = {
    TaskFileParseError: 400,
    InvalidHistoryEntryError: 400,
    EmptyArchiveError: 400,
    ValidationError: 400,
    ProfileError: 400,
    AgentError: 400,
    TaskNotFoundError: 404,
    HistoryEntryNotFoundError: 404,
    ArchiveNotFoundError: 404,
    ProfileNotFoundError: 404,
    AgentNotFoundError: 404,
    TaskStoreError: 500,
}

# Global instances for dependency injection
registry: Optional[ProfileRegistry] = None
watcher: Optional[TaskFileWatcher] = None
connection_manager = ConnectionManager()


def settings_file() -> str:
    return os.getenv("SHRIMP_VIEWER_SETTINGS", DEFAULT_SETTINGS_FILE)


def global_settings_file() -> str:
    return os.getenv("SHRIMP_VIEWER_GLOBAL_SETTINGS", DEFAULT_GLOBAL_SETTINGS_FILE)


def watch_interval() -> float:
    try:
        return float(os.getenv("SHRIMP_VIEWER_WATCH_INTERVAL", str(DEFAULT_WATCH_INTERVAL)))
    except ValueError:
        return DEFAULT_WATCH_INTERVAL


def get_registry() -> ProfileRegistry:
    """
    FastAPI dependency to provide the profile registry.

    Raises:
        HTTPException: 503 if the registry has not been loaded
    """
    if registry is None:
        raise HTTPException(status_code=503, detail="Project registry not available")
    return registry


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the project registry and run the task file watcher while serving."""
    global registry, watcher

    registry = ProfileRegistry(settings_file(), global_settings_file())
    watcher = TaskFileWatcher(connection_manager, get_stats_cache(), interval=watch_interval())
    for profile in registry.list():
        if profile.task_file:
            watcher.register(profile.id, profile.task_file, profile.project_root)
    await watcher.start()

    logger.info(f"Shrimp Task Viewer starting with {len(registry.list())} projects")

    yield

    try:
        await watcher.stop()
    except Exception as e:
        logger.error(f"Error stopping task file watcher: {e}")
    watcher = None


app = FastAPI(
    title="Shrimp Task Viewer",
    description="Dashboard and JSON API over Shrimp task manager task files",
    version="2.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

static_dir = Path(__file__).parent / "static"
if static_dir.is_dir():
    app.mount("/static", StaticFiles(directory=str(static_dir)), name="static")
    logger.info(f"Static files served from: {static_dir}")
else:
    logger.warning(f"Static file serving not available: {static_dir} not found")


def status_for(exc: Exception) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


async def domain_error_handler(request: Request, exc: Exception):
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({status_code}): {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


for _error_class in (TaskStoreError, ProfileError, AgentError, ValidationError):
    app.add_exception_handler(_error_class, domain_error_handler)


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    """Global exception handler for unhandled errors."""
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Helpers

def _store_for(profiles: ProfileRegistry, project_id: str) -> TaskStore:
    profile = profiles.get(project_id)
    if not profile.task_file:
        raise ProfileError(f"Project {project_id} has no task file configured")
    return TaskStore(profile.task_file, project_id=profile.id)


def _project_root(profile: Profile) -> str:
    if not profile.project_root:
        raise ProfileError(f"Project {profile.id} has no project root configured")
    return profile.project_root


def _tasks_changed(project_id: str) -> None:
    """Drop cached statistics after a write to the project's task file."""
    get_stats_cache().invalidate_project(project_id)


def source_signature(profile: Profile) -> Tuple[Any, ...]:
    """Signature of every file the cached views of a project are built from."""
    task_file = Path(profile.task_file).expanduser() if profile.task_file else None
    return (file_signature(task_file) if task_file else None, context_signature(profile.project_root))


def _watch(profile: Profile) -> None:
    if watcher is not None and profile.task_file:
        watcher.register(profile.id, profile.task_file, profile.project_root)


def _filter_state(q: str, status: str, story: str) -> FilterState:
    try:
        return FilterState(global_filter_text=q, status_filter=status, story_filter=story)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors()[0]["msg"])


# Service routes

@app.get("/healthz", response_model=HealthResponse)
async def health_check(profiles: ProfileRegistry = Depends(get_registry)):
    return HealthResponse(
        status="healthy",
        projects=len(profiles.list()),
        active_websocket_connections=connection_manager.get_connection_count(),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@app.get("/")
async def dashboard():
    """Serve the dashboard page."""
    dashboard_file = static_dir / "index.html"
    if dashboard_file.exists():
        return FileResponse(dashboard_file)
    return {"message": "Dashboard not available", "detail": "Static files not found"}


# Projects

@app.get("/api/projects")
async def list_projects(profiles: ProfileRegistry = Depends(get_registry)) -> List[Dict[str, Any]]:
    return [profile.to_record() for profile in profiles.list()]


@app.post("/api/projects")
async def add_project(request: ProfileCreateRequest, profiles: ProfileRegistry = Depends(get_registry)):
    profile = profiles.add(request.name, request.file_path, request.project_root)
    _watch(profile)
    _tasks_changed(profile.id)
    return profile.to_record()


@app.put("/api/projects/{project_id}")
async def update_project(
    project_id: str, request: ProfileUpdateRequest, profiles: ProfileRegistry = Depends(get_registry)
):
    profile = profiles.update(
        project_id,
        name=request.name,
        project_root=request.project_root,
        task_path=request.task_path,
    )
    if request.task_path is not None:
        _watch(profile)
    _tasks_changed(project_id)
    return profile.to_record()


@app.delete("/api/projects/{project_id}")
async def remove_project(project_id: str, profiles: ProfileRegistry = Depends(get_registry)):
    profiles.get(project_id)
    profiles.remove(project_id)
    if watcher is not None:
        watcher.unregister(project_id)
    _tasks_changed(project_id)
    return create_success_response(f"Project {project_id} removed")


@app.get("/api/global-settings", response_model=GlobalSettings)
async def get_global_settings(profiles: ProfileRegistry = Depends(get_registry)):
    return profiles.load_global_settings()


@app.put("/api/global-settings", response_model=GlobalSettings)
async def update_global_settings(updates: Dict[str, Any], profiles: ProfileRegistry = Depends(get_registry)):
    return profiles.save_global_settings(updates)


# Stats cache (registered before the /api/tasks/{project_id} routes)

@app.get("/api/tasks/cache-status")
async def cache_status():
    return get_stats_cache().get_stats()


@app.post("/api/tasks/cache-clear")
async def cache_clear(request: Optional[CacheClearRequest] = None):
    """Drop cached views of one project, or of every project when none is given."""
    cache = get_stats_cache()
    if request is not None and request.project_id:
        count = cache.invalidate_project(request.project_id)
    else:
        count = cache.clear()
    return create_success_response(
        f"Cache cleared successfully: {count} entries",
        {"count": count, "projectId": request.project_id if request and request.project_id else "all"},
    )


# Tasks

@app.get("/api/tasks/{project_id}", response_model=TaskSnapshot)
async def load_tasks(project_id: str, profiles: ProfileRegistry = Depends(get_registry)):
    """
    Load a project's tasks.

    A task file that has not been created yet gives an empty list with
    `exists: false` and an explanatory message instead of an error.
    """
    return _store_for(profiles, project_id).load()


@app.put("/api/tasks/{project_id}")
async def save_tasks(project_id: str, request: SaveTasksRequest, profiles: ProfileRegistry = Depends(get_registry)):
    document = _store_for(profiles, project_id).save(request.tasks)
    _tasks_changed(project_id)
    return create_success_response("Tasks saved", {"taskCount": len(document.tasks)})


@app.put("/api/tasks/{project_id}/tasks/{task_id}", response_model=Task)
async def update_task(
    project_id: str, task_id: str, request: TaskUpdateRequest, profiles: ProfileRegistry = Depends(get_registry)
):
    task = _store_for(profiles, project_id).update_task(task_id, request.updates)
    _tasks_changed(project_id)
    return task


@app.delete("/api/tasks/{project_id}/tasks/{task_id}")
async def delete_task(project_id: str, task_id: str, profiles: ProfileRegistry = Depends(get_registry)):
    _store_for(profiles, project_id).delete_task(task_id)
    _tasks_changed(project_id)
    return create_success_response(f"Task {task_id} deleted")


@app.put("/api/tasks/{project_id}/bulk-status", response_model=BulkUpdateResult)
async def bulk_status_update(
    project_id: str, request: BulkStatusRequest, profiles: ProfileRegistry = Depends(get_registry)
):
    result = _store_for(profiles, project_id).bulk_status_update(request.task_ids, request.new_status)
    if result.updated_count:
        _tasks_changed(project_id)
    return result


@app.get("/api/tasks/{project_id}/grouped")
async def grouped_tasks(
    project_id: str,
    q: str = "",
    status: str = "all",
    story: str = "all",
    profiles: ProfileRegistry = Depends(get_registry),
):
    """
    Story groups for the accordion view, built from the filtered task list.

    `storyKeys` lists every story key in the unfiltered list for the story
    filter dropdown.
    """
    filters = _filter_state(q, status, story)
    snapshot = _store_for(profiles, project_id).load()
    groups = filter_and_group(snapshot.tasks, filters)
    return {
        "groups": [group.model_dump(by_alias=True) for group in groups],
        "storyKeys": unique_story_keys(snapshot.tasks),
        "totalTasks": len(snapshot.tasks),
        "visibleTasks": sum(group.stats.total for group in groups),
        "exists": snapshot.exists,
    }


@app.get("/api/tasks/{project_id}/table")
async def table_tasks(
    project_id: str,
    q: str = "",
    status: str = "all",
    story: str = "all",
    sort: str = "name",
    desc: bool = False,
    profiles: ProfileRegistry = Depends(get_registry),
):
    filters = _filter_state(q, status, story)
    snapshot = _store_for(profiles, project_id).load()
    try:
        tasks = sort_tasks(filter_tasks(snapshot.tasks, filters), field=sort, descending=desc)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "tasks": [task.model_dump(by_alias=True, exclude_unset=True) for task in tasks],
        "totalTasks": len(snapshot.tasks),
    }


@app.get("/api/tasks/{project_id}/dashboard", response_model=DashboardStats)
async def dashboard_stats(project_id: str, profiles: ProfileRegistry = Depends(get_registry)):
    profile = profiles.get(project_id)
    snapshot = _store_for(profiles, project_id).load()
    context = load_project_context(profile.project_root)
    return project(context.epics, context.stories, snapshot.tasks, context.verifications)


@app.get("/api/tasks/{project_id}/dashboard-stats")
async def extended_stats(project_id: str, profiles: ProfileRegistry = Depends(get_registry)):
    profile = profiles.get(project_id)
    signature = source_signature(profile)
    cache = get_stats_cache()
    cached = cache.get("dashboard-stats", project_id, signature)
    if cached is not None:
        return cached

    snapshot = _store_for(profiles, project_id).load()
    context = load_project_context(profile.project_root)
    stats = compute_project_stats(snapshot.tasks, context.stories, context.epics)
    cache.set("dashboard-stats", project_id, stats, signature)
    return stats


@app.get("/api/tasks/{project_id}/hierarchy", response_model=StoryHierarchy)
async def task_hierarchy(project_id: str, profiles: ProfileRegistry = Depends(get_registry)):
    profile = profiles.get(project_id)
    signature = source_signature(profile)
    cache = get_stats_cache()
    cached = cache.get("hierarchy", project_id, signature)
    if cached is not None:
        return cached

    snapshot = _store_for(profiles, project_id).load()
    context = load_project_context(profile.project_root)
    hierarchy = build_hierarchy(snapshot.tasks, context.stories, context.epics)
    cache.set("hierarchy", project_id, hierarchy, signature)
    return hierarchy


@app.post("/api/tasks/{project_id}/import")
async def import_archive(project_id: str, request: ImportRequest, profiles: ProfileRegistry = Depends(get_registry)):
    """Append archived tasks to the current list, or replace it with them."""
    document = _store_for(profiles, project_id).import_archive(request.tasks, request.mode)
    _tasks_changed(project_id)
    return create_success_response(
        f"Imported {len(request.tasks)} tasks ({request.mode.value})",
        {"taskCount": len(document.tasks)},
    )


@app.get("/api/tasks/{project_id}/export")
async def export_project_tasks(
    project_id: str,
    format: ExportFormat = ExportFormat.JSON,
    status: Optional[List[str]] = Query(None),
    profiles: ProfileRegistry = Depends(get_registry),
):
    """Download the task list as CSV, Markdown or JSON, optionally limited to some statuses."""
    snapshot = _store_for(profiles, project_id).load()
    content = export_tasks(snapshot.tasks, format, snapshot.initial_request, snapshot.summary, status)
    extension, media_type = EXPORT_MEDIA[format]
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="tasks-{project_id}.{extension}"'},
    )


# Archives

@app.get("/api/archives/{project_id}", response_model=List[Archive])
async def list_archives(project_id: str, profiles: ProfileRegistry = Depends(get_registry)):
    return _store_for(profiles, project_id).list_archives()


@app.post("/api/archives/{project_id}", response_model=Archive)
async def create_archive(
    project_id: str, request: ArchiveCreateRequest, profiles: ProfileRegistry = Depends(get_registry)
):
    profile = profiles.get(project_id)
    return _store_for(profiles, project_id).create_archive(
        name=request.name or profile.name, initial_request=request.initial_request
    )


@app.get("/api/archives/{project_id}/{archive_id}", response_model=Archive)
async def get_archive(project_id: str, archive_id: str, profiles: ProfileRegistry = Depends(get_registry)):
    return _store_for(profiles, project_id).get_archive(archive_id)


@app.delete("/api/archives/{project_id}/{archive_id}")
async def delete_archive(project_id: str, archive_id: str, profiles: ProfileRegistry = Depends(get_registry)):
    _store_for(profiles, project_id).delete_archive(archive_id)
    return create_success_response(f"Archive {archive_id} deleted")


# History

@app.get("/api/history/{project_id}")
async def list_history(project_id: str, profiles: ProfileRegistry = Depends(get_registry)):
    entries: List[HistoryEntry] = _store_for(profiles, project_id).list_history()
    return {"history": [entry.model_dump(by_alias=True) for entry in entries]}


@app.get("/api/history/{project_id}/{filename}")
async def load_history_entry(project_id: str, filename: str, profiles: ProfileRegistry = Depends(get_registry)):
    return _store_for(profiles, project_id).load_history_entry(filename)


@app.delete("/api/history/{project_id}/{filename}")
async def delete_history_entry(project_id: str, filename: str, profiles: ProfileRegistry = Depends(get_registry)):
    _store_for(profiles, project_id).delete_history_entry(filename)
    return create_success_response("History entry deleted successfully")


@app.get("/api/file-stats/{project_id}", response_model=FileStats)
async def file_stats(project_id: str, profiles: ProfileRegistry = Depends(get_registry)):
    return _store_for(profiles, project_id).file_stats()


# Agents and project context

@app.get("/api/agents/project/{project_id}", response_model=List[AgentInfo])
async def project_agents(project_id: str, profiles: ProfileRegistry = Depends(get_registry)):
    return list_project_agents(_project_root(profiles.get(project_id)))


@app.get("/api/agents/project/{project_id}/{name}", response_model=AgentInfo)
async def get_project_agent(project_id: str, name: str, profiles: ProfileRegistry = Depends(get_registry)):
    return read_agent_file(_project_root(profiles.get(project_id)), name)


@app.put("/api/agents/project/{project_id}/{name}", response_model=AgentInfo)
async def save_project_agent(
    project_id: str, name: str, request: AgentContentUpdate, profiles: ProfileRegistry = Depends(get_registry)
):
    return write_agent_file(_project_root(profiles.get(project_id)), name, request.content)


@app.get("/api/agents/global", response_model=List[AgentInfo])
async def global_agents(profiles: ProfileRegistry = Depends(get_registry)):
    return list_global_agents(profiles.load_global_settings().claude_folder_path)


@app.get("/api/context/{project_id}", response_model=ProjectContext)
async def project_context(project_id: str, profiles: ProfileRegistry = Depends(get_registry)):
    return load_project_context(profiles.get(project_id).project_root)


# Live updates

@app.websocket("/ws/tasks/{project_id}")
async def task_updates(websocket: WebSocket, project_id: str):
    """Subscribe to `tasks.changed` events for one project."""
    if registry is not None:
        try:
            registry.get(project_id)
        except ProfileNotFoundError:
            await websocket.close(code=1008)
            return

    await connection_manager.connect(websocket, project_id)
    try:
        await websocket.send_json({"type": "subscribed", "projectId": project_id})
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        await connection_manager.disconnect(websocket, project_id)
