"""
Live updates for open dashboards.

`TaskFileWatcher` polls the registered task files, and the epic, story and
verification files beside them, from a background asyncio task. When any of
them is modified, created or removed, the project's cached statistics are
dropped and a `tasks.changed` event goes out through the `ConnectionManager`
to every WebSocket subscribed to that project.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from fastapi import WebSocket

from .context import context_signature
from .stats_cache import StatsCache

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0

# (mtime_ns, size) of a task file, or None while the file does not exist
FileSignature = Optional[Tuple[int, int]]

# Task file signature plus the context files signature
ProjectSignature = Tuple[FileSignature, Tuple[Tuple[str, int, int], ...]]


class ConnectionManager:
    """
    WebSocket connection manager with per-project subscriptions.

    Broadcasts go out in parallel with asyncio.gather; a client whose send
    fails is dropped from the registry.
    """

    def __init__(self):
        self.active_connections: Dict[str, Set[WebSocket]] = {}
        self._connection_lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, project_id: str):
        """Accept a WebSocket and subscribe it to one project's events."""
        await websocket.accept()
        async with self._connection_lock:
            self.active_connections.setdefault(project_id, set()).add(websocket)
        logger.info(f"WebSocket connected to {project_id}. Total connections: {self.get_connection_count()}")

    async def disconnect(self, websocket: WebSocket, project_id: Optional[str] = None):
        """Remove a WebSocket from one project, or from every project when none is given."""
        async with self._connection_lock:
            project_ids = [project_id] if project_id is not None else list(self.active_connections)
            for pid in project_ids:
                subscribers = self.active_connections.get(pid)
                if subscribers is None:
                    continue
                subscribers.discard(websocket)
                if not subscribers:
                    del self.active_connections[pid]
        logger.info(f"WebSocket disconnected. Total connections: {self.get_connection_count()}")

    async def broadcast(self, project_id: str, event_data: Dict[str, Any]) -> int:
        """
        Send an event to every client subscribed to `project_id`.

        Returns:
            Number of clients the event reached
        """
        async with self._connection_lock:
            subscribers = list(self.active_connections.get(project_id, ()))

        if not subscribers:
            logger.debug(f"No active connections for {project_id}")
            return 0

        message = json.dumps(event_data)
        results = await asyncio.gather(
            *(self._send_safe(websocket, message) for websocket in subscribers),
            return_exceptions=True,
        )
        successful_broadcasts = sum(1 for result in results if result is True)
        logger.info(f"Broadcast to {project_id}: {successful_broadcasts}/{len(subscribers)} successful")
        return successful_broadcasts

    async def _send_safe(self, websocket: WebSocket, message: str) -> bool:
        try:
            await websocket.send_text(message)
            return True
        except Exception as e:
            logger.warning(f"Failed to send message to WebSocket: {e}")
            await self.disconnect(websocket)
            return False

    def get_connection_count(self) -> int:
        """Number of active subscriptions across all projects."""
        return sum(len(subscribers) for subscribers in self.active_connections.values())


def file_signature(path: Path) -> FileSignature:
    try:
        stat = path.stat()
    except OSError:
        return None
    return (stat.st_mtime_ns, stat.st_size)


def change_event(project_id: str) -> Dict[str, Any]:
    return {
        "type": "tasks.changed",
        "projectId": project_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class TaskFileWatcher:
    """
    Polls task files for changes.

    Files are registered per project; the current signature is recorded at
    registration so only later changes are reported.
    """

    def __init__(
        self,
        connection_manager: Optional[ConnectionManager] = None,
        cache: Optional[StatsCache] = None,
        interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.connection_manager = connection_manager
        self.cache = cache
        self.interval = interval
        self._files: Dict[str, Path] = {}
        self._roots: Dict[str, Optional[Path]] = {}
        self._signatures: Dict[str, ProjectSignature] = {}
        self._task: Optional[asyncio.Task] = None
        self.shutdown_event = asyncio.Event()

    def register(
        self,
        project_id: str,
        task_file: Union[str, Path],
        project_root: Optional[Union[str, Path]] = None,
    ) -> None:
        path = Path(task_file).expanduser()
        self._files[project_id] = path
        self._roots[project_id] = Path(project_root).expanduser() if project_root else None
        self._signatures[project_id] = self._signature(project_id)
        logger.debug(f"Watching {path} for project {project_id}")

    def unregister(self, project_id: str) -> None:
        self._files.pop(project_id, None)
        self._roots.pop(project_id, None)
        self._signatures.pop(project_id, None)

    def _signature(self, project_id: str) -> ProjectSignature:
        return (file_signature(self._files[project_id]), context_signature(self._roots.get(project_id)))

    @property
    def watched(self) -> Dict[str, Path]:
        return dict(self._files)

    def poll_once(self) -> List[str]:
        """
        Check every registered file once.

        Returns:
            Ids of the projects whose task file or context files changed,
            appeared or disappeared since the previous poll
        """
        changed = []
        for project_id in list(self._files):
            current = self._signature(project_id)
            if current != self._signatures.get(project_id):
                self._signatures[project_id] = current
                changed.append(project_id)
        return changed

    async def notify(self, project_id: str) -> None:
        """Drop the project's cached stats and tell its subscribers."""
        if self.cache is not None:
            self.cache.invalidate_project(project_id)
        if self.connection_manager is not None:
            await self.connection_manager.broadcast(project_id, change_event(project_id))

    async def run(self) -> None:
        logger.info(f"Task file watcher started (interval={self.interval}s)")

        while not self.shutdown_event.is_set():
            try:
                for project_id in self.poll_once():
                    logger.info(f"Task file changed for project {project_id}")
                    await self.notify(project_id)
            except Exception as e:
                logger.error(f"Task file watcher error: {e}")

            try:
                await asyncio.wait_for(self.shutdown_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                continue

        logger.info("Task file watcher stopped")

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self.shutdown_event.clear()
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Stop the polling task, waiting at most 10 seconds for it to exit."""
        self.shutdown_event.set()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._task, timeout=10.0)
        except asyncio.TimeoutError:
            logger.warning("Task file watcher shutdown timeout")
            self._task.cancel()
        self._task = None
