"""
Tests for WebSocket subscriptions and task file change detection.
"""

import asyncio
import json
import os
from unittest.mock import AsyncMock, Mock

import pytest

from task_viewer.stats_cache import StatsCache
from task_viewer.watcher import ConnectionManager, TaskFileWatcher, change_event


def bump_mtime(path):
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))


class TestConnectionManager:

    @pytest.mark.asyncio
    async def test_broadcast_reaches_only_project_subscribers(self):
        manager = ConnectionManager()
        demo_ws, other_ws = AsyncMock(), AsyncMock()
        await manager.connect(demo_ws, "demo")
        await manager.connect(other_ws, "other")

        delivered = await manager.broadcast("demo", {"type": "tasks.changed"})

        assert delivered == 1
        demo_ws.accept.assert_awaited_once()
        demo_ws.send_text.assert_awaited_once_with(json.dumps({"type": "tasks.changed"}))
        other_ws.send_text.assert_not_awaited()
        assert manager.get_connection_count() == 2

    @pytest.mark.asyncio
    async def test_failed_send_drops_connection(self):
        manager = ConnectionManager()
        broken = AsyncMock()
        broken.send_text.side_effect = RuntimeError("socket closed")
        await manager.connect(broken, "demo")

        delivered = await manager.broadcast("demo", {"type": "tasks.changed"})

        assert delivered == 0
        assert manager.get_connection_count() == 0

    @pytest.mark.asyncio
    async def test_disconnect(self):
        manager = ConnectionManager()
        websocket = AsyncMock()
        await manager.connect(websocket, "demo")

        await manager.disconnect(websocket, "demo")

        assert manager.active_connections == {}
        assert await manager.broadcast("demo", {}) == 0


class TestTaskFileWatcher:

    def test_registration_records_baseline(self, task_file):
        watcher = TaskFileWatcher()
        watcher.register("demo", task_file)

        assert watcher.poll_once() == []

    def test_detects_modification_once(self, task_file):
        watcher = TaskFileWatcher()
        watcher.register("demo", task_file)

        bump_mtime(task_file)

        assert watcher.poll_once() == ["demo"]
        assert watcher.poll_once() == []

    def test_detects_creation_and_removal(self, tmp_path):
        path = tmp_path / "tasks.json"
        watcher = TaskFileWatcher()
        watcher.register("demo", path)

        path.write_text("[]", encoding="utf-8")
        assert watcher.poll_once() == ["demo"]

        path.unlink()
        assert watcher.poll_once() == ["demo"]

    def test_detects_context_file_changes(self, task_file, project_root):
        watcher = TaskFileWatcher()
        watcher.register("demo", task_file, project_root)
        assert watcher.poll_once() == []

        (project_root / "docs" / "stories" / "2.1.md").write_text("# Story 2.1: New\n", encoding="utf-8")
        assert watcher.poll_once() == ["demo"]

        (project_root / ".ai" / "verification" / "1.1.json").unlink()
        assert watcher.poll_once() == ["demo"]
        assert watcher.poll_once() == []

    def test_unregister(self, task_file):
        watcher = TaskFileWatcher()
        watcher.register("demo", task_file)
        watcher.unregister("demo")

        bump_mtime(task_file)

        assert watcher.poll_once() == []
        assert watcher.watched == {}

    @pytest.mark.asyncio
    async def test_notify_invalidates_cache_and_broadcasts(self):
        cache = StatsCache()
        cache.set("hierarchy", "demo", "stale")
        manager = Mock()
        manager.broadcast = AsyncMock(return_value=1)
        watcher = TaskFileWatcher(manager, cache)

        await watcher.notify("demo")

        assert cache.get("hierarchy", "demo") is None
        project_id, event = manager.broadcast.await_args.args
        assert project_id == "demo"
        assert event["type"] == "tasks.changed"
        assert event["projectId"] == "demo"

    @pytest.mark.asyncio
    async def test_background_loop_reports_changes(self, task_file):
        manager = Mock()
        manager.broadcast = AsyncMock(return_value=1)
        watcher = TaskFileWatcher(manager, interval=0.05)
        watcher.register("demo", task_file)

        await watcher.start()
        bump_mtime(task_file)
        for _ in range(40):
            if manager.broadcast.await_count:
                break
            await asyncio.sleep(0.05)
        await watcher.stop()

        assert manager.broadcast.await_count == 1


def test_change_event_shape():
    event = change_event("demo")
    assert set(event) == {"type", "projectId", "timestamp"}
