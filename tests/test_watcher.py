"""
Unit Tests for the request/task file watcher.

The observer thread is not started; handlers and the debouncer are
driven directly.
"""

import asyncio
import time
from unittest.mock import MagicMock

from watchdog.events import FileCreatedEvent, FileModifiedEvent, FileMovedEvent

from pm_controller.watcher import TaskWatcher, _DirectoryHandler

from tests.conftest import async_test


async def ignore(path):
    return None


def make_watcher(tmp_path, threshold=0.05, on_request=ignore, on_task=ignore):
    return TaskWatcher(
        tmp_path / "requests" / "pending",
        tmp_path / "tasks" / "in-progress",
        on_request,
        on_task,
        stability_threshold=threshold,
    )


class TestDirectoryHandler:
    """Tests for event filtering."""

    def test_created_markdown_only(self, tmp_path):
        watcher = MagicMock()
        handler = _DirectoryHandler(watcher, "request", tmp_path, on_created=True, on_modified=False)
        handler.on_created(FileCreatedEvent(str(tmp_path / "REQ-1.md")))
        handler.on_created(FileCreatedEvent(str(tmp_path / "REQ-1.md.tmp")))
        handler.on_created(FileCreatedEvent(str(tmp_path / "notes.txt")))
        handler.on_modified(FileModifiedEvent(str(tmp_path / "REQ-1.md")))
        watcher.schedule.assert_called_once_with("request", tmp_path / "REQ-1.md")

    def test_atomic_rename_into_directory(self, tmp_path):
        """A temp file renamed into place counts as a new file."""
        watcher = MagicMock()
        handler = _DirectoryHandler(watcher, "task", tmp_path, on_created=False, on_modified=True)
        handler.on_moved(FileMovedEvent(str(tmp_path / "T.md.tmp"), str(tmp_path / "T.md")))
        handler.on_moved(FileMovedEvent(str(tmp_path / "T2.md"), str(tmp_path / "other" / "T2.md")))
        watcher.schedule.assert_called_once_with("task", tmp_path / "T.md")


class TestDebounce:
    """Tests for the quiet-period timer."""

    def test_burst_fires_once(self, tmp_path):
        watcher = make_watcher(tmp_path)
        watcher.dispatch = MagicMock()
        path = tmp_path / "REQ-1.md"
        path.write_text("x")
        for _ in range(3):
            watcher.schedule("request", path)
        time.sleep(0.3)
        watcher.dispatch.assert_called_once_with("request", path)

    def test_vanished_file_not_dispatched(self, tmp_path):
        watcher = make_watcher(tmp_path)
        watcher.dispatch = MagicMock()
        watcher.schedule("request", tmp_path / "gone.md")
        time.sleep(0.2)
        watcher.dispatch.assert_not_called()

    def test_stop_cancels_timers(self, tmp_path):
        watcher = make_watcher(tmp_path, threshold=10)
        path = tmp_path / "REQ-1.md"
        watcher.schedule("request", path)
        watcher.stop()
        assert watcher._timers == {}


class TestDispatch:
    """Tests for handing events to the event loop."""

    @async_test
    async def test_dispatch_runs_callback_on_loop(self, tmp_path):
        seen = []

        async def on_request(path):
            seen.append(path)

        watcher = make_watcher(tmp_path, on_request=on_request)
        watcher.loop = asyncio.get_running_loop()
        watcher.dispatch("request", tmp_path / "REQ-1.md")
        await asyncio.sleep(0.05)
        assert seen == [tmp_path / "REQ-1.md"]

    def test_dispatch_without_loop(self, tmp_path):
        watcher = make_watcher(tmp_path)
        watcher.dispatch("task", tmp_path / "T.md")


class TestStartup:
    """Tests for requests filed while the watcher was down."""

    def test_scan_existing_queues_pending_requests(self, tmp_path):
        watcher = make_watcher(tmp_path)
        watcher.dispatch = MagicMock()
        watcher.pending_dir.mkdir(parents=True)
        (watcher.pending_dir / "REQ-1.md").write_text("x")
        (watcher.pending_dir / "REQ-2.md.tmp").write_text("x")

        assert watcher.scan_existing() == 1
        time.sleep(0.3)
        watcher.dispatch.assert_called_once_with("request", watcher.pending_dir / "REQ-1.md")

    @async_test
    async def test_start_dispatches_existing_request(self, tmp_path):
        watcher = make_watcher(tmp_path)
        watcher.dispatch = MagicMock()
        watcher.pending_dir.mkdir(parents=True)
        path = watcher.pending_dir / "REQ-1.md"
        path.write_text("x")

        watcher.start()
        try:
            await asyncio.sleep(0.3)
        finally:
            watcher.stop()
        watcher.dispatch.assert_called_once_with("request", path)
