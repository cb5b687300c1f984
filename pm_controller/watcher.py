"""
Task Watcher

Watches the request inbox and the in-progress task directory with a
watchdog Observer. Events arrive on the observer thread; each path is
held until it has been quiet for the stability threshold, then handed
to the asyncio loop.
"""

import asyncio
import logging
import threading
from pathlib import Path
from typing import Optional, Dict, Callable, Awaitable

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .task_store import TEMP_SUFFIX

logger = logging.getLogger("watcher")

STABILITY_THRESHOLD = 2.0

PathCallback = Callable[[Path], Awaitable[object]]


class _DirectoryHandler(FileSystemEventHandler):
    """Routes one directory's events into the debouncer."""

    def __init__(self, watcher: "TaskWatcher", kind: str, directory: Path, on_created: bool, on_modified: bool):
        super().__init__()
        self.watcher = watcher
        self.directory = Path(directory)
        self.kind = kind
        self.handle_created = on_created
        self.handle_modified = on_modified

    def _accept(self, path: str) -> None:
        if path.endswith(".md") and not path.endswith(TEMP_SUFFIX):
            self.watcher.schedule(self.kind, Path(path))

    def on_created(self, event):
        if self.handle_created and not event.is_directory:
            self._accept(event.src_path)

    def on_modified(self, event):
        if self.handle_modified and not event.is_directory:
            self._accept(event.src_path)

    def on_moved(self, event):
        # Atomic writes land as a rename from the temp file
        if not event.is_directory and Path(event.dest_path).parent == self.directory:
            self._accept(event.dest_path)


class TaskWatcher:
    """Debounced request/task file notifications onto an event loop."""

    def __init__(
        self,
        pending_dir: Path,
        in_progress_dir: Path,
        on_new_request: PathCallback,
        on_task_update: PathCallback,
        stability_threshold: float = STABILITY_THRESHOLD,
    ):
        self.pending_dir = Path(pending_dir)
        self.in_progress_dir = Path(in_progress_dir)
        self.callbacks: Dict[str, PathCallback] = {
            "request": on_new_request,
            "task": on_task_update,
        }
        self.stability_threshold = stability_threshold
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.observer: Optional[Observer] = None
        self._timers: Dict[Path, threading.Timer] = {}
        self._lock = threading.Lock()

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.loop = loop or asyncio.get_running_loop()
        self.pending_dir.mkdir(parents=True, exist_ok=True)
        self.in_progress_dir.mkdir(parents=True, exist_ok=True)

        self.observer = Observer()
        self.observer.schedule(
            _DirectoryHandler(self, "request", self.pending_dir, on_created=True, on_modified=False),
            str(self.pending_dir), recursive=False,
        )
        self.observer.schedule(
            _DirectoryHandler(self, "task", self.in_progress_dir, on_created=False, on_modified=True),
            str(self.in_progress_dir), recursive=False,
        )
        self.observer.daemon = True
        self.observer.start()
        logger.info(f"Watching {self.pending_dir} and {self.in_progress_dir}")
        self.scan_existing()

    def scan_existing(self) -> int:
        """Queue requests that were filed while nothing was watching."""
        existing = sorted(self.pending_dir.glob("*.md"))
        for path in existing:
            self.schedule("request", path)
        if existing:
            logger.info(f"Queued {len(existing)} existing request(s) from {self.pending_dir}")
        return len(existing)

    def stop(self) -> None:
        with self._lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
        if self.observer:
            self.observer.stop()
            self.observer.join(timeout=5)
            self.observer = None
        logger.info("File watcher stopped")

    def schedule(self, kind: str, path: Path) -> None:
        """Restart the quiet-period timer for a path."""
        with self._lock:
            existing = self._timers.pop(path, None)
            if existing:
                existing.cancel()
            timer = threading.Timer(self.stability_threshold, self._fire, args=(kind, path))
            timer.daemon = True
            self._timers[path] = timer
            timer.start()

    def _fire(self, kind: str, path: Path) -> None:
        with self._lock:
            self._timers.pop(path, None)
        if not path.exists():
            logger.debug(f"{path} vanished before dispatch")
            return
        self.dispatch(kind, path)

    def dispatch(self, kind: str, path: Path) -> None:
        if not self.loop or self.loop.is_closed():
            logger.warning(f"No event loop for {kind} event on {path}")
            return
        logger.info(f"Dispatching {kind} event: {path.name}")
        future = asyncio.run_coroutine_threadsafe(self.callbacks[kind](path), self.loop)
        future.add_done_callback(lambda f: self._report(kind, path, f))

    @staticmethod
    def _report(kind: str, path: Path, future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error:
            logger.error(f"Handler for {kind} event on {path} failed: {error}")
