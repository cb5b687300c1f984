"""
Task Store - Directory-Backed Persistence

Task files live in one directory per status under TASKS_DIR; request
documents live in one directory per review state under REQUESTS_DIR.
Moving a file between directories IS the state change.

Writes go to a temp file first and are swapped in with os.replace, so a
reader never sees a half-written task. A per-store re-entrant lock
serializes writers inside this process. Cross-process locking is out of
scope.
"""

import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple

from .task_model import (
    TaskStatus,
    TaskRecord,
    STATUS_TIMESTAMP_KEYS,
    can_transition,
    parse_task_file,
    render_task_file,
    append_progress_entry,
    append_section as append_markdown_section,
)

logger = logging.getLogger("task_store")

TEMP_SUFFIX = ".tmp"

# Lookup order when the status of a task is unknown
SEARCH_ORDER = [
    TaskStatus.INBOX,
    TaskStatus.BACKLOG,
    TaskStatus.IN_PROGRESS,
    TaskStatus.BLOCKED,
    TaskStatus.REVIEW,
    TaskStatus.COMPLETED,
    TaskStatus.ARCHIVE,
]


def write_atomic(path: Path, content: str) -> None:
    """Write content to path via a temp file and os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + TEMP_SUFFIX)
    with open(tmp_path, "w", encoding="utf-8") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


# -----------------------------------------------------------------------------
# Task Store
# -----------------------------------------------------------------------------
class TaskStore:
    """Task files grouped by status directory."""

    def __init__(self, tasks_dir: Path):
        self.tasks_dir = Path(tasks_dir)
        self._lock = threading.RLock()

    def ensure_directories(self) -> None:
        for status in TaskStatus:
            self.status_dir(status).mkdir(parents=True, exist_ok=True)

    def status_dir(self, status: TaskStatus) -> Path:
        return self.tasks_dir / status.value

    def _path_for(self, task_id: str, status: TaskStatus) -> Path:
        return self.status_dir(status) / f"{task_id}.md"

    def _read(self, path: Path, status: TaskStatus) -> Optional[TaskRecord]:
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Cannot read task file {path}: {e}")
            return None
        return parse_task_file(content, status, path)

    def _write(self, record: TaskRecord) -> None:
        path = self._path_for(record.task_id, record.status)
        write_atomic(path, record.render())
        record.path = path

    # -------------------------------------------------------------------------
    # READ Operations
    # -------------------------------------------------------------------------

    def get(self, task_id: str, status: Optional[TaskStatus] = None) -> Optional[TaskRecord]:
        """Read a task, optionally restricted to one status directory."""
        if status is None:
            return self.find(task_id)
        return self._read(self._path_for(task_id, status), status)

    def find(self, task_id: str) -> Optional[TaskRecord]:
        """Search every status directory for a task."""
        wanted = task_id.strip()
        for status in SEARCH_ORDER:
            path = self._path_for(wanted, status)
            if path.exists():
                return self._read(path, status)

        # Tolerate case differences in user-typed ids
        lowered = wanted.lower()
        for status in SEARCH_ORDER:
            directory = self.status_dir(status)
            if not directory.exists():
                continue
            for path in directory.glob("*.md"):
                if path.stem.lower() == lowered:
                    return self._read(path, status)
        return None

    def list(self, status: TaskStatus) -> List[TaskRecord]:
        """All tasks in a status directory, ordered by file name."""
        directory = self.status_dir(status)
        if not directory.exists():
            return []
        records = []
        for path in sorted(directory.glob("*.md")):
            record = self._read(path, status)
            if record:
                records.append(record)
        return records

    def counts(self) -> Dict[str, int]:
        """Number of task files per status."""
        result = {}
        for status in TaskStatus:
            directory = self.status_dir(status)
            result[status.value] = len(list(directory.glob("*.md"))) if directory.exists() else 0
        return result

    def exists(self, task_id: str) -> bool:
        return any(self._path_for(task_id, s).exists() for s in TaskStatus)

    # -------------------------------------------------------------------------
    # WRITE Operations
    # -------------------------------------------------------------------------

    def create(
        self,
        task_id: str,
        metadata: Dict[str, Any],
        body: str,
        status: TaskStatus = TaskStatus.BACKLOG,
    ) -> TaskRecord:
        """Create a new task file. Raises ValueError if the id is taken."""
        with self._lock:
            if self.exists(task_id):
                raise ValueError(f"Task {task_id} already exists")
            metadata = dict(metadata)
            metadata["id"] = task_id
            metadata["status"] = status.value
            record = TaskRecord(task_id=task_id, status=status, metadata=metadata, body=body)
            self._write(record)
            logger.info(f"Created task {task_id} in {status.value}")
            return record

    def transition(
        self,
        task_id: str,
        target: TaskStatus,
        actor: str = "system",
        note: Optional[str] = None,
        metadata_updates: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, str]:
        """
        Move a task to another status directory.

        Returns (success, message)
        """
        with self._lock:
            record = self.find(task_id)
            if not record:
                return False, f"Task {task_id} not found"

            current = record.status
            if current == target:
                return False, f"Task {task_id} is already {target.value}"

            allowed, reason = can_transition(current, target)
            if not allowed:
                logger.warning(f"Rejected move of {task_id}: {reason}")
                return False, reason

            source_path = record.path
            record.metadata["status"] = target.value
            timestamp_key = STATUS_TIMESTAMP_KEYS.get(target)
            now = datetime.utcnow().isoformat(timespec="seconds")
            if timestamp_key:
                record.metadata[timestamp_key] = now
            if metadata_updates:
                record.metadata.update(metadata_updates)

            message = f"Status {current.value} -> {target.value}"
            if note:
                message = f"{message}. {note}"
            record.body = append_progress_entry(record.body, actor, message, timestamp=now)

            record.status = target
            self._write(record)
            if source_path and source_path != record.path and source_path.exists():
                source_path.unlink()

            logger.info(f"Task {task_id}: {current.value} -> {target.value} by {actor}")
            return True, f"Task {task_id} moved to {target.value}"

    def append_progress(
        self,
        task_id: str,
        actor: str,
        message: str,
        details: Optional[str] = None,
    ) -> bool:
        """Append a progress log entry in place."""
        with self._lock:
            record = self.find(task_id)
            if not record:
                logger.warning(f"Cannot log progress, task {task_id} not found")
                return False
            record.body = append_progress_entry(record.body, actor, message, details=details)
            self._write(record)
            return True

    def update_metadata(self, task_id: str, **updates: Any) -> bool:
        """Rewrite front matter keys in place."""
        with self._lock:
            record = self.find(task_id)
            if not record:
                return False
            record.metadata.update(updates)
            self._write(record)
            return True

    def archive_completed(self, older_than_days: int = 7) -> List[str]:
        """Move completed tasks older than the threshold into archive."""
        cutoff = datetime.utcnow() - timedelta(days=older_than_days)
        archived = []
        for record in self.list(TaskStatus.COMPLETED):
            completed_at = record.metadata.get("completed_at")
            try:
                when = datetime.fromisoformat(str(completed_at)) if completed_at else None
            except ValueError:
                when = None
            if when is None and record.path:
                when = datetime.utcfromtimestamp(record.path.stat().st_mtime)
            if when and when < cutoff:
                ok, _ = self.transition(record.task_id, TaskStatus.ARCHIVE, actor="PM", note="Auto-archived")
                if ok:
                    archived.append(record.task_id)
        return archived


# -----------------------------------------------------------------------------
# Request Store
# -----------------------------------------------------------------------------
class RequestStatus(str, Enum):
    """Review state of a feature request document."""
    PENDING = "pending"
    IN_ANALYSIS = "in-analysis"
    APPROVED = "approved"
    REJECTED = "rejected"


REQUEST_TITLE_LENGTH = 50
STATUS_LINE_RE = re.compile(r"^\*\*Status:\*\*.*$", re.MULTILINE)


@dataclass
class RequestRecord:
    """A feature request document."""
    request_id: str
    status: RequestStatus
    content: str
    path: Optional[Path] = None

    @property
    def title(self) -> str:
        for line in self.content.splitlines():
            if line.startswith("# "):
                return line[2:].replace("Feature Request:", "").strip()
        return self.request_id

    @property
    def number(self) -> str:
        return self.request_id.replace("REQ-", "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "status": self.status.value,
            "title": self.title,
        }


def request_title(description: str) -> str:
    """First line of the description, heading marks stripped, 50 chars."""
    first_line = description.strip().splitlines()[0] if description.strip() else "Untitled request"
    return first_line.lstrip("#").strip()[:REQUEST_TITLE_LENGTH] or "Untitled request"


class RequestStore:
    """Request documents grouped by review-state directory."""

    def __init__(self, requests_dir: Path):
        self.requests_dir = Path(requests_dir)
        self._lock = threading.RLock()

    def ensure_directories(self) -> None:
        for status in RequestStatus:
            self.status_dir(status).mkdir(parents=True, exist_ok=True)

    def status_dir(self, status: RequestStatus) -> Path:
        return self.requests_dir / status.value

    def _path_for(self, request_id: str, status: RequestStatus) -> Path:
        return self.status_dir(status) / f"{request_id}.md"

    def create(
        self,
        description: str,
        submitted_by: str,
        priority: str = "Medium",
    ) -> RequestRecord:
        """Write a new request into pending and return it."""
        with self._lock:
            request_id = f"REQ-{int(time.time() * 1000)}"
            while any(self._path_for(request_id, s).exists() for s in RequestStatus):
                request_id = f"REQ-{int(request_id[4:]) + 1}"

            title = request_title(description)
            content = "\n".join([
                f"# Feature Request: {title}",
                "",
                f"**Request ID:** {request_id}",
                f"**Submitted By:** {submitted_by}",
                f"**Date:** {datetime.utcnow().isoformat(timespec='seconds')}",
                f"**Priority:** {priority}",
                "**Status:** Pending",
                "",
                "## Description",
                description.strip(),
                "",
            ])
            record = RequestRecord(request_id, RequestStatus.PENDING, content)
            path = self._path_for(request_id, RequestStatus.PENDING)
            write_atomic(path, content)
            record.path = path
            logger.info(f"Created request {request_id} from {submitted_by}")
            return record

    def read_path(self, path: Path) -> Optional[RequestRecord]:
        """Read a request file given its path; status comes from its directory."""
        path = Path(path)
        try:
            status = RequestStatus(path.parent.name)
        except ValueError:
            logger.warning(f"Request file outside a status directory: {path}")
            return None
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"Cannot read request file {path}: {e}")
            return None
        return RequestRecord(path.stem, status, content, path)

    def get(self, request_id: str, status: Optional[RequestStatus] = None) -> Optional[RequestRecord]:
        statuses = [status] if status else list(RequestStatus)
        for s in statuses:
            path = self._path_for(request_id.strip(), s)
            if path.exists():
                return self.read_path(path)
        return None

    def list(self, status: RequestStatus) -> List[RequestRecord]:
        directory = self.status_dir(status)
        if not directory.exists():
            return []
        records = []
        for path in sorted(directory.glob("*.md")):
            record = self.read_path(path)
            if record:
                records.append(record)
        return records

    def move(self, request_id: str, target: RequestStatus) -> Optional[RequestRecord]:
        """Move a request to another state directory and update its Status line."""
        with self._lock:
            record = self.get(request_id)
            if not record:
                return None
            if record.status == target:
                return record
            label = target.value.replace("-", " ").title()
            content = STATUS_LINE_RE.sub(f"**Status:** {label}", record.content, count=1)
            new_path = self._path_for(record.request_id, target)
            write_atomic(new_path, content)
            if record.path and record.path.exists():
                record.path.unlink()
            logger.info(f"Request {request_id}: {record.status.value} -> {target.value}")
            return RequestRecord(record.request_id, target, content, new_path)

    def append_section(self, request_id: str, heading: str, text: str) -> bool:
        """Append a markdown section to a request document."""
        with self._lock:
            record = self.get(request_id)
            if not record or not record.path:
                return False
            write_atomic(record.path, append_markdown_section(record.content, heading, text))
            return True
