"""
Task Model

Task files are markdown documents with a YAML front matter block:

    ---
    id: TASK-1700000000000-01
    request_id: REQ-1700000000000
    type: backend
    title: Implement login endpoint
    status: pending
    assigned_to: none
    created_at: '2024-01-01T08:00:00'
    priority: medium
    ---

    # Implement login endpoint

    ## Description
    ...

    ## Progress Log
    - [2024-01-01T08:00:00] PM: Task created

The directory a task file lives in IS its status. The front matter
`status` key is informational and rewritten on every move.
"""

import re
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple

import yaml

logger = logging.getLogger("task_model")


# -----------------------------------------------------------------------------
# Status State Machine
# -----------------------------------------------------------------------------
class TaskStatus(str, Enum):
    """Task status; the value is the directory name."""
    INBOX = "inbox"
    BACKLOG = "backlog"
    IN_PROGRESS = "in-progress"
    REVIEW = "review"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    ARCHIVE = "archive"

    @classmethod
    def from_value(cls, value: str) -> "TaskStatus":
        normalized = value.strip().lower().replace("_", "-")
        for status in cls:
            if status.value == normalized:
                return status
        raise ValueError(f"Unknown task status: {value}")


VALID_TRANSITIONS: Dict[TaskStatus, List[TaskStatus]] = {
    TaskStatus.INBOX: [TaskStatus.BACKLOG, TaskStatus.ARCHIVE],
    TaskStatus.BACKLOG: [TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED, TaskStatus.ARCHIVE],
    TaskStatus.IN_PROGRESS: [TaskStatus.REVIEW, TaskStatus.BLOCKED, TaskStatus.BACKLOG],
    TaskStatus.REVIEW: [TaskStatus.COMPLETED, TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED],
    TaskStatus.BLOCKED: [TaskStatus.BACKLOG, TaskStatus.IN_PROGRESS, TaskStatus.ARCHIVE],
    TaskStatus.COMPLETED: [TaskStatus.ARCHIVE],
    TaskStatus.ARCHIVE: [],
}

# Front matter timestamp stamped when a task enters a status
STATUS_TIMESTAMP_KEYS: Dict[TaskStatus, str] = {
    TaskStatus.IN_PROGRESS: "started_at",
    TaskStatus.REVIEW: "review_at",
    TaskStatus.BLOCKED: "blocked_at",
    TaskStatus.COMPLETED: "completed_at",
    TaskStatus.ARCHIVE: "archived_at",
}


def can_transition(current: TaskStatus, target: TaskStatus) -> Tuple[bool, str]:
    """Check if a status transition is valid."""
    valid_targets = VALID_TRANSITIONS.get(current, [])
    if target in valid_targets:
        return True, f"Transition {current.value} -> {target.value} allowed"
    return False, (
        f"Invalid transition: {current.value} -> {target.value}. "
        f"Valid targets: {[t.value for t in valid_targets]}"
    )


# -----------------------------------------------------------------------------
# Front Matter
# -----------------------------------------------------------------------------
FRONT_MATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)


def _normalize_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def parse_front_matter(content: str) -> Tuple[Dict[str, Any], str]:
    """
    Split a document into (metadata, body).

    Malformed YAML falls back to naive `key: value` line splitting so a
    hand-edited file never becomes unreadable.
    """
    match = FRONT_MATTER_RE.match(content)
    if not match:
        return {}, content

    raw = match.group(1)
    body = content[match.end():]
    try:
        data = yaml.safe_load(raw) or {}
        if not isinstance(data, dict):
            raise yaml.YAMLError("front matter is not a mapping")
    except yaml.YAMLError as e:
        logger.warning(f"Malformed front matter, using line parser: {e}")
        data = {}
        for line in raw.splitlines():
            if ":" in line:
                key, value = line.split(":", 1)
                data[key.strip()] = value.strip()

    return {str(k): _normalize_value(v) for k, v in data.items()}, body


def render_task_file(metadata: Dict[str, Any], body: str) -> str:
    """Render metadata and body back into a task document."""
    front = yaml.safe_dump(
        metadata,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
    )
    return f"---\n{front}---\n{body}"


# -----------------------------------------------------------------------------
# Markdown Sections
# -----------------------------------------------------------------------------
PROGRESS_HEADING = "## Progress Log"
LOG_ENTRY_RE = re.compile(r"^- \[([^\]]+)\]\s*(.*)$")
LOG_MARKERS = frozenset(["BLOCKED", "REJECTED", "APPROVED", "Error details"])


def _section_bounds(lines: List[str], heading: str) -> Optional[Tuple[int, int]]:
    """Return (start, end) line indexes of a section's content."""
    start = None
    for i, line in enumerate(lines):
        if line.strip() == heading:
            start = i + 1
            break
    if start is None:
        return None
    end = len(lines)
    for j in range(start, len(lines)):
        if lines[j].startswith("## ") or lines[j].startswith("# "):
            end = j
            break
    return start, end


def extract_section(body: str, heading: str) -> str:
    """Text under a `## Heading` up to the next heading."""
    lines = body.splitlines()
    bounds = _section_bounds(lines, heading)
    if not bounds:
        return ""
    start, end = bounds
    return "\n".join(lines[start:end]).strip()


def append_section(body: str, heading: str, content: str) -> str:
    """Append a new section at the end of the document."""
    return f"{body.rstrip()}\n\n{heading}\n{content.strip()}\n"


@dataclass
class ProgressEntry:
    """One line of the progress log, plus any continuation lines."""
    timestamp: str
    actor: str
    message: str
    details: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "actor": self.actor,
            "message": self.message,
            "details": list(self.details),
        }

    @property
    def text(self) -> str:
        if self.actor:
            return f"{self.actor}: {self.message}"
        return self.message

    def to_line(self) -> str:
        return f"- [{self.timestamp}] {self.text}"


def parse_progress_log(body: str) -> List[ProgressEntry]:
    """Parse `## Progress Log` entries in file order."""
    lines = body.splitlines()
    bounds = _section_bounds(lines, PROGRESS_HEADING)
    if not bounds:
        return []

    entries: List[ProgressEntry] = []
    start, end = bounds
    for line in lines[start:end]:
        match = LOG_ENTRY_RE.match(line)
        if match:
            timestamp, text = match.group(1), match.group(2)
            actor, message = "", text
            if ": " in text:
                head, rest = text.split(": ", 1)
                # Actors are short role names, never log markers
                if head and len(head.split()) <= 3 and head not in LOG_MARKERS:
                    actor, message = head, rest
            entries.append(ProgressEntry(timestamp=timestamp, actor=actor, message=message))
        elif entries and line.strip():
            entries[-1].details.append(line.strip())
    return entries


def append_progress_entry(
    body: str,
    actor: str,
    message: str,
    details: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> str:
    """Append an entry to the progress log, creating the section if needed."""
    entry = ProgressEntry(
        timestamp=timestamp or datetime.utcnow().isoformat(timespec="seconds"),
        actor=actor,
        message=message.strip().replace("\n", " "),
    )
    new_lines = [entry.to_line()]
    if details:
        new_lines.extend(f"  {line}" for line in details.strip().splitlines() if line.strip())

    lines = body.rstrip("\n").splitlines()
    bounds = _section_bounds(lines, PROGRESS_HEADING)
    if not bounds:
        lines.extend(["", PROGRESS_HEADING])
        lines.extend(new_lines)
        return "\n".join(lines) + "\n"

    _, end = bounds
    insert_at = end
    while insert_at > bounds[0] and not lines[insert_at - 1].strip():
        insert_at -= 1
    lines[insert_at:insert_at] = new_lines
    return "\n".join(lines) + "\n"


def extract_blocker(entries: List[ProgressEntry]) -> Tuple[Optional[str], Optional[str]]:
    """
    Return (reason, details) from the newest BLOCKED / Error details entries.
    """
    reason = None
    details = None
    for entry in reversed(entries):
        text = entry.text
        if reason is None and "BLOCKED:" in text:
            reason = text.split("BLOCKED:", 1)[1].strip()
        if details is None and "Error details:" in text:
            first = text.split("Error details:", 1)[1].strip()
            parts = ([first] if first else []) + entry.details
            details = "\n".join(parts).strip() or None
        if reason is not None and details is not None:
            break
    return reason, details


# -----------------------------------------------------------------------------
# Task Record
# -----------------------------------------------------------------------------
@dataclass
class TaskRecord:
    """A task file as read from disk."""
    task_id: str
    status: TaskStatus
    metadata: Dict[str, Any]
    body: str
    path: Optional[Path] = None

    @property
    def title(self) -> str:
        title = self.metadata.get("title")
        if title:
            return str(title)
        for line in self.body.splitlines():
            if line.startswith("# "):
                return line[2:].strip()
        return self.task_id

    @property
    def assigned_to(self) -> Optional[str]:
        value = self.metadata.get("assigned_to")
        if value in (None, "", "none"):
            return None
        return str(value)

    @property
    def task_type(self) -> str:
        return str(self.metadata.get("type") or "backend")

    @property
    def priority(self) -> str:
        return str(self.metadata.get("priority") or "medium")

    @property
    def request_id(self) -> Optional[str]:
        value = self.metadata.get("request_id")
        return str(value) if value else None

    @property
    def description(self) -> str:
        return extract_section(self.body, "## Description")

    @property
    def progress_log(self) -> List[ProgressEntry]:
        return parse_progress_log(self.body)

    @property
    def blocker(self) -> Tuple[Optional[str], Optional[str]]:
        return extract_blocker(self.progress_log)

    def render(self) -> str:
        return render_task_file(self.metadata, self.body)

    def to_dict(self, include_body: bool = False) -> Dict[str, Any]:
        reason, details = self.blocker
        result = {
            "task_id": self.task_id,
            "status": self.status.value,
            "title": self.title,
            "type": self.task_type,
            "priority": self.priority,
            "assigned_to": self.assigned_to,
            "request_id": self.request_id,
            "metadata": dict(self.metadata),
            "blocker_reason": reason,
            "blocker_details": details,
        }
        if include_body:
            result["body"] = self.body
            result["progress_log"] = [e.to_dict() for e in self.progress_log]
        return result


def parse_task_file(content: str, status: TaskStatus, path: Optional[Path] = None) -> TaskRecord:
    """Parse a task document that lives in the given status directory."""
    metadata, body = parse_front_matter(content)
    task_id = str(metadata.get("id") or (path.stem if path else "unknown"))
    return TaskRecord(task_id=task_id, status=status, metadata=metadata, body=body, path=path)


def new_task_document(
    task_id: str,
    task_type: str,
    title: str,
    description: str,
    request_id: Optional[str] = None,
    priority: str = "medium",
    requirements: Optional[List[str]] = None,
    created_by: str = "PM",
) -> Tuple[Dict[str, Any], str]:
    """Standard task template: front matter plus Description, Requirements, Progress Log."""
    now = datetime.utcnow().isoformat(timespec="seconds")
    metadata: Dict[str, Any] = {
        "id": task_id,
        "request_id": request_id or "none",
        "type": task_type,
        "title": title,
        "status": "pending",
        "assigned_to": "none",
        "created_at": now,
        "priority": priority,
    }
    reqs = requirements or [
        "Follow project coding standards",
        "Include appropriate tests",
        "Update documentation if needed",
    ]
    body_lines = [
        "",
        f"# {title}",
        "",
        "## Description",
        description.strip(),
        "",
        "## Requirements",
    ]
    body_lines.extend(f"- {r}" for r in reqs)
    body_lines.extend([
        "",
        PROGRESS_HEADING,
        f"- [{now}] {created_by}: Task created",
    ])
    return metadata, "\n".join(body_lines) + "\n"
