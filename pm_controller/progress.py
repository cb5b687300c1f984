"""
Progress Tracker

Board-level metrics derived from the task directories: counts,
completion percentage, seven-day velocity and the blocker list.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Any, List

from .task_model import TaskStatus, TaskRecord
from .task_store import TaskStore

logger = logging.getLogger("progress")

VELOCITY_WINDOW_DAYS = 7
STALE_AFTER_DAYS = 3


def determine_status(completion_percentage: int, blocked: int, in_progress: int) -> str:
    if completion_percentage == 100:
        return "complete"
    if blocked > 0:
        return "blocked"
    if in_progress == 0:
        return "stalled"
    if completion_percentage < 30:
        return "at-risk"
    return "on-track"


def _completed_at(record: TaskRecord) -> datetime:
    value = record.metadata.get("completed_at")
    if value:
        try:
            return datetime.fromisoformat(str(value))
        except ValueError:
            pass
    if record.path and record.path.exists():
        return datetime.utcfromtimestamp(record.path.stat().st_mtime)
    return datetime.utcnow()


class ProgressTracker:
    """Read-only metrics over a TaskStore."""

    def __init__(self, store: TaskStore):
        self.store = store

    def completed_since(self, days: int) -> List[TaskRecord]:
        cutoff = datetime.utcnow() - timedelta(days=days)
        return [r for r in self.store.list(TaskStatus.COMPLETED) if _completed_at(r) >= cutoff]

    def velocity(self) -> float:
        """Completed tasks per day over the last week."""
        return round(len(self.completed_since(VELOCITY_WINDOW_DAYS)) / VELOCITY_WINDOW_DAYS, 1)

    def blockers(self) -> List[Dict[str, Any]]:
        result = []
        for record in self.store.list(TaskStatus.BLOCKED):
            reason, _ = record.blocker
            result.append({
                "task_id": record.task_id,
                "title": record.title,
                "reason": reason or "Unknown reason",
                "blocked_since": record.metadata.get("blocked_at"),
            })
        return result

    def stale_tasks(self, days: int = STALE_AFTER_DAYS) -> List[str]:
        """In-progress tasks untouched for more than `days`."""
        cutoff = datetime.utcnow() - timedelta(days=days)
        stale = []
        for record in self.store.list(TaskStatus.IN_PROGRESS):
            if record.path and datetime.utcfromtimestamp(record.path.stat().st_mtime) < cutoff:
                stale.append(record.task_id)
        return stale

    def get_overall_progress(self) -> Dict[str, Any]:
        counts = self.store.counts()
        backlog = counts[TaskStatus.BACKLOG.value]
        in_progress = counts[TaskStatus.IN_PROGRESS.value]
        review = counts[TaskStatus.REVIEW.value]
        completed = counts[TaskStatus.COMPLETED.value]
        blocked = counts[TaskStatus.BLOCKED.value]

        total = backlog + in_progress + review + completed + blocked
        completion = round(completed / total * 100) if total else 0

        return {
            "total": total,
            "inbox": counts[TaskStatus.INBOX.value],
            "backlog": backlog,
            "in_progress": in_progress,
            "review": review,
            "completed": completed,
            "blocked": blocked,
            "archived": counts[TaskStatus.ARCHIVE.value],
            "active": in_progress + review,
            "completion_percentage": completion,
            "status": determine_status(completion, blocked, in_progress),
            "velocity": self.velocity(),
            "blockers": self.blockers(),
        }

    def generate_report(self) -> str:
        """Markdown progress summary."""
        progress = self.get_overall_progress()
        lines = [
            "📊 **Project Progress Report**",
            "",
            f"**Overall Completion**: {progress['completion_percentage']}%",
            f"**Velocity**: {progress['velocity']} tasks/day",
            f"**Status**: {progress['status']}",
            "",
            "**Task Breakdown**:",
            f"- 📥 Backlog: {progress['backlog']}",
            f"- 🚧 In Progress: {progress['in_progress']}",
            f"- 👀 In Review: {progress['review']}",
            f"- ✅ Completed: {progress['completed']}",
        ]
        if progress["blocked"]:
            lines.append(f"- 🚫 Blocked: {progress['blocked']}")
            lines.extend(["", "**⚠️ Blockers**:"])
            lines.extend(f"- {b['task_id']}: {b['reason']}" for b in progress["blockers"])
        return "\n".join(lines)
