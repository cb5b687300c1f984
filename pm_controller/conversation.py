"""
PM Conversation Helpers

Task lookups for the chat commands /blocker and /blockers. Output is
markdown; the bot converts it to Telegram HTML.
"""

import logging
from typing import Dict, Any, List

from .task_model import TaskStatus
from .task_store import TaskStore

logger = logging.getLogger("conversation")

DETAILS_PREVIEW_LENGTH = 200
RECENT_LOG_ENTRIES = 5


class PMConversation:
    """Read-side queries over the task board for chat replies."""

    def __init__(self, store: TaskStore):
        self.store = store

    def query_task(self, task_id: str) -> Dict[str, Any]:
        record = self.store.find(task_id)
        if not record:
            return {"found": False, "task_id": task_id, "message": f"Task not found: {task_id}"}
        reason, details = record.blocker
        return {
            "found": True,
            "task_id": record.task_id,
            "status": record.status.value,
            "title": record.title,
            "assigned_to": record.assigned_to or "none",
            "priority": record.priority,
            "description": record.description,
            "blocker": {"reason": reason, "details": details},
            "progress_log": [entry.to_line() for entry in record.progress_log],
        }

    def get_blocked_tasks(self) -> List[Dict[str, Any]]:
        blocked = []
        for record in self.store.list(TaskStatus.BLOCKED):
            reason, details = record.blocker
            blocked.append({
                "task_id": record.task_id,
                "title": record.title,
                "reason": reason or "No reason recorded",
                "details": details,
            })
        return blocked


def format_task_info(info: Dict[str, Any]) -> str:
    if not info.get("found"):
        return info.get("message") or f"Task not found: {info.get('task_id')}"

    lines = [
        f"📋 **{info['task_id']}**",
        f"📂 Status: {info['status'].upper()}",
        f"📝 Title: {info['title'] or 'N/A'}",
        f"👤 Assigned: {info['assigned_to']}",
        f"⚡ Priority: {info['priority']}",
        "",
    ]
    blocker = info.get("blocker") or {}
    if blocker.get("reason"):
        lines.extend(["🚫 **BLOCKER:**", f"Reason: {blocker['reason']}", ""])
        if blocker.get("details"):
            lines.extend(["📄 **Error Details:**", "```", blocker["details"], "```", ""])

    log = info.get("progress_log") or []
    if log:
        lines.append(f"📊 **Recent Progress (last {RECENT_LOG_ENTRIES}):**")
        lines.extend(log[-RECENT_LOG_ENTRIES:])
    return "\n".join(lines).rstrip()


def format_blocked_tasks_summary(blocked: List[Dict[str, Any]]) -> str:
    if not blocked:
        return "✅ No tasks are currently blocked!"

    lines = [f"🚫 **{len(blocked)} Blocked Task(s)**", ""]
    for index, task in enumerate(blocked, start=1):
        lines.append(f"{index}. **{task['task_id']}**")
        lines.append(f"   Title: {task['title']}")
        lines.append(f"   Reason: {task['reason']}")
        details = task.get("details")
        if details:
            if len(details) > DETAILS_PREVIEW_LENGTH:
                lines.append(f"   Details: {details[:DETAILS_PREVIEW_LENGTH]}...")
                lines.append(f"   (Use /blocker {task['task_id']} for full details)")
            else:
                lines.append(f"   Details: {details}")
        lines.append("")
    return "\n".join(lines).rstrip()
