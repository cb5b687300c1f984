"""
Unit Tests for /blocker and /blockers lookups.
"""

import pytest

from pm_controller.conversation import (
    PMConversation,
    format_task_info,
    format_blocked_tasks_summary,
    DETAILS_PREVIEW_LENGTH,
)
from pm_controller.task_model import TaskStatus, new_task_document
from pm_controller.task_store import TaskStore


@pytest.fixture
def store(tmp_path):
    s = TaskStore(tmp_path / "tasks")
    s.ensure_directories()
    return s


def blocked_task(store, task_id, reason, details=None):
    metadata, body = new_task_document(task_id, "qa", f"Title {task_id}", "desc")
    store.create(task_id, metadata, body, TaskStatus.BACKLOG)
    store.transition(task_id, TaskStatus.IN_PROGRESS)
    if details:
        store.append_progress(task_id, "QA-Agent", "Error details:", details=details)
    store.append_progress(task_id, "QA-Agent", f"BLOCKED: {reason}")
    store.transition(task_id, TaskStatus.BLOCKED)


class TestPMConversation:
    """Tests for board queries."""

    def test_query_missing_task(self, store):
        info = PMConversation(store).query_task("TASK-0")
        assert not info["found"]
        assert format_task_info(info) == "Task not found: TASK-0"

    def test_query_blocked_task(self, store):
        """Blocker reason and details come from the progress log."""
        blocked_task(store, "TASK-1-01", "2 test(s) failed", details="FAILED test_a\nFAILED test_b")
        info = PMConversation(store).query_task("task-1-01")
        assert info["found"]
        assert info["status"] == "blocked"
        assert info["blocker"]["reason"] == "2 test(s) failed"
        assert info["blocker"]["details"] == "FAILED test_a\nFAILED test_b"

        text = format_task_info(info)
        assert "📂 Status: BLOCKED" in text
        assert "🚫 **BLOCKER:**" in text
        assert "```\nFAILED test_a\nFAILED test_b\n```" in text
        assert "Recent Progress (last 5)" in text

    def test_get_blocked_tasks(self, store):
        blocked_task(store, "TASK-1-01", "no keys")
        blocked = PMConversation(store).get_blocked_tasks()
        assert blocked == [{
            "task_id": "TASK-1-01",
            "title": "Title TASK-1-01",
            "reason": "no keys",
            "details": None,
        }]


class TestBlockedSummary:

    def test_none_blocked(self):
        assert format_blocked_tasks_summary([]) == "✅ No tasks are currently blocked!"

    def test_long_details_truncated(self):
        """Long details are cut with a pointer to /blocker."""
        details = "x" * (DETAILS_PREVIEW_LENGTH + 50)
        text = format_blocked_tasks_summary([
            {"task_id": "TASK-2-01", "title": "T", "reason": "r", "details": details},
        ])
        assert text.startswith("🚫 **1 Blocked Task(s)**")
        assert f"Details: {'x' * DETAILS_PREVIEW_LENGTH}..." in text
        assert "Use /blocker TASK-2-01 for full details" in text
