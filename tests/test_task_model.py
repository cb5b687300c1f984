"""
Unit Tests for the task file format and status machine.
"""

import pytest

from pm_controller.task_model import (
    TaskStatus,
    VALID_TRANSITIONS,
    can_transition,
    parse_front_matter,
    render_task_file,
    parse_task_file,
    parse_progress_log,
    append_progress_entry,
    extract_blocker,
    extract_section,
    new_task_document,
    PROGRESS_HEADING,
)


SAMPLE_TASK = """---
id: TASK-1700000000000-01
request_id: REQ-1700000000000
type: backend
title: Build login endpoint
status: in-progress
assigned_to: backend-agent
priority: high
---

# Build login endpoint

## Description
POST /auth/login returning a JWT.

## Progress Log
- [2024-01-01T10:00:00] PM-Agent: Task created
- [2024-01-01T11:00:00] Backend-Agent: Started working on task
- [2024-01-01T12:00:00] Backend-Agent: Error details:
  ImportError: no module named jwt
  at app/auth.py line 3
- [2024-01-01T12:00:01] Backend-Agent: BLOCKED: Missing dependency
"""


# -----------------------------------------------------------------------------
# Status Machine Tests
# -----------------------------------------------------------------------------
class TestStatusMachine:
    """Tests for allowed status moves."""

    def test_backlog_to_in_progress_allowed(self):
        """Backlog tasks can be started."""
        ok, _ = can_transition(TaskStatus.BACKLOG, TaskStatus.IN_PROGRESS)
        assert ok

    def test_completed_only_archives(self):
        """Completed tasks can only be archived."""
        assert VALID_TRANSITIONS[TaskStatus.COMPLETED] == [TaskStatus.ARCHIVE]
        ok, message = can_transition(TaskStatus.COMPLETED, TaskStatus.IN_PROGRESS)
        assert not ok
        assert "Invalid transition" in message

    def test_archive_is_terminal(self):
        """Nothing leaves the archive."""
        for target in TaskStatus:
            ok, _ = can_transition(TaskStatus.ARCHIVE, target)
            assert not ok

    def test_review_can_go_back_to_in_progress(self):
        """Rejected reviews return to in-progress."""
        ok, _ = can_transition(TaskStatus.REVIEW, TaskStatus.IN_PROGRESS)
        assert ok

    def test_from_value_normalizes(self):
        """Underscores and case are accepted."""
        assert TaskStatus.from_value("IN_PROGRESS") == TaskStatus.IN_PROGRESS
        with pytest.raises(ValueError):
            TaskStatus.from_value("done")


# -----------------------------------------------------------------------------
# Front Matter Tests
# -----------------------------------------------------------------------------
class TestFrontMatter:
    """Tests for front matter parsing and rendering."""

    def test_parse_front_matter(self):
        """Metadata and body are separated."""
        metadata, body = parse_front_matter(SAMPLE_TASK)
        assert metadata["id"] == "TASK-1700000000000-01"
        assert metadata["assigned_to"] == "backend-agent"
        assert body.lstrip().startswith("# Build login endpoint")

    def test_missing_front_matter(self):
        """A plain markdown file has empty metadata."""
        metadata, body = parse_front_matter("# Just a heading\n")
        assert metadata == {}
        assert body == "# Just a heading\n"

    def test_render_then_parse_keeps_metadata(self):
        """Rendering writes front matter that parses back."""
        content = render_task_file({"id": "T-1", "title": "A: colon title"}, "\n# Body\n")
        metadata, body = parse_front_matter(content)
        assert metadata["title"] == "A: colon title"
        assert "# Body" in body


# -----------------------------------------------------------------------------
# Progress Log Tests
# -----------------------------------------------------------------------------
class TestProgressLog:
    """Tests for progress log entries and blocker extraction."""

    def test_parse_entries_with_details(self):
        """Continuation lines attach to the previous entry."""
        _, body = parse_front_matter(SAMPLE_TASK)
        entries = parse_progress_log(body)
        assert len(entries) == 4
        assert entries[0].actor == "PM-Agent"
        assert entries[2].details == ["ImportError: no module named jwt", "at app/auth.py line 3"]

    def test_extract_blocker(self):
        """Reason and details come from the newest matching entries."""
        _, body = parse_front_matter(SAMPLE_TASK)
        reason, details = extract_blocker(parse_progress_log(body))
        assert reason == "Missing dependency"
        assert details.startswith("ImportError")
        assert "line 3" in details

    def test_append_creates_section(self):
        """Appending to a body without a log adds the section."""
        body = append_progress_entry("# Title\n", "QA-Agent", "Running tests", timestamp="2024-01-02T00:00:00")
        assert PROGRESS_HEADING in body
        assert "- [2024-01-02T00:00:00] QA-Agent: Running tests" in body

    def test_append_stays_inside_section(self):
        """New entries land before the next heading."""
        body = "# T\n\n## Progress Log\n- [t1] PM: one\n\n## Notes\nkeep me\n"
        updated = append_progress_entry(body, "PM", "two", timestamp="t2")
        lines = updated.splitlines()
        assert lines.index("- [t2] PM: two") < lines.index("## Notes")
        assert "keep me" in updated

    def test_marker_is_not_an_actor(self):
        """A log line starting with BLOCKED has no actor."""
        entries = parse_progress_log("## Progress Log\n- [t] BLOCKED: waiting on keys\n")
        assert entries[0].actor == ""
        assert entries[0].message == "BLOCKED: waiting on keys"


# -----------------------------------------------------------------------------
# Task Record Tests
# -----------------------------------------------------------------------------
class TestTaskRecord:
    """Tests for TaskRecord accessors."""

    def test_record_properties(self):
        """Title, assignee and blocker are read from the file."""
        record = parse_task_file(SAMPLE_TASK, TaskStatus.BLOCKED)
        assert record.title == "Build login endpoint"
        assert record.assigned_to == "backend-agent"
        assert record.task_type == "backend"
        assert record.priority == "high"
        assert record.description == "POST /auth/login returning a JWT."
        assert record.blocker[0] == "Missing dependency"

    def test_unassigned_is_none(self):
        """assigned_to: none reads as no assignee."""
        metadata, body = new_task_document("TASK-1-01", "qa", "Test it", "Run the suite")
        record = parse_task_file(render_task_file(metadata, body), TaskStatus.BACKLOG)
        assert record.assigned_to is None

    def test_new_task_document_sections(self):
        """The template has description, requirements and a log."""
        metadata, body = new_task_document(
            "TASK-1-02", "docs", "Write guide", "Explain setup", request_id="REQ-1", requirements=["Be brief"]
        )
        assert metadata["request_id"] == "REQ-1"
        assert extract_section(body, "## Description") == "Explain setup"
        assert extract_section(body, "## Requirements") == "- Be brief"
        assert "PM: Task created" in body
