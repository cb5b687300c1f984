"""
Tests for the PM agent: request analysis, approval, task creation,
assignment, review decisions and reports.

The orchestrator is built with a scripted completion client and no file
watcher, so the full request -> task -> review flow runs in-process.
"""

import pytest

from pm_controller.config import Settings
from pm_controller.orchestrator import AgentOrchestrator
from pm_controller.pm_agent import (
    parse_required_information,
    parse_tasks_from_text,
    is_structured_request,
    format_information_request,
    task_id_for,
)
from pm_controller.task_model import TaskStatus, new_task_document
from pm_controller.task_store import RequestStatus

from tests.conftest import async_test, FakeLLM, RecordingNotifier


BREAKDOWN = """TASK: [backend] - Build login API
DESCRIPTION: POST /auth/login returning a JWT

TASK: [docs] - Write auth guide
DESCRIPTION: Explain the login flow
"""


def make_orchestrator(settings, responses=None, fail=False):
    notifier = RecordingNotifier()
    llm = FakeLLM(responses, fail=fail)
    orchestrator = AgentOrchestrator(settings, notifier=notifier, llm=llm, watch_files=False)
    return orchestrator, notifier, llm


def review_task(orchestrator, task_id="TASK-1-01", task_type="backend"):
    meta, body = new_task_document(task_id, task_type, "Login", "Build login")
    orchestrator.store.create(task_id, meta, body, TaskStatus.BACKLOG)
    orchestrator.store.transition(task_id, TaskStatus.IN_PROGRESS)
    orchestrator.store.transition(task_id, TaskStatus.REVIEW)


# -----------------------------------------------------------------------------
# Parsing Helpers
# -----------------------------------------------------------------------------
class TestParsing:
    """Tests for LLM response parsing."""

    def test_required_information_none(self):
        assert parse_required_information("NONE") == []
        assert parse_required_information('"NONE"') == []

    def test_required_information_items(self):
        text = "ITEM: Stripe API key\nWHY: Payments\nWHERE: Stripe dashboard\n\nITEM: SMTP host\nWHY: Email\nWHERE: Ops"
        items = parse_required_information(text)
        assert [i["item"] for i in items] == ["Stripe API key", "SMTP host"]
        html = format_information_request(items)
        assert "<b>1. Stripe API key</b>" in html
        assert "<i>Where:</i> Ops" in html

    def test_parse_tasks(self):
        tasks = parse_tasks_from_text(BREAKDOWN)
        assert tasks == [
            {"type": "backend", "title": "Build login API", "description": "POST /auth/login returning a JWT"},
            {"type": "docs", "title": "Write auth guide", "description": "Explain the login flow"},
        ]

    def test_parse_tasks_fallback(self):
        """Unparseable output becomes one backend task."""
        tasks = parse_tasks_from_text("Just do it " * 100)
        assert len(tasks) == 1
        assert tasks[0]["title"] == "Implement feature"
        assert len(tasks[0]["description"]) == 500

    def test_structured_request(self):
        assert is_structured_request("## What Do You Want Built?\nA thing")
        assert not is_structured_request("Add dark mode")

    def test_task_id_for(self):
        assert task_id_for("REQ-1700000000000", 3) == "TASK-1700000000000-03"


# -----------------------------------------------------------------------------
# Request Flow
# -----------------------------------------------------------------------------
class TestRequestFlow:
    """Tests for request analysis and approval."""

    @async_test
    async def test_process_new_request(self, settings):
        orchestrator, notifier, llm = make_orchestrator(settings, ["**Goal**: login"])
        request = orchestrator.requests.create("Add login", submitted_by="alice")

        await orchestrator.pm.process_new_request(request.path)

        moved = orchestrator.requests.get(request.request_id)
        assert moved.status == RequestStatus.IN_ANALYSIS
        assert "## PM Analysis\n**Goal**: login" in moved.content
        assert orchestrator.last_request_id == request.request_id
        assert "⏳ <b>Analyzing request...</b>" in notifier.messages
        assert "<b>Goal</b>: login" in notifier.messages[-1]
        assert "Analyze this request" in llm.calls[0]["prompt"]

    @async_test
    async def test_process_request_llm_failure(self, settings):
        """The request stays pending when analysis fails."""
        orchestrator, notifier, _ = make_orchestrator(settings, fail=True)
        request = orchestrator.requests.create("Add login", submitted_by="alice")

        assert await orchestrator.pm.process_new_request(request.path) is None

        assert orchestrator.requests.get(request.request_id).status == RequestStatus.PENDING
        assert "❌ Error processing request" in notifier.messages[-1]

    @async_test
    async def test_already_analyzed_request_skipped(self, settings):
        orchestrator, notifier, llm = make_orchestrator(settings, ["analysis"])
        request = orchestrator.requests.create("Add login", submitted_by="alice")
        moved = orchestrator.requests.move(request.request_id, RequestStatus.IN_ANALYSIS)
        assert await orchestrator.pm.process_new_request(moved.path) is None
        assert llm.calls == []

    @async_test
    async def test_approve_creates_and_runs_tasks(self, settings):
        """Approve -> tasks in backlog -> assigned -> agents deliver -> review."""
        orchestrator, notifier, _ = make_orchestrator(settings, ["analysis", "NONE", BREAKDOWN])
        request = orchestrator.requests.create("Add login", submitted_by="alice")
        await orchestrator.pm.process_new_request(request.path)

        assert await orchestrator.pm.approve(request.request_id, "alice")
        await orchestrator.pm.wait_for_agents()

        number = request.number
        assert orchestrator.requests.get(request.request_id).status == RequestStatus.APPROVED
        backend = orchestrator.store.get(f"TASK-{number}-01")
        docs = orchestrator.store.get(f"TASK-{number}-02")
        assert backend.status == TaskStatus.REVIEW
        assert backend.assigned_to == "backend-agent"
        assert docs.status == TaskStatus.REVIEW
        assert docs.request_id == request.request_id

        text = notifier.joined()
        assert "🎯 <b>Created 2 Tasks</b>" in text
        assert f"🚀 Backend-Agent started working on TASK-{number}-01" in text

    @async_test
    async def test_approve_asks_for_information(self, settings):
        info = "ITEM: Stripe key\nWHY: Payments\nWHERE: Dashboard"
        orchestrator, notifier, _ = make_orchestrator(settings, ["analysis", info, BREAKDOWN])
        request = orchestrator.requests.create("Add payments", submitted_by="alice")
        await orchestrator.pm.process_new_request(request.path)

        await orchestrator.pm.approve(request.request_id, "alice")

        assert orchestrator.pm.pending_approval.request_id == request.request_id
        assert "📝 <b>Information Required</b>" in notifier.messages[-1]
        assert orchestrator.store.counts()["backlog"] == 0

        assert await orchestrator.pm.provide_information("sk_test_123", "alice")
        await orchestrator.pm.wait_for_agents()
        assert orchestrator.pm.pending_approval is None
        assert "## Provided Information\nsk_test_123" in orchestrator.requests.get(request.request_id).content
        assert orchestrator.store.counts()["review"] == 2

    @async_test
    async def test_provide_without_pending(self, settings):
        orchestrator, notifier, _ = make_orchestrator(settings)
        assert not await orchestrator.pm.provide_information("x", "alice")
        assert "No pending approval" in notifier.messages[-1]

    @async_test
    async def test_modify_request(self, settings):
        orchestrator, notifier, llm = make_orchestrator(settings, ["analysis", "updated analysis"])
        request = orchestrator.requests.create("Add login", submitted_by="alice")
        await orchestrator.pm.process_new_request(request.path)

        assert await orchestrator.pm.modify_request(request.request_id, "Use OAuth instead", "bob")

        content = orchestrator.requests.get(request.request_id).content
        assert "## Modifications\nRequested by bob:\nUse OAuth instead" in content
        assert "## Updated Analysis\nupdated analysis" in content
        assert "Use OAuth instead" in llm.calls[-1]["prompt"]

    @async_test
    async def test_reject_request(self, settings):
        orchestrator, notifier, _ = make_orchestrator(settings, ["analysis"])
        request = orchestrator.requests.create("Add login", submitted_by="alice")
        await orchestrator.pm.process_new_request(request.path)

        assert await orchestrator.pm.reject(request.request_id, "Out of scope", "alice")

        rejected = orchestrator.requests.get(request.request_id)
        assert rejected.status == RequestStatus.REJECTED
        assert "Rejected by alice: Out of scope" in rejected.content

    @async_test
    async def test_unknown_item(self, settings):
        orchestrator, notifier, _ = make_orchestrator(settings)
        assert not await orchestrator.pm.approve("REQ-404", "alice")
        assert not await orchestrator.pm.reject("TASK-404", "no", "alice")
        assert "Could not find" in notifier.messages[-1]


# -----------------------------------------------------------------------------
# Task Creation and Assignment
# -----------------------------------------------------------------------------
class TestTaskCreation:
    """Tests for task creation and assignment rules."""

    @async_test
    async def test_without_ai_generation(self, settings):
        """With AI generation off, one backend task carries the description."""
        orchestrator, _, llm = make_orchestrator(settings)
        orchestrator.flags.disable("ai-task-generation")
        request = orchestrator.requests.create("Dark mode\nToggle in settings", submitted_by="alice")

        task_ids = await orchestrator.pm.create_tasks_from_request(request)

        assert task_ids == [f"TASK-{request.number}-01"]
        record = orchestrator.store.get(task_ids[0])
        assert record.status == TaskStatus.BACKLOG
        assert record.title == "Dark mode"
        assert "Toggle in settings" in record.description
        assert "- Create PR when complete" in record.body
        assert llm.calls == []

    @async_test
    async def test_llm_failure_creates_nothing(self, settings):
        orchestrator, notifier, _ = make_orchestrator(settings, fail=True)
        request = orchestrator.requests.create("Add login", submitted_by="alice")
        assert await orchestrator.pm.proceed_with_task_creation(request.request_id) == []
        assert "⚠️ No tasks created" in notifier.messages[-1]

    @async_test
    async def test_auto_assignment_disabled(self, settings):
        orchestrator, _, _ = make_orchestrator(settings)
        orchestrator.flags.disable("auto-assignment")
        meta, body = new_task_document("TASK-1-01", "backend", "T", "d")
        orchestrator.store.create("TASK-1-01", meta, body, TaskStatus.BACKLOG)
        assert await orchestrator.pm.assign_pending_tasks() == []
        assert orchestrator.store.get("TASK-1-01").status == TaskStatus.BACKLOG

    @async_test
    async def test_busy_and_unmapped_agents_skip(self, settings):
        """Tasks stay in backlog when no agent can take them."""
        orchestrator, _, _ = make_orchestrator(settings)
        for task_id, task_type in [("TASK-1-01", "backend"), ("TASK-1-02", "marketing")]:
            meta, body = new_task_document(task_id, task_type, "T", "d")
            orchestrator.store.create(task_id, meta, body, TaskStatus.BACKLOG)
        backend = orchestrator.agents["backend"]
        backend.claim("X-1")
        backend.claim("X-2")

        assert await orchestrator.pm.assign_pending_tasks() == []
        assert orchestrator.store.counts()["backlog"] == 2


# -----------------------------------------------------------------------------
# Review Decisions
# -----------------------------------------------------------------------------
class TestReview:
    """Tests for approving and rejecting tasks in review."""

    @async_test
    async def test_approve_task(self, settings):
        orchestrator, notifier, _ = make_orchestrator(settings)
        review_task(orchestrator)

        assert await orchestrator.pm.approve("TASK-1-01", "alice")

        record = orchestrator.store.get("TASK-1-01")
        assert record.status == TaskStatus.COMPLETED
        assert "APPROVED by alice" in record.progress_log[-1].message
        assert "✅ Task TASK-1-01 approved and completed!" in notifier.messages
        assert "🎉" in notifier.messages[-1]

    @async_test
    async def test_reject_task_reruns_agent(self, settings):
        """Rejected work goes back to in-progress and the agent runs again."""
        orchestrator, notifier, _ = make_orchestrator(settings)
        review_task(orchestrator)
        orchestrator.approvals.register_for_approval("TASK-1-01")

        assert await orchestrator.pm.reject("TASK-1-01", "Missing tests", "alice")
        await orchestrator.pm.wait_for_agents()

        record = orchestrator.store.get("TASK-1-01")
        messages = [e.message for e in record.progress_log]
        assert "REJECTED: Missing tests" in messages
        assert record.status == TaskStatus.REVIEW
        assert orchestrator.approvals.get_pending("TASK-1-01") is None
        assert "Task will be revised." in notifier.joined()

    @async_test
    async def test_reject_with_busy_agent_requeues(self, settings):
        """A rejected task waits in backlog until its agent frees up."""
        orchestrator, _, _ = make_orchestrator(settings)
        review_task(orchestrator)
        backend = orchestrator.agents["backend"]
        busy = [f"TASK-9-{n:02d}" for n in range(backend.max_workload)]
        for other in busy:
            backend.claim(other)

        assert await orchestrator.pm.reject("TASK-1-01", "Missing tests", "alice")

        record = orchestrator.store.get("TASK-1-01")
        assert record.status == TaskStatus.BACKLOG
        assert record.assigned_to is None

        for other in busy:
            backend.release(other)
        await orchestrator.pm.tick()
        await orchestrator.pm.wait_for_agents()

        assert orchestrator.store.get("TASK-1-01").status == TaskStatus.REVIEW
        assert backend.workload == 0

    @async_test
    async def test_task_marked_done_in_file(self, settings):
        orchestrator, notifier, _ = make_orchestrator(settings)
        meta, body = new_task_document("TASK-1-01", "backend", "T", "d")
        orchestrator.store.create("TASK-1-01", meta, body, TaskStatus.BACKLOG)
        orchestrator.store.transition("TASK-1-01", TaskStatus.IN_PROGRESS)
        orchestrator.store.update_metadata("TASK-1-01", status="review")
        path = orchestrator.store.status_dir(TaskStatus.IN_PROGRESS) / "TASK-1-01.md"

        assert await orchestrator.pm.handle_task_update(path)

        assert orchestrator.store.get("TASK-1-01").status == TaskStatus.REVIEW
        assert "/approve TASK-1-01" in notifier.messages[-1]

    @async_test
    async def test_task_update_ignored_when_still_working(self, settings):
        orchestrator, _, _ = make_orchestrator(settings)
        meta, body = new_task_document("TASK-1-01", "backend", "T", "d")
        orchestrator.store.create("TASK-1-01", meta, body, TaskStatus.BACKLOG)
        orchestrator.store.transition("TASK-1-01", TaskStatus.IN_PROGRESS)
        path = orchestrator.store.status_dir(TaskStatus.IN_PROGRESS) / "TASK-1-01.md"
        assert not await orchestrator.pm.handle_task_update(path)
        assert not await orchestrator.pm.handle_task_update(settings.tasks_dir / "backlog" / "X.md")


# -----------------------------------------------------------------------------
# Reports and Conversation
# -----------------------------------------------------------------------------
class TestReports:
    """Tests for status, standup and weekly reports."""

    def test_status_empty_board(self, settings):
        orchestrator, _, _ = make_orchestrator(settings)
        status = orchestrator.pm.get_status()
        assert status.startswith("📋 **Current Status**")
        assert "No active tasks. Submit a request with /request [description]" in status

    def test_status_lists_review(self, settings):
        orchestrator, _, _ = make_orchestrator(settings)
        review_task(orchestrator)
        status = orchestrator.pm.get_status()
        assert "**Awaiting Review (1):**" in status
        assert "• TASK-1-01 - Type /approve TASK-1-01" in status

    @async_test
    async def test_daily_standup(self, settings):
        orchestrator, notifier, _ = make_orchestrator(settings)
        assert orchestrator.pm.get_latest_standup().startswith("No standup reports yet")
        review_task(orchestrator)

        report = await orchestrator.pm.run_daily_standup()

        assert "• Awaiting Review: 1 tasks" in report
        assert "<b>Daily Standup" in notifier.messages[-1]
        files = list(settings.standup_dir.glob("*.md"))
        assert len(files) == 1
        assert "Awaiting Review: 1" in orchestrator.pm.get_latest_standup()

    @async_test
    async def test_weekly_report_flag(self, settings):
        orchestrator, notifier, _ = make_orchestrator(settings)
        review_task(orchestrator)
        orchestrator.store.transition("TASK-1-01", TaskStatus.COMPLETED)

        report = await orchestrator.pm.generate_weekly_report()
        assert "**Completed this week (1):**" in report
        assert "Project Progress Report" in report

        orchestrator.flags.disable("weekly-report")
        assert await orchestrator.pm.generate_weekly_report() is None


class TestConversation:
    """Tests for free-text questions."""

    @async_test
    async def test_answer_uses_board_context(self, settings):
        orchestrator, _, llm = make_orchestrator(settings, ["All good."])
        review_task(orchestrator)
        answer = await orchestrator.pm.handle_conversational_query("How is it going?", username="alice")
        assert answer == "All good."
        prompt = llm.calls[0]["prompt"]
        assert "TASK-1-01" in prompt
        assert "How is it going?" in prompt

    @async_test
    async def test_disabled(self, settings):
        orchestrator, _, llm = make_orchestrator(settings)
        orchestrator.flags.disable("conversational-pm")
        answer = await orchestrator.pm.handle_conversational_query("hi")
        assert "disabled" in answer
        assert llm.calls == []

    @async_test
    async def test_llm_failure_fallback(self, settings):
        orchestrator, _, _ = make_orchestrator(settings, fail=True)
        answer = await orchestrator.pm.handle_conversational_query("hi")
        assert "/status" in answer


class TestOrchestrator:
    """Tests for wiring and lifecycle."""

    def test_agent_resolution(self, settings):
        orchestrator, _, _ = make_orchestrator(settings)
        assert orchestrator.get_agent_for_task("frontend").role == "Frontend-Agent"
        assert orchestrator.get_agent_for_task("marketing") is None

    def test_last_request_id_proxies_pm(self, settings):
        orchestrator, _, _ = make_orchestrator(settings)
        orchestrator.last_request_id = "REQ-1"
        assert orchestrator.pm.last_request_id == "REQ-1"

    @async_test
    async def test_start_and_shutdown(self, settings):
        orchestrator, notifier, _ = make_orchestrator(settings)
        await orchestrator.start()
        status = orchestrator.get_status()
        assert status["started"]
        assert set(status["next_runs"]) == {"daily-standup", "weekly-report", "pm-tick"}
        assert "Team Announcement" in notifier.messages[0]
        await orchestrator.shutdown()
        assert not orchestrator.started

    @async_test
    async def test_notifier_errors_are_swallowed(self, settings):
        async def broken(text):
            raise RuntimeError("telegram down")

        orchestrator = AgentOrchestrator(settings, notifier=broken, llm=FakeLLM(), watch_files=False)
        await orchestrator.notify("hello")

    def test_invalid_cron_fails_fast(self, tmp_path):
        settings = Settings.for_root(tmp_path, standup_cron="whenever")
        with pytest.raises(ValueError):
            AgentOrchestrator(settings, llm=FakeLLM(), watch_files=False)
