"""
Specialist Agents

Role agents that pick up in-progress tasks and produce a deliverable.
They are deliberately thin: one LLM call (or one test run), one file in
the agent workspace, then the task moves to review or blocked.

Task workflow (BaseAgent.run_task_workflow):
    claim -> announce start -> execute_task
        success -> complete_task  (in-progress -> review)
        failure -> Error details + block_task  (in-progress -> blocked)
    -> release
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any, List

from . import permissions
from .approvals import ApprovalWorkflow
from .feature_flags import FeatureFlags
from .formatting import escape_html
from .git_ops import GitOps
from .llm_client import CompletionClient, CompletionError
from .task_model import TaskStatus, TaskRecord
from .task_store import TaskStore
from .team_comms import TeamComms
from .test_runner import TestRunner, format_results
from .workspace import WorkspaceManager

logger = logging.getLogger("agents")

DEFAULT_MAX_WORKLOAD = 2

# Task type -> agent id
AGENT_TYPE_MAP: Dict[str, str] = {
    "rd": "rd",
    "research": "rd",
    "design": "architect",
    "architecture": "architect",
    "backend": "backend",
    "backend-api": "backend",
    "api": "backend",
    "frontend": "frontend",
    "ui": "frontend",
    "devops": "devops",
    "database": "devops",
    "qa": "qa",
    "testing": "qa",
    "docs": "docs",
    "documentation": "docs",
}


def agent_id_for_type(task_type: str) -> Optional[str]:
    return AGENT_TYPE_MAP.get((task_type or "").strip().lower())


@dataclass
class AgentResult:
    """What execute_task produced."""
    success: bool
    error: Optional[str] = None
    details: Optional[str] = None
    artifacts: List[str] = field(default_factory=list)
    pr_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "details": self.details,
            "artifacts": list(self.artifacts),
            "pr_url": self.pr_url,
        }


@dataclass
class AgentServices:
    """Shared collaborators handed to every agent."""
    store: TaskStore
    llm: CompletionClient
    comms: TeamComms
    workspace: WorkspaceManager
    flags: FeatureFlags
    project_root: Path
    git: Optional[GitOps] = None
    test_runner: Optional[TestRunner] = None
    approvals: Optional[ApprovalWorkflow] = None


# -----------------------------------------------------------------------------
# Base Agent
# -----------------------------------------------------------------------------
class BaseAgent:
    """Common task workflow for all specialist agents."""

    agent_id = "base"
    role = "Agent"
    system_prompt = "You are a {role}. Execute tasks professionally and autonomously."

    def __init__(self, services: AgentServices, max_workload: int = DEFAULT_MAX_WORKLOAD):
        self.services = services
        self.max_workload = max_workload
        self.workload = 0
        self.current_tasks: List[str] = []

    @property
    def key(self) -> str:
        """Workspace and permission-table name."""
        return f"{self.agent_id}-agent"

    def is_available(self) -> bool:
        return self.workload < self.max_workload

    def claim(self, task_id: str) -> None:
        """Reserve a workload slot before the workflow is scheduled."""
        self.workload += 1
        self.current_tasks.append(task_id)

    def release(self, task_id: str) -> None:
        self.workload = max(0, self.workload - 1)
        if task_id in self.current_tasks:
            self.current_tasks.remove(task_id)

    # -------------------------------------------------------------------------
    # Task helpers
    # -------------------------------------------------------------------------

    def update_progress(self, task_id: str, message: str, details: Optional[str] = None) -> bool:
        return self.services.store.append_progress(task_id, self.role, message, details=details)

    async def generate_artifact(self, prompt: str, context: str = "") -> Optional[str]:
        """One specialist LLM call. Returns None when the API fails."""
        try:
            return await self.services.llm.specialist_chat(
                self.system_prompt.format(role=self.role), context, prompt
            )
        except CompletionError as e:
            logger.error(f"{self.role}: Failed to generate artifact: {e}")
            return None

    def write_deliverable(self, relative_path: str, content: str) -> Path:
        """Write into the agent workspace after a permission check."""
        path = self.services.workspace.resolve_agent_path(self.key, relative_path)
        try:
            project_relative = path.relative_to(Path(self.services.project_root).resolve()).as_posix()
        except ValueError:
            project_relative = None
        if project_relative is not None:
            allowed = permissions.can_write(self.key, project_relative)
            permissions.log_access(self.key, "write", project_relative, allowed)
            if not allowed:
                raise PermissionError(f"{self.key} may not write {project_relative}")
        return self.services.workspace.write_agent_file(self.key, relative_path, content)

    async def complete_task(self, task_id: str, pr_url: Optional[str] = None) -> bool:
        message = "Task completed"
        if pr_url:
            message += f" - PR: {pr_url}"
        self.update_progress(task_id, message)
        ok, reason = self.services.store.transition(task_id, TaskStatus.REVIEW, actor=self.role)
        if not ok:
            logger.warning(f"{self.role}: Could not move {task_id} to review: {reason}")
            return False

        logger.info(f"{self.role}: Completed {task_id}, moved to review")
        text = f"✅ Task complete: {task_id}"
        if pr_url:
            text += f"\n🔗 {pr_url}"
        await self.services.comms.send_message(self.role, text)
        return True

    async def block_task(self, task_id: str, reason: str) -> bool:
        self.update_progress(task_id, f"BLOCKED: {reason}")
        ok, message = self.services.store.transition(task_id, TaskStatus.BLOCKED, actor=self.role)
        if not ok:
            logger.warning(f"{self.role}: Could not block {task_id}: {message}")
            return False
        logger.warning(f"{self.role}: Blocked {task_id} - {reason}")
        await self.services.comms.report_blocker(self.role, reason, task_id)
        return True

    # -------------------------------------------------------------------------
    # Workflow
    # -------------------------------------------------------------------------

    async def execute_task(self, record: TaskRecord) -> AgentResult:
        raise NotImplementedError(f"{self.role}: execute_task() must be implemented by subclass")

    async def run_task_workflow(self, task_id: str) -> bool:
        """Run one task end to end. Never raises."""
        if task_id not in self.current_tasks:
            self.claim(task_id)
        try:
            logger.info(f"{self.role}: Starting task {task_id}")
            await self.services.comms.announce_action(self.role, "Started working on task", task_id)
            self.update_progress(task_id, "Started working on task")

            record = self.services.store.get(task_id, TaskStatus.IN_PROGRESS)
            if not record:
                logger.error(f"{self.role}: Task {task_id} is not in progress")
                return False

            result = await self.execute_task(record)
            if not result.success:
                if result.details:
                    self.update_progress(task_id, "Error details:", details=result.details)
                await self.block_task(task_id, result.error or "Execution failed")
                return False

            return await self.complete_task(task_id, result.pr_url)

        except Exception as e:
            logger.exception(f"{self.role}: Error in task workflow for {task_id}")
            await self.block_task(task_id, f"Error: {e}")
            return False
        finally:
            self.release(task_id)

    def get_status(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "role": self.role,
            "available": self.is_available(),
            "workload": self.workload,
            "max_workload": self.max_workload,
            "current_tasks": list(self.current_tasks),
        }


# -----------------------------------------------------------------------------
# Artifact Agents
# -----------------------------------------------------------------------------
class ArtifactAgent(BaseAgent):
    """Generates one markdown deliverable per task with the LLM."""

    deliverable_dir = "deliverables"
    deliverable_prompt = (
        "Produce the deliverable for this task as a well-structured markdown document.\n\n"
        "## Task\n{title}\n\n## Description\n{description}"
    )

    def build_prompt(self, record: TaskRecord) -> str:
        return self.deliverable_prompt.format(
            title=record.title,
            description=record.description or record.body.strip(),
        )

    async def execute_task(self, record: TaskRecord) -> AgentResult:
        self.update_progress(record.task_id, "Analyzing requirements")
        content = await self.generate_artifact(
            self.build_prompt(record),
            context=f"Task {record.task_id} (type: {record.task_type}, priority: {record.priority})",
        )
        if not content:
            return AgentResult(
                success=False,
                error="Deliverable generation failed",
                details="The completion API returned no content. Check the LLM key and quota.",
            )

        path = self.write_deliverable(f"{self.deliverable_dir}/{record.task_id}.md", content)
        self.update_progress(record.task_id, f"Deliverable written: {path.name}")

        pr_url = None
        if self.services.git and self.services.flags.is_enabled("git-automation"):
            published = await asyncio.to_thread(self.publish, record, [path])
            if not published["success"]:
                return AgentResult(
                    success=False,
                    error="Git automation failed",
                    details=published.get("error"),
                    artifacts=[str(path)],
                )
            pr_url = published.get("pr_url")

        return AgentResult(success=True, artifacts=[str(path)], pr_url=pr_url)

    def publish(self, record: TaskRecord, files: List[Path]) -> Dict[str, Any]:
        """Branch, commit, push and open a PR for the deliverable."""
        git = self.services.git
        branch = f"{self.agent_id}/{record.task_id.lower()}"
        steps = [
            lambda: git.create_branch(branch),
            lambda: git.stage_and_commit([str(f) for f in files], f"{record.task_id}: {record.title}"),
            lambda: git.push(branch),
        ]
        with git.lock:
            for step in steps:
                result = step()
                if not result["success"]:
                    return result
            return git.create_pr(
                title=f"[{record.task_id}] {record.title}",
                body=f"Automated deliverable from {self.role}.\n\n{record.description}",
            )


class ArchitectAgent(ArtifactAgent):
    agent_id = "architect"
    role = "Architect-Agent"
    system_prompt = "You are a Technical Architect. Produce precise, implementable designs."
    deliverable_dir = "design"
    deliverable_prompt = (
        "Create a technical design document for this task.\n\n"
        "## Task\n{title}\n\n## Description\n{description}\n\n"
        "Include: Overview, API endpoints with request/response schemas, data model, "
        "component breakdown, security considerations, testing strategy, and an "
        "implementation plan. Be specific about paths, field types and constraints."
    )


class BackendAgent(ArtifactAgent):
    agent_id = "backend"
    role = "Backend-Agent"
    system_prompt = "You are a Backend Engineer. Generate complete, production-ready code."
    deliverable_dir = "implementation"
    deliverable_prompt = (
        "Implement this backend feature.\n\n"
        "## Task\n{title}\n\n## Description\n{description}\n\n"
        "Include error handling, input validation and tests. Present each file as a "
        "fenced code block preceded by its path."
    )


class FrontendAgent(ArtifactAgent):
    agent_id = "frontend"
    role = "Frontend-Agent"
    system_prompt = "You are a Frontend Engineer. Build accessible, well-structured UI code."
    deliverable_dir = "implementation"
    deliverable_prompt = (
        "Implement the UI for this task.\n\n"
        "## Task\n{title}\n\n## Description\n{description}\n\n"
        "Describe the component tree and state, then give each file as a fenced code "
        "block preceded by its path."
    )


class DevOpsAgent(ArtifactAgent):
    agent_id = "devops"
    role = "DevOps-Agent"
    system_prompt = "You are a DevOps Engineer. Be precise, safe and secure."
    deliverable_dir = "infrastructure"
    deliverable_prompt = (
        "Prepare the infrastructure change for this task.\n\n"
        "## Task\n{title}\n\n## Description\n{description}\n\n"
        "Cover configuration files, migrations or CI workflows needed, with a rollback plan."
    )


class DocsAgent(ArtifactAgent):
    agent_id = "docs"
    role = "Docs-Agent"
    system_prompt = "You are a Technical Writer. Be clear, step-by-step and user-friendly."
    deliverable_dir = "docs"
    deliverable_prompt = (
        "Write the documentation for this task.\n\n"
        "## Task\n{title}\n\n## Description\n{description}\n\n"
        "Use headings, short paragraphs and runnable examples."
    )


# -----------------------------------------------------------------------------
# R&D Agent
# -----------------------------------------------------------------------------
MOCKUP_TEMPLATE = """<!doctype html>
<html>
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>{title} - Mockup</title>
    <style>
      body {{ font-family: system-ui, Arial, sans-serif; margin: 24px; background: #0b0f1a; color: #e6edf3; }}
      .card {{ background: #111827; border: 1px solid #1f2937; border-radius: 12px; padding: 20px; max-width: 960px; margin: auto; }}
      .row {{ display: flex; gap: 16px; margin-top: 16px; }}
      input, select {{ background: #0b1220; border: 1px solid #243b53; color: #e6edf3; border-radius: 8px; padding: 10px; width: 100%; }}
      button {{ background: #2563eb; color: #fff; border: none; border-radius: 8px; padding: 10px 14px; margin-top: 16px; }}
    </style>
  </head>
  <body>
    <div class="card">
      <h2>{title}</h2>
      <div class="row">
        <input placeholder="Title" />
        <select><option>Low</option><option>Medium</option><option>High</option></select>
      </div>
      <div class="row"><input placeholder="Description (static mockup)" /></div>
      <button type="button">Submit</button>
    </div>
  </body>
</html>
"""


class RDAgent(BaseAgent):
    """Research document plus a static HTML mockup, registered for approval."""

    agent_id = "rd"
    role = "RD-Agent"
    system_prompt = "You are an R&D engineer. Summarize requirements, constraints and options."

    def research_document(self, record: TaskRecord, findings: Optional[str]) -> str:
        findings_text = findings or (
            "- Summarize requirements\n"
            "- Identify constraints\n"
            "- Outline architecture impacts"
        )
        return (
            f"# {record.task_id}: {record.title}\n\n"
            f"## Request Context\n{record.description or record.body.strip()}\n\n"
            f"## Findings\n{findings_text}\n\n"
            "## Proposed Approach\n"
            "- Frontend: Components, states, validation\n"
            "- Backend: Endpoints, data, errors\n"
            "- Database: Models & relations\n\n"
            "## Open Questions\n- [ ] TBD\n"
        )

    async def execute_task(self, record: TaskRecord) -> AgentResult:
        findings = None
        if self.services.llm.is_configured:
            findings = await self.generate_artifact(
                f"List the key findings, constraints and risks for: {record.title}\n\n{record.description}",
            )

        research_path = self.write_deliverable(
            f"research/{record.task_id}.md", self.research_document(record, findings)
        )
        mockup_path = self.write_deliverable(
            f"mockups/{record.task_id}.html", MOCKUP_TEMPLATE.format(title=escape_html(record.title))
        )
        self.update_progress(record.task_id, "Generated research document and mockup")

        if self.services.approvals:
            self.services.approvals.register_for_approval(
                record.task_id, research_path=str(research_path), mockup_path=str(mockup_path)
            )

        await self.services.comms.send_message(
            self.role,
            f"R&D deliverables ready for {record.task_id}\n"
            f"• Research: {research_path}\n"
            f"• Mockup: {mockup_path}",
        )
        return AgentResult(success=True, artifacts=[str(research_path), str(mockup_path)])


# -----------------------------------------------------------------------------
# QA Agent
# -----------------------------------------------------------------------------
class QAAgent(BaseAgent):
    """Runs the project's test suite; failing tests block the task."""

    agent_id = "qa"
    role = "QA-Agent"
    system_prompt = "You are the QA Agent. Run tests, analyze results and report issues."

    async def execute_task(self, record: TaskRecord) -> AgentResult:
        runner = self.services.test_runner
        if runner is None:
            return AgentResult(success=False, error="No test runner configured")

        test_type = str(record.metadata.get("test_type") or "all")
        test_path = record.metadata.get("test_path")
        self.update_progress(record.task_id, f"Running {test_type} tests")
        await self.services.comms.share_progress(self.role, f"Running {test_type} tests for {record.task_id}", 50)

        result = await asyncio.to_thread(runner.run_tests, test_type, test_path)
        report = format_results(result.to_dict())
        report_path = self.write_deliverable(f"reports/{record.task_id}.md", report)
        self.update_progress(record.task_id, f"Test report written: {report_path.name}")

        if not result.success:
            reason = result.error if result.failed == 0 and result.error else f"{result.failed} test(s) failed"
            return AgentResult(success=False, error=reason, details=report, artifacts=[str(report_path)])
        return AgentResult(success=True, artifacts=[str(report_path)])


AGENT_CLASSES = [RDAgent, ArchitectAgent, BackendAgent, FrontendAgent, DevOpsAgent, QAAgent, DocsAgent]


def build_agents(services: AgentServices) -> Dict[str, BaseAgent]:
    """One instance of each specialist, keyed by agent id."""
    return {cls.agent_id: cls(services) for cls in AGENT_CLASSES}
