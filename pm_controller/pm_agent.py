"""
PM Agent

The project manager: turns chat commands and request files into task
file operations, using the completion API for analysis and breakdown.

Request flow:
    pending --(analysis)--> in-analysis --/approve--> approved --> tasks in backlog
                                       \\--/reject--> rejected

Task review flow:
    review --/approve--> completed
    review --/reject---> in-progress (REJECTED entry, agent re-runs)

Notifications sent through `notify` are Telegram HTML. Text returned to
the bot (status, standup, answers) is markdown; the bot converts it.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Dict, Any, List, Callable, Awaitable, Set

from .approvals import ApprovalWorkflow
from .feature_flags import FeatureFlags
from .formatting import escape_html, markdown_to_telegram_html
from .llm_client import CompletionClient, CompletionError
from .progress import ProgressTracker
from .task_model import TaskStatus, new_task_document, parse_task_file, extract_section
from .task_store import TaskStore, RequestStore, RequestStatus, RequestRecord
from .team_comms import TeamComms

logger = logging.getLogger("pm_agent")

Notify = Callable[[str], Awaitable[None]]
AgentResolver = Callable[[str], Optional[Any]]

PROMPT_FILE = Path("docs") / "PM_AGENT_PROMPT.md"
FALLBACK_SYSTEM_PROMPT = (
    "You are the PM Agent. You coordinate an AI development team.\n"
    "Your job: analyze requests, create task breakdowns, assign work, report progress.\n"
    "Be concise, professional, and proactive."
)
STRUCTURED_MARKERS = ("## What Do You Want Built?", "FEATURE:", "WHAT:")
FALLBACK_DESCRIPTION_LENGTH = 500
STATUS_PREVIEW_LIMIT = 5
WEEKLY_WINDOW_DAYS = 7

TASK_TYPES = ["design", "backend", "frontend", "devops", "qa", "docs"]

_REQUIRED_INFO_RE = re.compile(r"ITEM:\s*([^\n]+)\nWHY:\s*([^\n]+)\nWHERE:\s*([^\n]+)")
_TASK_BLOCK_RE = re.compile(
    r"TASK:\s*\[([^\]]+)\]\s*-\s*([^\n]+)\s*DESCRIPTION:\s*([^\n]+(?:\n(?!TASK:)[^\n]+)*)",
    re.IGNORECASE,
)


# -----------------------------------------------------------------------------
# Prompts
# -----------------------------------------------------------------------------
STRUCTURED_ANALYSIS_PROMPT = """Analyze this detailed request and create a clear, actionable task breakdown.

The request includes specific requirements, success criteria, and context.
Provide a concise summary (max 400 words) that includes:
1. High-level goal
2. Key tasks/phases identified
3. Any dependencies or blockers
4. Recommended approach

Request:
{content}"""

PLAIN_ANALYSIS_PROMPT = "Analyze this request and create a concise task breakdown (max 300 words):\n\n{content}"

REQUIRED_INFO_PROMPT = """Analyze this request and identify ANY information that requires human intervention or external setup.

Request:
{content}

Identify:
1. API keys or credentials needed
2. External service accounts to create
3. Configuration values that can't be determined automatically
4. Any other prerequisites that need human action

For each item, provide:
- What is needed
- Why it's needed
- Where to get it

Format as:
ITEM: [description]
WHY: [reason]
WHERE: [how to obtain]

If NO information is needed, respond with: "NONE\""""

MODIFICATION_PROMPT = """The user has requested changes to the analysis.

Original Request:
{content}

User's Modifications:
{modifications}

Provide an UPDATED analysis (max 400 words) incorporating these changes:
1. High-level goal
2. Key tasks/phases identified (with modifications applied)
3. Any dependencies or blockers
4. Recommended approach

IMPORTANT: Apply the user's modifications exactly as requested."""

TASK_BREAKDOWN_PROMPT = """Based on this request analysis, create specific task assignments.

{content}

For each task, provide:
1. Task type ({types})
2. Brief title
3. Description

Format each task as:
TASK: [type] - [title]
DESCRIPTION: [description]

Generate the tasks now:"""

CONVERSATION_PROMPT = """Answer the team lead's message using the current project state.

## Board
{status}

## Blockers
{blockers}

## Recent team conversation
{conversation}

## Message
{message}"""


@dataclass
class PendingApproval:
    """A request waiting on /provide before tasks are created."""
    request_id: str
    required_info: List[Dict[str, str]] = field(default_factory=list)
    requested_by: Optional[str] = None


def is_structured_request(content: str) -> bool:
    return any(marker in content for marker in STRUCTURED_MARKERS)


def parse_required_information(response: str) -> List[Dict[str, str]]:
    if response.strip().strip('"').upper() == "NONE":
        return []
    return [
        {"item": m.group(1).strip(), "why": m.group(2).strip(), "where": m.group(3).strip()}
        for m in _REQUIRED_INFO_RE.finditer(response)
    ]


def parse_tasks_from_text(text: str) -> List[Dict[str, str]]:
    """Parse TASK/DESCRIPTION blocks; fall back to one backend task."""
    tasks = [
        {"type": m.group(1).strip().lower(), "title": m.group(2).strip(), "description": m.group(3).strip()}
        for m in _TASK_BLOCK_RE.finditer(text)
    ]
    if not tasks:
        logger.warning("No tasks parsed from completion response, creating default task")
        tasks.append({
            "type": "backend",
            "title": "Implement feature",
            "description": text[:FALLBACK_DESCRIPTION_LENGTH],
        })
    return tasks


def format_information_request(required_info: List[Dict[str, str]]) -> str:
    return "\n\n".join(
        f"<b>{index}. {escape_html(info['item'])}</b>\n"
        f"   <i>Why:</i> {escape_html(info['why'])}\n"
        f"   <i>Where:</i> {escape_html(info['where'])}"
        for index, info in enumerate(required_info, start=1)
    )


def task_id_for(request_id: str, index: int) -> str:
    return f"TASK-{request_id.replace('REQ-', '')}-{index:02d}"


class PMAgent:
    """Conversational project manager over the task and request stores."""

    role = "PM-Agent"

    def __init__(
        self,
        store: TaskStore,
        requests: RequestStore,
        llm: CompletionClient,
        notify: Notify,
        flags: FeatureFlags,
        comms: TeamComms,
        progress: ProgressTracker,
        standup_dir: Path,
        agent_resolver: AgentResolver,
        project_root: Optional[Path] = None,
        approvals: Optional[ApprovalWorkflow] = None,
    ):
        self.store = store
        self.requests = requests
        self.llm = llm
        self.notify = notify
        self.flags = flags
        self.comms = comms
        self.progress = progress
        self.standup_dir = Path(standup_dir)
        self.agent_resolver = agent_resolver
        self.approvals = approvals
        self.system_prompt = self.load_system_prompt(project_root)
        self.pending_approval: Optional[PendingApproval] = None
        self.last_request_id: Optional[str] = None
        self._background: Set[asyncio.Task] = set()

    @staticmethod
    def load_system_prompt(project_root: Optional[Path]) -> str:
        if project_root:
            prompt_path = Path(project_root) / PROMPT_FILE
            if prompt_path.exists():
                return prompt_path.read_text(encoding="utf-8")
        return FALLBACK_SYSTEM_PROMPT

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    async def process_new_request(self, path: Path) -> Optional[RequestRecord]:
        """Analyze a pending request and move it into analysis."""
        logger.info(f"Processing new request: {path}")
        record = self.requests.read_path(Path(path))
        if not record:
            await self.notify("❌ Could not read request file")
            return None
        if record.status != RequestStatus.PENDING:
            logger.debug(f"Skipping {record.request_id}, already {record.status.value}")
            return None

        await self.notify("⏳ <b>Analyzing request...</b>")
        template = STRUCTURED_ANALYSIS_PROMPT if is_structured_request(record.content) else PLAIN_ANALYSIS_PROMPT
        try:
            analysis = await self.llm.pm_chat(self.system_prompt, template.format(content=record.content))
        except CompletionError as e:
            logger.error(f"Analysis failed for {record.request_id}: {e}")
            await self.notify(f"❌ Error processing request: {escape_html(str(e))}")
            return None

        moved = self.requests.move(record.request_id, RequestStatus.IN_ANALYSIS)
        self.requests.append_section(record.request_id, "## PM Analysis", analysis)
        self.last_request_id = record.request_id

        await self.notify(
            f"✅ <b>Analysis Complete</b> ({escape_html(record.request_id)})\n\n"
            f"{markdown_to_telegram_html(analysis)}\n\n"
            f"👉 Type <code>/approve</code> to proceed"
        )
        logger.info(f"Request processed: {record.request_id}")
        return moved

    async def modify_request(self, request_id: str, modifications: str, username: str) -> bool:
        logger.info(f"Modifying {request_id} by {username}: {modifications}")
        record = self.requests.get(request_id, RequestStatus.IN_ANALYSIS)
        if not record:
            await self.notify(f"❌ Request {escape_html(request_id)} not found in analysis")
            return False

        await self.notify("⏳ <b>Updating analysis...</b>")
        prompt = MODIFICATION_PROMPT.format(content=record.content, modifications=modifications)
        try:
            updated = await self.llm.pm_chat(self.system_prompt, prompt)
        except CompletionError as e:
            logger.error(f"Modification failed for {request_id}: {e}")
            await self.notify(f"❌ Error updating analysis: {escape_html(str(e))}")
            return False
        self.requests.append_section(
            request_id, "## Modifications", f"Requested by {username}:\n{modifications}"
        )
        self.requests.append_section(request_id, "## Updated Analysis", updated)

        await self.notify(
            f"✅ <b>Updated Analysis</b>\n\n"
            f"{markdown_to_telegram_html(updated)}\n\n"
            f"👉 Type <code>/approve</code> to proceed or <code>/modify</code> again"
        )
        logger.info(f"Request {request_id} modified")
        return True

    async def identify_required_information(self, content: str) -> List[Dict[str, str]]:
        try:
            response = await self.llm.pm_chat(self.system_prompt, REQUIRED_INFO_PROMPT.format(content=content))
        except CompletionError as e:
            logger.error(f"Error identifying required information: {e}")
            return []
        return parse_required_information(response)

    # -------------------------------------------------------------------------
    # Approve / Reject
    # -------------------------------------------------------------------------

    async def approve(self, item_id: str, username: str) -> bool:
        """Approve a request in analysis or a task in review."""
        logger.info(f"Approving {item_id} by {username}")

        request = self.requests.get(item_id, RequestStatus.IN_ANALYSIS)
        if request:
            await self.notify("⏳ <b>Checking for required information...</b>")
            required = await self.identify_required_information(request.content)
            if required:
                self.pending_approval = PendingApproval(request.request_id, required, username)
                await self.notify(
                    "📝 <b>Information Required</b>\n\n"
                    "Before I create tasks, I need some details:\n\n"
                    f"{format_information_request(required)}\n\n"
                    "👉 Reply with <code>/provide [your answers]</code>"
                )
                return True
            await self.proceed_with_task_creation(request.request_id)
            return True

        task = self.store.get(item_id, TaskStatus.REVIEW)
        if task:
            ok, message = self.store.transition(
                task.task_id, TaskStatus.COMPLETED, actor=self.role, note=f"APPROVED by {username}"
            )
            if not ok:
                await self.notify(f"❌ {escape_html(message)}")
                return False
            if self.approvals:
                self.approvals.approve(task.task_id)
            await self.notify(f"✅ Task {escape_html(task.task_id)} approved and completed!")
            await self.comms.celebrate(self.role, f"{task.task_id} shipped")
            return True

        await self.notify(f"❌ Could not find {escape_html(item_id)} in analysis or review")
        return False

    async def provide_information(self, information: str, username: str) -> bool:
        pending = self.pending_approval
        if not pending:
            await self.notify("❌ No pending approval waiting for information")
            return False

        logger.info(f"Information provided by {username} for {pending.request_id}")
        self.requests.append_section(pending.request_id, "## Provided Information", information)
        self.pending_approval = None
        await self.notify("✅ <b>Information received!</b> Proceeding with task creation...")
        await self.proceed_with_task_creation(pending.request_id)
        return True

    async def reject(self, item_id: str, reason: str, username: str) -> bool:
        logger.info(f"Rejecting {item_id} by {username}: {reason}")

        request = self.requests.get(item_id, RequestStatus.IN_ANALYSIS)
        if request:
            self.requests.append_section(request.request_id, "## Rejection", f"Rejected by {username}: {reason}")
            self.requests.move(request.request_id, RequestStatus.REJECTED)
            if self.pending_approval and self.pending_approval.request_id == request.request_id:
                self.pending_approval = None
            await self.notify(f"❌ Request {escape_html(request.request_id)} rejected: {escape_html(reason)}")
            return True

        task = self.store.get(item_id, TaskStatus.REVIEW)
        if task:
            self.store.append_progress(task.task_id, self.role, f"REJECTED: {reason}")
            if self.approvals:
                self.approvals.reject(task.task_id, reason)
            ok, message = self.store.transition(task.task_id, TaskStatus.IN_PROGRESS, actor=self.role)
            if not ok:
                await self.notify(f"❌ {escape_html(message)}")
                return False
            await self.notify(
                f"❌ {escape_html(task.task_id)} rejected: {escape_html(reason)}\n\nTask will be revised."
            )
            agent = self.agent_resolver(task.task_type)
            if agent:
                self._start_agent(agent, task.task_id)
            else:
                logger.info(f"No agent free for {task.task_id}, returning it to backlog")
                self.store.transition(
                    task.task_id, TaskStatus.BACKLOG, actor=self.role,
                    note="Waiting for an available agent",
                    metadata_updates={"assigned_to": "none"},
                )
            return True

        await self.notify(f"❌ Could not find {escape_html(item_id)} in analysis or review")
        return False

    # -------------------------------------------------------------------------
    # Task creation and assignment
    # -------------------------------------------------------------------------

    async def proceed_with_task_creation(self, request_id: str) -> List[str]:
        request = self.requests.move(request_id, RequestStatus.APPROVED)
        if not request:
            await self.notify(f"❌ Request {escape_html(request_id)} not found")
            return []

        await self.notify(f"✅ Request {escape_html(request_id)} approved! Creating tasks...")
        task_ids = await self.create_tasks_from_request(request)
        if not task_ids:
            await self.notify("⚠️ No tasks created. Please check the request format.")
            return []

        await self.notify(
            f"🎯 <b>Created {len(task_ids)} Tasks</b>\n"
            + "\n".join(f"• <code>{t}</code>" for t in task_ids)
            + "\n\n🤖 Agents starting work..."
        )
        await self.assign_pending_tasks()
        return task_ids

    async def create_tasks_from_request(self, request: RequestRecord) -> List[str]:
        if self.flags.is_enabled("ai-task-generation"):
            try:
                text = await self.llm.pm_chat(
                    self.system_prompt,
                    TASK_BREAKDOWN_PROMPT.format(content=request.content, types=", ".join(TASK_TYPES)),
                )
            except CompletionError as e:
                logger.error(f"Error creating tasks for {request.request_id}: {e}")
                return []
            tasks = parse_tasks_from_text(text)
        else:
            description = extract_section(request.content, "## Description") or request.content
            tasks = [{"type": "backend", "title": request.title, "description": description}]

        task_ids = []
        for index, task in enumerate(tasks, start=1):
            task_id = task_id_for(request.request_id, index)
            metadata, body = new_task_document(
                task_id,
                task["type"],
                task["title"],
                task["description"],
                request_id=request.request_id,
                requirements=[
                    "Follow project conventions",
                    "Include tests",
                    "Add documentation",
                    "Create PR when complete",
                ],
                created_by=self.role,
            )
            try:
                self.store.create(task_id, metadata, body, TaskStatus.BACKLOG)
            except ValueError as e:
                logger.warning(f"Skipping task: {e}")
                continue
            task_ids.append(task_id)
            logger.info(f"Created task: {task_id} ({task['type']})")
        return task_ids

    def _start_agent(self, agent: Any, task_id: str) -> asyncio.Task:
        agent.claim(task_id)
        job = asyncio.create_task(agent.run_task_workflow(task_id), name=f"{agent.key}:{task_id}")
        self._background.add(job)
        job.add_done_callback(self._background.discard)
        return job

    async def assign_pending_tasks(self) -> List[str]:
        """Hand backlog tasks to available agents."""
        if not self.flags.is_enabled("auto-assignment"):
            logger.info("Auto-assignment disabled, leaving backlog untouched")
            return []

        assigned = []
        for record in self.store.list(TaskStatus.BACKLOG):
            agent = self.agent_resolver(record.task_type)
            if not agent:
                logger.warning(f"No available agent for task {record.task_id} (type: {record.task_type})")
                continue

            ok, message = self.store.transition(
                record.task_id,
                TaskStatus.IN_PROGRESS,
                actor=self.role,
                note=f"Assigned to {agent.role}",
                metadata_updates={"assigned_to": agent.key},
            )
            if not ok:
                logger.warning(f"Could not assign {record.task_id}: {message}")
                continue

            logger.info(f"Assigned {record.task_id} to {agent.role}")
            self._start_agent(agent, record.task_id)
            assigned.append(record.task_id)
            await self.notify(f"🚀 {agent.role} started working on {escape_html(record.task_id)}")
        return assigned

    async def wait_for_agents(self) -> None:
        """Wait for every running agent workflow to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def handle_task_update(self, path: Path) -> bool:
        """Move a task an agent marked done (front matter) into review."""
        path = Path(path)
        if path.parent.name != TaskStatus.IN_PROGRESS.value or not path.exists():
            return False
        record = parse_task_file(path.read_text(encoding="utf-8"), TaskStatus.IN_PROGRESS, path)
        declared = str(record.metadata.get("status", "")).strip().lower()
        if declared not in (TaskStatus.REVIEW.value, TaskStatus.COMPLETED.value):
            return False

        ok, message = self.store.transition(record.task_id, TaskStatus.REVIEW, actor=self.role,
                                            note="Marked done in task file")
        if not ok:
            logger.warning(f"Task update for {record.task_id} ignored: {message}")
            return False
        await self.notify(
            f"👀 {escape_html(record.task_id)} is ready for review\n"
            f"👉 Type <code>/approve {escape_html(record.task_id)}</code>"
        )
        return True

    async def tick(self) -> None:
        logger.debug("PM Agent tick")
        for request in self.requests.list(RequestStatus.PENDING):
            await self.process_new_request(request.path)
        await self.assign_pending_tasks()

    # -------------------------------------------------------------------------
    # Reports
    # -------------------------------------------------------------------------

    async def run_daily_standup(self) -> str:
        logger.info("Running daily standup")
        counts = self.store.counts()
        date = datetime.utcnow().strftime("%Y-%m-%d")
        report = "\n".join([
            f"📊 **Daily Standup - {date}**",
            "",
            "**Team Status:**",
            f"• In Progress: {counts[TaskStatus.IN_PROGRESS.value]} tasks",
            f"• Blocked: {counts[TaskStatus.BLOCKED.value]} tasks",
            f"• Awaiting Review: {counts[TaskStatus.REVIEW.value]} tasks",
            f"• Completed: {counts[TaskStatus.COMPLETED.value]} tasks",
            "",
            "Type /status for details",
        ])
        await self.notify(markdown_to_telegram_html(report))

        self.standup_dir.mkdir(parents=True, exist_ok=True)
        (self.standup_dir / f"{date}.md").write_text(f"# Daily Standup - {date}\n\n{report}\n", encoding="utf-8")
        return report

    def get_latest_standup(self) -> str:
        files = sorted(self.standup_dir.glob("*.md")) if self.standup_dir.exists() else []
        if not files:
            return "No standup reports yet. Run /standup to generate one."
        return files[-1].read_text(encoding="utf-8")

    async def generate_weekly_report(self) -> Optional[str]:
        if not self.flags.is_enabled("weekly-report"):
            logger.info("Weekly report disabled by feature flag")
            return None

        logger.info("Generating weekly report")
        completed = self.progress.completed_since(WEEKLY_WINDOW_DAYS)
        since = (datetime.utcnow() - timedelta(days=WEEKLY_WINDOW_DAYS)).strftime("%Y-%m-%d")
        lines = [f"📈 **Weekly Report** (since {since})", ""]
        if completed:
            lines.append(f"**Completed this week ({len(completed)}):**")
            lines.extend(f"• {r.task_id}: {r.title}" for r in completed)
        else:
            lines.append("No tasks completed this week.")
        lines.extend(["", self.progress.generate_report()])
        report = "\n".join(lines)
        await self.notify(markdown_to_telegram_html(report))
        return report

    def get_status(self) -> str:
        in_progress = self.store.list(TaskStatus.IN_PROGRESS)
        review = self.store.list(TaskStatus.REVIEW)
        blocked = self.store.list(TaskStatus.BLOCKED)

        lines = ["📋 **Current Status**", ""]
        if in_progress:
            lines.append(f"**In Progress ({len(in_progress)}):**")
            for record in in_progress[:STATUS_PREVIEW_LIMIT]:
                owner = f" ({record.assigned_to})" if record.assigned_to else ""
                lines.append(f"• {record.task_id}{owner}")
            lines.append("")
        if review:
            lines.append(f"**Awaiting Review ({len(review)}):**")
            lines.extend(f"• {r.task_id} - Type /approve {r.task_id}" for r in review)
            lines.append("")
        if blocked:
            lines.append(f"**Blocked ({len(blocked)}):**")
            lines.extend(f"• {r.task_id}" for r in blocked)
        if not (in_progress or review or blocked):
            lines.append("No active tasks. Submit a request with /request [description]")
        return "\n".join(lines).rstrip()

    # -------------------------------------------------------------------------
    # Conversation
    # -------------------------------------------------------------------------

    async def handle_conversational_query(self, text: str, username: Optional[str] = None) -> str:
        """Free-text question answered with board and team context."""
        if not self.flags.is_enabled("conversational-pm", user_id=username):
            return "Conversational mode is disabled. Use /help to see the available commands."

        blockers = self.progress.blockers()
        blocker_text = "\n".join(f"- {b['task_id']}: {b['reason']}" for b in blockers) or "None"
        prompt = CONVERSATION_PROMPT.format(
            status=self.get_status(),
            blockers=blocker_text,
            conversation=self.comms.get_conversation_context() or "No recent messages",
            message=text,
        )
        try:
            return await self.llm.pm_chat(self.system_prompt, prompt)
        except CompletionError as e:
            logger.error(f"Conversational query failed: {e}")
            return "Sorry, I couldn't reach the language model right now. Try /status instead."

    def get_stats(self) -> Dict[str, Any]:
        return {
            "pending_approval": self.pending_approval.request_id if self.pending_approval else None,
            "last_request_id": self.last_request_id,
            "running_workflows": len(self._background),
        }
