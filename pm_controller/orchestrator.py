"""
Agent Orchestrator

Wires the PM team together: stores, PM agent, specialist agents, team
comms, scheduler and file watcher. The Telegram bot owns the event loop
and hands the orchestrator a notifier coroutine.
"""

import logging
from typing import Optional, Dict, Any, Callable, Awaitable

from .agents import AgentServices, BaseAgent, build_agents, agent_id_for_type
from .approvals import ApprovalWorkflow
from .config import Settings
from .conversation import PMConversation
from .feature_flags import FeatureFlags
from .git_ops import GitOps
from .health import HealthMonitor
from .llm_client import CompletionClient
from .pm_agent import PMAgent
from .progress import ProgressTracker
from .scheduler import CronScheduler
from .task_model import TaskStatus
from .task_store import TaskStore, RequestStore, RequestStatus
from .team_comms import TeamComms
from .test_runner import TestRunner
from .watcher import TaskWatcher
from .workspace import WorkspaceManager

logger = logging.getLogger("orchestrator")

Notifier = Callable[[str], Awaitable[None]]

APPROVALS_FILE = "approvals.json"


class AgentOrchestrator:
    """Owns every long-lived component of the PM team process."""

    def __init__(
        self,
        settings: Settings,
        notifier: Optional[Notifier] = None,
        llm: Optional[CompletionClient] = None,
        watch_files: bool = True,
    ):
        self.settings = settings
        self.notifier = notifier
        self.watch_files = watch_files
        settings.ensure_directories()

        self.llm = llm or CompletionClient(
            api_key=settings.llm_api_key,
            base_url=settings.llm_base_url,
            model=settings.llm_model,
        )
        self.store = TaskStore(settings.tasks_dir)
        self.requests = RequestStore(settings.requests_dir)
        self.flags = FeatureFlags(settings.feature_flags_file, environment=settings.environment)
        self.comms = TeamComms(self.notify)
        self.workspace = WorkspaceManager(settings.workspace_dir)
        self.approvals = ApprovalWorkflow(settings.workspace_dir / APPROVALS_FILE)
        self.git = GitOps(settings.project_root, default_branch=settings.main_branch)
        self.test_runner = TestRunner(settings.project_root, settings.test_results_dir)
        self.progress = ProgressTracker(self.store)
        self.conversation = PMConversation(self.store)
        self.health = HealthMonitor(settings)

        self.agents: Dict[str, BaseAgent] = build_agents(AgentServices(
            store=self.store,
            llm=self.llm,
            comms=self.comms,
            workspace=self.workspace,
            flags=self.flags,
            project_root=settings.project_root,
            git=self.git,
            test_runner=self.test_runner,
            approvals=self.approvals,
        ))
        self.pm = PMAgent(
            store=self.store,
            requests=self.requests,
            llm=self.llm,
            notify=self.notify,
            flags=self.flags,
            comms=self.comms,
            progress=self.progress,
            standup_dir=settings.standup_dir,
            agent_resolver=self.get_agent_for_task,
            project_root=settings.project_root,
            approvals=self.approvals,
        )

        self.scheduler = CronScheduler()
        self.scheduler.add_cron("daily-standup", settings.standup_cron, self.pm.run_daily_standup)
        self.scheduler.add_cron("weekly-report", settings.weekly_report_cron, self.pm.generate_weekly_report)
        self.scheduler.add_interval("pm-tick", settings.pm_agent_interval_seconds, self.pm.tick)

        self.watcher = TaskWatcher(
            pending_dir=self.requests.status_dir(RequestStatus.PENDING),
            in_progress_dir=self.store.status_dir(TaskStatus.IN_PROGRESS),
            on_new_request=self.pm.process_new_request,
            on_task_update=self.pm.handle_task_update,
        )
        self.started = False

    @property
    def last_request_id(self) -> Optional[str]:
        return self.pm.last_request_id

    @last_request_id.setter
    def last_request_id(self, value: Optional[str]) -> None:
        self.pm.last_request_id = value

    def get_agent_for_task(self, task_type: str) -> Optional[BaseAgent]:
        """Agent for a task type, or None when unmapped or at capacity."""
        agent_id = agent_id_for_type(task_type)
        if not agent_id:
            logger.warning(f"No agent mapped for task type: {task_type}")
            return None
        agent = self.agents.get(agent_id)
        if not agent or not agent.is_available():
            return None
        return agent

    async def notify(self, text: str) -> None:
        """Send an HTML message to the team chat. Failures are logged."""
        if not self.notifier:
            logger.info(f"[notify] {text[:200]}")
            return
        try:
            await self.notifier(text)
        except Exception as e:
            logger.error(f"Failed to send notification: {e}")

    async def start(self) -> None:
        if self.started:
            return
        logger.info("Starting PM team orchestrator")
        self.scheduler.start()
        if self.watch_files:
            self.watcher.start()
        self.started = True
        await self.comms.team_announcement(
            f"PM team online with {len(self.agents)} specialists. Send /help to get started."
        )

    async def shutdown(self) -> None:
        logger.info("Shutting down PM team orchestrator")
        await self.scheduler.stop()
        if self.watch_files:
            self.watcher.stop()
        await self.pm.wait_for_agents()
        self.started = False

    def get_status(self) -> Dict[str, Any]:
        return {
            "started": self.started,
            "tasks": self.store.counts(),
            "agents": [agent.get_status() for agent in self.agents.values()],
            "pm": self.pm.get_stats(),
            "next_runs": {
                name: (self.scheduler.next_run(name).isoformat() if self.scheduler.next_run(name) else None)
                for name in self.scheduler.jobs
            },
        }
