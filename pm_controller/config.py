"""
Configuration

All settings come from environment variables. Values are read once into
a Settings instance; tests build their own with Settings.for_root().
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger("config")


# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------
DEFAULT_STANDUP_CRON = "0 8 * * *"
DEFAULT_WEEKLY_REPORT_CRON = "0 16 * * 5"
DEFAULT_PM_AGENT_INTERVAL_MS = 3600000
DEFAULT_LLM_BASE_URL = "https://api.openai.com/v1"
DEFAULT_LLM_MODEL = "gpt-4-turbo-preview"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

TASK_STATUS_DIRS = [
    "inbox",
    "backlog",
    "in-progress",
    "review",
    "blocked",
    "completed",
    "archive",
]
REQUEST_STATUS_DIRS = ["pending", "in-analysis", "approved", "rejected"]


@dataclass
class Settings:
    """Runtime settings for the PM team process."""
    project_root: Path
    tasks_dir: Path
    requests_dir: Path
    standup_dir: Path
    workspace_dir: Path
    feature_flags_file: Path
    test_results_dir: Path
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    llm_api_key: str = ""
    llm_base_url: str = DEFAULT_LLM_BASE_URL
    llm_model: str = DEFAULT_LLM_MODEL
    standup_cron: str = DEFAULT_STANDUP_CRON
    weekly_report_cron: str = DEFAULT_WEEKLY_REPORT_CRON
    pm_agent_interval_ms: int = DEFAULT_PM_AGENT_INTERVAL_MS
    environment: str = "development"
    log_level: str = "INFO"
    log_file: Optional[str] = None
    api_host: str = "127.0.0.1"
    api_port: int = 8010
    github_webhook_secret: str = ""
    main_branch: str = "main"

    @property
    def pm_agent_interval_seconds(self) -> float:
        return self.pm_agent_interval_ms / 1000.0

    @classmethod
    def for_root(cls, project_root: Path, **overrides) -> "Settings":
        """Build settings with every directory derived from project_root."""
        root = Path(project_root)
        values = dict(
            project_root=root,
            tasks_dir=root / "tasks",
            requests_dir=root / "requests",
            standup_dir=root / "standups",
            workspace_dir=root / "workspace",
            feature_flags_file=root / "config" / "feature-flags.json",
            test_results_dir=root / "test-results",
        )
        values.update(overrides)
        return cls(**values)

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from the process environment."""
        root = Path(os.getenv("PROJECT_ROOT", os.getcwd()))

        def _path(name: str, default: Path) -> Path:
            value = os.getenv(name)
            return Path(value) if value else default

        try:
            interval = int(os.getenv("PM_AGENT_INTERVAL", str(DEFAULT_PM_AGENT_INTERVAL_MS)))
        except ValueError:
            logger.warning("Invalid PM_AGENT_INTERVAL, using default")
            interval = DEFAULT_PM_AGENT_INTERVAL_MS

        try:
            api_port = int(os.getenv("STATUS_API_PORT", "8010"))
        except ValueError:
            logger.warning("Invalid STATUS_API_PORT, using 8010")
            api_port = 8010

        return cls(
            project_root=root,
            tasks_dir=_path("TASKS_DIR", root / "tasks"),
            requests_dir=_path("REQUESTS_DIR", root / "requests"),
            standup_dir=_path("STANDUP_DIR", root / "standups"),
            workspace_dir=_path("WORKSPACE_DIR", root / "workspace"),
            feature_flags_file=_path("FEATURE_FLAGS_FILE", root / "config" / "feature-flags.json"),
            test_results_dir=_path("TEST_RESULTS_DIR", root / "test-results"),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN", ""),
            telegram_chat_id=os.getenv("TELEGRAM_CHAT_ID", ""),
            llm_api_key=os.getenv("OPENAI_API_KEY", "") or os.getenv("LLM_API_KEY", ""),
            llm_base_url=os.getenv("LLM_BASE_URL", DEFAULT_LLM_BASE_URL),
            llm_model=os.getenv("OPENAI_MODEL", DEFAULT_LLM_MODEL),
            standup_cron=os.getenv("STANDUP_CRON", DEFAULT_STANDUP_CRON),
            weekly_report_cron=os.getenv("WEEKLY_REPORT_CRON", DEFAULT_WEEKLY_REPORT_CRON),
            pm_agent_interval_ms=interval,
            environment=os.getenv("ENVIRONMENT", "development"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=os.getenv("LOG_FILE") or None,
            api_host=os.getenv("STATUS_API_HOST", "127.0.0.1"),
            api_port=api_port,
            github_webhook_secret=os.getenv("GITHUB_WEBHOOK_SECRET", ""),
            main_branch=os.getenv("MAIN_BRANCH", "main"),
        )

    def ensure_directories(self) -> None:
        """Create every task, request and output directory."""
        for status in TASK_STATUS_DIRS:
            (self.tasks_dir / status).mkdir(parents=True, exist_ok=True)
        for status in REQUEST_STATUS_DIRS:
            (self.requests_dir / status).mkdir(parents=True, exist_ok=True)
        self.standup_dir.mkdir(parents=True, exist_ok=True)
        self.workspace_dir.mkdir(parents=True, exist_ok=True)
        self.test_results_dir.mkdir(parents=True, exist_ok=True)
        self.feature_flags_file.parent.mkdir(parents=True, exist_ok=True)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure root logging for an entry point."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    if log_file:
        try:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logging.getLogger().addHandler(file_handler)
        except PermissionError:
            logger.warning(f"Cannot write log file {log_file}, console only")
