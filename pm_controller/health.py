"""
Health Monitor

Environment diagnostics for the PM team process: tooling (git, gh),
runtime, installed libraries, directory layout, credentials.

Each check yields pass / warn / fail. The report rolls these up:
- any fail  -> unhealthy
- any warn  -> degraded
- otherwise -> healthy
"""

import importlib.util
import logging
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Mapping

from .config import Settings, TASK_STATUS_DIRS

logger = logging.getLogger("health")

COMMAND_TIMEOUT = 10
MIN_PYTHON = (3, 9)
REQUIRED_ENV_VARS = ["PROJECT_ROOT"]
OPTIONAL_ENV_VARS = ["TASKS_DIR", "REQUESTS_DIR", "STANDUP_DIR"]
REQUIRED_MODULES = {
    "telegram": "python-telegram-bot",
    "httpx": "httpx",
    "yaml": "pyyaml",
    "croniter": "croniter",
    "watchdog": "watchdog",
    "fastapi": "fastapi",
}


class CheckStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


STATUS_EMOJI = {CheckStatus.PASS: "✅", CheckStatus.WARN: "⚠️", CheckStatus.FAIL: "❌"}
OVERALL_EMOJI = {"healthy": "🟢", "degraded": "🟡", "unhealthy": "🔴"}


@dataclass
class CheckResult:
    """Outcome of one diagnostic."""
    check_id: str
    status: CheckStatus
    message: str
    fix: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.check_id,
            "status": self.status.value,
            "message": self.message,
            "fix": self.fix,
            "error": self.error,
            "metadata": self.metadata,
        }


class HealthMonitor:
    """Runs every diagnostic and builds a report."""

    def __init__(self, settings: Settings, environ: Optional[Mapping[str, str]] = None):
        self.settings = settings
        self.environ = environ if environ is not None else os.environ

    def _run(self, args: List[str]) -> subprocess.CompletedProcess:
        return subprocess.run(args, capture_output=True, text=True, timeout=COMMAND_TIMEOUT)

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    def check_git_installed(self) -> CheckResult:
        if not shutil.which("git"):
            return CheckResult("git_installed", CheckStatus.FAIL, "Git is not installed",
                               fix="Install git from https://git-scm.com/")
        try:
            version = self._run(["git", "--version"]).stdout.strip()
        except (OSError, subprocess.SubprocessError) as e:
            return CheckResult("git_installed", CheckStatus.FAIL, "Git is not runnable", error=str(e))
        return CheckResult("git_installed", CheckStatus.PASS, f"Git installed: {version}")

    def check_git_config(self) -> CheckResult:
        missing = []
        for key in ("user.name", "user.email"):
            try:
                value = self._run(["git", "config", "--get", key]).stdout.strip()
            except (OSError, subprocess.SubprocessError):
                value = ""
            if not value:
                missing.append(key)
        if missing:
            return CheckResult("git_config", CheckStatus.WARN, f"Git config missing: {', '.join(missing)}",
                               fix='git config --global user.name "Your Name" && '
                                   'git config --global user.email "you@example.com"')
        return CheckResult("git_config", CheckStatus.PASS, "Git user configured")

    def check_gh_cli(self) -> CheckResult:
        if not shutil.which("gh"):
            return CheckResult("gh_cli", CheckStatus.WARN, "GitHub CLI (gh) not installed",
                               fix="Install from https://cli.github.com/ (needed for PR creation)")
        try:
            auth = self._run(["gh", "auth", "status"])
        except (OSError, subprocess.SubprocessError) as e:
            return CheckResult("gh_cli", CheckStatus.WARN, "GitHub CLI not runnable", error=str(e))
        if auth.returncode != 0:
            return CheckResult("gh_cli", CheckStatus.WARN, "GitHub CLI not authenticated",
                               fix="Run: gh auth login")
        return CheckResult("gh_cli", CheckStatus.PASS, "GitHub CLI installed and authenticated")

    def check_python_version(self) -> CheckResult:
        current = sys.version_info[:3]
        version = ".".join(str(v) for v in current)
        if current[:2] < MIN_PYTHON:
            return CheckResult("python_version", CheckStatus.FAIL, f"Python {version} is too old",
                               fix=f"Install Python {MIN_PYTHON[0]}.{MIN_PYTHON[1]} or newer")
        return CheckResult("python_version", CheckStatus.PASS, f"Python {version}")

    def check_dependencies(self) -> CheckResult:
        missing = [dist for module, dist in REQUIRED_MODULES.items() if importlib.util.find_spec(module) is None]
        if missing:
            return CheckResult("dependencies", CheckStatus.FAIL, f"Missing libraries: {', '.join(missing)}",
                               fix=f"pip install {' '.join(missing)}")
        return CheckResult("dependencies", CheckStatus.PASS, "All required libraries installed")

    def check_project_structure(self) -> CheckResult:
        missing = [s for s in TASK_STATUS_DIRS if not (self.settings.tasks_dir / s).is_dir()]
        if not self.settings.requests_dir.is_dir():
            missing.append("requests")
        if missing:
            return CheckResult("project_structure", CheckStatus.WARN,
                               f"Missing directories: {', '.join(missing)}",
                               fix="Start the bot once to create the directory layout",
                               metadata={"missing": missing})
        return CheckResult("project_structure", CheckStatus.PASS, "Task directories present")

    def check_workspace_writable(self) -> CheckResult:
        workspace = self.settings.workspace_dir
        probe = workspace / f".health-probe-{os.getpid()}"
        try:
            workspace.mkdir(parents=True, exist_ok=True)
            probe.write_text("ok", encoding="utf-8")
            probe.unlink()
        except OSError as e:
            return CheckResult("workspace_writable", CheckStatus.FAIL, f"Workspace not writable: {workspace}",
                               fix="Check directory permissions", error=str(e))
        return CheckResult("workspace_writable", CheckStatus.PASS, "Workspace writable")

    def check_environment_variables(self) -> CheckResult:
        missing_required = [v for v in REQUIRED_ENV_VARS if not self.environ.get(v)]
        missing_optional = [v for v in OPTIONAL_ENV_VARS if not self.environ.get(v)]
        if missing_required:
            return CheckResult("env_vars", CheckStatus.FAIL,
                               f"Missing required environment variables: {', '.join(missing_required)}",
                               fix="Set them in your environment or .env file")
        if missing_optional:
            return CheckResult("env_vars", CheckStatus.WARN,
                               f"Using defaults for: {', '.join(missing_optional)}",
                               metadata={"missing": missing_optional})
        return CheckResult("env_vars", CheckStatus.PASS, "Environment variables set")

    def check_llm_key(self) -> CheckResult:
        if not self.settings.llm_api_key:
            return CheckResult("llm_api_key", CheckStatus.FAIL, "LLM API key not configured",
                               fix="Set OPENAI_API_KEY")
        return CheckResult("llm_api_key", CheckStatus.PASS, f"LLM configured ({self.settings.llm_model})")

    def check_telegram(self) -> CheckResult:
        if not self.settings.telegram_bot_token:
            return CheckResult("telegram", CheckStatus.FAIL, "Telegram bot token not configured",
                               fix="Set TELEGRAM_BOT_TOKEN")
        if not self.settings.telegram_chat_id:
            return CheckResult("telegram", CheckStatus.WARN, "TELEGRAM_CHAT_ID not set; notifications disabled",
                               fix="Set TELEGRAM_CHAT_ID to the team chat id")
        return CheckResult("telegram", CheckStatus.PASS, "Telegram configured")

    # -------------------------------------------------------------------------
    # Report
    # -------------------------------------------------------------------------

    def run_all_checks(self) -> Dict[str, Any]:
        checks = [
            self.check_git_installed,
            self.check_git_config,
            self.check_gh_cli,
            self.check_python_version,
            self.check_dependencies,
            self.check_project_structure,
            self.check_workspace_writable,
            self.check_environment_variables,
            self.check_llm_key,
            self.check_telegram,
        ]
        results: List[CheckResult] = []
        for check in checks:
            try:
                results.append(check())
            except Exception as e:
                logger.error(f"Health check {check.__name__} crashed: {e}")
                results.append(CheckResult(check.__name__.replace("check_", ""), CheckStatus.FAIL,
                                           "Check crashed", error=str(e)))
        return build_report(results)


def build_report(results: List[CheckResult]) -> Dict[str, Any]:
    passed = sum(1 for r in results if r.status == CheckStatus.PASS)
    warnings = sum(1 for r in results if r.status == CheckStatus.WARN)
    failed = sum(1 for r in results if r.status == CheckStatus.FAIL)
    total = len(results)

    if failed:
        overall = "unhealthy"
    elif warnings:
        overall = "degraded"
    else:
        overall = "healthy"

    return {
        "timestamp": datetime.utcnow().isoformat(timespec="seconds"),
        "overall_status": overall,
        "summary": {
            "total": total,
            "passed": passed,
            "warnings": warnings,
            "failed": failed,
            "score": round(passed / total * 100) if total else 0,
        },
        "results": [r.to_dict() for r in results],
        "recommendations": _recommendations(results),
    }


def _recommendations(results: List[CheckResult]) -> List[Dict[str, Any]]:
    failed = [r for r in results if r.status == CheckStatus.FAIL]
    warned = [r for r in results if r.status == CheckStatus.WARN]
    recommendations = []
    if failed:
        recommendations.append({
            "priority": "high",
            "message": f"{len(failed)} critical issue(s) need immediate attention",
            "actions": [r.fix for r in failed if r.fix],
        })
    if warned:
        recommendations.append({
            "priority": "medium",
            "message": f"{len(warned)} warning(s) should be addressed",
            "actions": [r.fix for r in warned if r.fix],
        })
    if not failed and not warned:
        recommendations.append({"priority": "info", "message": "System is healthy! All checks passed.", "actions": []})
    return recommendations


def format_report(report: Dict[str, Any]) -> str:
    """Plain-text rendering for the doctor CLI and /health."""
    summary = report["summary"]
    overall = report["overall_status"]
    lines = [
        f"{OVERALL_EMOJI.get(overall, '⚪')} PM Team Health Check",
        "",
        f"Overall Status: {overall.upper()}",
        f"Score: {summary['score']}% ({summary['passed']}/{summary['total']} passed)",
    ]
    if summary["warnings"]:
        lines.append(f"Warnings: {summary['warnings']}")
    if summary["failed"]:
        lines.append(f"Failed: {summary['failed']}")

    lines.extend(["", "--- Check Results ---"])
    for result in report["results"]:
        emoji = STATUS_EMOJI.get(CheckStatus(result["status"]), "")
        lines.append(f"{emoji} {result['message']}")
        if result.get("fix"):
            lines.append(f"  Fix: {result['fix']}")
        if result.get("error"):
            lines.append(f"  Error: {result['error']}")

    if report["recommendations"]:
        lines.extend(["", "--- Recommendations ---"])
        for rec in report["recommendations"]:
            lines.append(f"[{rec['priority'].upper()}] {rec['message']}")
            lines.extend(f"  • {action}" for action in rec["actions"])
    return "\n".join(lines)
