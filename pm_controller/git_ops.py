"""
Git Operations

Wrapper over the git and gh CLIs. Commands run with argument lists (no
shell), so branch names, paths and commit messages are never
interpreted by a shell.

Mutating operations return a result dict with a `success` key, matching
the rest of the controller. Only the low-level run() raises.
"""

import logging
import re
import subprocess
import threading
from pathlib import Path
from typing import Optional, Dict, Any, List

logger = logging.getLogger("git_ops")

GIT_TIMEOUT = 120
AGENT_NAME = "PM Team Agent"
AGENT_EMAIL = "agent@pm-team.local"

_INVALID_BRANCH_RE = re.compile(r"^\.|\.\.|[\s~^:?*\[\\]|\.lock$|/$|\.$|@\{")
_PR_URL_RE = re.compile(r"https://github\.com/\S+")


class GitOpsError(Exception):
    """A git or gh command failed."""


def is_valid_branch_name(branch_name: str) -> bool:
    return bool(branch_name) and not _INVALID_BRANCH_RE.search(branch_name)


class GitOps:
    """Git helper bound to one repository path."""

    def __init__(self, repo_path: Path, default_branch: str = "main"):
        self.repo_path = Path(repo_path)
        self.default_branch = default_branch
        # Held across multi-step work (branch, commit, push) on the shared working tree
        self.lock = threading.Lock()

    def run(self, args: List[str], timeout: int = GIT_TIMEOUT, strip: bool = True) -> str:
        """Run a command in the repository. Raises GitOpsError on failure."""
        try:
            result = subprocess.run(
                args,
                cwd=str(self.repo_path),
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            raise GitOpsError(f"{args[0]} is not installed or not in PATH") from e
        except subprocess.TimeoutExpired as e:
            raise GitOpsError(f"Command timed out after {timeout}s: {' '.join(args)}") from e

        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()
            logger.error(f"Command failed: {' '.join(args)}: {detail}")
            raise GitOpsError(f"Git command failed: {detail}")
        return result.stdout.strip() if strip else result.stdout

    def git(self, *args: str) -> str:
        return self.run(["git", *args])

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def current_branch(self) -> str:
        return self.git("rev-parse", "--abbrev-ref", "HEAD")

    def branch_exists(self, branch_name: str) -> bool:
        try:
            self.git("rev-parse", "--verify", "--quiet", branch_name)
            return True
        except GitOpsError:
            return False

    def is_clean(self) -> bool:
        try:
            return self.git("status", "--porcelain") == ""
        except GitOpsError:
            return False

    def commit_history(self, limit: int = 10) -> List[Dict[str, str]]:
        try:
            output = self.git("log", "-n", str(limit), "--format=%H|%an|%ae|%ad|%s")
        except GitOpsError:
            return []
        history = []
        for line in output.splitlines():
            parts = line.split("|", 4)
            if len(parts) == 5:
                history.append(dict(zip(["hash", "author", "email", "date", "subject"], parts)))
        return history

    def diff(self) -> str:
        try:
            return self.git("diff")
        except GitOpsError:
            return ""

    def changed_files(self) -> List[str]:
        try:
            output = self.run(["git", "status", "--porcelain"], strip=False)
        except GitOpsError:
            return []
        return [line[3:].strip() for line in output.splitlines() if line.strip()]

    # -------------------------------------------------------------------------
    # Branches
    # -------------------------------------------------------------------------

    def create_branch(self, branch_name: str, base_branch: Optional[str] = None) -> Dict[str, Any]:
        """Fetch, update the base branch, then create and check out branch_name."""
        base = base_branch or self.default_branch
        if not is_valid_branch_name(branch_name):
            return {"success": False, "error": f"Invalid branch name: {branch_name}", "branch": branch_name}
        if self.branch_exists(branch_name):
            logger.warning(f"Branch {branch_name} already exists")
            return {"success": False, "error": "Branch already exists", "branch": branch_name}
        try:
            self.git("fetch", "origin")
            self.git("checkout", base)
            self.git("pull", "origin", base)
            self.git("checkout", "-b", branch_name)
        except GitOpsError as e:
            return {"success": False, "error": str(e), "branch": branch_name}
        logger.info(f"Created branch {branch_name} from {base}")
        return {"success": True, "branch": branch_name, "base_branch": base}

    def switch_branch(self, branch_name: str) -> Dict[str, Any]:
        if not self.branch_exists(branch_name):
            return {"success": False, "error": f"Branch does not exist: {branch_name}"}
        try:
            self.git("checkout", branch_name)
        except GitOpsError as e:
            return {"success": False, "error": str(e)}
        logger.info(f"Switched to branch {branch_name}")
        return {"success": True, "branch": branch_name}

    def delete_branch(self, branch_name: str, force: bool = False) -> Dict[str, Any]:
        try:
            if self.current_branch() == branch_name:
                return {"success": False, "error": "Cannot delete current branch"}
            self.git("branch", "-D" if force else "-d", branch_name)
        except GitOpsError as e:
            return {"success": False, "error": str(e)}
        logger.info(f"Deleted branch {branch_name}")
        return {"success": True, "branch": branch_name}

    # -------------------------------------------------------------------------
    # Commits
    # -------------------------------------------------------------------------

    def stage_files(self, files: List[str]) -> Dict[str, Any]:
        if not files:
            return {"success": False, "error": "No files provided to stage"}
        try:
            self.git("add", "--", *[str(f) for f in files])
        except GitOpsError as e:
            return {"success": False, "error": str(e)}
        logger.info(f"Staged {len(files)} file(s)")
        return {"success": True, "files_staged": len(files)}

    def commit(self, message: str) -> Dict[str, Any]:
        if not message or not message.strip():
            return {"success": False, "error": "Commit message is required"}
        try:
            if not self.git("diff", "--cached", "--name-only"):
                return {"success": False, "error": "No staged changes to commit"}
            self.git(
                "-c", f"user.name={AGENT_NAME}",
                "-c", f"user.email={AGENT_EMAIL}",
                "commit", "-m", message,
            )
            commit_hash = self.git("rev-parse", "HEAD")
        except GitOpsError as e:
            return {"success": False, "error": str(e)}
        logger.info(f"Created commit {commit_hash[:7]}")
        return {"success": True, "commit_hash": commit_hash, "message": message}

    def stage_and_commit(self, files: List[str], message: str) -> Dict[str, Any]:
        staged = self.stage_files(files)
        if not staged["success"]:
            return staged
        return self.commit(message)

    def push(self, branch_name: Optional[str] = None, set_upstream: bool = True) -> Dict[str, Any]:
        try:
            branch = branch_name or self.current_branch()
            args = ["push"] + (["-u"] if set_upstream else []) + ["origin", branch]
            self.git(*args)
        except GitOpsError as e:
            return {"success": False, "error": str(e)}
        logger.info(f"Pushed branch {branch}")
        return {"success": True, "branch": branch}

    # -------------------------------------------------------------------------
    # GitHub
    # -------------------------------------------------------------------------

    def create_pr(
        self,
        title: str,
        body: str = "",
        base_branch: Optional[str] = None,
        draft: bool = False,
    ) -> Dict[str, Any]:
        """Open a pull request with the gh CLI and return its URL."""
        if not title:
            return {"success": False, "error": "PR title is required"}
        args = [
            "gh", "pr", "create",
            "--title", title,
            "--body", body,
            "--base", base_branch or self.default_branch,
        ]
        if draft:
            args.append("--draft")
        try:
            output = self.run(args)
        except GitOpsError as e:
            return {"success": False, "error": str(e)}
        match = _PR_URL_RE.search(output)
        pr_url = match.group(0) if match else None
        logger.info(f"Created PR: {pr_url}")
        return {"success": True, "pr_url": pr_url, "title": title}

    def sync_with_remote(self, branch: Optional[str] = None) -> Dict[str, Any]:
        """Fetch and fast-forward when origin/<branch> moved ahead of HEAD."""
        target = branch or self.default_branch
        try:
            with self.lock:
                self.git("fetch", "origin", target)
                local = self.git("rev-parse", "HEAD")
                remote = self.git("rev-parse", f"origin/{target}")
                if local == remote:
                    return {"success": True, "updated": False, "commit": local}
                self.git("pull", "--ff-only", "origin", target)
        except GitOpsError as e:
            return {"success": False, "error": str(e)}
        logger.info(f"Synced {target}: {local[:7]} -> {remote[:7]}")
        return {"success": True, "updated": True, "commit": remote}
