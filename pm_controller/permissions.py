"""
Agent Permissions

Static read/write/restricted glob table per agent, plus system-wide
paths no agent may write. Paths are relative to the project root and
use forward slashes.

Glob rules:
- `**` matches across directory separators (including nothing)
- `*` matches within a single path segment
- `?` matches one non-separator character
"""

import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Dict, List

logger = logging.getLogger("permissions")


AGENT_PERMISSIONS: Dict[str, Dict[str, List[str]]] = {
    "pm-agent": {
        "read": ["tasks/**", "requests/**", "TODO.md", "standups/**", "docs/**"],
        "write": ["tasks/**", "requests/**", "TODO.md", "standups/**"],
        "restricted": ["src/**", ".env", "pyproject.toml", "package.json"],
    },
    "rd-agent": {
        "read": ["tasks/**", "requests/**", "workspace/rd-agent/**", "docs/**"],
        "write": ["workspace/rd-agent/**", "docs/mockups/**"],
        "restricted": ["src/**", "tasks/completed/**", ".env"],
    },
    "backend-agent": {
        "read": ["src/**", "tasks/**", "workspace/backend-agent/**", "packages/api/**", "migrations/**"],
        "write": ["src/**", "packages/api/**", "migrations/**", "workspace/backend-agent/**", "tests/**"],
        "restricted": [".env", "node_modules/**", "tasks/completed/**"],
    },
    "frontend-agent": {
        "read": ["src/**", "tasks/**", "workspace/frontend-agent/**", "packages/web/**", "public/**"],
        "write": ["packages/web/**", "public/**", "workspace/frontend-agent/**", "src/components/**"],
        "restricted": [".env", "node_modules/**", "tasks/completed/**", "packages/api/**"],
    },
    "architect-agent": {
        "read": ["src/**", "tasks/**", "workspace/architect-agent/**", "docs/**", "migrations/**"],
        "write": ["docs/**", "workspace/architect-agent/**", "architecture/**"],
        "restricted": [".env", "node_modules/**"],
    },
    "qa-agent": {
        "read": ["src/**", "tests/**", "tasks/**", "workspace/qa-agent/**"],
        "write": ["tests/**", "workspace/qa-agent/**", "test-results/**"],
        "restricted": [".env", "node_modules/**", "src/**", "tasks/completed/**"],
    },
    "devops-agent": {
        "read": ["**"],
        "write": [".github/**", "docker/**", "deployment/**", "workspace/devops-agent/**"],
        "restricted": [".env.production", "secrets/**"],
    },
    "docs-agent": {
        "read": ["src/**", "docs/**", "tasks/**", "workspace/docs-agent/**", "README.md"],
        "write": ["docs/**", "README.md", "workspace/docs-agent/**", "API.md"],
        "restricted": [".env", "node_modules/**", "src/**"],
    },
}

SYSTEM_RESTRICTED: List[str] = [
    ".git/**",
    "node_modules/**",
    "**/.env",
    "**/.env.*",
]

ALLOWED_COMMANDS: Dict[str, List[str]] = {
    "pm-agent": ["python", "node", "npm"],
    "backend-agent": ["python", "pip", "pytest", "alembic", "node", "npm", "npx"],
    "frontend-agent": ["node", "npm", "npx"],
    "qa-agent": ["python", "pytest", "node", "npm", "npx", "playwright", "jest", "vitest"],
    "devops-agent": ["docker", "kubectl", "terraform", "gh", "git"],
    "docs-agent": ["python", "node", "npm", "mkdocs"],
}


@lru_cache(maxsize=256)
def _glob_to_regex(pattern: str) -> "re.Pattern":
    parts = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif ch == "*":
            parts.append("[^/]*")
            i += 1
        elif ch == "?":
            parts.append("[^/]")
            i += 1
        else:
            parts.append(re.escape(ch))
            i += 1
    return re.compile("^" + "".join(parts) + "$")


def normalize_path(file_path: str) -> str:
    normalized = str(file_path).replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def match_pattern(file_path: str, pattern: str) -> bool:
    """Match a relative path against a glob pattern."""
    path = normalize_path(file_path)
    if path == pattern:
        return True
    return bool(_glob_to_regex(pattern).match(path))


def matches_any(file_path: str, patterns: List[str]) -> bool:
    return any(match_pattern(file_path, p) for p in patterns)


def can_read(agent_name: str, file_path: str) -> bool:
    """Restricted patterns win over read patterns."""
    permissions = AGENT_PERMISSIONS.get(agent_name)
    if not permissions:
        logger.warning(f"Unknown agent: {agent_name}")
        return False
    if matches_any(file_path, permissions["restricted"]):
        return False
    return matches_any(file_path, permissions["read"])


def can_write(agent_name: str, file_path: str) -> bool:
    """System restrictions, then agent restrictions, then write patterns."""
    permissions = AGENT_PERMISSIONS.get(agent_name)
    if not permissions:
        logger.warning(f"Unknown agent: {agent_name}")
        return False
    if matches_any(file_path, SYSTEM_RESTRICTED):
        logger.warning(f"Blocked write to system-restricted path: {file_path}")
        return False
    if matches_any(file_path, permissions["restricted"]):
        return False
    return matches_any(file_path, permissions["write"])


def can_execute(agent_name: str, command: str) -> bool:
    """The executable's basename must be on the agent's allow list."""
    tokens = command.strip().split()
    if not tokens:
        return False
    executable = tokens[0].replace("\\", "/").rsplit("/", 1)[-1]
    allowed = executable in ALLOWED_COMMANDS.get(agent_name, [])
    if not allowed:
        logger.warning(f"{agent_name} attempted to execute disallowed command: {executable}")
    return allowed


def get_readable_paths(agent_name: str) -> List[str]:
    return list(AGENT_PERMISSIONS.get(agent_name, {}).get("read", []))


def get_writable_paths(agent_name: str) -> List[str]:
    return list(AGENT_PERMISSIONS.get(agent_name, {}).get("write", []))


def is_path_safe(file_path: str, project_root: Path) -> bool:
    """True when file_path resolves inside project_root."""
    root = Path(project_root).resolve()
    resolved = (root / file_path).resolve()
    safe = resolved == root or root in resolved.parents
    if not safe:
        logger.warning(f"Path traversal attempt blocked: {file_path}")
    return safe


def is_system_restricted(file_path: str) -> bool:
    """Paths no agent or chat command may touch (.git, secrets)."""
    return matches_any(file_path, SYSTEM_RESTRICTED)


def log_access(agent_name: str, action: str, resource: str, allowed: bool) -> None:
    status = "ALLOWED" if allowed else "DENIED"
    logger.info(f"{status} - {agent_name} {action} {resource}")
