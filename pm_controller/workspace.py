"""
Agent Workspaces

Each specialist agent writes its deliverables under
WORKSPACE_DIR/<agent-name>/. Paths handed in by agents are resolved
against that directory and may never escape it.
"""

import logging
from pathlib import Path
from typing import List

logger = logging.getLogger("workspace")


class WorkspaceManager:
    """Per-agent scratch directories under a common root."""

    def __init__(self, workspace_dir: Path):
        self.workspace_dir = Path(workspace_dir)

    def ensure_agent_workspace(self, agent_name: str) -> Path:
        path = self.workspace_dir / agent_name
        path.mkdir(parents=True, exist_ok=True)
        return path

    def resolve_agent_path(self, agent_name: str, relative_path: str) -> Path:
        """Resolve a path inside the agent workspace. Raises ValueError on escape."""
        base = self.ensure_agent_workspace(agent_name).resolve()
        resolved = (base / relative_path).resolve()
        if resolved != base and base not in resolved.parents:
            logger.warning(f"{agent_name} tried to escape its workspace: {relative_path}")
            raise ValueError(f"Path escapes workspace for {agent_name}: {relative_path}")
        return resolved

    def write_agent_file(self, agent_name: str, relative_path: str, content: str) -> Path:
        path = self.resolve_agent_path(agent_name, relative_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.info(f"{agent_name} wrote {path}")
        return path

    def list_agent_files(self, agent_name: str) -> List[Path]:
        base = self.workspace_dir / agent_name
        if not base.exists():
            return []
        return sorted(p for p in base.rglob("*") if p.is_file())
