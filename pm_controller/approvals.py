"""
Deliverable Approval Workflow

Tracks R&D deliverables (research doc + mockup) waiting for a human
decision, along with every round of feedback. State is kept in memory
and mirrored to a JSON file when one is configured.
"""

import json
import logging
import threading
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, List

logger = logging.getLogger("approvals")


@dataclass
class ApprovalEntry:
    """A deliverable awaiting approval."""
    task_id: str
    research_path: Optional[str] = None
    mockup_path: Optional[str] = None
    iteration_count: int = 0
    feedback: List[Dict[str, str]] = field(default_factory=list)
    status: str = "pending"
    approved_at: Optional[str] = None
    rejected_at: Optional[str] = None
    rejection_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalEntry":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


class ApprovalWorkflow:
    """Registry of deliverables pending human approval."""

    def __init__(self, state_file: Optional[Path] = None):
        self.state_file = Path(state_file) if state_file else None
        self._entries: Dict[str, ApprovalEntry] = {}
        self._lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        if not self.state_file or not self.state_file.exists():
            return
        try:
            data = json.loads(self.state_file.read_text(encoding="utf-8"))
            for item in data:
                entry = ApprovalEntry.from_dict(item)
                self._entries[entry.task_id] = entry
        except (OSError, json.JSONDecodeError, TypeError) as e:
            logger.error(f"Failed to load approvals from {self.state_file}: {e}")

    def _save(self) -> None:
        if not self.state_file:
            return
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            payload = [entry.to_dict() for entry in self._entries.values()]
            self.state_file.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to save approvals: {e}")

    def register_for_approval(
        self,
        task_id: str,
        research_path: Optional[str] = None,
        mockup_path: Optional[str] = None,
    ) -> ApprovalEntry:
        with self._lock:
            entry = ApprovalEntry(task_id=task_id, research_path=research_path, mockup_path=mockup_path)
            self._entries[task_id] = entry
            self._save()
        logger.info(f"Registered {task_id} for approval")
        return entry

    def record_feedback(self, task_id: str, feedback_text: str) -> Optional[ApprovalEntry]:
        with self._lock:
            entry = self._entries.get(task_id)
            if not entry:
                return None
            entry.feedback.append({
                "timestamp": datetime.utcnow().isoformat(timespec="seconds"),
                "text": feedback_text,
            })
            entry.iteration_count += 1
            self._save()
        logger.info(f"Feedback recorded for {task_id}, iteration {entry.iteration_count}")
        return entry

    def approve(self, task_id: str) -> Optional[ApprovalEntry]:
        with self._lock:
            entry = self._entries.get(task_id)
            if not entry:
                return None
            entry.status = "approved"
            entry.approved_at = datetime.utcnow().isoformat(timespec="seconds")
            self._save()
        logger.info(f"Approved {task_id} after {entry.iteration_count} iterations")
        return entry

    def reject(self, task_id: str, reason: str) -> Optional[ApprovalEntry]:
        """Reject and drop the entry; the returned entry records why."""
        with self._lock:
            entry = self._entries.pop(task_id, None)
            if not entry:
                return None
            entry.status = "rejected"
            entry.rejected_at = datetime.utcnow().isoformat(timespec="seconds")
            entry.rejection_reason = reason
            self._save()
        logger.warning(f"Rejected {task_id}: {reason}")
        return entry

    def get_pending(self, task_id: str) -> Optional[ApprovalEntry]:
        return self._entries.get(task_id)

    def get_all(self) -> List[ApprovalEntry]:
        return list(self._entries.values())
