"""
Team Communications

The team's chat feed: each agent posts with its own emoji and name so
the Telegram chat reads like a team channel. A bounded history feeds
the PM's conversational context.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable, Awaitable, Deque

from .formatting import escape_html

logger = logging.getLogger("team_comms")

MAX_HISTORY = 50
DEFAULT_EMOJI = "🤖"

AGENT_PROFILES: Dict[str, Dict[str, str]] = {
    "PM-Agent": {"emoji": "👔", "role": "Project Manager"},
    "RD-Agent": {"emoji": "🔬", "role": "Research & Development"},
    "Backend-Agent": {"emoji": "⚙️", "role": "Backend Engineer"},
    "Architect-Agent": {"emoji": "🏗️", "role": "Technical Architect"},
    "Frontend-Agent": {"emoji": "🎨", "role": "Frontend Engineer"},
    "DevOps-Agent": {"emoji": "🚀", "role": "DevOps Engineer"},
    "QA-Agent": {"emoji": "🧪", "role": "QA Engineer"},
    "Docs-Agent": {"emoji": "📚", "role": "Documentation"},
}

Notify = Callable[[str], Awaitable[None]]


def agent_emoji(agent_name: str) -> str:
    if agent_name == "team":
        return "👥"
    return AGENT_PROFILES.get(agent_name, {}).get("emoji", DEFAULT_EMOJI)


def progress_bar(percent: int) -> str:
    """10-cell text progress bar."""
    percent = max(0, min(100, int(percent)))
    filled = percent // 10
    return "▓" * filled + "░" * (10 - filled)


@dataclass
class TeamMessage:
    """One entry of the team conversation history."""
    agent: str
    message: str
    message_type: Optional[str] = None
    target: Optional[str] = None
    task_id: Optional[str] = None
    percent: Optional[int] = None
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat(timespec="seconds"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent": self.agent,
            "message": self.message,
            "type": self.message_type,
            "target": self.target,
            "task_id": self.task_id,
            "percent": self.percent,
            "timestamp": self.timestamp,
        }


class TeamComms:
    """Formats agent messages and relays them through a notify callable."""

    def __init__(self, notify: Notify, max_history: int = MAX_HISTORY):
        self._notify = notify
        self._history: Deque[TeamMessage] = deque(maxlen=max_history)

    async def _post(self, text: str, entry: TeamMessage) -> None:
        self._history.append(entry)
        try:
            await self._notify(text)
        except Exception as e:
            logger.error(f"Error sending message from {entry.agent}: {e}")
        logger.info(f"{entry.agent}: {entry.message[:100]}")

    async def send_message(self, agent_name: str, message: str, reply_to: Optional[str] = None) -> None:
        header = f"{agent_emoji(agent_name)} <b>{agent_name}</b>"
        if reply_to:
            header += f" → {agent_emoji(reply_to)} {reply_to}"
        await self._post(
            f"{header}\n{escape_html(message)}",
            TeamMessage(agent_name, message, target=reply_to),
        )

    async def ask_question(self, from_agent: str, to_agent: str, question: str) -> None:
        text = (
            f"{agent_emoji(from_agent)} <b>{from_agent}</b> → "
            f"{agent_emoji(to_agent)} <b>{to_agent}</b>\n❓ {escape_html(question)}"
        )
        await self._post(text, TeamMessage(from_agent, question, "question", target=to_agent))

    async def announce_action(self, agent_name: str, action: str, task_id: Optional[str] = None) -> None:
        text = f"{agent_emoji(agent_name)} <b>{agent_name}</b>\n📢 {escape_html(action)}"
        if task_id:
            text += f"\n📋 Task: <code>{escape_html(task_id)}</code>"
        await self._post(text, TeamMessage(agent_name, action, "announcement", task_id=task_id))

    async def share_progress(self, agent_name: str, update: str, percent: Optional[int] = None) -> None:
        text = f"{agent_emoji(agent_name)} <b>{agent_name}</b>\n"
        if percent is not None:
            text += f"{progress_bar(percent)} {percent}%\n"
        text += f"📊 {escape_html(update)}"
        await self._post(text, TeamMessage(agent_name, update, "progress", percent=percent))

    async def report_blocker(self, agent_name: str, blocker: str, task_id: str) -> None:
        text = (
            f"{agent_emoji(agent_name)} <b>{agent_name}</b>\n"
            f"🚫 <b>BLOCKER</b>\n"
            f"📋 Task: <code>{escape_html(task_id)}</code>\n"
            f"❌ Issue: {escape_html(blocker)}\n\n"
            f"👔 <i>@PM-Agent - Need your help!</i>"
        )
        await self._post(text, TeamMessage(agent_name, blocker, "blocker", task_id=task_id))

    async def request_help(self, from_agent: str, to_agent: str, request: str) -> None:
        text = (
            f"{agent_emoji(from_agent)} <b>{from_agent}</b> → "
            f"{agent_emoji(to_agent)} <b>{to_agent}</b>\n🆘 {escape_html(request)}"
        )
        await self._post(text, TeamMessage(from_agent, request, "help-request", target=to_agent))

    async def team_announcement(self, message: str) -> None:
        text = f"👥 <b>Team Announcement</b>\n📢 {escape_html(message)}"
        await self._post(text, TeamMessage("System", message, "team-announcement"))

    async def celebrate(self, agent_name: str, achievement: str) -> None:
        text = f"{agent_emoji(agent_name)} <b>{agent_name}</b>\n🎉 {escape_html(achievement)}"
        await self._post(text, TeamMessage(agent_name, achievement, "celebration"))

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def get_recent(self, count: int = 10) -> List[TeamMessage]:
        return list(self._history)[-count:] if count > 0 else []

    def get_conversation_context(self, count: int = 10) -> str:
        """Recent conversation rendered as plain text for an LLM prompt."""
        recent = self.get_recent(count)
        if not recent:
            return "No recent team conversation."

        lines = ["### Recent Team Conversation:"]
        for msg in recent:
            time_part = msg.timestamp[11:19] if len(msg.timestamp) >= 19 else msg.timestamp
            line = f"[{time_part}] {agent_emoji(msg.agent)} {msg.agent}"
            if msg.target:
                line += f" → {msg.target}"
            if msg.message_type:
                line += f" ({msg.message_type})"
            lines.append(f"{line}: {msg.message}")
        return "\n".join(lines)
