"""
Unit Tests for team communications.
"""

from pm_controller.team_comms import TeamComms, agent_emoji, progress_bar

from tests.conftest import async_test, RecordingNotifier


class TestFormatting:

    def test_agent_emoji(self):
        assert agent_emoji("QA-Agent") == "🧪"
        assert agent_emoji("team") == "👥"
        assert agent_emoji("Stranger") == "🤖"

    def test_progress_bar(self):
        assert progress_bar(0) == "░" * 10
        assert progress_bar(45) == "▓" * 4 + "░" * 6
        assert progress_bar(150) == "▓" * 10


class TestTeamComms:
    """Tests for message delivery and history."""

    @async_test
    async def test_send_message_escapes(self):
        """Agent text is HTML-escaped under a bold header."""
        notifier = RecordingNotifier()
        comms = TeamComms(notifier)
        await comms.send_message("Backend-Agent", "Fixed <script> bug")
        assert notifier.messages[0] == "⚙️ <b>Backend-Agent</b>\nFixed &lt;script&gt; bug"

    @async_test
    async def test_report_blocker(self):
        notifier = RecordingNotifier()
        comms = TeamComms(notifier)
        await comms.report_blocker("QA-Agent", "Tests failing", "TASK-1-01")
        text = notifier.messages[0]
        assert "🚫 <b>BLOCKER</b>" in text
        assert "<code>TASK-1-01</code>" in text
        assert "@PM-Agent" in text

    @async_test
    async def test_history_is_bounded(self):
        comms = TeamComms(RecordingNotifier(), max_history=3)
        for i in range(5):
            await comms.share_progress("RD-Agent", f"step {i}", percent=i * 20)
        recent = comms.get_recent(10)
        assert [m.message for m in recent] == ["step 2", "step 3", "step 4"]
        assert recent[-1].percent == 80

    @async_test
    async def test_notifier_failure_is_logged(self):
        """A broken notifier does not break the agent."""
        async def broken(text):
            raise RuntimeError("telegram down")

        comms = TeamComms(broken)
        await comms.celebrate("PM-Agent", "Shipped")
        assert comms.get_recent(1)[0].message_type == "celebration"

    @async_test
    async def test_conversation_context(self):
        comms = TeamComms(RecordingNotifier())
        assert comms.get_conversation_context() == "No recent team conversation."
        await comms.ask_question("Frontend-Agent", "Backend-Agent", "Which endpoint?")
        context = comms.get_conversation_context()
        assert context.startswith("### Recent Team Conversation:")
        assert "Frontend-Agent → Backend-Agent (question): Which endpoint?" in context
