"""
Unit Tests for settings loading.
"""

from pathlib import Path

from pm_controller.config import (
    Settings,
    TASK_STATUS_DIRS,
    REQUEST_STATUS_DIRS,
    DEFAULT_STANDUP_CRON,
    DEFAULT_PM_AGENT_INTERVAL_MS,
)


class TestSettings:
    """Tests for environment-driven configuration."""

    def test_from_env_defaults(self, monkeypatch, tmp_path):
        for name in ["TASKS_DIR", "STANDUP_CRON", "PM_AGENT_INTERVAL", "TELEGRAM_BOT_TOKEN", "ENVIRONMENT"]:
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("PROJECT_ROOT", str(tmp_path))
        settings = Settings.from_env()
        assert settings.tasks_dir == tmp_path / "tasks"
        assert settings.standup_cron == DEFAULT_STANDUP_CRON
        assert settings.pm_agent_interval_ms == DEFAULT_PM_AGENT_INTERVAL_MS
        assert settings.pm_agent_interval_seconds == 3600.0
        assert settings.telegram_bot_token == ""
        assert settings.environment == "development"

    def test_from_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PROJECT_ROOT", str(tmp_path))
        monkeypatch.setenv("TASKS_DIR", "/data/tasks")
        monkeypatch.setenv("PM_AGENT_INTERVAL", "60000")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        monkeypatch.setenv("STANDUP_CRON", "30 9 * * 1-5")
        settings = Settings.from_env()
        assert settings.tasks_dir == Path("/data/tasks")
        assert settings.pm_agent_interval_seconds == 60.0
        assert settings.llm_api_key == "sk-test"
        assert settings.standup_cron == "30 9 * * 1-5"

    def test_invalid_interval_uses_default(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PROJECT_ROOT", str(tmp_path))
        monkeypatch.setenv("PM_AGENT_INTERVAL", "soon")
        assert Settings.from_env().pm_agent_interval_ms == DEFAULT_PM_AGENT_INTERVAL_MS

    def test_ensure_directories(self, tmp_path):
        """Every status directory exists after startup."""
        settings = Settings.for_root(tmp_path)
        settings.ensure_directories()
        for status in TASK_STATUS_DIRS:
            assert (tmp_path / "tasks" / status).is_dir()
        for status in REQUEST_STATUS_DIRS:
            assert (tmp_path / "requests" / status).is_dir()
        assert settings.feature_flags_file.parent.is_dir()
